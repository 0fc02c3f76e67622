"""A hit counter that serves its count as digit images over HTTP."""

__version__ = "1.2.3"