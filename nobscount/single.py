"""Single-instance detection through an abstract Unix socket name."""

from __future__ import annotations

import errno
import socket


class SingleInstance:
    """Claims a process-wide name; only the first claimant is single.

    The name lives in the Linux abstract socket namespace, so it disappears
    together with the process that holds it.
    """

    def __init__(self, name: str) -> None:
        sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
        try:
            sock.bind(b"\0" + name.encode())
        except OSError as exc:
            sock.close()
            if exc.errno != errno.EADDRINUSE:
                raise
            self._sock: socket.socket | None = None
        else:
            self._sock = sock

    def is_single(self) -> bool:
        """Whether this instance holds the name."""
        return self._sock is not None

    def close(self) -> None:
        """Release the name so that another instance may claim it."""
        if self._sock is not None:
            self._sock.close()
            self._sock = None

    def __enter__(self) -> SingleInstance:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()