[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "nobscount"
version = "1.2.3"
description = "A no-nonsense hit counter served as digit images over HTTP"
requires-python = ">=3.11"
dependencies = []
keywords = ["counter", "hit-counter", "http", "visitor", "page-counter"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Environment :: No Input/Output (Daemon)",
    "Intended Audience :: System Administrators",
    "Operating System :: POSIX :: Linux",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Internet :: WWW/HTTP :: Dynamic Content :: Page Counters",
]

[project.optional-dependencies]
test = ["pytest"]

[project.scripts]
nobscount = "nobscount.server:main"

[tool.hatch.build.targets.wheel]
packages = ["nobscount"]

[tool.pytest.ini_options]
addopts = "-ra"
