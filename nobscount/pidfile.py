"""PID file handling used to stop an older counter process."""

from __future__ import annotations

import errno
import logging
import os
import re
import signal
import tempfile
from pathlib import Path

log = logging.getLogger(__name__)

PID_FILE_NAME = ".counter.pid"

_PID = re.compile(r"[+-]?[0-9]+")
_I32_MIN = -(1 << 31)
_I32_MAX = (1 << 31) - 1


def _local_path() -> Path:
    return Path(PID_FILE_NAME)


def _fallback_path() -> Path:
    """The PID file placed beside the temporary directory."""
    tmp = Path(tempfile.gettempdir())
    if tmp.name:
        return tmp.with_name(PID_FILE_NAME)
    return tmp / PID_FILE_NAME


def _parse_pid(text: str) -> int:
    if not _PID.fullmatch(text):
        raise ValueError(f"invalid PID: {text!r}")
    pid = int(text)
    if not _I32_MIN <= pid <= _I32_MAX:
        raise ValueError(f"invalid PID: {text!r}")
    return pid


def write_pid_file() -> Path | None:
    """Record the current PID, falling back beside the temp directory.

    Returns the path written, or None when neither location was writable.
    """
    pid = str(os.getpid())
    local = _local_path()
    try:
        local.write_text(pid, encoding="utf-8")
        return local
    except OSError as exc:
        log.debug("Unable to write PID in current directory (%s). Trying temp directory...", exc)

    fallback = _fallback_path()
    try:
        fallback.write_text(pid, encoding="utf-8")
        return fallback
    except OSError as exc:
        log.debug(
            "Unable to write PID to a file (%s). Another instance won't be able to kill this one.",
            exc,
        )
        return None


def kill_old_counter() -> int:
    """Send SIGINT to the process named by the PID file and return its PID.

    The local PID file is tried first, then the fallback. A PID file that
    cannot be parsed raises ValueError; when no PID file can be read,
    OSError with errno EIO is raised. Errors from the signal propagate.
    """
    for path in (_local_path(), _fallback_path()):
        try:
            text = path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as exc:
            log.debug("Error reading PID from %s: %s", path, exc)
            continue
        pid = _parse_pid(text)
        os.kill(pid, signal.SIGINT)
        return pid
    raise OSError(errno.EIO, "no readable PID file found")


def remove_pid_file() -> None:
    """Remove the PID file from the current directory, if present."""
    try:
        _local_path().unlink()
    except OSError as exc:
        log.debug("Unable to remove PID file from current directory: %s", exc)