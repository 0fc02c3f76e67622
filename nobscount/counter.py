"""Request handling for the hit counter: counting visits and serving digit images."""

from __future__ import annotations

import ipaddress
import logging
import re
import socket
import sys
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from os import PathLike
from pathlib import Path
from typing import BinaryIO

from .config import (
    CONTENT_TYPE,
    COUNTER_FILE,
    IMAGE_DIR,
    IMG_FORMAT,
    TIMEOUT,
    IPAddress,
)

log = logging.getLogger(__name__)

OK = "200 OK"
BAD_REQUEST = "400 Bad Request"
INTERNAL_ERROR = "500 Internal Server Error"

_ARG_VALUE = re.compile(r"\+?[0-9]+")
_ARG_MAX = 255
_REAL_IP_PREFIX = "X-Real-IP: "
_USER_AGENT_PREFIX = "User-Agent: "


def _warn(message: str) -> None:
    print(message, file=sys.stderr)


def _lines(text: str) -> list[str]:
    """Split text into lines, dropping a trailing carriage return from each."""
    return [line.removesuffix("\r") for line in text.split("\n")]


def parse_arg(arg: str) -> int | None:
    """Parse a query of the form ``n=<0..255>``; anything else gives None."""
    name, sep, value = arg.partition("=")
    if not sep or name != "n":
        return None
    if not _ARG_VALUE.fullmatch(value):
        return None
    number = int(value)
    return number if number <= _ARG_MAX else None


def check_x_real_ip(request: str) -> IPAddress | None:
    """Return the address of the first X-Real-IP header, if it is a valid IP."""
    for line in _lines(request):
        if line.startswith(_REAL_IP_PREFIX):
            try:
                return ipaddress.ip_address(line[len(_REAL_IP_PREFIX):].strip())
            except ValueError:
                return None
    return None


def _user_agent(request: str) -> str | None:
    for line in _lines(request):
        if line.startswith(_USER_AGENT_PREFIX):
            return line[len(_USER_AGENT_PREFIX):]
    return None


def allow_useragent(
    request: str, patterns: Iterable[re.Pattern[str]], allow_empty: bool
) -> bool:
    """Whether a request may be counted, judged by its User-Agent header.

    A request without the header is allowed only if ``allow_empty`` is set;
    one whose agent matches any of the patterns is refused.
    """
    agent = _user_agent(request)
    if agent is None:
        return allow_empty
    return not any(pattern.search(agent) for pattern in patterns)


def respond(stream: BinaryIO, status: str, content_type: str | None = None) -> None:
    """Write a bodiless HTTP response head to a binary stream."""
    stream.write(f"HTTP/1.1 {status}\r\n".encode())
    if content_type is not None:
        stream.write(f"Content-Type: {content_type}\r\n".encode())
    stream.write(b"\r\n")


def _read_head(reader: BinaryIO) -> list[str]:
    """Read request lines up to the first empty one, EOF or undecodable line."""
    lines: list[str] = []
    for raw in reader:
        try:
            line = raw.decode("utf-8")
        except UnicodeDecodeError:
            break
        if line.endswith("\n"):
            line = line[:-1].removesuffix("\r")
        if not line:
            break
        lines.append(line)
    return lines


@dataclass
class Counter:
    """The hit count together with the rules for counting and displaying it."""

    count: int = 0
    filepath: str | PathLike[str] = COUNTER_FILE
    image_dir: str = IMAGE_DIR
    img_format: str = IMG_FORMAT
    content_type: str = CONTENT_TYPE
    count_unique: bool = False
    timeout: int = TIMEOUT
    blacklist: list[IPAddress] = field(default_factory=list)
    ua_list: list[re.Pattern[str]] = field(default_factory=list)
    allow_empty_ua: bool = False
    clock: Callable[[], float] = time.monotonic
    uniques: dict[IPAddress, float] = field(default_factory=dict)

    def clear_timedout(self) -> None:
        """Forget unique visitors seen at least ``timeout`` whole seconds ago."""
        now = self.clock()
        expired = [
            ip
            for ip, seen in self.uniques.items()
            if now >= seen and int(now - seen) >= self.timeout
        ]
        for ip in expired:
            log.debug("Removed from uniques list: %s", ip)
            del self.uniques[ip]

    def handle_connection(self, conn: socket.socket, peer_ip: IPAddress | None) -> None:
        """Serve one request on a connected socket, then close it."""
        try:
            with conn, conn.makefile("rb") as reader, conn.makefile("wb") as writer:
                self._handle(reader, writer, peer_ip)
        except OSError as exc:
            _warn(f"Connection error: {exc}")

    def _handle(
        self, reader: BinaryIO, writer: BinaryIO, peer_ip: IPAddress | None
    ) -> None:
        request = "\n".join(_read_head(reader))
        log.debug("%s", request)

        ip = peer_ip
        real_ip = check_x_real_ip(request)
        if real_ip is not None:
            ip = real_ip
        log.debug("New connection from %s!", ip)

        allowed = allow_useragent(request, self.ua_list, self.allow_empty_ua)
        if not allowed:
            agent = _user_agent(request)
            _warn(
                "Connection filtered based on user-agent: "
                f"{agent if agent is not None else '[no user-agent]'}"
            )

        first_line = _lines(request)[0].strip()
        log.debug("%s", first_line)
        if not first_line.startswith("GET "):
            return

        parts = first_line.split()
        if len(parts) < 2:
            _warn(f"Malformed GET header: {first_line}")
            self._send(writer, BAD_REQUEST, None, "Error sending response")
            return

        method, sep, query = parts[1].partition("?")
        arg = parse_arg(query) if sep else None

        match method:
            case "/increment":
                if ip is not None and ip not in self.blacklist and allowed:
                    self._count_visit(ip)
                self._send(
                    writer,
                    OK,
                    "text/javascript",
                    "Error sending OK response to /increment request",
                )
            case "/get":
                if arg is None:
                    _warn("Unparsable argument or wrong argument name")
                    self._send(writer, BAD_REQUEST, None, "Error sending response")
                elif arg == 0:
                    _warn("Argument cannot be equal 0")
                    self._send(writer, BAD_REQUEST, None, "Error sending response")
                else:
                    self._send_counter_image(writer, arg)
            case _:
                _warn(f"Unknown method: {method}")
                self._send(writer, BAD_REQUEST, None, "Error sending response")

    def _count_visit(self, ip: IPAddress) -> None:
        if not self.count_unique:
            self._increment_counter()
        elif ip not in self.uniques:
            self._increment_counter()
            self.uniques[ip] = self.clock()
            log.debug("Added to uniques list: %s", ip)

    def _increment_counter(self) -> None:
        self.count += 1
        try:
            Path(self.filepath).write_text(str(self.count), encoding="utf-8")
        except OSError as exc:
            _warn(f"Error writing counter value to file! {exc}")

    @staticmethod
    def _send(
        writer: BinaryIO, status: str, content_type: str | None, failure: str
    ) -> None:
        try:
            respond(writer, status, content_type)
            writer.flush()
        except OSError as exc:
            _warn(f"{failure}: {exc}")

    def _send_counter_image(self, writer: BinaryIO, position: int) -> None:
        """Send the image of the digit at ``position`` (1 is the last digit)."""
        remaining = self.count // 10 ** (position - 1)
        name = str(remaining % 10) if remaining else "empty"

        status = OK
        try:
            body = Path(f"{self.image_dir}/{name}.{self.img_format}").read_bytes()
        except OSError as exc:
            _warn(f"Error reading file! {exc}")
            status = INTERNAL_ERROR
            body = b""

        head = (
            f"HTTP/1.1 {status}\r\n"
            f"Content-Type: {self.content_type}\r\n"
            f"Content-Length: {len(body)}\r\n\r\n"
        )
        try:
            writer.write(head.encode())
            writer.write(body)
        except OSError as exc:
            _warn(f"Error writing response to stream! {exc}")
        try:
            writer.flush()
        except OSError as exc:
            _warn(f"Error flushing stream buffer! {exc}")