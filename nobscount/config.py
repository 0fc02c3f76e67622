"""Counter configuration loading and the persisted count value."""

from __future__ import annotations

import ipaddress
import logging
import re
import sys
import tomllib
from dataclasses import dataclass, field
from os import PathLike
from pathlib import Path

log = logging.getLogger(__name__)

COUNTER_FILE = "count.bin"
BIND_ADDR = "0.0.0.0:1234"
IMAGE_DIR = "img"
IMG_FORMAT = "jpg"
CONTENT_TYPE = "image/jpeg"
TIMEOUT = 3600

_U64 = 1 << 64
_UNSIGNED = re.compile(r"\+?[0-9]+")
_STRING_KEYS = ("counterfile", "bind_addr", "image_dir", "img_format", "content_type")

IPAddress = ipaddress.IPv4Address | ipaddress.IPv6Address


@dataclass
class Config:
    """Settings of a counter server."""

    counterfile: str = COUNTER_FILE
    bind_addr: str = BIND_ADDR
    image_dir: str = IMAGE_DIR
    img_format: str = IMG_FORMAT
    content_type: str = CONTENT_TYPE
    count_unique: bool = False
    timeout: int = TIMEOUT
    blacklist: list[IPAddress] = field(default_factory=list)
    ua_list: list[re.Pattern[str]] = field(default_factory=list)
    allow_empty_ua: bool = False


def _warn(message: str) -> None:
    print(message, file=sys.stderr)


def load_config(path: str | PathLike[str]) -> Config:
    """Read a TOML config file; unreadable or invalid files give the defaults.

    Keys with a value of the wrong type are ignored and keep their default.
    """
    config = Config()
    try:
        text = Path(path).read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as exc:
        _warn(f"Error reading config: {exc}; Using default settings")
        return config

    try:
        table = tomllib.loads(text)
    except tomllib.TOMLDecodeError as exc:
        _warn(f"Error parsing config: {exc}; using default settings")
        return config

    for key in _STRING_KEYS:
        value = table.get(key)
        if isinstance(value, str):
            setattr(config, key, value)

    count_unique = table.get("count_unique")
    if isinstance(count_unique, bool):
        config.count_unique = count_unique

    timeout = table.get("timeout")
    if isinstance(timeout, int) and not isinstance(timeout, bool):
        # Stored as an unsigned 64-bit number of seconds.
        config.timeout = timeout % _U64

    blacklist = table.get("blacklist")
    if isinstance(blacklist, list) and all(isinstance(item, str) for item in blacklist):
        for item in blacklist:
            try:
                address = ipaddress.ip_address(item)
            except ValueError:
                _warn(f"A blacklist IP {item!r} isn't a valid IP; check config!")
                continue
            log.debug("Adding IP %s", address)
            config.blacklist.append(address)

    regexes = table.get("useragent_regexes")
    if isinstance(regexes, list):
        for item in regexes:
            if not isinstance(item, str):
                continue
            try:
                config.ua_list.append(re.compile(item))
            except re.error:
                _warn(f"Not a valid regex: {item}; check config!")

    allow_empty = table.get("allow_empty_uas")
    if isinstance(allow_empty, bool):
        config.allow_empty_ua = allow_empty

    return config


def read_number(path: str | PathLike[str]) -> int | None:
    """Read an unsigned decimal number that makes up the whole file.

    Returns None, after reporting why, when the file cannot be read or parsed.
    """
    try:
        data = Path(path).read_bytes()
    except OSError:
        _warn(f"Unable to open file {path}")
        return None

    try:
        text = data.decode("utf-8")
    except UnicodeDecodeError:
        _warn(f"Unable to parse file {path} to UTF-8")
        return None

    if not _UNSIGNED.fullmatch(text):
        _warn(f"Unable to parse value from {path}")
        return None
    value = int(text)
    if value >= _U64:
        _warn(f"Unable to parse value from {path}")
        return None
    return value