"""Command-line entry point: single-instance handling and the accept loop."""

from __future__ import annotations

import argparse
import ipaddress
import logging
import signal
import socket
import sys
import time
from types import FrameType

from .config import Config, IPAddress, load_config, read_number
from .counter import Counter
from .pidfile import kill_old_counter, remove_pid_file, write_pid_file
from .single import SingleInstance

log = logging.getLogger(__name__)

CONFIG_FILE = "config.toml"
INSTANCE_UUID = "1e5319b4-73ca-447d-a05d-eca92225ebb9"

_RETRIES = 20
_RETRY_DELAY = 0.05
_PROMPT = (
    "Another counter instance is running. "
    "Do you want to stop that old instance? (y/N) > "
)


class _Fatal(Exception):
    """A condition that ends the program with a non-zero status."""


def _claim() -> SingleInstance | None:
    try:
        return SingleInstance(INSTANCE_UUID)
    except OSError as exc:
        log.debug("Unable to check for other instances: %s", exc)
        return None


def _is_single(instance: SingleInstance | None) -> bool:
    return instance is not None and instance.is_single()


def _resolve_conflict(instance: SingleInstance | None) -> SingleInstance | None:
    """Ask whether to stop the running instance; return the instance to keep."""
    while True:
        print(_PROMPT, end="", file=sys.stderr, flush=True)
        try:
            choice = sys.stdin.readline()
        except (OSError, ValueError) as exc:
            raise _Fatal(f"Error reading user input: {exc}. Exiting...") from exc

        match choice.strip():
            case "y" | "Y":
                try:
                    kill_old_counter()
                except (OSError, ValueError) as exc:
                    raise _Fatal(
                        f"Unable to kill an old instance. Maybe it's running as root? ({exc})"
                    ) from exc
                for _ in range(_RETRIES):
                    if _is_single(instance):
                        break
                    time.sleep(_RETRY_DELAY)
                    if instance is not None:
                        instance.close()
                    instance = _claim()
                if not _is_single(instance):
                    log.debug("Wasn't able to reacquire a socket. Proceeding anyway...")
                return instance
            case "n" | "N" | "":
                return instance
            case _:
                print("Please, choose `y` or `n`.", file=sys.stderr)


def _on_sigint(signum: int, frame: FrameType | None) -> None:
    remove_pid_file()
    raise SystemExit(0)


def _split_host_port(address: str) -> tuple[str, int]:
    host, sep, port_text = address.rpartition(":")
    if not sep or not host or not port_text.isdigit():
        raise ValueError(f"invalid socket address: {address!r}")
    port = int(port_text)
    if port > 0xFFFF:
        raise ValueError(f"invalid port in socket address: {address!r}")
    if host.startswith("[") and host.endswith("]"):
        host = host[1:-1]
    return host, port


def _bind(address: str) -> socket.socket:
    host, port = _split_host_port(address)
    last_error: OSError | None = None
    for family, _, _, _, sockaddr in socket.getaddrinfo(
        host, port, type=socket.SOCK_STREAM
    ):
        try:
            return socket.create_server(sockaddr, family=family)
        except OSError as exc:
            last_error = exc
    raise last_error or OSError(f"could not resolve to any addresses: {address}")


def _peer_ip(address: tuple) -> IPAddress | None:
    try:
        return ipaddress.ip_address(address[0])
    except (ValueError, IndexError, TypeError):
        return None


def _serve(config: Config) -> int:
    print(f"Listening on {config.bind_addr}", flush=True)

    stored = read_number(config.counterfile)
    counter = Counter(
        count=stored if stored is not None else 0,
        filepath=config.counterfile,
        image_dir=config.image_dir,
        img_format=config.img_format,
        content_type=config.content_type,
        count_unique=config.count_unique,
        timeout=config.timeout,
        blacklist=config.blacklist,
        ua_list=config.ua_list,
        allow_empty_ua=config.allow_empty_ua,
    )

    try:
        listener = _bind(config.bind_addr)
    except (OSError, ValueError) as exc:
        print(f"Unable to bind address! Error: {exc}", file=sys.stderr)
        return 1

    with listener:
        while True:
            try:
                conn, address = listener.accept()
            except OSError as exc:
                print(f"Incoming connection error: {exc}", file=sys.stderr)
                continue
            counter.clear_timedout()
            counter.handle_connection(conn, _peer_ip(address))


def main(argv: list[str] | None = None) -> int:
    """Run the counter server using ``config.toml`` from the current directory."""
    parser = argparse.ArgumentParser(
        prog="nobscount",
        description="Serve a visit counter as a row of digit images.",
    )
    parser.parse_args(argv)

    instance = _claim()
    pid_path = None
    handler_installed = False
    previous_handler = None
    try:
        if instance is not None and not instance.is_single():
            instance = _resolve_conflict(instance)

        if _is_single(instance):
            pid_path = write_pid_file()

        try:
            previous_handler = signal.signal(signal.SIGINT, _on_sigint)
            handler_installed = True
        except ValueError as exc:
            log.debug("Unable to set SIGINT handler. PID file won't be removed; %s", exc)

        return _serve(load_config(CONFIG_FILE))
    except _Fatal as exc:
        print(exc, file=sys.stderr)
        return 1
    finally:
        if handler_installed and previous_handler is not None:
            signal.signal(signal.SIGINT, previous_handler)
        if pid_path is not None:
            remove_pid_file()
        if instance is not None:
            instance.close()


if __name__ == "__main__":
    sys.exit(main())