import io
import ipaddress
import re
import socket

import pytest

from nobscount.config import read_number
from nobscount.counter import (
    BAD_REQUEST,
    OK,
    Counter,
    allow_useragent,
    check_x_real_ip,
    parse_arg,
    respond,
)

PEER = ipaddress.ip_address("192.0.2.1")
OTHER = ipaddress.ip_address("192.0.2.2")


class FakeClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


def _recv_all(sock: socket.socket) -> bytes:
    chunks = []
    while chunk := sock.recv(4096):
        chunks.append(chunk)
    return b"".join(chunks)


def exchange(counter, path, peer=PEER, headers=(), verb="GET"):
    client, server = socket.socketpair()
    client.settimeout(5)
    with client:
        lines = [f"{verb} {path} HTTP/1.1", "Host: localhost", *headers, "", ""]
        client.sendall("\r\n".join(lines).encode())
        counter.handle_connection(server, peer)
        return _recv_all(client)


def split_response(data: bytes):
    head, _, body = data.partition(b"\r\n\r\n")
    return head.decode().split("\r\n"), body


@pytest.fixture
def images(tmp_path):
    directory = tmp_path / "img"
    directory.mkdir()
    for name in [*map(str, range(10)), "empty"]:
        (directory / f"{name}.jpg").write_bytes(f"image-{name}".encode())
    return directory


@pytest.fixture
def counter(tmp_path, images):
    return Counter(
        count=41,
        filepath=tmp_path / "count.bin",
        image_dir=str(images),
        allow_empty_ua=True,
    )


@pytest.mark.parametrize(
    ("arg", "expected"),
    [("n=3", 3), ("n=0", 0), ("n=255", 255), ("n=+7", 7)],
)
def test_parse_arg_accepts_small_unsigned(arg, expected):
    assert parse_arg(arg) == expected


@pytest.mark.parametrize("arg", ["m=3", "n", "n=256", "n=-1", "n=abc", "n=", "n=1=2"])
def test_parse_arg_rejects(arg):
    assert parse_arg(arg) is None


def test_check_x_real_ip_finds_address():
    request = "GET / HTTP/1.1\nX-Real-IP:  198.51.100.4 \nHost: x"
    assert check_x_real_ip(request) == ipaddress.ip_address("198.51.100.4")


def test_check_x_real_ip_uses_first_header_only():
    request = "GET / HTTP/1.1\nX-Real-IP: bogus\nX-Real-IP: 198.51.100.4"
    assert check_x_real_ip(request) is None


def test_check_x_real_ip_absent():
    assert check_x_real_ip("GET / HTTP/1.1\nHost: x") is None


def test_check_x_real_ip_ipv6():
    request = "GET / HTTP/1.1\nX-Real-IP: 2001:db8::1"
    assert check_x_real_ip(request) == ipaddress.ip_address("2001:db8::1")


@pytest.mark.parametrize("allow_empty", [True, False])
def test_allow_useragent_without_header(allow_empty):
    assert allow_useragent("GET / HTTP/1.1", [re.compile("bot")], allow_empty) is allow_empty


def test_allow_useragent_matching_pattern_refused():
    request = "GET / HTTP/1.1\nUser-Agent: SomeBot/2.0"
    assert allow_useragent(request, [re.compile("Bot")], False) is False


def test_allow_useragent_non_matching_allowed():
    request = "GET / HTTP/1.1\nUser-Agent: Browser/1.0"
    assert allow_useragent(request, [re.compile("Bot")], False) is True


def test_respond_with_content_type():
    out = io.BytesIO()
    respond(out, OK, "text/javascript")
    assert out.getvalue() == b"HTTP/1.1 200 OK\r\nContent-Type: text/javascript\r\n\r\n"


def test_respond_without_content_type():
    out = io.BytesIO()
    respond(out, BAD_REQUEST)
    assert out.getvalue() == b"HTTP/1.1 400 Bad Request\r\n\r\n"


def test_increment_counts_and_persists(counter):
    before = counter.count
    data = exchange(counter, "/increment")
    head, _ = split_response(data)
    assert head[0] == "HTTP/1.1 200 OK"
    assert "Content-Type: text/javascript" in head
    assert counter.count == before + 1
    assert read_number(counter.filepath) == counter.count


def test_blacklisted_peer_not_counted(counter):
    counter.blacklist.append(PEER)
    before = counter.count
    data = exchange(counter, "/increment")
    assert data.startswith(b"HTTP/1.1 200 OK\r\n")
    assert counter.count == before


def test_x_real_ip_overrides_peer_for_blacklist(counter):
    counter.blacklist.append(OTHER)
    before = counter.count
    exchange(counter, "/increment", headers=[f"X-Real-IP: {OTHER}"])
    assert counter.count == before
    counter.blacklist[:] = [PEER]
    exchange(counter, "/increment", headers=[f"X-Real-IP: {OTHER}"])
    assert counter.count == before + 1


def test_missing_peer_not_counted(counter):
    before = counter.count
    data = exchange(counter, "/increment", peer=None)
    assert data.startswith(b"HTTP/1.1 200 OK\r\n")
    assert counter.count == before


def test_filtered_user_agent_not_counted(counter, capsys):
    counter.ua_list.append(re.compile("BadBot"))
    before = counter.count
    exchange(counter, "/increment", headers=["User-Agent: BadBot/1.0"])
    assert counter.count == before
    assert "Connection filtered based on user-agent: BadBot/1.0" in capsys.readouterr().err


def test_empty_user_agent_refused_by_default(tmp_path, images):
    counter = Counter(count=5, filepath=tmp_path / "c.bin", image_dir=str(images))
    exchange(counter, "/increment")
    assert counter.count == 5


def test_count_unique_counts_each_ip_once(counter):
    counter.count_unique = True
    before = counter.count
    exchange(counter, "/increment")
    exchange(counter, "/increment")
    assert counter.count == before + 1
    assert PEER in counter.uniques
    exchange(counter, "/increment", peer=OTHER)
    assert counter.count == before + 2


def test_unique_entries_expire(tmp_path, images):
    clock = FakeClock()
    counter = Counter(
        filepath=tmp_path / "c.bin",
        image_dir=str(images),
        count_unique=True,
        timeout=10,
        allow_empty_ua=True,
        clock=clock,
    )
    exchange(counter, "/increment")
    first = counter.count
    clock.now += 9.5
    counter.clear_timedout()
    assert PEER in counter.uniques
    exchange(counter, "/increment")
    assert counter.count == first
    clock.now += 0.5
    counter.clear_timedout()
    assert PEER not in counter.uniques
    exchange(counter, "/increment")
    assert counter.count == first + 1


def test_get_sends_digit_image(counter, images):
    counter.count = 12
    head, body = split_response(exchange(counter, "/get?n=1"))
    assert head[0] == "HTTP/1.1 200 OK"
    assert "Content-Type: image/jpeg" in head
    assert f"Content-Length: {len(body)}" in head
    assert body == (images / "2.jpg").read_bytes()


def test_get_beyond_digits_sends_empty_image(counter, images):
    counter.count = 12
    _, body = split_response(exchange(counter, "/get?n=3"))
    assert body == (images / "empty.jpg").read_bytes()


def test_get_missing_image_is_internal_error(tmp_path):
    counter = Counter(count=3, filepath=tmp_path / "c.bin", image_dir=str(tmp_path / "none"))
    data = exchange(counter, "/get?n=1")
    assert data == (
        b"HTTP/1.1 500 Internal Server Error\r\n"
        b"Content-Type: image/jpeg\r\nContent-Length: 0\r\n\r\n"
    )


@pytest.mark.parametrize("path", ["/get?n=0", "/get", "/get?x=1", "/nothing"])
def test_bad_requests(counter, path):
    before = counter.count
    assert exchange(counter, path) == b"HTTP/1.1 400 Bad Request\r\n\r\n"
    assert counter.count == before


def test_non_get_gets_no_response(counter):
    before = counter.count
    assert exchange(counter, "/increment", verb="POST") == b""
    assert counter.count == before