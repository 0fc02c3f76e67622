# nobscount

A small page hit counter. It keeps a single number on disk, increments it when
a page asks it to, and serves that number back one digit at a time as images,
so it can be embedded in any page with plain `<img>` tags.

## Installing

```
pip install .
```

## Running

Start the server from the directory that holds your configuration and digit
images:

```
nobscount
```

The command takes no options apart from `--help`. It reads `config.toml` from
the current directory if present (a missing or invalid file means the
defaults are used), prints the address it listens on, and serves requests
until interrupted with Ctrl+C. The stored count is read from the counter file
at start-up; if that file is missing or does not hold a plain decimal number,
counting starts at 0.

Only one counter runs at a time. This is detected through a name in the Linux
abstract socket namespace, so the check works on Linux only. If another
instance is already running you are asked whether to stop it; answering `y`
sends that process SIGINT, using the process id it recorded in `.counter.pid`
in its working directory (or, if that was not writable, in a `.counter.pid`
placed next to the system temporary directory). On SIGINT the server removes
`.counter.pid` from the current directory and exits.

## Endpoints

Each connection carries one request and is closed after the answer.

- `GET /increment` – adds one to the counter, writes the new value to the
  counter file, and answers `200 OK` with `Content-Type: text/javascript` and
  no body. Blacklisted addresses and filtered user agents get the same answer
  but are not counted. With `count_unique` on, each address is counted once
  and then ignored until `timeout` seconds have passed.
- `GET /get?n=<position>` – returns the image for the digit at `position`,
  counting from 1 for the least significant digit (`n` may be 1 to 255).
  Positions beyond the number's length, and every position while the count is
  0, get the `empty` image. If the image file cannot be read the answer is
  `500 Internal Server Error` with an empty body.
- `n=0`, a missing or unparsable argument, another argument name, or any
  other path answer `400 Bad Request`. Requests that are not `GET` are closed
  without an answer.

When the server sits behind a reverse proxy, a valid `X-Real-IP` header is
used as the client address.

A page shows a five-digit counter like this:

```html
<script src="http://localhost:1234/increment"></script>
<img src="http://localhost:1234/get?n=5"><img src="http://localhost:1234/get?n=4"><img src="http://localhost:1234/get?n=3"><img src="http://localhost:1234/get?n=2"><img src="http://localhost:1234/get?n=1">
```

## Images

The image directory holds one file per digit, `0.jpg` to `9.jpg`, plus
`empty.jpg` for leading positions. The directory, extension and content type
are configurable.

## Configuration

Every key in `config.toml` is optional:

```toml
counterfile = "count.bin"        # where the count is stored
bind_addr = "0.0.0.0:1234"       # address and port to listen on
image_dir = "img"                # directory holding the digit images
img_format = "jpg"               # image file extension
content_type = "image/jpeg"      # Content-Type sent with images
count_unique = false             # count each address once per timeout
timeout = 3600                   # seconds before an address counts again
blacklist = ["192.0.2.10"]       # addresses that are never counted
useragent_regexes = ["bot", "crawler"]  # user agents that are never counted
allow_empty_uas = false          # count requests without a User-Agent
```

Keys with the wrong type are ignored and their defaults kept. If
`blacklist` holds anything but strings, it is ignored entirely; entries that
are not valid IP addresses are skipped, as are invalid regular expressions.
A user agent is filtered when any of the expressions matches anywhere in it.

## Using it from Python

```python
from nobscount.config import load_config, read_number

config = load_config("config.toml")
current = read_number(config.counterfile)
```

The package is made of:

- `nobscount.config` – `Config`, `load_config(path)` and `read_number(path)`.
- `nobscount.counter` – `Counter` with `handle_connection(conn, peer_ip)` and
  `clear_timedout()`, plus the helpers `parse_arg`, `check_x_real_ip`,
  `allow_useragent` and `respond`.
- `nobscount.single` – `SingleInstance`, with `is_single()` and `close()`,
  usable as a context manager.
- `nobscount.pidfile` – `write_pid_file()`, `kill_old_counter()` and
  `remove_pid_file()`.
- `nobscount.server` – `main(argv=None)`, the `nobscount` command.

## What it does not do

The server handles one connection at a time, reads only the request head,
and speaks just enough HTTP for the two endpoints above: no keep-alive, no
TLS and no other routes.

## Running the tests

```
pip install .[test]
pytest
```