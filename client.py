#!/usr/bin/env python3
"""
Minimal HTTP client for the directory server.

Sends the request target exactly as given, without the dot-segment
cleanup that browsers and HTTP libraries apply, so it can also be used to
send the server hostile paths.
"""

import socket
import sys
from email.parser import BytesHeaderParser
from pathlib import Path
from typing import NamedTuple


class HTTPReply(NamedTuple):
    status: int
    reason: str
    headers: dict
    body: bytes


def recv_all(sock: socket.socket, timeout: float = 3.0) -> bytes:
    """Read until the server closes the connection, a reset, or a stall."""
    sock.settimeout(timeout)
    buf = bytearray()
    while True:
        try:
            data = sock.recv(65536)
        except (socket.timeout, TimeoutError, ConnectionResetError):
            break
        if not data:
            break
        buf += data
    return bytes(buf)


def parse_response(raw: bytes) -> HTTPReply:
    """Split a raw response into status, reason, lower-cased headers and body.

    Anything without a blank line after the head comes back as status 0
    with the raw bytes as body.
    """
    head, sep, body = raw.partition(b"\r\n\r\n")
    if not sep:
        return HTTPReply(0, "", {}, raw)
    status_line, _, header_block = head.partition(b"\r\n")
    _, _, rest = status_line.decode("iso-8859-1").partition(" ")
    code, _, reason = rest.partition(" ")
    message = BytesHeaderParser().parsebytes(header_block + b"\r\n\r\n")
    headers = {key.lower(): value for key, value in message.items()}
    return HTTPReply(int(code) if code.isdigit() else 0, reason, headers, body)


def send_raw(host: str, port: int, request: bytes, timeout: float = 5.0) -> bytes:
    with socket.create_connection((host, port), timeout=timeout) as sock:
        sock.sendall(request)
        return recv_all(sock, timeout=timeout)


def fetch(host: str, port: int, path: str, method: str = "GET", timeout: float = 5.0) -> HTTPReply:
    """Request ``path`` verbatim."""
    request = f"{method} {path} HTTP/1.1\r\nHost: {host}\r\nConnection: close\r\n\r\n".encode("iso-8859-1")
    return parse_response(send_raw(host, port, request, timeout=timeout))


def main():
    if len(sys.argv) not in (4, 5):
        print("Usage: python client.py server_host server_port url_path [directory]", file=sys.stderr)
        sys.exit(1)
    host = sys.argv[1]
    port = int(sys.argv[2])
    path = sys.argv[3]
    outdir = Path(sys.argv[4]) if len(sys.argv) == 5 else Path.cwd()
    if not path.startswith("/"):
        path = "/" + path

    status, reason, headers, body = fetch(host, port, path)
    ctype = headers.get("content-type", "")
    if status != 200:
        print(f"{status} {reason}: {body.decode('utf-8', errors='replace')}", file=sys.stderr)
        sys.exit(1)

    if ctype.startswith("text/"):
        print(body.decode("utf-8", errors="replace"))
        return

    outdir.mkdir(parents=True, exist_ok=True)
    target = outdir / (Path(path.split("?", 1)[0]).name or "download")
    with open(target, "wb") as f:
        f.write(body)
    print(str(target))


if __name__ == "__main__":
    main()
