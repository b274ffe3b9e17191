#!/usr/bin/env python3
"""
Threaded HTTP/1.1 server exposing one directory.

The socket side of the server: accepts connections, hands each one to a
worker thread, parses the request line, asks the StaticFileResolver for a
response, and writes it back. One request per connection.
"""

import email.utils
import logging
import re
import socket
import sys
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from http import HTTPStatus
from typing import Optional, Sequence
from urllib.parse import urlsplit

from config import USAGE, ServerConfig, load_config
from fileserver import Response, StaticFileResolver, error_response

logger = logging.getLogger(__name__)

ALLOWED_METHODS = ("GET", "HEAD")
ACCEPT_POLL_SECONDS = 0.5
ACCEPT_ERROR_BACKOFF = 0.1
# Connections in flight (being served or queued for a worker), per worker
PENDING_PER_WORKER = 4
LINGER_SECONDS = 0.5
LINGER_MAX_BYTES = 1024 * 1024

_HEAD_END = re.compile(rb"\r?\n\r?\n")


class RequestError(Exception):
    """The request cannot be answered by the resolver."""

    def __init__(self, status: int):
        super().__init__(status)
        self.status = HTTPStatus(status)


def http_date(ts: Optional[float] = None) -> str:
    # RFC 7231 format
    return email.utils.formatdate(ts, usegmt=True)


def build_http_head(response: Response) -> bytes:
    lines = [f"HTTP/1.1 {response.status.value} {response.reason}\r\n"]
    headers = dict(response.headers)
    headers["Date"] = http_date()
    headers["Connection"] = "close"
    for key, value in headers.items():
        lines.append(f"{key}: {value}\r\n")
    lines.append("\r\n")
    return "".join(lines).encode("iso-8859-1")


def read_request_head(conn: socket.socket, limit: int) -> Optional[bytes]:
    """Read up to the blank line ending the headers.

    Bare LF line endings are accepted as well as CRLF. Returns None when the
    client goes away or stalls before sending a full request head.
    """
    data = b""
    while True:
        end = _HEAD_END.search(data)
        if end is not None:
            break
        if len(data) > limit:
            raise RequestError(HTTPStatus.REQUEST_HEADER_FIELDS_TOO_LARGE)
        try:
            chunk = conn.recv(4096)
        except (socket.timeout, TimeoutError):
            return None
        if not chunk:
            return None
        data += chunk
    head = data[:end.start()]
    if len(head) > limit:
        raise RequestError(HTTPStatus.REQUEST_HEADER_FIELDS_TOO_LARGE)
    return head


def linger_close(conn: socket.socket):
    """Discard what the client is still sending before the socket is closed.

    Closing with unread data makes the kernel send a reset, which can
    destroy an error response the client has not read yet.
    """
    try:
        conn.shutdown(socket.SHUT_WR)
        conn.settimeout(LINGER_SECONDS)
        drained = 0
        while drained < LINGER_MAX_BYTES:
            chunk = conn.recv(65536)
            if not chunk:
                break
            drained += len(chunk)
    except (socket.timeout, TimeoutError):
        pass


def parse_request_line(head: bytes) -> tuple[str, str]:
    """Return (method, target) from the first line of a request head."""
    request_line = head.split(b"\n", 1)[0].rstrip(b"\r").decode("iso-8859-1")
    parts = request_line.split(" ")
    if len(parts) != 3 or not all(parts):
        raise RequestError(HTTPStatus.BAD_REQUEST)
    method, target, version = parts
    if not version.startswith("HTTP/1."):
        raise RequestError(HTTPStatus.BAD_REQUEST)

    # Raw non-ASCII bytes in the target are taken as UTF-8
    try:
        target = target.encode("iso-8859-1").decode("utf-8")
    except UnicodeDecodeError:
        raise RequestError(HTTPStatus.BAD_REQUEST) from None

    if target.startswith(("http://", "https://")):
        parts = urlsplit(target)
        target = parts.path or "/"
        if parts.query:
            target += "?" + parts.query
    elif not target.startswith("/"):
        raise RequestError(HTTPStatus.BAD_REQUEST)
    return method, target


class StaticFileServer:
    """Listening socket plus a pool of worker threads.

    Usage::

        with StaticFileServer(config) as server:
            server.bind()
            server.serve_forever()
    """

    def __init__(self, config: ServerConfig):
        self.config = config
        self.resolver = StaticFileResolver(config)
        self.socket: Optional[socket.socket] = None
        self._shutdown = threading.Event()
        self._slots = threading.BoundedSemaphore(config.max_workers * PENDING_PER_WORKER)

    @property
    def server_address(self) -> tuple[str, int]:
        return self.socket.getsockname()[:2]

    def bind(self):
        s = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        try:
            s.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            s.bind((self.config.host, self.config.port))
            s.listen(socket.SOMAXCONN)
        except OSError:
            s.close()
            raise
        s.settimeout(ACCEPT_POLL_SECONDS)
        self.socket = s

    def serve_forever(self):
        host, port = self.server_address
        logger.info(f"Serving {self.config.root} on {host}:{port} (max {self.config.max_workers} threads)")
        with ThreadPoolExecutor(max_workers=self.config.max_workers) as executor:
            while not self._shutdown.is_set():
                # Past the cap, new connections wait in the listen backlog
                if not self._slots.acquire(timeout=ACCEPT_POLL_SECONDS):
                    continue
                try:
                    conn, addr = self.socket.accept()
                except (socket.timeout, TimeoutError):
                    self._slots.release()
                    continue
                except OSError as e:
                    # EMFILE, ENFILE, ECONNABORTED and friends are transient
                    self._slots.release()
                    logger.warning(f"accept() failed: {e}")
                    time.sleep(ACCEPT_ERROR_BACKOFF)
                    continue
                executor.submit(self.handle_connection, conn, addr)
        logger.info("Server stopped")

    def shutdown(self):
        self._shutdown.set()

    def close(self):
        if self.socket is not None:
            self.socket.close()
            self.socket = None

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        self.close()

    def handle_connection(self, conn: socket.socket, client_addr):
        client_ip = client_addr[0]
        try:
            conn.settimeout(self.config.socket_timeout)
            self.handle_request(conn, client_ip)
        except OSError as e:
            logger.warning(f"Connection from {client_ip} failed: {e}")
        except Exception:
            logger.exception(f"Unhandled error while serving {client_ip}")
        finally:
            conn.close()
            self._slots.release()

    def handle_request(self, conn: socket.socket, client_ip: str):
        method, target = "-", "-"
        try:
            head = read_request_head(conn, self.config.max_header_bytes)
            if head is None:
                return
            method, target = parse_request_line(head)
            if method not in ALLOWED_METHODS:
                raise RequestError(HTTPStatus.METHOD_NOT_ALLOWED)
        except RequestError as e:
            response = error_response(e.status)
            if e.status == HTTPStatus.METHOD_NOT_ALLOWED:
                response.headers["Allow"] = ", ".join(ALLOWED_METHODS)
            logger.info(f'{client_ip} "{method} {target}" {response.status.value}')
            conn.sendall(build_http_head(response) + response.body)
            linger_close(conn)
            return

        response = self.resolver.serve(target)
        logger.info(f'{client_ip} "{method} {target}" {response.status.value}')
        try:
            self.send_response(conn, response, include_body=(method != "HEAD"))
        except OSError as e:
            # Headers may be out already; all we can do is drop the connection
            logger.warning(f'{client_ip} "{method} {target}" aborted: {e}')
        finally:
            response.close()

    def send_response(self, conn: socket.socket, response: Response, include_body: bool = True):
        conn.sendall(build_http_head(response))
        if include_body:
            for chunk in response:
                conn.sendall(chunk)


def main(argv: Optional[Sequence[str]] = None):
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    argv = sys.argv[1:] if argv is None else argv
    if argv and argv[0] in ("-h", "--help"):
        print(USAGE)
        return

    try:
        config = load_config(argv)
    except ValueError as e:
        logger.error(f"Invalid configuration: {e}")
        print(USAGE, file=sys.stderr)
        sys.exit(1)

    server = StaticFileServer(config)
    try:
        server.bind()
    except OSError as e:
        logger.error(f"Cannot listen on {config.host}:{config.port}: {e}")
        sys.exit(1)

    with server:
        try:
            server.serve_forever()
        except KeyboardInterrupt:
            logger.info("Shutting down...")


if __name__ == "__main__":
    main()
