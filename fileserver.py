"""
Static file resolution and response generation.

Maps an untrusted request path onto an entry under the configured root
directory and turns it into a Response: a streamed file, an index page, a
directory listing, a redirect, or an error status.

Each call runs the same linear pipeline:
decode -> normalize -> guard -> stat -> dispatch -> stream.
Nothing is shared between calls except the read-only config, so one
resolver can be used from any number of threads at once.
"""

import errno
import html
import logging
import mimetypes
import os
import re
import stat
from http import HTTPStatus
from typing import BinaryIO, NamedTuple, Optional, Union
from urllib.parse import quote, unquote_to_bytes

from config import ServerConfig

logger = logging.getLogger(__name__)

# Python's built-in table only; the host's mime.types files are never read.
MIME_TYPES = mimetypes.MimeTypes()
for _ext, _type in (
    (".html", "text/html"),
    (".css", "text/css"),
    (".js", "text/javascript"),
    (".json", "application/json"),
    (".txt", "text/plain"),
    (".png", "image/png"),
    (".pdf", "application/pdf"),
    (".svg", "image/svg+xml"),
    (".wasm", "application/wasm"),
):
    MIME_TYPES.add_type(_type, _ext)

DEFAULT_CONTENT_TYPE = "application/octet-stream"

_BAD_ESCAPE = re.compile(r"%(?![0-9A-Fa-f]{2})")


class BadRequestPath(ValueError):
    """The request path cannot be decoded."""


class PathEscapesRoot(ValueError):
    """A ``..`` segment climbs above the root directory."""


class TruncatedFileError(OSError):
    """The file got shorter between stat and read."""


# Result of the stat step. Exactly one of these per request.

class NotFound(NamedTuple):
    pass


class PermissionDenied(NamedTuple):
    pass


class Unavailable(NamedTuple):
    error: OSError


class File(NamedTuple):
    size: int
    handle: BinaryIO


class Directory(NamedTuple):
    path: str


Entry = Union[NotFound, PermissionDenied, Unavailable, File, Directory]


class FileStream:
    """Iterates over exactly ``size`` bytes of an open file, then stops.

    Owns the handle: ``close()`` releases it and is safe to call twice.
    """

    def __init__(self, handle: BinaryIO, size: int, chunk_size: int):
        self.handle = handle
        self.size = size
        self.chunk_size = chunk_size

    def __iter__(self):
        remaining = self.size
        while remaining > 0:
            chunk = self.handle.read(min(self.chunk_size, remaining))
            if not chunk:
                raise TruncatedFileError(f"file ended {remaining} bytes early")
            remaining -= len(chunk)
            yield chunk

    def close(self):
        self.handle.close()


class Response:
    def __init__(self, status: int, headers: Optional[dict] = None, body: bytes = b"",
                 stream: Optional[FileStream] = None):
        self.status = HTTPStatus(status)
        self.headers = dict(headers or {})
        self.body = body
        self.stream = stream
        if stream is None:
            self.headers.setdefault("Content-Length", str(len(body)))

    @property
    def reason(self) -> str:
        return self.status.phrase

    def __iter__(self):
        if self.stream is not None:
            yield from self.stream
        elif self.body:
            yield self.body

    def close(self):
        if self.stream is not None:
            self.stream.close()

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        self.close()


def error_response(status: int) -> Response:
    status = HTTPStatus(status)
    body = f"{status.value} {status.phrase}".encode("utf-8")
    headers = {
        "Content-Type": "text/plain; charset=utf-8",
        "X-Content-Type-Options": "nosniff",
    }
    return Response(status, headers, body)


def redirect_response(location: str, query: str = "") -> Response:
    location = quote(location)
    if query:
        location += "?" + quote(query, safe="/?&=%+:;,@!$'()*~")
    headers = {"Location": location, "Content-Type": "text/plain; charset=utf-8"}
    return Response(HTTPStatus.MOVED_PERMANENTLY, headers, b"301 Moved Permanently")


def guess_content_type(path: str) -> str:
    _, ext = os.path.splitext(path)
    ctype = MIME_TYPES.types_map[True].get(ext.lower())
    if ctype is None:
        return DEFAULT_CONTENT_TYPE
    if ctype.startswith("text/"):
        return f"{ctype}; charset=utf-8"
    return ctype


def decode_path(path: str) -> str:
    """Percent-decode a request path into text.

    Raises BadRequestPath for malformed escapes, non-UTF-8 bytes, NUL, or a
    native path separator other than ``/``.
    """
    if _BAD_ESCAPE.search(path):
        raise BadRequestPath("malformed percent-escape")
    try:
        decoded = unquote_to_bytes(path).decode("utf-8")
    except UnicodeError as e:
        raise BadRequestPath("path is not valid UTF-8") from e
    if "\x00" in decoded:
        raise BadRequestPath("NUL in path")
    for sep in (os.sep, os.altsep):
        if sep and sep != "/" and sep in decoded:
            raise BadRequestPath("native path separator in path")
    return decoded


def normalize(decoded: str) -> list[str]:
    """Collapse ``.`` and ``..`` without touching the filesystem."""
    segments = []
    for part in decoded.split("/"):
        if part in ("", "."):
            continue
        if part == "..":
            if not segments:
                raise PathEscapesRoot(decoded)
            segments.pop()
        else:
            segments.append(part)
    return segments


def stat_entry(path: str) -> Entry:
    try:
        st = os.stat(path)
    except (FileNotFoundError, NotADirectoryError):
        return NotFound()
    except PermissionError:
        return PermissionDenied()
    except OSError as e:
        if e.errno in (errno.ENAMETOOLONG, errno.ELOOP):
            return NotFound()
        return Unavailable(e)

    if stat.S_ISDIR(st.st_mode):
        return Directory(path)
    # FIFOs, sockets and devices are not served
    if not stat.S_ISREG(st.st_mode):
        return NotFound()

    try:
        handle = open(path, "rb")
    except FileNotFoundError:
        return NotFound()
    except PermissionError:
        return PermissionDenied()
    except OSError as e:
        return Unavailable(e)
    return File(st.st_size, handle)


def directory_url(segments: list[str]) -> str:
    return "/" + "".join(segment + "/" for segment in segments)


def render_listing(directory: str, url_path: str) -> bytes:
    """HTML index of a directory, subdirectories first."""
    with os.scandir(directory) as it:
        entries = sorted(it, key=lambda e: (not e.is_dir(), e.name.lower()))

    base = quote(url_path)
    items = []
    if url_path != "/":
        parent = url_path.rstrip("/").rsplit("/", 1)[0] + "/"
        items.append(f'<li><a href="{quote(parent)}">..</a></li>')
    for entry in entries:
        is_dir = entry.is_dir()
        href = base + quote(entry.name, safe="", errors="surrogateescape") + ("/" if is_dir else "")
        name = html.escape(entry.name) + ("/" if is_dir else "")
        items.append(f'<li><a href="{html.escape(href)}">{name}</a></li>')

    title = html.escape(url_path)
    body = f"""<!doctype html>
<html>
  <head>
    <meta charset="utf-8" />
    <title>Index of {title}</title>
    <style>body{{font-family:system-ui,Segoe UI,Arial,sans-serif;max-width:800px;margin:2rem auto;padding:0 1rem}} li{{margin:0.25rem 0}}</style>
  </head>
  <body>
    <h1>Index of {title}</h1>
    <ul>
      {''.join(items)}
    </ul>
  </body>
</html>
"""
    return body.encode("utf-8", "replace")


class StaticFileResolver:
    def __init__(self, config: ServerConfig):
        self.config = config
        self.root = str(config.root)

    def serve(self, request_path: str) -> Response:
        """Resolve one request path against the root and build the response.

        The caller owns the returned response and must close it; a file
        response holds an open handle until then.
        """
        path, _, query = request_path.split("#", 1)[0].partition("?")
        if not path.startswith("/"):
            path = "/" + path

        try:
            decoded = decode_path(path)
        except BadRequestPath:
            return error_response(HTTPStatus.BAD_REQUEST)
        try:
            segments = normalize(decoded)
        except PathEscapesRoot:
            return error_response(HTTPStatus.FORBIDDEN)
        wants_dir = decoded.endswith("/")

        real = os.path.realpath(os.path.join(self.root, *segments))
        if not self.inside_root(real):
            return error_response(HTTPStatus.FORBIDDEN)

        entry = stat_entry(real)

        if isinstance(entry, File):
            if wants_dir:
                entry.handle.close()
                return redirect_response("/" + "/".join(segments), query)
            if segments and segments[-1] == self.config.index_file:
                entry.handle.close()
                return redirect_response(directory_url(segments[:-1]), query)
            return self.file_response(entry, segments[-1])

        if isinstance(entry, Directory):
            if not wants_dir:
                return redirect_response(directory_url(segments), query)
            return self.directory_response(entry, directory_url(segments))

        return self.failure_response(entry, real)

    def inside_root(self, real: str) -> bool:
        return os.path.commonpath([self.root, real]) == self.root

    def file_response(self, entry: File, name: str) -> Response:
        headers = {
            "Content-Type": guess_content_type(name),
            "Content-Length": str(entry.size),
        }
        stream = FileStream(entry.handle, entry.size, self.config.chunk_size)
        return Response(HTTPStatus.OK, headers, stream=stream)

    def directory_response(self, entry: Directory, url_path: str) -> Response:
        index_path = os.path.realpath(os.path.join(entry.path, self.config.index_file))
        if self.inside_root(index_path):
            index = stat_entry(index_path)
        else:
            index = PermissionDenied()

        if isinstance(index, File):
            return self.file_response(index, self.config.index_file)
        if isinstance(index, (PermissionDenied, Unavailable)):
            return self.failure_response(index, index_path)

        if not self.config.directory_listing:
            return error_response(HTTPStatus.FORBIDDEN)
        try:
            body = render_listing(entry.path, url_path)
        except PermissionError:
            return error_response(HTTPStatus.FORBIDDEN)
        except OSError as e:
            return self.failure_response(Unavailable(e), entry.path)
        headers = {"Content-Type": "text/html; charset=utf-8"}
        return Response(HTTPStatus.OK, headers, body)

    def failure_response(self, entry: Entry, path: str) -> Response:
        if isinstance(entry, PermissionDenied):
            return error_response(HTTPStatus.FORBIDDEN)
        if isinstance(entry, Unavailable):
            logger.warning(f"Cannot read {path}: {entry.error}")
            return error_response(HTTPStatus.INTERNAL_SERVER_ERROR)
        return error_response(HTTPStatus.NOT_FOUND)
