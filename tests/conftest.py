import threading

import pytest

from config import ServerConfig
from fileserver import StaticFileResolver
from server import StaticFileServer

SECRET = b"TOP SECRET, outside the web root"


@pytest.fixture
def www(tmp_path):
    """A small web root, plus a secret file next to it that must never be served."""
    root = tmp_path / "www"
    root.mkdir()
    (root / "index.html").write_text("<h1>home</h1>")
    (root / "foo.txt").write_text("hello from foo\n")
    (root / "image.png").write_bytes(bytes(range(256)) * 16)
    (root / "blob.qqq").write_bytes(b"\x00\x01\x02binary")

    subdir = root / "subdir"
    subdir.mkdir()
    (subdir / "index.html").write_text("<h1>subdir</h1>")
    (subdir / "note.txt").write_text("note")

    docs = root / "docs"
    docs.mkdir()
    (docs / "a.txt").write_text("a")
    (docs / "b & c.txt").write_text("b and c")
    (docs / "nested").mkdir()

    (tmp_path / "secret.txt").write_bytes(SECRET)
    return root


@pytest.fixture
def make_config(www):
    def _make(**overrides):
        values = {"root": www, "host": "127.0.0.1", "port": 0}
        values.update(overrides)
        return ServerConfig(**values)
    return _make


@pytest.fixture
def resolver(make_config):
    return StaticFileResolver(make_config())


@pytest.fixture
def start_server(make_config):
    """Start servers in background threads; all of them are stopped at teardown."""
    started = []

    def _start(server=None, **overrides):
        if server is None:
            server = StaticFileServer(make_config(**overrides))
            server.bind()
        thread = threading.Thread(target=server.serve_forever, daemon=True)
        thread.start()
        started.append((server, thread))
        return server, thread

    yield _start
    for server, thread in started:
        server.shutdown()
        thread.join(timeout=10)
        server.close()


@pytest.fixture
def live_server(start_server):
    server, _ = start_server()
    return server


@pytest.fixture
def base_url(live_server):
    host, port = live_server.server_address
    return f"http://{host}:{port}"
