import os
from pathlib import Path

import pytest
from pydantic import ValidationError

from config import ServerConfig, load_config


def test_defaults(tmp_path):
    config = ServerConfig(root=tmp_path)

    assert config.host == "0.0.0.0"
    assert config.port == 8080
    assert config.index_file == "index.html"
    assert config.directory_listing is True
    assert config.max_workers == 10


def test_root_is_resolved(tmp_path):
    (tmp_path / "www").mkdir()

    config = ServerConfig(root=str(tmp_path / "www" / ".." / "www"))

    assert config.root == Path(os.path.realpath(tmp_path / "www"))


def test_root_must_exist(tmp_path):
    with pytest.raises(ValidationError):
        ServerConfig(root=tmp_path / "missing")
    (tmp_path / "file").write_text("x")
    with pytest.raises(ValidationError):
        ServerConfig(root=tmp_path / "file")


@pytest.mark.skipif(os.path.isdir("/www"), reason="/www exists on this machine")
def test_default_root_is_checked():
    with pytest.raises(ValidationError):
        ServerConfig()


def test_config_is_frozen(tmp_path):
    config = ServerConfig(root=tmp_path)

    with pytest.raises(ValidationError):
        config.port = 9090


@pytest.mark.parametrize("index_file", ["", "../index.html", "a/b.html", ".."])
def test_index_file_must_be_plain_name(tmp_path, index_file):
    with pytest.raises(ValidationError):
        ServerConfig(root=tmp_path, index_file=index_file)


def test_load_from_environment(tmp_path):
    environ = {
        "ROOT_DIR": str(tmp_path),
        "HOST": "127.0.0.1",
        "PORT": "9000",
        "DIRECTORY_LISTING": "false",
        "MAX_THREADS": "3",
        "UNRELATED": "ignored",
    }

    config = load_config([], environ)

    assert config.root == Path(os.path.realpath(tmp_path))
    assert config.host == "127.0.0.1"
    assert config.port == 9000
    assert config.directory_listing is False
    assert config.max_workers == 3


def test_arguments_override_environment(tmp_path):
    other = tmp_path / "other"
    other.mkdir()
    environ = {"ROOT_DIR": str(tmp_path), "PORT": "9000"}

    config = load_config([str(other), "8081", "4"], environ)

    assert config.root == Path(os.path.realpath(other))
    assert config.port == 8081
    assert config.max_workers == 4


@pytest.mark.parametrize("port", ["70000", "-1", "abc"])
def test_invalid_port(tmp_path, port):
    with pytest.raises(ValidationError):
        load_config([str(tmp_path), port], {})


def test_too_many_arguments(tmp_path):
    with pytest.raises(ValueError):
        load_config([str(tmp_path), "8080", "4", "extra"], {})
