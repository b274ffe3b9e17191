"""
Server configuration.

One immutable value holds everything the server needs: where to bind,
which directory to expose, and a few serving policies. It is built once
at startup from environment variables and command-line arguments and then
passed to the resolver and the transport.
"""

import os
from pathlib import Path
from typing import Mapping, Optional, Sequence

from pydantic import BaseModel, ConfigDict, Field, field_validator

USAGE = "Usage: python server.py [content_dir] [port] [max_threads]"

# Environment variable -> config field
ENV_VARS = {
    "HOST": "host",
    "PORT": "port",
    "ROOT_DIR": "root",
    "INDEX_FILE": "index_file",
    "DIRECTORY_LISTING": "directory_listing",
    "MAX_THREADS": "max_workers",
    "SOCKET_TIMEOUT": "socket_timeout",
}


class ServerConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    host: str = "0.0.0.0"
    port: int = Field(8080, ge=0, le=65535)
    root: Path = Field(Path("/www/"), validate_default=True)
    index_file: str = "index.html"
    directory_listing: bool = True
    max_workers: int = Field(10, gt=0)
    socket_timeout: float = Field(5.0, gt=0)
    chunk_size: int = Field(64 * 1024, gt=0)
    max_header_bytes: int = Field(64 * 1024, gt=0)

    @field_validator("root")
    @classmethod
    def root_must_be_directory(cls, value: Path) -> Path:
        resolved = Path(os.path.realpath(value.expanduser()))
        if not resolved.is_dir():
            raise ValueError(f"root directory does not exist: {value}")
        return resolved

    @field_validator("index_file")
    @classmethod
    def index_file_must_be_plain_name(cls, value: str) -> str:
        if not value or "/" in value or value in (".", ".."):
            raise ValueError(f"index file must be a plain file name, got {value!r}")
        return value


def load_config(argv: Optional[Sequence[str]] = None, environ: Optional[Mapping[str, str]] = None) -> ServerConfig:
    """Build a config from the environment, then let positional arguments override it.

    Arguments are ``[content_dir] [port] [max_threads]``. Values are handed
    to pydantic as strings and coerced there, so ``PORT=abc`` and
    ``server.py /www abc`` fail the same way.
    """
    environ = os.environ if environ is None else environ
    argv = [] if argv is None else list(argv)

    values = {}
    for var, field in ENV_VARS.items():
        if environ.get(var):
            values[field] = environ[var]

    if len(argv) > 3:
        raise ValueError(USAGE)
    for field, arg in zip(("root", "port", "max_workers"), argv):
        values[field] = arg

    return ServerConfig(**values)
