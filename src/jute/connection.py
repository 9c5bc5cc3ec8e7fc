import glob
import hashlib
import json
import os
import sys
import uuid
from enum import Enum
from pathlib import Path
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator


class Channel(str, Enum):
    SHELL = "shell"
    IOPUB = "iopub"
    STDIN = "stdin"
    CONTROL = "control"
    HEARTBEAT = "hb"

    @property
    def required(self) -> bool:
        return self is not Channel.STDIN

    def __str__(self) -> str:
        return self.value


class ConnectionDescriptor(BaseModel):
    """Where a running kernel listens and how its messages are signed.

    Mirrors the kernel connection file written by the launcher.
    """

    model_config = ConfigDict(frozen=True, extra="ignore")

    transport: Literal["tcp", "ipc"] = "tcp"
    ip: str = "127.0.0.1"
    shell_port: int
    iopub_port: int
    # some launchers do not open stdin
    stdin_port: int | None = None
    control_port: int
    hb_port: int
    key: bytes = b""
    signature_scheme: str = "hmac-sha256"
    session_id: str = Field(default_factory=lambda: uuid.uuid4().hex)

    @field_validator("key", mode="before")
    @classmethod
    def _encode_key(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.encode("utf8")
        return value

    @field_validator("signature_scheme")
    @classmethod
    def _check_scheme(cls, value: str) -> str:
        scheme, _, algorithm = value.partition("-")
        if scheme != "hmac" or algorithm not in hashlib.algorithms_available:
            raise ValueError(f"Unsupported signature scheme: {value}")
        return value

    @property
    def digest_name(self) -> str:
        return self.signature_scheme.partition("-")[2]

    def port(self, channel: Channel) -> int | None:
        return {
            Channel.SHELL: self.shell_port,
            Channel.IOPUB: self.iopub_port,
            Channel.STDIN: self.stdin_port,
            Channel.CONTROL: self.control_port,
            Channel.HEARTBEAT: self.hb_port,
        }[channel]

    def endpoint(self, channel: Channel) -> str:
        if self.port(channel) is None:
            return ""
        if self.transport == "tcp":
            return f"tcp://{self.ip}:{self.port(channel)}"
        return f"ipc://{self.ip}-{self.port(channel)}"

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ConnectionDescriptor":
        return cls.model_validate(data)

    @classmethod
    def from_file(cls, path: str | Path) -> "ConnectionDescriptor":
        with open(path) as f:
            return cls.from_dict(json.load(f))


def _expand_path(s):
    s = os.path.expandvars(os.path.expanduser(s))
    return s


def _filefind(filename, path_dirs=()):
    filename = filename.strip('"').strip("'")
    if os.path.isabs(filename) and os.path.isfile(filename):
        return filename

    path_dirs = path_dirs or ("",)

    for path in path_dirs:
        if path == ".":
            path = os.getcwd()
        testname = _expand_path(os.path.join(path, filename))
        if os.path.isfile(testname):
            return os.path.abspath(testname)

    return ""


def get_home_dir():
    home = os.path.expanduser("~")
    home = os.path.realpath(home)
    return home


def jupyter_data_dir():
    if "JUPYTER_DATA_DIR" in os.environ:
        return os.environ["JUPYTER_DATA_DIR"]

    home = get_home_dir()

    if sys.platform == "darwin":
        return os.path.join(home, "Library", "Jupyter")
    elif os.name == "nt":
        appdata = os.environ.get("APPDATA", None)
        if appdata:
            return os.path.join(appdata, "jupyter")
        else:
            return os.path.join(home, ".jupyter", "data")
    else:
        xdg = os.environ.get("XDG_DATA_HOME", None)
        if not xdg:
            xdg = os.path.join(home, ".local", "share")
        return os.path.join(xdg, "jupyter")


def jupyter_runtime_dir():
    if "JUPYTER_RUNTIME_DIR" in os.environ:
        return os.environ["JUPYTER_RUNTIME_DIR"]
    return os.path.join(jupyter_data_dir(), "runtime")


def find_connection_file(
    filename: str = "kernel-*.json",
    paths: list[str] | None = None,
) -> str:
    if not paths:
        paths = [".", jupyter_runtime_dir()]

    path = _filefind(filename, paths)
    if path:
        return path

    if "*" in filename:
        pat = filename
    else:
        pat = f"*{filename}*"

    matches = []
    for p in paths:
        matches.extend(glob.glob(os.path.join(p, pat)))

    matches = [os.path.abspath(m) for m in matches]
    if not matches:
        raise OSError(f"Could not find {filename} in {paths}")
    elif len(matches) == 1:
        return matches[0]
    else:
        return sorted(matches, key=lambda f: os.stat(f).st_atime)[-1]
