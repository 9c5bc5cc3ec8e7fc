import json
import os

import pytest
from pydantic import ValidationError

from jute.connection import Channel, ConnectionDescriptor, find_connection_file, jupyter_runtime_dir

CONNECTION_INFO = {
    "shell_port": 52001,
    "iopub_port": 52002,
    "stdin_port": 52003,
    "control_port": 52004,
    "hb_port": 52005,
    "ip": "127.0.0.1",
    "key": "a0436f6c-1916-498b-8eb9-e81ab9368e84",
    "transport": "tcp",
    "signature_scheme": "hmac-sha256",
    "kernel_name": "python3",
}


def test_from_file(tmp_path):
    path = tmp_path / "kernel-1234.json"
    path.write_text(json.dumps(CONNECTION_INFO))
    descriptor = ConnectionDescriptor.from_file(path)
    assert descriptor.key == CONNECTION_INFO["key"].encode()
    assert descriptor.digest_name == "sha256"
    assert descriptor.endpoint(Channel.SHELL) == "tcp://127.0.0.1:52001"
    assert descriptor.endpoint(Channel.HEARTBEAT) == "tcp://127.0.0.1:52005"
    assert descriptor.session_id


def test_ipc_endpoints():
    descriptor = ConnectionDescriptor.from_dict(dict(CONNECTION_INFO, transport="ipc", ip="/tmp/kernel"))
    assert descriptor.endpoint(Channel.IOPUB) == "ipc:///tmp/kernel-52002"


def test_descriptor_is_immutable():
    descriptor = ConnectionDescriptor.from_dict(CONNECTION_INFO)
    with pytest.raises(ValidationError):
        descriptor.key = b"other"


def test_session_ids_differ():
    first = ConnectionDescriptor.from_dict(CONNECTION_INFO)
    second = ConnectionDescriptor.from_dict(CONNECTION_INFO)
    assert first.session_id != second.session_id


@pytest.mark.parametrize("scheme", ["sha256", "hmac-nope", "rsa-sha256"])
def test_unsupported_signature_scheme(scheme):
    with pytest.raises(ValidationError):
        ConnectionDescriptor.from_dict(dict(CONNECTION_INFO, signature_scheme=scheme))


def test_unknown_transport():
    with pytest.raises(ValidationError):
        ConnectionDescriptor.from_dict(dict(CONNECTION_INFO, transport="udp"))


def test_missing_port():
    info = dict(CONNECTION_INFO)
    del info["hb_port"]
    with pytest.raises(ValidationError):
        ConnectionDescriptor.from_dict(info)


def test_stdin_port_is_optional():
    info = dict(CONNECTION_INFO)
    del info["stdin_port"]
    descriptor = ConnectionDescriptor.from_dict(info)
    assert descriptor.port(Channel.STDIN) is None
    assert descriptor.endpoint(Channel.STDIN) == ""
    assert descriptor.endpoint(Channel.SHELL) == "tcp://127.0.0.1:52001"


def test_required_channels():
    assert [c for c in Channel if not c.required] == [Channel.STDIN]


def test_find_connection_file(tmp_path, monkeypatch):
    monkeypatch.setenv("JUPYTER_RUNTIME_DIR", str(tmp_path))
    assert jupyter_runtime_dir() == str(tmp_path)
    path = tmp_path / "kernel-abcd.json"
    path.write_text(json.dumps(CONNECTION_INFO))
    assert find_connection_file() == str(path)
    assert find_connection_file("abcd") == str(path)
    assert find_connection_file(str(path)) == str(path)


def test_find_connection_file_missing(tmp_path):
    with pytest.raises(OSError):
        find_connection_file("kernel-*.json", paths=[str(tmp_path)])


def test_find_latest_connection_file(tmp_path):
    old = tmp_path / "kernel-old.json"
    new = tmp_path / "kernel-new.json"
    for path in (old, new):
        path.write_text("{}")
    os.utime(old, (1000, 1000))
    os.utime(new, (2000, 2000))
    assert find_connection_file(paths=[str(tmp_path)]) == str(new)
