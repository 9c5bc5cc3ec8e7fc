"""Wire format of kernel messages.

A message travels as a list of byte segments::

    [*identities, b"<IDS|MSG>", signature, header, parent_header, metadata, content, *buffers]

The signature is an HMAC over the four JSON segments, in that order. Buffers
are opaque and never signed.
"""

import hashlib
import hmac
import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, cast
from uuid import uuid4

from dateutil.parser import parse as dateutil_parse

from .errors import MalformedFrame, SignatureMismatch

protocol_version_info = (5, 3)
protocol_version = ".".join(map(str, protocol_version_info))

DELIM = b"<IDS|MSG>"


@dataclass
class Message:
    header: dict[str, Any]
    parent_header: dict[str, Any] = field(default_factory=dict)
    metadata: dict[str, Any] = field(default_factory=dict)
    content: dict[str, Any] = field(default_factory=dict)
    buffers: list[bytes] = field(default_factory=list)

    @property
    def msg_id(self) -> str:
        return self.header["msg_id"]

    @property
    def msg_type(self) -> str:
        return self.header["msg_type"]

    @property
    def parent_id(self) -> str | None:
        return self.parent_header.get("msg_id") or None

    @property
    def session(self) -> str:
        return self.header.get("session", "")

    @property
    def date(self) -> datetime | None:
        return self.header.get("date")


@dataclass(frozen=True)
class Signer:
    """HMAC signer bound to a connection's key. An empty key disables signing."""

    key: bytes = b""
    digest_name: str = "sha256"

    def __post_init__(self) -> None:
        if self.key:
            # fail early on an unknown digest
            hashlib.new(self.digest_name)

    def sign(self, msg_list: list[bytes]) -> bytes:
        if not self.key:
            return b""
        h = hmac.new(self.key, digestmod=self.digest_name)
        for m in msg_list:
            h.update(m)
        return h.hexdigest().encode()

    def verify(self, msg_list: list[bytes], signature: bytes) -> bool:
        if not self.key:
            return True
        return hmac.compare_digest(self.sign(msg_list), signature)


def feed_identities(msg_list: list[bytes]) -> tuple[list[bytes], list[bytes]]:
    try:
        idx = msg_list.index(DELIM)
    except ValueError:
        raise MalformedFrame("missing delimiter") from None
    return msg_list[:idx], msg_list[idx + 1 :]  # noqa


def str_to_date(obj: dict[str, Any]) -> dict[str, Any]:
    if isinstance(obj.get("date"), str):
        try:
            obj["date"] = dateutil_parse(obj["date"])
        except (ValueError, OverflowError):
            raise MalformedFrame(f"invalid date {obj['date']!r}") from None
    return obj


def date_to_str(obj: dict[str, Any]) -> dict[str, Any]:
    if "date" in obj and isinstance(obj["date"], datetime):
        obj = dict(obj, date=obj["date"].isoformat().replace("+00:00", "Z"))
    return obj


def utcnow() -> datetime:
    return datetime.now(tz=timezone.utc)


def new_msg_id() -> str:
    return uuid4().hex


def create_message_header(msg_type: str, session_id: str, msg_id: str = "") -> dict[str, Any]:
    return {
        "date": utcnow(),
        "msg_id": msg_id or new_msg_id(),
        "msg_type": msg_type,
        "session": session_id,
        "username": "",
        "version": protocol_version,
    }


def create_message(
    msg_type: str,
    content: dict[str, Any] | None = None,
    session_id: str = "",
    msg_id: str = "",
    parent: Message | None = None,
    metadata: dict[str, Any] | None = None,
    buffers: list[bytes] | None = None,
) -> Message:
    return Message(
        header=create_message_header(msg_type, session_id, msg_id),
        parent_header=dict(parent.header) if parent is not None else {},
        metadata=metadata or {},
        content=content or {},
        buffers=list(buffers or []),
    )


def dumps(o: Any, **kwargs) -> bytes:
    return json.dumps(o, **kwargs).encode("utf8")


def loads(s: bytes | str, **kwargs) -> dict | list | str | int | float:
    if isinstance(s, bytes):
        s = s.decode("utf8")
    return json.loads(s, **kwargs)


def pack(obj: dict[str, Any]) -> bytes:
    return dumps(date_to_str(obj))


def unpack(s: bytes) -> dict[str, Any]:
    try:
        obj = loads(s)
    except (UnicodeDecodeError, ValueError) as e:
        raise MalformedFrame(f"invalid JSON segment ({e})") from None
    if not isinstance(obj, dict):
        raise MalformedFrame("JSON segment is not an object")
    return cast(dict[str, Any], obj)


def serialize_message(msg: Message, signer: Signer, identities: list[bytes] | None = None) -> list[bytes]:
    message = [
        pack(msg.header),
        pack(msg.parent_header),
        pack(msg.metadata),
        pack(msg.content),
    ]
    to_send = [DELIM, signer.sign(message)] + message + [bytes(b) for b in msg.buffers]
    if identities:
        to_send = list(identities) + to_send
    return to_send


def deserialize_message(msg_list: list[bytes], signer: Signer) -> Message:
    """Decode a frame, checking its signature before looking at any content.

    Raises ``MalformedFrame`` or ``SignatureMismatch``; the caller must drop
    the frame in either case.
    """
    _, parts = feed_identities(msg_list)
    if len(parts) < 5:
        raise MalformedFrame(f"expected at least 5 segments after delimiter, got {len(parts)}")
    signature, message, buffers = parts[0], parts[1:5], parts[5:]
    if not signer.verify(message, signature):
        raise SignatureMismatch()
    header = str_to_date(unpack(message[0]))
    if "msg_id" not in header or "msg_type" not in header:
        raise MalformedFrame("header has no msg_id or msg_type")
    return Message(
        header=header,
        parent_header=str_to_date(unpack(message[1])),
        metadata=unpack(message[2]),
        content=unpack(message[3]),
        buffers=[bytes(b) for b in buffers],
    )
