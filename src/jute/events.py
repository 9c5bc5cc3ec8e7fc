from dataclasses import dataclass, field
from typing import Any, Generic, Literal, TypeVar

import structlog
from anyio import BrokenResourceError, ClosedResourceError, WouldBlock, create_memory_object_stream
from anyio.streams.memory import MemoryObjectReceiveStream, MemoryObjectSendStream
from pydantic import BaseModel

from .connection import Channel
from .content import Content, parse_content
from .message import Message

logger = structlog.get_logger()

T = TypeVar("T")


class Broadcast(Generic[T]):
    """Fan items out to every live subscriber, in publish order."""

    def __init__(self, max_buffer_size: int = 1024) -> None:
        self.max_buffer_size = max_buffer_size
        self._subscribers: list[MemoryObjectSendStream[T]] = []
        self._closed = False

    @property
    def subscribers(self) -> int:
        return len(self._subscribers)

    def subscribe(self) -> MemoryObjectReceiveStream[T]:
        send_stream, receive_stream = create_memory_object_stream[T](max_buffer_size=self.max_buffer_size)
        if self._closed:
            send_stream.close()
        else:
            self._subscribers.append(send_stream)
        return receive_stream

    def publish(self, item: T) -> None:
        for send_stream in list(self._subscribers):
            try:
                send_stream.send_nowait(item)
            except WouldBlock:
                logger.warning("Subscriber is full, dropping item", item=repr(item)[:80])
            except (BrokenResourceError, ClosedResourceError):
                self._subscribers.remove(send_stream)

    def close(self) -> None:
        self._closed = True
        for send_stream in self._subscribers:
            send_stream.close()
        self._subscribers.clear()


@dataclass
class KernelEvent:
    """A decoded message that no request claimed, with its typed content."""

    channel: Channel
    message: Message
    content: Content | dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_message(cls, channel: Channel, message: Message) -> "KernelEvent":
        return cls(channel, message, parse_content(message.msg_type, message.content))

    @property
    def msg_type(self) -> str:
        return self.message.msg_type

    @property
    def parent_id(self) -> str | None:
        return self.message.parent_id


class CellEvent(BaseModel):
    event: Literal[
        "stdout",
        "stderr",
        "execute_result",
        "display_data",
        "update_display_data",
        "error",
        "disconnect",
    ]
    data: Any


def cell_event(message: Message) -> CellEvent | None:
    """Map an iopub message to the output event shown under a cell."""
    msg_type = message.msg_type
    content = message.content
    if msg_type == "stream":
        name = content.get("name")
        if name in ("stdout", "stderr"):
            return CellEvent(event=name, data=content.get("text", ""))
    elif msg_type == "execute_result":
        return CellEvent(
            event="execute_result",
            data={
                "execution_count": content.get("execution_count"),
                "data": content.get("data", {}),
                "metadata": content.get("metadata", {}),
            },
        )
    elif msg_type in ("display_data", "update_display_data"):
        return CellEvent(
            event=msg_type,
            data={
                "data": content.get("data", {}),
                "metadata": content.get("metadata", {}),
                "transient": content.get("transient"),
            },
        )
    elif msg_type == "error":
        return CellEvent(
            event="error",
            data={
                "ename": content.get("ename", ""),
                "evalue": content.get("evalue", ""),
                "traceback": content.get("traceback", []),
            },
        )
    return None
