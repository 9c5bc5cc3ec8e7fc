"""Matching of shell/control replies to the requests that caused them.

All mutations of the matching table happen in synchronous code on the event
loop: there is no await between looking a request up and removing it, so a
reply and a concurrent cancellation cannot both win.
"""

import math
from collections.abc import Awaitable, Callable, Generator
from typing import Any

import structlog
from anyio import (
    BrokenResourceError,
    ClosedResourceError,
    Event,
    create_memory_object_stream,
)
from anyio.streams.memory import MemoryObjectReceiveStream, MemoryObjectSendStream

from .connection import Channel
from .errors import JuteError, RequestCancelled
from .events import Broadcast, KernelEvent
from .message import Message

logger = structlog.get_logger()

CONTROL_MESSAGE_TYPES = frozenset(
    {
        "shutdown_request",
        "interrupt_request",
        "debug_request",
        "usage_request",
    }
)


def channel_for(msg_type: str) -> Channel:
    if msg_type in CONTROL_MESSAGE_TYPES:
        return Channel.CONTROL
    return Channel.SHELL


class PendingRequest:
    """Handle on a request awaiting its reply. Resolves exactly once."""

    def __init__(
        self,
        router: "RequestRouter",
        message: Message,
        channel: Channel,
        outputs: MemoryObjectReceiveStream[Message] | None = None,
    ) -> None:
        self._router = router
        self.message = message
        self.channel = channel
        self.outputs = outputs
        self._done = Event()
        self._reply: Message | None = None
        self._error: BaseException | None = None

    @property
    def msg_id(self) -> str:
        return self.message.msg_id

    @property
    def done(self) -> bool:
        return self._done.is_set()

    @property
    def cancelled(self) -> bool:
        return isinstance(self._error, RequestCancelled)

    def cancel(self) -> bool:
        return self._router.cancel(self.msg_id)

    async def get(self) -> Message:
        await self._done.wait()
        if self._error is not None:
            raise self._error
        assert self._reply is not None
        return self._reply

    def __await__(self) -> Generator[Any, None, Message]:
        return self.get().__await__()

    def _resolve(self, reply: Message) -> bool:
        if self.done:
            return False
        self._reply = reply
        self._done.set()
        return True

    def _fail(self, error: BaseException) -> bool:
        if self.done:
            return False
        self._error = error
        self._done.set()
        return True


class RequestRouter:
    def __init__(
        self,
        send: Callable[[Channel, Message], Awaitable[None]],
        events: Broadcast[KernelEvent] | None = None,
        max_buffer_size: int = 1024,
    ) -> None:
        self._send = send
        self.events = events if events is not None else Broadcast(max_buffer_size)
        self.max_buffer_size = max_buffer_size
        self._pending: dict[str, PendingRequest] = {}
        self._outputs: dict[str, MemoryObjectSendStream[Message]] = {}
        # cancelled ids awaiting a possible late reply, oldest first
        self._cancelled: dict[str, None] = {}

    @property
    def pending(self) -> int:
        return len(self._pending)

    async def submit(
        self,
        message: Message,
        *,
        channel: Channel | None = None,
        watch_outputs: bool = False,
    ) -> PendingRequest:
        channel = channel or channel_for(message.msg_type)
        msg_id = message.msg_id
        if msg_id in self._pending:
            raise ValueError(f"Request {msg_id} is already pending")
        outputs = None
        if watch_outputs:
            # closed on idle, cancel or teardown, so it never has to drop outputs
            send_stream, outputs = create_memory_object_stream[Message](max_buffer_size=math.inf)
            self._outputs[msg_id] = send_stream
        request = PendingRequest(self, message, channel, outputs)
        # registered before sending, a fast reply always finds its request
        self._pending[msg_id] = request
        try:
            await self._send(channel, message)
        except BaseException:
            self._pending.pop(msg_id, None)
            self._close_outputs(msg_id)
            raise
        logger.debug("Submitted request", msg_id=msg_id, msg_type=message.msg_type, channel=str(channel))
        return request

    def dispatch(self, channel: Channel, message: Message) -> None:
        parent_id = message.parent_id
        if channel in (Channel.SHELL, Channel.CONTROL) and message.msg_type.endswith("_reply"):
            request = self._pending.pop(parent_id, None) if parent_id else None
            if request is not None:
                request._resolve(message)
                return
            if parent_id in self._cancelled:
                del self._cancelled[parent_id]
                logger.info(
                    "Reply for cancelled request",
                    msg_id=parent_id,
                    msg_type=message.msg_type,
                )
        elif channel is Channel.IOPUB and parent_id in self._outputs:
            self._forward_output(parent_id, message)
        self.events.publish(KernelEvent.from_message(channel, message))

    def cancel(self, msg_id: str) -> bool:
        request = self._pending.pop(msg_id, None)
        if request is None:
            return False
        self._cancelled[msg_id] = None
        if len(self._cancelled) > self.max_buffer_size:
            del self._cancelled[next(iter(self._cancelled))]
        self._close_outputs(msg_id)
        request._fail(RequestCancelled(msg_id))
        logger.debug("Cancelled request", msg_id=msg_id)
        return True

    def cancel_all(self, error: JuteError) -> None:
        pending, self._pending = self._pending, {}
        self._cancelled.clear()
        for request in pending.values():
            request._fail(error)
        for msg_id in list(self._outputs):
            self._close_outputs(msg_id)
        if pending:
            logger.info("Failed pending requests", count=len(pending), error=str(error))

    def _forward_output(self, parent_id: str, message: Message) -> None:
        send_stream = self._outputs[parent_id]
        try:
            send_stream.send_nowait(message)
        except (BrokenResourceError, ClosedResourceError):
            # the watcher went away
            self._close_outputs(parent_id)
            return
        if message.msg_type == "status" and message.content.get("execution_state") == "idle":
            self._close_outputs(parent_id)

    def _close_outputs(self, msg_id: str) -> None:
        send_stream = self._outputs.pop(msg_id, None)
        if send_stream is not None:
            send_stream.close()
