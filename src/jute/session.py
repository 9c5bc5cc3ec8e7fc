from collections.abc import Awaitable, Callable
from contextlib import AsyncExitStack
from enum import Enum
from typing import Any

import structlog
from anyio import (
    TASK_STATUS_IGNORED,
    CancelScope,
    Event,
    create_task_group,
    fail_after,
)
from anyio.abc import TaskGroup, TaskStatus
from anyio.streams.memory import MemoryObjectReceiveStream

from .config import ClientConfig
from .connection import Channel, ConnectionDescriptor
from .errors import (
    ChannelClosed,
    JuteError,
    KernelConnect,
    KernelDisconnect,
    MalformedFrame,
    SignatureMismatch,
    TransportUnavailable,
)
from .events import Broadcast, KernelEvent
from .heartbeat import HeartbeatMonitor
from .message import Message, Signer, create_message, deserialize_message, serialize_message
from .router import PendingRequest, RequestRouter
from .transport import Transport, ZmqConnector

logger = structlog.get_logger()

Connector = Callable[[Channel, str], Awaitable[Transport]]


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DISCONNECTING = "disconnecting"


class Session:
    """All channels of one kernel connection.

    A session is used once: ``connect``, then ``run`` in a task group until
    ``close`` or until the kernel is lost. The signing key and session id are
    fixed for its whole life.
    """

    def __init__(
        self,
        descriptor: ConnectionDescriptor,
        config: ClientConfig | None = None,
        *,
        connector: Connector | None = None,
        events: Broadcast[KernelEvent] | None = None,
        states: Broadcast[ConnectionState] | None = None,
    ) -> None:
        self.descriptor = descriptor
        self.config = config or ClientConfig()
        self.session_id = descriptor.session_id
        self.signer = Signer(descriptor.key, descriptor.digest_name)
        self._connector = connector or ZmqConnector(
            identity=self.session_id.encode(),
            timeout=self.config.setup_timeout,
            linger=self.config.linger,
        )
        self.states = states if states is not None else Broadcast(self.config.event_buffer_size)
        self.router = RequestRouter(self.send, events, self.config.event_buffer_size)
        self.transports: dict[Channel, Transport] = {}
        self.heartbeat: HeartbeatMonitor | None = None
        self.state = ConnectionState.DISCONNECTED
        # None when the client closed the session itself
        self.close_reason: JuteError | None = None
        self.msg_cnt = 0
        self._task_group: TaskGroup | None = None
        self._closing = False
        self._closed: Event | None = None
        self._exit_stack: AsyncExitStack | None = None

    @classmethod
    async def open(
        cls,
        descriptor: ConnectionDescriptor,
        config: ClientConfig | None = None,
        **kwargs: Any,
    ) -> "Session":
        session = cls(descriptor, config, **kwargs)
        await session.connect()
        return session

    @property
    def stdin_available(self) -> bool:
        return Channel.STDIN in self.transports

    def events(self) -> MemoryObjectReceiveStream[KernelEvent]:
        return self.router.events.subscribe()

    def _set_state(self, state: ConnectionState) -> None:
        if state is self.state:
            return
        self.state = state
        logger.debug("Connection state changed", session_id=self.session_id, state=state.value)
        self.states.publish(state)

    async def connect(self) -> None:
        if self._closing or self.state is not ConnectionState.DISCONNECTED:
            raise KernelConnect("session cannot be reused")
        self._closed = Event()
        self._set_state(ConnectionState.CONNECTING)
        failures: dict[Channel, BaseException] = {}

        async def open_channel(channel: Channel) -> None:
            endpoint = self.descriptor.endpoint(channel)
            try:
                with fail_after(self.config.setup_timeout):
                    self.transports[channel] = await self._connector(channel, endpoint)
            except (JuteError, OSError, TimeoutError) as e:
                failures[channel] = e

        try:
            async with create_task_group() as tg:
                for channel in Channel:
                    if self.descriptor.port(channel) is not None:
                        tg.start_soon(open_channel, channel)
            missing = {channel: e for channel, e in failures.items() if channel.required}
            if missing:
                raise KernelConnect(
                    ", ".join(
                        f"{channel} channel {'timed out' if isinstance(e, TimeoutError) else 'unavailable'}"
                        for channel, e in missing.items()
                    )
                )
        except BaseException:
            self._closing = True
            with CancelScope(shield=True):
                await self._close_transports()
            self._set_state(ConnectionState.DISCONNECTED)
            self._closed.set()
            raise

        if Channel.STDIN not in self.transports:
            logger.warning("stdin channel unavailable, input requests cannot be answered")
        if self.config.heartbeat_enabled:
            self.heartbeat = HeartbeatMonitor(
                self.transports[Channel.HEARTBEAT],
                self._heartbeat_dead,
                interval=self.config.heartbeat_interval,
                timeout=self.config.heartbeat_timeout,
                max_misses=self.config.heartbeat_max_misses,
            )
        self._set_state(ConnectionState.CONNECTED)
        logger.info("Connected to kernel", session_id=self.session_id, transport=self.descriptor.transport)

    async def run(self, *, task_status: TaskStatus[None] = TASK_STATUS_IGNORED) -> None:
        if self.state is not ConnectionState.CONNECTED:
            raise KernelDisconnect()
        try:
            async with create_task_group() as tg:
                self._task_group = tg
                for channel, transport in self.transports.items():
                    if channel is not Channel.HEARTBEAT:
                        tg.start_soon(self._receive_loop, channel, transport)
                if self.heartbeat is not None:
                    tg.start_soon(self._watch_heartbeat)
                task_status.started()
        finally:
            with CancelScope(shield=True):
                await self._teardown()

    async def _receive_loop(self, channel: Channel, transport: Transport) -> None:
        while True:
            try:
                frame = await transport.receive()
            except ChannelClosed:
                if channel.required:
                    logger.warning("Channel closed", channel=str(channel))
                    self._lose()
                else:
                    logger.warning("Optional channel closed", channel=str(channel))
                return
            try:
                message = deserialize_message(frame, self.signer)
            except (MalformedFrame, SignatureMismatch) as e:
                logger.warning("Dropping frame", channel=str(channel), error=str(e))
                continue
            self.router.dispatch(channel, message)

    async def _watch_heartbeat(self) -> None:
        assert self.heartbeat is not None
        try:
            await self.heartbeat.run()
        except ChannelClosed:
            logger.warning("Heartbeat channel closed")
            self._lose()

    async def _heartbeat_dead(self) -> None:
        self._lose()

    def _lose(self) -> None:
        if self._closing:
            return
        if self.close_reason is None:
            self.close_reason = KernelDisconnect()
        if self._task_group is not None:
            self._task_group.cancel_scope.cancel()

    def new_message(
        self,
        msg_type: str,
        content: dict[str, Any] | None = None,
        parent: Message | None = None,
        **kwargs: Any,
    ) -> Message:
        msg = create_message(
            msg_type,
            content,
            session_id=self.session_id,
            msg_id=f"{self.session_id}_{self.msg_cnt}",
            parent=parent,
            **kwargs,
        )
        self.msg_cnt += 1
        return msg

    async def send(self, channel: Channel, message: Message) -> None:
        if self.state is not ConnectionState.CONNECTED:
            raise KernelDisconnect()
        if channel in (Channel.IOPUB, Channel.HEARTBEAT):
            raise ValueError(f"Cannot send messages on the {channel} channel")
        transport = self.transports.get(channel)
        if transport is None:
            raise TransportUnavailable(channel, self.descriptor.endpoint(channel))
        try:
            await transport.send(serialize_message(message, self.signer))
        except ChannelClosed as e:
            if channel.required:
                self._lose()
                raise KernelDisconnect() from e
            raise

    async def request(
        self,
        msg_type: str,
        content: dict[str, Any] | None = None,
        *,
        watch_outputs: bool = False,
    ) -> PendingRequest:
        return await self.router.submit(self.new_message(msg_type, content), watch_outputs=watch_outputs)

    async def close(self) -> None:
        if self._closed is None:
            return
        if self._task_group is not None:
            self._task_group.cancel_scope.cancel()
            await self._closed.wait()
        else:
            await self._teardown()

    async def _teardown(self) -> None:
        assert self._closed is not None
        if self._closing:
            await self._closed.wait()
            return
        self._closing = True
        self._set_state(ConnectionState.DISCONNECTING)
        self.router.cancel_all(KernelDisconnect())
        await self._close_transports()
        self._set_state(ConnectionState.DISCONNECTED)
        logger.info(
            "Session closed",
            session_id=self.session_id,
            reason=str(self.close_reason) if self.close_reason else "closed by client",
        )
        self._closed.set()

    async def _close_transports(self) -> None:
        for transport in self.transports.values():
            await transport.aclose()

    async def __aenter__(self) -> "Session":
        async with AsyncExitStack() as stack:
            if self.state is ConnectionState.DISCONNECTED:
                await self.connect()
            tg = await stack.enter_async_context(create_task_group())
            await tg.start(self.run)
            stack.push_async_callback(self.close)
            self._exit_stack = stack.pop_all()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        assert self._exit_stack is not None
        return await self._exit_stack.__aexit__(exc_type, exc_val, exc_tb)
