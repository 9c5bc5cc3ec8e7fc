from abc import ABC, abstractmethod

import structlog
import zmq
import zmq.asyncio
from anyio import (
    BrokenResourceError,
    ClosedResourceError,
    EndOfStream,
    create_memory_object_stream,
    fail_after,
)
from anyio.streams.memory import MemoryObjectReceiveStream, MemoryObjectSendStream
from zmq.utils.monitor import parse_monitor_message

from .connection import Channel
from .errors import ChannelClosed, TransportUnavailable

logger = structlog.get_logger()

Frame = list[bytes]

SOCKET_TYPES = {
    Channel.SHELL: zmq.DEALER,
    Channel.CONTROL: zmq.DEALER,
    Channel.STDIN: zmq.DEALER,
    Channel.IOPUB: zmq.SUB,
    # DEALER rather than REQ, so that a late echo does not wedge the socket
    Channel.HEARTBEAT: zmq.DEALER,
}


class Transport(ABC):
    channel: Channel

    @abstractmethod
    async def send(self, frame: Frame) -> None: ...

    @abstractmethod
    async def receive(self) -> Frame: ...

    @abstractmethod
    async def aclose(self) -> None: ...

    @property
    @abstractmethod
    def closed(self) -> bool: ...


class ZmqTransport(Transport):
    def __init__(self, socket: zmq.asyncio.Socket, channel: Channel) -> None:
        self._socket = socket
        self.channel = channel

    @property
    def closed(self) -> bool:
        return self._socket.closed

    async def send(self, frame: Frame) -> None:
        if self._socket.closed:
            raise ChannelClosed(self.channel)
        try:
            await self._socket.send_multipart(frame)
        except zmq.ZMQError as e:
            raise ChannelClosed(self.channel) from e

    async def receive(self) -> Frame:
        if self._socket.closed:
            raise ChannelClosed(self.channel)
        try:
            return await self._socket.recv_multipart()
        except zmq.ZMQError as e:
            raise ChannelClosed(self.channel) from e

    async def aclose(self) -> None:
        if not self._socket.closed:
            self._socket.close()


async def connect(
    endpoint: str,
    channel: Channel,
    *,
    context: zmq.asyncio.Context | None = None,
    identity: bytes = b"",
    timeout: float = 10.0,
    linger: int = 1000,
) -> ZmqTransport:
    """Dial ``endpoint`` and wait until the peer accepted the connection."""
    context = context or zmq.asyncio.Context.instance()
    socket = context.socket(SOCKET_TYPES[channel])
    socket.linger = linger
    if identity and channel in (Channel.SHELL, Channel.STDIN):
        # the kernel routes input requests back to the shell identity
        socket.identity = identity
    if channel is Channel.IOPUB:
        socket.setsockopt(zmq.SUBSCRIBE, b"")
    monitor = socket.get_monitor_socket(zmq.EVENT_CONNECTED)
    try:
        socket.connect(endpoint)
        with fail_after(timeout):
            while True:
                event = parse_monitor_message(await monitor.recv_multipart())
                if event["event"] == zmq.EVENT_CONNECTED:
                    break
    except (TimeoutError, zmq.ZMQError) as e:
        logger.warning("Could not connect channel", channel=str(channel), endpoint=endpoint, error=str(e))
        socket.disable_monitor()
        monitor.close(linger=0)
        socket.close(linger=0)
        raise TransportUnavailable(channel, endpoint) from e
    socket.disable_monitor()
    monitor.close(linger=0)
    logger.debug("Connected channel", channel=str(channel), endpoint=endpoint)
    return ZmqTransport(socket, channel)


class ZmqConnector:
    def __init__(
        self,
        *,
        context: zmq.asyncio.Context | None = None,
        identity: bytes = b"",
        timeout: float = 10.0,
        linger: int = 1000,
    ) -> None:
        self.context = context
        self.identity = identity
        self.timeout = timeout
        self.linger = linger

    async def __call__(self, channel: Channel, endpoint: str) -> Transport:
        return await connect(
            endpoint,
            channel,
            context=self.context,
            identity=self.identity,
            timeout=self.timeout,
            linger=self.linger,
        )


class MemoryTransport(Transport):
    """One end of an in-process channel."""

    def __init__(
        self,
        channel: Channel,
        send_stream: MemoryObjectSendStream[Frame],
        receive_stream: MemoryObjectReceiveStream[Frame],
    ) -> None:
        self.channel = channel
        self._send_stream = send_stream
        self._receive_stream = receive_stream
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    async def send(self, frame: Frame) -> None:
        try:
            await self._send_stream.send(list(frame))
        except (BrokenResourceError, ClosedResourceError) as e:
            raise ChannelClosed(self.channel) from e

    async def receive(self) -> Frame:
        try:
            return await self._receive_stream.receive()
        except (EndOfStream, ClosedResourceError) as e:
            raise ChannelClosed(self.channel) from e

    async def aclose(self) -> None:
        self._closed = True
        await self._send_stream.aclose()
        await self._receive_stream.aclose()


def memory_transport_pair(
    channel: Channel, max_buffer_size: int = 1024
) -> tuple[MemoryTransport, MemoryTransport]:
    """Return a (client, kernel) pair of connected transports."""
    to_kernel_send, to_kernel_receive = create_memory_object_stream[Frame](max_buffer_size=max_buffer_size)
    from_kernel_send, from_kernel_receive = create_memory_object_stream[Frame](
        max_buffer_size=max_buffer_size
    )
    client = MemoryTransport(channel, to_kernel_send, from_kernel_receive)
    kernel = MemoryTransport(channel, from_kernel_send, to_kernel_receive)
    return client, kernel
