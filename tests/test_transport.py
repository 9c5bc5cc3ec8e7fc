import pytest
import zmq
import zmq.asyncio
from anyio import fail_after

from jute.connection import Channel
from jute.errors import ChannelClosed, TransportUnavailable
from jute.transport import ZmqConnector, connect, memory_transport_pair

pytestmark = pytest.mark.anyio


async def test_memory_pair():
    client, kernel = memory_transport_pair(Channel.SHELL)
    await client.send([b"a", b"b"])
    assert await kernel.receive() == [b"a", b"b"]
    await kernel.send([b"c"])
    assert await client.receive() == [b"c"]


async def test_memory_receive_after_peer_closed():
    client, kernel = memory_transport_pair(Channel.IOPUB)
    await kernel.send([b"last"])
    await kernel.aclose()
    # frames already in flight are still delivered
    assert await client.receive() == [b"last"]
    with pytest.raises(ChannelClosed):
        await client.receive()
    with pytest.raises(ChannelClosed):
        await client.send([b"x"])


async def test_memory_closed_transport():
    client, _ = memory_transport_pair(Channel.CONTROL)
    await client.aclose()
    assert client.closed
    with pytest.raises(ChannelClosed):
        await client.receive()


@pytest.fixture
def context():
    ctx = zmq.asyncio.Context()
    yield ctx
    ctx.destroy(linger=0)


async def test_zmq_dealer_round_trip(context):
    router = context.socket(zmq.ROUTER)
    port = router.bind_to_random_port("tcp://127.0.0.1")
    try:
        transport = await connect(
            f"tcp://127.0.0.1:{port}", Channel.SHELL, context=context, identity=b"session", timeout=5
        )
        with fail_after(5):
            await transport.send([b"<IDS|MSG>", b"payload"])
            identity, *frame = await router.recv_multipart()
            assert identity == b"session"
            assert frame == [b"<IDS|MSG>", b"payload"]
            await router.send_multipart([identity, b"reply"])
            assert await transport.receive() == [b"reply"]
        await transport.aclose()
        assert transport.closed
        with pytest.raises(ChannelClosed):
            await transport.receive()
    finally:
        router.close(linger=0)


async def test_zmq_heartbeat_echo(context):
    echo = context.socket(zmq.ROUTER)
    port = echo.bind_to_random_port("tcp://127.0.0.1")
    try:
        connector = ZmqConnector(context=context, timeout=5)
        transport = await connector(Channel.HEARTBEAT, f"tcp://127.0.0.1:{port}")
        with fail_after(5):
            await transport.send([b"ping"])
            await echo.send_multipart(await echo.recv_multipart())
            assert await transport.receive() == [b"ping"]
        await transport.aclose()
    finally:
        echo.close(linger=0)


async def test_zmq_unreachable_endpoint(context):
    probe = context.socket(zmq.ROUTER)
    port = probe.bind_to_random_port("tcp://127.0.0.1")
    probe.close(linger=0)
    with pytest.raises(TransportUnavailable) as excinfo:
        await connect(f"tcp://127.0.0.1:{port}", Channel.CONTROL, context=context, timeout=0.3)
    assert excinfo.value.channel == Channel.CONTROL
    assert str(excinfo.value) == "control channel is unavailable"


async def test_zmq_invalid_endpoint(context):
    with pytest.raises(TransportUnavailable):
        await connect("nonsense://", Channel.SHELL, context=context, timeout=0.3)
