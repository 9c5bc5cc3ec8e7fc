from contextlib import asynccontextmanager

import pytest
from anyio import create_task_group, fail_after, sleep

from fake_kernel import FakeKernel
from jute.connection import Channel
from jute.errors import AlreadyConnected, KernelConnect, KernelDisconnect, RequestCancelled, TransportUnavailable
from jute.events import CellEvent
from jute.server import KernelServer
from jute.session import ConnectionState

pytestmark = pytest.mark.anyio


@asynccontextmanager
async def running(config, **kwargs):
    async with FakeKernel(**kwargs) as kernel:
        async with KernelServer(config, connector=kernel.connect) as server:
            yield server, kernel


async def events_for(subscription, msg_id):
    events = []
    with fail_after(5):
        async for event in subscription:
            if event.parent_id != msg_id:
                continue
            events.append(event)
            if event.msg_type == "status" and event.content.execution_state == "idle":
                return events


async def until_stopped(server):
    with fail_after(5):
        while server.session is not None:
            await sleep(0.01)


async def test_execute(config):
    async with running(config) as (server, kernel):
        await server.start(kernel.descriptor)
        events = server.subscribe()
        request = await server.execute("1+1")
        with fail_after(5):
            reply = await request
        assert reply.msg_type == "execute_reply"
        assert reply.content["status"] == "ok"
        assert reply.parent_id == request.msg_id

        received = await events_for(events, request.msg_id)
        assert [event.msg_type for event in received] == ["status", "execute_input", "execute_result", "status"]
        assert received[0].content.execution_state == "busy"
        assert received[2].content.data == {"text/plain": "2"}


async def test_run_cell(config):
    async with running(config) as (server, kernel):
        await server.start(kernel.descriptor)
        with fail_after(5):
            assert [event async for event in server.run_cell("1+1")] == [
                CellEvent(event="execute_result", data={"execution_count": 1, "data": {"text/plain": "2"}, "metadata": {}})
            ]
            assert [event async for event in server.run_cell("print('hello')")] == [
                CellEvent(event="stdout", data="hello\n")
            ]
            (error,) = [event async for event in server.run_cell("raise ValueError('boom')")]
            assert error.event == "error"
            assert error.data["ename"] == "ValueError"
            (display,) = [event async for event in server.run_cell("display")]
            assert display.event == "display_data"
            assert display.data["transient"] == {"display_id": "d1"}
        assert server.session.router.pending == 0


async def test_run_cell_disconnect(config):
    config = config.model_copy(update={"wait_for_ready": False})
    async with running(config, answer_requests=False) as (server, kernel):
        await server.start(kernel.descriptor)

        async def crash():
            await kernel.next_request()
            await kernel.crash(Channel.SHELL)

        async with create_task_group() as tg:
            tg.start_soon(crash)
            with fail_after(5):
                events = [event async for event in server.run_cell("1+1")]
        assert events == [CellEvent(event="disconnect", data="disconnected from the kernel")]
        await until_stopped(server)
        assert server.state is ConnectionState.DISCONNECTED
        with pytest.raises(KernelDisconnect):
            await server.execute("1+1")


async def test_run_cell_timeout(config):
    config = config.model_copy(update={"wait_for_ready": False})
    async with running(config, answer_requests=False) as (server, kernel):
        await server.start(kernel.descriptor)
        with pytest.raises(TimeoutError) as excinfo:
            async for _ in server.run_cell("1+1", timeout=0.1):
                pass
        assert str(excinfo.value) == "Kernel didn't respond in 0.1 seconds"
        assert server.session.router.pending == 0


async def test_call_timeout(config):
    config = config.model_copy(update={"wait_for_ready": False})
    async with running(config, answer_requests=False) as (server, kernel):
        await server.start(kernel.descriptor)
        with pytest.raises(TimeoutError):
            await server.kernel_info(timeout=0.1)
        assert server.session.router.pending == 0
        assert server.state is ConnectionState.CONNECTED


async def test_late_reply_after_cancel(config):
    config = config.model_copy(update={"wait_for_ready": False})
    async with running(config, answer_requests=False) as (server, kernel):
        await server.start(kernel.descriptor)
        events = server.subscribe()
        request = await server.execute("1+1")
        with fail_after(5):
            channel, msg = await kernel.next_request()
        assert msg.msg_id == request.msg_id
        assert request.cancel()
        late = await kernel.reply(channel, "execute_reply", {"status": "ok", "execution_count": 1}, parent=msg)
        with fail_after(5):
            event = await events.receive()
        assert event.message == late
        assert event.parent_id == request.msg_id
        with pytest.raises(RequestCancelled):
            await request
        assert server.state is ConnectionState.CONNECTED


async def test_send_input(config):
    async with running(config) as (server, kernel):
        await server.start(kernel.descriptor)
        events = server.subscribe()
        prompts = []

        async def answer():
            async for event in events:
                if event.msg_type == "input_request":
                    prompts.append(event.content.prompt)
                    await server.send_input("Ada", event.message)
                    return

        with fail_after(5):
            async with create_task_group() as tg:
                tg.start_soon(answer)
                outputs = [event async for event in server.run_cell("input('name? ')")]
        assert prompts == ["name? "]
        assert outputs == [CellEvent(event="stdout", data="Ada")]


async def test_send_input_without_stdin(config):
    async with running(config, unavailable=(Channel.STDIN,)) as (server, kernel):
        session = await server.start(kernel.descriptor)
        assert not session.stdin_available
        request = await server.execute("1+1")
        assert request.message.content["allow_stdin"] is False
        with fail_after(5):
            reply = await request
        assert reply.content["status"] == "ok"
        with pytest.raises(TransportUnavailable):
            await server.send_input("Ada", reply)


async def test_stop_while_kernel_is_busy(config):
    async with running(config) as (server, kernel):
        await server.start(kernel.descriptor)
        await server.execute("count(50)")
        # the kernel keeps publishing after the client is gone
        await server.stop()
        assert server.state is ConnectionState.DISCONNECTED


async def test_run_cell_slow_consumer(config):
    config = config.model_copy(update={"event_buffer_size": 4})
    async with running(config) as (server, kernel):
        await server.start(kernel.descriptor)
        outputs = []
        with fail_after(5):
            async for event in server.run_cell("count(10)"):
                outputs.append(event.data)
                await sleep(0.05)
        assert outputs == [f"{i}\n" for i in range(10)]


async def test_control_requests(config):
    async with running(config) as (server, kernel):
        await server.start(kernel.descriptor)
        with fail_after(5):
            info = await server.kernel_info()
            assert info.content["implementation"] == "fake"
            interrupt = await server.interrupt()
            assert interrupt.msg_type == "interrupt_reply"
            shutdown = await server.shutdown(restart=True)
            assert shutdown.content == {"status": "ok", "restart": True}


async def test_already_connected(config):
    async with running(config) as (server, kernel):
        session = await server.start(kernel.descriptor)
        with pytest.raises(AlreadyConnected) as excinfo:
            await server.start(kernel.descriptor)
        assert str(excinfo.value) == "already connected to a kernel"
        assert server.session is session
        assert server.state is ConnectionState.CONNECTED


async def test_restart(config):
    async with running(config) as (server, kernel):
        events = server.subscribe()
        first = await server.start(kernel.descriptor)
        await server.stop()
        assert server.session is None
        assert first.state is ConnectionState.DISCONNECTED
        second = await server.start(kernel.descriptor)
        assert second is not first
        request = await server.execute("2*3")
        # the subscription made before the first session still receives
        received = await events_for(events, request.msg_id)
        assert received[2].content.data == {"text/plain": "6"}


async def test_state_changes(config):
    async with running(config) as (server, kernel):
        states = server.state_changes()
        assert server.state is ConnectionState.DISCONNECTED
        await server.start(kernel.descriptor)
        await server.stop()
        with fail_after(5):
            observed = [await states.receive() for _ in range(4)]
        assert observed == [
            ConnectionState.CONNECTING,
            ConnectionState.CONNECTED,
            ConnectionState.DISCONNECTING,
            ConnectionState.DISCONNECTED,
        ]


async def test_wait_for_ready_timeout(config):
    config = config.model_copy(update={"setup_timeout": 0.2})
    async with running(config, answer_requests=False) as (server, kernel):
        with pytest.raises(KernelConnect) as excinfo:
            await server.start(kernel.descriptor)
        assert str(excinfo.value) == "could not connect to the kernel: kernel did not answer within 0.2 seconds"
        assert server.session is None
        assert server.state is ConnectionState.DISCONNECTED


async def test_connect_failure(config):
    async with running(config, unavailable=(Channel.SHELL,)) as (server, kernel):
        with pytest.raises(KernelConnect):
            await server.start(kernel.descriptor)
        assert server.session is None


async def test_requires_session(config):
    with pytest.raises(RuntimeError):
        await KernelServer(config).start(FakeKernel().descriptor)
    async with KernelServer(config) as server:
        with pytest.raises(KernelDisconnect):
            await server.execute("1+1")
        with pytest.raises(KernelDisconnect):
            await server.kernel_info()


async def test_exit_stops_session(config):
    async with FakeKernel() as kernel:
        async with KernelServer(config, connector=kernel.connect) as server:
            session = await server.start(kernel.descriptor)
            events = server.subscribe()
        assert session.state is ConnectionState.DISCONNECTED
        assert session.close_reason is None
        # subscriptions end with the server
        with fail_after(5):
            leftovers = [event async for event in events]
        assert all(event.msg_type == "status" for event in leftovers)
