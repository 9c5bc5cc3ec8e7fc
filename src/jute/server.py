import time
from collections.abc import AsyncIterator
from contextlib import AsyncExitStack
from typing import Any

import structlog
from anyio import TASK_STATUS_IGNORED, CancelScope, EndOfStream, create_task_group, fail_after
from anyio.abc import TaskGroup, TaskStatus
from anyio.streams.memory import MemoryObjectReceiveStream

from .config import ClientConfig
from .connection import Channel, ConnectionDescriptor
from .content import ExecuteRequest
from .errors import AlreadyConnected, KernelConnect, KernelDisconnect
from .events import Broadcast, CellEvent, KernelEvent, cell_event
from .message import Message
from .router import PendingRequest
from .session import ConnectionState, Connector, Session

logger = structlog.get_logger()


def deadline_to_timeout(deadline: float) -> float:
    return max(0, deadline - time.time())


class KernelServer:
    """What the application talks to: one kernel session at a time.

    Use as an async context manager, which owns the task group the session
    runs in::

        async with KernelServer() as server:
            await server.start(ConnectionDescriptor.from_file(path))
            async for event in server.run_cell("1 + 1"):
                ...

    Event and state subscriptions outlive individual sessions, so a
    subscriber keeps receiving after a restart.
    """

    def __init__(
        self,
        config: ClientConfig | None = None,
        *,
        connector: Connector | None = None,
    ) -> None:
        self.config = config or ClientConfig()
        self.connector = connector
        self.events: Broadcast[KernelEvent] = Broadcast(self.config.event_buffer_size)
        self.states: Broadcast[ConnectionState] = Broadcast(self.config.event_buffer_size)
        self.session: Session | None = None
        self._task_group: TaskGroup | None = None
        self._exit_stack: AsyncExitStack | None = None

    async def __aenter__(self) -> "KernelServer":
        async with AsyncExitStack() as stack:
            self._task_group = await stack.enter_async_context(create_task_group())
            stack.callback(self._close_streams)
            stack.push_async_callback(self.stop)
            self._exit_stack = stack.pop_all()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        assert self._exit_stack is not None
        return await self._exit_stack.__aexit__(exc_type, exc_val, exc_tb)

    def _close_streams(self) -> None:
        self.events.close()
        self.states.close()

    @property
    def state(self) -> ConnectionState:
        if self.session is None:
            return ConnectionState.DISCONNECTED
        return self.session.state

    def subscribe(self) -> MemoryObjectReceiveStream[KernelEvent]:
        return self.events.subscribe()

    def state_changes(self) -> MemoryObjectReceiveStream[ConnectionState]:
        """Stream of the connection states entered from now on."""
        return self.states.subscribe()

    async def start(self, descriptor: ConnectionDescriptor) -> Session:
        if self._task_group is None:
            raise RuntimeError("KernelServer must be entered before starting a session")
        if self.session is not None:
            raise AlreadyConnected()
        session = Session(
            descriptor,
            self.config,
            connector=self.connector,
            events=self.events,
            states=self.states,
        )
        self.session = session
        logger.info("Starting session", session_id=session.session_id)
        try:
            await session.connect()
            await self._task_group.start(self._run_session, session)
            if self.config.wait_for_ready:
                await self._wait_for_ready(session)
        except BaseException:
            with CancelScope(shield=True):
                await session.close()
            if self.session is session:
                self.session = None
            raise
        return session

    async def _run_session(self, session: Session, *, task_status: TaskStatus[None] = TASK_STATUS_IGNORED) -> None:
        try:
            await session.run(task_status=task_status)
        finally:
            if self.session is session:
                self.session = None
                logger.info(
                    "Session ended",
                    session_id=session.session_id,
                    reason=str(session.close_reason) if session.close_reason else "stopped",
                )

    async def _wait_for_ready(self, session: Session) -> None:
        timeout = self.config.setup_timeout
        request = await session.request("kernel_info_request")
        try:
            with fail_after(timeout):
                await request
        except TimeoutError:
            request.cancel()
            raise KernelConnect(f"kernel did not answer within {timeout} seconds") from None
        except KernelDisconnect as e:
            raise KernelConnect("kernel went away during startup") from e

    async def stop(self) -> None:
        session = self.session
        if session is None:
            return
        logger.info("Stopping session", session_id=session.session_id)
        await session.close()
        if self.session is session:
            self.session = None

    def _require_session(self) -> Session:
        if self.session is None or self.session.state is not ConnectionState.CONNECTED:
            raise KernelDisconnect()
        return self.session

    async def execute(
        self,
        code: str,
        *,
        silent: bool = False,
        store_history: bool = True,
        user_expressions: dict[str, Any] | None = None,
        allow_stdin: bool | None = None,
        stop_on_error: bool = True,
        watch_outputs: bool = False,
    ) -> PendingRequest:
        session = self._require_session()
        content = ExecuteRequest(
            code=code,
            silent=silent,
            store_history=store_history,
            user_expressions=user_expressions or {},
            allow_stdin=session.stdin_available if allow_stdin is None else allow_stdin,
            stop_on_error=stop_on_error,
        )
        return await session.request("execute_request", content.model_dump(), watch_outputs=watch_outputs)

    async def run_cell(self, code: str, timeout: float = float("inf")) -> AsyncIterator[CellEvent]:
        """Execute ``code`` and yield its outputs until the kernel is idle again."""
        request = await self.execute(code, watch_outputs=True)
        assert request.outputs is not None
        deadline = time.time() + timeout
        try:
            async with request.outputs:
                while True:
                    try:
                        with fail_after(deadline_to_timeout(deadline)):
                            msg = await request.outputs.receive()
                    except EndOfStream:
                        break
                    except TimeoutError:
                        raise TimeoutError(f"Kernel didn't respond in {timeout} seconds") from None
                    event = cell_event(msg)
                    if event is not None:
                        yield event
            try:
                with fail_after(deadline_to_timeout(deadline)):
                    await request
            except TimeoutError:
                raise TimeoutError(f"Kernel didn't respond in {timeout} seconds") from None
        except KernelDisconnect as e:
            yield CellEvent(event="disconnect", data=str(e))
        finally:
            if not request.done:
                request.cancel()

    async def _call(self, request: PendingRequest, timeout: float | None) -> Message:
        if timeout is None:
            return await request
        try:
            with fail_after(timeout):
                return await request
        except TimeoutError:
            request.cancel()
            raise

    async def kernel_info(self, timeout: float | None = None) -> Message:
        request = await self._require_session().request("kernel_info_request")
        return await self._call(request, timeout)

    async def interrupt(self, timeout: float | None = None) -> Message:
        request = await self._require_session().request("interrupt_request")
        return await self._call(request, timeout)

    async def shutdown(self, restart: bool = False, timeout: float | None = None) -> Message:
        request = await self._require_session().request("shutdown_request", {"restart": restart})
        return await self._call(request, timeout)

    async def send_input(self, value: str, parent: Message) -> None:
        """Answer an ``input_request`` the kernel sent on stdin."""
        session = self._require_session()
        await session.send(Channel.STDIN, session.new_message("input_reply", {"value": value}, parent=parent))
