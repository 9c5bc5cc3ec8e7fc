import time
from collections.abc import Awaitable, Callable
from enum import Enum
from uuid import uuid4

import structlog
from anyio import move_on_after, sleep

from .transport import Transport

logger = structlog.get_logger()


class HeartbeatState(str, Enum):
    ALIVE = "alive"
    SUSPECT = "suspect"
    DEAD = "dead"


class HeartbeatMonitor:
    """Ping the kernel's echo socket and declare it dead after repeated silence.

    One missed echo makes the kernel suspect; ``max_misses`` consecutive
    misses make it dead, at which point ``on_dead`` is awaited and the
    monitor stops. Any echo before that brings it back to alive.
    """

    def __init__(
        self,
        transport: Transport,
        on_dead: Callable[[], Awaitable[None]],
        *,
        interval: float = 3.0,
        timeout: float = 1.0,
        max_misses: int = 3,
    ) -> None:
        self.transport = transport
        self.on_dead = on_dead
        self.interval = interval
        self.timeout = timeout
        self.max_misses = max_misses
        self.state = HeartbeatState.ALIVE
        self.misses = 0

    def record(self, echoed: bool) -> HeartbeatState:
        if self.state is HeartbeatState.DEAD:
            return self.state
        previous = self.state
        if echoed:
            self.misses = 0
            self.state = HeartbeatState.ALIVE
        else:
            self.misses += 1
            if self.misses >= self.max_misses:
                self.state = HeartbeatState.DEAD
            else:
                self.state = HeartbeatState.SUSPECT
        if self.state is not previous:
            logger.info("Heartbeat state changed", state=self.state.value, misses=self.misses)
        return self.state

    async def ping(self) -> bool:
        # empty envelope frame, so REP based echo sockets accept a DEALER ping
        ping = [b"", uuid4().hex.encode()]
        await self.transport.send(ping)
        with move_on_after(self.timeout):
            while True:
                frame = await self.transport.receive()
                if frame == ping:
                    return True
                # echo of an earlier ping that timed out
        return False

    async def run(self) -> None:
        while True:
            started = time.monotonic()
            if self.record(await self.ping()) is HeartbeatState.DEAD:
                logger.warning("Kernel stopped answering heartbeats", misses=self.misses)
                await self.on_dead()
                return
            await sleep(max(0.0, self.interval - (time.monotonic() - started)))
