import pytest

from jute.config import ClientConfig


@pytest.fixture
def anyio_backend():
    # zmq.asyncio needs an asyncio event loop
    return "asyncio"


@pytest.fixture
def config():
    return ClientConfig(
        setup_timeout=1.0,
        heartbeat_interval=0.1,
        heartbeat_timeout=0.05,
        heartbeat_max_misses=3,
    )
