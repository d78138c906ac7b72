import asyncio

import pytest

from wellness.core.error_handler import ErrorHandler
from wellness.core.state_manager import StateManager
from wellness.events import Bus
from wellness.storage.kv_store import KeyValueStore


class FakeClock:
    """可手动推进的毫秒时钟"""

    def __init__(self, start: int = 0):
        self.now = start

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> int:
        self.now += ms
        return self.now


@pytest.fixture
def clock():
    return FakeClock(0)


@pytest.fixture
def error_handler(clock):
    return ErrorHandler(clock=clock)


@pytest.fixture
def bus():
    return Bus()


@pytest.fixture
def db_path(tmp_path):
    """Create a temporary database path."""
    return str(tmp_path / "data" / "wellness.db")


@pytest.fixture
async def store(db_path):
    store = KeyValueStore(db_path)
    assert await store.open()
    yield store
    await store.close()


@pytest.fixture
async def state_manager(store, error_handler):
    manager = StateManager(store, error_handler, debounce_ms=20)
    await manager.initialize()
    yield manager
    await manager.close()


@pytest.fixture
def wait_until():
    """轮询等待条件成立，用于等待总线上的协程处理器执行完毕"""

    async def _wait(condition, timeout: float = 2.0) -> bool:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while not condition():
            if loop.time() > deadline:
                return False
            await asyncio.sleep(0.01)
        return True

    return _wait
