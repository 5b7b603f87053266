"""Shared test fixtures for the message relay."""
import asyncio
import pytest
import pytest_asyncio

from channels.base import DeliveryChannel, TransientSendError
from channels.email_adapter import LogChannel
from config.settings import Settings
from core.errors import StorageUnavailable
from database.store_memory import InMemoryMessageStore
from job_queue.message_queue import BackoffPolicy, InMemoryMessageQueue


# ──────────────────────────────────────────────────────────────
#  Test doubles
# ──────────────────────────────────────────────────────────────

class FlakyChannel(DeliveryChannel):
    """Fails the first ``failures`` sends, then succeeds."""

    name = "flaky"

    def __init__(self, failures: int = 0):
        super().__init__()
        self.failures = failures
        self.calls = 0
        self.sent: list[tuple[str, str]] = []

    async def _do_send(self, recipient: str, body: str) -> str:
        self.calls += 1
        if self.calls <= self.failures:
            raise TransientSendError(f"simulated outage #{self.calls}", self.name)
        self.sent.append((recipient, body))
        return f"flaky-{self.calls}"


class SlowChannel(DeliveryChannel):
    """Blocks in send until released, so tests can act while a job is in flight."""

    name = "slow"

    def __init__(self):
        super().__init__()
        self.started = asyncio.Event()
        self.release = asyncio.Event()
        self.sent: list[tuple[str, str]] = []

    async def _do_send(self, recipient: str, body: str) -> str:
        self.started.set()
        await self.release.wait()
        self.sent.append((recipient, body))
        return "slow-1"


class DownStore(InMemoryMessageStore):
    """A store whose database is unreachable."""

    async def ping(self) -> bool:
        raise StorageUnavailable("connection refused")

    async def create(self, email: str, message: str):
        raise StorageUnavailable("connection refused")

    async def get_by_id(self, message_id: str):
        raise StorageUnavailable("connection refused")

    async def mark_delivered(self, message_id: str):
        raise StorageUnavailable("connection refused")

    async def list_all(self, newest_first: bool = True):
        raise StorageUnavailable("connection refused")


class DownQueue(InMemoryMessageQueue):
    """A queue whose broker is unreachable."""

    async def connect(self):
        raise ConnectionError("broker unreachable")

    async def ping(self) -> bool:
        raise ConnectionError("broker unreachable")

    async def publish(self, queue, job):
        raise ConnectionError("broker unreachable")


async def wait_until(predicate, timeout: float = 5.0, interval: float = 0.01):
    """Poll ``predicate`` until it is truthy or ``timeout`` elapses."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(interval)


# ──────────────────────────────────────────────────────────────
#  Fixtures
# ──────────────────────────────────────────────────────────────

@pytest_asyncio.fixture
async def store():
    s = InMemoryMessageStore()
    await s.connect()
    yield s
    await s.close()


@pytest_asyncio.fixture
async def queue():
    q = InMemoryMessageQueue(
        backoff=BackoffPolicy(kind="fixed", delay_seconds=0),
        promote_interval=0.01,
        poll_interval=0.02,
    )
    await q.connect()
    yield q
    await q.close()


@pytest.fixture
def channel() -> LogChannel:
    return LogChannel()


@pytest.fixture
def memory_settings() -> Settings:
    """Settings wired to in-process backends with fast retries."""
    settings = Settings(log_json=False, connect_attempts=1)
    settings.database.store_backend = "memory"
    settings.queue.backend = "memory"
    settings.queue.backoff_type = "fixed"
    settings.queue.backoff_delay = 0
    settings.queue.promote_interval = 0.01
    settings.queue.consumer_concurrency = 2
    settings.queue.shutdown_timeout = 1.0
    settings.health.probe_timeout = 0.5
    return settings
