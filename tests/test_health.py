"""Tests for the dependency health reporter."""
import asyncio
import pytest

from core.health import HealthReporter
from database.store_memory import InMemoryMessageStore
from job_queue.message_queue import InMemoryMessageQueue

from conftest import DownQueue, DownStore


class HangingStore(InMemoryMessageStore):
    async def ping(self) -> bool:
        await asyncio.sleep(60)
        return True


class TestHealthReporter:
    @pytest.mark.asyncio
    async def test_all_up(self, store, queue):
        report = await HealthReporter(store, queue).check()
        assert report.to_public() == {"store": "up", "queue": "up"}

    @pytest.mark.asyncio
    async def test_all_down_never_raises(self):
        report = await HealthReporter(DownStore(), DownQueue()).check()
        assert report.to_public() == {"store": "down", "queue": "down"}

    @pytest.mark.asyncio
    async def test_disconnected_queue_is_down(self, store):
        report = await HealthReporter(store, InMemoryMessageQueue()).check()
        assert report.to_public() == {"store": "up", "queue": "down"}

    @pytest.mark.asyncio
    async def test_slow_probe_times_out_independently(self, queue):
        reporter = HealthReporter(HangingStore(), queue, timeout=0.05)
        report = await asyncio.wait_for(reporter.check(), timeout=2)
        assert report.store is False
        assert report.queue is True
