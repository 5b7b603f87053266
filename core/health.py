"""Health Reporter — live connectivity of the message store and delivery queue."""
from __future__ import annotations

import asyncio
import structlog
from typing import Any, Awaitable, Callable

from database.store_base import BaseMessageStore
from job_queue.message_queue import MessageQueue
from models.schemas import HealthReport

logger = structlog.get_logger()


class HealthReporter:
    """
    Probes each dependency independently and concurrently. A slow or failing
    probe only marks its own dependency down; check() never raises.
    """

    def __init__(self, store: BaseMessageStore, queue: MessageQueue, timeout: float = 2.0):
        self.store = store
        self.queue = queue
        self.timeout = timeout

    async def _probe(self, name: str, probe: Callable[[], Awaitable[Any]]) -> bool:
        try:
            return bool(await asyncio.wait_for(probe(), timeout=self.timeout))
        except asyncio.TimeoutError:
            logger.warning("health_probe_timeout", dependency=name, timeout=self.timeout)
        except Exception as e:
            logger.warning("health_probe_failed", dependency=name, error=str(e))
        return False

    async def check(self) -> HealthReport:
        store_ok, queue_ok = await asyncio.gather(
            self._probe("store", self.store.ping),
            self._probe("queue", self.queue.ping),
        )
        return HealthReport(store=store_ok, queue=queue_ok)
