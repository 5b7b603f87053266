"""
Runtime wiring — builds and owns every client a relay process uses.

Both entry points (the HTTP API and the delivery worker) construct one
RelayServices from settings, connect it, and shut it down on exit. Nothing
here is a module-level singleton; tests pass their own store, queue and
channel.
"""
from __future__ import annotations

import structlog
from typing import Any, Awaitable, Callable, Optional

from tenacity import AsyncRetrying, stop_after_attempt, wait_exponential

from channels.base import DeliveryChannel
from channels.email_adapter import create_channel
from config.settings import Settings
from core.health import HealthReporter
from core.producer import MessageProducer
from database.store_base import BaseMessageStore
from database.store_factory import create_store
from job_queue.consumer import DelayedJobPromoter, DeliveryConsumer
from job_queue.message_queue import MessageQueue, RedisMessageQueue, create_message_queue

logger = structlog.get_logger()


class RelayServices:
    def __init__(
        self,
        settings: Settings,
        store: Optional[BaseMessageStore] = None,
        queue: Optional[MessageQueue] = None,
        channel: Optional[DeliveryChannel] = None,
    ):
        self.settings = settings
        self.store = store or create_store(settings.database, echo=settings.debug)
        self.queue = queue or create_message_queue(settings.queue)
        self.channel = channel or create_channel(settings.channel)

        self.producer = MessageProducer(
            self.store, self.queue, max_attempts=settings.queue.max_attempts,
        )
        self.health = HealthReporter(
            self.store, self.queue, timeout=settings.health.probe_timeout,
        )
        self.consumer: Optional[DeliveryConsumer] = None
        self.promoter: Optional[DelayedJobPromoter] = None

    async def _connect_one(self, name: str, connect: Callable[[], Awaitable[Any]], required: bool) -> bool:
        retrying = AsyncRetrying(
            stop=stop_after_attempt(max(1, self.settings.connect_attempts)),
            wait=wait_exponential(multiplier=0.5, max=10),
            reraise=True,
        )
        try:
            async for attempt in retrying:
                with attempt:
                    if attempt.retry_state.attempt_number > 1:
                        logger.info("dependency_connect_retry",
                                    dependency=name,
                                    attempt=attempt.retry_state.attempt_number)
                    await connect()
        except Exception as e:
            if required:
                logger.error("dependency_connect_failed", dependency=name, error=str(e))
                raise
            logger.warning("dependency_unavailable", dependency=name, error=str(e))
            return False
        return True

    async def connect(self, required: bool = True) -> dict[str, bool]:
        """
        Connect the store and the queue.

        With required=False a dependency that stays down is logged and left
        for the health endpoint to report; the process keeps starting.
        """
        return {
            "store": await self._connect_one("store", self.store.connect, required),
            "queue": await self._connect_one("queue", self.queue.connect, required),
        }

    async def start_delivery(self) -> DeliveryConsumer:
        """Initialize the channel and start the consumer pool in the background."""
        qcfg = self.settings.queue
        await self.channel.initialize()
        self.consumer = DeliveryConsumer(
            self.store, self.queue, self.channel,
            consumer_group=qcfg.consumer_group,
            concurrency=qcfg.consumer_concurrency,
            shutdown_timeout=qcfg.shutdown_timeout,
        )
        await self.consumer.start_background()

        # The in-memory queue promotes its own delayed jobs
        if isinstance(self.queue, RedisMessageQueue):
            self.promoter = DelayedJobPromoter(self.queue, interval_seconds=qcfg.promote_interval)
            await self.promoter.start_background()
        return self.consumer

    async def shutdown(self) -> None:
        """Stop delivery first, then release clients. One failing step does not skip the rest."""
        steps: list[tuple[str, Callable[[], Awaitable[Any]]]] = []
        if self.consumer is not None:
            steps.append(("consumer", self.consumer.stop))
        if self.promoter is not None:
            steps.append(("promoter", self.promoter.stop))
        steps += [
            ("channel", self.channel.shutdown),
            ("queue", self.queue.close),
            ("store", self.store.close),
        ]
        for name, step in steps:
            try:
                await step()
            except Exception as e:
                logger.error("shutdown_step_failed", component=name, error=str(e))
        self.consumer = None
        self.promoter = None
