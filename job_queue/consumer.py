"""
Delivery Consumer — Pulls delivery jobs from the queue and sends messages.

Runs a fixed-size pool of worker tasks. Each worker runs its own consume
loop and handles one job at a time; for horizontal scaling, deploy more
worker processes with the same consumer_group.

Per-attempt state machine:

    received ──▶ checked ──┬──▶ skipped                (sent flag already set)
                           └──▶ sent ──▶ marked        (send, then set flag)

Topology:
  ┌──────────────┐       ┌─────────────────┐       ┌────────────┐
  │ POST         │──pub──▶│ dispatch queue   │──────▶│  Consumer  │
  │ /messages    │       │ (Redis Stream)   │       │  Worker(s) │
  └──────────────┘       └─────────────────┘       └─────┬──────┘
                                                          │
                         ┌─────────────────┐              │
                         │ delayed (sorted  │◀── retry ───┘
                         │  set / promoter) │              │
                         └────────┬────────┘              │
                                  │ promote               │
                                  ▼                       │
                         ┌─────────────────┐              │
                         │ dispatch queue   │──────────────┘
                         └─────────────────┘
                                                          │
                         ┌─────────────────┐              │
                         │  DLQ            │◀── exhaust ──┘
                         └─────────────────┘
"""
from __future__ import annotations

import asyncio
import uuid
import structlog
from enum import Enum
from typing import Optional

from channels.base import DeliveryChannel
from core.errors import (
    DataIntegrityError, MessageNotFound, PersistenceFailure,
    StorageUnavailable, StorageWriteError,
)
from database.store_base import BaseMessageStore
from job_queue.message_queue import DeliveryJob, MessageQueue, Queues

logger = structlog.get_logger()


class DeliveryOutcome(str, Enum):
    SENT = "sent"
    SKIPPED = "skipped"


class DeliveryConsumer:
    """
    Consumes jobs from the dispatch queue and delivers the referenced message.

    Usage:
        consumer = DeliveryConsumer(store, queue, channel)
        await consumer.start_background()   # returns immediately, runs as task
        await consumer.stop()
    """

    def __init__(
        self,
        store: BaseMessageStore,
        queue: MessageQueue,
        channel: DeliveryChannel,
        consumer_group: str = "delivery-workers",
        consumer_name: str = "",
        concurrency: int = 5,
        shutdown_timeout: float = 30.0,
        restart_delay: float = 1.0,
    ):
        if concurrency < 1:
            raise ValueError("concurrency must be >= 1")
        self.store = store
        self.queue = queue
        self.channel = channel
        self.consumer_group = consumer_group
        self.consumer_name = consumer_name or f"worker_{uuid.uuid4().hex[:8]}"
        self.concurrency = concurrency
        self.shutdown_timeout = shutdown_timeout
        self.restart_delay = restart_delay
        self._task: Optional[asyncio.Task] = None
        self._running = False
        self.in_flight = 0
        self.stats = {"processed": 0, "sent": 0, "skipped": 0, "failed": 0}

    @property
    def running(self) -> bool:
        return self._running

    @property
    def task(self) -> Optional[asyncio.Task]:
        """Background task from start_background(); done means the pool has exited."""
        return self._task

    async def start_background(self) -> asyncio.Task:
        """Start consuming in a background task. Returns the task handle."""
        # Armed before the task runs so a stop() issued right after sticks
        self._running = True
        self.queue.start_consuming()
        self._task = asyncio.create_task(self._run())
        self._task.add_done_callback(self._log_exit)
        return self._task

    async def _run(self):
        logger.info("delivery_consumer_starting",
                    group=self.consumer_group,
                    consumer=self.consumer_name,
                    concurrency=self.concurrency)

        workers = [
            asyncio.create_task(self._supervise(f"{self.consumer_name}-{i}"))
            for i in range(self.concurrency)
        ]
        try:
            await asyncio.gather(*workers)
        finally:
            for w in workers:
                w.cancel()
            await asyncio.gather(*workers, return_exceptions=True)
            self._running = False

    async def _supervise(self, consumer_name: str):
        """Run one consume loop, restarting it if it dies, until the queue is stopped."""
        while self.queue.consuming:
            try:
                await self.queue.consume(
                    queue=Queues.DISPATCH,
                    handler=self.handle_job,
                    consumer_group=self.consumer_group,
                    consumer_name=consumer_name,
                )
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error("consumer_worker_crashed",
                             consumer=consumer_name,
                             error=str(e),
                             error_type=type(e).__name__)
                await asyncio.sleep(self.restart_delay)

    def _log_exit(self, task: asyncio.Task):
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("delivery_consumer_failed", error=str(exc), error_type=type(exc).__name__)

    async def stop(self, graceful: bool = True):
        """
        Stop taking new jobs, then let in-flight jobs finish within
        shutdown_timeout. Jobs still running after that (or immediately,
        when graceful=False) are cancelled and go back to the queue
        unacknowledged.
        """
        self.queue.stop_consuming()
        task, self._task = self._task, None
        if task is None:
            return

        if graceful:
            done, _ = await asyncio.wait({task}, timeout=self.shutdown_timeout)
            if not done:
                logger.warning("delivery_consumer_shutdown_timeout",
                               in_flight=self.in_flight,
                               timeout=self.shutdown_timeout)
        if not task.done():
            task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.info("delivery_consumer_stopped", **self.stats)

    async def handle_job(self, job: DeliveryJob) -> DeliveryOutcome:
        """
        Process one delivery attempt.

        Flow:
        1. Load the message; a missing record is a DataIntegrityError
        2. Already sent → skip (redelivered job, nothing to do)
        3. Send through the delivery channel
        4. Mark delivered; a store failure here is a PersistenceFailure and
           the retried job will send again
        Every error is re-raised so the queue applies retry/DLQ policy.
        """
        log = logger.bind(job_id=job.job_id,
                          message_id=job.message_id,
                          attempt=job.attempt + 1,
                          max_attempts=job.max_attempts)
        log.info("processing_job")
        self.in_flight += 1
        self.stats["processed"] += 1
        try:
            try:
                message = await self.store.get_by_id(job.message_id)
            except MessageNotFound as e:
                raise DataIntegrityError(job.message_id) from e

            if message.sent:
                log.info("message_already_sent")
                self.stats["skipped"] += 1
                return DeliveryOutcome.SKIPPED

            receipt = await self.channel.send(message.email, message.message)

            try:
                await self.store.mark_delivered(message.id)
            except MessageNotFound as e:
                raise DataIntegrityError(message.id) from e
            except (StorageUnavailable, StorageWriteError) as e:
                raise PersistenceFailure(
                    f"Sent {message.id} but could not record it", cause=e,
                ) from e

            self.stats["sent"] += 1
            log.info("message_delivered",
                     channel=receipt.channel,
                     channel_message_id=receipt.channel_message_id)
            return DeliveryOutcome.SENT

        except Exception as e:
            self.stats["failed"] += 1
            log.error("job_processing_error",
                      error=str(e),
                      error_type=type(e).__name__)
            raise  # route to nack
        finally:
            self.in_flight -= 1


# ──────────────────────────────────────────────────────────────
#  Delayed Job Promoter
# ──────────────────────────────────────────────────────────────

class DelayedJobPromoter:
    """
    Background task that periodically moves retry jobs whose scheduled_at
    has arrived into the dispatch queue.

    For Redis: runs the atomic promote script.
    For in-memory: already handled inside InMemoryMessageQueue.
    """

    def __init__(self, queue: MessageQueue, interval_seconds: float = 1.0):
        self.queue = queue
        self.interval = interval_seconds
        self._task: Optional[asyncio.Task] = None

    async def start_background(self) -> asyncio.Task:
        self._task = asyncio.create_task(self._run())
        return self._task

    async def stop(self):
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

    async def _run(self):
        logger.info("delayed_promoter_started", interval=self.interval)
        while True:
            try:
                await self.queue.promote_delayed()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("promoter_error", error=str(e))
            await asyncio.sleep(self.interval)
