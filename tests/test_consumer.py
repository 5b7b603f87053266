"""
Tests for the delivery consumer.

Covers single-attempt outcomes (send, skip, missing record, failed mark)
and full runs through the in-memory queue: retries after transient send
failures, dead-lettering, redelivery and graceful shutdown.
"""
import asyncio
import pytest

from channels.base import TransientSendError
from core.errors import DataIntegrityError, PersistenceFailure, StorageUnavailable
from job_queue.consumer import DeliveryConsumer, DeliveryOutcome
from job_queue.message_queue import BackoffPolicy, DeliveryJob, InMemoryMessageQueue, Queues

from conftest import FlakyChannel, SlowChannel, wait_until


class BrokenMarkStore:
    """Wraps a store so that mark_delivered fails like a dropped connection."""

    def __init__(self, inner):
        self.inner = inner

    def __getattr__(self, name):
        return getattr(self.inner, name)

    async def mark_delivered(self, message_id):
        raise StorageUnavailable("connection reset")


class CrashOnceQueue(InMemoryMessageQueue):
    """The first consume() call fails before reading anything, like a lost broker connection."""

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self.crashes = 0

    async def consume(self, *args, **kwargs):
        if not self.crashes:
            self.crashes += 1
            raise RuntimeError("consumer group setup failed")
        await super().consume(*args, **kwargs)


# ──────────────────────────────────────────────────────────────
#  handle_job — one attempt
# ──────────────────────────────────────────────────────────────

class TestHandleJob:
    @pytest.mark.asyncio
    async def test_sends_and_marks(self, store, queue, channel):
        m = await store.create("a@example.com", "hello")
        consumer = DeliveryConsumer(store, queue, channel)

        outcome = await consumer.handle_job(DeliveryJob(message_id=m.id))

        assert outcome == DeliveryOutcome.SENT
        assert channel.outbox == [("a@example.com", "hello")]
        assert (await store.get_by_id(m.id)).sent is True
        assert consumer.stats == {"processed": 1, "sent": 1, "skipped": 0, "failed": 0}

    @pytest.mark.asyncio
    async def test_already_sent_is_skipped(self, store, queue, channel):
        m = await store.create("a@example.com", "hello")
        await store.mark_delivered(m.id)
        consumer = DeliveryConsumer(store, queue, channel)

        outcome = await consumer.handle_job(DeliveryJob(message_id=m.id))

        assert outcome == DeliveryOutcome.SKIPPED
        assert channel.outbox == []
        assert consumer.stats["skipped"] == 1

    @pytest.mark.asyncio
    async def test_redelivered_job_sends_once(self, store, queue, channel):
        m = await store.create("a@example.com", "hello")
        consumer = DeliveryConsumer(store, queue, channel)
        job = DeliveryJob(message_id=m.id)

        await consumer.handle_job(job)
        await consumer.handle_job(job)

        assert len(channel.outbox) == 1

    @pytest.mark.asyncio
    async def test_missing_record_is_integrity_error(self, store, queue, channel):
        consumer = DeliveryConsumer(store, queue, channel)

        with pytest.raises(DataIntegrityError) as exc:
            await consumer.handle_job(DeliveryJob(message_id="ghost"))

        assert exc.value.message_id == "ghost"
        assert channel.outbox == []
        assert await store.list_all() == []
        assert consumer.stats["failed"] == 1

    @pytest.mark.asyncio
    async def test_send_failure_leaves_record_unsent(self, store, queue):
        m = await store.create("a@example.com", "hello")
        consumer = DeliveryConsumer(store, queue, FlakyChannel(failures=1))

        with pytest.raises(TransientSendError):
            await consumer.handle_job(DeliveryJob(message_id=m.id))

        assert (await store.get_by_id(m.id)).sent is False

    @pytest.mark.asyncio
    async def test_mark_failure_is_persistence_failure(self, store, queue, channel):
        m = await store.create("a@example.com", "hello")
        consumer = DeliveryConsumer(BrokenMarkStore(store), queue, channel)

        with pytest.raises(PersistenceFailure) as exc:
            await consumer.handle_job(DeliveryJob(message_id=m.id))

        assert isinstance(exc.value.cause, StorageUnavailable)
        # The send happened; the retry will send again
        assert len(channel.outbox) == 1
        assert (await store.get_by_id(m.id)).sent is False

    def test_concurrency_must_be_positive(self, store, queue, channel):
        with pytest.raises(ValueError):
            DeliveryConsumer(store, queue, channel, concurrency=0)


# ──────────────────────────────────────────────────────────────
#  Full runs through the queue
# ──────────────────────────────────────────────────────────────

class TestConsumerRuns:
    @pytest.mark.asyncio
    async def test_transient_failures_retried_until_sent(self, store, queue):
        channel = FlakyChannel(failures=2)
        m = await store.create("a@example.com", "hello")
        await queue.enqueue(m.id, max_attempts=3)

        consumer = DeliveryConsumer(store, queue, channel, concurrency=1, shutdown_timeout=1)
        await consumer.start_background()
        try:
            await wait_until(lambda: channel.sent)
            await wait_until(lambda: consumer.stats["sent"] == 1)
        finally:
            await consumer.stop()

        assert channel.calls == 3
        assert channel.sent == [("a@example.com", "hello")]
        assert (await store.get_by_id(m.id)).sent is True
        assert await queue.queue_length(Queues.DLQ) == 0

    @pytest.mark.asyncio
    async def test_exhausted_attempts_dead_lettered(self, store, queue):
        channel = FlakyChannel(failures=100)
        m = await store.create("a@example.com", "hello")
        await queue.enqueue(m.id, max_attempts=3)

        consumer = DeliveryConsumer(store, queue, channel, concurrency=1, shutdown_timeout=1)
        await consumer.start_background()
        try:
            await wait_until(lambda: queue._dlq)
        finally:
            await consumer.stop()

        assert channel.calls == 3
        dead = await queue.dead_letters()
        assert [j.message_id for j in dead] == [m.id]
        assert (await store.get_by_id(m.id)).sent is False

    @pytest.mark.asyncio
    async def test_duplicate_jobs_send_at_most_once(self, store, queue, channel):
        m = await store.create("a@example.com", "hello")
        job = await queue.enqueue(m.id)
        # A redelivered copy of the same job
        await queue.publish(Queues.DISPATCH, DeliveryJob.from_dict(job.to_dict()))

        consumer = DeliveryConsumer(store, queue, channel, concurrency=1, shutdown_timeout=1)
        await consumer.start_background()
        try:
            await wait_until(lambda: consumer.stats["processed"] == 2)
        finally:
            await consumer.stop()

        assert len(channel.outbox) == 1
        assert consumer.stats["skipped"] == 1

    @pytest.mark.asyncio
    async def test_many_messages_each_sent_once(self, store, queue, channel):
        ids = []
        for i in range(20):
            m = await store.create(f"user{i}@example.com", f"body {i}")
            await queue.enqueue(m.id)
            ids.append(m.id)

        consumer = DeliveryConsumer(store, queue, channel, concurrency=4, shutdown_timeout=1)
        await consumer.start_background()
        try:
            await wait_until(lambda: consumer.stats["sent"] == 20)
        finally:
            await consumer.stop()

        assert sorted(body for _, body in channel.outbox) == sorted(f"body {i}" for i in range(20))
        records = [await store.get_by_id(i) for i in ids]
        assert all(r.sent for r in records)

    @pytest.mark.asyncio
    async def test_graceful_stop_finishes_in_flight_job(self, store, queue):
        channel = SlowChannel()
        m = await store.create("a@example.com", "hello")
        await queue.enqueue(m.id)

        consumer = DeliveryConsumer(store, queue, channel, concurrency=1, shutdown_timeout=5)
        await consumer.start_background()
        await asyncio.wait_for(channel.started.wait(), timeout=2)
        assert consumer.in_flight == 1

        stopping = asyncio.create_task(consumer.stop())
        await asyncio.sleep(0.05)
        channel.release.set()
        await asyncio.wait_for(stopping, timeout=5)

        assert (await store.get_by_id(m.id)).sent is True
        assert not consumer.running

    @pytest.mark.asyncio
    async def test_stop_timeout_returns_job_to_queue(self, store, queue):
        channel = SlowChannel()
        m = await store.create("a@example.com", "hello")
        await queue.enqueue(m.id)

        consumer = DeliveryConsumer(store, queue, channel, concurrency=1, shutdown_timeout=0.1)
        await consumer.start_background()
        await asyncio.wait_for(channel.started.wait(), timeout=2)

        await asyncio.wait_for(consumer.stop(), timeout=5)

        assert channel.sent == []
        assert (await store.get_by_id(m.id)).sent is False
        pending = await queue.peek(Queues.DISPATCH)
        assert [j.message_id for j in pending] == [m.id]
        assert pending[0].attempt == 0

    @pytest.mark.asyncio
    async def test_stop_right_after_start_is_prompt(self, store, queue, channel):
        consumer = DeliveryConsumer(store, queue, channel, concurrency=2, shutdown_timeout=5)
        await consumer.start_background()
        await asyncio.wait_for(consumer.stop(), timeout=1)
        assert not consumer.running
        assert not queue.consuming

    @pytest.mark.asyncio
    async def test_crashed_consume_loop_is_restarted(self, store, channel):
        queue = CrashOnceQueue(
            backoff=BackoffPolicy(kind="fixed", delay_seconds=0), poll_interval=0.02,
        )
        await queue.connect()
        m = await store.create("a@example.com", "hello")
        await queue.enqueue(m.id)

        consumer = DeliveryConsumer(
            store, queue, channel, concurrency=1, shutdown_timeout=1, restart_delay=0.01,
        )
        await consumer.start_background()
        try:
            await wait_until(lambda: consumer.stats["sent"] == 1)
            assert not consumer.task.done()
        finally:
            await consumer.stop()
            await queue.close()

        assert queue.crashes == 1
        assert channel.outbox == [("a@example.com", "hello")]
