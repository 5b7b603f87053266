"""
Message Queue — Abstract interface with Redis Streams and in-memory backends.

Queue Topology:
  relay:dispatch    — Delivery jobs ready to run (Redis Stream + consumer group)
  relay:delayed     — Jobs waiting out a retry backoff (sorted set scored by due time)
  relay:dlq         — Dead-letter queue for jobs that exhausted their attempts

Job Schema (flat string mapping, Redis stream fields):
  {
      "job_id":        unique job identifier, stable across retries,
      "message_id":    Message record this job delivers,
      "attempt":       0-based attempt number, maintained by the queue,
      "max_attempts":  ceiling before DLQ,
      "scheduled_at":  ISO timestamp when the job should execute,
      "created_at":    ISO timestamp when the job was enqueued,
      "metadata":      JSON-encoded dict (last_error, last_failure_at, dlq_reason),
  }

Contract:
  - A handler that returns normally acknowledges the job (removed).
  - A handler that raises is nacked: retried with backoff until max_attempts,
    then moved to the DLQ and never retried automatically.
  - A job whose consumer dies mid-flight is redelivered (Redis: reclaimed
    once idle longer than the visibility timeout). Delivery is at least
    once, never exactly once.
"""
from __future__ import annotations

import asyncio
import json
import uuid
import structlog
from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from dataclasses import dataclass, field, asdict
from typing import Any, Awaitable, Callable, Optional

import redis.asyncio as aioredis
from redis.exceptions import RedisError, ResponseError

from config.settings import QueueConfig
from core.errors import QueueUnavailable

logger = structlog.get_logger()

DEFAULT_MAX_ATTEMPTS = 3

JobHandler = Callable[["DeliveryJob"], Awaitable[Any]]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ──────────────────────────────────────────────────────────────
#  Retry Policy
# ──────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class BackoffPolicy:
    """Delay between a failed attempt and the next one."""
    kind: str = "exponential"       # "exponential" | "fixed"
    delay_seconds: float = 5.0

    def __post_init__(self):
        if self.kind not in ("exponential", "fixed"):
            raise ValueError(f"Unknown backoff kind: {self.kind!r}")
        if self.delay_seconds < 0:
            raise ValueError("delay_seconds must be >= 0")

    def delay_for(self, attempt: int) -> float:
        """Seconds to wait after 0-based ``attempt`` failed."""
        if self.kind == "fixed":
            return self.delay_seconds
        return self.delay_seconds * (2 ** attempt)


# ──────────────────────────────────────────────────────────────
#  Job Model
# ──────────────────────────────────────────────────────────────

@dataclass
class DeliveryJob:
    """A scheduled attempt to deliver one message. Carries no message content."""
    message_id: str
    attempt: int = 0
    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    scheduled_at: str = ""
    created_at: str = ""
    metadata: dict[str, Any] = field(default_factory=dict)
    job_id: str = ""

    def __post_init__(self):
        if not self.job_id:
            self.job_id = f"job_{uuid.uuid4().hex[:12]}"
        if not self.created_at:
            self.created_at = _utcnow().isoformat()
        if not self.scheduled_at:
            self.scheduled_at = self.created_at

    def to_dict(self) -> dict[str, str]:
        d = asdict(self)
        d["metadata"] = json.dumps(d["metadata"])
        d["attempt"] = str(d["attempt"])
        d["max_attempts"] = str(d["max_attempts"])
        return d

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> DeliveryJob:
        data = dict(data)  # copy
        if isinstance(data.get("metadata"), str):
            data["metadata"] = json.loads(data["metadata"])
        data["attempt"] = int(data.get("attempt", 0))
        data["max_attempts"] = int(data.get("max_attempts", DEFAULT_MAX_ATTEMPTS))
        return cls(**{k: v for k, v in data.items() if k in cls.__dataclass_fields__})

    @property
    def is_last_attempt(self) -> bool:
        return self.attempt + 1 >= self.max_attempts

    @property
    def due_timestamp(self) -> float:
        try:
            due = datetime.fromisoformat(self.scheduled_at)
        except ValueError:
            return 0.0
        if due.tzinfo is None:
            due = due.replace(tzinfo=timezone.utc)
        return due.timestamp()

    def next_retry_job(self, backoff: BackoffPolicy, error: str = "") -> DeliveryJob:
        """Create a copy with incremented attempt and backoff delay."""
        now = _utcnow()
        retry_at = now + timedelta(seconds=backoff.delay_for(self.attempt))
        return DeliveryJob(
            message_id=self.message_id,
            attempt=self.attempt + 1,
            max_attempts=self.max_attempts,
            scheduled_at=retry_at.isoformat(),
            created_at=self.created_at,
            metadata={**self.metadata, "last_failure_at": now.isoformat(), "last_error": error},
            job_id=self.job_id,  # same job_id across retries for tracing
        )


# ──────────────────────────────────────────────────────────────
#  Queue Names
# ──────────────────────────────────────────────────────────────

class Queues:
    DISPATCH = "relay:dispatch"
    DELAYED = "relay:delayed"
    DLQ = "relay:dlq"


# ──────────────────────────────────────────────────────────────
#  Abstract Interface
# ──────────────────────────────────────────────────────────────

class MessageQueue(ABC):
    """Durable at-least-once delivery queue."""

    def __init__(self, backoff: Optional[BackoffPolicy] = None):
        self.backoff = backoff or BackoffPolicy()
        self._running = False

    @abstractmethod
    async def connect(self):
        ...

    @abstractmethod
    async def close(self):
        ...

    @abstractmethod
    async def ping(self) -> bool:
        """Lightweight liveness probe. Raises or returns False when unreachable."""
        ...

    async def enqueue(self, message_id: str, max_attempts: int = DEFAULT_MAX_ATTEMPTS) -> DeliveryJob:
        """
        Schedule delivery of one stored message.

        Returns only after the backend has accepted the job, so a crash of
        the caller afterwards cannot lose it.
        """
        job = DeliveryJob(message_id=message_id, max_attempts=max_attempts)
        try:
            await self.publish(Queues.DISPATCH, job)
        except (RedisError, OSError, asyncio.TimeoutError) as e:
            logger.error("job_enqueue_failed", message_id=message_id, error=str(e))
            raise QueueUnavailable(f"Could not enqueue delivery of {message_id}", cause=e) from e
        return job

    @abstractmethod
    async def publish(self, queue: str, job: DeliveryJob):
        """Publish a job for immediate processing."""
        ...

    @abstractmethod
    async def publish_delayed(self, job: DeliveryJob):
        """Publish a job that should execute at job.scheduled_at."""
        ...

    @abstractmethod
    async def consume(
        self,
        queue: str,
        handler: JobHandler,
        consumer_group: str = "default",
        consumer_name: str = "",
    ):
        """
        Consume from a queue once start_consuming() has armed it. Returns
        right away if stop_consuming() came first, otherwise after it. Calls
        handler for one job at a time. Each job is handed to one consumer at
        a time; cancelling a consumer mid-job leaves that job unacknowledged.
        """
        ...

    @property
    def consuming(self) -> bool:
        return self._running

    def start_consuming(self):
        """Arm consume() loops; call before spawning them so an early stop_consuming() sticks."""
        self._running = True

    def stop_consuming(self):
        """Ask every consume() loop to exit after its current job."""
        self._running = False

    async def nack(self, queue: str, job: DeliveryJob, error: Optional[BaseException] = None):
        """Negative-acknowledge — route to retry or DLQ."""
        reason = str(error) if error is not None else ""
        if job.is_last_attempt:
            job.metadata["dlq_reason"] = f"Exceeded {job.max_attempts} attempts"
            job.metadata["last_error"] = reason
            await self._dead_letter(job)
            # Terminal: nobody is waiting on this job, the log is the only trace
            logger.error("job_moved_to_dlq",
                         job_id=job.job_id,
                         message_id=job.message_id,
                         attempts=job.attempt + 1,
                         error=reason)
        else:
            retry_job = job.next_retry_job(self.backoff, error=reason)
            await self.publish_delayed(retry_job)
            logger.info("job_scheduled_for_retry",
                        job_id=job.job_id,
                        message_id=job.message_id,
                        attempt=retry_job.attempt,
                        scheduled_at=retry_job.scheduled_at)

    @abstractmethod
    async def _dead_letter(self, job: DeliveryJob):
        ...

    @abstractmethod
    async def queue_length(self, queue: str) -> int:
        """Return the number of jobs held in a queue."""
        ...

    @abstractmethod
    async def peek(self, queue: str, count: int = 10) -> list[DeliveryJob]:
        """Peek at jobs without consuming them."""
        ...

    async def dead_letters(self, count: int = 10) -> list[DeliveryJob]:
        return await self.peek(Queues.DLQ, count)

    async def depths(self) -> dict[str, int]:
        """Job counts per queue, for operators."""
        try:
            return {
                "dispatch": await self.queue_length(Queues.DISPATCH),
                "delayed": await self.queue_length(Queues.DELAYED),
                "dlq": await self.queue_length(Queues.DLQ),
            }
        except (RedisError, OSError, asyncio.TimeoutError) as e:
            raise QueueUnavailable("Could not read queue depths", cause=e) from e

    @abstractmethod
    async def promote_delayed(self) -> int:
        """Move delayed jobs whose scheduled_at has arrived to the dispatch queue."""
        ...


# ──────────────────────────────────────────────────────────────
#  Redis Streams Implementation
# ──────────────────────────────────────────────────────────────

# Atomically move due jobs from the delayed set onto the dispatch stream so
# that concurrent promoters never copy the same job twice.
# KEYS: [delayed, dispatch]
# ARGV: [now_timestamp, max_count]
_PROMOTE_SCRIPT = """
local ready = redis.call('ZRANGEBYSCORE', KEYS[1], '-inf', ARGV[1], 'LIMIT', 0, ARGV[2])
for _, payload in ipairs(ready) do
    redis.call('ZREM', KEYS[1], payload)
    local job = cjson.decode(payload)
    local fields = {}
    for k, v in pairs(job) do
        table.insert(fields, k)
        table.insert(fields, tostring(v))
    end
    redis.call('XADD', KEYS[2], '*', unpack(fields))
end
return #ready
"""


class RedisMessageQueue(MessageQueue):
    """
    Production queue backed by Redis Streams + Sorted Sets.

    - Dispatch queue uses a Redis Stream with a consumer group
    - Delayed queue uses a Redis Sorted Set (promoted by a Lua script)
    - DLQ uses a Redis Stream for inspection
    - Entries are XACKed and XDELed only after the handler returned or the
      job was rescheduled; entries idle in the pending list longer than the
      visibility timeout are reclaimed by another consumer
    """

    def __init__(
        self,
        redis_url: str = "redis://localhost:6379",
        backoff: Optional[BackoffPolicy] = None,
        visibility_timeout: float = 30.0,
        socket_timeout: float = 5.0,
        promote_batch: int = 100,
        client: Optional[aioredis.Redis] = None,
    ):
        super().__init__(backoff)
        self._redis_url = redis_url
        self._redis: Optional[aioredis.Redis] = client
        self._visibility_ms = int(visibility_timeout * 1000)
        self._socket_timeout = socket_timeout
        # Block shorter than the socket timeout so an idle read never times out
        self._block_ms = max(100, min(2000, int(socket_timeout * 500)))
        self._promote_batch = promote_batch
        self._promote_script = None

    async def connect(self):
        # The client reconnects lazily, so a failed ping leaves it usable later
        if self._redis is None:
            self._redis = aioredis.from_url(
                self._redis_url,
                decode_responses=True,
                max_connections=20,
                socket_timeout=self._socket_timeout,
                socket_connect_timeout=self._socket_timeout,
            )
        if self._promote_script is None:
            self._promote_script = self._redis.register_script(_PROMOTE_SCRIPT)
        await self._redis.ping()
        logger.info("redis_queue_connected", url=self._redis_url.split("@")[-1])

    async def close(self):
        self._running = False
        if self._redis:
            await self._redis.aclose()
            self._redis = None
            self._promote_script = None

    async def ping(self) -> bool:
        if self._redis is None:
            return False
        return bool(await self._redis.ping())

    @property
    def _client(self) -> aioredis.Redis:
        if self._redis is None:
            raise ConnectionError("redis queue is not connected")
        return self._redis

    async def _ensure_group(self, queue: str, group: str):
        """Create consumer group if it doesn't exist."""
        try:
            await self._client.xgroup_create(queue, group, id="0", mkstream=True)
        except ResponseError as e:
            if "BUSYGROUP" not in str(e):
                raise

    async def publish(self, queue: str, job: DeliveryJob):
        await self._client.xadd(queue, job.to_dict())
        logger.info("job_published",
                    queue=queue,
                    job_id=job.job_id,
                    message_id=job.message_id,
                    attempt=job.attempt)

    async def publish_delayed(self, job: DeliveryJob):
        payload = json.dumps(job.to_dict())
        await self._client.zadd(Queues.DELAYED, {payload: job.due_timestamp})
        logger.info("delayed_job_published",
                    job_id=job.job_id,
                    scheduled_at=job.scheduled_at)

    async def _dead_letter(self, job: DeliveryJob):
        await self._client.xadd(Queues.DLQ, job.to_dict())

    async def consume(
        self,
        queue: str,
        handler: JobHandler,
        consumer_group: str = "default",
        consumer_name: str = "",
    ):
        if not consumer_name:
            consumer_name = f"worker_{uuid.uuid4().hex[:8]}"

        logger.info("consumer_started",
                    queue=queue,
                    group=consumer_group,
                    consumer=consumer_name)

        group_ready = False
        while self._running:
            try:
                if not group_ready:
                    await self._ensure_group(queue, consumer_group)
                    group_ready = True
                entries = await self._reclaim_stale(queue, consumer_group, consumer_name)
                if not entries:
                    entries = await self._read_new(queue, consumer_group, consumer_name)
                for entry_id, fields, deliveries in entries:
                    await self._process(queue, consumer_group, entry_id, fields, deliveries, handler)
            except (RedisError, OSError) as e:
                logger.error("consumer_error", queue=queue, consumer=consumer_name, error=str(e))
                await asyncio.sleep(1)

        logger.info("consumer_stopped", queue=queue, consumer=consumer_name)

    async def _read_new(self, queue: str, group: str, consumer: str) -> list[tuple[str, dict, int]]:
        messages = await self._client.xreadgroup(
            groupname=group,
            consumername=consumer,
            streams={queue: ">"},
            count=1,
            block=self._block_ms,
        )
        if not messages:
            return []
        return [
            (entry_id, fields, 1)
            for _, stream_messages in messages
            for entry_id, fields in stream_messages
        ]

    async def _reclaim_stale(self, queue: str, group: str, consumer: str) -> list[tuple[str, dict, int]]:
        """
        Take over one entry whose consumer stopped acknowledging (crash/timeout).

        Returns (entry_id, fields, deliveries); XAUTOCLAIM has already counted
        this delivery.
        """
        result = await self._client.xautoclaim(
            queue, group, consumer,
            min_idle_time=self._visibility_ms,
            start_id="0-0",
            count=1,
        )
        claimed = []
        for entry_id, fields in result[1]:
            if not fields:
                continue
            pending = await self._client.xpending_range(
                queue, group, min=entry_id, max=entry_id, count=1,
            )
            deliveries = int(pending[0]["times_delivered"]) if pending else 1
            logger.warning("job_reclaimed",
                           entry_id=entry_id,
                           job_id=fields.get("job_id"),
                           deliveries=deliveries,
                           consumer=consumer)
            claimed.append((entry_id, fields, deliveries))
        return claimed

    async def _process(
        self,
        queue: str,
        group: str,
        entry_id: str,
        fields: dict,
        deliveries: int,
        handler: JobHandler,
    ):
        job = DeliveryJob.from_dict(fields)
        # Every earlier delivery of this entry ended without an ack and used up an attempt
        job.attempt += max(0, deliveries - 1)
        if job.attempt >= job.max_attempts:
            job.attempt = job.max_attempts - 1
            await self.nack(queue, job, RuntimeError(
                f"consumer stopped responding {deliveries - 1} time(s)"
            ))
        else:
            try:
                await handler(job)
            except Exception as e:
                logger.warning("job_handler_error",
                               job_id=job.job_id,
                               attempt=job.attempt,
                               error=str(e))
                await self.nack(queue, job, e)
        # Reached only once the job succeeded or its retry is durably scheduled
        pipe = self._client.pipeline(transaction=True)
        pipe.xack(queue, group, entry_id)
        pipe.xdel(queue, entry_id)
        await pipe.execute()
        logger.debug("job_acked", job_id=job.job_id, entry_id=entry_id)

    async def queue_length(self, queue: str) -> int:
        if queue == Queues.DELAYED:
            return await self._client.zcard(queue)
        return await self._client.xlen(queue)

    async def peek(self, queue: str, count: int = 10) -> list[DeliveryJob]:
        if queue == Queues.DELAYED:
            payloads = await self._client.zrange(queue, 0, count - 1)
            return [DeliveryJob.from_dict(json.loads(p)) for p in payloads]
        messages = await self._client.xrange(queue, count=count)
        return [DeliveryJob.from_dict(fields) for _, fields in messages]

    async def promote_delayed(self) -> int:
        """Move jobs whose scheduled_at <= now from sorted set to dispatch stream."""
        now = _utcnow().timestamp()
        promoted = await self._promote_script(
            keys=[Queues.DELAYED, Queues.DISPATCH],
            args=[now, self._promote_batch],
        )
        if promoted:
            logger.info("delayed_jobs_promoted", count=promoted)
        return int(promoted or 0)


# ──────────────────────────────────────────────────────────────
#  In-Memory Implementation (Development)
# ──────────────────────────────────────────────────────────────

class InMemoryMessageQueue(MessageQueue):
    """
    Development/test queue backed by asyncio primitives.
    Single-process only — no persistence. Several consume() loops may share
    one queue; asyncio.Queue hands each job to exactly one of them.
    """

    def __init__(
        self,
        backoff: Optional[BackoffPolicy] = None,
        promote_interval: float = 1.0,
        poll_interval: float = 0.5,
    ):
        super().__init__(backoff)
        self._queues: dict[str, asyncio.Queue] = {}
        self._delayed: list[tuple[float, DeliveryJob]] = []  # (timestamp, job)
        self._dlq: list[DeliveryJob] = []
        self._connected = False
        self._promote_interval = promote_interval
        self._poll_interval = poll_interval
        self._delayed_promoter_task: Optional[asyncio.Task] = None

    def _get_queue(self, name: str) -> asyncio.Queue:
        if name not in self._queues:
            self._queues[name] = asyncio.Queue()
        return self._queues[name]

    async def connect(self):
        self._connected = True
        self._delayed_promoter_task = asyncio.create_task(self._promote_loop())
        logger.info("inmemory_queue_connected")

    async def close(self):
        self._connected = False
        self._running = False
        if self._delayed_promoter_task:
            self._delayed_promoter_task.cancel()
            try:
                await self._delayed_promoter_task
            except asyncio.CancelledError:
                pass
            self._delayed_promoter_task = None

    async def ping(self) -> bool:
        return self._connected

    async def publish(self, queue: str, job: DeliveryJob):
        if not self._connected:
            raise ConnectionError("in-memory queue is not connected")
        q = self._get_queue(queue)
        await q.put(job)
        logger.info("job_published",
                    queue=queue,
                    job_id=job.job_id,
                    message_id=job.message_id,
                    attempt=job.attempt)

    async def publish_delayed(self, job: DeliveryJob):
        self._delayed.append((job.due_timestamp, job))
        self._delayed.sort(key=lambda x: x[0])
        logger.info("delayed_job_published",
                    job_id=job.job_id,
                    scheduled_at=job.scheduled_at)

    async def _dead_letter(self, job: DeliveryJob):
        self._dlq.append(job)

    async def consume(
        self,
        queue: str,
        handler: JobHandler,
        consumer_group: str = "default",
        consumer_name: str = "",
    ):
        q = self._get_queue(queue)
        logger.info("consumer_started", queue=queue, consumer=consumer_name)

        while self._running:
            try:
                job = await asyncio.wait_for(q.get(), timeout=self._poll_interval)
            except asyncio.TimeoutError:
                continue
            try:
                await handler(job)
            except asyncio.CancelledError:
                # Shutdown mid-job: hand the job back untouched
                q.put_nowait(job)
                raise
            except Exception as e:
                logger.warning("job_handler_error",
                               job_id=job.job_id,
                               attempt=job.attempt,
                               error=str(e))
                await self.nack(queue, job, e)

        logger.info("consumer_stopped", queue=queue, consumer=consumer_name)

    async def queue_length(self, queue: str) -> int:
        if queue == Queues.DELAYED:
            return len(self._delayed)
        if queue == Queues.DLQ:
            return len(self._dlq)
        return self._get_queue(queue).qsize()

    async def peek(self, queue: str, count: int = 10) -> list[DeliveryJob]:
        if queue == Queues.DELAYED:
            return [job for _, job in self._delayed[:count]]
        if queue == Queues.DLQ:
            return list(self._dlq[:count])
        q = self._get_queue(queue)
        # asyncio.Queue doesn't support peek natively — drain and re-add in order
        items = []
        while not q.empty():
            items.append(q.get_nowait())
        for item in items:
            q.put_nowait(item)
        return items[:count]

    async def promote_delayed(self) -> int:
        now = _utcnow().timestamp()
        ready = [(ts, job) for ts, job in self._delayed if ts <= now]
        self._delayed = [(ts, job) for ts, job in self._delayed if ts > now]

        for _, job in ready:
            await self.publish(Queues.DISPATCH, job)

        if ready:
            logger.info("delayed_jobs_promoted", count=len(ready))
        return len(ready)

    async def _promote_loop(self):
        """Background loop to promote delayed jobs."""
        while self._connected:
            try:
                await self.promote_delayed()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("delayed_promote_error", error=str(e))
            await asyncio.sleep(self._promote_interval)


# ──────────────────────────────────────────────────────────────
#  Factory
# ──────────────────────────────────────────────────────────────

def backoff_from_config(config: QueueConfig) -> BackoffPolicy:
    return BackoffPolicy(kind=config.backoff_type, delay_seconds=config.backoff_delay)


def create_message_queue(config: Optional[QueueConfig] = None) -> MessageQueue:
    """Factory: create the configured queue backend. The caller owns it."""
    config = config or QueueConfig()
    backoff = backoff_from_config(config)

    if config.backend == "redis":
        return RedisMessageQueue(
            redis_url=config.redis_url,
            backoff=backoff,
            visibility_timeout=config.visibility_timeout,
            socket_timeout=config.socket_timeout,
        )
    if config.backend == "memory":
        return InMemoryMessageQueue(backoff=backoff, promote_interval=config.promote_interval)
    raise ValueError(f"Unknown queue backend: {config.backend!r}")
