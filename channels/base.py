"""
Delivery Channels — the external send effect, behind one small interface.

Provides:
- ChannelError / TransientSendError: structured error hierarchy
- ChannelMetrics: per-channel send/fail/latency tracking
- SendReceipt: what a successful transmission reports back
- DeliveryChannel: abstract base wrapping every send with metrics

Retry timing belongs to the delivery queue; channels never retry.
"""
from __future__ import annotations

import abc
import time
import uuid
import structlog
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

logger = structlog.get_logger()


# ══════════════════════════════════════════════════════════════
#  ERRORS
# ══════════════════════════════════════════════════════════════

class ChannelError(Exception):
    """Base exception for all channel operations."""

    def __init__(self, message: str, channel: str = "", retryable: bool = False):
        self.channel = channel
        self.retryable = retryable
        super().__init__(message)


class TransientSendError(ChannelError):
    def __init__(self, message: str, channel: str = ""):
        super().__init__(message, channel, retryable=True)


# ══════════════════════════════════════════════════════════════
#  CHANNEL METRICS
# ══════════════════════════════════════════════════════════════

class ChannelMetrics:
    """Tracks per-channel send, failure, and latency metrics."""

    def __init__(self, channel: str):
        self.channel = channel
        self.messages_sent: int = 0
        self.messages_failed: int = 0
        self._latencies: list[float] = []
        self._errors: list[str] = []

    def record_send(self, latency_ms: float = 0.0):
        self.messages_sent += 1
        if latency_ms > 0:
            self._latencies.append(latency_ms)
            del self._latencies[:-1000]

    def record_failure(self, error: str = ""):
        self.messages_failed += 1
        if error:
            self._errors.append(error)
            del self._errors[:-100]

    @property
    def avg_latency_ms(self) -> float:
        return sum(self._latencies) / len(self._latencies) if self._latencies else 0.0

    @property
    def failure_rate(self) -> float:
        total = self.messages_sent + self.messages_failed
        return self.messages_failed / total if total > 0 else 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "channel": self.channel,
            "sent": self.messages_sent,
            "failed": self.messages_failed,
            "avg_latency_ms": round(self.avg_latency_ms, 1),
            "failure_rate": round(self.failure_rate, 4),
            "recent_errors": self._errors[-10:],
        }


@dataclass
class SendReceipt:
    channel: str
    recipient: str
    channel_message_id: str = ""
    sent_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    latency_ms: float = 0.0


# ══════════════════════════════════════════════════════════════
#  DELIVERY CHANNEL — Abstract Base
# ══════════════════════════════════════════════════════════════

class DeliveryChannel(abc.ABC):
    """
    Base class for delivery channels.

    Subclasses implement _do_send, which either returns a channel message id
    or raises (TransientSendError for failures worth another attempt). The
    base class times every send and records metrics; it never swallows
    errors, so the delivery queue sees every failure.
    """

    name: str = "channel"

    def __init__(self):
        self._initialized = False
        self._metrics = ChannelMetrics(self.name)

    @property
    def metrics(self) -> ChannelMetrics:
        return self._metrics

    # ── Abstract hooks ────────────────────────────────────────

    @abc.abstractmethod
    async def _do_send(self, recipient: str, body: str) -> str:
        ...

    async def initialize(self) -> None:
        self._initialized = True

    async def shutdown(self) -> None:
        self._initialized = False

    # ── Public send ───────────────────────────────────────────

    async def send(self, recipient: str, body: str) -> SendReceipt:
        start = time.monotonic()
        try:
            channel_message_id = await self._do_send(recipient, body)
        except Exception as e:
            self._metrics.record_failure(str(e))
            logger.warning("channel_send_failed",
                           channel=self.name,
                           recipient=recipient,
                           error=str(e),
                           retryable=getattr(e, "retryable", False))
            raise
        latency = (time.monotonic() - start) * 1000
        self._metrics.record_send(latency)
        return SendReceipt(
            channel=self.name,
            recipient=recipient,
            channel_message_id=channel_message_id or uuid.uuid4().hex,
            latency_ms=round(latency, 1),
        )

    # ── Health ────────────────────────────────────────────────

    async def health_check(self) -> dict[str, Any]:
        return {
            "channel": self.name,
            "initialized": self._initialized,
            "metrics": self._metrics.to_dict(),
        }
