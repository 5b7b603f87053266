"""
Email Delivery Channels.

Provides:
- LogChannel: simulated transmission that only logs (development default)
- SmtpChannel: real SMTP delivery through aiosmtplib
- create_channel: pick one from ChannelSettings

Both report transient failures as TransientSendError and leave retrying to
the delivery queue.
"""
from __future__ import annotations

import asyncio
import uuid
import structlog
from email.message import EmailMessage
from typing import Optional

import aiosmtplib

from channels.base import DeliveryChannel, TransientSendError
from config.settings import ChannelSettings

logger = structlog.get_logger()


class LogChannel(DeliveryChannel):
    """
    Stand-in transport: "sending" a message means writing it to the log.

    Keeps the most recent outbox_limit sends so local runs and tests can
    inspect them.
    """

    name = "log"

    def __init__(self, outbox_limit: int = 100):
        super().__init__()
        self.outbox_limit = outbox_limit
        self.outbox: list[tuple[str, str]] = []

    async def _do_send(self, recipient: str, body: str) -> str:
        message_id = uuid.uuid4().hex
        self.outbox.append((recipient, body))
        del self.outbox[:-self.outbox_limit]
        logger.info("sending_message", email=recipient, message=body, channel_message_id=message_id)
        return message_id


class SmtpChannel(DeliveryChannel):
    """
    Sends each message as a plain-text email.

    Opens one SMTP connection per send with explicit timeouts so a stuck
    server cannot pin a worker.
    """

    name = "smtp"

    def __init__(self, settings: Optional[ChannelSettings] = None):
        super().__init__()
        self._settings = settings or ChannelSettings(type="smtp")
        self._domain = self._settings.from_email.rsplit("@", 1)[-1]

    def _build_email(self, recipient: str, body: str) -> EmailMessage:
        msg = EmailMessage()
        msg["From"] = self._settings.from_email
        msg["To"] = recipient
        msg["Subject"] = self._settings.subject
        msg["Message-ID"] = f"<{uuid.uuid4().hex}@{self._domain}>"
        msg.set_content(body)
        return msg

    async def _do_send(self, recipient: str, body: str) -> str:
        s = self._settings
        msg = self._build_email(recipient, body)
        try:
            await asyncio.wait_for(
                aiosmtplib.send(
                    msg,
                    hostname=s.smtp_host,
                    port=s.smtp_port,
                    username=s.smtp_user or None,
                    password=s.smtp_password or None,
                    use_tls=s.smtp_use_tls,
                    timeout=s.timeout,
                ),
                timeout=s.timeout * 2,
            )
        except (aiosmtplib.SMTPException, OSError, asyncio.TimeoutError) as e:
            raise TransientSendError(f"SMTP delivery to {recipient} failed: {e}", self.name) from e
        logger.info("email_sent", to=recipient, message_id=msg["Message-ID"])
        return msg["Message-ID"]


def create_channel(settings: Optional[ChannelSettings] = None) -> DeliveryChannel:
    """Factory: build the configured delivery channel."""
    settings = settings or ChannelSettings()
    if settings.type == "smtp":
        return SmtpChannel(settings)
    if settings.type == "log":
        return LogChannel()
    raise ValueError(f"Unknown channel type: {settings.type!r}")
