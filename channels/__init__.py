"""Delivery channels: the external send effect behind one interface."""
from channels.base import (
    DeliveryChannel,
    ChannelError,
    TransientSendError,
    ChannelMetrics,
    SendReceipt,
)
from channels.email_adapter import LogChannel, SmtpChannel, create_channel

__all__ = [
    "DeliveryChannel", "ChannelError", "TransientSendError",
    "ChannelMetrics", "SendReceipt",
    "LogChannel", "SmtpChannel", "create_channel",
]
