"""
Tools Package
Delivery channels for the CareCircle notification engines
"""

from typing import Dict

from .notification_service import (
    AlertMessage,
    ChannelResult,
    DeliveryAttempt,
    DeliveryChannel,
    NotificationChannel,
    NotificationType,
    PushSubscriptionInfo,
    Recipient,
    build_missed_dose_message,
    build_prescription_message,
    build_reminder_message,
    build_test_message,
    deliver_batched,
)

from .push_channel import PushChannel, get_push_channel
from .telegram_channel import TelegramChannel, get_telegram_channel
from .email_channel import EmailChannel, get_email_channel


def get_default_channels() -> Dict[str, DeliveryChannel]:
    """Channel adapters built from settings, keyed by channel name"""
    return {
        NotificationChannel.PUSH.value: get_push_channel(),
        NotificationChannel.TELEGRAM.value: get_telegram_channel(),
        NotificationChannel.EMAIL.value: get_email_channel(),
    }


__all__ = [
    # Channel contract
    "AlertMessage",
    "ChannelResult",
    "DeliveryAttempt",
    "DeliveryChannel",
    "NotificationChannel",
    "NotificationType",
    "PushSubscriptionInfo",
    "Recipient",
    "build_missed_dose_message",
    "build_prescription_message",
    "build_reminder_message",
    "build_test_message",
    "deliver_batched",

    # Channels
    "PushChannel",
    "TelegramChannel",
    "EmailChannel",
    "get_push_channel",
    "get_telegram_channel",
    "get_email_channel",
    "get_default_channels",
]
