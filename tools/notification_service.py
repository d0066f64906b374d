"""
Notification Service Tool
Channel contract, message building and bounded-concurrency delivery
shared by the missed-dose, reminder and prescription expiry engines
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Sequence
from dataclasses import dataclass, field
from enum import Enum


logger = logging.getLogger(__name__)


class NotificationChannel(str, Enum):
    """Available notification channels"""
    PUSH = "push"
    TELEGRAM = "telegram"
    EMAIL = "email"


class NotificationType(str, Enum):
    """Types of notifications"""
    MISSED_DOSE_ALERT = "missed_dose_alert"
    MEDICATION_REMINDER = "medication_reminder"
    PRESCRIPTION_EXPIRED = "prescription_expired"
    PRESCRIPTION_EXPIRING = "prescription_expiring"
    TEST = "test"


@dataclass(frozen=True)
class PushSubscriptionInfo:
    """Web Push endpoint and keys for one browser"""
    endpoint: str
    p256dh: str
    auth: str

    def to_webpush(self) -> Dict[str, Any]:
        return {"endpoint": self.endpoint, "keys": {"p256dh": self.p256dh, "auth": self.auth}}


@dataclass
class Recipient:
    """Someone a notification can be delivered to, with their contact methods"""
    id: int
    name: str
    email: Optional[str] = None
    telegram_chat_id: Optional[str] = None
    push_subscriptions: List[PushSubscriptionInfo] = field(default_factory=list)


@dataclass
class AlertMessage:
    """Channel-neutral message content"""
    notification_type: NotificationType
    title: str
    body: str
    data: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ChannelResult:
    """Result of sending through one channel"""
    success: bool
    channel: str
    message_id: Optional[str] = None
    error: Optional[str] = None
    # Endpoint is gone for good (e.g. push subscription expired)
    permanent_failure: bool = False
    expired_endpoints: List[str] = field(default_factory=list)


class DeliveryChannel(ABC):
    """
    Capability interface for a delivery channel.

    Concrete adapters own their provider connection; callers only see
    is_configured / can_reach / send.
    """

    name: str = ""

    @abstractmethod
    def is_configured(self) -> bool:
        """Whether the channel has the credentials it needs"""

    @abstractmethod
    def can_reach(self, recipient: Recipient) -> bool:
        """Whether the recipient has the contact field this channel needs"""

    @abstractmethod
    async def send(self, recipient: Recipient, message: AlertMessage) -> ChannelResult:
        """Attempt delivery. Provider errors are returned, not raised."""


# Plain-text templates. Rich formatting is left to each channel.
NOTIFICATION_TEMPLATES: Dict[NotificationType, Dict[str, str]] = {
    NotificationType.MISSED_DOSE_ALERT: {
        "title": "Missed Medication Alert",
        "body": "{patient_name} missed {medication} ({dosage}) scheduled at {scheduled_time} ({elapsed}).",
    },
    NotificationType.MEDICATION_REMINDER: {
        "title": "Medication Reminder",
        "body": "Hi {recipient_name}, time to take {medication} ({dosage}) {when}, scheduled at {scheduled_time}.",
    },
    NotificationType.PRESCRIPTION_EXPIRED: {
        "title": "Prescription Completed for {patient_name}",
        "body": "The following prescription(s) for {patient_name} have completed their course: {medications}. "
                "If {patient_name} needs to continue taking them, please consult their doctor for a refill prescription.",
    },
    NotificationType.PRESCRIPTION_EXPIRING: {
        "title": "Prescription(s) Ending Soon for {patient_name}",
        "body": "The following prescription(s) for {patient_name} are ending soon: {medications}. "
                "Please arrange a doctor's appointment or pharmacy refill if they need to continue.",
    },
    NotificationType.TEST: {
        "title": "Test Notification",
        "body": "Hi {recipient_name}! Notifications are working. You will receive alerts about patient medications.",
    },
}


def describe_elapsed(minutes: float) -> str:
    """Human text for how long ago a dose was due"""
    if minutes < 1:
        return "just now"
    if minutes < 60:
        return f"{round(minutes)} min ago"
    return f"{round(minutes / 60)} hour(s) ago"


def _render(notification_type: NotificationType, data: Dict[str, Any]) -> AlertMessage:
    template = NOTIFICATION_TEMPLATES[notification_type]
    try:
        title = template["title"].format(**data)
        body = template["body"].format(**data)
    except KeyError as e:
        logger.warning(f"Missing template variable: {e}")
        title = body = template["title"]
    return AlertMessage(
        notification_type=notification_type,
        title=title,
        body=body,
        data=data,
    )


def build_missed_dose_message(
    tier: str,
    patient_name: str,
    medication_name: str,
    dosage: Optional[str],
    scheduled_time: str,
    minutes_missed: float,
    recipient_name: str = "there",
) -> AlertMessage:
    """Build the alert a companion receives for an overdue dose"""
    return _render(NotificationType.MISSED_DOSE_ALERT, {
        "tier": tier,
        "patient_name": patient_name,
        "recipient_name": recipient_name,
        "medication": medication_name,
        "dosage": dosage or "",
        "scheduled_time": scheduled_time,
        "minutes_missed": round(minutes_missed, 1),
        "elapsed": describe_elapsed(minutes_missed),
    })


def build_reminder_message(
    recipient_name: str,
    medication_name: str,
    dosage: Optional[str],
    scheduled_time: str,
    minutes_until: int,
) -> AlertMessage:
    """Build the reminder a patient receives before a dose"""
    when = "now" if minutes_until <= 1 else f"in {minutes_until} minutes"
    return _render(NotificationType.MEDICATION_REMINDER, {
        "recipient_name": recipient_name,
        "medication": medication_name,
        "dosage": dosage or "",
        "scheduled_time": scheduled_time,
        "minutes_until": minutes_until,
        "when": when,
    })


def _describe_prescription(medication: Any, expired: bool) -> str:
    if expired:
        return f"{medication.name} (ended {medication.end_date})"
    if medication.days_remaining == 0:
        return f"{medication.name} (ends today)"
    return f"{medication.name} ({medication.days_remaining} day(s) remaining, ends {medication.end_date})"


def build_prescription_message(
    expired: bool,
    patient_name: str,
    medications: Sequence[Any],
    recipient_name: str = "there",
) -> AlertMessage:
    """
    Build the notice a companion receives about a patient's prescriptions

    medications need name, end_date and days_remaining attributes.
    """
    notification_type = (
        NotificationType.PRESCRIPTION_EXPIRED if expired else NotificationType.PRESCRIPTION_EXPIRING
    )
    return _render(notification_type, {
        "patient_name": patient_name,
        "recipient_name": recipient_name,
        "medications": ", ".join(_describe_prescription(m, expired) for m in medications),
        "medication_ids": [m.id for m in medications],
    })


def build_test_message(recipient_name: str) -> AlertMessage:
    return _render(NotificationType.TEST, {"recipient_name": recipient_name})


@dataclass
class DeliveryAttempt:
    """One (channel, recipient, message) send, plus caller context"""
    channel: DeliveryChannel
    recipient: Recipient
    message: AlertMessage
    context: Dict[str, Any] = field(default_factory=dict)


async def _send_with_timeout(attempt: DeliveryAttempt, timeout: float) -> ChannelResult:
    channel_name = attempt.channel.name
    try:
        return await asyncio.wait_for(
            attempt.channel.send(attempt.recipient, attempt.message),
            timeout=timeout,
        )
    except asyncio.TimeoutError:
        logger.warning(f"[{channel_name}] Send to recipient {attempt.recipient.id} timed out after {timeout}s")
        return ChannelResult(success=False, channel=channel_name, error=f"Timed out after {timeout}s")
    except Exception as e:
        logger.error(f"[{channel_name}] Unexpected error sending to recipient {attempt.recipient.id}: {e}")
        return ChannelResult(success=False, channel=channel_name, error=str(e))


async def deliver_batched(
    attempts: List[DeliveryAttempt],
    max_concurrent: int,
    timeout: float,
) -> List[ChannelResult]:
    """
    Run attempts in fixed-size batches.

    Each batch is awaited in full before the next starts, so at most
    max_concurrent provider calls are in flight. Results line up with
    attempts by index; failures never raise.
    """
    results: List[ChannelResult] = []
    for start in range(0, len(attempts), max_concurrent):
        batch = attempts[start:start + max_concurrent]
        batch_results = await asyncio.gather(
            *(_send_with_timeout(attempt, timeout) for attempt in batch)
        )
        results.extend(batch_results)
    return results
