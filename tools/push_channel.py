"""
Web Push channel
Browser push notifications for companions via pywebpush (VAPID)
"""

import asyncio
import json
import logging
from datetime import datetime
from typing import List, Optional

from pywebpush import webpush, WebPushException

from config import settings
from tools.notification_service import (
    AlertMessage,
    ChannelResult,
    DeliveryChannel,
    NotificationChannel,
    PushSubscriptionInfo,
    Recipient,
)


logger = logging.getLogger(__name__)

# Push services answer 404/410 once a subscription is gone
EXPIRED_STATUS_CODES = {404, 410}


class PushChannel(DeliveryChannel):
    """Sends a notification to every push subscription a recipient has"""

    name = NotificationChannel.PUSH.value

    def __init__(
        self,
        vapid_private_key: Optional[str] = None,
        vapid_public_key: Optional[str] = None,
        vapid_subject: str = "mailto:support@carecircle.app",
        timeout: float = 15.0,
    ):
        self.vapid_private_key = vapid_private_key
        self.vapid_public_key = vapid_public_key
        self.vapid_subject = vapid_subject
        # HTTP timeout for webpush; wait_for cannot stop the worker thread
        self.timeout = timeout

    def is_configured(self) -> bool:
        return bool(self.vapid_private_key and self.vapid_public_key)

    def can_reach(self, recipient: Recipient) -> bool:
        return bool(recipient.push_subscriptions)

    def _payload(self, message: AlertMessage) -> str:
        data = dict(message.data)
        data.setdefault("type", message.notification_type.value)
        data.setdefault("url", "/companion")
        return json.dumps({
            "title": message.title,
            "body": message.body,
            "icon": "/icon.png",
            "badge": "/icon.png",
            "tag": f"{message.notification_type.value}-{int(datetime.utcnow().timestamp() * 1000)}",
            "requireInteraction": True,
            "data": data,
            "actions": [
                {"action": "view", "title": "View Details"},
                {"action": "dismiss", "title": "Dismiss"},
            ],
        }, default=str)

    def _send_one(self, subscription: PushSubscriptionInfo, payload: str) -> None:
        webpush(
            subscription_info=subscription.to_webpush(),
            data=payload,
            vapid_private_key=self.vapid_private_key,
            # pywebpush fills in aud/exp, so hand it a fresh dict per call
            vapid_claims={"sub": self.vapid_subject},
            timeout=self.timeout,
        )

    async def send(self, recipient: Recipient, message: AlertMessage) -> ChannelResult:
        if not self.is_configured():
            return ChannelResult(success=False, channel=self.name, error="Push notifications not configured")
        if not recipient.push_subscriptions:
            return ChannelResult(success=False, channel=self.name, error="No subscriptions found for user")

        payload = self._payload(message)
        delivered = 0
        errors: List[str] = []
        expired: List[str] = []

        for subscription in recipient.push_subscriptions:
            try:
                await asyncio.to_thread(self._send_one, subscription, payload)
                delivered += 1
            except WebPushException as e:
                status_code = e.response.status_code if e.response is not None else None
                logger.warning(f"[WebPush] Error sending to endpoint for user {recipient.id}: {status_code}")
                errors.append(str(e))
                if status_code in EXPIRED_STATUS_CODES:
                    expired.append(subscription.endpoint)

        if expired:
            logger.info(f"[WebPush] {len(expired)} expired subscription(s) for user {recipient.id}")

        return ChannelResult(
            success=delivered > 0,
            channel=self.name,
            message_id=f"push_{recipient.id}_{delivered}" if delivered else None,
            error=None if delivered else "; ".join(errors) or "Push delivery failed",
            permanent_failure=bool(expired),
            expired_endpoints=expired,
        )


def get_push_channel() -> PushChannel:
    return PushChannel(
        vapid_private_key=settings.VAPID_PRIVATE_KEY,
        vapid_public_key=settings.VAPID_PUBLIC_KEY,
        vapid_subject=settings.VAPID_SUBJECT,
        timeout=settings.CHANNEL_SEND_TIMEOUT_SECONDS,
    )
