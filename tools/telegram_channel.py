"""
Telegram channel
Instant chat-bot alerts through the Telegram Bot API
"""

import logging
from typing import Optional

import httpx

from config import settings
from tools.notification_service import (
    AlertMessage,
    ChannelResult,
    DeliveryChannel,
    NotificationChannel,
    Recipient,
)


logger = logging.getLogger(__name__)


class TelegramChannel(DeliveryChannel):
    """Posts messages to a recipient's linked Telegram chat"""

    name = NotificationChannel.TELEGRAM.value

    def __init__(
        self,
        bot_token: Optional[str] = None,
        api_url: str = "https://api.telegram.org",
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout: float = 10.0,
    ):
        self.bot_token = bot_token or ""
        self.api_url = api_url.rstrip("/")
        self._transport = transport
        self.timeout = timeout

    def is_configured(self) -> bool:
        return len(self.bot_token) > 20

    def can_reach(self, recipient: Recipient) -> bool:
        return bool(recipient.telegram_chat_id)

    def _format(self, message: AlertMessage) -> str:
        return f"*{message.title}*\n\n{message.body}"

    async def send(self, recipient: Recipient, message: AlertMessage) -> ChannelResult:
        if not self.is_configured():
            return ChannelResult(success=False, channel=self.name, error="Telegram not configured")
        if not recipient.telegram_chat_id:
            return ChannelResult(success=False, channel=self.name, error="Recipient not linked to Telegram")

        url = f"{self.api_url}/bot{self.bot_token}/sendMessage"
        payload = {
            "chat_id": recipient.telegram_chat_id,
            "text": self._format(message),
            "parse_mode": "Markdown",
        }

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.post(url, json=payload)
            response.raise_for_status()
            body = response.json()
        except httpx.HTTPError as e:
            logger.warning(f"[Telegram] Send error for recipient {recipient.id}: {e}")
            return ChannelResult(success=False, channel=self.name, error=str(e))
        except ValueError as e:
            return ChannelResult(success=False, channel=self.name, error=f"Invalid response: {e}")

        if not body.get("ok"):
            error = body.get("description", "Telegram API error")
            logger.warning(f"[Telegram] API rejected message for recipient {recipient.id}: {error}")
            return ChannelResult(success=False, channel=self.name, error=error)

        message_id = body.get("result", {}).get("message_id")
        logger.info(f"[Telegram] Sent to recipient {recipient.id}")
        return ChannelResult(
            success=True,
            channel=self.name,
            message_id=str(message_id) if message_id is not None else None,
        )


def get_telegram_channel() -> TelegramChannel:
    return TelegramChannel(
        bot_token=settings.TELEGRAM_BOT_TOKEN,
        api_url=settings.TELEGRAM_API_URL,
        timeout=settings.CHANNEL_SEND_TIMEOUT_SECONDS,
    )
