"""
Email channel
SMTP delivery of alert and reminder emails
"""

import asyncio
import logging
import smtplib
from email.message import EmailMessage
from email.utils import formataddr, make_msgid
from typing import Optional

from config import settings
from tools.notification_service import (
    AlertMessage,
    ChannelResult,
    DeliveryChannel,
    NotificationChannel,
    Recipient,
)


logger = logging.getLogger(__name__)


class EmailChannel(DeliveryChannel):
    """Sends plain-text email through an SMTP relay"""

    name = NotificationChannel.EMAIL.value

    def __init__(
        self,
        host: str = "smtp.gmail.com",
        port: int = 587,
        user: Optional[str] = None,
        password: Optional[str] = None,
        secure: bool = False,
        from_name: str = "CareCircle Companion Care",
        from_address: Optional[str] = None,
        timeout: float = 30.0,
    ):
        self.host = host
        self.port = port
        self.user = user
        self.password = password
        self.secure = secure
        self.from_name = from_name
        self.from_address = from_address or user or "noreply@carecircle.app"
        self.timeout = timeout

    def is_configured(self) -> bool:
        return bool(self.user and self.password)

    def can_reach(self, recipient: Recipient) -> bool:
        return bool(recipient.email)

    def _build(self, recipient: Recipient, message: AlertMessage) -> EmailMessage:
        email = EmailMessage()
        email["Subject"] = message.title
        email["From"] = formataddr((self.from_name, self.from_address))
        email["To"] = formataddr((recipient.name, recipient.email))
        email["Message-ID"] = make_msgid(domain=self.from_address.split("@")[-1])
        email.set_content(f"Hi {recipient.name},\n\n{message.body}\n\n- Your {self.from_name} Team\n")
        return email

    def _deliver(self, email: EmailMessage) -> None:
        if self.secure:
            with smtplib.SMTP_SSL(self.host, self.port, timeout=self.timeout) as server:
                server.login(self.user, self.password)
                server.send_message(email)
        else:
            with smtplib.SMTP(self.host, self.port, timeout=self.timeout) as server:
                server.starttls()
                server.login(self.user, self.password)
                server.send_message(email)

    async def send(self, recipient: Recipient, message: AlertMessage) -> ChannelResult:
        if not self.is_configured():
            return ChannelResult(success=False, channel=self.name, error="SMTP not configured")
        if not recipient.email:
            return ChannelResult(success=False, channel=self.name, error="Recipient has no email")

        email = self._build(recipient, message)
        try:
            await asyncio.to_thread(self._deliver, email)
        except (smtplib.SMTPException, OSError) as e:
            logger.warning(f"[Email] Send error to {recipient.email}: {e}")
            return ChannelResult(success=False, channel=self.name, error=str(e))

        logger.info(f"[Email] Sent '{message.title}' to {recipient.email}")
        return ChannelResult(success=True, channel=self.name, message_id=email["Message-ID"])

    def verify_connection(self) -> ChannelResult:
        """Log in to the SMTP server without sending anything"""
        if not self.is_configured():
            return ChannelResult(success=False, channel=self.name, error="SMTP not configured")
        try:
            if self.secure:
                with smtplib.SMTP_SSL(self.host, self.port, timeout=self.timeout) as server:
                    server.login(self.user, self.password)
            else:
                with smtplib.SMTP(self.host, self.port, timeout=self.timeout) as server:
                    server.starttls()
                    server.login(self.user, self.password)
        except (smtplib.SMTPException, OSError) as e:
            logger.error(f"[Email] Connection verification failed: {e}")
            return ChannelResult(success=False, channel=self.name, error=str(e))
        return ChannelResult(success=True, channel=self.name)


def get_email_channel() -> EmailChannel:
    return EmailChannel(
        host=settings.SMTP_HOST,
        port=settings.SMTP_PORT,
        user=settings.SMTP_USER,
        password=settings.SMTP_PASS,
        secure=settings.SMTP_SECURE,
        from_name=settings.EMAIL_FROM_NAME,
        from_address=settings.EMAIL_FROM_ADDRESS,
        timeout=settings.CHANNEL_SEND_TIMEOUT_SECONDS,
    )
