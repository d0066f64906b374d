"""
Telegram API Router
Bot status and test messages
"""

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from api.deps import get_db, notification_rate_limiter, services
from api.notifications import send_channel_test
from api.schemas.notification import ChannelStatus, ChannelTestRequest, TestNotificationResponse


router = APIRouter(prefix="/telegram", tags=["telegram"])


def get_telegram_test_channel():
    return services.get_telegram_channel()


@router.get("/status", response_model=ChannelStatus)
async def get_telegram_status(channel=Depends(get_telegram_test_channel)):
    return ChannelStatus(
        channel=channel.name,
        configured=channel.is_configured(),
        details={"bot_token": "Set" if channel.bot_token else "Not set"},
    )


@router.post("/test", response_model=TestNotificationResponse)
async def send_test_telegram(
    request: ChannelTestRequest,
    db: Session = Depends(get_db),
    channel=Depends(get_telegram_test_channel),
    _: bool = Depends(notification_rate_limiter),
):
    """
    Send a test message to the user's linked Telegram chat

    Returns success=false with an error when the user has not linked Telegram.
    """
    return await send_channel_test(channel, request.user_id, db)
