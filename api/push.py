"""
Push API Router
Browser push subscription management, status and test sends
"""

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session

from api.deps import get_db, default_rate_limiter, notification_rate_limiter, services
from api.notifications import send_channel_test
from api.schemas.notification import (
    ChannelStatus,
    ChannelTestRequest,
    PushSubscribeRequest,
    PushUnsubscribeRequest,
    TestNotificationResponse,
)
from config import settings


router = APIRouter(prefix="/push", tags=["push"])


def get_push_test_channel():
    return services.get_push_channel()


@router.get("/vapid-public-key")
async def get_vapid_public_key():
    """
    Public VAPID key the browser needs to subscribe
    """
    if not settings.VAPID_PUBLIC_KEY:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Push notifications not configured",
        )
    return {"public_key": settings.VAPID_PUBLIC_KEY}


@router.post("/subscribe", status_code=status.HTTP_201_CREATED)
async def subscribe(
    request: PushSubscribeRequest,
    db: Session = Depends(get_db),
    _: bool = Depends(default_rate_limiter),
):
    """
    Store a browser push subscription for a user

    - **user_id**: Profile ID
    - **subscription**: PushSubscription JSON (endpoint + keys)
    """
    push_service = services.get_push_subscription_service()

    try:
        result = await push_service.save_subscription(
            user_id=request.user_id,
            endpoint=request.subscription.endpoint,
            p256dh=request.subscription.keys.p256dh,
            auth=request.subscription.keys.auth,
            db=db,
        )
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))

    return result


@router.post("/unsubscribe")
async def unsubscribe(
    request: PushUnsubscribeRequest,
    db: Session = Depends(get_db),
    _: bool = Depends(default_rate_limiter),
):
    push_service = services.get_push_subscription_service()
    removed = await push_service.remove_subscription(request.user_id, request.endpoint, db=db)

    if not removed:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Subscription not found",
        )

    return {"success": True, "removed": removed}


@router.get("/status", response_model=ChannelStatus)
async def get_push_status(channel=Depends(get_push_test_channel)):
    return ChannelStatus(
        channel=channel.name,
        configured=channel.is_configured(),
        details={
            "vapid_public_key": "Set" if channel.vapid_public_key else "Not set",
            "vapid_private_key": "Set" if channel.vapid_private_key else "Not set",
        },
    )


@router.post("/test", response_model=TestNotificationResponse)
async def send_test_push(
    request: ChannelTestRequest,
    db: Session = Depends(get_db),
    channel=Depends(get_push_test_channel),
    _: bool = Depends(notification_rate_limiter),
):
    """
    Send a test push to every browser the user has subscribed
    """
    return await send_channel_test(channel, request.user_id, db)
