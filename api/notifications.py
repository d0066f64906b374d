"""
Notifications API Router
Operator endpoints for the missed-dose and patient reminder engines
"""

import asyncio
import logging
from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session

from api.deps import get_db, get_scheduler, notification_rate_limiter, services
from api.schemas.notification import (
    DispatchRunResponse,
    ReminderRunResponse,
    TestNotificationRequest,
    TestNotificationResponse,
    NotificationStats,
)
from actions.notification_scheduler import NotificationScheduler
from tools.notification_service import Recipient, build_test_message


logger = logging.getLogger(__name__)

router = APIRouter(tags=["notifications"])


def get_test_channel():
    """Channel used for operator test sends"""
    return services.get_email_channel()


# ==================== MISSED-DOSE ENGINE ====================

@router.get("/notifications/status")
async def get_notification_status(
    scheduler: NotificationScheduler = Depends(get_scheduler)
):
    """
    Engine configuration, channel readiness and scheduler state
    """
    return {
        **scheduler.missed_dose_engine.get_status(),
        "scheduler_running": scheduler.running,
        "in_flight": scheduler.missed_dose_in_flight,
    }


@router.post("/notifications/check", response_model=DispatchRunResponse)
async def trigger_notification_check(
    db: Session = Depends(get_db),
    scheduler: NotificationScheduler = Depends(get_scheduler),
    _: bool = Depends(notification_rate_limiter),
):
    """
    Run the missed-dose check now

    Returns 409 while a scheduled or manual run is still in flight.
    """
    results = await scheduler.run_missed_dose_check(db=db)
    if results is None:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="A notification check is already running",
        )

    return DispatchRunResponse(success=not results.errors, **results.to_dict())


@router.post("/notifications/test", response_model=TestNotificationResponse)
async def send_test_notification(
    request: TestNotificationRequest,
    channel=Depends(get_test_channel),
    _: bool = Depends(notification_rate_limiter),
):
    """
    Send a test email to verify SMTP configuration
    """
    if not channel.is_configured():
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Email service not configured",
        )

    recipient = Recipient(id=0, name=request.name, email=request.email)
    result = await channel.send(recipient, build_test_message(request.name))

    if not result.success:
        logger.warning(f"Test email to {request.email} failed: {result.error}")

    return TestNotificationResponse(
        success=result.success,
        message_id=result.message_id,
        error=result.error,
    )


async def send_channel_test(channel, user_id: int, db: Session) -> TestNotificationResponse:
    """Send the test message to one user through a push or Telegram channel"""
    if not channel.is_configured():
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=f"{channel.name.capitalize()} notifications not configured",
        )

    recipient = await services.get_companion_service().get_recipient(user_id, db=db)
    if recipient is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"User {user_id} not found",
        )

    logger.info(f"Sending {channel.name} test notification to user {user_id}")
    result = await channel.send(recipient, build_test_message(recipient.name))
    return TestNotificationResponse(
        success=result.success,
        message_id=result.message_id,
        error=result.error,
    )


@router.get("/notifications/verify-email", response_model=TestNotificationResponse)
async def verify_email_connection(channel=Depends(get_test_channel)):
    """
    Log in to the SMTP relay without sending anything
    """
    result = await asyncio.to_thread(channel.verify_connection)
    return TestNotificationResponse(success=result.success, error=result.error)


@router.get("/notifications/stats", response_model=NotificationStats)
async def get_notification_stats(db: Session = Depends(get_db)):
    """
    Notifications sent today and overall
    """
    history_service = services.get_notification_history_service()
    stats = await history_service.get_stats(db=db)

    if stats.get("error"):
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=stats["error"],
        )

    return NotificationStats(**stats)


# ==================== PATIENT REMINDERS ====================

@router.get("/reminders/status")
async def get_reminder_status(
    scheduler: NotificationScheduler = Depends(get_scheduler)
):
    return {
        **scheduler.reminder_engine.get_status(),
        "scheduler_running": scheduler.running,
        "in_flight": scheduler.reminder_in_flight,
    }


@router.post("/reminders/check", response_model=ReminderRunResponse)
async def trigger_reminder_check(
    db: Session = Depends(get_db),
    scheduler: NotificationScheduler = Depends(get_scheduler),
    _: bool = Depends(notification_rate_limiter),
):
    """
    Run the patient reminder check now
    """
    results = await scheduler.run_patient_reminders(db=db)
    if results is None:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="A reminder check is already running",
        )

    return ReminderRunResponse(success=not results.errors, **results.to_dict())
