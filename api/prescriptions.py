"""
Prescriptions API Router
Manual prescription expiration runs and the expiring-soon listing
"""

from datetime import date
from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.orm import Session

from api.deps import get_db, get_scheduler, notification_rate_limiter, services
from api.schemas.notification import (
    ExpiringPrescription,
    ExpiringPrescriptionsResponse,
    ExpiryRunResponse,
)
from actions.notification_scheduler import NotificationScheduler


router = APIRouter(prefix="/prescriptions", tags=["prescriptions"])


@router.get("/status")
async def get_expiry_status(
    scheduler: NotificationScheduler = Depends(get_scheduler)
):
    return {
        **scheduler.expiry_engine.get_status(),
        "scheduler_running": scheduler.running,
        "in_flight": scheduler.expiry_in_flight,
    }


@router.post("/expire-check", response_model=ExpiryRunResponse)
async def trigger_expiry_check(
    db: Session = Depends(get_db),
    scheduler: NotificationScheduler = Depends(get_scheduler),
    _: bool = Depends(notification_rate_limiter),
):
    """
    Deactivate ended prescriptions and notify companions now
    """
    results = await scheduler.run_prescription_expiry(db=db)
    if results is None:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="A prescription expiry check is already running",
        )

    return ExpiryRunResponse(success=not results.errors, **results.to_dict())


@router.get("/expiring-soon", response_model=ExpiringPrescriptionsResponse)
async def get_expiring_prescriptions(
    days: int = Query(3, ge=0, le=90, description="Days ahead to look"),
    db: Session = Depends(get_db),
):
    """
    Active prescriptions ending within the next `days` days, across all patients
    """
    medication_service = services.get_medication_service()
    fetched = await medication_service.get_expiring_medications(date.today(), threshold_days=days, db=db)

    if fetched.error:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to fetch expiring prescriptions",
        )

    return ExpiringPrescriptionsResponse(
        count=len(fetched.medications),
        medications=[
            ExpiringPrescription(
                id=m.id,
                name=m.name,
                end_date=m.end_date,
                days_remaining=m.days_remaining,
                patient_name=m.patient_name,
            )
            for m in fetched.medications
        ],
    )
