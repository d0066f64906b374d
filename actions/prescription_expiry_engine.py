"""
Prescription Expiry Engine
Deactivates prescriptions past their end date and tells companions about
completed and soon-ending prescriptions
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from functools import lru_cache
from typing import Any, Dict, List, Mapping, Optional
from sqlalchemy.orm import Session

from config import ExpiryConfig, settings
from services.companion_service import CompanionService, RecipientLookup, companion_service
from services.medication_service import ExpiringMedication, MedicationService, medication_service
from services.notification_history_service import (
    NoticeIndex,
    NotificationHistoryService,
    PendingNotification,
    notification_history_service,
)
from tools import get_default_channels
from tools.notification_service import (
    DeliveryAttempt,
    DeliveryChannel,
    NotificationChannel,
    NotificationType,
    build_prescription_message,
    deliver_batched,
)


logger = logging.getLogger(__name__)

EXPIRED_TYPE = NotificationType.PRESCRIPTION_EXPIRED.value
EXPIRING_TYPE = NotificationType.PRESCRIPTION_EXPIRING.value


@dataclass
class ExpiryRunResult:
    expired: int = 0
    expiring_soon: int = 0
    notified: int = 0
    errors: List[str] = field(default_factory=list)
    details: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "expired": self.expired,
            "expiring_soon": self.expiring_soon,
            "notified": self.notified,
            "errors": list(self.errors),
            "details": list(self.details),
        }


class PrescriptionExpiryEngine:
    """
    Daily prescription end-date pass.

    Expired prescriptions are deactivated so they stop producing
    missed-dose alerts. Companions get one email per patient listing the
    completed prescriptions, and another listing those ending within the
    warning window. Each (medication, companion, notice) is emailed at
    most once per day.
    """

    def __init__(
        self,
        config: ExpiryConfig,
        channels: Mapping[str, DeliveryChannel],
        medications: Optional[MedicationService] = None,
        companions: Optional[CompanionService] = None,
        history: Optional[NotificationHistoryService] = None,
    ):
        self.config = config
        self.channels = dict(channels)
        self.medications = medications or medication_service
        self.companions = companions or companion_service
        self.history = history or notification_history_service

    @property
    def email_channel(self) -> Optional[DeliveryChannel]:
        channel = self.channels.get(NotificationChannel.EMAIL.value)
        if channel is not None and channel.is_configured():
            return channel
        return None

    async def run(self, now: Optional[datetime] = None, db: Optional[Session] = None) -> ExpiryRunResult:
        result = ExpiryRunResult()

        if not self.config.enabled:
            logger.info("[AutoExpire] Prescription expiration is disabled")
            return result

        now = now or datetime.now()
        today = now.date()
        logger.info("[AutoExpire] Running prescription expiration check...")

        expired = await self.medications.expire_ended_medications(today, db=db)
        if expired.error:
            logger.error(f"[AutoExpire] Failed to expire prescriptions: {expired.error}")
            result.errors.append(f"Failed to expire prescriptions: {expired.error}")
            return result
        result.expired = len(expired.medications)

        expiring = await self.medications.get_expiring_medications(
            today, threshold_days=self.config.warning_days, db=db
        )
        if expiring.error:
            result.errors.append(f"Failed to fetch expiring prescriptions: {expiring.error}")
        result.expiring_soon = len(expiring.medications)

        if result.expired:
            logger.info(f"[AutoExpire] Expired {result.expired} prescription(s)")
        if result.expiring_soon:
            logger.info(
                f"[AutoExpire] {result.expiring_soon} prescription(s) ending within "
                f"{self.config.warning_days} day(s)"
            )

        notices = {EXPIRED_TYPE: expired.medications, EXPIRING_TYPE: expiring.medications}
        all_medications = expired.medications + expiring.medications
        if not all_medications:
            return result

        channel = self.email_channel
        if channel is None:
            logger.info("[AutoExpire] Email not configured, skipping companion notices")
            return result

        lookup = await self.companions.resolve_recipients(
            [m.patient_id for m in all_medications], db=db
        )
        if lookup.error:
            result.errors.append(f"Failed to resolve companions: {lookup.error}")
            return result

        sent_today = await self.history.load_notices_sent_today(
            [m.id for m in all_medications], now, list(notices), db=db
        )
        if sent_today.error:
            # Duplicate notices beat silently skipping a completed prescription
            result.errors.append(f"Failed to check notice history: {sent_today.error}")

        attempts = self._plan_attempts(notices, lookup, sent_today, channel)
        if not attempts:
            return result

        outcomes = await deliver_batched(
            attempts,
            max_concurrent=self.config.max_concurrent_sends,
            timeout=self.config.send_timeout_seconds,
        )

        pending: List[PendingNotification] = []
        for attempt, outcome in zip(attempts, outcomes):
            notice_type = attempt.context["type"]
            companion = attempt.recipient
            if not outcome.success:
                result.errors.append(
                    f"Failed to send {notice_type} notice to {companion.name}: {outcome.error}"
                )
                continue
            result.notified += 1
            meds: List[ExpiringMedication] = attempt.context["medications"]
            result.details.append({
                "type": notice_type,
                "companion": companion.name,
                "patient": attempt.context["patient_name"],
                "medications": [m.name for m in meds],
            })
            pending.extend(
                PendingNotification(
                    patient_id=med.patient_id,
                    companion_id=companion.id,
                    medication_id=med.id,
                    type=notice_type,
                    channel=outcome.channel,
                    recipient_email=companion.email,
                    message=attempt.message.body,
                    scheduled_time=None,
                    sent_at=now,
                )
                for med in meds
            )

        recorded = await self.history.record_batch(pending, db=db)
        if recorded.error:
            result.errors.append(f"Failed to record prescription notices: {recorded.error}")

        logger.info(f"[AutoExpire] Sent {result.notified} prescription notice(s)")
        return result

    def _plan_attempts(
        self,
        notices: Dict[str, List[ExpiringMedication]],
        lookup: RecipientLookup,
        sent_today: NoticeIndex,
        channel: DeliveryChannel,
    ) -> List[DeliveryAttempt]:
        attempts = []
        for notice_type, medications in notices.items():
            by_patient: Dict[int, List[ExpiringMedication]] = {}
            for med in medications:
                by_patient.setdefault(med.patient_id, []).append(med)

            for patient_id, meds in by_patient.items():
                patient_name = meds[0].patient_name or "Your patient"
                for companion in lookup.for_patient(patient_id):
                    if not channel.can_reach(companion):
                        continue
                    unsent = [m for m in meds if (m.id, companion.id, notice_type) not in sent_today.keys]
                    if not unsent:
                        continue
                    attempts.append(DeliveryAttempt(
                        channel=channel,
                        recipient=companion,
                        message=build_prescription_message(
                            expired=notice_type == EXPIRED_TYPE,
                            patient_name=patient_name,
                            medications=unsent,
                            recipient_name=companion.name,
                        ),
                        context={"type": notice_type, "patient_name": patient_name, "medications": unsent},
                    ))
        return attempts

    def get_status(self) -> Dict[str, Any]:
        return {
            "enabled": self.config.enabled,
            "schedule": self.config.cron,
            "warning_days": self.config.warning_days,
            "email_configured": self.email_channel is not None,
        }


@lru_cache()
def get_prescription_expiry_engine() -> PrescriptionExpiryEngine:
    return PrescriptionExpiryEngine(
        config=ExpiryConfig.from_settings(settings),
        channels=get_default_channels(),
    )
