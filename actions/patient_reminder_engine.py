"""
Patient Reminder Engine
Reminds patients shortly before a dose is due, by email and Telegram
"""

import logging
import math
from dataclasses import dataclass, field
from datetime import datetime
from functools import lru_cache
from typing import Any, Dict, List, Mapping, Optional
from sqlalchemy.orm import Session

from config import ReminderConfig, settings
from actions.dose_classifier import is_in_reminder_window, minutes_until, parse_schedule_time
from services.medication_service import MedicationService, ReminderPatient, medication_service
from services.notification_history_service import (
    REMINDER_TYPE,
    NotificationHistoryService,
    PendingNotification,
    ReminderIndex,
    notification_history_service,
)
from tools import get_default_channels
from tools.notification_service import (
    DeliveryAttempt,
    DeliveryChannel,
    NotificationChannel,
    Recipient,
    build_reminder_message,
    deliver_batched,
)


logger = logging.getLogger(__name__)


@dataclass
class ReminderRunResult:
    checked: int = 0
    sent: int = 0
    errors: List[str] = field(default_factory=list)
    details: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "checked": self.checked,
            "sent": self.sent,
            "errors": list(self.errors),
            "details": list(self.details),
        }


class PatientReminderEngine:
    """
    Upcoming-dose reminders for patients themselves.

    Each dose time of a medication is reminded at most once per day,
    including the extra doses of multi-dose medications. Email goes only to
    patients who opted in; Telegram goes to anyone with a linked chat.
    Either channel succeeding counts as sent.
    """

    REMINDER_CHANNELS = (NotificationChannel.EMAIL.value, NotificationChannel.TELEGRAM.value)

    def __init__(
        self,
        config: ReminderConfig,
        channels: Mapping[str, DeliveryChannel],
        medications: Optional[MedicationService] = None,
        history: Optional[NotificationHistoryService] = None,
    ):
        self.config = config
        self.channels = dict(channels)
        self.medications = medications or medication_service
        self.history = history or notification_history_service

    def _ready_channels(self) -> Dict[str, DeliveryChannel]:
        return {
            name: self.channels[name]
            for name in self.REMINDER_CHANNELS
            if name in self.channels and self.channels[name].is_configured()
        }

    async def run(self, now: Optional[datetime] = None, db: Optional[Session] = None) -> ReminderRunResult:
        result = ReminderRunResult()

        if not self.config.enabled:
            logger.info("[PatientReminders] Patient reminders are disabled")
            return result

        channels = self._ready_channels()
        if not channels:
            logger.info("[PatientReminders] No reminder channel configured")
            result.errors.append("No reminder channel configured")
            return result

        now = now or datetime.now()

        fetched = await self.medications.get_patients_with_upcoming_medications(db=db)
        if fetched.error:
            logger.error(f"[PatientReminders] Failed to fetch patients: {fetched.error}")
            result.errors.append(f"Failed to fetch patients: {fetched.error}")
            return result

        medication_ids = [m.id for p in fetched.patients for m in p.medications]
        result.checked = len(medication_ids)
        if not medication_ids:
            return result

        already_sent = await self.history.load_reminders_sent_today(medication_ids, now, db=db)
        if already_sent.error:
            # Keep going: a duplicate reminder beats a missing one
            result.errors.append(f"Failed to check reminder history: {already_sent.error}")

        attempts: List[DeliveryAttempt] = []
        for patient in fetched.patients:
            attempts.extend(self._plan_for_patient(patient, channels, already_sent, now))

        if not attempts:
            logger.info("[PatientReminders] No reminders to send")
            return result

        outcomes = await deliver_batched(
            attempts,
            max_concurrent=self.config.max_concurrent_sends,
            timeout=self.config.send_timeout_seconds,
        )

        # Group per (patient, medication, dose time): a reminder counts once even if both channels succeed
        delivered: Dict[tuple, Dict[str, Any]] = {}
        for attempt, outcome in zip(attempts, outcomes):
            patient = attempt.context["patient"]
            med = attempt.context["medication"]
            scheduled_time = attempt.context["scheduled_time"]
            entry = delivered.setdefault((patient.id, med.id, scheduled_time), {
                "patient": patient,
                "medication": med,
                "scheduled_time": scheduled_time,
                "minutes_until": attempt.context["minutes_until"],
                "channels": {},
            })
            entry["channels"][outcome.channel] = outcome.success
            if not outcome.success:
                result.errors.append(
                    f"Failed to send {outcome.channel} reminder to {patient.name}: {outcome.error}"
                )

        pending = []
        for entry in delivered.values():
            if not any(entry["channels"].values()):
                continue
            patient, med, scheduled_time = entry["patient"], entry["medication"], entry["scheduled_time"]
            result.sent += 1
            result.details.append({
                "patient": patient.name,
                "medication": med.name,
                "scheduled_time": scheduled_time,
                "minutes_until": entry["minutes_until"],
                "channels": entry["channels"],
            })
            pending.append(PendingNotification(
                patient_id=patient.id,
                companion_id=patient.id,
                medication_id=med.id,
                type=REMINDER_TYPE,
                channel="+".join(name for name, ok in entry["channels"].items() if ok),
                recipient_email=patient.email,
                message=f"Reminder for {med.name} ({med.dosage}) at {scheduled_time}",
                scheduled_time=scheduled_time,
                sent_at=now,
            ))

        recorded = await self.history.record_batch(pending, db=db)
        if recorded.error:
            result.errors.append(f"Failed to record reminders: {recorded.error}")

        logger.info(f"[PatientReminders] Complete: {result.sent} reminder(s) sent")
        return result

    def _plan_for_patient(
        self,
        patient: ReminderPatient,
        channels: Dict[str, DeliveryChannel],
        already_sent: ReminderIndex,
        now: datetime,
    ) -> List[DeliveryAttempt]:
        # 0 is a valid lead time: remind at the dose time itself
        if patient.email_reminder_minutes is not None:
            lead = patient.email_reminder_minutes
        else:
            lead = self.config.minutes_before
        recipient = Recipient(
            id=patient.id,
            name=patient.name,
            email=patient.email if patient.email_reminder_enabled else None,
            telegram_chat_id=patient.telegram_chat_id,
        )
        reachable = [c for c in channels.values() if c.can_reach(recipient)]
        if not reachable:
            logger.debug(f"[PatientReminders] Patient {patient.name} has no contact method")
            return []

        attempts = []
        for med in patient.medications:
            for scheduled_time in med.reminder_times():
                if already_sent.contains(med.id, scheduled_time):
                    continue
                schedule = parse_schedule_time(scheduled_time)
                if schedule is None or not is_in_reminder_window(schedule, lead, self.config.window_minutes, now):
                    continue

                until = max(1, math.floor(minutes_until(schedule, now)))
                message = build_reminder_message(
                    recipient_name=patient.name,
                    medication_name=med.name,
                    dosage=med.dosage,
                    scheduled_time=scheduled_time,
                    minutes_until=until,
                )
                for channel in reachable:
                    attempts.append(DeliveryAttempt(
                        channel=channel,
                        recipient=recipient,
                        message=message,
                        context={
                            "patient": patient,
                            "medication": med,
                            "scheduled_time": scheduled_time,
                            "minutes_until": until,
                        },
                    ))
        return attempts

    def get_status(self) -> Dict[str, Any]:
        return {
            "enabled": self.config.enabled,
            "default_minutes_before": self.config.minutes_before,
            "window_minutes": self.config.window_minutes,
            "interval_seconds": self.config.interval_seconds,
            "channels": {name: self.channels[name].is_configured() for name in self.REMINDER_CHANNELS if name in self.channels},
        }


@lru_cache()
def get_patient_reminder_engine() -> PatientReminderEngine:
    return PatientReminderEngine(
        config=ReminderConfig.from_settings(settings),
        channels=get_default_channels(),
    )
