"""
Notification Scheduler
Recurring timer for the missed-dose and patient reminder engines
"""

import asyncio
import logging
from typing import Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from actions.missed_dose_engine import DispatchRunResult, MissedDoseEngine, get_missed_dose_engine
from actions.patient_reminder_engine import (
    PatientReminderEngine,
    ReminderRunResult,
    get_patient_reminder_engine,
)
from actions.prescription_expiry_engine import (
    ExpiryRunResult,
    PrescriptionExpiryEngine,
    get_prescription_expiry_engine,
)


logger = logging.getLogger(__name__)

MISSED_DOSE_JOB_ID = "missed_dose_check"
PATIENT_REMINDER_JOB_ID = "patient_reminder_check"
PRESCRIPTION_EXPIRY_JOB_ID = "prescription_expiry_check"


class NotificationScheduler:
    """
    Runs each engine on its own schedule, one run at a time.

    APScheduler's max_instances=1 covers timer overlap; the locks also
    cover manual triggers from the API racing a scheduled run.
    """

    def __init__(
        self,
        missed_dose_engine: MissedDoseEngine,
        reminder_engine: PatientReminderEngine,
        expiry_engine: PrescriptionExpiryEngine,
        scheduler: Optional[AsyncIOScheduler] = None,
    ):
        self.missed_dose_engine = missed_dose_engine
        self.reminder_engine = reminder_engine
        self.expiry_engine = expiry_engine
        self._scheduler = scheduler or AsyncIOScheduler()
        self._missed_dose_lock = asyncio.Lock()
        self._reminder_lock = asyncio.Lock()
        self._expiry_lock = asyncio.Lock()

    @property
    def running(self) -> bool:
        return self._scheduler.running

    @property
    def missed_dose_in_flight(self) -> bool:
        return self._missed_dose_lock.locked()

    @property
    def reminder_in_flight(self) -> bool:
        return self._reminder_lock.locked()

    @property
    def expiry_in_flight(self) -> bool:
        return self._expiry_lock.locked()

    async def run_missed_dose_check(self, db=None) -> Optional[DispatchRunResult]:
        """Run the missed-dose engine now; None if a run is already in flight"""
        if self._missed_dose_lock.locked():
            logger.info("[Scheduler] Missed-dose check already running, skipping")
            return None
        async with self._missed_dose_lock:
            return await self.missed_dose_engine.run(db=db)

    async def run_patient_reminders(self, db=None) -> Optional[ReminderRunResult]:
        """Run the reminder engine now; None if a run is already in flight"""
        if self._reminder_lock.locked():
            logger.info("[Scheduler] Patient reminder check already running, skipping")
            return None
        async with self._reminder_lock:
            return await self.reminder_engine.run(db=db)

    async def run_prescription_expiry(self, db=None) -> Optional[ExpiryRunResult]:
        """Run the prescription expiry engine now; None if a run is already in flight"""
        if self._expiry_lock.locked():
            logger.info("[Scheduler] Prescription expiry check already running, skipping")
            return None
        async with self._expiry_lock:
            return await self.expiry_engine.run(db=db)

    async def _missed_dose_job(self) -> None:
        try:
            results = await self.run_missed_dose_check()
        except Exception as e:
            logger.error(f"[Scheduler] Notification check failed: {e}", exc_info=True)
            return
        if results is None:
            return
        if results.notified:
            logger.info(f"[Scheduler] Sent {results.notified} notification(s): {results.sent_by_channel}")
        if results.errors:
            logger.error(f"[Scheduler] Errors: {results.errors}")

    async def _reminder_job(self) -> None:
        try:
            results = await self.run_patient_reminders()
        except Exception as e:
            logger.error(f"[Scheduler] Patient reminder check failed: {e}", exc_info=True)
            return
        if results is not None and results.sent:
            logger.info(f"[Scheduler] Sent {results.sent} patient reminder(s)")

    async def _expiry_job(self) -> None:
        try:
            results = await self.run_prescription_expiry()
        except Exception as e:
            logger.error(f"[Scheduler] Prescription expiry check failed: {e}", exc_info=True)
            return
        if results is not None and results.errors:
            logger.error(f"[Scheduler] Prescription expiry errors: {results.errors}")

    def start(self) -> None:
        """Register the enabled jobs and start the timer; needs a running event loop"""
        if self._scheduler.running:
            return

        if self.missed_dose_engine.config.enabled:
            interval = self.missed_dose_engine.config.interval_seconds
            self._scheduler.add_job(
                self._missed_dose_job,
                IntervalTrigger(seconds=interval),
                id=MISSED_DOSE_JOB_ID,
                replace_existing=True,
                max_instances=1,
                coalesce=True,
            )
            logger.info(f"[Scheduler] Missed-dose check every {interval}s")
        else:
            logger.info("[Scheduler] Missed-dose notifications disabled")

        if self.reminder_engine.config.enabled:
            interval = self.reminder_engine.config.interval_seconds
            self._scheduler.add_job(
                self._reminder_job,
                IntervalTrigger(seconds=interval),
                id=PATIENT_REMINDER_JOB_ID,
                replace_existing=True,
                max_instances=1,
                coalesce=True,
            )
            logger.info(f"[Scheduler] Patient reminder check every {interval}s")
        else:
            logger.info("[Scheduler] Patient reminders disabled")

        if self.expiry_engine.config.enabled:
            cron = self.expiry_engine.config.cron
            self._scheduler.add_job(
                self._expiry_job,
                CronTrigger.from_crontab(cron),
                id=PRESCRIPTION_EXPIRY_JOB_ID,
                replace_existing=True,
                max_instances=1,
                coalesce=True,
            )
            logger.info(f"[Scheduler] Prescription expiry check on schedule '{cron}'")
        else:
            logger.info("[Scheduler] Prescription expiry disabled")

        self._scheduler.start()

    def shutdown(self) -> None:
        if self._scheduler.running:
            self._scheduler.shutdown(wait=False)
            logger.info("[Scheduler] Notification jobs stopped")


_notification_scheduler: Optional[NotificationScheduler] = None


def get_notification_scheduler() -> NotificationScheduler:
    """Process-wide scheduler shared by the app lifespan and the API"""
    global _notification_scheduler
    if _notification_scheduler is None:
        _notification_scheduler = NotificationScheduler(
            missed_dose_engine=get_missed_dose_engine(),
            reminder_engine=get_patient_reminder_engine(),
            expiry_engine=get_prescription_expiry_engine(),
        )
    return _notification_scheduler
