"""
Notification History Service
Daily dedup index over notification_history and batched recording of sends
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterable, List, Optional, Sequence, Set, Tuple
from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from database import get_db_context
import models


logger = logging.getLogger(__name__)

MISSED_TYPE_PREFIX = "missed_medication"
# Rows written before tiers existed were always email alerts
LEGACY_MISSED_TYPE = "missed_medication"
LEGACY_TIER = "email"
REMINDER_TYPE = "medication_reminder"


def tier_history_type(tier: str) -> str:
    """History `type` value for a missed-dose tier"""
    return f"{MISSED_TYPE_PREFIX}_{tier}"


def dedup_key(medication_id, recipient_id, tier: str) -> str:
    return f"{medication_id}|{recipient_id}|{tier}"


def day_bounds(now: datetime) -> Tuple[datetime, datetime]:
    """First and last instant of now's calendar day"""
    start = now.replace(hour=0, minute=0, second=0, microsecond=0)
    end = now.replace(hour=23, minute=59, second=59, microsecond=999999)
    return start, end


@dataclass
class DedupIndex:
    """(medication, recipient, tier) triples already notified today"""
    keys: Set[str] = field(default_factory=set)
    error: Optional[str] = None

    def contains(self, medication_id, recipient_id, tier: str) -> bool:
        return dedup_key(medication_id, recipient_id, tier) in self.keys


@dataclass
class ReminderIndex:
    """(medication, dose time) pairs that already got a patient reminder today"""
    keys: Set[Tuple[int, Optional[str]]] = field(default_factory=set)
    error: Optional[str] = None

    def contains(self, medication_id: int, scheduled_time: str) -> bool:
        # Rows without a dose time cover the whole medication
        return (medication_id, scheduled_time) in self.keys or (medication_id, None) in self.keys


@dataclass
class NoticeIndex:
    """(medication, companion, type) prescription notices already sent today"""
    keys: Set[Tuple[int, int, str]] = field(default_factory=set)
    error: Optional[str] = None


@dataclass
class PendingNotification:
    """A successful send waiting to be written to history"""
    patient_id: int
    companion_id: int
    medication_id: int
    type: str
    channel: str
    message: str
    scheduled_time: Optional[str]
    sent_at: datetime
    recipient_email: Optional[str] = None
    status: models.NotificationStatus = models.NotificationStatus.SENT

    def to_model(self) -> models.NotificationHistory:
        return models.NotificationHistory(
            patient_id=self.patient_id,
            companion_id=self.companion_id,
            medication_id=self.medication_id,
            type=self.type,
            channel=self.channel,
            recipient_email=self.recipient_email,
            message=self.message,
            scheduled_time=self.scheduled_time,
            sent_at=self.sent_at,
            status=self.status,
        )


@dataclass
class RecordOutcome:
    recorded: int = 0
    error: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.error is None


class NotificationHistoryService:
    """
    Service for notification history reads and writes
    """

    async def load_sent_today(
        self,
        medication_ids: Iterable[int],
        now: datetime,
        tiers: Sequence[str],
        db: Optional[Session] = None
    ) -> DedupIndex:
        """
        Build the dedup index for now's calendar day

        Args:
            medication_ids: Candidate medications for this run
            now: Reference time; its date picks the window
            tiers: Configured tier names
            db: Database session

        Returns:
            DedupIndex of "medId|recipientId|tier" keys. Never raises; a
            store error yields an empty index with error set.
        """
        medication_ids = list(dict.fromkeys(medication_ids))
        if not medication_ids:
            return DedupIndex()

        type_to_tier = {tier_history_type(tier): tier for tier in tiers}
        if LEGACY_TIER in tiers:
            type_to_tier.setdefault(LEGACY_MISSED_TYPE, LEGACY_TIER)
        start, end = day_bounds(now)

        def _load(session: Session) -> DedupIndex:
            try:
                rows = session.query(
                    models.NotificationHistory.medication_id,
                    models.NotificationHistory.companion_id,
                    models.NotificationHistory.type,
                ).filter(
                    models.NotificationHistory.medication_id.in_(medication_ids),
                    models.NotificationHistory.type.in_(list(type_to_tier)),
                    models.NotificationHistory.sent_at >= start,
                    models.NotificationHistory.sent_at <= end,
                ).all()
            except SQLAlchemyError as e:
                session.rollback()
                logger.error(f"Error checking notification history: {e}")
                return DedupIndex(error=str(e))

            return DedupIndex(keys={
                dedup_key(row.medication_id, row.companion_id, type_to_tier[row.type])
                for row in rows
            })

        if db:
            return _load(db)

        with get_db_context() as session:
            return _load(session)

    async def load_reminders_sent_today(
        self,
        medication_ids: Iterable[int],
        now: datetime,
        db: Optional[Session] = None
    ) -> ReminderIndex:
        """(medication, dose time) pairs already reminded today (patient self-reminders)"""
        medication_ids = list(dict.fromkeys(medication_ids))
        if not medication_ids:
            return ReminderIndex()

        start, end = day_bounds(now)

        def _load(session: Session) -> ReminderIndex:
            try:
                rows = session.query(
                    models.NotificationHistory.medication_id,
                    models.NotificationHistory.scheduled_time,
                ).filter(
                    models.NotificationHistory.medication_id.in_(medication_ids),
                    models.NotificationHistory.type == REMINDER_TYPE,
                    models.NotificationHistory.sent_at >= start,
                    models.NotificationHistory.sent_at <= end,
                ).all()
            except SQLAlchemyError as e:
                session.rollback()
                logger.error(f"Error checking reminder history: {e}")
                return ReminderIndex(error=str(e))
            return ReminderIndex(keys={(row.medication_id, row.scheduled_time) for row in rows})

        if db:
            return _load(db)

        with get_db_context() as session:
            return _load(session)

    async def load_notices_sent_today(
        self,
        medication_ids: Iterable[int],
        now: datetime,
        types: Sequence[str],
        db: Optional[Session] = None
    ) -> NoticeIndex:
        """Prescription notices of the given types already sent today"""
        medication_ids = list(dict.fromkeys(medication_ids))
        if not medication_ids:
            return NoticeIndex()

        start, end = day_bounds(now)

        def _load(session: Session) -> NoticeIndex:
            try:
                rows = session.query(
                    models.NotificationHistory.medication_id,
                    models.NotificationHistory.companion_id,
                    models.NotificationHistory.type,
                ).filter(
                    models.NotificationHistory.medication_id.in_(medication_ids),
                    models.NotificationHistory.type.in_(list(types)),
                    models.NotificationHistory.sent_at >= start,
                    models.NotificationHistory.sent_at <= end,
                ).all()
            except SQLAlchemyError as e:
                session.rollback()
                logger.error(f"Error checking prescription notice history: {e}")
                return NoticeIndex(error=str(e))
            return NoticeIndex(keys={(row.medication_id, row.companion_id, row.type) for row in rows})

        if db:
            return _load(db)

        with get_db_context() as session:
            return _load(session)

    async def record_batch(
        self,
        records: List[PendingNotification],
        db: Optional[Session] = None
    ) -> RecordOutcome:
        """
        Insert all records in one transaction.

        Not safe to blindly retry: a retry after a partial failure can
        duplicate rows.
        """
        if not records:
            return RecordOutcome()

        def _record(session: Session) -> RecordOutcome:
            try:
                session.add_all([record.to_model() for record in records])
                session.commit()
            except SQLAlchemyError as e:
                session.rollback()
                logger.error(f"Error recording notifications batch: {e}")
                return RecordOutcome(error=str(e))
            return RecordOutcome(recorded=len(records))

        if db:
            return _record(db)

        with get_db_context() as session:
            return _record(session)

    async def get_stats(self, now: Optional[datetime] = None, db: Optional[Session] = None) -> dict:
        """Count notifications sent today and overall"""
        now = now or datetime.now()
        start, _ = day_bounds(now)

        def _stats(session: Session) -> dict:
            try:
                today = session.query(func.count(models.NotificationHistory.id)).filter(
                    models.NotificationHistory.sent_at >= start
                ).scalar()
                total = session.query(func.count(models.NotificationHistory.id)).scalar()
            except SQLAlchemyError as e:
                session.rollback()
                logger.error(f"Error getting notification stats: {e}")
                return {"today": 0, "total": 0, "error": "Failed to get stats"}
            return {"today": today or 0, "total": total or 0, "error": None}

        if db:
            return _stats(db)

        with get_db_context() as session:
            return _stats(session)


# Singleton instance
notification_history_service = NotificationHistoryService()
