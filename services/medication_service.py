"""
Medication Service
Read-side queries for medications that may need a notification, plus
prescription end-date expiration
"""

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Dict, List, Optional
from sqlalchemy import or_
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from database import get_db_context
import models


logger = logging.getLogger(__name__)


@dataclass
class ScheduledDose:
    """An extra daily dose of a multi-dose medication"""
    id: int
    time: str
    label: Optional[str] = None


@dataclass
class CandidateDose:
    """An active, untaken medication with its owner's display name"""
    id: int
    patient_id: int
    name: str
    dosage: Optional[str]
    schedule_time: Optional[str]
    patient_name: Optional[str] = None
    doses: List[ScheduledDose] = field(default_factory=list)

    def reminder_times(self) -> List[str]:
        """Main dose time followed by any untaken extra doses, without repeats"""
        times = [self.schedule_time] + [dose.time for dose in self.doses]
        return list(dict.fromkeys(t for t in times if t))


@dataclass
class CandidateFetch:
    doses: List[CandidateDose] = field(default_factory=list)
    error: Optional[str] = None


@dataclass
class ReminderPatient:
    """A patient who wants upcoming-dose reminders, with their untaken medications"""
    id: int
    name: str
    email: Optional[str]
    telegram_chat_id: Optional[str]
    email_reminder_enabled: bool
    email_reminder_minutes: Optional[int]
    medications: List[CandidateDose] = field(default_factory=list)


@dataclass
class ReminderPatientFetch:
    patients: List[ReminderPatient] = field(default_factory=list)
    error: Optional[str] = None


@dataclass
class ExpiringMedication:
    """A prescription at or past its end date"""
    id: int
    patient_id: int
    name: str
    end_date: date
    days_remaining: int
    patient_name: Optional[str] = None


@dataclass
class ExpirationFetch:
    medications: List[ExpiringMedication] = field(default_factory=list)
    error: Optional[str] = None


def _to_candidate(med: models.Medication, patient_name: Optional[str] = None) -> CandidateDose:
    return CandidateDose(
        id=med.id,
        patient_id=med.user_id,
        name=med.name,
        dosage=med.dosage,
        schedule_time=med.schedule_time,
        patient_name=patient_name,
    )


class MedicationService:
    """
    Service for medication queries used by the notification engines
    """

    async def fetch_candidate_doses(self, db: Optional[Session] = None) -> CandidateFetch:
        """
        Get all active, untaken medications with their patient's name.

        Two queries: medications, then the owning profiles. A failed
        profile lookup still returns the medications without names.
        """
        def _fetch(session: Session) -> CandidateFetch:
            try:
                medications = session.query(models.Medication).filter(
                    models.Medication.is_active.is_(True),
                    models.Medication.taken.is_(False),
                ).order_by(models.Medication.id).all()
            except SQLAlchemyError as e:
                session.rollback()
                logger.error(f"Error fetching medications: {e}")
                return CandidateFetch(error=str(e))

            if not medications:
                return CandidateFetch()

            names = self._patient_names(session, list({m.user_id for m in medications}))
            return CandidateFetch(
                doses=[_to_candidate(m, names.get(m.user_id)) for m in medications]
            )

        if db:
            return _fetch(db)

        with get_db_context() as session:
            return _fetch(session)

    async def get_patients_with_upcoming_medications(
        self,
        db: Optional[Session] = None
    ) -> ReminderPatientFetch:
        """
        Get patients with email reminders enabled or a linked Telegram chat,
        each with their active, untaken medications
        """
        def _fetch(session: Session) -> ReminderPatientFetch:
            try:
                patients = session.query(models.Profile).filter(
                    models.Profile.role == models.ProfileRole.PATIENT,
                    or_(
                        models.Profile.email_reminder_enabled.is_(True),
                        models.Profile.telegram_chat_id.isnot(None),
                    ),
                ).order_by(models.Profile.id).all()

                if not patients:
                    return ReminderPatientFetch()

                by_id = {
                    p.id: ReminderPatient(
                        id=p.id,
                        name=p.name or "there",
                        email=p.email,
                        telegram_chat_id=p.telegram_chat_id,
                        email_reminder_enabled=bool(p.email_reminder_enabled),
                        email_reminder_minutes=p.email_reminder_minutes,
                    )
                    for p in patients
                }

                medications = session.query(models.Medication).filter(
                    models.Medication.user_id.in_(list(by_id)),
                    models.Medication.is_active.is_(True),
                    models.Medication.taken.is_(False),
                ).order_by(models.Medication.id).all()
            except SQLAlchemyError as e:
                session.rollback()
                logger.error(f"Error fetching patients for reminders: {e}")
                return ReminderPatientFetch(error=str(e))

            doses = self._load_untaken_doses(session, [m.id for m in medications])

            for med in medications:
                patient = by_id[med.user_id]
                candidate = _to_candidate(med, patient.name)
                candidate.doses = doses.get(med.id, [])
                patient.medications.append(candidate)

            return ReminderPatientFetch(patients=list(by_id.values()))

        if db:
            return _fetch(db)

        with get_db_context() as session:
            return _fetch(session)

    def _load_untaken_doses(self, session: Session, medication_ids: List[int]) -> Dict[int, List[ScheduledDose]]:
        """Extra dose times by medication; a failed lookup means main times only"""
        if not medication_ids:
            return {}
        try:
            rows = session.query(models.ScheduleDose).filter(
                models.ScheduleDose.medication_id.in_(medication_ids),
                models.ScheduleDose.taken.is_(False),
            ).order_by(models.ScheduleDose.id).all()
        except SQLAlchemyError as e:
            session.rollback()
            logger.warning(f"Error fetching scheduled doses: {e}")
            return {}

        doses: Dict[int, List[ScheduledDose]] = {}
        for row in rows:
            doses.setdefault(row.medication_id, []).append(
                ScheduledDose(id=row.id, time=row.time, label=row.label)
            )
        return doses

    # ==================== PRESCRIPTION EXPIRATION ====================

    def _patient_names(self, session: Session, user_ids: List[int]) -> Dict[int, Optional[str]]:
        try:
            profiles = session.query(models.Profile.id, models.Profile.name).filter(
                models.Profile.id.in_(user_ids)
            ).all()
        except SQLAlchemyError as e:
            session.rollback()
            logger.error(f"Error fetching patient profiles: {e}")
            return {}
        return {p.id: p.name for p in profiles}

    def _to_expiring(
        self,
        med: models.Medication,
        today: date,
        names: Dict[int, Optional[str]]
    ) -> ExpiringMedication:
        return ExpiringMedication(
            id=med.id,
            patient_id=med.user_id,
            name=med.name,
            end_date=med.end_date,
            days_remaining=max(0, (med.end_date - today).days),
            patient_name=names.get(med.user_id),
        )

    async def expire_ended_medications(
        self,
        today: date,
        db: Optional[Session] = None
    ) -> ExpirationFetch:
        """
        Deactivate every active medication whose end_date is before today

        Args:
            today: Reference date; a prescription ending today stays active
            db: Database session

        Returns:
            ExpirationFetch with the medications just deactivated
        """
        def _expire(session: Session) -> ExpirationFetch:
            try:
                medications = session.query(models.Medication).filter(
                    models.Medication.is_active.is_(True),
                    models.Medication.end_date.isnot(None),
                    models.Medication.end_date < today,
                ).order_by(models.Medication.id).all()
            except SQLAlchemyError as e:
                session.rollback()
                logger.error(f"Error fetching expired medications: {e}")
                return ExpirationFetch(error=str(e))

            if not medications:
                return ExpirationFetch()

            names = self._patient_names(session, list({m.user_id for m in medications}))
            expired = [self._to_expiring(m, today, names) for m in medications]

            try:
                session.query(models.Medication).filter(
                    models.Medication.id.in_([m.id for m in expired])
                ).update(
                    {"is_active": False, "updated_at": datetime.utcnow()},
                    synchronize_session=False,
                )
                session.commit()
            except SQLAlchemyError as e:
                session.rollback()
                logger.error(f"Error deactivating expired medications: {e}")
                return ExpirationFetch(error=str(e))

            logger.info(f"Deactivated {len(expired)} expired medication(s)")
            return ExpirationFetch(medications=expired)

        if db:
            return _expire(db)

        with get_db_context() as session:
            return _expire(session)

    async def get_expiring_medications(
        self,
        today: date,
        threshold_days: int = 3,
        db: Optional[Session] = None
    ) -> ExpirationFetch:
        """Active medications ending between today and today + threshold_days"""
        last_day = today + timedelta(days=threshold_days)

        def _fetch(session: Session) -> ExpirationFetch:
            try:
                medications = session.query(models.Medication).filter(
                    models.Medication.is_active.is_(True),
                    models.Medication.end_date.isnot(None),
                    models.Medication.end_date >= today,
                    models.Medication.end_date <= last_day,
                ).order_by(models.Medication.end_date, models.Medication.id).all()
            except SQLAlchemyError as e:
                session.rollback()
                logger.error(f"Error fetching expiring medications: {e}")
                return ExpirationFetch(error=str(e))

            if not medications:
                return ExpirationFetch()

            names = self._patient_names(session, list({m.user_id for m in medications}))
            return ExpirationFetch(
                medications=[self._to_expiring(m, today, names) for m in medications]
            )

        if db:
            return _fetch(db)

        with get_db_context() as session:
            return _fetch(session)


# Singleton instance
medication_service = MedicationService()
