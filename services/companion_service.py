"""
Companion Service
Resolves which companions should hear about a patient's doses
"""

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from database import get_db_context
import models
from tools.notification_service import PushSubscriptionInfo, Recipient


logger = logging.getLogger(__name__)

PLACEHOLDER_NAME = "Companion"


@dataclass
class RecipientLookup:
    """Accepted companions grouped by patient ID"""
    by_patient: Dict[int, List[Recipient]] = field(default_factory=dict)
    error: Optional[str] = None

    def for_patient(self, patient_id: int) -> List[Recipient]:
        return self.by_patient.get(patient_id, [])


class CompanionService:
    """
    Batched companion lookups.

    Three queries no matter how many patients: accepted links, companion
    profiles, and push subscriptions. Profile or subscription failures
    degrade to placeholder data instead of failing the lookup.
    """

    async def resolve_recipients(
        self,
        patient_ids: Iterable[int],
        db: Optional[Session] = None
    ) -> RecipientLookup:
        """
        Get accepted companions for many patients at once

        Args:
            patient_ids: Patients whose companions to load
            db: Database session

        Returns:
            RecipientLookup keyed by patient ID; error is set only when the
            link query itself failed
        """
        patient_ids = list(dict.fromkeys(patient_ids))
        if not patient_ids:
            return RecipientLookup()

        def _resolve(session: Session) -> RecipientLookup:
            try:
                links = session.query(models.PatientCompanion).filter(
                    models.PatientCompanion.patient_id.in_(patient_ids),
                    models.PatientCompanion.status == models.CompanionLinkStatus.ACCEPTED,
                ).order_by(models.PatientCompanion.id).all()
            except SQLAlchemyError as e:
                session.rollback()
                logger.error(f"Error fetching companion links: {e}")
                return RecipientLookup(error=str(e))

            if not links:
                return RecipientLookup()

            companion_ids = list(dict.fromkeys(link.companion_id for link in links))
            profiles = self._load_profiles(session, companion_ids)
            subscriptions = self._load_subscriptions(session, companion_ids)

            by_patient: Dict[int, List[Recipient]] = defaultdict(list)
            for link in links:
                profile = profiles.get(link.companion_id)
                by_patient[link.patient_id].append(Recipient(
                    id=link.companion_id,
                    name=(profile.name if profile and profile.name else PLACEHOLDER_NAME),
                    email=profile.email if profile else None,
                    telegram_chat_id=profile.telegram_chat_id if profile else None,
                    push_subscriptions=list(subscriptions.get(link.companion_id, [])),
                ))

            return RecipientLookup(by_patient=dict(by_patient))

        if db:
            return _resolve(db)

        with get_db_context() as session:
            return _resolve(session)

    async def get_recipient(self, user_id: int, db: Optional[Session] = None) -> Optional[Recipient]:
        """One profile as a Recipient with its push subscriptions; None if unknown"""
        def _get(session: Session) -> Optional[Recipient]:
            profile = self._load_profiles(session, [user_id]).get(user_id)
            if profile is None:
                return None
            return Recipient(
                id=profile.id,
                name=profile.name or PLACEHOLDER_NAME,
                email=profile.email,
                telegram_chat_id=profile.telegram_chat_id,
                push_subscriptions=list(self._load_subscriptions(session, [user_id]).get(user_id, [])),
            )

        if db:
            return _get(db)

        with get_db_context() as session:
            return _get(session)

    def _load_profiles(self, session: Session, companion_ids: List[int]) -> Dict[int, models.Profile]:
        try:
            rows = session.query(models.Profile).filter(
                models.Profile.id.in_(companion_ids)
            ).all()
        except SQLAlchemyError as e:
            session.rollback()
            logger.error(f"Error fetching companion profiles: {e}")
            return {}
        return {p.id: p for p in rows}

    def _load_subscriptions(
        self,
        session: Session,
        companion_ids: List[int]
    ) -> Dict[int, List[PushSubscriptionInfo]]:
        try:
            rows = session.query(models.PushSubscription).filter(
                models.PushSubscription.user_id.in_(companion_ids)
            ).order_by(models.PushSubscription.id).all()
        except SQLAlchemyError as e:
            session.rollback()
            logger.warning(f"Error fetching push subscriptions, continuing without push: {e}")
            return {}

        grouped: Dict[int, List[PushSubscriptionInfo]] = defaultdict(list)
        for row in rows:
            grouped[row.user_id].append(
                PushSubscriptionInfo(endpoint=row.endpoint, p256dh=row.p256dh, auth=row.auth)
            )
        return grouped


# Singleton instance
companion_service = CompanionService()
