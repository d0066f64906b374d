"""
Push Subscription Service
Stores browser push subscriptions and drops the ones push services reject
"""

import logging
from datetime import datetime
from typing import Iterable, List, Optional
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from database import get_db_context
import models


logger = logging.getLogger(__name__)


class PushSubscriptionService:
    """
    Service for push subscription records
    """

    async def save_subscription(
        self,
        user_id: int,
        endpoint: str,
        p256dh: str,
        auth: str,
        db: Optional[Session] = None
    ) -> dict:
        """Create a subscription or refresh the keys of an existing endpoint"""
        def _save(session: Session) -> dict:
            user = session.query(models.Profile).filter(models.Profile.id == user_id).first()
            if not user:
                raise ValueError(f"User {user_id} not found")

            existing = session.query(models.PushSubscription).filter(
                models.PushSubscription.user_id == user_id,
                models.PushSubscription.endpoint == endpoint,
            ).first()

            if existing:
                existing.p256dh = p256dh
                existing.auth = auth
                existing.updated_at = datetime.utcnow()
                session.commit()
                return {"success": True, "created": False}

            session.add(models.PushSubscription(
                user_id=user_id,
                endpoint=endpoint,
                p256dh=p256dh,
                auth=auth,
            ))
            session.commit()
            logger.info(f"Push subscription saved for user {user_id}")
            return {"success": True, "created": True}

        if db:
            return _save(db)

        with get_db_context() as session:
            return _save(session)

    async def remove_subscription(
        self,
        user_id: int,
        endpoint: str,
        db: Optional[Session] = None
    ) -> int:
        """Delete one subscription; returns rows removed"""
        def _remove(session: Session) -> int:
            removed = session.query(models.PushSubscription).filter(
                models.PushSubscription.user_id == user_id,
                models.PushSubscription.endpoint == endpoint,
            ).delete(synchronize_session=False)
            session.commit()
            if removed:
                logger.info(f"Push subscription removed for user {user_id}")
            return removed

        if db:
            return _remove(db)

        with get_db_context() as session:
            return _remove(session)

    async def get_user_subscriptions(
        self,
        user_id: int,
        db: Optional[Session] = None
    ) -> List[models.PushSubscription]:
        def _get(session: Session) -> List[models.PushSubscription]:
            return session.query(models.PushSubscription).filter(
                models.PushSubscription.user_id == user_id
            ).all()

        if db:
            return _get(db)

        with get_db_context() as session:
            return _get(session)

    async def deregister_endpoints(
        self,
        user_id: int,
        endpoints: Iterable[str],
        db: Optional[Session] = None
    ) -> int:
        """
        Remove expired endpoints reported by the push channel.

        Failures are logged and swallowed; the endpoint will simply be
        reported again on a later run.
        """
        endpoints = list(endpoints)
        if not endpoints:
            return 0

        def _deregister(session: Session) -> int:
            try:
                removed = session.query(models.PushSubscription).filter(
                    models.PushSubscription.user_id == user_id,
                    models.PushSubscription.endpoint.in_(endpoints),
                ).delete(synchronize_session=False)
                session.commit()
            except SQLAlchemyError as e:
                session.rollback()
                logger.error(f"Error removing expired subscriptions for user {user_id}: {e}")
                return 0
            logger.info(f"Removed {removed} invalid push subscription(s) for user {user_id}")
            return removed

        if db:
            return _deregister(db)

        with get_db_context() as session:
            return _deregister(session)


# Singleton instance
push_subscription_service = PushSubscriptionService()
