"""
Pytest Configuration and Shared Fixtures
========================================

This module provides shared fixtures for all CareCircle tests.
Fixtures include database sessions, test clients, sample data, and fake
delivery channels.
"""

import asyncio
import os
import sys
from datetime import datetime
from typing import Callable, Generator, List, Optional, Tuple

# Settings are read at import time
os.environ["DATABASE_URL"] = "sqlite:///:memory:"
os.environ["SCHEDULER_ENABLED"] = "false"
os.environ.pop("VAPID_PUBLIC_KEY", None)
os.environ.pop("VAPID_PRIVATE_KEY", None)
os.environ.pop("TELEGRAM_BOT_TOKEN", None)
os.environ.pop("SMTP_USER", None)
os.environ.pop("SMTP_PASS", None)

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import sessionmaker, Session

# Add parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from config import ExpiryConfig, NotificationConfig, ReminderConfig, TierSpec
from database import Base, build_engine, get_db
from models import (
    Profile, Medication, PatientCompanion, PushSubscription, NotificationHistory,
    ProfileRole, CompanionLinkStatus
)
from tools.notification_service import AlertMessage, ChannelResult, DeliveryChannel, Recipient
from app import app
from api.deps import default_rate_limiter, notification_rate_limiter


# 8:01:30 on a fixed day: a dose due at 8:00 AM is 1.5 minutes overdue
FIXED_NOW = datetime(2025, 1, 15, 8, 1, 30)


# ==================== FAKE CHANNELS ====================

class FakeChannel(DeliveryChannel):
    """In-memory channel that records every send"""

    def __init__(
        self,
        name: str,
        configured: bool = True,
        fail: bool = False,
        error: Optional[Exception] = None,
        delay: float = 0,
        reach: Optional[Callable[[Recipient], bool]] = None,
        expired_endpoints: Optional[List[str]] = None,
    ):
        self.name = name
        self.configured = configured
        self.fail = fail
        self.error = error
        self.delay = delay
        self.reach = reach
        self.expired_endpoints = expired_endpoints or []
        self.sent: List[Tuple[Recipient, AlertMessage]] = []
        self.active = 0
        self.max_active = 0

    def is_configured(self) -> bool:
        return self.configured

    def can_reach(self, recipient: Recipient) -> bool:
        return self.reach(recipient) if self.reach else True

    async def send(self, recipient: Recipient, message: AlertMessage) -> ChannelResult:
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            if self.error is not None:
                raise self.error
            self.sent.append((recipient, message))
            if self.expired_endpoints:
                return ChannelResult(
                    success=False,
                    channel=self.name,
                    error="Subscription expired",
                    permanent_failure=True,
                    expired_endpoints=list(self.expired_endpoints),
                )
            if self.fail:
                return ChannelResult(success=False, channel=self.name, error=f"{self.name} unavailable")
            return ChannelResult(success=True, channel=self.name, message_id=f"{self.name}-{len(self.sent)}")
        finally:
            self.active -= 1


@pytest.fixture
def fake_channels() -> dict:
    """One healthy fake per channel name"""
    return {
        "push": FakeChannel("push"),
        "telegram": FakeChannel("telegram"),
        "email": FakeChannel("email"),
    }


# ==================== CONFIG FIXTURES ====================

@pytest.fixture
def notification_config() -> NotificationConfig:
    """Default tier table"""
    return NotificationConfig(
        tiers=(
            TierSpec("push_first", 0.5, ("push",)),
            TierSpec("push_second", 1.0, ("push",)),
            TierSpec("telegram", 1.5, ("telegram",)),
            TierSpec("email", 3.0, ("email",)),
        ),
        ceiling_minutes=120,
        max_concurrent_sends=10,
        send_timeout_seconds=2.0,
    )


@pytest.fixture
def reminder_config() -> ReminderConfig:
    return ReminderConfig(minutes_before=5, window_minutes=2, send_timeout_seconds=2.0)


@pytest.fixture
def expiry_config() -> ExpiryConfig:
    return ExpiryConfig(warning_days=3, send_timeout_seconds=2.0)


@pytest.fixture
def fixed_now() -> datetime:
    return FIXED_NOW


# ==================== DATABASE FIXTURES ====================

@pytest.fixture(scope="function")
def test_engine():
    """Fresh in-memory SQLite store per test"""
    engine = build_engine("sqlite:///:memory:")
    Base.metadata.create_all(bind=engine)

    yield engine

    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture(scope="function")
def db_session(test_engine) -> Generator[Session, None, None]:
    """Create a test database session"""
    TestingSessionLocal = sessionmaker(
        autocommit=False,
        autoflush=False,
        bind=test_engine
    )

    session = TestingSessionLocal()

    try:
        yield session
    finally:
        session.rollback()
        session.close()


@pytest.fixture(scope="function")
def client(db_session: Session) -> Generator[TestClient, None, None]:
    """Create a FastAPI test client with database override"""

    def override_get_db():
        try:
            yield db_session
        finally:
            pass

    app.dependency_overrides[get_db] = override_get_db
    default_rate_limiter._requests.clear()
    notification_rate_limiter._requests.clear()

    with TestClient(app) as test_client:
        yield test_client

    app.dependency_overrides.clear()


# ==================== SAMPLE DATA FIXTURES ====================

@pytest.fixture
def test_patient(db_session: Session) -> Profile:
    """Create and return a test patient"""
    patient = Profile(
        name="Alice",
        email="alice@example.com",
        role=ProfileRole.PATIENT,
    )
    db_session.add(patient)
    db_session.commit()
    db_session.refresh(patient)
    return patient


@pytest.fixture
def test_companion(db_session: Session) -> Profile:
    """Create and return a companion reachable on every channel"""
    companion = Profile(
        name="Bob",
        email="bob@example.com",
        role=ProfileRole.COMPANION,
        telegram_chat_id="123456789",
    )
    db_session.add(companion)
    db_session.commit()
    db_session.refresh(companion)
    return companion


@pytest.fixture
def test_link(db_session: Session, test_patient: Profile, test_companion: Profile) -> PatientCompanion:
    """Accepted link between the test patient and companion"""
    link = PatientCompanion(
        patient_id=test_patient.id,
        companion_id=test_companion.id,
        status=CompanionLinkStatus.ACCEPTED,
    )
    db_session.add(link)
    db_session.commit()
    db_session.refresh(link)
    return link


@pytest.fixture
def test_medication(db_session: Session, test_patient: Profile) -> Medication:
    """Untaken 8:00 AM dose for the test patient"""
    medication = Medication(
        user_id=test_patient.id,
        name="Metformin",
        dosage="500mg",
        frequency="daily",
        time="8:00 AM",
        taken=False,
        is_active=True,
    )
    db_session.add(medication)
    db_session.commit()
    db_session.refresh(medication)
    return medication


@pytest.fixture
def test_push_subscription(db_session: Session, test_companion: Profile) -> PushSubscription:
    subscription = PushSubscription(
        user_id=test_companion.id,
        endpoint="https://push.example.com/sub/abc",
        p256dh="p256dh-key",
        auth="auth-secret",
    )
    db_session.add(subscription)
    db_session.commit()
    db_session.refresh(subscription)
    return subscription


@pytest.fixture
def history_rows(db_session: Session) -> Callable[[], List[NotificationHistory]]:
    """Callable returning all notification history rows, oldest first"""
    def _rows() -> List[NotificationHistory]:
        return db_session.query(NotificationHistory).order_by(NotificationHistory.id).all()
    return _rows


# ==================== PYTEST CONFIGURATION ====================

def pytest_configure(config):
    """Configure pytest with custom markers"""
    config.addinivalue_line("markers", "slow: marks tests as slow")
    config.addinivalue_line("markers", "integration: marks tests as integration tests")
