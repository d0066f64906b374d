"""
Tests for Prescription Expiry Engine
Tests deactivation of ended prescriptions and companion notices
"""

import pytest
from dataclasses import replace
from datetime import date, datetime
from unittest.mock import AsyncMock

from actions.prescription_expiry_engine import (
    EXPIRED_TYPE,
    EXPIRING_TYPE,
    PrescriptionExpiryEngine,
)
from models import Medication
from services.medication_service import ExpirationFetch
from tests.conftest import FakeChannel


# Just after the daily midnight run
NOW = datetime(2025, 1, 15, 0, 0, 30)


@pytest.fixture
def email_channel():
    return FakeChannel("email", reach=lambda r: bool(r.email))


@pytest.fixture
def engine(expiry_config, email_channel):
    return PrescriptionExpiryEngine(config=expiry_config, channels={"email": email_channel})


@pytest.fixture
def add_prescription(db_session, test_patient):
    def _add(name: str, end_date=None) -> Medication:
        medication = Medication(user_id=test_patient.id, name=name, time="8:00 AM", end_date=end_date)
        db_session.add(medication)
        db_session.commit()
        db_session.refresh(medication)
        return medication
    return _add


class TestExpiration:

    @pytest.mark.asyncio
    async def test_ended_prescription_deactivated_and_companion_told(
        self, engine, add_prescription, test_link, email_channel, db_session, history_rows
    ):
        ended = add_prescription("Amoxicillin", end_date=date(2025, 1, 14))

        result = await engine.run(now=NOW, db=db_session)

        assert result.expired == 1
        assert result.notified == 1
        assert result.errors == []
        db_session.refresh(ended)
        assert ended.is_active is False

        recipient, message = email_channel.sent[0]
        assert recipient.email == "bob@example.com"
        assert message.title == "Prescription Completed for Alice"
        assert "Amoxicillin (ended 2025-01-14)" in message.body

        rows = history_rows()
        assert [(r.medication_id, r.type, r.channel) for r in rows] == [(ended.id, EXPIRED_TYPE, "email")]
        assert rows[0].scheduled_time is None

    @pytest.mark.asyncio
    async def test_expiring_soon_notice(self, engine, add_prescription, test_link, email_channel, db_session):
        add_prescription("Prednisone", end_date=date(2025, 1, 17))
        add_prescription("Vitamin D", end_date=date(2025, 3, 1))

        result = await engine.run(now=NOW, db=db_session)

        assert result.expired == 0
        assert result.expiring_soon == 1
        assert result.notified == 1
        message = email_channel.sent[0][1]
        assert message.title == "Prescription(s) Ending Soon for Alice"
        assert "Prednisone (2 day(s) remaining, ends 2025-01-17)" in message.body
        assert "Vitamin D" not in message.body

    @pytest.mark.asyncio
    async def test_one_email_per_patient_and_notice(
        self, engine, add_prescription, test_link, email_channel, db_session, history_rows
    ):
        add_prescription("Amoxicillin", end_date=date(2025, 1, 10))
        add_prescription("Ibuprofen", end_date=date(2025, 1, 12))
        add_prescription("Prednisone", end_date=date(2025, 1, 15))

        result = await engine.run(now=NOW, db=db_session)

        assert result.notified == 2
        titles = sorted(message.title for _, message in email_channel.sent)
        assert titles == ["Prescription Completed for Alice", "Prescription(s) Ending Soon for Alice"]
        assert sorted(r.type for r in history_rows()) == [EXPIRED_TYPE, EXPIRED_TYPE, EXPIRING_TYPE]

    @pytest.mark.asyncio
    async def test_second_run_same_day_sends_nothing(
        self, engine, add_prescription, test_link, email_channel, db_session
    ):
        add_prescription("Amoxicillin", end_date=date(2025, 1, 14))
        add_prescription("Prednisone", end_date=date(2025, 1, 16))

        await engine.run(now=NOW, db=db_session)
        second = await engine.run(now=NOW.replace(hour=9), db=db_session)

        assert second.expired == 0
        assert second.expiring_soon == 1
        assert second.notified == 0
        assert len(email_channel.sent) == 2

    @pytest.mark.asyncio
    async def test_no_prescriptions(self, engine, test_link, email_channel, db_session):
        result = await engine.run(now=NOW, db=db_session)

        assert result.to_dict() == {
            "expired": 0, "expiring_soon": 0, "notified": 0, "errors": [], "details": []
        }
        assert email_channel.sent == []


class TestDegradedRuns:

    @pytest.mark.asyncio
    async def test_email_not_configured_still_expires(self, expiry_config, add_prescription, test_link, db_session):
        ended = add_prescription("Amoxicillin", end_date=date(2025, 1, 14))
        channel = FakeChannel("email", configured=False)
        engine = PrescriptionExpiryEngine(config=expiry_config, channels={"email": channel})

        result = await engine.run(now=NOW, db=db_session)

        assert result.expired == 1
        assert result.notified == 0
        assert result.errors == []
        assert channel.sent == []
        db_session.refresh(ended)
        assert ended.is_active is False

    @pytest.mark.asyncio
    async def test_companion_without_email_skipped(
        self, engine, add_prescription, test_link, test_companion, email_channel, db_session
    ):
        test_companion.email = None
        db_session.commit()
        add_prescription("Amoxicillin", end_date=date(2025, 1, 14))

        result = await engine.run(now=NOW, db=db_session)

        assert result.expired == 1
        assert result.notified == 0
        assert email_channel.sent == []

    @pytest.mark.asyncio
    async def test_failed_send_reported_and_not_recorded(
        self, expiry_config, add_prescription, test_link, db_session, history_rows
    ):
        add_prescription("Amoxicillin", end_date=date(2025, 1, 14))
        engine = PrescriptionExpiryEngine(config=expiry_config, channels={"email": FakeChannel("email", fail=True)})

        result = await engine.run(now=NOW, db=db_session)

        assert result.notified == 0
        assert len(result.errors) == 1
        assert "prescription_expired notice to Bob" in result.errors[0]
        assert history_rows() == []

    @pytest.mark.asyncio
    async def test_expire_error_stops_run(self, expiry_config, email_channel, db_session):
        medications = AsyncMock()
        medications.expire_ended_medications.return_value = ExpirationFetch(error="database is locked")
        engine = PrescriptionExpiryEngine(
            config=expiry_config, channels={"email": email_channel}, medications=medications
        )

        result = await engine.run(now=NOW, db=db_session)

        assert result.errors == ["Failed to expire prescriptions: database is locked"]
        medications.get_expiring_medications.assert_not_called()
        assert email_channel.sent == []

    @pytest.mark.asyncio
    async def test_disabled(self, expiry_config, email_channel, add_prescription, db_session):
        ended = add_prescription("Amoxicillin", end_date=date(2025, 1, 14))
        engine = PrescriptionExpiryEngine(
            config=replace(expiry_config, enabled=False), channels={"email": email_channel}
        )

        result = await engine.run(now=NOW, db=db_session)

        assert result.expired == 0
        db_session.refresh(ended)
        assert ended.is_active is True


class TestStatus:

    def test_status(self, engine):
        assert engine.get_status() == {
            "enabled": True,
            "schedule": "0 0 * * *",
            "warning_days": 3,
            "email_configured": True,
        }

    def test_status_without_email(self, expiry_config):
        engine = PrescriptionExpiryEngine(config=expiry_config, channels={})

        assert engine.get_status()["email_configured"] is False
