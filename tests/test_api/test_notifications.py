"""
Tests for Notifications API
============================

Tests operator endpoints for the missed-dose, reminder and prescription
expiry engines, push subscription management and per-channel test sends.
"""

import httpx
import pytest
from datetime import date, timedelta
from unittest.mock import MagicMock, patch
from fastapi import status

from actions.missed_dose_engine import MissedDoseEngine
from actions.notification_scheduler import NotificationScheduler
from actions.patient_reminder_engine import PatientReminderEngine
from actions.prescription_expiry_engine import PrescriptionExpiryEngine
from api.deps import get_scheduler
from api.notifications import get_test_channel
from api.push import get_push_test_channel
from api.telegram import get_telegram_test_channel
from app import app
from models import Medication, NotificationHistory, PushSubscription
from tests.conftest import FakeChannel
from tools.email_channel import EmailChannel
from tools.push_channel import PushChannel
from tools.telegram_channel import TelegramChannel


BOT_TOKEN = "123456789:ABCdefGHIjklMNOpqrSTUvwxYZ"


# ==================== FIXTURES ====================

@pytest.fixture
def scheduler(notification_config, reminder_config, expiry_config, fake_channels):
    """Scheduler over fake channels, injected into the routes"""
    notification_scheduler = NotificationScheduler(
        MissedDoseEngine(config=notification_config, channels=fake_channels),
        PatientReminderEngine(config=reminder_config, channels=fake_channels),
        PrescriptionExpiryEngine(config=expiry_config, channels=fake_channels),
        scheduler=MagicMock(running=False),
    )
    app.dependency_overrides[get_scheduler] = lambda: notification_scheduler
    return notification_scheduler


@pytest.fixture
def test_channel():
    channel = FakeChannel("email")
    app.dependency_overrides[get_test_channel] = lambda: channel
    return channel


# ==================== NOTIFICATION ENDPOINTS ====================

class TestNotificationStatus:

    def test_status(self, client, scheduler):
        response = client.get("/api/v1/notifications/status")

        assert response.status_code == status.HTTP_200_OK
        data = response.json()
        assert data["enabled"] is True
        assert [t["name"] for t in data["tiers"]] == ["push_first", "push_second", "telegram", "email"]
        assert data["in_flight"] is False

    def test_reminder_status(self, client, scheduler):
        response = client.get("/api/v1/reminders/status")

        assert response.status_code == status.HTTP_200_OK
        assert response.json()["window_minutes"] == 2


class TestNotificationCheck:

    def test_check_runs_engine(self, client, scheduler, test_link, test_medication, fixed_now, fake_channels, db_session):
        with patch("actions.missed_dose_engine.datetime") as mock_datetime:
            mock_datetime.now.return_value = fixed_now
            response = client.post("/api/v1/notifications/check")

        assert response.status_code == status.HTTP_200_OK
        data = response.json()
        assert data["success"] is True
        assert data["checked"] == 1
        assert data["notified"] == 3
        assert data["sent_by_channel"] == {"push": 2, "telegram": 1}
        assert db_session.query(NotificationHistory).count() == 3

    def test_check_conflict_when_in_flight(self, client, scheduler):
        with patch.object(NotificationScheduler, "run_missed_dose_check", return_value=None):
            response = client.post("/api/v1/notifications/check")

        assert response.status_code == status.HTTP_409_CONFLICT
        assert response.json()["error"] is True

    def test_reminder_check(self, client, scheduler):
        response = client.post("/api/v1/reminders/check")

        assert response.status_code == status.HTTP_200_OK
        assert response.json()["sent"] == 0


class TestTestNotification:

    def test_send(self, client, test_channel):
        response = client.post(
            "/api/v1/notifications/test",
            json={"email": "ops@example.com", "name": "Ops"},
        )

        assert response.status_code == status.HTTP_200_OK
        assert response.json()["success"] is True
        recipient, message = test_channel.sent[0]
        assert recipient.email == "ops@example.com"
        assert message.title == "Test Notification"

    def test_invalid_email(self, client, test_channel):
        response = client.post("/api/v1/notifications/test", json={"email": "not-an-email"})

        assert response.status_code == 422

    def test_unconfigured(self, client, test_channel):
        test_channel.configured = False

        response = client.post("/api/v1/notifications/test", json={"email": "ops@example.com"})

        assert response.status_code == status.HTTP_503_SERVICE_UNAVAILABLE

    def test_verify_email_unconfigured(self, client):
        app.dependency_overrides[get_test_channel] = lambda: EmailChannel()

        response = client.get("/api/v1/notifications/verify-email")

        assert response.status_code == status.HTTP_200_OK
        assert response.json()["success"] is False
        assert response.json()["error"] == "SMTP not configured"


class TestStats:

    def test_stats(self, client, test_patient, test_companion, test_medication, db_session):
        db_session.add(NotificationHistory(
            patient_id=test_patient.id,
            companion_id=test_companion.id,
            medication_id=test_medication.id,
            type="missed_medication_email",
            channel="email",
        ))
        db_session.commit()

        response = client.get("/api/v1/notifications/stats")

        assert response.status_code == status.HTTP_200_OK
        assert response.json() == {"today": 1, "total": 1, "error": None}


# ==================== PUSH ENDPOINTS ====================

class TestPush:

    def test_vapid_key_not_configured(self, client):
        response = client.get("/api/v1/push/vapid-public-key")

        assert response.status_code == status.HTTP_503_SERVICE_UNAVAILABLE

    def test_subscribe_and_unsubscribe(self, client, test_companion, db_session):
        payload = {
            "user_id": test_companion.id,
            "subscription": {
                "endpoint": "https://push.example.com/new",
                "keys": {"p256dh": "key", "auth": "secret"},
            },
        }

        response = client.post("/api/v1/push/subscribe", json=payload)
        assert response.status_code == status.HTTP_201_CREATED
        assert db_session.query(PushSubscription).count() == 1

        response = client.post(
            "/api/v1/push/unsubscribe",
            json={"user_id": test_companion.id, "endpoint": "https://push.example.com/new"},
        )
        assert response.status_code == status.HTTP_200_OK
        assert db_session.query(PushSubscription).count() == 0

    def test_subscribe_unknown_user(self, client):
        response = client.post("/api/v1/push/subscribe", json={
            "user_id": 999,
            "subscription": {"endpoint": "https://push.example.com/x", "keys": {"p256dh": "k", "auth": "a"}},
        })

        assert response.status_code == status.HTTP_404_NOT_FOUND

    def test_unsubscribe_missing(self, client, test_companion):
        response = client.post(
            "/api/v1/push/unsubscribe",
            json={"user_id": test_companion.id, "endpoint": "https://push.example.com/none"},
        )

        assert response.status_code == status.HTTP_404_NOT_FOUND


class TestPushTest:

    @pytest.fixture
    def push_channel(self):
        channel = PushChannel(vapid_private_key="private-key", vapid_public_key="public-key")
        app.dependency_overrides[get_push_test_channel] = lambda: channel
        return channel

    def test_status_not_configured(self, client):
        response = client.get("/api/v1/push/status")

        assert response.status_code == status.HTTP_200_OK
        assert response.json() == {
            "channel": "push",
            "configured": False,
            "details": {"vapid_public_key": "Not set", "vapid_private_key": "Not set"},
        }

    def test_status_configured(self, client, push_channel):
        response = client.get("/api/v1/push/status")

        assert response.json()["configured"] is True
        assert response.json()["details"]["vapid_private_key"] == "Set"

    def test_send(self, client, push_channel, test_push_subscription):
        user_id = test_push_subscription.user_id

        with patch("tools.push_channel.webpush") as mock_webpush:
            response = client.post("/api/v1/push/test", json={"user_id": user_id})

        assert response.status_code == status.HTTP_200_OK
        assert response.json()["success"] is True
        assert mock_webpush.call_count == 1
        assert mock_webpush.call_args.kwargs["subscription_info"]["endpoint"] == "https://push.example.com/sub/abc"

    def test_user_without_subscriptions(self, client, push_channel, test_companion):
        response = client.post("/api/v1/push/test", json={"user_id": test_companion.id})

        assert response.status_code == status.HTTP_200_OK
        assert response.json()["success"] is False
        assert response.json()["error"] == "No subscriptions found for user"

    def test_unknown_user(self, client, push_channel):
        response = client.post("/api/v1/push/test", json={"user_id": 999})

        assert response.status_code == status.HTTP_404_NOT_FOUND

    def test_not_configured(self, client, test_companion):
        response = client.post("/api/v1/push/test", json={"user_id": test_companion.id})

        assert response.status_code == status.HTTP_503_SERVICE_UNAVAILABLE
        assert response.json()["message"] == "Push notifications not configured"


# ==================== TELEGRAM ENDPOINTS ====================

class TestTelegram:

    @pytest.fixture
    def sent_messages(self):
        sent = []

        def handler(request: httpx.Request) -> httpx.Response:
            sent.append(request)
            return httpx.Response(200, json={"ok": True, "result": {"message_id": 7}})

        channel = TelegramChannel(bot_token=BOT_TOKEN, transport=httpx.MockTransport(handler))
        app.dependency_overrides[get_telegram_test_channel] = lambda: channel
        return sent

    def test_status_not_configured(self, client):
        response = client.get("/api/v1/telegram/status")

        assert response.status_code == status.HTTP_200_OK
        assert response.json()["configured"] is False
        assert response.json()["details"] == {"bot_token": "Not set"}

    def test_send(self, client, sent_messages, test_companion):
        response = client.post("/api/v1/telegram/test", json={"user_id": test_companion.id})

        assert response.status_code == status.HTTP_200_OK
        assert response.json() == {"success": True, "message_id": "7", "error": None}
        assert len(sent_messages) == 1

    def test_user_not_linked(self, client, sent_messages, test_patient):
        response = client.post("/api/v1/telegram/test", json={"user_id": test_patient.id})

        assert response.status_code == status.HTTP_200_OK
        assert response.json()["success"] is False
        assert response.json()["error"] == "Recipient not linked to Telegram"
        assert sent_messages == []

    def test_not_configured(self, client, test_companion):
        response = client.post("/api/v1/telegram/test", json={"user_id": test_companion.id})

        assert response.status_code == status.HTTP_503_SERVICE_UNAVAILABLE


# ==================== PRESCRIPTION ENDPOINTS ====================

class TestPrescriptions:

    @pytest.fixture
    def add_prescription(self, db_session, test_patient):
        def _add(name: str, days_from_today: int) -> Medication:
            medication = Medication(
                user_id=test_patient.id,
                name=name,
                time="8:00 AM",
                end_date=date.today() + timedelta(days=days_from_today),
            )
            db_session.add(medication)
            db_session.commit()
            db_session.refresh(medication)
            return medication
        return _add

    def test_status(self, client, scheduler):
        response = client.get("/api/v1/prescriptions/status")

        assert response.status_code == status.HTTP_200_OK
        data = response.json()
        assert data["schedule"] == "0 0 * * *"
        assert data["email_configured"] is True
        assert data["in_flight"] is False

    def test_expire_check(self, client, scheduler, test_link, add_prescription, fake_channels, db_session):
        ended = add_prescription("Amoxicillin", -1)
        add_prescription("Prednisone", 2)

        response = client.post("/api/v1/prescriptions/expire-check")

        assert response.status_code == status.HTTP_200_OK
        data = response.json()
        assert data["success"] is True
        assert data["expired"] == 1
        assert data["expiring_soon"] == 1
        assert data["notified"] == 2
        assert len(fake_channels["email"].sent) == 2
        db_session.refresh(ended)
        assert ended.is_active is False

    def test_expire_check_conflict_when_in_flight(self, client, scheduler):
        with patch.object(NotificationScheduler, "run_prescription_expiry", return_value=None):
            response = client.post("/api/v1/prescriptions/expire-check")

        assert response.status_code == status.HTTP_409_CONFLICT

    def test_expiring_soon(self, client, add_prescription):
        add_prescription("Prednisone", 2)
        add_prescription("Vitamin D", 30)

        response = client.get("/api/v1/prescriptions/expiring-soon")

        assert response.status_code == status.HTTP_200_OK
        data = response.json()
        assert data["count"] == 1
        assert data["medications"][0]["name"] == "Prednisone"
        assert data["medications"][0]["days_remaining"] == 2
        assert data["medications"][0]["patient_name"] == "Alice"

    def test_expiring_soon_custom_window(self, client, add_prescription):
        add_prescription("Vitamin D", 30)

        response = client.get("/api/v1/prescriptions/expiring-soon", params={"days": 30})

        assert response.json()["count"] == 1

    def test_expiring_soon_rejects_negative_days(self, client):
        response = client.get("/api/v1/prescriptions/expiring-soon", params={"days": -1})

        assert response.status_code == 422


# ==================== HEALTH ====================

class TestHealth:

    def test_health(self, client):
        response = client.get("/health")

        assert response.status_code == status.HTTP_200_OK
        data = response.json()
        assert data["checks"]["database"]["status"] == "up"
        assert "notification_history" in data["checks"]["database"]["tables"]
        assert set(data["checks"]["channels"]) == {"push", "telegram", "email"}
        assert data["checks"]["scheduler"]["expiry_in_flight"] is False
