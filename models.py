"""
Database Models
SQLAlchemy ORM models for CareCircle
"""

from sqlalchemy import Column, Integer, String, Boolean, DateTime, ForeignKey, Text, Date, Enum, Index, UniqueConstraint
from sqlalchemy.orm import relationship
from datetime import datetime
from enum import Enum as PyEnum

from database import Base


# ==================== ENUMS ====================

class ProfileRole(str, PyEnum):
    """Role of an account in the app"""
    PATIENT = "patient"
    COMPANION = "companion"


class CompanionLinkStatus(str, PyEnum):
    """Acceptance state of a patient/companion link"""
    PENDING = "pending"
    ACCEPTED = "accepted"
    REJECTED = "rejected"


class NotificationStatus(str, PyEnum):
    """Outcome of a delivery attempt"""
    SENT = "sent"
    FAILED = "failed"


# ==================== MODELS ====================

class Profile(Base):
    """Account profile shared by patients and companions"""
    __tablename__ = "profiles"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(255))
    email = Column(String(255), index=True)
    role = Column(Enum(ProfileRole), default=ProfileRole.PATIENT)

    # Contact channels
    telegram_chat_id = Column(String(64))

    # Patient self-reminder preferences
    email_reminder_enabled = Column(Boolean, default=False)
    email_reminder_minutes = Column(Integer)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    # Relationships
    medications = relationship("Medication", back_populates="user", cascade="all, delete-orphan")
    push_subscriptions = relationship("PushSubscription", back_populates="user", cascade="all, delete-orphan")


class Medication(Base):
    """A patient's medication with its daily dose time"""
    __tablename__ = "medications"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("profiles.id"), nullable=False)

    name = Column(String(255), nullable=False)
    dosage = Column(String(100))  # e.g., "500mg"
    frequency = Column(String(100))

    # Schedule: "8:00 AM" or "14:30"; start_time is the legacy column
    time = Column(String(20))
    start_time = Column(String(20))

    # Status
    taken = Column(Boolean, nullable=False, default=False)
    taken_at = Column(DateTime)
    is_active = Column(Boolean, nullable=False, default=True)
    end_date = Column(Date)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    # Relationships
    user = relationship("Profile", back_populates="medications")
    doses = relationship("ScheduleDose", back_populates="medication", cascade="all, delete-orphan")

    __table_args__ = (
        Index("ix_medications_active_taken", "is_active", "taken"),
        Index("ix_medications_active_end_date", "is_active", "end_date"),
    )

    @property
    def schedule_time(self):
        return self.time or self.start_time


class ScheduleDose(Base):
    """An extra daily dose time for a medication taken more than once a day"""
    __tablename__ = "schedule_doses"

    id = Column(Integer, primary_key=True, index=True)
    medication_id = Column(Integer, ForeignKey("medications.id"), nullable=False, index=True)
    time = Column(String(20), nullable=False)
    label = Column(String(100))  # e.g., "Evening"
    taken = Column(Boolean, nullable=False, default=False)

    created_at = Column(DateTime, default=datetime.utcnow)

    medication = relationship("Medication", back_populates="doses")


class PatientCompanion(Base):
    """Link between a patient and a companion who monitors them"""
    __tablename__ = "patient_companions"

    id = Column(Integer, primary_key=True, index=True)
    patient_id = Column(Integer, ForeignKey("profiles.id"), nullable=False)
    companion_id = Column(Integer, ForeignKey("profiles.id"), nullable=False)
    status = Column(Enum(CompanionLinkStatus), default=CompanionLinkStatus.PENDING, nullable=False)

    created_at = Column(DateTime, default=datetime.utcnow)

    patient = relationship("Profile", foreign_keys=[patient_id])
    companion = relationship("Profile", foreign_keys=[companion_id])

    __table_args__ = (
        UniqueConstraint("patient_id", "companion_id", name="uq_patient_companion"),
        Index("ix_patient_companions_patient_status", "patient_id", "status"),
    )


class PushSubscription(Base):
    """Browser Web Push subscription for a user"""
    __tablename__ = "push_subscriptions"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("profiles.id"), nullable=False)
    endpoint = Column(Text, nullable=False)
    p256dh = Column(String(255), nullable=False)
    auth = Column(String(255), nullable=False)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    user = relationship("Profile", back_populates="push_subscriptions")

    __table_args__ = (
        UniqueConstraint("user_id", "endpoint", name="uq_push_subscription_endpoint"),
    )


class NotificationHistory(Base):
    """One delivered notification; also the source of the daily dedup index"""
    __tablename__ = "notification_history"

    id = Column(Integer, primary_key=True, index=True)
    patient_id = Column(Integer, ForeignKey("profiles.id"), nullable=False)
    companion_id = Column(Integer, ForeignKey("profiles.id"), nullable=False)
    medication_id = Column(Integer, ForeignKey("medications.id"), nullable=False)

    # "missed_medication_<tier>", "medication_reminder" or "prescription_<kind>"
    type = Column(String(64), nullable=False)
    channel = Column(String(32), nullable=False)
    recipient_email = Column(String(255))
    message = Column(Text)
    scheduled_time = Column(String(20))

    sent_at = Column(DateTime, default=datetime.now, nullable=False)
    status = Column(Enum(NotificationStatus), default=NotificationStatus.SENT, nullable=False)

    __table_args__ = (
        Index("ix_notification_history_med_sent", "medication_id", "sent_at"),
        Index("ix_notification_history_type", "type"),
    )
