"""
Notification Schemas
Pydantic models for notification, push, Telegram and prescription endpoints
"""

from datetime import date
from typing import Optional, List, Dict, Any
from pydantic import BaseModel, Field, EmailStr


# ==================== REQUEST SCHEMAS ====================

class TestNotificationRequest(BaseModel):
    """Send a test email to an address"""
    email: EmailStr
    name: str = Field(default="Test User", min_length=1, max_length=255)


class ChannelTestRequest(BaseModel):
    """Send a test notification to a user's linked push or Telegram"""
    user_id: int


class PushKeys(BaseModel):
    p256dh: str = Field(..., min_length=1)
    auth: str = Field(..., min_length=1)


class PushSubscriptionPayload(BaseModel):
    """Browser PushSubscription.toJSON() shape"""
    endpoint: str = Field(..., min_length=1)
    keys: PushKeys


class PushSubscribeRequest(BaseModel):
    user_id: int
    subscription: PushSubscriptionPayload


class PushUnsubscribeRequest(BaseModel):
    user_id: int
    endpoint: str = Field(..., min_length=1)


# ==================== RESPONSE SCHEMAS ====================

class DispatchRunResponse(BaseModel):
    """Summary of a missed-dose run"""
    success: bool = True
    checked: int = 0
    notified: int = 0
    sent_by_channel: Dict[str, int] = Field(default_factory=dict)
    recorded: int = 0
    errors: List[str] = Field(default_factory=list)
    details: List[Dict[str, Any]] = Field(default_factory=list)


class ReminderRunResponse(BaseModel):
    """Summary of a patient reminder run"""
    success: bool = True
    checked: int = 0
    sent: int = 0
    errors: List[str] = Field(default_factory=list)
    details: List[Dict[str, Any]] = Field(default_factory=list)


class ExpiryRunResponse(BaseModel):
    """Summary of a prescription expiration run"""
    success: bool = True
    expired: int = 0
    expiring_soon: int = 0
    notified: int = 0
    errors: List[str] = Field(default_factory=list)
    details: List[Dict[str, Any]] = Field(default_factory=list)


class ExpiringPrescription(BaseModel):
    id: int
    name: str
    end_date: date
    days_remaining: int
    patient_name: Optional[str] = None


class ExpiringPrescriptionsResponse(BaseModel):
    count: int
    medications: List[ExpiringPrescription] = Field(default_factory=list)


class ChannelStatus(BaseModel):
    """Whether a delivery channel has its credentials"""
    channel: str
    configured: bool
    details: Dict[str, str] = Field(default_factory=dict)


class TestNotificationResponse(BaseModel):
    success: bool
    message_id: Optional[str] = None
    error: Optional[str] = None


class NotificationStats(BaseModel):
    today: int = 0
    total: int = 0
    error: Optional[str] = None
