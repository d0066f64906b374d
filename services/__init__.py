"""
Services Module
Data access layer for the CareCircle notification engines
"""

from services.medication_service import MedicationService, medication_service
from services.companion_service import CompanionService, companion_service
from services.notification_history_service import NotificationHistoryService, notification_history_service
from services.push_subscription_service import PushSubscriptionService, push_subscription_service


__all__ = [
    # Service classes
    "MedicationService",
    "CompanionService",
    "NotificationHistoryService",
    "PushSubscriptionService",
    # Singleton instances
    "medication_service",
    "companion_service",
    "notification_history_service",
    "push_subscription_service",
]
