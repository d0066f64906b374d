"""
Actions Module
Engines that detect doses needing attention and dispatch notifications
"""

from .dose_classifier import (
    parse_schedule_time,
    minutes_since,
    minutes_until,
    classify,
    is_in_reminder_window
)

from .missed_dose_engine import (
    ClassifiedDose,
    DispatchRunResult,
    MissedDoseEngine,
    get_missed_dose_engine
)

from .patient_reminder_engine import (
    ReminderRunResult,
    PatientReminderEngine,
    get_patient_reminder_engine
)

from .notification_scheduler import (
    NotificationScheduler,
    get_notification_scheduler
)


__all__ = [
    # Dose Classifier
    "parse_schedule_time",
    "minutes_since",
    "minutes_until",
    "classify",
    "is_in_reminder_window",

    # Missed-Dose Engine
    "ClassifiedDose",
    "DispatchRunResult",
    "MissedDoseEngine",
    "get_missed_dose_engine",

    # Patient Reminder Engine
    "ReminderRunResult",
    "PatientReminderEngine",
    "get_patient_reminder_engine",

    # Scheduler
    "NotificationScheduler",
    "get_notification_scheduler"
]
