"""
Dose Classifier
Schedule-time parsing and overdue-tier bucketing
"""

import re
from datetime import datetime, time
from typing import Optional, Sequence, Set

from config import TierSpec


_TIME_PATTERN = re.compile(r"^(\d{1,2}):(\d{2})\s*(AM|PM)?$", re.IGNORECASE)


def parse_schedule_time(text: Optional[str]) -> Optional[time]:
    """
    Parse "8:00 AM", "12:30 pm", "08:00" or "14:30" into a time of day.

    Returns None for anything else, including out-of-range values like
    "13:65" or "13:00 PM".
    """
    if not text:
        return None

    match = _TIME_PATTERN.match(text.strip())
    if not match:
        return None

    hours = int(match.group(1))
    minutes = int(match.group(2))
    period = match.group(3)

    if minutes > 59:
        return None

    if period:
        if not 1 <= hours <= 12:
            return None
        period = period.upper()
        if period == "PM" and hours != 12:
            hours += 12
        elif period == "AM" and hours == 12:
            hours = 0
    elif hours > 23:
        return None

    return time(hours, minutes)


def minutes_since(schedule_time: time, now: datetime) -> float:
    """Signed minutes from today's schedule_time to now; negative means upcoming"""
    scheduled = datetime.combine(now.date(), schedule_time, tzinfo=now.tzinfo)
    return (now - scheduled).total_seconds() / 60


def minutes_until(schedule_time: time, now: datetime) -> float:
    return -minutes_since(schedule_time, now)


def classify(minutes: float, tiers: Sequence[TierSpec], ceiling_minutes: float) -> Set[str]:
    """
    Every tier whose threshold has been reached.

    Doses past the staleness ceiling match nothing, so an outage does not
    end in a flood of hours-old alerts.
    """
    if minutes > ceiling_minutes:
        return set()
    return {tier.name for tier in tiers if tier.threshold_minutes <= minutes}


def is_in_reminder_window(
    schedule_time: time,
    lead_minutes: int,
    window_minutes: int,
    now: datetime
) -> bool:
    """Whether now is lead_minutes (give or take window_minutes) before the dose"""
    until = minutes_until(schedule_time, now)
    return lead_minutes - window_minutes <= until <= lead_minutes + window_minutes
