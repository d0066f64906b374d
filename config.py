"""
Configuration management for CareCircle
"""

from dataclasses import dataclass
from typing import Optional, Tuple
from pydantic_settings import BaseSettings
from functools import lru_cache


class Settings(BaseSettings):
    """Application settings loaded from environment variables"""

    # Application
    APP_NAME: str = "CareCircle"
    APP_VERSION: str = "1.0.0"
    DEBUG: bool = False
    ENV: str = "development"

    # API
    API_PREFIX: str = "/api/v1"
    HOST: str = "0.0.0.0"
    PORT: int = 8000

    # Database
    DATABASE_URL: str = "sqlite:///./carecircle.db"
    DATABASE_ECHO: bool = False

    # Missed-dose notifications
    NOTIFICATIONS_ENABLED: bool = True
    PUSH_FIRST_THRESHOLD_MINUTES: float = 0.5
    PUSH_SECOND_THRESHOLD_MINUTES: float = 1.0
    TELEGRAM_THRESHOLD_MINUTES: float = 1.5
    EMAIL_THRESHOLD_MINUTES: float = 3.0
    MAX_NOTIFICATION_WINDOW: float = 120  # staleness ceiling, minutes
    MAX_CONCURRENT_SENDS: int = 10
    CHANNEL_SEND_TIMEOUT_SECONDS: float = 15.0
    NOTIFICATION_INTERVAL_SECONDS: int = 30

    # Patient reminders (upcoming doses)
    PATIENT_REMINDERS_ENABLED: bool = True
    REMINDER_MINUTES_BEFORE: int = 5
    REMINDER_WINDOW: int = 2
    PATIENT_REMINDER_INTERVAL_SECONDS: int = 120

    # Prescription end-date expiration
    PRESCRIPTION_EXPIRY_ENABLED: bool = True
    AUTO_EXPIRE_CRON: str = "0 0 * * *"  # daily at midnight
    EXPIRY_WARNING_DAYS: int = 3

    # Scheduler
    SCHEDULER_ENABLED: bool = True

    # Web push
    VAPID_PUBLIC_KEY: Optional[str] = None
    VAPID_PRIVATE_KEY: Optional[str] = None
    VAPID_SUBJECT: str = "mailto:support@carecircle.app"

    # Telegram bot
    TELEGRAM_BOT_TOKEN: Optional[str] = None
    TELEGRAM_API_URL: str = "https://api.telegram.org"

    # Email (SMTP)
    SMTP_HOST: str = "smtp.gmail.com"
    SMTP_PORT: int = 587
    SMTP_SECURE: bool = False  # True for implicit TLS on 465
    SMTP_USER: Optional[str] = None
    SMTP_PASS: Optional[str] = None
    EMAIL_FROM_NAME: str = "CareCircle Companion Care"
    EMAIL_FROM_ADDRESS: Optional[str] = None

    # CORS
    CORS_ORIGINS: list[str] = ["http://localhost:3000", "http://localhost:5173"]

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_FORMAT: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = True
        extra = "ignore"


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance"""
    return Settings()


class ConfigurationError(ValueError):
    """Raised when notification settings are inconsistent"""


@dataclass(frozen=True)
class TierSpec:
    """One notification tier: overdue threshold plus delivery channels"""
    name: str
    threshold_minutes: float
    channels: Tuple[str, ...]


@dataclass(frozen=True)
class NotificationConfig:
    """
    Immutable snapshot of the missed-dose engine settings.

    Built once from Settings and handed to the engine at construction.
    Tiers must be listed with strictly increasing thresholds.
    """
    tiers: Tuple[TierSpec, ...]
    ceiling_minutes: float = 120
    max_concurrent_sends: int = 10
    send_timeout_seconds: float = 15.0
    interval_seconds: int = 30
    enabled: bool = True

    def __post_init__(self):
        if not self.tiers:
            raise ConfigurationError("At least one notification tier is required")

        names = [tier.name for tier in self.tiers]
        if len(set(names)) != len(names):
            raise ConfigurationError(f"Duplicate tier names: {names}")

        for previous, current in zip(self.tiers, self.tiers[1:]):
            if current.threshold_minutes <= previous.threshold_minutes:
                raise ConfigurationError(
                    f"Tier thresholds must be strictly increasing: "
                    f"{previous.name}={previous.threshold_minutes} >= "
                    f"{current.name}={current.threshold_minutes}"
                )

        for tier in self.tiers:
            if tier.threshold_minutes < 0:
                raise ConfigurationError(f"Tier {tier.name} has a negative threshold")
            if not tier.channels:
                raise ConfigurationError(f"Tier {tier.name} has no channels")

        if self.ceiling_minutes < self.tiers[-1].threshold_minutes:
            raise ConfigurationError(
                f"Staleness ceiling {self.ceiling_minutes} is below the last tier threshold "
                f"{self.tiers[-1].threshold_minutes}"
            )
        if self.max_concurrent_sends < 1:
            raise ConfigurationError("MAX_CONCURRENT_SENDS must be at least 1")
        if self.send_timeout_seconds <= 0:
            raise ConfigurationError("CHANNEL_SEND_TIMEOUT_SECONDS must be positive")

    @property
    def tier_names(self) -> Tuple[str, ...]:
        return tuple(tier.name for tier in self.tiers)

    def get_tier(self, name: str) -> Optional[TierSpec]:
        for tier in self.tiers:
            if tier.name == name:
                return tier
        return None

    @classmethod
    def from_settings(cls, settings: Settings) -> "NotificationConfig":
        """Build the tier table from environment-style settings"""
        return cls(
            tiers=(
                TierSpec("push_first", settings.PUSH_FIRST_THRESHOLD_MINUTES, ("push",)),
                TierSpec("push_second", settings.PUSH_SECOND_THRESHOLD_MINUTES, ("push",)),
                TierSpec("telegram", settings.TELEGRAM_THRESHOLD_MINUTES, ("telegram",)),
                TierSpec("email", settings.EMAIL_THRESHOLD_MINUTES, ("email",)),
            ),
            ceiling_minutes=settings.MAX_NOTIFICATION_WINDOW,
            max_concurrent_sends=settings.MAX_CONCURRENT_SENDS,
            send_timeout_seconds=settings.CHANNEL_SEND_TIMEOUT_SECONDS,
            interval_seconds=settings.NOTIFICATION_INTERVAL_SECONDS,
            enabled=settings.NOTIFICATIONS_ENABLED,
        )


@dataclass(frozen=True)
class ReminderConfig:
    """Settings for upcoming-dose reminders sent to patients"""
    enabled: bool = True
    minutes_before: int = 5
    window_minutes: int = 2
    interval_seconds: int = 120
    max_concurrent_sends: int = 10
    send_timeout_seconds: float = 15.0

    @classmethod
    def from_settings(cls, settings: Settings) -> "ReminderConfig":
        return cls(
            enabled=settings.PATIENT_REMINDERS_ENABLED,
            minutes_before=settings.REMINDER_MINUTES_BEFORE,
            window_minutes=settings.REMINDER_WINDOW,
            interval_seconds=settings.PATIENT_REMINDER_INTERVAL_SECONDS,
            max_concurrent_sends=settings.MAX_CONCURRENT_SENDS,
            send_timeout_seconds=settings.CHANNEL_SEND_TIMEOUT_SECONDS,
        )


@dataclass(frozen=True)
class ExpiryConfig:
    """Settings for the daily prescription expiration job"""
    enabled: bool = True
    cron: str = "0 0 * * *"
    warning_days: int = 3
    max_concurrent_sends: int = 10
    send_timeout_seconds: float = 15.0

    def __post_init__(self):
        if self.warning_days < 0:
            raise ConfigurationError("EXPIRY_WARNING_DAYS must not be negative")

    @classmethod
    def from_settings(cls, settings: Settings) -> "ExpiryConfig":
        return cls(
            enabled=settings.PRESCRIPTION_EXPIRY_ENABLED,
            cron=settings.AUTO_EXPIRE_CRON,
            warning_days=settings.EXPIRY_WARNING_DAYS,
            max_concurrent_sends=settings.MAX_CONCURRENT_SENDS,
            send_timeout_seconds=settings.CHANNEL_SEND_TIMEOUT_SECONDS,
        )

settings = get_settings()
