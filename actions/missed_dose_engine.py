"""
Missed-Dose Engine
Detects overdue doses and alerts companions through tiered channels
"""

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime
from functools import lru_cache
from typing import Any, Dict, List, Mapping, Optional, Set
from sqlalchemy.orm import Session

from config import NotificationConfig, settings
from actions.dose_classifier import classify, minutes_since, parse_schedule_time
from services.companion_service import CompanionService, RecipientLookup, companion_service
from services.medication_service import CandidateDose, MedicationService, medication_service
from services.notification_history_service import (
    DedupIndex,
    NotificationHistoryService,
    PendingNotification,
    notification_history_service,
    tier_history_type,
)
from services.push_subscription_service import PushSubscriptionService, push_subscription_service
from tools import get_default_channels
from tools.notification_service import (
    ChannelResult,
    DeliveryAttempt,
    DeliveryChannel,
    build_missed_dose_message,
    deliver_batched,
)


logger = logging.getLogger(__name__)

DEFAULT_PATIENT_NAME = "Your patient"


@dataclass
class ClassifiedDose:
    """A candidate dose with the tiers it currently qualifies for"""
    dose: CandidateDose
    minutes_missed: float
    tiers: Set[str]


@dataclass
class DispatchRunResult:
    """Operator-facing summary of one engine run"""
    checked: int = 0
    notified: int = 0
    sent_by_channel: Dict[str, int] = field(default_factory=dict)
    recorded: int = 0
    errors: List[str] = field(default_factory=list)
    details: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "checked": self.checked,
            "notified": self.notified,
            "sent_by_channel": dict(self.sent_by_channel),
            "recorded": self.recorded,
            "errors": list(self.errors),
            "details": list(self.details),
        }


class MissedDoseEngine:
    """
    Tiered missed-dose dispatch.

    One run: fetch candidates, classify by minutes overdue, resolve
    companions, load today's dedup index, send every (dose, companion,
    tier) not yet notified, then record the successes in one batch.
    Runs keep no state between invocations beyond notification history.
    """

    def __init__(
        self,
        config: NotificationConfig,
        channels: Mapping[str, DeliveryChannel],
        medications: Optional[MedicationService] = None,
        companions: Optional[CompanionService] = None,
        history: Optional[NotificationHistoryService] = None,
        subscriptions: Optional[PushSubscriptionService] = None,
    ):
        self.config = config
        self.channels = dict(channels)
        self.medications = medications or medication_service
        self.companions = companions or companion_service
        self.history = history or notification_history_service
        self.subscriptions = subscriptions or push_subscription_service

    async def run(self, now: Optional[datetime] = None, db: Optional[Session] = None) -> DispatchRunResult:
        """
        Execute one detect-classify-dedup-dispatch-record pass

        Args:
            now: Reference time (defaults to local now)
            db: Database session

        Returns:
            DispatchRunResult; store failures before dispatch end the run
            with zero sends and the error listed
        """
        result = DispatchRunResult()

        if not self.config.enabled:
            logger.info("[Notifications] Notifications are disabled")
            return result

        now = now or datetime.now()
        logger.info("[Notifications] Checking for missed doses...")

        fetched = await self.medications.fetch_candidate_doses(db=db)
        if fetched.error:
            logger.error(f"[Notifications] Failed to fetch medications: {fetched.error}")
            result.errors.append(f"Failed to fetch medications: {fetched.error}")
            return result

        result.checked = len(fetched.doses)
        logger.info(f"[Notifications] Found {result.checked} untaken medications")

        classified = self._classify_candidates(fetched.doses, now)
        if not classified:
            return result

        medication_ids = [c.dose.id for c in classified]
        patient_ids = [c.dose.patient_id for c in classified]

        lookup = await self.companions.resolve_recipients(patient_ids, db=db)
        if lookup.error:
            logger.error(f"[Notifications] Failed to resolve companions: {lookup.error}")
            result.errors.append(f"Failed to resolve companions: {lookup.error}")
            return result

        dedup = await self.history.load_sent_today(
            medication_ids, now, self.config.tier_names, db=db
        )
        if dedup.error:
            logger.error(f"[Notifications] Failed to load notification history: {dedup.error}")
            result.errors.append(f"Failed to load notification history: {dedup.error}")
            return result

        attempts = self._plan_attempts(classified, lookup, dedup)
        if not attempts:
            logger.info("[Notifications] Nothing new to send")
            return result

        logger.info(f"[Notifications] Dispatching {len(attempts)} notification(s)")
        outcomes = await deliver_batched(
            attempts,
            max_concurrent=self.config.max_concurrent_sends,
            timeout=self.config.send_timeout_seconds,
        )

        pending = self._collect(attempts, outcomes, now, result)
        await self._deregister_expired(attempts, outcomes, db)

        recorded = await self.history.record_batch(pending, db=db)
        if recorded.error:
            # Sends already happened; the next run may repeat them
            result.errors.append(f"Failed to record notifications: {recorded.error}")
        result.recorded = recorded.recorded

        logger.info(
            f"[Notifications] Complete: {result.notified} sent "
            f"({', '.join(f'{k}={v}' for k, v in result.sent_by_channel.items()) or 'none'}), "
            f"{len(result.errors)} error(s)"
        )
        return result

    def _classify_candidates(self, doses: List[CandidateDose], now: datetime) -> List[ClassifiedDose]:
        classified = []
        for dose in doses:
            schedule = parse_schedule_time(dose.schedule_time)
            if schedule is None:
                logger.debug(f"[Notifications] Could not parse time for {dose.name}: {dose.schedule_time}")
                continue

            missed = minutes_since(schedule, now)
            tiers = classify(missed, self.config.tiers, self.config.ceiling_minutes)
            if not tiers:
                if missed > self.config.ceiling_minutes:
                    logger.debug(f"[Notifications] Skipping {dose.name} - too old ({missed:.1f} min)")
                continue

            classified.append(ClassifiedDose(dose=dose, minutes_missed=missed, tiers=tiers))
        return classified

    def _plan_attempts(
        self,
        classified: List[ClassifiedDose],
        lookup: RecipientLookup,
        dedup: DedupIndex,
    ) -> List[DeliveryAttempt]:
        attempts = []
        for tier in self.config.tiers:
            for item in classified:
                if tier.name not in item.tiers:
                    continue
                dose = item.dose
                recipients = lookup.for_patient(dose.patient_id)
                if not recipients:
                    logger.debug(f"[Notifications] No companions linked for patient {dose.patient_id}")
                    continue

                for recipient in recipients:
                    if dedup.contains(dose.id, recipient.id, tier.name):
                        logger.debug(
                            f"[Notifications] Already sent {tier.name} to {recipient.name} about {dose.name} today"
                        )
                        continue

                    for channel_name in tier.channels:
                        channel = self.channels.get(channel_name)
                        if channel is None or not channel.is_configured():
                            logger.debug(f"[Notifications] Channel {channel_name} not configured")
                            continue
                        if not channel.can_reach(recipient):
                            logger.debug(f"[Notifications] {recipient.name} has no {channel_name} contact")
                            continue

                        message = build_missed_dose_message(
                            tier=tier.name,
                            patient_name=dose.patient_name or DEFAULT_PATIENT_NAME,
                            medication_name=dose.name,
                            dosage=dose.dosage,
                            scheduled_time=dose.schedule_time,
                            minutes_missed=item.minutes_missed,
                            recipient_name=recipient.name,
                        )
                        attempts.append(DeliveryAttempt(
                            channel=channel,
                            recipient=recipient,
                            message=message,
                            context={"dose": dose, "tier": tier.name, "minutes_missed": item.minutes_missed},
                        ))
        return attempts

    def _collect(
        self,
        attempts: List[DeliveryAttempt],
        outcomes: List[ChannelResult],
        now: datetime,
        result: DispatchRunResult,
    ) -> List[PendingNotification]:
        pending = []
        sent_by_channel: Dict[str, int] = defaultdict(int)

        for attempt, outcome in zip(attempts, outcomes):
            dose: CandidateDose = attempt.context["dose"]
            tier = attempt.context["tier"]
            recipient = attempt.recipient

            if not outcome.success:
                logger.warning(
                    f"[Notifications] {outcome.channel} ({tier}) to {recipient.name} "
                    f"about {dose.name} failed: {outcome.error}"
                )
                result.errors.append(
                    f"Failed to notify {recipient.name} about {dose.name} via {outcome.channel} ({tier}): {outcome.error}"
                )
                continue

            sent_by_channel[outcome.channel] += 1
            result.notified += 1
            patient_name = dose.patient_name or DEFAULT_PATIENT_NAME
            pending.append(PendingNotification(
                patient_id=dose.patient_id,
                companion_id=recipient.id,
                medication_id=dose.id,
                type=tier_history_type(tier),
                channel=outcome.channel,
                recipient_email=recipient.email,
                message=f"{patient_name} missed {dose.name} ({dose.dosage}) scheduled at {dose.schedule_time}",
                scheduled_time=dose.schedule_time,
                sent_at=now,
            ))
            result.details.append({
                "medication": dose.name,
                "patient": patient_name,
                "companion": recipient.name,
                "tier": tier,
                "channel": outcome.channel,
                "minutes_missed": round(attempt.context["minutes_missed"], 1),
                "message_id": outcome.message_id,
            })

        result.sent_by_channel = dict(sent_by_channel)
        return pending

    async def _deregister_expired(
        self,
        attempts: List[DeliveryAttempt],
        outcomes: List[ChannelResult],
        db: Optional[Session],
    ) -> None:
        expired: Dict[int, Set[str]] = defaultdict(set)
        for attempt, outcome in zip(attempts, outcomes):
            if outcome.permanent_failure and outcome.expired_endpoints:
                expired[attempt.recipient.id].update(outcome.expired_endpoints)

        for recipient_id, endpoints in expired.items():
            await self.subscriptions.deregister_endpoints(recipient_id, sorted(endpoints), db=db)

    def get_status(self) -> Dict[str, Any]:
        """Engine configuration and channel readiness"""
        return {
            "enabled": self.config.enabled,
            "tiers": [
                {"name": t.name, "threshold_minutes": t.threshold_minutes, "channels": list(t.channels)}
                for t in self.config.tiers
            ],
            "max_notification_window": self.config.ceiling_minutes,
            "max_concurrent_sends": self.config.max_concurrent_sends,
            "interval_seconds": self.config.interval_seconds,
            "channels": {name: channel.is_configured() for name, channel in self.channels.items()},
        }


@lru_cache()
def get_missed_dose_engine() -> MissedDoseEngine:
    """Engine wired to the configured channels and the default services"""
    return MissedDoseEngine(
        config=NotificationConfig.from_settings(settings),
        channels=get_default_channels(),
    )
