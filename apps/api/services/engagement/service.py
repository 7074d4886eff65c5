"""
Engagement Service

Orchestrates the engagement pipeline for one database session:

    activity -> trigger detection -> recommendation -> (coach approval) -> dispatch

Used by the HTTP router and the Celery tasks. All times are UTC.
"""

import logging
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Iterable, Iterator, List, Mapping, Optional
from zoneinfo import ZoneInfoNotFoundError

from sqlalchemy.orm import Session

from core.config import settings
from core.database import get_db_sync
from core.events import (
    EVENT_RECOMMENDATION_CREATED,
    EVENT_RECOMMENDATION_DISMISSED,
    EVENT_TRIGGER_DETECTED,
    EVENT_TRIGGER_RESOLVED,
    emit,
)
from services.engagement.channels import ChannelHandlers
from services.engagement.dispatcher import (
    REASON_ALL_FAILED,
    REASON_NO_CHANNELS,
    REASON_NOT_DUE,
    DispatchPolicy,
    NotificationDispatcher,
    eligible_channels,
)
from services.engagement.errors import DeliveryFailedError, EngagementError, TriggerResolvedError
from services.engagement.preferences import PreferenceStore, resolve_timezone
from services.engagement.recommendation_generator import RecommendationGenerator
from services.engagement.stores import ActivityStore, RecommendationRepository, TriggerRepository
from services.engagement.trigger_detector import (
    ActivityHistory,
    DetectionResult,
    TriggerDetector,
    summarize_engagement,
)
from services.engagement.types import (
    ActivityEvent,
    Channel,
    DispatchResult,
    DispatchStatus,
    EngagementTrends,
    NotificationPreference,
    Recommendation,
    RecommendationStatus,
    Trigger,
)

logger = logging.getLogger(__name__)

TEST_NOTIFICATION_MESSAGE = "This is a test notification from your coach."


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class EngagementService:
    def __init__(
        self,
        db: Session,
        handlers: Optional[ChannelHandlers] = None,
        detector: Optional[TriggerDetector] = None,
        generator: Optional[RecommendationGenerator] = None,
        dispatch_policy: Optional[DispatchPolicy] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.db = db
        self.activity = ActivityStore(db)
        self.preferences = PreferenceStore(db)
        self.triggers = TriggerRepository(db)
        self.recommendations = RecommendationRepository(db)
        self.detector = detector or TriggerDetector()
        self.generator = generator or RecommendationGenerator()
        self.dispatcher = NotificationDispatcher(self.recommendations, handlers, dispatch_policy)
        self.clock = clock

    # =========================================================================
    # Activity
    # =========================================================================

    def load_activity(self, client_id: str, days: Optional[int] = None, now: Optional[datetime] = None) -> List[ActivityEvent]:
        now = now or self.clock()
        days = days or settings.ENGAGEMENT_ACTIVITY_LOOKBACK_DAYS
        logger.info(f"Loading activity feed for client: {client_id}")
        return self.activity.read(client_id, since=now - timedelta(days=days))

    def trends(self, client_id: str, days: Optional[int] = None, now: Optional[datetime] = None) -> EngagementTrends:
        return summarize_engagement(self.load_activity(client_id, days=days, now=now))

    # =========================================================================
    # Triggers
    # =========================================================================

    def list_triggers(self, client_id: str, include_resolved: bool = True) -> List[Trigger]:
        return self.triggers.list_for_client(client_id, include_resolved=include_resolved)

    def _client_timezone(self, preference: NotificationPreference):
        try:
            return resolve_timezone(preference.timezone)
        except (ZoneInfoNotFoundError, ValueError):
            logger.warning(f"Invalid timezone '{preference.timezone}' for client {preference.client_id}, using UTC")
            return timezone.utc

    def detect_triggers(self, client_id: str, now: Optional[datetime] = None) -> DetectionResult:
        """
        Run detection over the client's recent activity and persist new triggers.

        Everything is read before anything is written, so a read failure
        (DataUnavailableError) leaves no partial state. A trigger of a type
        already detected for the client inside the dedup window is dropped.
        """
        now = now or self.clock()
        lookback = max(timedelta(days=settings.ENGAGEMENT_ACTIVITY_LOOKBACK_DAYS), self.detector.config.lookback)
        window = self.activity.read(client_id, since=now - lookback)
        history = ActivityHistory(last_seen=self.activity.last_seen(client_id, before=now))
        preference = self.preferences.read(client_id)

        logger.info(f"Detecting triggers for {len(window)} activity events")
        detected = self.detector.detect(
            client_id, window, now, tz=self._client_timezone(preference), history=history
        )

        dedup_window = timedelta(hours=settings.ENGAGEMENT_DEDUP_WINDOW_HOURS)
        fresh = [
            t for t in detected
            if not dedup_window or not self.triggers.exists_since(client_id, t.type, now - dedup_window)
        ]
        for trigger in fresh:
            self.triggers.add(trigger)

        for trigger in fresh:
            emit(
                EVENT_TRIGGER_DETECTED,
                trigger_id=trigger.id,
                client_id=client_id,
                trigger_type=trigger.type.value,
                severity=trigger.severity.value,
            )

        skipped = len(detected) - len(fresh)
        if skipped:
            logger.info(f"Skipped {skipped} duplicate trigger(s) for client {client_id}")

        return DetectionResult(
            client_id=client_id,
            triggers=fresh,
            failed_predicates=list(detected.failed_predicates),
        )

    def resolve_trigger(self, trigger_id: str, now: Optional[datetime] = None) -> Trigger:
        trigger = self.triggers.resolve(trigger_id, now or self.clock())
        logger.info(f"Trigger resolved: {trigger_id}")
        emit(EVENT_TRIGGER_RESOLVED, trigger_id=trigger_id, client_id=trigger.client_id)
        return trigger

    # =========================================================================
    # Recommendations
    # =========================================================================

    def _store_recommendation(self, recommendation: Recommendation) -> Recommendation:
        self.recommendations.add(recommendation)
        emit(
            EVENT_RECOMMENDATION_CREATED,
            recommendation_id=recommendation.id,
            client_id=recommendation.client_id,
            trigger_id=recommendation.trigger_id,
        )
        return recommendation

    def generate_recommendation(self, trigger_id: str, now: Optional[datetime] = None) -> Recommendation:
        trigger = self.triggers.get(trigger_id)
        if trigger.is_resolved:
            raise TriggerResolvedError(trigger_id)
        return self._store_recommendation(self.generator.generate(trigger, now or self.clock()))

    def generate_recommendations(self, client_id: str, now: Optional[datetime] = None) -> List[Recommendation]:
        """One recommendation per unresolved trigger that has no open recommendation yet."""
        now = now or self.clock()
        covered = self.recommendations.open_trigger_ids(client_id)
        pending = [
            t for t in self.triggers.list_for_client(client_id, include_resolved=False)
            if t.id not in covered
        ]
        created = [self._store_recommendation(r) for r in self.generator.generate_batch(pending, now)]
        logger.info(f"Generated {len(created)} recommendation(s) for client {client_id}")
        return created

    def create_quick_action_recommendation(self, action_id: str, client_id: str, now: Optional[datetime] = None) -> Recommendation:
        return self._store_recommendation(
            self.generator.from_quick_action(action_id, client_id, now or self.clock())
        )

    def list_recommendations(self, client_id: str, status: Optional[RecommendationStatus] = None) -> List[Recommendation]:
        return self.recommendations.list_for_client(client_id, status=status)

    def get_recommendation(self, recommendation_id: str) -> Recommendation:
        return self.recommendations.get(recommendation_id)

    def send_recommendation(
        self,
        recommendation_id: str,
        channels: Optional[Iterable[Channel]] = None,
        now: Optional[datetime] = None,
    ) -> DispatchResult:
        """
        Coach-approved send.

        A scheduled recommendation is put back to pending and re-evaluated, so
        quiet hours and the daily cap still apply. Raises DeliveryFailedError
        when nothing was delivered.
        """
        now = now or self.clock()
        recommendation = self.recommendations.get(recommendation_id)

        # Preferences are re-read for every dispatch decision
        preference = self.preferences.read(recommendation.client_id)
        self.db.commit()

        result = self.dispatcher.dispatch(
            recommendation, preference, now, requested_channels=channels, manual=True, reopen_scheduled=True
        )
        if result.status == DispatchStatus.FAILED:
            raise DeliveryFailedError(recommendation_id, result.outcomes, result.reason)
        return result

    def dismiss_recommendation(self, recommendation_id: str) -> Recommendation:
        recommendation = self.recommendations.update_status(recommendation_id, RecommendationStatus.DISMISSED)
        logger.info(f"Recommendation dismissed: {recommendation_id}")
        emit(EVENT_RECOMMENDATION_DISMISSED, recommendation_id=recommendation_id, client_id=recommendation.client_id)
        return recommendation

    def release_due(self, now: Optional[datetime] = None) -> List[DispatchResult]:
        """
        Re-evaluate scheduled recommendations whose scheduled_for has passed.

        Each one goes back to pending and through a normal dispatch with fresh
        preferences, unless it was re-scheduled for later in the meantime.
        One client's failure does not stop the rest.
        """
        now = now or self.clock()
        results: List[DispatchResult] = []
        for recommendation in self.recommendations.due_scheduled(now):
            try:
                preference = self.preferences.read(recommendation.client_id)
                self.db.commit()
                result = self.dispatcher.dispatch(
                    recommendation, preference, now, reopen_scheduled=True, only_if_due=True
                )
            except EngagementError as e:
                self.db.rollback()
                logger.error(f"Releasing recommendation {recommendation.id} failed: {e}")
                continue

            if result.reason == REASON_NOT_DUE:
                # Re-scheduled by another dispatch since the due query ran
                continue
            if result.status == DispatchStatus.FAILED:
                logger.warning(f"Released recommendation {recommendation.id} not delivered: {result.reason}")
            results.append(result)

        logger.info(f"Released {len(results)} scheduled recommendation(s)")
        return results

    # =========================================================================
    # Preferences
    # =========================================================================

    def get_preferences(self, client_id: str) -> NotificationPreference:
        return self.preferences.read(client_id)

    def update_preferences(self, client_id: str, changes: Mapping[str, Any]) -> NotificationPreference:
        return self.preferences.write(client_id, changes)

    def send_test_notification(self, client_id: str) -> DispatchResult:
        """Deliver a test message on every enabled channel, ignoring quiet hours and the daily cap."""
        preference = self.preferences.read(client_id)
        channels = eligible_channels(preference)
        if not channels:
            raise DeliveryFailedError(None, [], REASON_NO_CHANNELS)

        self.db.commit()
        outcomes = self.dispatcher.deliver(client_id, channels, TEST_NOTIFICATION_MESSAGE)
        succeeded = [o.channel for o in outcomes if o.success]
        if not succeeded:
            raise DeliveryFailedError(None, outcomes, REASON_ALL_FAILED)

        logger.info(f"Test notification sent to client {client_id}")
        return DispatchResult(
            recommendation_id=None,
            status=DispatchStatus.SENT,
            outcomes=outcomes,
            sent_via=",".join(c.value for c in succeeded),
        )


@contextmanager
def engagement_service_scope(handlers: Optional[ChannelHandlers] = None) -> Iterator[EngagementService]:
    """EngagementService over its own session, committed on success. For tasks and worker threads."""
    db = get_db_sync()
    try:
        yield EngagementService(db, handlers=handlers)
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()
