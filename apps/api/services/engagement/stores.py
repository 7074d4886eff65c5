"""
Engagement persistence adapters.

- ActivityStore: read-only view over the append-only activity log
- TriggerRepository: persist / list / resolve triggers (never deletes)
- RecommendationRepository: persist recommendations and apply status
  changes through the lifecycle guard
- DispatchLeaseStore: per-client dispatch lease that serializes sends
  across processes
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, List, Optional

from sqlalchemy import func, insert
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

import models
from services.engagement.errors import DataUnavailableError, RecordNotFoundError
from services.engagement.lifecycle import assert_transition
from services.engagement.types import (
    ActivityCategory,
    ActivityEvent,
    ActivityEventType,
    Recommendation,
    RecommendationPriority,
    RecommendationStatus,
    Trigger,
    TriggerSeverity,
    TriggerType,
)

logger = logging.getLogger(__name__)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Normalize to an aware UTC datetime (SQLite hands back naive values)."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _event_to_domain(row: models.ClientActivityEvent) -> ActivityEvent:
    return ActivityEvent(
        id=row.id,
        client_id=row.client_id,
        timestamp=as_utc(row.timestamp),
        type=ActivityEventType(row.type),
        category=ActivityCategory(row.category or "general"),
        title=row.title,
        description=row.description or "",
        metadata=dict(row.event_metadata or {}),
    )


def _trigger_to_domain(row: models.EngagementTrigger) -> Trigger:
    return Trigger(
        id=row.id,
        client_id=row.client_id,
        type=TriggerType(row.type),
        severity=TriggerSeverity(row.severity),
        detected_at=as_utc(row.detected_at),
        reason=row.reason,
        recommended_action=row.recommended_action or "",
        is_resolved=bool(row.is_resolved),
        resolved_at=as_utc(row.resolved_at),
    )


def _recommendation_to_domain(row: models.EngagementRecommendation) -> Recommendation:
    return Recommendation(
        id=row.id,
        client_id=row.client_id,
        trigger_id=row.trigger_id,
        message=row.message,
        reason=row.reason,
        priority=RecommendationPriority(row.priority),
        status=RecommendationStatus(row.status),
        created_at=as_utc(row.created_at),
        sent_at=as_utc(row.sent_at),
        sent_via=row.sent_via,
        scheduled_for=as_utc(row.scheduled_for),
    )


class ActivityStore:
    """Read side of the per-client activity log."""

    def __init__(self, db: Session):
        self.db = db

    def read(self, client_id: str, since: Optional[datetime] = None) -> List[ActivityEvent]:
        """Events for a client, oldest first. Raises DataUnavailableError on read failure."""
        try:
            query = self.db.query(models.ClientActivityEvent).filter(
                models.ClientActivityEvent.client_id == client_id
            )
            if since is not None:
                query = query.filter(models.ClientActivityEvent.timestamp >= as_utc(since))
            rows = query.order_by(models.ClientActivityEvent.timestamp.asc()).all()
        except SQLAlchemyError as e:
            logger.error(f"Activity read failed for client {client_id}: {e}")
            raise DataUnavailableError("activity", client_id, e) from e
        return [_event_to_domain(r) for r in rows]

    def last_seen(self, client_id: str, before: Optional[datetime] = None) -> Optional[datetime]:
        """
        Timestamp of the client's latest real activity, over the whole log.

        "inactivity" markers are not activity. None means nothing was ever
        recorded for the client.
        """
        try:
            query = self.db.query(func.max(models.ClientActivityEvent.timestamp)).filter(
                models.ClientActivityEvent.client_id == client_id,
                models.ClientActivityEvent.type != ActivityEventType.INACTIVITY.value,
            )
            if before is not None:
                query = query.filter(models.ClientActivityEvent.timestamp <= as_utc(before))
            latest = query.scalar()
        except SQLAlchemyError as e:
            logger.error(f"Activity read failed for client {client_id}: {e}")
            raise DataUnavailableError("activity", client_id, e) from e
        return as_utc(latest)


class TriggerRepository:
    def __init__(self, db: Session):
        self.db = db

    def add(self, trigger: Trigger) -> Trigger:
        self.db.add(models.EngagementTrigger(
            id=trigger.id,
            client_id=trigger.client_id,
            type=trigger.type.value,
            severity=trigger.severity.value,
            reason=trigger.reason,
            recommended_action=trigger.recommended_action,
            is_resolved=trigger.is_resolved,
            resolved_at=as_utc(trigger.resolved_at),
            detected_at=as_utc(trigger.detected_at),
        ))
        self.db.flush()
        return trigger

    def get(self, trigger_id: str) -> Trigger:
        row = self.db.get(models.EngagementTrigger, trigger_id)
        if row is None:
            raise RecordNotFoundError("Trigger", trigger_id)
        return _trigger_to_domain(row)

    def list_for_client(self, client_id: str, include_resolved: bool = True) -> List[Trigger]:
        query = self.db.query(models.EngagementTrigger).filter(
            models.EngagementTrigger.client_id == client_id
        )
        if not include_resolved:
            query = query.filter(models.EngagementTrigger.is_resolved.is_(False))
        rows = query.order_by(models.EngagementTrigger.detected_at.desc()).all()
        return [_trigger_to_domain(r) for r in rows]

    def exists_since(self, client_id: str, trigger_type: TriggerType, since: datetime) -> bool:
        """Whether a trigger of this type was detected for the client at or after `since`."""
        count = (
            self.db.query(func.count(models.EngagementTrigger.id))
            .filter(
                models.EngagementTrigger.client_id == client_id,
                models.EngagementTrigger.type == trigger_type.value,
                models.EngagementTrigger.detected_at >= as_utc(since),
            )
            .scalar()
        )
        return bool(count)

    def resolve(self, trigger_id: str, at: datetime) -> Trigger:
        row = self.db.get(models.EngagementTrigger, trigger_id)
        if row is None:
            raise RecordNotFoundError("Trigger", trigger_id)
        if not row.is_resolved:
            row.is_resolved = True
            row.resolved_at = as_utc(at)
            self.db.flush()
        return _trigger_to_domain(row)


class RecommendationRepository:
    def __init__(self, db: Session):
        self.db = db

    def add(self, recommendation: Recommendation) -> Recommendation:
        self.db.add(models.EngagementRecommendation(
            id=recommendation.id,
            client_id=recommendation.client_id,
            trigger_id=recommendation.trigger_id,
            message=recommendation.message,
            reason=recommendation.reason,
            priority=recommendation.priority.value,
            status=recommendation.status.value,
            created_at=as_utc(recommendation.created_at),
            sent_at=as_utc(recommendation.sent_at),
            sent_via=recommendation.sent_via,
            scheduled_for=as_utc(recommendation.scheduled_for),
        ))
        self.db.flush()
        return recommendation

    def _row(self, recommendation_id: str) -> models.EngagementRecommendation:
        row = self.db.get(models.EngagementRecommendation, recommendation_id)
        if row is None:
            raise RecordNotFoundError("Recommendation", recommendation_id)
        return row

    def get(self, recommendation_id: str) -> Recommendation:
        return _recommendation_to_domain(self._row(recommendation_id))

    def get_for_update(self, recommendation_id: str) -> Recommendation:
        """
        Re-read the stored row, bypassing the session cache, and lock it until
        the transaction ends (a no-op on SQLite).
        """
        row = (
            self.db.query(models.EngagementRecommendation)
            .filter(models.EngagementRecommendation.id == recommendation_id)
            .populate_existing()
            .with_for_update()
            .first()
        )
        if row is None:
            raise RecordNotFoundError("Recommendation", recommendation_id)
        return _recommendation_to_domain(row)

    def list_for_client(self, client_id: str, status: Optional[RecommendationStatus] = None) -> List[Recommendation]:
        query = self.db.query(models.EngagementRecommendation).filter(
            models.EngagementRecommendation.client_id == client_id
        )
        if status is not None:
            query = query.filter(models.EngagementRecommendation.status == status.value)
        rows = query.order_by(models.EngagementRecommendation.created_at.desc()).all()
        return [_recommendation_to_domain(r) for r in rows]

    def open_trigger_ids(self, client_id: str) -> set:
        """Trigger ids that already have a pending or scheduled recommendation."""
        rows = (
            self.db.query(models.EngagementRecommendation.trigger_id)
            .filter(
                models.EngagementRecommendation.client_id == client_id,
                models.EngagementRecommendation.trigger_id.isnot(None),
                models.EngagementRecommendation.status.in_([
                    RecommendationStatus.PENDING.value,
                    RecommendationStatus.SCHEDULED.value,
                ]),
            )
            .all()
        )
        return {r[0] for r in rows}

    def sent_times_since(self, client_id: str, since: datetime) -> List[datetime]:
        """sent_at of the client's sent recommendations at or after `since`, oldest first."""
        rows = (
            self.db.query(models.EngagementRecommendation.sent_at)
            .filter(
                models.EngagementRecommendation.client_id == client_id,
                models.EngagementRecommendation.status == RecommendationStatus.SENT.value,
                models.EngagementRecommendation.sent_at >= as_utc(since),
            )
            .order_by(models.EngagementRecommendation.sent_at.asc())
            .all()
        )
        return [as_utc(r[0]) for r in rows]

    def due_scheduled(self, now: datetime) -> List[Recommendation]:
        rows = (
            self.db.query(models.EngagementRecommendation)
            .filter(
                models.EngagementRecommendation.status == RecommendationStatus.SCHEDULED.value,
                models.EngagementRecommendation.scheduled_for <= as_utc(now),
            )
            .order_by(models.EngagementRecommendation.scheduled_for.asc())
            .all()
        )
        return [_recommendation_to_domain(r) for r in rows]

    def update_status(self, recommendation_id: str, status: RecommendationStatus, **fields: Any) -> Recommendation:
        """
        Move a recommendation to `status` and stamp extra columns.

        The lifecycle guard runs against the stored status, so a terminal
        recommendation can never be reopened or sent twice.
        """
        row = self._row(recommendation_id)
        assert_transition(recommendation_id, RecommendationStatus(row.status), status)

        row.status = status.value
        if status == RecommendationStatus.SENT:
            row.sent_at = as_utc(fields.pop("sent_at"))
            row.sent_via = fields.pop("sent_via")
            row.scheduled_for = None
        elif status == RecommendationStatus.SCHEDULED:
            row.scheduled_for = as_utc(fields.pop("scheduled_for"))
        elif status == RecommendationStatus.PENDING:
            row.scheduled_for = None
        if fields:
            raise TypeError(f"Unexpected fields for status {status.value}: {sorted(fields)}")

        self.db.flush()
        return _recommendation_to_domain(row)

    def commit(self) -> None:
        """Make status changes visible to other sessions (daily cap counts read them)."""
        self.db.commit()

    def rollback(self) -> None:
        self.db.rollback()


class DispatchLeaseStore:
    """
    Per-client dispatch lease shared by every process on the database.

    Acquisition inserts the client's row and commits; the primary key lets
    exactly one holder win. A lease past expires_at belongs to a holder that
    died and is removed by the next acquirer.
    """

    def __init__(self, db: Session):
        self.db = db

    def try_acquire(self, client_id: str, token: str, now: datetime, ttl: timedelta) -> bool:
        try:
            self.db.query(models.DispatchLease).filter(
                models.DispatchLease.client_id == client_id,
                models.DispatchLease.expires_at <= as_utc(now),
            ).delete(synchronize_session=False)
            self.db.execute(insert(models.DispatchLease).values(
                client_id=client_id,
                token=token,
                acquired_at=as_utc(now),
                expires_at=as_utc(now + ttl),
            ))
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            return False
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"Dispatch lease acquisition failed for client {client_id}: {e}")
            raise DataUnavailableError("dispatch lease", client_id, e) from e
        return True

    def release(self, client_id: str, token: str) -> None:
        """Drop the lease if `token` still holds it, and commit."""
        try:
            self.db.query(models.DispatchLease).filter(
                models.DispatchLease.client_id == client_id,
                models.DispatchLease.token == token,
            ).delete(synchronize_session=False)
            self.db.commit()
        except SQLAlchemyError as e:
            # An unreleased lease expires on its own
            self.db.rollback()
            logger.error(f"Dispatch lease release failed for client {client_id}: {e}")
