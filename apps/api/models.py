from sqlalchemy import Column, Integer, Boolean, CheckConstraint, DateTime, ForeignKey, JSON, Text, String, Index
from sqlalchemy.sql import func
from core.database import Base
import uuid


def _uuid_str() -> str:
    return str(uuid.uuid4())


class ClientActivityEvent(Base):
    """
    Append-only behavioral event for a coached client.

    Written by upstream loggers (smart log, device sync, task scheduler).
    The engagement pipeline only reads these rows.
    """
    __tablename__ = "client_activity_event"

    id = Column(String(36), primary_key=True, default=_uuid_str)
    client_id = Column(String(64), nullable=False, index=True)
    timestamp = Column(DateTime(timezone=True), nullable=False)
    type = Column(Text, nullable=False)  # 'log', 'inactivity', 'missed_task', 'milestone', 'alert'
    category = Column(Text, nullable=False, default="general")  # 'nutrition', 'workout', 'sleep', 'hydration', 'mood', 'general'
    title = Column(Text, nullable=False)
    description = Column(Text, nullable=False, default="")
    # 'metadata' is reserved on declarative classes
    event_metadata = Column("metadata", JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    __table_args__ = (
        Index("ix_client_activity_event_client_ts", "client_id", "timestamp"),
    )


class EngagementTrigger(Base):
    """
    Detected condition warranting possible coach intervention.

    Never deleted - resolution flips is_resolved so the audit trail survives.
    """
    __tablename__ = "engagement_trigger"

    id = Column(String(36), primary_key=True, default=_uuid_str)
    client_id = Column(String(64), nullable=False, index=True)
    type = Column(Text, nullable=False)  # 'inactivity', 'missed_log', 'pattern_deviation', 'goal_at_risk', 'engagement_drop'
    severity = Column(Text, nullable=False)  # 'High', 'Medium', 'Low'
    reason = Column(Text, nullable=False)
    recommended_action = Column(Text, nullable=True)
    is_resolved = Column(Boolean, default=False, nullable=False)
    resolved_at = Column(DateTime(timezone=True), nullable=True)
    detected_at = Column(DateTime(timezone=True), nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    __table_args__ = (
        Index("ix_engagement_trigger_client_type_detected", "client_id", "type", "detected_at"),
    )


class EngagementRecommendation(Base):
    """
    Proposed coach message with a delivery lifecycle.

    pending -> sent | dismissed | scheduled; scheduled -> pending | dismissed.
    sent and dismissed are terminal.
    """
    __tablename__ = "engagement_recommendation"

    id = Column(String(36), primary_key=True, default=_uuid_str)
    client_id = Column(String(64), nullable=False, index=True)
    trigger_id = Column(String(36), ForeignKey("engagement_trigger.id"), nullable=True)  # Manual recommendations have no trigger
    message = Column(Text, nullable=False)
    reason = Column(Text, nullable=False)
    priority = Column(Text, nullable=False, default="medium")  # 'high', 'medium', 'low'
    status = Column(Text, nullable=False, default="pending")  # 'pending', 'sent', 'dismissed', 'scheduled'
    created_at = Column(DateTime(timezone=True), nullable=False)
    sent_at = Column(DateTime(timezone=True), nullable=True)
    sent_via = Column(Text, nullable=True)  # Comma-joined succeeded channels, e.g. "inApp,sms"
    scheduled_for = Column(DateTime(timezone=True), nullable=True)  # When a deferred send is re-evaluated

    __table_args__ = (
        CheckConstraint(
            "status IN ('pending', 'sent', 'dismissed', 'scheduled')",
            name="ck_engagement_recommendation_status",
        ),
        Index("ix_engagement_recommendation_client_status", "client_id", "status"),
    )


class NotificationPreference(Base):
    """Per-client delivery configuration (one row per client, upserted)."""
    __tablename__ = "notification_preference"

    client_id = Column(String(64), primary_key=True)
    sms_enabled = Column(Boolean, default=False, nullable=False)
    web_push_enabled = Column(Boolean, default=False, nullable=False)
    in_app_enabled = Column(Boolean, default=True, nullable=False)
    frequency = Column(Text, default="moderate", nullable=False)  # 'minimal', 'moderate', 'active', 'aggressive'
    daily_limit = Column(Integer, default=5, nullable=False)
    quiet_hours_enabled = Column(Boolean, default=False, nullable=False)
    quiet_hours_start = Column(String(5), default="22:00", nullable=False)  # "HH:MM", local time
    quiet_hours_end = Column(String(5), default="08:00", nullable=False)
    timezone = Column(Text, default="UTC", nullable=False)  # IANA timezone
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)


class InAppNotification(Base):
    """Notification stored for the client app (the in-app delivery channel)."""
    __tablename__ = "in_app_notification"

    id = Column(String(36), primary_key=True, default=_uuid_str)
    client_id = Column(String(64), nullable=False, index=True)
    title = Column(Text, nullable=False)
    message = Column(Text, nullable=False)
    type = Column(Text, nullable=False, default="message")  # 'reminder', 'alert', 'message', 'update'
    is_read = Column(Boolean, default=False, nullable=False)
    read_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False)


class DispatchLease(Base):
    """
    Cross-process lock on one client's dispatch decisions.

    A row exists while some process (API worker or Celery worker) is deciding
    and delivering for the client. The primary key makes acquisition
    first-writer-wins; expires_at lets a crashed holder's lease be taken over.
    """
    __tablename__ = "engagement_dispatch_lease"

    client_id = Column(String(64), primary_key=True)
    token = Column(String(36), nullable=False)
    acquired_at = Column(DateTime(timezone=True), nullable=False)
    expires_at = Column(DateTime(timezone=True), nullable=False)
