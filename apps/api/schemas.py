from pydantic import BaseModel, ConfigDict, Field
from datetime import datetime
from typing import Optional, List, Dict, Any

from services.engagement.preferences import format_time_of_day
from services.engagement.types import (
    ActivityCategory,
    ActivityEventType,
    Channel,
    DispatchStatus,
    NotificationPreference,
    RecommendationPriority,
    RecommendationStatus,
    ReminderFrequency,
    TriggerSeverity,
    TriggerType,
)


class ActivityEventResponse(BaseModel):
    """One entry of the client's activity feed"""
    id: str
    client_id: str
    timestamp: datetime
    type: ActivityEventType
    category: ActivityCategory
    title: str
    description: str = ""
    metadata: Dict[str, Any] = Field(default_factory=dict)

    model_config = ConfigDict(from_attributes=True)


class EngagementTrendsResponse(BaseModel):
    logging_frequency: int
    top_category: str
    average_logs_per_day: float
    engagement_score: int  # 0-100

    model_config = ConfigDict(from_attributes=True)


class TriggerResponse(BaseModel):
    id: str
    client_id: str
    type: TriggerType
    severity: TriggerSeverity
    detected_at: datetime
    reason: str
    recommended_action: str
    is_resolved: bool = False
    resolved_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class DetectionResponse(BaseModel):
    """Triggers persisted by one detection run"""
    client_id: str
    triggers: List[TriggerResponse]
    failed_predicates: List[str] = []
    failed_count: int = 0

    model_config = ConfigDict(from_attributes=True)


class RecommendationResponse(BaseModel):
    id: str
    client_id: str
    trigger_id: Optional[str] = None
    message: str
    reason: str
    priority: RecommendationPriority
    status: RecommendationStatus
    created_at: datetime
    sent_at: Optional[datetime] = None
    sent_via: Optional[str] = None  # Comma-joined channels, e.g. "inApp,webPush"
    scheduled_for: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class SendRecommendationRequest(BaseModel):
    """Restrict a send to these channels. Omit to use every enabled channel."""
    channels: Optional[List[Channel]] = None


class ChannelOutcomeResponse(BaseModel):
    channel: Channel
    success: bool
    error: Optional[str] = None
    attempts: int = 1

    model_config = ConfigDict(from_attributes=True)


class DispatchResponse(BaseModel):
    recommendation_id: Optional[str] = None
    status: DispatchStatus
    outcomes: List[ChannelOutcomeResponse] = []
    sent_via: Optional[str] = None
    deferred_until: Optional[datetime] = None
    reason: Optional[str] = None
    recommendation: Optional[RecommendationResponse] = None

    model_config = ConfigDict(from_attributes=True)


class NotificationPreferenceResponse(BaseModel):
    client_id: str
    sms: bool
    web_push: bool
    in_app: bool
    frequency: ReminderFrequency
    daily_limit: int
    quiet_hours_enabled: bool
    quiet_hours_start: str  # "HH:MM"
    quiet_hours_end: str  # "HH:MM"
    timezone: str

    @classmethod
    def from_domain(cls, preference: NotificationPreference) -> "NotificationPreferenceResponse":
        return cls(
            client_id=preference.client_id,
            sms=preference.sms,
            web_push=preference.web_push,
            in_app=preference.in_app,
            frequency=preference.frequency,
            daily_limit=preference.daily_limit,
            quiet_hours_enabled=preference.quiet_hours_enabled,
            quiet_hours_start=format_time_of_day(preference.quiet_hours_start),
            quiet_hours_end=format_time_of_day(preference.quiet_hours_end),
            timezone=preference.timezone,
        )


class NotificationPreferenceUpdate(BaseModel):
    """Partial update - omitted fields keep their stored value"""
    sms: Optional[bool] = None
    web_push: Optional[bool] = None
    in_app: Optional[bool] = None
    frequency: Optional[ReminderFrequency] = None
    daily_limit: Optional[int] = None
    quiet_hours_enabled: Optional[bool] = None
    quiet_hours_start: Optional[str] = None
    quiet_hours_end: Optional[str] = None
    timezone: Optional[str] = None


class QuickActionResponse(BaseModel):
    id: str
    label: str
    icon: str
    template: str
    category: str  # 'checkin', 'meals', 'training', 'motivation'

    model_config = ConfigDict(from_attributes=True)
