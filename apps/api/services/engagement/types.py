"""
Engagement domain types.

Plain dataclasses passed between the stores, the detector, the generator and
the dispatcher. ORM rows never leave services.engagement.stores.
"""

from dataclasses import dataclass, field, replace
from datetime import datetime, time
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple


class ActivityEventType(str, Enum):
    LOG = "log"
    INACTIVITY = "inactivity"
    MISSED_TASK = "missed_task"
    MILESTONE = "milestone"
    ALERT = "alert"


class ActivityCategory(str, Enum):
    NUTRITION = "nutrition"
    WORKOUT = "workout"
    SLEEP = "sleep"
    HYDRATION = "hydration"
    MOOD = "mood"
    GENERAL = "general"


class TriggerType(str, Enum):
    INACTIVITY = "inactivity"
    MISSED_LOG = "missed_log"
    PATTERN_DEVIATION = "pattern_deviation"
    GOAL_AT_RISK = "goal_at_risk"
    ENGAGEMENT_DROP = "engagement_drop"


class TriggerSeverity(str, Enum):
    LOW = "Low"
    MEDIUM = "Medium"
    HIGH = "High"


class RecommendationPriority(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class RecommendationStatus(str, Enum):
    PENDING = "pending"
    SENT = "sent"
    DISMISSED = "dismissed"
    SCHEDULED = "scheduled"


class ReminderFrequency(str, Enum):
    MINIMAL = "minimal"
    MODERATE = "moderate"
    ACTIVE = "active"
    AGGRESSIVE = "aggressive"


class Channel(str, Enum):
    """Closed set of delivery media. Each member has exactly one handler."""
    SMS = "sms"
    WEB_PUSH = "webPush"
    IN_APP = "inApp"


# Stable order used for eligibility and sent_via rendering
CHANNEL_ORDER: Tuple[Channel, ...] = (Channel.IN_APP, Channel.WEB_PUSH, Channel.SMS)


class DispatchStatus(str, Enum):
    SENT = "sent"
    SCHEDULED = "scheduled"
    FAILED = "failed"


class DailyCapPolicy(str, Enum):
    HIGH_PRIORITY_OVERRIDE = "high_priority_override"
    DEFER = "defer"


@dataclass(frozen=True)
class ActivityEvent:
    id: str
    client_id: str
    timestamp: datetime
    type: ActivityEventType
    category: ActivityCategory
    title: str
    description: str = ""
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class Trigger:
    id: str
    client_id: str
    type: TriggerType
    severity: TriggerSeverity
    detected_at: datetime
    reason: str
    recommended_action: str
    is_resolved: bool = False
    resolved_at: Optional[datetime] = None


@dataclass
class Recommendation:
    id: str
    client_id: str
    message: str
    reason: str
    priority: RecommendationPriority
    status: RecommendationStatus
    created_at: datetime
    trigger_id: Optional[str] = None
    sent_at: Optional[datetime] = None
    sent_via: Optional[str] = None
    scheduled_for: Optional[datetime] = None

    @property
    def is_open(self) -> bool:
        return self.status in (RecommendationStatus.PENDING, RecommendationStatus.SCHEDULED)


@dataclass(frozen=True)
class NotificationPreference:
    client_id: str
    sms: bool = False
    web_push: bool = False
    in_app: bool = True
    frequency: ReminderFrequency = ReminderFrequency.MODERATE
    daily_limit: int = 5
    quiet_hours_enabled: bool = False
    quiet_hours_start: time = time(22, 0)
    quiet_hours_end: time = time(8, 0)
    timezone: str = "UTC"

    def enabled_channels(self) -> List[Channel]:
        flags = {
            Channel.IN_APP: self.in_app,
            Channel.WEB_PUSH: self.web_push,
            Channel.SMS: self.sms,
        }
        return [c for c in CHANNEL_ORDER if flags[c]]

    def merged(self, **changes: Any) -> "NotificationPreference":
        return replace(self, **changes)


@dataclass(frozen=True)
class ChannelResult:
    """Outcome of delivering one notification over one channel."""
    channel: Channel
    success: bool
    error: Optional[str] = None
    attempts: int = 1

    def to_dict(self) -> Dict[str, Any]:
        return {
            "channel": self.channel.value,
            "success": self.success,
            "error": self.error,
            "attempts": self.attempts,
        }


@dataclass
class DispatchResult:
    """Aggregate of one dispatch attempt for a recommendation."""
    recommendation_id: Optional[str]
    status: DispatchStatus
    outcomes: List[ChannelResult] = field(default_factory=list)
    sent_via: Optional[str] = None
    deferred_until: Optional[datetime] = None
    reason: Optional[str] = None

    @property
    def succeeded_channels(self) -> List[Channel]:
        return [o.channel for o in self.outcomes if o.success]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "recommendation_id": self.recommendation_id,
            "status": self.status.value,
            "outcomes": [o.to_dict() for o in self.outcomes],
            "sent_via": self.sent_via,
            "deferred_until": self.deferred_until.isoformat() if self.deferred_until else None,
            "reason": self.reason,
        }


@dataclass(frozen=True)
class QuickAction:
    id: str
    label: str
    icon: str
    template: str
    category: str  # 'checkin', 'meals', 'training', 'motivation'


@dataclass(frozen=True)
class EngagementTrends:
    logging_frequency: int
    top_category: str
    average_logs_per_day: float
    engagement_score: int
