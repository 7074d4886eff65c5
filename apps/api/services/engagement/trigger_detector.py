"""
Trigger Detector

Scans a client's recent activity window and emits Triggers from a fixed set
of rule predicates:

- inactivity: nothing logged for a while during expected active hours
- missed_log: a nutrition/workout task was missed and never logged
- pattern_deviation: a category's logging departs from its trailing baseline
- goal_at_risk: a milestone-tracked value trends away from its target
- engagement_drop: overall logging fell sharply period over period

Predicates are independent. A predicate that raises is logged and counted as
failed; the remaining predicates still run.

Detection is a pure function of (window, now, config, history). The window
alone cannot tell a silent client from an unknown one, so callers that can
see the whole activity log pass an ActivityHistory; without one, an empty
window yields nothing. Deduplication against already persisted triggers
happens in the engagement service.
"""

import logging
import uuid
from collections import Counter, defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone, tzinfo
from typing import Callable, Dict, Iterator, List, Optional, Sequence, Tuple

from core.config import settings
from services.engagement.types import (
    ActivityCategory,
    ActivityEvent,
    ActivityEventType,
    EngagementTrends,
    Trigger,
    TriggerSeverity,
    TriggerType,
)

logger = logging.getLogger(__name__)

# Severity boundaries for inactivity (hours)
INACTIVITY_MEDIUM_HOURS = 6
INACTIVITY_HIGH_HOURS = 24
# Longer silences are reported in days
INACTIVITY_DAYS_AFTER_HOURS = 72

# Categories a client is expected to log every day
EXPECTED_LOG_CATEGORIES = (ActivityCategory.NUTRITION, ActivityCategory.WORKOUT)
MISSED_LOG_PERIOD = timedelta(hours=24)

PATTERN_MEDIUM_RATIO = 0.75
ENGAGEMENT_DROP_HIGH_RATIO = 0.2
ENGAGEMENT_DROP_MEDIUM_RATIO = 0.35
GOAL_MEDIUM_GROWTH = 0.10
GOAL_HIGH_GROWTH = 0.25


@dataclass(frozen=True)
class DetectionConfig:
    inactivity_threshold_hours: float = 4.0
    active_hours_start: int = 7
    active_hours_end: int = 22
    period_days: int = 7
    baseline_periods: int = 3
    min_baseline_logs: float = 2.0
    deviation_ratio: float = 0.5
    drop_fraction: float = 0.5
    min_previous_logs: int = 3

    @classmethod
    def from_settings(cls) -> "DetectionConfig":
        return cls(
            inactivity_threshold_hours=settings.ENGAGEMENT_INACTIVITY_THRESHOLD_HOURS,
            active_hours_start=settings.ENGAGEMENT_ACTIVE_HOURS_START,
            active_hours_end=settings.ENGAGEMENT_ACTIVE_HOURS_END,
            period_days=settings.ENGAGEMENT_PERIOD_DAYS,
            baseline_periods=settings.ENGAGEMENT_BASELINE_PERIODS,
            min_baseline_logs=settings.ENGAGEMENT_MIN_BASELINE_LOGS,
            deviation_ratio=settings.ENGAGEMENT_DEVIATION_RATIO,
            drop_fraction=settings.ENGAGEMENT_DROP_FRACTION,
            min_previous_logs=settings.ENGAGEMENT_MIN_PREVIOUS_LOGS,
        )

    @property
    def period(self) -> timedelta:
        return timedelta(days=self.period_days)

    @property
    def lookback(self) -> timedelta:
        """Window length the predicates need to see."""
        return self.period * (self.baseline_periods + 1)


@dataclass(frozen=True)
class ActivityHistory:
    """What the activity log knows beyond the window."""
    last_seen: Optional[datetime]  # None: the client never logged anything


@dataclass(frozen=True)
class Finding:
    """What a predicate found, before it becomes a Trigger."""
    type: TriggerType
    severity: TriggerSeverity
    reason: str
    recommended_action: str


@dataclass
class DetectionResult:
    client_id: str
    triggers: List[Trigger] = field(default_factory=list)
    failed_predicates: List[str] = field(default_factory=list)

    @property
    def failed_count(self) -> int:
        return len(self.failed_predicates)

    def __iter__(self) -> Iterator[Trigger]:
        return iter(self.triggers)

    def __len__(self) -> int:
        return len(self.triggers)


# =============================================================================
# Helpers
# =============================================================================


def _logs(events: Sequence[ActivityEvent]) -> List[ActivityEvent]:
    return [e for e in events if e.type == ActivityEventType.LOG]


def _in_range(events: Sequence[ActivityEvent], start: datetime, end: datetime) -> List[ActivityEvent]:
    """Events with start < timestamp <= end."""
    return [e for e in events if start < e.timestamp <= end]


def _within_active_hours(now: datetime, config: DetectionConfig, tz: tzinfo) -> bool:
    hour = now.astimezone(tz).hour
    return config.active_hours_start <= hour < config.active_hours_end


def _least_squares_slope(points: Sequence[Tuple[float, float]]) -> Optional[float]:
    n = len(points)
    if n < 2:
        return None
    mean_x = sum(x for x, _ in points) / n
    mean_y = sum(y for _, y in points) / n
    denominator = sum((x - mean_x) ** 2 for x, _ in points)
    if denominator == 0:
        return None
    return sum((x - mean_x) * (y - mean_y) for x, y in points) / denominator


def _silence(elapsed_hours: float) -> str:
    if elapsed_hours >= INACTIVITY_DAYS_AFTER_HOURS:
        return f"No activity for {int(elapsed_hours // 24)} days"
    return f"No activity for {int(elapsed_hours)} hours"


def _as_number(value) -> Optional[float]:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value)
        except ValueError:
            return None
    return None


# =============================================================================
# Predicates
# =============================================================================


def detect_inactivity(
    events: Sequence[ActivityEvent],
    now: datetime,
    config: DetectionConfig,
    tz: tzinfo,
    history: Optional[ActivityHistory] = None,
) -> Optional[Finding]:
    # Upstream "inactivity" markers record an absence, not activity.
    activity = [e for e in events if e.type != ActivityEventType.INACTIVITY and e.timestamp <= now]
    last_seen = max((e.timestamp for e in activity), default=None)
    if history is not None and history.last_seen is not None and history.last_seen <= now:
        if last_seen is None or history.last_seen > last_seen:
            last_seen = history.last_seen

    if last_seen is None:
        if history is None:
            return None
        if not _within_active_hours(now, config, tz):
            return None
        return Finding(
            type=TriggerType.INACTIVITY,
            severity=TriggerSeverity.HIGH,
            reason="No activity recorded yet",
            recommended_action="Check in with client to ensure they are doing well",
        )

    elapsed_hours = (now - last_seen).total_seconds() / 3600
    if elapsed_hours < config.inactivity_threshold_hours:
        return None
    if not _within_active_hours(now, config, tz):
        return None

    if elapsed_hours > INACTIVITY_HIGH_HOURS:
        severity = TriggerSeverity.HIGH
    elif elapsed_hours >= INACTIVITY_MEDIUM_HOURS:
        severity = TriggerSeverity.MEDIUM
    else:
        severity = TriggerSeverity.LOW

    return Finding(
        type=TriggerType.INACTIVITY,
        severity=severity,
        reason=_silence(elapsed_hours),
        recommended_action="Check in with client to ensure they are doing well",
    )


def detect_missed_log(
    events: Sequence[ActivityEvent],
    now: datetime,
    config: DetectionConfig,
    tz: tzinfo,
    history: Optional[ActivityHistory] = None,
) -> Optional[Finding]:
    recent = _in_range(events, now - MISSED_LOG_PERIOD, now)
    missed: Dict[ActivityCategory, List[ActivityEvent]] = {}

    for category in EXPECTED_LOG_CATEGORIES:
        tasks = [e for e in recent if e.type == ActivityEventType.MISSED_TASK and e.category == category]
        logged = any(e.type == ActivityEventType.LOG and e.category == category for e in recent)
        if tasks and not logged:
            missed[category] = tasks

    if not missed:
        return None

    reasons = [f"Missed {category.value} log: {tasks[-1].title}" for category, tasks in missed.items()]
    details = [tasks[-1].description or tasks[-1].title for tasks in missed.values()]
    return Finding(
        type=TriggerType.MISSED_LOG,
        severity=TriggerSeverity.HIGH if len(missed) > 1 else TriggerSeverity.MEDIUM,
        reason="; ".join(reasons),
        recommended_action=f"Send a gentle reminder about {', '.join(details)}",
    )


def detect_pattern_deviation(
    events: Sequence[ActivityEvent],
    now: datetime,
    config: DetectionConfig,
    tz: tzinfo,
    history: Optional[ActivityHistory] = None,
) -> Optional[Finding]:
    logs = _logs(events)
    if not logs:
        return None

    period = config.period
    current = Counter(e.category for e in _in_range(logs, now - period, now))
    baseline_totals: Counter = Counter()
    for k in range(1, config.baseline_periods + 1):
        end = now - period * k
        baseline_totals.update(e.category for e in _in_range(logs, end - period, end))

    worst: Optional[Tuple[float, ActivityCategory, int, float]] = None
    for category in ActivityCategory:
        baseline = baseline_totals[category] / config.baseline_periods
        if baseline < config.min_baseline_logs or baseline == 0:
            continue
        count = current[category]
        ratio = abs(count - baseline) / baseline
        if ratio > config.deviation_ratio and (worst is None or ratio > worst[0]):
            worst = (ratio, category, count, baseline)

    if worst is None:
        return None

    ratio, category, count, baseline = worst
    if count == 0:
        severity = TriggerSeverity.HIGH
    elif count < baseline and ratio >= PATTERN_MEDIUM_RATIO:
        severity = TriggerSeverity.MEDIUM
    else:
        severity = TriggerSeverity.LOW

    direction = "down" if count < baseline else "up"
    return Finding(
        type=TriggerType.PATTERN_DEVIATION,
        severity=severity,
        reason=(
            f"{category.value.title()} logs {direction} {int(round(ratio * 100))}% vs. usual "
            f"({count} in the last {config.period_days} days vs. {baseline:.1f} average)"
        ),
        recommended_action="Discuss schedule adjustments with client",
    )


def detect_goal_at_risk(
    events: Sequence[ActivityEvent],
    now: datetime,
    config: DetectionConfig,
    tz: tzinfo,
    history: Optional[ActivityHistory] = None,
) -> Optional[Finding]:
    series: Dict[str, List[Tuple[datetime, float, float]]] = defaultdict(list)
    for e in events:
        if e.type != ActivityEventType.MILESTONE or e.timestamp > now:
            continue
        value = _as_number(e.metadata.get("value"))
        target = _as_number(e.metadata.get("target"))
        if value is None or target is None:
            continue
        goal = str(e.metadata.get("goal") or e.title)
        series[goal].append((e.timestamp, value, target))

    worst: Optional[Tuple[float, str, float, float, float]] = None
    for goal, points in series.items():
        if len(points) < 2:
            continue
        points.sort(key=lambda p: p[0])
        origin = points[0][0]
        distances = [
            ((ts - origin).total_seconds() / 3600, abs(target - value))
            for ts, value, target in points
        ]
        slope = _least_squares_slope(distances)
        first, last = distances[0][1], distances[-1][1]
        if slope is None or slope <= 0 or last <= first:
            continue
        growth = (last - first) / first if first > 0 else float("inf")
        if worst is None or growth > worst[0]:
            worst = (growth, goal, points[0][1], points[-1][1], points[-1][2])

    if worst is None:
        return None

    growth, goal, first_value, last_value, target = worst
    if growth < GOAL_MEDIUM_GROWTH:
        severity = TriggerSeverity.LOW
    elif growth < GOAL_HIGH_GROWTH:
        severity = TriggerSeverity.MEDIUM
    else:
        severity = TriggerSeverity.HIGH

    return Finding(
        type=TriggerType.GOAL_AT_RISK,
        severity=severity,
        reason=f"{goal} moving away from target: {first_value:g} -> {last_value:g} (target {target:g})",
        recommended_action="Review goal progress with client and adjust the plan",
    )


def detect_engagement_drop(
    events: Sequence[ActivityEvent],
    now: datetime,
    config: DetectionConfig,
    tz: tzinfo,
    history: Optional[ActivityHistory] = None,
) -> Optional[Finding]:
    logs = _logs(events)
    period = config.period
    current = len(_in_range(logs, now - period, now))
    previous = len(_in_range(logs, now - 2 * period, now - period))

    if previous < config.min_previous_logs:
        return None
    if current >= config.drop_fraction * previous:
        return None

    ratio = current / previous
    if ratio < ENGAGEMENT_DROP_HIGH_RATIO:
        severity = TriggerSeverity.HIGH
    elif ratio < ENGAGEMENT_DROP_MEDIUM_RATIO:
        severity = TriggerSeverity.MEDIUM
    else:
        severity = TriggerSeverity.LOW

    return Finding(
        type=TriggerType.ENGAGEMENT_DROP,
        severity=severity,
        reason=f"Logging dropped from {previous} to {current} entries over the last {config.period_days} days",
        recommended_action="Reach out personally to re-engage the client",
    )


Predicate = Callable[
    [Sequence[ActivityEvent], datetime, DetectionConfig, tzinfo, Optional[ActivityHistory]],
    Optional[Finding],
]

PREDICATES: Tuple[Tuple[TriggerType, Predicate], ...] = (
    (TriggerType.INACTIVITY, detect_inactivity),
    (TriggerType.MISSED_LOG, detect_missed_log),
    (TriggerType.PATTERN_DEVIATION, detect_pattern_deviation),
    (TriggerType.GOAL_AT_RISK, detect_goal_at_risk),
    (TriggerType.ENGAGEMENT_DROP, detect_engagement_drop),
)


class TriggerDetector:
    """Runs every predicate over one client's activity window."""

    def __init__(
        self,
        config: Optional[DetectionConfig] = None,
        predicates: Sequence[Tuple[TriggerType, Predicate]] = PREDICATES,
        id_factory: Callable[[], str] = lambda: str(uuid.uuid4()),
    ):
        self.config = config or DetectionConfig.from_settings()
        self.predicates = tuple(predicates)
        self.id_factory = id_factory

    def iter_triggers(
        self,
        client_id: str,
        window: Sequence[ActivityEvent],
        now: datetime,
        tz: tzinfo = timezone.utc,
        failures: Optional[List[str]] = None,
        history: Optional[ActivityHistory] = None,
    ) -> Iterator[Trigger]:
        """
        Lazily evaluate predicates, yielding one Trigger per firing predicate.

        Names of predicates that raised are appended to `failures` when given.
        Calling again restarts the scan from the first predicate.
        """
        events = sorted(window, key=lambda e: e.timestamp)
        for trigger_type, predicate in self.predicates:
            try:
                finding = predicate(events, now, self.config, tz, history)
            except Exception as e:
                logger.error(
                    f"Trigger predicate {trigger_type.value} failed for client {client_id}: {e}",
                    exc_info=True,
                )
                if failures is not None:
                    failures.append(trigger_type.value)
                continue

            if finding is None:
                continue

            logger.info(
                f"Trigger detected: {finding.type.value} - {finding.severity.value} severity",
                extra={"extra_fields": {"client_id": client_id, "trigger_type": finding.type.value}},
            )
            yield Trigger(
                id=self.id_factory(),
                client_id=client_id,
                type=finding.type,
                severity=finding.severity,
                detected_at=now,
                reason=finding.reason,
                recommended_action=finding.recommended_action,
            )

    def detect(
        self,
        client_id: str,
        window: Sequence[ActivityEvent],
        now: datetime,
        tz: tzinfo = timezone.utc,
        history: Optional[ActivityHistory] = None,
    ) -> DetectionResult:
        result = DetectionResult(client_id=client_id)
        result.triggers = list(
            self.iter_triggers(
                client_id, window, now, tz=tz, failures=result.failed_predicates, history=history
            )
        )
        logger.info(
            f"Total triggers detected for client {client_id}: {len(result.triggers)}"
            f" ({result.failed_count} predicate(s) failed)"
        )
        return result


def summarize_engagement(window: Sequence[ActivityEvent]) -> EngagementTrends:
    """Logging volume, favourite category and a 0-100 engagement score."""
    logs = _logs(window)
    days = len({e.timestamp.date() for e in logs}) or 1

    counts = Counter(e.category.value for e in logs)
    top_category = counts.most_common(1)[0][0] if counts else "none"

    average = len(logs) / days
    return EngagementTrends(
        logging_frequency=len(logs),
        top_category=top_category,
        average_logs_per_day=round(average, 1),
        engagement_score=min(100, int(round(average * 20))),
    )
