"""
Recommendation status machine.

    pending   --dispatch success-->  sent       (terminal)
    pending   --dismiss---------->   dismissed  (terminal)
    pending   --quiet hours/cap-->   scheduled
    scheduled --window over------>   pending    (re-evaluated)
    scheduled --dismiss---------->   dismissed

A recommendation reaches `sent` at most once. Re-sending means a new
recommendation.
"""

import logging
from typing import Dict, FrozenSet

from core.config import settings
from services.engagement.errors import InvalidTransitionError
from services.engagement.types import RecommendationStatus

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS: Dict[RecommendationStatus, FrozenSet[RecommendationStatus]] = {
    RecommendationStatus.PENDING: frozenset({
        RecommendationStatus.SENT,
        RecommendationStatus.DISMISSED,
        RecommendationStatus.SCHEDULED,
    }),
    RecommendationStatus.SCHEDULED: frozenset({
        RecommendationStatus.PENDING,
        RecommendationStatus.DISMISSED,
    }),
    RecommendationStatus.SENT: frozenset(),
    RecommendationStatus.DISMISSED: frozenset(),
}

TERMINAL_STATUSES = frozenset(s for s, targets in ALLOWED_TRANSITIONS.items() if not targets)


def can_transition(current: RecommendationStatus, target: RecommendationStatus) -> bool:
    return target in ALLOWED_TRANSITIONS[current]


def assert_transition(recommendation_id: str, current: RecommendationStatus, target: RecommendationStatus) -> None:
    """Raise InvalidTransitionError unless current -> target is allowed."""
    if can_transition(current, target):
        return
    logger.error(
        f"Rejected recommendation transition {current.value} -> {target.value}",
        extra={
            "extra_fields": {
                "recommendation_id": recommendation_id,
                "current": current.value,
                "target": target.value,
                "environment": settings.ENVIRONMENT,
            }
        },
    )
    raise InvalidTransitionError(recommendation_id, current.value, target.value)
