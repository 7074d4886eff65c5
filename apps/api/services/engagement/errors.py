"""
Engagement pipeline errors.

Services raise these; routers translate them into core.exceptions API errors.
Stale async results are never errors - the session coordinator drops them.
"""

from typing import List, Optional

from services.engagement.types import ChannelResult


class EngagementError(Exception):
    """Base class for engagement pipeline failures."""


class DataUnavailableError(EngagementError):
    """Activity or preference data could not be read for a client."""

    def __init__(self, source: str, client_id: str, cause: Optional[BaseException] = None):
        self.source = source
        self.client_id = client_id
        self.cause = cause
        super().__init__(f"{source} unavailable for client {client_id}")


class RecordNotFoundError(EngagementError):
    def __init__(self, resource: str, identifier: str):
        self.resource = resource
        self.identifier = identifier
        super().__init__(f"{resource} not found: {identifier}")


class InvalidTransitionError(EngagementError):
    """A status change out of a terminal state, or otherwise not allowed."""

    def __init__(self, recommendation_id: str, current: str, target: str):
        self.recommendation_id = recommendation_id
        self.current = current
        self.target = target
        super().__init__(
            f"Recommendation {recommendation_id} cannot move from '{current}' to '{target}'"
        )


class PreferenceValidationError(EngagementError):
    def __init__(self, field: str, message: str):
        self.field = field
        super().__init__(message)


class DeliveryFailedError(EngagementError):
    """No channel delivered. The recommendation stays pending and may be retried."""

    retryable = True

    def __init__(self, recommendation_id: Optional[str], outcomes: List[ChannelResult], reason: Optional[str] = None):
        self.recommendation_id = recommendation_id
        self.outcomes = outcomes
        self.reason = reason or "All delivery channels failed"
        super().__init__(self.reason)


class TriggerResolvedError(EngagementError):
    """Recommendations are only generated for unresolved triggers."""

    def __init__(self, trigger_id: str):
        self.trigger_id = trigger_id
        super().__init__(f"Trigger {trigger_id} is already resolved")


class DispatchBusyError(EngagementError):
    """Another process held the client's dispatch lease for too long. Safe to retry."""

    retryable = True

    def __init__(self, client_id: str):
        self.client_id = client_id
        super().__init__(f"Another dispatch for client {client_id} is in progress")
