# Client Engagement Pipeline
#
# Activity -> trigger detection -> recommendation -> dispatch.
#
# Architecture:
# - Stores and repositories are the only code that touches ORM rows
# - Detector and generator are pure functions of their inputs
# - Dispatcher applies quiet hours and the daily cap before any channel call
# - Session coordinator keeps client-scoped async results from leaking
#   across client switches

from .types import (
    ActivityEvent,
    Channel,
    DispatchResult,
    DispatchStatus,
    NotificationPreference,
    Recommendation,
    RecommendationStatus,
    Trigger,
    TriggerSeverity,
    TriggerType,
)
from .errors import (
    DataUnavailableError,
    DeliveryFailedError,
    DispatchBusyError,
    EngagementError,
    InvalidTransitionError,
    PreferenceValidationError,
    RecordNotFoundError,
    TriggerResolvedError,
)
from .trigger_detector import TriggerDetector, DetectionResult, ActivityHistory, summarize_engagement
from .recommendation_generator import RecommendationGenerator, get_quick_actions
from .dispatcher import NotificationDispatcher, DispatchPolicy
from .session_coordinator import SessionCoordinator, OperationOutcome, OptimisticUpdate
from .service import EngagementService, engagement_service_scope

__all__ = [
    # Types
    'ActivityEvent',
    'Channel',
    'DispatchResult',
    'DispatchStatus',
    'NotificationPreference',
    'Recommendation',
    'RecommendationStatus',
    'Trigger',
    'TriggerSeverity',
    'TriggerType',

    # Errors
    'DataUnavailableError',
    'DeliveryFailedError',
    'DispatchBusyError',
    'EngagementError',
    'InvalidTransitionError',
    'PreferenceValidationError',
    'RecordNotFoundError',
    'TriggerResolvedError',

    # Pipeline
    'TriggerDetector',
    'DetectionResult',
    'ActivityHistory',
    'summarize_engagement',
    'RecommendationGenerator',
    'get_quick_actions',
    'NotificationDispatcher',
    'DispatchPolicy',
    'SessionCoordinator',
    'OperationOutcome',
    'OptimisticUpdate',
    'EngagementService',
    'engagement_service_scope',
]
