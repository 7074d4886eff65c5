"""
Client Engagement API Router

Coach-facing endpoints for the engagement pipeline:
- activity feed and engagement trends
- trigger detection / listing / resolution
- recommendation generation, sending and dismissal
- notification preferences and test notifications
- quick actions (canned coach messages)

Endpoints are sync: dispatch fans channel attempts out to threads and
blocks until all of them finish.
"""

import logging
from contextlib import contextmanager
from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from core.database import get_db
from core.exceptions import (
    ConflictError,
    NotFoundError,
    ServiceUnavailableError,
    UpstreamDeliveryError,
    ValidationError,
)
from schemas import (
    ActivityEventResponse,
    DetectionResponse,
    DispatchResponse,
    EngagementTrendsResponse,
    NotificationPreferenceResponse,
    NotificationPreferenceUpdate,
    QuickActionResponse,
    RecommendationResponse,
    SendRecommendationRequest,
    TriggerResponse,
)
from services.engagement.channels import ChannelHandlers, default_channel_handlers
from services.engagement.errors import (
    DataUnavailableError,
    DeliveryFailedError,
    DispatchBusyError,
    InvalidTransitionError,
    PreferenceValidationError,
    RecordNotFoundError,
    TriggerResolvedError,
)
from services.engagement.recommendation_generator import get_quick_actions
from services.engagement.service import EngagementService
from services.engagement.types import RecommendationStatus

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1/engagement", tags=["Engagement"])


def get_channel_handlers() -> ChannelHandlers:
    return default_channel_handlers()


def get_engagement_service(
    db: Session = Depends(get_db),
    handlers: ChannelHandlers = Depends(get_channel_handlers),
) -> EngagementService:
    return EngagementService(db, handlers=handlers)


@contextmanager
def engagement_errors():
    """Translate engagement pipeline errors into API errors."""
    try:
        yield
    except RecordNotFoundError as e:
        raise NotFoundError(e.resource, e.identifier) from e
    except PreferenceValidationError as e:
        raise ValidationError(str(e), field=e.field) from e
    except (InvalidTransitionError, TriggerResolvedError, DispatchBusyError) as e:
        raise ConflictError(str(e)) from e
    except DataUnavailableError as e:
        raise ServiceUnavailableError(str(e)) from e
    except DeliveryFailedError as e:
        raise UpstreamDeliveryError({
            "message": e.reason,
            "recommendation_id": e.recommendation_id,
            "retryable": e.retryable,
            "outcomes": [o.to_dict() for o in e.outcomes],
        }) from e


# =============================================================================
# Activity
# =============================================================================


@router.get("/activity/{client_id}", response_model=List[ActivityEventResponse])
def get_activity_feed(
    client_id: str,
    days: Optional[int] = Query(None, ge=1, le=365),
    service: EngagementService = Depends(get_engagement_service),
):
    """Client activity feed, newest first."""
    with engagement_errors():
        events = service.load_activity(client_id, days=days)
    return list(reversed(events))


@router.get("/trends/{client_id}", response_model=EngagementTrendsResponse)
def get_engagement_trends(
    client_id: str,
    days: Optional[int] = Query(None, ge=1, le=365),
    service: EngagementService = Depends(get_engagement_service),
):
    with engagement_errors():
        return service.trends(client_id, days=days)


# =============================================================================
# Triggers
# =============================================================================


@router.get("/triggers/{client_id}", response_model=List[TriggerResponse])
def list_triggers(
    client_id: str,
    include_resolved: bool = Query(True),
    service: EngagementService = Depends(get_engagement_service),
):
    return service.list_triggers(client_id, include_resolved=include_resolved)


@router.post("/detect-triggers/{client_id}", response_model=DetectionResponse)
def detect_triggers(
    client_id: str,
    service: EngagementService = Depends(get_engagement_service),
):
    """Scan the client's recent activity and persist any new triggers."""
    with engagement_errors():
        result = service.detect_triggers(client_id)
    return DetectionResponse(
        client_id=result.client_id,
        triggers=[TriggerResponse.model_validate(t) for t in result.triggers],
        failed_predicates=result.failed_predicates,
        failed_count=result.failed_count,
    )


@router.post("/triggers/{trigger_id}/resolve", response_model=TriggerResponse)
def resolve_trigger(
    trigger_id: str,
    service: EngagementService = Depends(get_engagement_service),
):
    with engagement_errors():
        return service.resolve_trigger(trigger_id)


# =============================================================================
# Recommendations
# =============================================================================


@router.post("/generate-recommendation/{trigger_id}", response_model=RecommendationResponse)
def generate_recommendation(
    trigger_id: str,
    service: EngagementService = Depends(get_engagement_service),
):
    with engagement_errors():
        return service.generate_recommendation(trigger_id)


@router.post("/generate-recommendations/{client_id}", response_model=List[RecommendationResponse])
def generate_recommendations(
    client_id: str,
    service: EngagementService = Depends(get_engagement_service),
):
    """One recommendation per unresolved trigger that does not have an open one yet."""
    with engagement_errors():
        return service.generate_recommendations(client_id)


@router.get("/recommendations/{client_id}", response_model=List[RecommendationResponse])
def list_recommendations(
    client_id: str,
    status: Optional[RecommendationStatus] = Query(None),
    service: EngagementService = Depends(get_engagement_service),
):
    return service.list_recommendations(client_id, status=status)


@router.post("/recommendations/{recommendation_id}/send", response_model=DispatchResponse)
def send_recommendation(
    recommendation_id: str,
    request: Optional[SendRecommendationRequest] = None,
    service: EngagementService = Depends(get_engagement_service),
):
    """
    Send an approved recommendation.

    Returns status "sent" or "scheduled" (quiet hours / daily limit).
    502 when every channel failed; the recommendation stays pending.
    """
    channels = request.channels if request else None
    with engagement_errors():
        result = service.send_recommendation(recommendation_id, channels=channels)
        recommendation = service.get_recommendation(recommendation_id)

    return DispatchResponse(
        **result.to_dict(),
        recommendation=RecommendationResponse.model_validate(recommendation),
    )


@router.post("/recommendations/{recommendation_id}/dismiss", response_model=RecommendationResponse)
def dismiss_recommendation(
    recommendation_id: str,
    service: EngagementService = Depends(get_engagement_service),
):
    with engagement_errors():
        return service.dismiss_recommendation(recommendation_id)


# =============================================================================
# Notification preferences
# =============================================================================


@router.get("/notification-preferences/{client_id}", response_model=NotificationPreferenceResponse)
def get_notification_preferences(
    client_id: str,
    service: EngagementService = Depends(get_engagement_service),
):
    with engagement_errors():
        preference = service.get_preferences(client_id)
    return NotificationPreferenceResponse.from_domain(preference)


@router.put("/notification-preferences/{client_id}", response_model=NotificationPreferenceResponse)
def update_notification_preferences(
    client_id: str,
    request: NotificationPreferenceUpdate,
    service: EngagementService = Depends(get_engagement_service),
):
    """Partial upsert: fields left out keep their stored value."""
    changes = request.model_dump(exclude_none=True)
    with engagement_errors():
        preference = service.update_preferences(client_id, changes)
    return NotificationPreferenceResponse.from_domain(preference)


@router.post("/send-test-notification/{client_id}", response_model=DispatchResponse)
def send_test_notification(
    client_id: str,
    service: EngagementService = Depends(get_engagement_service),
):
    with engagement_errors():
        result = service.send_test_notification(client_id)
    return DispatchResponse(**result.to_dict())


# =============================================================================
# Quick actions
# =============================================================================


@router.get("/quick-actions", response_model=List[QuickActionResponse])
def list_quick_actions():
    return get_quick_actions()


@router.post("/quick-actions/{action_id}/{client_id}", response_model=RecommendationResponse)
def create_quick_action_recommendation(
    action_id: str,
    client_id: str,
    service: EngagementService = Depends(get_engagement_service),
):
    """Turn a quick action template into a pending recommendation for the client."""
    with engagement_errors():
        return service.create_quick_action_recommendation(action_id, client_id)
