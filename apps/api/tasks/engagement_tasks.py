"""
Engagement Tasks

- release_scheduled_recommendations: beat task, re-dispatches scheduled
  recommendations whose scheduled_for has passed
- detect_client_triggers: on-demand detection for one client
"""

from typing import Dict
from celery import Task
from services.engagement.errors import EngagementError
from services.engagement.service import engagement_service_scope
from services.engagement.types import DispatchStatus
from tasks import celery_app
import logging

logger = logging.getLogger(__name__)


@celery_app.task(name="tasks.release_scheduled_recommendations", bind=True)
def release_scheduled_recommendations_task(self: Task) -> Dict:
    """
    Move due scheduled recommendations back to pending and dispatch them.

    Quiet hours and the daily limit are re-checked with fresh preferences,
    so a recommendation may be scheduled again.
    """
    with engagement_service_scope() as service:
        results = service.release_due()

    summary = {status.value: 0 for status in DispatchStatus}
    for result in results:
        summary[result.status.value] += 1

    logger.info(
        f"Released scheduled recommendations: {summary}",
        extra={"extra_fields": {"task_id": self.request.id, **summary}},
    )
    return {"status": "ok", "released": len(results), **summary}


@celery_app.task(name="tasks.detect_client_triggers", bind=True, max_retries=2, default_retry_delay=60)
def detect_client_triggers_task(self: Task, client_id: str) -> Dict:
    """Run trigger detection for one client and persist new triggers."""
    try:
        with engagement_service_scope() as service:
            result = service.detect_triggers(client_id)
    except EngagementError as e:
        logger.warning(f"Trigger detection for client {client_id} failed: {e}")
        raise self.retry(exc=e)

    return {
        "status": "ok",
        "client_id": client_id,
        "triggers": [t.id for t in result.triggers],
        "failed_predicates": result.failed_predicates,
    }
