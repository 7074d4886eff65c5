"""
Celery app for the engagement pipeline.

Beat drives the release of scheduled recommendations; per-client trigger
detection is enqueued on demand. Both run on the worker.
"""
from celery import Celery
from core.config import settings
from celerybeat_schedule import beat_schedule

# Create Celery app instance
celery_app = Celery(
    "coach_engagement",
    broker=settings.CELERY_BROKER_URL,
    backend=settings.CELERY_RESULT_BACKEND,
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    task_time_limit=5 * 60,
    task_soft_time_limit=4 * 60,
    # Releases and detections are idempotent; redeliver if a worker dies mid-task.
    task_acks_late=True,
    worker_prefetch_multiplier=1,
    beat_schedule=beat_schedule,
)

# Import tasks to register them
from . import engagement_tasks  # noqa: E402

__all__ = ["celery_app"]
