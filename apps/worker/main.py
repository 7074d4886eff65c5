"""
Celery worker entry point.

Run with ``celery -A main worker -B`` from this directory. Beat releases
scheduled recommendations; ``tasks.detect_client_triggers`` runs detection
for one client when something enqueues it (``.delay(client_id)``).
"""
import logging
import sys
from pathlib import Path

# The worker image mounts the API at /api; a checkout keeps it at ../api.
for candidate in (Path("/api"), Path(__file__).resolve().parents[1] / "api"):
    if (candidate / "tasks").is_dir():
        sys.path.insert(0, str(candidate))
        break

from core.logging import setup_logging  # noqa: E402
from tasks import celery_app  # noqa: E402

setup_logging()
logger = logging.getLogger(__name__)

celery_app.autodiscover_tasks(["tasks"])

ENGAGEMENT_TASKS = (
    "tasks.release_scheduled_recommendations",
    "tasks.detect_client_triggers",
)


@celery_app.task(name="worker.health_check")
def health_check():
    """Report whether the engagement tasks are registered on this worker."""
    missing = [name for name in ENGAGEMENT_TASKS if name not in celery_app.tasks]
    if missing:
        logger.warning("Worker is missing engagement tasks", extra={"extra_fields": {"missing": missing}})
    return {
        "status": "ok" if not missing else "degraded",
        "registered": [name for name in ENGAGEMENT_TASKS if name in celery_app.tasks],
        "missing": missing,
    }
