"""
Celery beat schedule for the engagement pipeline.

Scheduled recommendations (quiet hours or the daily limit) sit in the
``scheduled`` status until their ``scheduled_for`` time; the release task
picks up the due ones and dispatches them again.
"""

from celery.schedules import crontab

RELEASE_INTERVAL_MINUTES = 15

beat_schedule = {
    'release-scheduled-recommendations': {
        'task': 'tasks.release_scheduled_recommendations',
        'schedule': crontab(minute=f'*/{RELEASE_INTERVAL_MINUTES}'),
        # A run that waited longer than one interval is superseded by the next.
        'options': {'expires': RELEASE_INTERVAL_MINUTES * 60},
    },
}
