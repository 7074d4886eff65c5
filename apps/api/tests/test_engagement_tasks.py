"""
Tests for the engagement Celery tasks.

Tasks are run eagerly with .apply(), so no broker is needed. They use the
real channel senders: with no gateways configured only in-app delivery
works, which is also the default preference.
"""

import uuid
from datetime import datetime, timedelta, timezone

import models
from services.engagement.stores import RecommendationRepository
from services.engagement.types import Recommendation, RecommendationPriority, RecommendationStatus
from tasks.engagement_tasks import detect_client_triggers_task, release_scheduled_recommendations_task

CLIENT = "client-1"


def scheduled_recommendation(db_session, scheduled_for):
    repository = RecommendationRepository(db_session)
    rec = Recommendation(
        id=str(uuid.uuid4()),
        client_id=CLIENT,
        message="Just wanted to say you're doing amazing!",
        reason="Quick action: Send Motivation",
        priority=RecommendationPriority.MEDIUM,
        status=RecommendationStatus.SCHEDULED,
        created_at=scheduled_for - timedelta(hours=10),
        scheduled_for=scheduled_for,
    )
    repository.add(rec)
    repository.commit()
    return rec


class TestReleaseScheduledRecommendations:
    def test_due_recommendation_is_delivered_in_app(self, db_session):
        rec = scheduled_recommendation(db_session, datetime.now(timezone.utc) - timedelta(hours=1))

        result = release_scheduled_recommendations_task.apply().get()

        assert result["status"] == "ok"
        assert result["released"] == 1
        assert result["sent"] == 1

        db_session.expire_all()
        stored = db_session.get(models.EngagementRecommendation, rec.id)
        assert stored.status == "sent"
        assert stored.sent_via == "inApp"
        inbox = db_session.query(models.InAppNotification).filter_by(client_id=CLIENT).all()
        assert [n.message for n in inbox] == [rec.message]

    def test_nothing_due(self, db_session):
        scheduled_recommendation(db_session, datetime.now(timezone.utc) + timedelta(hours=3))

        result = release_scheduled_recommendations_task.apply().get()

        assert result["released"] == 0
        assert db_session.query(models.InAppNotification).count() == 0


class TestDetectClientTriggers:
    def test_detects_and_persists(self, db_session, add_activity):
        add_activity(
            CLIENT,
            datetime.now(timezone.utc) - timedelta(hours=1),
            type="missed_task",
            category="workout",
            title="Task not completed: Log workout",
        )

        result = detect_client_triggers_task.apply(args=[CLIENT]).get()

        assert result["status"] == "ok"
        assert result["failed_predicates"] == []
        assert len(result["triggers"]) == 1

        db_session.expire_all()
        stored = db_session.query(models.EngagementTrigger).filter_by(client_id=CLIENT).all()
        assert [t.type for t in stored] == ["missed_log"]
        assert stored[0].id == result["triggers"][0]
