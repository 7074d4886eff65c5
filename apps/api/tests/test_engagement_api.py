"""
Engagement API endpoint tests

Drives the router through FastAPI's TestClient with recording channel
senders in place of the real gateways.
"""

import pytest
from datetime import datetime, timedelta, timezone
from fastapi.testclient import TestClient

import models
from core.config import settings
from main import app
from routers.engagement import get_channel_handlers
from services.engagement.types import Channel

CLIENT = "client-1"


@pytest.fixture
def client(handlers):
    app.dependency_overrides[get_channel_handlers] = lambda: handlers
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()


@pytest.fixture
def missed_lunch(add_activity):
    add_activity(
        CLIENT,
        datetime.now(timezone.utc) - timedelta(hours=1),
        type="missed_task",
        category="nutrition",
        title="Task not completed: Log lunch",
        description="Expected by 1:00 PM",
    )


def first_recommendation(client):
    client.post(f"/v1/engagement/detect-triggers/{CLIENT}")
    response = client.post(f"/v1/engagement/generate-recommendations/{CLIENT}")
    assert response.status_code == 200
    return response.json()[0]


class TestActivityEndpoints:
    def test_feed_newest_first(self, client, add_activity):
        now = datetime.now(timezone.utc)
        add_activity(CLIENT, now - timedelta(hours=3), title="Breakfast", category="nutrition")
        add_activity(CLIENT, now - timedelta(hours=1), title="Lunch", category="nutrition")

        response = client.get(f"/v1/engagement/activity/{CLIENT}")

        assert response.status_code == 200
        assert [e["title"] for e in response.json()] == ["Lunch", "Breakfast"]

    def test_trends(self, client, add_activity):
        add_activity(CLIENT, datetime.now(timezone.utc) - timedelta(hours=1), category="workout")

        response = client.get(f"/v1/engagement/trends/{CLIENT}")

        assert response.status_code == 200
        assert response.json()["top_category"] == "workout"
        assert response.json()["logging_frequency"] == 1


class TestTriggerEndpoints:
    def test_detect_missed_log(self, client, missed_lunch):
        response = client.post(f"/v1/engagement/detect-triggers/{CLIENT}")

        assert response.status_code == 200
        data = response.json()
        assert data["client_id"] == CLIENT
        assert data["failed_count"] == 0
        assert [t["type"] for t in data["triggers"]] == ["missed_log"]
        assert data["triggers"][0]["severity"] == "Medium"

        listed = client.get(f"/v1/engagement/triggers/{CLIENT}").json()
        assert [t["id"] for t in listed] == [data["triggers"][0]["id"]]

    def test_detect_for_recently_active_client(self, client, add_activity):
        add_activity(CLIENT, datetime.now(timezone.utc) - timedelta(minutes=30), category="nutrition")

        response = client.post(f"/v1/engagement/detect-triggers/{CLIENT}")

        assert response.status_code == 200
        assert response.json()["triggers"] == []

    def test_resolve_then_generate_conflicts(self, client, missed_lunch):
        trigger = client.post(f"/v1/engagement/detect-triggers/{CLIENT}").json()["triggers"][0]

        resolved = client.post(f"/v1/engagement/triggers/{trigger['id']}/resolve")
        assert resolved.status_code == 200
        assert resolved.json()["is_resolved"] is True

        response = client.post(f"/v1/engagement/generate-recommendation/{trigger['id']}")
        assert response.status_code == 409

    def test_generate_for_unknown_trigger(self, client):
        response = client.post("/v1/engagement/generate-recommendation/missing")
        assert response.status_code == 404


class TestRecommendationEndpoints:
    def test_generate_send_dismiss(self, client, senders, missed_lunch):
        rec = first_recommendation(client)
        assert rec["status"] == "pending"
        assert rec["priority"] == "medium"

        sent = client.post(f"/v1/engagement/recommendations/{rec['id']}/send")
        assert sent.status_code == 200
        body = sent.json()
        assert body["status"] == "sent"
        assert body["sent_via"] == "inApp"
        assert body["recommendation"]["status"] == "sent"
        assert len(senders[Channel.IN_APP].calls) == 1

        dismissed = client.post(f"/v1/engagement/recommendations/{rec['id']}/dismiss")
        assert dismissed.status_code == 409

    def test_send_restricted_to_channels(self, client, senders, missed_lunch):
        client.put(f"/v1/engagement/notification-preferences/{CLIENT}", json={"sms": True})
        rec = first_recommendation(client)

        sent = client.post(
            f"/v1/engagement/recommendations/{rec['id']}/send",
            json={"channels": ["sms"]},
        )

        assert sent.status_code == 200
        # The manual fallback channel is always added
        assert sent.json()["sent_via"] == "inApp,sms"

    def test_all_channels_fail(self, client, senders, missed_lunch):
        senders[Channel.IN_APP].fail = True
        rec = first_recommendation(client)

        response = client.post(f"/v1/engagement/recommendations/{rec['id']}/send")

        assert response.status_code == 502
        detail = response.json()["detail"]
        assert detail["recommendation_id"] == rec["id"]
        assert detail["retryable"] is True
        assert detail["outcomes"][0]["channel"] == "inApp"

        pending = client.get(f"/v1/engagement/recommendations/{CLIENT}", params={"status": "pending"})
        assert [r["id"] for r in pending.json()] == [rec["id"]]

    def test_dismiss(self, client, missed_lunch):
        rec = first_recommendation(client)

        response = client.post(f"/v1/engagement/recommendations/{rec['id']}/dismiss")

        assert response.status_code == 200
        assert response.json()["status"] == "dismissed"

    def test_send_unknown(self, client):
        response = client.post("/v1/engagement/recommendations/missing/send")
        assert response.status_code == 404

    def test_send_while_another_dispatch_holds_the_client(self, client, senders, missed_lunch, db_session, monkeypatch):
        rec = first_recommendation(client)
        wall = datetime.now(timezone.utc)
        db_session.add(models.DispatchLease(
            client_id=CLIENT,
            token="other-worker",
            acquired_at=wall,
            expires_at=wall + timedelta(minutes=1),
        ))
        db_session.commit()
        monkeypatch.setattr(settings, "ENGAGEMENT_DISPATCH_LEASE_WAIT_S", 0)

        response = client.post(f"/v1/engagement/recommendations/{rec['id']}/send")

        assert response.status_code == 409
        assert senders[Channel.IN_APP].calls == []


class TestPreferenceEndpoints:
    def test_defaults(self, client):
        response = client.get(f"/v1/engagement/notification-preferences/{CLIENT}")

        assert response.status_code == 200
        data = response.json()
        assert data["in_app"] is True
        assert data["sms"] is False
        assert data["daily_limit"] == 5
        assert data["quiet_hours_start"] == "22:00"

    def test_partial_update(self, client):
        client.put(f"/v1/engagement/notification-preferences/{CLIENT}", json={"sms": True})
        response = client.put(
            f"/v1/engagement/notification-preferences/{CLIENT}",
            json={"quiet_hours_enabled": True, "quiet_hours_start": "21:30"},
        )

        assert response.status_code == 200
        data = response.json()
        assert data["sms"] is True
        assert data["quiet_hours_enabled"] is True
        assert data["quiet_hours_start"] == "21:30"

    @pytest.mark.parametrize("payload", [
        {"daily_limit": -1},
        {"quiet_hours_end": "25:00"},
        {"timezone": "Mars/Olympus"},
    ])
    def test_invalid_update(self, client, payload):
        response = client.put(f"/v1/engagement/notification-preferences/{CLIENT}", json=payload)
        assert response.status_code == 422

    def test_send_test_notification(self, client, senders):
        response = client.post(f"/v1/engagement/send-test-notification/{CLIENT}")

        assert response.status_code == 200
        assert response.json()["status"] == "sent"
        assert response.json()["recommendation_id"] is None
        assert len(senders[Channel.IN_APP].calls) == 1

    def test_send_test_notification_fails(self, client, senders):
        senders[Channel.IN_APP].fail = True

        response = client.post(f"/v1/engagement/send-test-notification/{CLIENT}")

        assert response.status_code == 502
        assert response.json()["detail"]["retryable"] is True


class TestQuickActionEndpoints:
    def test_catalog(self, client):
        response = client.get("/v1/engagement/quick-actions")

        assert response.status_code == 200
        assert [a["id"] for a in response.json()] == ["checkin", "meals", "training", "motivation"]

    def test_create(self, client):
        response = client.post(f"/v1/engagement/quick-actions/motivation/{CLIENT}")

        assert response.status_code == 200
        assert response.json()["status"] == "pending"
        assert response.json()["trigger_id"] is None

    def test_unknown(self, client):
        response = client.post(f"/v1/engagement/quick-actions/teleport/{CLIENT}")
        assert response.status_code == 404


class TestHealth:
    def test_ping(self, client):
        assert client.get("/ping").status_code == 200

    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "healthy"

    def test_detailed_reports_broker_down(self, client, monkeypatch):
        import redis

        class DownBroker:
            def ping(self):
                raise redis.ConnectionError("connection refused")

        monkeypatch.setattr(redis.Redis, "from_url", classmethod(lambda cls, url, **kwargs: DownBroker()))

        body = client.get("/health/detailed").json()

        assert body["status"] == "unhealthy"
        assert body["checks"]["database"]["status"] == "healthy"
        assert body["checks"]["broker"]["error"] == "connection refused"
        assert body["channels"] == {"inApp": True, "sms": False, "webPush": False}

    def test_detailed_all_healthy(self, client, monkeypatch):
        import redis

        class UpBroker:
            def ping(self):
                return True

        monkeypatch.setattr(redis.Redis, "from_url", classmethod(lambda cls, url, **kwargs: UpBroker()))

        body = client.get("/health/detailed").json()

        assert body["status"] == "healthy"
        assert body["checks"]["broker"]["status"] == "healthy"
