"""
Tests for the Notification Dispatcher

Channel senders are recording doubles; recommendations live in the test
database because the dispatcher re-reads stored status and counts sends
for the daily cap.
"""

import pytest
import threading
import uuid
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, time, timedelta, timezone

import models
from core.database import SessionLocal
from core.events import EVENT_RECOMMENDATION_SENT, subscribe, unsubscribe
from services.engagement.channels import ChannelError, ChannelHandlers, InAppSender
from services.engagement.dispatcher import (
    REASON_ALL_FAILED,
    REASON_DAILY_LIMIT,
    REASON_NO_CHANNELS,
    REASON_QUIET_HOURS,
    DispatchPolicy,
    NotificationDispatcher,
    eligible_channels,
    format_sent_via,
)
from services.engagement.errors import DispatchBusyError, InvalidTransitionError
from services.engagement.stores import RecommendationRepository
from services.engagement.types import (
    Channel,
    DailyCapPolicy,
    DispatchStatus,
    NotificationPreference,
    Recommendation,
    RecommendationPriority,
    RecommendationStatus,
)

NOW = datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc)


def preference(**overrides) -> NotificationPreference:
    return NotificationPreference(client_id="client-1").merged(**overrides)


@pytest.fixture
def repository(db_session):
    return RecommendationRepository(db_session)


@pytest.fixture
def store_rec(repository):
    def _store(
        status=RecommendationStatus.PENDING,
        priority=RecommendationPriority.MEDIUM,
        sent_at=None,
        client_id="client-1",
    ) -> Recommendation:
        rec = Recommendation(
            id=str(uuid.uuid4()),
            client_id=client_id,
            message="Hey! Thinking of you - how's the week going so far?",
            reason="No activity for 8 hours",
            priority=priority,
            status=status,
            created_at=NOW - timedelta(hours=30),
            sent_at=sent_at,
            sent_via="inApp" if sent_at else None,
        )
        repository.add(rec)
        repository.commit()
        return rec

    return _store


def make_dispatcher(repository, handlers, **policy):
    return NotificationDispatcher(repository, handlers=handlers, policy=DispatchPolicy(**policy))


class TestEligibleChannels:
    def test_stable_order(self):
        pref = preference(sms=True, web_push=True, in_app=True)
        assert eligible_channels(pref) == [Channel.IN_APP, Channel.WEB_PUSH, Channel.SMS]

    def test_requested_narrows(self):
        pref = preference(sms=True, web_push=True)
        assert eligible_channels(pref, requested=[Channel.SMS]) == [Channel.SMS]

    def test_requested_cannot_enable(self):
        pref = preference(in_app=True)
        assert eligible_channels(pref, requested=[Channel.SMS]) == []

    def test_fallback_added(self):
        pref = preference(in_app=False, sms=True)
        assert eligible_channels(pref, fallback=Channel.IN_APP) == [Channel.IN_APP, Channel.SMS]

    def test_format_sent_via(self):
        assert format_sent_via([Channel.SMS, Channel.IN_APP]) == "inApp,sms"


class TestDelivery:
    def test_only_enabled_channels_called(self, repository, handlers, senders, store_rec):
        rec = store_rec()
        dispatcher = make_dispatcher(repository, handlers)

        result = dispatcher.dispatch(rec, preference(in_app=True, sms=True), NOW)

        assert result.status == DispatchStatus.SENT
        assert result.sent_via == "inApp,sms"
        assert len(senders[Channel.IN_APP].calls) == 1
        assert len(senders[Channel.SMS].calls) == 1
        assert senders[Channel.WEB_PUSH].calls == []
        assert senders[Channel.SMS].calls[0] == {
            "client_id": "client-1",
            "title": "Message from your coach",
            "body": rec.message,
        }

        stored = repository.get(rec.id)
        assert stored.status == RecommendationStatus.SENT
        assert stored.sent_at == NOW
        assert stored.sent_via == "inApp,sms"

    def test_requested_channels_narrow(self, repository, handlers, senders, store_rec):
        rec = store_rec()
        dispatcher = make_dispatcher(repository, handlers)

        result = dispatcher.dispatch(
            rec, preference(in_app=True, sms=True), NOW, requested_channels=[Channel.SMS]
        )

        assert result.sent_via == "sms"
        assert senders[Channel.IN_APP].calls == []

    def test_manual_send_adds_fallback(self, repository, handlers, senders, store_rec):
        rec = store_rec()
        dispatcher = make_dispatcher(repository, handlers)

        result = dispatcher.dispatch(rec, preference(in_app=False, web_push=True), NOW, manual=True)

        assert result.sent_via == "inApp,webPush"
        assert len(senders[Channel.IN_APP].calls) == 1

    def test_one_success_is_enough(self, repository, handlers, senders, store_rec):
        senders[Channel.IN_APP].fail = True
        senders[Channel.WEB_PUSH].fail = True
        rec = store_rec()
        dispatcher = make_dispatcher(repository, handlers)

        result = dispatcher.dispatch(rec, preference(in_app=True, web_push=True, sms=True), NOW)

        assert result.status == DispatchStatus.SENT
        assert result.sent_via == "sms"
        assert [o.channel for o in result.outcomes] == [Channel.IN_APP, Channel.WEB_PUSH, Channel.SMS]
        assert [o.success for o in result.outcomes] == [False, False, True]

    def test_all_fail_keeps_pending(self, repository, handlers, senders, store_rec):
        for sender in senders.values():
            sender.fail = True
        rec = store_rec()
        dispatcher = make_dispatcher(repository, handlers)

        result = dispatcher.dispatch(rec, preference(in_app=True, sms=True), NOW)

        assert result.status == DispatchStatus.FAILED
        assert result.reason == REASON_ALL_FAILED
        assert all(not o.success for o in result.outcomes)
        # One retry per channel
        assert [o.attempts for o in result.outcomes] == [2, 2]
        assert len(senders[Channel.SMS].calls) == 2
        assert repository.get(rec.id).status == RecommendationStatus.PENDING

    def test_non_retryable_failure_is_not_retried(self, repository, handlers, senders, store_rec):
        senders[Channel.IN_APP].fail = True
        senders[Channel.IN_APP].retryable = False
        rec = store_rec()
        dispatcher = make_dispatcher(repository, handlers)

        result = dispatcher.dispatch(rec, preference(), NOW)

        assert result.status == DispatchStatus.FAILED
        assert result.outcomes[0].attempts == 1
        assert result.outcomes[0].error == "inApp unavailable"

    def test_retry_recovers(self, repository, store_rec):
        class FlakySender:
            def __init__(self):
                self.calls = 0

            def send(self, client_id, title, body):
                self.calls += 1
                if self.calls == 1:
                    raise ChannelError("timeout")

        flaky = FlakySender()
        rec = store_rec()
        dispatcher = make_dispatcher(repository, ChannelHandlers(sms=flaky, web_push=flaky, in_app=flaky))

        result = dispatcher.dispatch(rec, preference(), NOW)

        assert result.status == DispatchStatus.SENT
        assert result.outcomes[0].attempts == 2

    def test_crashing_sender_counts_as_failure(self, repository, store_rec):
        class BrokenSender:
            def send(self, client_id, title, body):
                raise KeyError("client")

        broken = BrokenSender()
        rec = store_rec()
        dispatcher = make_dispatcher(repository, ChannelHandlers(sms=broken, web_push=broken, in_app=broken))

        result = dispatcher.dispatch(rec, preference(), NOW)

        assert result.status == DispatchStatus.FAILED
        assert result.outcomes[0].attempts == 1

    def test_no_eligible_channels(self, repository, handlers, senders, store_rec):
        rec = store_rec()
        dispatcher = make_dispatcher(repository, handlers)

        result = dispatcher.dispatch(rec, preference(in_app=False), NOW)

        assert result.status == DispatchStatus.FAILED
        assert result.reason == REASON_NO_CHANNELS
        assert all(s.calls == [] for s in senders.values())
        assert repository.get(rec.id).status == RecommendationStatus.PENDING

    def test_sent_event_emitted(self, repository, handlers, store_rec):
        received = []

        def on_sent(**payload):
            received.append(payload)

        subscribe(EVENT_RECOMMENDATION_SENT, on_sent)
        try:
            rec = store_rec()
            make_dispatcher(repository, handlers).dispatch(rec, preference(), NOW)
        finally:
            unsubscribe(EVENT_RECOMMENDATION_SENT, on_sent)

        assert received == [{"recommendation_id": rec.id, "client_id": "client-1", "sent_via": "inApp"}]


class TestQuietHours:
    def test_inside_quiet_hours_schedules(self, repository, handlers, senders, store_rec):
        rec = store_rec()
        pref = preference(quiet_hours_enabled=True, quiet_hours_start=time(22, 0), quiet_hours_end=time(8, 0))
        late = NOW.replace(hour=23)

        result = make_dispatcher(repository, handlers).dispatch(rec, pref, late)

        assert result.status == DispatchStatus.SCHEDULED
        assert result.reason == REASON_QUIET_HOURS
        assert result.deferred_until == datetime(2026, 3, 11, 8, 0, tzinfo=timezone.utc)
        assert all(s.calls == [] for s in senders.values())

        stored = repository.get(rec.id)
        assert stored.status == RecommendationStatus.SCHEDULED
        assert stored.scheduled_for == result.deferred_until

    def test_outside_quiet_hours_sends(self, repository, handlers, store_rec):
        rec = store_rec()
        pref = preference(quiet_hours_enabled=True)

        result = make_dispatcher(repository, handlers).dispatch(rec, pref, NOW)

        assert result.status == DispatchStatus.SENT


class TestDailyCap:
    def test_high_priority_overrides(self, repository, handlers, store_rec):
        store_rec(status=RecommendationStatus.SENT, sent_at=NOW - timedelta(hours=2))
        rec = store_rec(priority=RecommendationPriority.HIGH)

        result = make_dispatcher(repository, handlers).dispatch(rec, preference(daily_limit=1), NOW)

        assert result.status == DispatchStatus.SENT

    def test_medium_priority_is_scheduled(self, repository, handlers, senders, store_rec):
        first = store_rec(status=RecommendationStatus.SENT, sent_at=NOW - timedelta(hours=5))
        store_rec(status=RecommendationStatus.SENT, sent_at=NOW - timedelta(hours=2))
        rec = store_rec()

        result = make_dispatcher(repository, handlers).dispatch(rec, preference(daily_limit=2), NOW)

        assert result.status == DispatchStatus.SCHEDULED
        assert result.reason == REASON_DAILY_LIMIT
        assert result.deferred_until == first.sent_at + timedelta(hours=24)
        assert senders[Channel.IN_APP].calls == []

    def test_defer_policy_holds_high_priority(self, repository, handlers, store_rec):
        store_rec(status=RecommendationStatus.SENT, sent_at=NOW - timedelta(hours=2))
        rec = store_rec(priority=RecommendationPriority.HIGH)
        dispatcher = make_dispatcher(repository, handlers, daily_cap_policy=DailyCapPolicy.DEFER)

        result = dispatcher.dispatch(rec, preference(daily_limit=1), NOW)

        assert result.status == DispatchStatus.SCHEDULED
        assert result.deferred_until == NOW + timedelta(hours=22)

    def test_zero_limit(self, repository, handlers, store_rec):
        rec = store_rec()

        result = make_dispatcher(repository, handlers).dispatch(rec, preference(daily_limit=0), NOW)

        assert result.status == DispatchStatus.SCHEDULED
        assert result.deferred_until == NOW + timedelta(hours=24)

    def test_old_sends_do_not_count(self, repository, handlers, store_rec):
        store_rec(status=RecommendationStatus.SENT, sent_at=NOW - timedelta(hours=25))
        rec = store_rec()

        result = make_dispatcher(repository, handlers).dispatch(rec, preference(daily_limit=1), NOW)

        assert result.status == DispatchStatus.SENT

    def test_other_clients_do_not_count(self, repository, handlers, store_rec):
        store_rec(status=RecommendationStatus.SENT, sent_at=NOW - timedelta(hours=1), client_id="client-2")
        rec = store_rec()

        result = make_dispatcher(repository, handlers).dispatch(rec, preference(daily_limit=1), NOW)

        assert result.status == DispatchStatus.SENT


class TestStatusGuard:
    @pytest.mark.parametrize("status", [
        RecommendationStatus.SENT,
        RecommendationStatus.DISMISSED,
        RecommendationStatus.SCHEDULED,
    ])
    def test_only_pending_is_dispatched(self, repository, handlers, senders, store_rec, status):
        rec = store_rec(status=status, sent_at=NOW - timedelta(hours=1) if status == RecommendationStatus.SENT else None)

        with pytest.raises(InvalidTransitionError):
            make_dispatcher(repository, handlers).dispatch(rec, preference(), NOW)

        assert all(s.calls == [] for s in senders.values())

    def test_stale_copy_cannot_send_twice(self, repository, handlers, senders, store_rec):
        rec = store_rec()
        dispatcher = make_dispatcher(repository, handlers)
        dispatcher.dispatch(rec, preference(), NOW)

        # `rec` still says pending; the stored row says sent
        with pytest.raises(InvalidTransitionError):
            dispatcher.dispatch(rec, preference(), NOW)

        assert len(senders[Channel.IN_APP].calls) == 1


def store_lease(db_session, expires_in: timedelta, client_id="client-1") -> models.DispatchLease:
    wall = datetime.now(timezone.utc)
    lease = models.DispatchLease(
        client_id=client_id,
        token=str(uuid.uuid4()),
        acquired_at=wall - timedelta(minutes=5),
        expires_at=wall + expires_in,
    )
    db_session.add(lease)
    db_session.commit()
    return lease


def dispatch_in_own_session(rec, pref, sender, barrier):
    """Dispatch from a separate session, as another API or worker process would."""
    session = SessionLocal()
    try:
        dispatcher = NotificationDispatcher(
            RecommendationRepository(session),
            handlers=ChannelHandlers(sms=sender, web_push=sender, in_app=sender),
            policy=DispatchPolicy(),
        )
        barrier.wait()
        return dispatcher.dispatch(rec, pref, NOW)
    finally:
        session.close()


class TestDispatchLease:
    def test_lease_released_after_dispatch(self, db_session, repository, handlers, store_rec):
        make_dispatcher(repository, handlers).dispatch(store_rec(), preference(), NOW)

        assert db_session.query(models.DispatchLease).count() == 0

    def test_lease_released_when_dispatch_raises(self, db_session, repository, handlers, store_rec):
        rec = store_rec(status=RecommendationStatus.DISMISSED)

        with pytest.raises(InvalidTransitionError):
            make_dispatcher(repository, handlers).dispatch(rec, preference(), NOW)

        assert db_session.query(models.DispatchLease).count() == 0

    def test_held_lease_blocks_dispatch(self, db_session, repository, handlers, senders, store_rec):
        rec = store_rec()
        held = store_lease(db_session, expires_in=timedelta(minutes=1))

        with pytest.raises(DispatchBusyError) as exc:
            make_dispatcher(repository, handlers, lease_wait_s=0).dispatch(rec, preference(), NOW)

        assert exc.value.retryable
        assert senders[Channel.IN_APP].calls == []
        assert repository.get(rec.id).status == RecommendationStatus.PENDING
        # The other holder's lease is untouched
        db_session.expire_all()
        assert db_session.query(models.DispatchLease).one().token == held.token

    def test_expired_lease_is_taken_over(self, db_session, repository, handlers, senders, store_rec):
        rec = store_rec()
        store_lease(db_session, expires_in=timedelta(minutes=-1))

        result = make_dispatcher(repository, handlers, lease_wait_s=0).dispatch(rec, preference(), NOW)

        assert result.status == DispatchStatus.SENT
        assert len(senders[Channel.IN_APP].calls) == 1
        assert db_session.query(models.DispatchLease).count() == 0

    def test_lease_is_per_client(self, db_session, repository, handlers, store_rec):
        rec = store_rec()
        store_lease(db_session, expires_in=timedelta(minutes=1), client_id="client-2")

        result = make_dispatcher(repository, handlers, lease_wait_s=0).dispatch(rec, preference(), NOW)

        assert result.status == DispatchStatus.SENT

    def test_two_sessions_send_once(self, repository, store_rec, slow_sender):
        rec = store_rec()
        sender = slow_sender
        barrier = threading.Barrier(2)

        with ThreadPoolExecutor(max_workers=2) as pool:
            futures = [pool.submit(dispatch_in_own_session, rec, preference(), sender, barrier) for _ in range(2)]
        errors = [f.exception() for f in futures if f.exception() is not None]
        results = [f.result() for f in futures if f.exception() is None]

        assert len(sender.calls) == 1
        assert [r.status for r in results] == [DispatchStatus.SENT]
        assert len(errors) == 1 and isinstance(errors[0], InvalidTransitionError)
        repository.db.expire_all()
        assert repository.get(rec.id).status == RecommendationStatus.SENT

    def test_two_sessions_respect_daily_cap(self, repository, store_rec, slow_sender):
        first = store_rec()
        second = store_rec()
        sender = slow_sender
        barrier = threading.Barrier(2)
        pref = preference(daily_limit=1)

        with ThreadPoolExecutor(max_workers=2) as pool:
            futures = [pool.submit(dispatch_in_own_session, rec, pref, sender, barrier) for rec in (first, second)]
        results = [f.result() for f in futures]

        assert len(sender.calls) == 1
        assert sorted(r.status.value for r in results) == sorted(
            [DispatchStatus.SENT.value, DispatchStatus.SCHEDULED.value]
        )
        assert [r.reason for r in results if r.status == DispatchStatus.SCHEDULED] == [REASON_DAILY_LIMIT]


class TestInAppSender:
    def test_writes_inbox_row(self, db_session):
        InAppSender().send("client-1", "Message from your coach", "Keep it up!")

        rows = db_session.query(models.InAppNotification).filter_by(client_id="client-1").all()
        assert len(rows) == 1
        assert rows[0].message == "Keep it up!"
        assert rows[0].type == "coach_message"
        assert rows[0].is_read is False
