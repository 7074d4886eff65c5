"""
Notification Dispatcher

Delivers an approved (pending) recommendation:

0. refuse anything that is not pending
1. eligible channels = enabled by preference, narrowed to the requested ones
   (a manual send also gets the fallback channel)
2. inside quiet hours -> scheduled until the window ends, nothing sent
3. daily cap reached -> scheduled (or force-sent for high priority under
   the high_priority_override policy)
4. attempt every eligible channel concurrently with bounded retry
5. sent if at least one channel succeeded, otherwise failed (stays pending)

Decisions for one client are serialized through a database lease, so two
sends of the same recommendation (or two sends that would both slip under
the daily cap) cannot overlap, even from different processes.
"""

import logging
import time
import uuid
from concurrent.futures import ThreadPoolExecutor
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Iterable, Iterator, List, Optional

from core.config import settings
from core.events import EVENT_RECOMMENDATION_SCHEDULED, EVENT_RECOMMENDATION_SENT, emit
from core.logging import engagement_context
from services.engagement.channels import ChannelError, ChannelHandlers, default_channel_handlers
from services.engagement.errors import DispatchBusyError
from services.engagement.lifecycle import assert_transition
from services.engagement.preferences import is_within_quiet_hours, quiet_hours_end_after
from services.engagement.stores import DispatchLeaseStore, RecommendationRepository
from services.engagement.types import (
    CHANNEL_ORDER,
    Channel,
    ChannelResult,
    DailyCapPolicy,
    DispatchResult,
    DispatchStatus,
    NotificationPreference,
    Recommendation,
    RecommendationPriority,
    RecommendationStatus,
)

logger = logging.getLogger(__name__)

DAILY_CAP_WINDOW = timedelta(hours=24)

REASON_NO_CHANNELS = "no eligible channels"
REASON_QUIET_HOURS = "quiet hours"
REASON_DAILY_LIMIT = "daily limit reached"
REASON_ALL_FAILED = "all channels failed"
REASON_NOT_DUE = "not due yet"

# Longer than the slowest dispatch: every channel timing out on its retry
LEASE_TTL = timedelta(minutes=2)
LEASE_POLL_S = 0.05


@dataclass(frozen=True)
class DispatchPolicy:
    daily_cap_policy: DailyCapPolicy = DailyCapPolicy.HIGH_PRIORITY_OVERRIDE
    fallback_channel: Channel = Channel.IN_APP
    max_retries: int = 1
    title: str = "Message from your coach"
    lease_wait_s: float = 30.0

    @classmethod
    def from_settings(cls) -> "DispatchPolicy":
        return cls(
            daily_cap_policy=DailyCapPolicy(settings.ENGAGEMENT_DAILY_CAP_POLICY),
            fallback_channel=Channel(settings.ENGAGEMENT_FALLBACK_CHANNEL),
            max_retries=settings.ENGAGEMENT_CHANNEL_MAX_RETRIES,
            title=settings.ENGAGEMENT_NOTIFICATION_TITLE,
            lease_wait_s=settings.ENGAGEMENT_DISPATCH_LEASE_WAIT_S,
        )


def eligible_channels(
    preference: NotificationPreference,
    requested: Optional[Iterable[Channel]] = None,
    fallback: Optional[Channel] = None,
) -> List[Channel]:
    """Enabled channels narrowed to `requested`, plus `fallback` when given, in CHANNEL_ORDER."""
    chosen = set(preference.enabled_channels())
    if requested is not None:
        chosen &= set(requested)
    if fallback is not None:
        chosen.add(fallback)
    return [c for c in CHANNEL_ORDER if c in chosen]


def format_sent_via(channels: Iterable[Channel]) -> str:
    succeeded = set(channels)
    return ",".join(c.value for c in CHANNEL_ORDER if c in succeeded)


class NotificationDispatcher:
    def __init__(
        self,
        repository: RecommendationRepository,
        handlers: Optional[ChannelHandlers] = None,
        policy: Optional[DispatchPolicy] = None,
        leases: Optional[DispatchLeaseStore] = None,
    ):
        self.repository = repository
        self.leases = leases or DispatchLeaseStore(repository.db)
        self.handlers = handlers or default_channel_handlers()
        self.policy = policy or DispatchPolicy.from_settings()

    # -------------------------------------------------------------------------
    # Channel attempts
    # -------------------------------------------------------------------------

    def _attempt(self, channel: Channel, client_id: str, title: str, body: str) -> ChannelResult:
        sender = self.handlers.handler_for(channel)
        max_attempts = 1 + self.policy.max_retries
        error: Optional[str] = None
        attempts = 0

        while attempts < max_attempts:
            attempts += 1
            try:
                sender.send(client_id, title, body)
                return ChannelResult(channel=channel, success=True, attempts=attempts)
            except ChannelError as e:
                error = str(e)
                logger.warning(
                    f"Channel {channel.value} attempt {attempts}/{max_attempts} failed for client {client_id}: {e}"
                )
                if not e.retryable:
                    break
            except Exception as e:
                error = str(e) or e.__class__.__name__
                logger.error(f"Channel {channel.value} sender crashed for client {client_id}: {e}", exc_info=True)
                break

        return ChannelResult(channel=channel, success=False, error=error, attempts=attempts)

    def deliver(self, client_id: str, channels: List[Channel], body: str, title: Optional[str] = None) -> List[ChannelResult]:
        """
        Attempt every channel concurrently and wait for all of them.

        Results come back in the order of `channels`.
        """
        if not channels:
            return []
        title = title or self.policy.title
        with ThreadPoolExecutor(max_workers=len(channels), thread_name_prefix="notify") as pool:
            futures = [pool.submit(self._attempt, c, client_id, title, body) for c in channels]
            return [f.result() for f in futures]

    # -------------------------------------------------------------------------
    # Governance
    # -------------------------------------------------------------------------

    def _daily_cap_deferral(
        self, recommendation: Recommendation, preference: NotificationPreference, now: datetime
    ) -> Optional[datetime]:
        """When the cap blocks this send, the moment it frees up. None when the send may go."""
        sent = self.repository.sent_times_since(recommendation.client_id, now - DAILY_CAP_WINDOW)
        limit = preference.daily_limit
        if len(sent) < limit:
            return None

        if (
            self.policy.daily_cap_policy == DailyCapPolicy.HIGH_PRIORITY_OVERRIDE
            and recommendation.priority == RecommendationPriority.HIGH
        ):
            logger.info(
                f"Daily limit reached for client {recommendation.client_id}, sending high priority anyway",
                extra=engagement_context(recommendation_id=recommendation.id, sent_last_24h=len(sent)),
            )
            return None

        if limit == 0 or not sent:
            return now + DAILY_CAP_WINDOW
        # Cap frees once enough of the oldest counted sends leave the window
        return sent[len(sent) - limit] + DAILY_CAP_WINDOW

    def _schedule(self, recommendation: Recommendation, until: datetime, reason: str) -> DispatchResult:
        self.repository.update_status(recommendation.id, RecommendationStatus.SCHEDULED, scheduled_for=until)
        self.repository.commit()
        logger.info(
            f"Recommendation {recommendation.id} scheduled until {until.isoformat()} ({reason})",
            extra=engagement_context(recommendation.client_id, recommendation.id, reason=reason),
        )
        emit(
            EVENT_RECOMMENDATION_SCHEDULED,
            recommendation_id=recommendation.id,
            client_id=recommendation.client_id,
            scheduled_for=until,
            reason=reason,
        )
        return DispatchResult(
            recommendation_id=recommendation.id,
            status=DispatchStatus.SCHEDULED,
            deferred_until=until,
            reason=reason,
        )

    # -------------------------------------------------------------------------
    # Dispatch
    # -------------------------------------------------------------------------

    @contextmanager
    def _client_lease(self, client_id: str) -> Iterator[None]:
        """Hold the client's dispatch lease; roll back uncommitted work on error."""
        token = str(uuid.uuid4())
        deadline = time.monotonic() + self.policy.lease_wait_s
        while not self.leases.try_acquire(client_id, token, datetime.now(timezone.utc), LEASE_TTL):
            if time.monotonic() >= deadline:
                logger.warning(f"Dispatch lease for client {client_id} still held after {self.policy.lease_wait_s}s")
                raise DispatchBusyError(client_id)
            time.sleep(LEASE_POLL_S)
        try:
            yield
        except Exception:
            self.repository.rollback()
            raise
        finally:
            self.leases.release(client_id, token)

    def dispatch(
        self,
        recommendation: Recommendation,
        preference: NotificationPreference,
        now: datetime,
        requested_channels: Optional[Iterable[Channel]] = None,
        manual: bool = False,
        reopen_scheduled: bool = False,
        only_if_due: bool = False,
    ) -> DispatchResult:
        """
        Deliver a pending recommendation, or schedule it for later.

        With `reopen_scheduled` a scheduled recommendation is moved back to
        pending first; `only_if_due` leaves it alone while scheduled_for is
        still ahead of `now`. Both checks run on the stored row under the
        client's lease.
        """
        with self._client_lease(recommendation.client_id):
            # Stored status wins over whatever copy the caller holds
            current = self.repository.get_for_update(recommendation.id)
            if current.status == RecommendationStatus.SCHEDULED and reopen_scheduled:
                if only_if_due and current.scheduled_for is not None and current.scheduled_for > now:
                    return DispatchResult(
                        recommendation_id=current.id,
                        status=DispatchStatus.SCHEDULED,
                        deferred_until=current.scheduled_for,
                        reason=REASON_NOT_DUE,
                    )
                current = self.repository.update_status(current.id, RecommendationStatus.PENDING)
                self.repository.commit()
            if current.status != RecommendationStatus.PENDING:
                assert_transition(current.id, current.status, RecommendationStatus.SENT)

            channels = eligible_channels(
                preference,
                requested_channels,
                fallback=self.policy.fallback_channel if manual else None,
            )
            if not channels:
                logger.warning(f"No notification channels enabled for client {current.client_id}")
                return DispatchResult(
                    recommendation_id=current.id,
                    status=DispatchStatus.FAILED,
                    reason=REASON_NO_CHANNELS,
                )

            if is_within_quiet_hours(preference, now):
                return self._schedule(current, quiet_hours_end_after(preference, now), REASON_QUIET_HOURS)

            deferred_until = self._daily_cap_deferral(current, preference, now)
            if deferred_until is not None:
                return self._schedule(current, deferred_until, REASON_DAILY_LIMIT)

            outcomes = self.deliver(current.client_id, channels, current.message)
            succeeded = [o.channel for o in outcomes if o.success]
            if not succeeded:
                logger.warning(
                    f"Notification for recommendation {current.id} failed on every channel",
                    extra=engagement_context(current.client_id, current.id, outcomes=[o.to_dict() for o in outcomes]),
                )
                return DispatchResult(
                    recommendation_id=current.id,
                    status=DispatchStatus.FAILED,
                    outcomes=outcomes,
                    reason=REASON_ALL_FAILED,
                )

            sent_via = format_sent_via(succeeded)
            self.repository.update_status(
                current.id, RecommendationStatus.SENT, sent_at=now, sent_via=sent_via
            )
            self.repository.commit()

        logger.info(f"Notification sent via: {sent_via}", extra=engagement_context(current.client_id, current.id))
        emit(
            EVENT_RECOMMENDATION_SENT,
            recommendation_id=current.id,
            client_id=current.client_id,
            sent_via=sent_via,
        )
        return DispatchResult(
            recommendation_id=current.id,
            status=DispatchStatus.SENT,
            outcomes=outcomes,
            sent_via=sent_via,
        )
