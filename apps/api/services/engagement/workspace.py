"""
Coach Workspace

View state for the coach's engagement screen: the selected client's activity
feed, triggers, recommendations, notification preferences and chat thread.

Every action runs through the SessionCoordinator, so work issued for client
A can never write into the state after the coach has switched to client B.
Blocking service calls run in a worker thread, each on its own session.
"""

import asyncio
import itertools
import logging
from dataclasses import dataclass, field, replace
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, TypeVar

from services.engagement.preferences import validate_changes
from services.engagement.service import EngagementService, engagement_service_scope
from services.engagement.session_coordinator import (
    OperationResult,
    OptimisticUpdate,
    SessionCoordinator,
)
from services.engagement.trigger_detector import DetectionResult
from services.engagement.types import (
    ActivityEvent,
    DispatchResult,
    EngagementTrends,
    NotificationPreference,
    Recommendation,
    RecommendationStatus,
    Trigger,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

ServiceCall = Callable[[EngagementService], T]
Executor = Callable[[ServiceCall], Awaitable[Any]]
ChatResponder = Callable[[str, List["ChatMessage"]], Awaitable[str]]

KIND_ACTIVITY = "activity"
KIND_TRENDS = "trends"
KIND_TRIGGERS = "triggers"
KIND_DETECTION = "detection"
KIND_RECOMMENDATIONS = "recommendations"
KIND_GENERATION = "generation"
KIND_PREFERENCES = "preferences"
KIND_CHAT = "chat"


def _invoke(call: ServiceCall) -> Any:
    with engagement_service_scope() as service:
        return call(service)


async def run_in_service_scope(call: ServiceCall) -> Any:
    return await asyncio.to_thread(_invoke, call)


@dataclass
class ChatMessage:
    role: str  # 'coach' or 'assistant'
    content: str
    pending: bool = False


@dataclass
class WorkspaceState:
    selected_client_id: Optional[str] = None
    activity_feed: List[ActivityEvent] = field(default_factory=list)
    trends: Optional[EngagementTrends] = None
    triggers: List[Trigger] = field(default_factory=list)
    recommendations: List[Recommendation] = field(default_factory=list)
    preference: Optional[NotificationPreference] = None
    chat_messages: List[ChatMessage] = field(default_factory=list)
    is_loading: bool = False

    @property
    def active_triggers(self) -> List[Trigger]:
        return [t for t in self.triggers if not t.is_resolved]

    @property
    def pending_recommendations(self) -> List[Recommendation]:
        return [r for r in self.recommendations if r.status == RecommendationStatus.PENDING]


class CoachWorkspace:
    def __init__(
        self,
        execute: Executor = run_in_service_scope,
        coordinator: Optional[SessionCoordinator] = None,
    ):
        self.execute = execute
        self.coordinator = coordinator or SessionCoordinator()
        self.state = WorkspaceState()
        self._chat_sequence = itertools.count(1)

    def _client_id(self) -> str:
        client_id = self.state.selected_client_id
        if client_id is None:
            raise RuntimeError("No client selected")
        return client_id

    def _replace_recommendation(self, updated: Recommendation) -> None:
        self.state.recommendations = [
            updated if r.id == updated.id else r for r in self.state.recommendations
        ]

    def _set(self, attribute: str) -> Callable[[Any], None]:
        return lambda value: setattr(self.state, attribute, value)

    # =========================================================================
    # Selection
    # =========================================================================

    async def select_client(self, client_id: str) -> None:
        """Switch to `client_id` and load everything shown for it."""
        epoch = self.coordinator.select(client_id)
        self.state = WorkspaceState(selected_client_id=client_id, is_loading=True)
        try:
            await asyncio.gather(
                self.load_activity(),
                self.load_trends(),
                self.load_triggers(),
                self.load_recommendations(),
                self.load_preferences(),
            )
        finally:
            # A newer selection owns is_loading now
            if self.coordinator.epoch == epoch:
                self.state.is_loading = False

    def reset(self) -> None:
        self.coordinator.select(None)
        self.state = WorkspaceState()

    # =========================================================================
    # Loads
    # =========================================================================

    async def load_activity(self) -> OperationResult:
        client_id = self._client_id()
        return await self.coordinator.run(
            KIND_ACTIVITY,
            lambda: self.execute(lambda s: list(reversed(s.load_activity(client_id)))),
            self._set("activity_feed"),
        )

    async def load_trends(self) -> OperationResult:
        client_id = self._client_id()
        return await self.coordinator.run(
            KIND_TRENDS,
            lambda: self.execute(lambda s: s.trends(client_id)),
            self._set("trends"),
        )

    async def load_triggers(self) -> OperationResult:
        client_id = self._client_id()
        return await self.coordinator.run(
            KIND_TRIGGERS,
            lambda: self.execute(lambda s: s.list_triggers(client_id)),
            self._set("triggers"),
        )

    async def load_recommendations(self) -> OperationResult:
        client_id = self._client_id()
        return await self.coordinator.run(
            KIND_RECOMMENDATIONS,
            lambda: self.execute(lambda s: s.list_recommendations(client_id)),
            self._set("recommendations"),
        )

    async def load_preferences(self) -> OperationResult:
        client_id = self._client_id()
        return await self.coordinator.run(
            KIND_PREFERENCES,
            lambda: self.execute(lambda s: s.get_preferences(client_id)),
            self._set("preference"),
        )

    # =========================================================================
    # Pipeline actions
    # =========================================================================

    async def detect_triggers(self) -> OperationResult:
        """Run detection; on success the trigger list is refreshed from the store."""
        client_id = self._client_id()

        def call(service: EngagementService):
            result: DetectionResult = service.detect_triggers(client_id)
            return result, service.list_triggers(client_id)

        def apply(value) -> None:
            result, triggers = value
            self.state.triggers = triggers
            if result.failed_count:
                logger.warning(f"{result.failed_count} trigger predicate(s) failed for client {client_id}")

        return await self.coordinator.run(KIND_DETECTION, lambda: self.execute(call), apply)

    async def generate_recommendations(self) -> OperationResult:
        client_id = self._client_id()

        def call(service: EngagementService) -> List[Recommendation]:
            service.generate_recommendations(client_id)
            return service.list_recommendations(client_id)

        return await self.coordinator.run(
            KIND_GENERATION, lambda: self.execute(call), self._set("recommendations")
        )

    async def send_recommendation(self, recommendation_id: str) -> OperationResult:
        """Send one recommendation; its card is replaced by the stored version afterwards."""

        def call(service: EngagementService):
            result: DispatchResult = service.send_recommendation(recommendation_id)
            return result, service.get_recommendation(recommendation_id)

        def apply(value) -> None:
            _, updated = value
            self._replace_recommendation(updated)

        # Per-recommendation kind: sending one card must not supersede another
        return await self.coordinator.run(
            f"send:{recommendation_id}", lambda: self.execute(call), apply
        )

    async def dismiss_recommendation(self, recommendation_id: str) -> OperationResult:
        previous = next((r for r in self.state.recommendations if r.id == recommendation_id), None)

        def tentative() -> None:
            if previous is not None:
                self._replace_recommendation(replace(previous, status=RecommendationStatus.DISMISSED))

        def revert() -> None:
            if previous is not None:
                self._replace_recommendation(previous)

        update = OptimisticUpdate(apply=tentative, revert=revert, commit=self._replace_recommendation)
        return await self.coordinator.run_optimistic(
            f"dismiss:{recommendation_id}",
            update,
            lambda: self.execute(lambda s: s.dismiss_recommendation(recommendation_id)),
        )

    async def update_preferences(self, changes: Mapping[str, Any]) -> OperationResult:
        """Show the new preferences immediately; restore the old ones if the write fails."""
        client_id = self._client_id()
        clean: Dict[str, Any] = validate_changes(dict(changes))
        previous = self.state.preference

        def tentative() -> None:
            if previous is not None:
                self.state.preference = previous.merged(**clean)

        def revert() -> None:
            self.state.preference = previous

        update = OptimisticUpdate(apply=tentative, revert=revert, commit=self._set("preference"))
        return await self.coordinator.run_optimistic(
            KIND_PREFERENCES,
            update,
            lambda: self.execute(lambda s: s.update_preferences(client_id, changes)),
        )

    async def send_chat_message(self, text: str, responder: ChatResponder) -> OperationResult:
        """
        Append the coach's message right away and the assistant reply once it
        arrives. A failed exchange removes the optimistic message again.
        """
        client_id = self._client_id()
        message = ChatMessage(role="coach", content=text, pending=True)
        history = list(self.state.chat_messages)

        def tentative() -> None:
            self.state.chat_messages = self.state.chat_messages + [message]

        def revert() -> None:
            self.state.chat_messages = [m for m in self.state.chat_messages if m is not message]

        def commit(reply: str) -> None:
            message.pending = False
            self.state.chat_messages = self.state.chat_messages + [ChatMessage(role="assistant", content=reply)]

        update = OptimisticUpdate(apply=tentative, revert=revert, commit=commit)
        return await self.coordinator.run_optimistic(
            f"{KIND_CHAT}:{next(self._chat_sequence)}",
            update,
            lambda: responder(client_id, history + [message]),
        )
