"""
Recommendation Generator

Turns a Trigger into a proposed coach message. The message is picked from a
fixed template table keyed by (trigger type, severity), so the same trigger
always produces the same message, reason and priority.

Also hosts the Quick Action catalog: canned coach messages that become
manual (trigger-less) recommendations.
"""

import logging
import uuid
from datetime import datetime
from typing import Callable, Dict, List, Optional, Tuple

from services.engagement.errors import RecordNotFoundError
from services.engagement.types import (
    QuickAction,
    Recommendation,
    RecommendationPriority,
    RecommendationStatus,
    Trigger,
    TriggerSeverity,
    TriggerType,
)

logger = logging.getLogger(__name__)

TEMPLATES: Dict[Tuple[TriggerType, TriggerSeverity], str] = {
    # Missed log
    (TriggerType.MISSED_LOG, TriggerSeverity.LOW):
        "Quick reminder to log your meals - it really helps us track your progress together!",
    (TriggerType.MISSED_LOG, TriggerSeverity.MEDIUM):
        "Hey! Just checking in - how did things go today? Don't forget to log when you get a chance!",
    (TriggerType.MISSED_LOG, TriggerSeverity.HIGH):
        "Noticed you haven't logged in a bit. Everything okay? I'm here if you need anything!",

    # Inactivity
    (TriggerType.INACTIVITY, TriggerSeverity.LOW):
        "Hope your day is going well! Haven't seen you in a bit - everything okay?",
    (TriggerType.INACTIVITY, TriggerSeverity.MEDIUM):
        "Hey! Thinking of you - how's the week going so far?",
    (TriggerType.INACTIVITY, TriggerSeverity.HIGH):
        "Just wanted to check in and see how you're doing. Let me know if you need anything!",

    # Pattern deviation
    (TriggerType.PATTERN_DEVIATION, TriggerSeverity.LOW):
        "Looks like your routine has shifted a bit - totally normal! Let's connect and see what's working for you.",
    (TriggerType.PATTERN_DEVIATION, TriggerSeverity.MEDIUM):
        "Hey! I see some changes in your patterns. Want to discuss any adjustments to your plan?",
    (TriggerType.PATTERN_DEVIATION, TriggerSeverity.HIGH):
        "I noticed the logs have been much lighter lately. Want to chat about adjusting your schedule?",

    # Goal at risk
    (TriggerType.GOAL_AT_RISK, TriggerSeverity.LOW):
        "Hey! Just a friendly check on your goals. How can I help you stay motivated?",
    (TriggerType.GOAL_AT_RISK, TriggerSeverity.MEDIUM):
        "I want to make sure we stay on track with your goals. Let's chat about what might help!",
    (TriggerType.GOAL_AT_RISK, TriggerSeverity.HIGH):
        "Your goal is drifting - let's review your progress together and make any needed adjustments.",

    # Engagement drop
    (TriggerType.ENGAGEMENT_DROP, TriggerSeverity.LOW):
        "Just reaching out to see how you're doing. I'm here to support you however I can!",
    (TriggerType.ENGAGEMENT_DROP, TriggerSeverity.MEDIUM):
        "Hey! I notice we haven't connected much lately. Everything okay on your end?",
    (TriggerType.ENGAGEMENT_DROP, TriggerSeverity.HIGH):
        "I've missed hearing from you! Is there anything I can do to help you stay engaged?",
}

PRIORITY_MAP: Dict[TriggerSeverity, RecommendationPriority] = {
    TriggerSeverity.HIGH: RecommendationPriority.HIGH,
    TriggerSeverity.MEDIUM: RecommendationPriority.MEDIUM,
    TriggerSeverity.LOW: RecommendationPriority.LOW,
}

QUICK_ACTIONS: Tuple[QuickAction, ...] = (
    QuickAction(
        id="checkin",
        label="Send Check-In",
        icon="MessageSquare",
        template="Hey! Just checking in - how are you feeling today? Anything I can help with?",
        category="checkin",
    ),
    QuickAction(
        id="meals",
        label="Ask About Meals",
        icon="Utensils",
        template="Quick question - how have your meals been going this week? Any challenges with nutrition?",
        category="meals",
    ),
    QuickAction(
        id="training",
        label="Prompt Training Log",
        icon="Dumbbell",
        template="Don't forget to log your workout when you finish! It helps us track your awesome progress.",
        category="training",
    ),
    QuickAction(
        id="motivation",
        label="Send Motivation",
        icon="Zap",
        template="Just wanted to say you're doing amazing! Keep up the great work - I believe in you!",
        category="motivation",
    ),
)


def message_for(trigger_type: TriggerType, severity: TriggerSeverity) -> str:
    return TEMPLATES[(trigger_type, severity)]


def get_quick_actions() -> List[QuickAction]:
    return list(QUICK_ACTIONS)


def get_quick_action(action_id: str) -> QuickAction:
    for action in QUICK_ACTIONS:
        if action.id == action_id:
            return action
    raise RecordNotFoundError("Quick action", action_id)


class RecommendationGenerator:
    def __init__(self, id_factory: Callable[[], str] = lambda: str(uuid.uuid4())):
        self.id_factory = id_factory

    def generate(self, trigger: Trigger, now: datetime) -> Recommendation:
        """One pending recommendation for one trigger. Preferences play no part."""
        message = message_for(trigger.type, trigger.severity)
        recommendation = Recommendation(
            id=self.id_factory(),
            client_id=trigger.client_id,
            trigger_id=trigger.id,
            message=message,
            reason=trigger.reason,
            priority=PRIORITY_MAP[trigger.severity],
            status=RecommendationStatus.PENDING,
            created_at=now,
        )
        logger.info(f'Recommendation generated for trigger {trigger.id}: "{message[:50]}..."')
        return recommendation

    def generate_batch(self, triggers: List[Trigger], now: datetime) -> List[Recommendation]:
        return [self.generate(t, now) for t in triggers if not t.is_resolved]

    def create_manual(
        self,
        client_id: str,
        message: str,
        now: datetime,
        reason: str = "Coach initiated",
        priority: RecommendationPriority = RecommendationPriority.MEDIUM,
        trigger_id: Optional[str] = None,
    ) -> Recommendation:
        """A coach-written recommendation, optionally linked to a trigger."""
        if not message or not message.strip():
            raise ValueError("message must not be empty")
        return Recommendation(
            id=self.id_factory(),
            client_id=client_id,
            trigger_id=trigger_id,
            message=message.strip(),
            reason=reason,
            priority=priority,
            status=RecommendationStatus.PENDING,
            created_at=now,
        )

    def from_quick_action(self, action_id: str, client_id: str, now: datetime) -> Recommendation:
        action = get_quick_action(action_id)
        return self.create_manual(client_id, action.template, now, reason=f"Quick action: {action.label}")
