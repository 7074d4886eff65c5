"""
Lightweight Event System for Extensibility

Provides a simple event emitter pattern for hooks and extensibility.
Not a full plugin registry - just enough for clean extensibility.
"""
import logging
from typing import Callable, Dict, List

logger = logging.getLogger(__name__)

# Event registry: event_name -> list of handlers
_event_handlers: Dict[str, List[Callable]] = {}


def subscribe(event_name: str, handler: Callable):
    """
    Subscribe a handler function to an event.

    Args:
        event_name: Name of the event (e.g., 'engagement.recommendation.sent')
        handler: Function to call when event fires

    Example:
        def on_sent(recommendation_id: str, client_id: str, **_):
            ...

        subscribe(EVENT_RECOMMENDATION_SENT, on_sent)
    """
    if event_name not in _event_handlers:
        _event_handlers[event_name] = []

    _event_handlers[event_name].append(handler)
    logger.debug(f"Subscribed handler to event: {event_name}")


def unsubscribe(event_name: str, handler: Callable):
    """Remove a previously subscribed handler. Unknown handlers are ignored."""
    handlers = _event_handlers.get(event_name)
    if handlers and handler in handlers:
        handlers.remove(handler)


def emit(event_name: str, **kwargs):
    """
    Emit an event, calling all subscribed handlers.

    Handler errors are logged and never propagate to the emitter.

    Example:
        emit(EVENT_TRIGGER_DETECTED, trigger_id=trigger.id, client_id=trigger.client_id)
    """
    if event_name not in _event_handlers:
        return

    for handler in list(_event_handlers[event_name]):
        try:
            handler(**kwargs)
        except Exception as e:
            logger.error(f"Error in event handler for {event_name}: {e}", exc_info=True)


# Common event names
EVENT_TRIGGER_DETECTED = 'engagement.trigger.detected'
EVENT_TRIGGER_RESOLVED = 'engagement.trigger.resolved'
EVENT_RECOMMENDATION_CREATED = 'engagement.recommendation.created'
EVENT_RECOMMENDATION_SENT = 'engagement.recommendation.sent'
EVENT_RECOMMENDATION_SCHEDULED = 'engagement.recommendation.scheduled'
EVENT_RECOMMENDATION_DISMISSED = 'engagement.recommendation.dismissed'
