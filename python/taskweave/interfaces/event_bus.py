"""Interface for event bus and pub/sub messaging.

Decouples the scheduler, engine, analyzer and transports by letting them
communicate through published events. Topics are plain strings so that
configuration can declare arbitrary trigger events; the standard lifecycle
topics are listed in EventType.
"""

from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional, Protocol, Union


class EventType(Enum):
    """Standard event types in the system."""
    # Task lifecycle
    TASK_STARTED = "task_started"
    TASK_COMPLETED = "task_completed"
    TASK_FAILED = "task_failed"
    TASK_RETRYING = "task_retrying"
    TASK_ABANDONED = "task_abandoned"
    # Decisions
    RECOVERY_SUGGESTED = "recovery_suggested"
    DECISION_MADE = "decision_made"
    SYSTEM_ANALYSIS_COMPLETE = "system_analysis_complete"
    # Remote agents
    TASK_REQUESTED = "task_requested"
    AGENT_REGISTERED = "agent_registered"
    AGENT_DISCONNECTED = "agent_disconnected"
    AGENT_TASK_COMPLETED = "agent_task_completed"
    AGENT_ERROR = "agent_error"


Topic = Union[EventType, str]
EventHandler = Callable[[Dict[str, Any]], Union[Awaitable[None], None]]

MANUAL_EVENT_PREFIX = "manual_"


def topic_name(topic: Topic) -> str:
    """Normalize an EventType or raw string to the topic key."""
    if isinstance(topic, EventType):
        return topic.value
    return str(topic)


def manual_event(task_id: str) -> str:
    """Topic that triggers ``task_id`` on demand."""
    return f"{MANUAL_EVENT_PREFIX}{task_id}"


class IEventBus(Protocol):
    """Interface for publish-subscribe event messaging."""

    async def publish(
        self,
        event_type: Topic,
        data: Dict[str, Any],
        source: Optional[str] = None
    ) -> None:
        """Publish an event to the bus.

        Args:
            event_type: EventType or trigger topic name
            data: Event data/payload
            source: Optional source identifier
        """
        ...

    async def subscribe(
        self,
        event_type: Topic,
        handler: EventHandler
    ) -> str:
        """Subscribe to events of a type.

        Args:
            event_type: EventType or trigger topic name
            handler: Sync or async function to handle events

        Returns:
            Subscription ID for later unsubscribe
        """
        ...

    async def unsubscribe(self, subscription_id: str) -> None:
        """Unsubscribe from events.

        Args:
            subscription_id: ID from subscribe()
        """
        ...

    def subscriber_count(self, event_type: Topic) -> int:
        """Number of handlers currently subscribed to a topic."""
        ...
