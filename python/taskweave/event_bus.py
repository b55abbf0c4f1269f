"""In-memory event bus satisfying the IEventBus protocol.

Carries task lifecycle events between the engine, scheduler, analyzer and
transports, and doubles as the trigger surface for event-driven tasks.
One instance is owned by the orchestrator and injected everywhere else.
"""

import inspect
import logging
import uuid
from typing import Any, Dict, Optional

from taskweave.interfaces.event_bus import EventHandler, Topic, topic_name

logger = logging.getLogger(__name__)


class InMemoryEventBus:
    """Simple async event bus for single-process use.

    Handlers run in subscription order. A failing handler is logged and
    never prevents delivery to the remaining handlers.
    """

    def __init__(self) -> None:
        self._subscribers: Dict[str, Dict[str, EventHandler]] = {}

    async def publish(
        self,
        event_type: Topic,
        data: Optional[Dict[str, Any]] = None,
        source: Optional[str] = None,
    ) -> None:
        topic = topic_name(event_type)
        data = dict(data or {})
        if source:
            data["_source"] = source
        handlers = list(self._subscribers.get(topic, {}).values())
        for handler in handlers:
            try:
                if inspect.iscoroutinefunction(handler):
                    await handler(data)
                else:
                    result = handler(data)
                    if inspect.isawaitable(result):
                        await result
            except Exception:
                logger.exception("Event handler failed for %s", topic)

    async def subscribe(
        self,
        event_type: Topic,
        handler: EventHandler,
    ) -> str:
        topic = topic_name(event_type)
        if topic not in self._subscribers:
            self._subscribers[topic] = {}
        sub_id = uuid.uuid4().hex[:12]
        self._subscribers[topic][sub_id] = handler
        return sub_id

    async def unsubscribe(self, subscription_id: str) -> None:
        for topic, handlers in list(self._subscribers.items()):
            handlers.pop(subscription_id, None)
            if not handlers:
                del self._subscribers[topic]

    def subscriber_count(self, event_type: Topic) -> int:
        return len(self._subscribers.get(topic_name(event_type), {}))

    @property
    def topics(self) -> list:
        return sorted(self._subscribers)
