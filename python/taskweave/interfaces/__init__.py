"""taskweave interface contracts (Protocol-based dependency injection)."""

from taskweave.interfaces.agent import IAgent
from taskweave.interfaces.event_bus import (
    EventHandler,
    EventType,
    IEventBus,
    Topic,
    manual_event,
    topic_name,
)
from taskweave.interfaces.output_sink import IOutputSink
from taskweave.interfaces.queue import Delivery, IQueueClient, QueueMessage

__all__ = [
    "IAgent",
    "EventHandler",
    "EventType",
    "IEventBus",
    "Topic",
    "manual_event",
    "topic_name",
    "IOutputSink",
    "Delivery",
    "IQueueClient",
    "QueueMessage",
]
