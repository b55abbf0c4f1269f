"""External work ingestion: the durable queue bridge and the agent channel."""

from taskweave.messaging.agent_channel import (
    AgentChannel,
    AgentMessage,
    AgentMessageType,
    AgentStatus,
    RemoteAgent,
)
from taskweave.messaging.queue_bridge import QueueBridge, routing_key
from taskweave.messaging.queue_clients import InMemoryQueueClient, RedisStreamQueueClient

__all__ = [
    # Agent channel
    "AgentChannel",
    "AgentMessage",
    "AgentMessageType",
    "AgentStatus",
    "RemoteAgent",
    # Queue
    "InMemoryQueueClient",
    "QueueBridge",
    "RedisStreamQueueClient",
    "routing_key",
]
