"""Interface for the durable work queue.

Defines the QueueMessage wire shape, the per-message Delivery handle with
ack/nack, and the IQueueClient protocol implemented by the in-memory and
Redis Streams clients.
"""

from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Optional, Protocol, Union

from pydantic import BaseModel, ConfigDict, Field

DEAD_LETTER_TOPIC = "tasks.dead_letter"

PRIORITY_VALUES: Dict[str, int] = {"high": 10, "medium": 5, "low": 1}


class QueueMessage(BaseModel):
    """A unit of work published to the durable queue."""

    model_config = ConfigDict(extra="ignore")

    task_id: str = Field(min_length=1)
    task_type: str = "adhoc"
    agent_type: Optional[str] = None
    priority: str = Field(default="medium", pattern="^(high|medium|low)$")
    data: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    scheduled_for: Optional[datetime] = None
    retry_count: int = Field(default=0, ge=0)
    max_retries: int = Field(default=3, ge=0)
    correlation_id: Optional[str] = None

    @property
    def priority_value(self) -> int:
        return PRIORITY_VALUES.get(self.priority, PRIORITY_VALUES["medium"])

    def next_retry(self) -> "QueueMessage":
        """Copy with retry_count advanced, used when a message is requeued."""
        return self.model_copy(update={"retry_count": self.retry_count + 1})


class Delivery(Protocol):
    """A received message awaiting acknowledgement."""

    topic: str
    body: Union[str, bytes]

    async def ack(self) -> None:
        """Remove the message from the queue."""
        ...

    async def nack(self, requeue: bool) -> None:
        """Reject the message.

        Args:
            requeue: Put it back with retry_count + 1 when True, otherwise
                route it to the dead-letter topic
        """
        ...


DeliveryCallback = Callable[[Delivery], Awaitable[None]]


class IQueueClient(Protocol):
    """Interface for a durable, topic-addressed message queue."""

    async def connect(self) -> None:
        """Open the connection and declare topics."""
        ...

    async def close(self) -> None:
        """Stop consumers and release the connection."""
        ...

    async def publish(self, topic: str, message: QueueMessage) -> bool:
        """Publish a message, delaying delivery until ``scheduled_for`` if set.

        Returns:
            True when the message was accepted
        """
        ...

    async def consume(self, topic: str, callback: DeliveryCallback) -> str:
        """Start delivering messages from ``topic`` to ``callback``.

        Returns:
            Consumer tag for cancel()
        """
        ...

    async def cancel(self, consumer_tag: str) -> None:
        """Stop a consumer started by consume()."""
        ...

    async def stats(self, topic: str) -> Dict[str, Any]:
        """Queue statistics for ``topic``.

        Returns:
            Dict with ``message_count`` (waiting messages) and
            ``consumer_count``
        """
        ...

    async def purge(self, topic: str) -> int:
        """Drop every waiting message on ``topic`` and return how many."""
        ...
