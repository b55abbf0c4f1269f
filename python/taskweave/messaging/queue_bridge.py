"""Queue bridge: durable queue messages in, engine executions out.

A consumed QueueMessage whose task_id names a configured task runs that
task, with its dependencies, retry policy and output descriptor. Any other
message becomes an ad-hoc Task. The delivery is acknowledged only after
the lineage reaches a terminal state:

- completed → ack
- failed (or handler raised) → nack, requeued while retry_count < max_retries
- malformed or expired message → nack without requeue

Messages expire after the per-priority TTL in ``settings.queue_message_ttl_seconds``.
"""

from __future__ import annotations

import logging
from functools import partial
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional

from pydantic import ValidationError

from taskweave.config.settings import Settings, get_settings
from taskweave.exceptions import UnrecoverableError
from taskweave.interfaces.queue import Delivery, IQueueClient, QueueMessage
from taskweave.scheduling.execution_engine import ExecutionEngine
from taskweave.scheduling.execution_history import ExecutionStatus, TaskExecution
from taskweave.scheduling.task_definitions import (
    OutputDescriptor,
    RetryPolicy,
    Task,
    TaskKind,
    TaskPriority,
    TaskSet,
)

logger = logging.getLogger(__name__)

MessageHandler = Callable[[QueueMessage], Awaitable[Optional[TaskExecution]]]

AGENT_TOPIC_PREFIX = "agents."
QUEUE_CATEGORY = "queue"


def routing_key(message: QueueMessage) -> str:
    """Topic a message is published to."""
    if message.priority == "high":
        return "tasks.high_priority"
    if message.agent_type:
        return f"{AGENT_TOPIC_PREFIX}{message.agent_type}"
    return f"tasks.{message.priority}_priority"


class QueueBridge:
    """Connects an IQueueClient to the execution engine."""

    def __init__(
        self,
        client: IQueueClient,
        engine: ExecutionEngine,
        settings: Optional[Settings] = None,
        tasks: Optional[TaskSet] = None,
    ) -> None:
        self._client = client
        self._engine = engine
        self._settings = settings or get_settings()
        self._tasks = tasks
        self._consumer_tags: Dict[str, str] = {}
        self.acked = 0
        self.requeued = 0
        self.dead_lettered = 0
        self.expired = 0

    def update_tasks(self, task_set: Optional[TaskSet]) -> None:
        self._tasks = task_set

    @property
    def topics(self) -> List[str]:
        return list(self._consumer_tags)

    async def subscribe(self, topic: str, handler: Optional[MessageHandler] = None) -> str:
        """Consume *topic*; messages go to *handler* or to the engine by default."""
        if handler is None:
            handler = partial(self.process_message, topic)
        tag = await self._client.consume(topic, partial(self._on_delivery, handler))
        self._consumer_tags[topic] = tag
        logger.info("Queue bridge consuming %s", topic)
        return tag

    async def publish_task(self, message: QueueMessage) -> bool:
        topic = routing_key(message)
        ok = await self._client.publish(topic, message)
        if ok:
            logger.info("Published %s to %s (priority %s)", message.task_id, topic, message.priority)
        else:
            logger.error("Failed to publish %s to %s", message.task_id, topic)
        return ok

    async def stop(self) -> None:
        for topic, tag in list(self._consumer_tags.items()):
            await self._client.cancel(tag)
            del self._consumer_tags[topic]

    def message_to_task(self, topic: str, message: QueueMessage) -> Task:
        """Task that runs *message*: the configured one, or an ad-hoc one.

        Raises:
            UnrecoverableError: the message names a disabled configured task
        """
        configured = self._tasks.get(message.task_id) if self._tasks is not None else None
        if configured is not None:
            if not configured.enabled:
                raise UnrecoverableError(f"Task {configured.id} is disabled")
            return configured
        agent = message.agent_type
        if not agent and topic.startswith(AGENT_TOPIC_PREFIX):
            agent = topic[len(AGENT_TOPIC_PREFIX):]
        return Task(
            id=message.task_id,
            name=f"Queue task {message.task_id}",
            description=f"{message.task_type} task from {topic}",
            kind=TaskKind.MANUAL,
            agent=agent or "unknown",
            config={
                **message.data,
                "queue_topic": topic,
                "task_type": message.task_type,
                "correlation_id": message.correlation_id,
            },
            output=OutputDescriptor(schema_name=message.task_type, destination="queue"),
            retry_policy=RetryPolicy(
                max_attempts=1,
                backoff_seconds=self._settings.queue_backoff_seconds,
            ),
            category=QUEUE_CATEGORY,
            priority=TaskPriority(message.priority),
        )

    async def process_message(self, topic: str, message: QueueMessage) -> Optional[TaskExecution]:
        """Run *message* through the engine and wait for the lineage to finish."""
        task = self.message_to_task(topic, message)
        first = await self._engine.execute(task, message.data)
        return await self._engine.wait_for_lineage(first.lineage_id)

    async def _on_delivery(self, handler: MessageHandler, delivery: Delivery) -> None:
        try:
            message = QueueMessage.model_validate_json(delivery.body)
        except ValidationError as exc:
            logger.error("Malformed message on %s: %s", delivery.topic, exc.errors()[:1])
            self.dead_lettered += 1
            await delivery.nack(requeue=False)
            return

        if self.is_expired(message):
            logger.warning("Dropping expired %s message %s", message.priority, message.task_id)
            self.expired += 1
            await delivery.nack(requeue=False)
            return

        try:
            outcome = await handler(message)
        except Exception:
            logger.exception("Queue handler failed for %s", message.task_id)
            succeeded = False
        else:
            succeeded = not (
                isinstance(outcome, TaskExecution) and outcome.status is not ExecutionStatus.COMPLETED
            )

        if succeeded:
            self.acked += 1
            await delivery.ack()
            return

        requeue = message.retry_count < message.max_retries
        if requeue:
            self.requeued += 1
        else:
            self.dead_lettered += 1
        logger.warning(
            "Task %s from %s failed (retry %d/%d), requeue=%s",
            message.task_id, delivery.topic, message.retry_count, message.max_retries, requeue,
        )
        await delivery.nack(requeue=requeue)

    @property
    def stats(self) -> Dict[str, Any]:
        return {
            "topics": self.topics,
            "acked": self.acked,
            "requeued": self.requeued,
            "dead_lettered": self.dead_lettered,
            "expired": self.expired,
        }

    def is_expired(self, message: QueueMessage, now: Optional[datetime] = None) -> bool:
        """Whether *message* outlived the TTL of its priority."""
        ttl = self._settings.queue_message_ttl_seconds.get(message.priority)
        if ttl is None:
            return False
        created = message.created_at
        if created.tzinfo is None:
            created = created.replace(tzinfo=timezone.utc)
        if message.scheduled_for is not None:
            scheduled = message.scheduled_for
            if scheduled.tzinfo is None:
                scheduled = scheduled.replace(tzinfo=timezone.utc)
            created = max(created, scheduled)
        now = now or datetime.now(timezone.utc)
        return now - created > timedelta(seconds=ttl)

    async def queue_stats(self, topic: str) -> Dict[str, Any]:
        return await self._client.stats(topic)

    async def purge(self, topic: str) -> int:
        purged = await self._client.purge(topic)
        logger.info("Purged %d messages from %s", purged, topic)
        return purged
