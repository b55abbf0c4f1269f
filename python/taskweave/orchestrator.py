"""Composition root: wires every taskweave service and owns their lifecycle.

    orchestrator = Orchestrator(settings)
    orchestrator.agents.register("prospecting_agent", my_agent)
    await orchestrator.start()      # load tasks, connect queue, arm timers
    ...
    await orchestrator.stop()

Only a ConfigError while loading task definitions halts startup. A queue
that cannot be reached disables the queue bridge but not the scheduler.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from typing import Any, Awaitable, Callable, Dict, List, Optional

from taskweave.agents.registry import AgentRegistry
from taskweave.analytics.decision_engine import DecisionEngine
from taskweave.analytics.failure_classifier import FailureClassifier
from taskweave.analytics.pattern_learner import SchedulePatternLearner, SchedulingRecommendation, Urgency
from taskweave.analytics.performance_analyzer import PerformanceAnalyzer
from taskweave.config.settings import Settings, get_settings
from taskweave.event_bus import InMemoryEventBus
from taskweave.exceptions import ConfigError, QueueError
from taskweave.interfaces.event_bus import EventType, IEventBus, manual_event
from taskweave.interfaces.output_sink import IOutputSink
from taskweave.interfaces.queue import IQueueClient, QueueMessage
from taskweave.messaging.agent_channel import AgentChannel
from taskweave.messaging.queue_bridge import QueueBridge
from taskweave.messaging.queue_clients import InMemoryQueueClient, RedisStreamQueueClient
from taskweave.output_sink import JsonFileOutputSink
from taskweave.scheduling.execution_engine import ExecutionEngine
from taskweave.scheduling.execution_history import ExecutionHistory
from taskweave.scheduling.scheduler import Scheduler
from taskweave.scheduling.task_definitions import TaskSet, TaskSource, load_task_definitions

logger = logging.getLogger(__name__)

SleepFn = Callable[[float], Awaitable[Any]]


def create_queue_client(settings: Settings) -> IQueueClient:
    """Queue client selected by ``settings.queue_backend``."""
    if settings.queue_backend == "redis":
        return RedisStreamQueueClient(
            settings.redis_url,
            settings.queue_group,
            settings.queue_consumer_name,
            prefetch=settings.queue_prefetch,
            claim_idle=settings.queue_claim_idle_seconds,
            claim_interval=settings.queue_claim_interval_seconds,
            connect_attempts=settings.queue_connect_attempts,
            reconnect_delay=settings.queue_reconnect_delay_seconds,
        )
    return InMemoryQueueClient(prefetch=settings.queue_prefetch)


class Orchestrator:
    """Owns the event bus, engine, scheduler, transports and feedback loop."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        event_bus: Optional[IEventBus] = None,
        agents: Optional[AgentRegistry] = None,
        queue_client: Optional[IQueueClient] = None,
        output_sink: Optional[IOutputSink] = None,
        task_source: Optional[TaskSource] = None,
        sleep: SleepFn = asyncio.sleep,
    ) -> None:
        self.settings = settings or get_settings()
        self.event_bus = event_bus or InMemoryEventBus()
        self.agents = agents or AgentRegistry()
        self.queue_client = queue_client or create_queue_client(self.settings)
        self.output_sink = output_sink or JsonFileOutputSink(self.settings.output_dir)
        self._task_source = task_source

        self.history = ExecutionHistory(self.settings.history_max_records)
        self.engine = ExecutionEngine(
            self.agents,
            self.event_bus,
            history=self.history,
            output_sink=self.output_sink,
            settings=self.settings,
            sleep=sleep,
        )
        self.scheduler = Scheduler(self.engine, self.event_bus, self.settings)
        self.channel = AgentChannel(self.event_bus, self.settings)
        self.agents.add_resolver(self.channel.resolver)

        self.bridge: Optional[QueueBridge] = None
        self.analyzer = PerformanceAnalyzer(
            self.history, self.settings, running_by_task=self.engine.running_by_task
        )
        self.learner = SchedulePatternLearner(
            self.history, self.settings, running_count=lambda: self.engine.running_count
        )
        self.decisions = DecisionEngine(
            self.engine,
            self.analyzer,
            self.event_bus,
            self.settings,
            classifier=FailureClassifier(self.settings),
            sleep=sleep,
        )

        self._task_set: Optional[TaskSet] = None
        self._subscriptions: List[str] = []
        self._initialized = False
        self._running = False

    # ── Lifecycle ────────────────────────────────────────────────────

    @property
    def task_set(self) -> Optional[TaskSet]:
        return self._task_set

    @property
    def is_running(self) -> bool:
        return self._running

    async def initialize(self) -> None:
        """Load task definitions and connect the queue.

        Raises:
            ConfigError: task definitions are invalid; nothing is started
        """
        source = self._task_source if self._task_source is not None else self.settings.tasks_config_path
        try:
            task_set = load_task_definitions(source)
        except ConfigError:
            logger.exception("Invalid task definitions in %s", source if isinstance(source, str) else "memory")
            raise
        self._apply_task_set(task_set)

        try:
            await self.queue_client.connect()
        except QueueError as exc:
            logger.error("Queue unavailable, continuing without queue bridge: %s", exc)
            self.bridge = None
        else:
            self.bridge = QueueBridge(self.queue_client, self.engine, self.settings, tasks=self._task_set)
        self.decisions.set_queue_bridge(self.bridge)
        self._initialized = True
        logger.info(
            "Orchestrator initialized: %d tasks (%d enabled), queue=%s",
            len(task_set), len(task_set.enabled()),
            self.settings.queue_backend if self.bridge else "disabled",
        )

    async def start(self) -> None:
        if self._running:
            return
        if not self._initialized:
            await self.initialize()

        await self.scheduler.start(self._task_set)
        await self.analyzer.attach(self.event_bus)
        await self.learner.attach(self.event_bus)
        await self.decisions.start()
        self._subscriptions.append(
            await self.event_bus.subscribe(EventType.TASK_REQUESTED, self._forward_task_request)
        )
        self._subscriptions.append(
            await self.event_bus.subscribe(EventType.SYSTEM_ANALYSIS_COMPLETE, self._apply_retention)
        )
        if self.bridge is not None:
            for topic in self.settings.queue_topics:
                await self.bridge.subscribe(topic)
        self.channel.start_heartbeat_monitor()
        self._running = True
        logger.info("Orchestrator started")

    async def stop(self) -> None:
        """Stop firing, cancel deferred work and release connections."""
        if not self._running and not self._initialized:
            return
        await self.scheduler.stop()
        await self.decisions.stop()
        await self.analyzer.detach(self.event_bus)
        await self.learner.detach(self.event_bus)
        for sub_id in self._subscriptions:
            await self.event_bus.unsubscribe(sub_id)
        self._subscriptions.clear()
        if self.bridge is not None:
            await self.bridge.stop()
        await self.engine.shutdown()
        await self.channel.shutdown()
        await self.queue_client.close()
        self._running = False
        self._initialized = False
        logger.info("Orchestrator stopped")

    async def reload(self, source: Optional[TaskSource] = None) -> TaskSet:
        """Replace the task set. An invalid source leaves the current one active."""
        if source is None:
            source = self._task_source if self._task_source is not None else self.settings.tasks_config_path
        task_set = load_task_definitions(source)
        self._task_source = source
        self._apply_task_set(task_set)
        if self._running:
            await self.scheduler.reload(task_set)
        logger.info("Reloaded %d task definitions (version=%s)", len(task_set), task_set.version)
        return task_set

    # ── Operations ───────────────────────────────────────────────────

    async def trigger_task(self, task_id: str, payload: Optional[Dict[str, Any]] = None) -> bool:
        """Fire *task_id* on demand.

        Returns:
            False when the task exists but is disabled

        Raises:
            KeyError: unknown task id
        """
        if self._task_set is None or task_id not in self._task_set:
            raise KeyError(task_id)
        if not self._task_set[task_id].enabled:
            logger.warning("Ignoring manual trigger of disabled task %s", task_id)
            return False
        await self.event_bus.publish(manual_event(task_id), payload or {}, source="manual")
        return True

    def recommend(self, task_id: str, urgency: str = "medium") -> SchedulingRecommendation:
        """Learned start time and priority adjustment for *task_id*.

        Raises:
            KeyError: unknown task id
        """
        if self._task_set is None or task_id not in self._task_set:
            raise KeyError(task_id)
        return self.learner.recommend(task_id, Urgency(urgency))

    async def get_queue_stats(self, topic: str) -> Dict[str, Any]:
        if self.bridge is None:
            raise QueueError("Queue bridge is not connected")
        return await self.bridge.queue_stats(topic)

    async def purge_queue(self, topic: str) -> int:
        if self.bridge is None:
            raise QueueError("Queue bridge is not connected")
        return await self.bridge.purge(topic)

    async def publish_event(self, event: str, payload: Optional[Dict[str, Any]] = None) -> int:
        """Publish a trigger event; returns the number of subscribed handlers."""
        listeners = self.event_bus.subscriber_count(event)
        await self.scheduler.trigger(event, payload)
        return listeners

    def get_status(self) -> Dict[str, Any]:
        analysis = self.analyzer.latest
        return {
            "app": self.settings.app_name,
            "version": self.settings.app_version,
            "running": self._running,
            "tasks": self._task_set.stats if self._task_set is not None else None,
            "registrations": len(self.scheduler.registrations),
            "engine": self.engine.stats,
            "queue": self.bridge.stats if self.bridge is not None else None,
            "agents": {
                "local": self.agents.agent_ids,
                "remote": self.channel.get_status(),
            },
            "decisions": {
                "active": len(self.decisions.active_decisions),
                "deferred": self.decisions.deferred_count(),
                "cycles": self.decisions.cycle_count,
            },
            "system_health": analysis.system_health if analysis else None,
        }

    # ── Internal helpers ─────────────────────────────────────────────

    def _apply_task_set(self, task_set: TaskSet) -> None:
        self._task_set = task_set
        self.engine.config_version = task_set.version
        self.decisions.update_tasks(task_set)
        if self.bridge is not None:
            self.bridge.update_tasks(task_set)

    async def _forward_task_request(self, data: Dict[str, Any]) -> None:
        if self.bridge is None:
            logger.warning("Dropping task request from %s: no queue", data.get("agent_id"))
            return
        body = data.get("data")
        message = QueueMessage(
            task_id=data.get("task_id") or f"agent_request_{uuid.uuid4().hex[:8]}",
            task_type="agent_request",
            agent_type=data.get("agent_type"),
            priority=data.get("priority") or "medium",
            data=body if isinstance(body, dict) else {"payload": body},
            correlation_id=data.get("correlation_id"),
        )
        await self.bridge.publish_task(message)

    async def _apply_retention(self, data: Dict[str, Any]) -> None:
        await self.engine.prune()
