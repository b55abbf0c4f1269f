"""Decision engine: the feedback loop from analysis back into execution.

Each cycle turns the latest PerformanceAnalysis into OrchestrationDecisions:

- ``priority_boost`` for tasks of agents completing too few executions
- ``schedule`` for the task mapped to each detected bottleneck
- ``agent_reassign`` for tasks of inefficient agents
- ``cancel`` for tasks with redundant concurrent runs

Only one decision per task is active; a newer one supersedes it. Decisions
whose confidence exceeds ``settings.confidence_threshold`` are applied.

Failures that exhausted their retries are classified separately: a
recoverable failure becomes a ``reschedule`` decision, anything else
abandons the task.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

from taskweave.analytics.failure_classifier import FailureClassifier, FailurePattern
from taskweave.analytics.performance_analyzer import PerformanceAnalysis, PerformanceAnalyzer
from taskweave.config.settings import Settings, get_settings
from taskweave.enhanced_logging import track_performance
from taskweave.interfaces.event_bus import EventType, IEventBus
from taskweave.interfaces.queue import QueueMessage
from taskweave.messaging.queue_bridge import QUEUE_CATEGORY, QueueBridge
from taskweave.scheduling.execution_engine import ExecutionEngine
from taskweave.scheduling.execution_history import utcnow
from taskweave.scheduling.task_definitions import Task, TaskSet

logger = logging.getLogger(__name__)

SleepFn = Callable[[float], Awaitable[Any]]


class DecisionAction(str, Enum):
    SCHEDULE = "schedule"
    RESCHEDULE = "reschedule"
    CANCEL = "cancel"
    PRIORITY_BOOST = "priority_boost"
    AGENT_REASSIGN = "agent_reassign"


@dataclass
class OrchestrationDecision:
    """A recommendation for one task."""

    action: DecisionAction
    task_id: str
    reason: str
    confidence: float
    suggested_timing: Optional[datetime] = None
    priority_adjustment: Optional[str] = None
    agent_preference: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    applied: bool = False
    id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])

    def __post_init__(self) -> None:
        if not 0.0 <= self.confidence <= 1.0:
            raise ValueError(f"confidence must be within [0, 1], got {self.confidence}")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "action": self.action.value,
            "task_id": self.task_id,
            "reason": self.reason,
            "confidence": self.confidence,
            "suggested_timing": self.suggested_timing.isoformat() if self.suggested_timing else None,
            "priority_adjustment": self.priority_adjustment,
            "agent_preference": self.agent_preference,
            "created_at": self.created_at.isoformat(),
            "applied": self.applied,
        }


class DecisionEngine:
    """Makes, records and applies orchestration decisions."""

    def __init__(
        self,
        engine: ExecutionEngine,
        analyzer: PerformanceAnalyzer,
        event_bus: IEventBus,
        settings: Optional[Settings] = None,
        *,
        classifier: Optional[FailureClassifier] = None,
        queue_bridge: Optional[QueueBridge] = None,
        sleep: SleepFn = asyncio.sleep,
    ) -> None:
        self._engine = engine
        self._analyzer = analyzer
        self._bus = event_bus
        self._settings = settings or get_settings()
        self._classifier = classifier or FailureClassifier(self._settings)
        self._bridge = queue_bridge
        self._sleep = sleep

        self._lock = asyncio.Lock()
        self._tasks: Optional[TaskSet] = None
        self._active: Dict[str, OrchestrationDecision] = {}
        self._deferred: Dict[str, Set[asyncio.Task]] = {}
        self._recoveries: Dict[str, int] = {}
        self._subscriptions: List[str] = []
        self._loop: Optional[asyncio.Task] = None
        self.cycle_count = 0

    # ── Configuration ────────────────────────────────────────────────

    def update_tasks(self, task_set: TaskSet) -> None:
        """Switch to *task_set*, dropping deferred runs of removed or disabled tasks."""
        self._tasks = task_set
        for task_id in list(self._deferred):
            task = task_set.get(task_id)
            if task is None or not task.enabled:
                dropped = self.cancel_deferred(task_id)
                if dropped:
                    logger.info("Dropped %d deferred runs of %s", dropped, task_id)

    def set_queue_bridge(self, bridge: Optional[QueueBridge]) -> None:
        self._bridge = bridge

    @property
    def active_decisions(self) -> Dict[str, OrchestrationDecision]:
        return dict(self._active)

    def get_decision(self, task_id: str) -> Optional[OrchestrationDecision]:
        return self._active.get(task_id)

    def deferred_count(self, task_id: Optional[str] = None) -> int:
        if task_id is not None:
            return len(self._deferred.get(task_id, ()))
        return sum(len(handles) for handles in self._deferred.values())

    def recovery_count(self, task_id: str) -> int:
        return self._recoveries.get(task_id, 0)

    # ── Lifecycle ────────────────────────────────────────────────────

    async def start(self) -> None:
        """Listen for failures and run the periodic analysis loop."""
        self._subscriptions.append(
            await self._bus.subscribe(EventType.TASK_FAILED, self.handle_task_failure)
        )
        self._subscriptions.append(
            await self._bus.subscribe(EventType.TASK_COMPLETED, self._on_task_completed)
        )
        if self._loop is None:
            self._loop = asyncio.create_task(self._cycle_loop(), name="decision-cycle")
        logger.info(
            "Decision engine started (interval %.0fs, threshold %.2f)",
            self._settings.analysis_interval_seconds, self._settings.confidence_threshold,
        )

    async def stop(self) -> None:
        if self._loop is not None:
            self._loop.cancel()
            await asyncio.gather(self._loop, return_exceptions=True)
            self._loop = None
        for sub_id in self._subscriptions:
            await self._bus.unsubscribe(sub_id)
        self._subscriptions.clear()
        handles = [h for handles in self._deferred.values() for h in handles]
        for handle in handles:
            handle.cancel()
        if handles:
            await asyncio.gather(*handles, return_exceptions=True)
        self._deferred.clear()

    async def _cycle_loop(self) -> None:
        while True:
            await self._sleep(self._settings.analysis_interval_seconds)
            try:
                await self.run_cycle()
            except Exception:
                logger.exception("Decision cycle failed")

    # ── Decision cycle ───────────────────────────────────────────────

    @track_performance(operation="decision_cycle")
    async def run_cycle(self) -> List[OrchestrationDecision]:
        """Analyse, decide, apply. Returns the decisions made this cycle."""
        analysis = self._analyzer.analyze()
        decisions = self.make_decisions(analysis)
        for decision in decisions:
            await self.submit(decision)
        self.cycle_count += 1

        applied = sum(1 for d in decisions if d.applied)
        await self._bus.publish(
            EventType.SYSTEM_ANALYSIS_COMPLETE,
            {
                "decisions": len(decisions),
                "applied": applied,
                "bottlenecks": list(analysis.bottlenecks),
                "system_health": analysis.system_health,
                "system_load": analysis.system_load,
            },
            source="decision_engine",
        )
        logger.info(
            "Analysis cycle %d: %d decisions (%d applied), health %.2f",
            self.cycle_count, len(decisions), applied, analysis.system_health,
        )
        return decisions

    def make_decisions(self, analysis: PerformanceAnalysis) -> List[OrchestrationDecision]:
        settings = self._settings
        tasks = list(self._tasks.enabled()) if self._tasks is not None else []
        decisions: List[OrchestrationDecision] = []

        for agent, snapshot in analysis.snapshots.items():
            if snapshot.completion_rate >= settings.completion_rate_threshold:
                continue
            for task in self._tasks_of(tasks, agent):
                decisions.append(OrchestrationDecision(
                    action=DecisionAction.PRIORITY_BOOST,
                    task_id=task.id,
                    reason=f"Low completion rate for {agent}: {snapshot.completion_rate:.0%}",
                    confidence=0.9,
                    priority_adjustment="high",
                ))

        for bottleneck in analysis.bottlenecks:
            task_id = settings.bottleneck_tasks.get(bottleneck)
            if task_id is None:
                continue
            decisions.append(OrchestrationDecision(
                action=DecisionAction.SCHEDULE,
                task_id=task_id,
                reason=f"Bottleneck detected: {bottleneck}",
                confidence=0.85,
                suggested_timing=utcnow() + timedelta(seconds=settings.schedule_delay_seconds),
            ))

        efficiency = analysis.agent_efficiency
        if len(efficiency) > 1:
            best = max(efficiency, key=efficiency.get)
            for agent, score in efficiency.items():
                if score >= settings.efficiency_threshold or agent == best:
                    continue
                for task in self._tasks_of(tasks, agent):
                    decisions.append(OrchestrationDecision(
                        action=DecisionAction.AGENT_REASSIGN,
                        task_id=task.id,
                        reason=f"Low efficiency for {agent}: {score:.0%}",
                        confidence=0.7,
                        agent_preference=best,
                    ))

        for task_id in analysis.redundant_tasks():
            decisions.append(OrchestrationDecision(
                action=DecisionAction.CANCEL,
                task_id=task_id,
                reason="Redundant concurrent executions",
                confidence=0.8,
            ))
        return decisions

    async def record(self, decision: OrchestrationDecision) -> Optional[OrchestrationDecision]:
        """Make *decision* the active one for its task; returns the superseded one."""
        async with self._lock:
            previous = self._active.get(decision.task_id)
            self._active[decision.task_id] = decision
        if previous is not None:
            logger.debug(
                "Decision %s for %s superseded by %s",
                previous.action.value, decision.task_id, decision.action.value,
            )
        return previous

    async def submit(self, decision: OrchestrationDecision) -> OrchestrationDecision:
        """Record *decision* and apply it when its confidence clears the threshold."""
        await self.record(decision)
        if decision.confidence > self._settings.confidence_threshold:
            await self.apply(decision)
        await self._bus.publish(
            EventType.DECISION_MADE,
            {"decision": decision.to_dict(), "applied": decision.applied},
            source="decision_engine",
        )
        return decision

    async def apply(self, decision: OrchestrationDecision) -> bool:
        """Carry out *decision*. Returns whether it had an effect."""
        action = decision.action
        if action in (DecisionAction.SCHEDULE, DecisionAction.RESCHEDULE):
            applied = await self._apply_schedule(decision)
        elif action is DecisionAction.PRIORITY_BOOST:
            applied = await self._apply_priority_boost(decision)
        elif action is DecisionAction.AGENT_REASSIGN:
            applied = decision.agent_preference is not None
            if applied:
                self._engine.reassign(decision.task_id, decision.agent_preference)
        else:
            logger.warning("Cancel advised for %s: %s", decision.task_id, decision.reason)
            self._engine.cancel_pending_retries(decision.task_id)
            self.cancel_deferred(decision.task_id)
            applied = True

        decision.applied = applied
        if applied:
            logger.info(
                "Applied %s for %s (confidence %.2f): %s",
                action.value, decision.task_id, decision.confidence, decision.reason,
            )
        return applied

    def cancel_deferred(self, task_id: str) -> int:
        handles = self._deferred.get(task_id, set())
        for handle in list(handles):
            handle.cancel()
        return len(handles)

    # ── Failure recovery ─────────────────────────────────────────────

    async def handle_task_failure(self, data: Dict[str, Any]) -> Optional[OrchestrationDecision]:
        """Handle a ``task_failed`` event whose retries are exhausted."""
        if data.get("will_retry"):
            return None
        task: Optional[Task] = data.get("task")
        if task is None or task.category == QUEUE_CATEGORY:
            return None

        error = data.get("error")
        if error is None and data.get("execution") is not None:
            error = data["execution"].error
        pattern = self._classifier.classify(error)

        if not pattern.is_recoverable:
            await self._abandon(task, pattern.reason)
            return None
        if self._recoveries.get(task.id, 0) >= self._settings.max_recovery_reschedules:
            await self._abandon(
                task, f"Recovery limit of {self._settings.max_recovery_reschedules} reached: {pattern.reason}"
            )
            return None

        decision = self._recovery_decision(task, pattern)
        await self.record(decision)
        self._recoveries[task.id] = self._recoveries.get(task.id, 0) + 1
        logger.info(
            "Recovery suggested for %s: %s in %.0fs",
            task.id, pattern.kind.value, pattern.backoff_seconds,
        )
        await self._bus.publish(
            EventType.RECOVERY_SUGGESTED,
            {"task": task, "decision": decision.to_dict(), "pattern": pattern.to_dict()},
            source="decision_engine",
        )
        if self._settings.auto_recover and self._lookup(task.id) is not None:
            await self.apply(decision)
        return decision

    def _recovery_decision(self, task: Task, pattern: FailurePattern) -> OrchestrationDecision:
        return OrchestrationDecision(
            action=DecisionAction.RESCHEDULE,
            task_id=task.id,
            reason=f"Recoverable {pattern.kind.value} failure: {pattern.reason}",
            confidence=pattern.confidence,
            suggested_timing=utcnow() + timedelta(seconds=pattern.backoff_seconds),
        )

    async def _abandon(self, task: Task, reason: str) -> None:
        logger.error("Abandoning %s: %s", task.id, reason)
        self._recoveries.pop(task.id, None)
        await self._bus.publish(
            EventType.TASK_ABANDONED, {"task": task, "reason": reason}, source="decision_engine"
        )

    def _on_task_completed(self, data: Dict[str, Any]) -> None:
        task = data.get("task")
        if task is not None:
            self._recoveries.pop(task.id, None)

    # ── Application helpers ──────────────────────────────────────────

    async def _apply_schedule(self, decision: OrchestrationDecision) -> bool:
        if self._is_disabled(decision.task_id):
            logger.warning("Not scheduling disabled task %s", decision.task_id)
            return False
        task = self._lookup(decision.task_id)
        delay = 0.0
        if decision.suggested_timing is not None:
            delay = max(0.0, (decision.suggested_timing - utcnow()).total_seconds())
        if task is not None:
            self._defer(task, delay)
            return True
        if self._bridge is not None:
            return await self._bridge.publish_task(QueueMessage(
                task_id=decision.task_id,
                task_type=decision.action.value,
                priority=decision.priority_adjustment or "medium",
                scheduled_for=decision.suggested_timing,
                data={"reason": decision.reason},
            ))
        logger.warning("Cannot schedule unknown task %s without a queue", decision.task_id)
        return False

    async def _apply_priority_boost(self, decision: OrchestrationDecision) -> bool:
        task = self._lookup(decision.task_id)
        if task is None:
            logger.warning("Cannot boost unknown or disabled task %s", decision.task_id)
            return False
        if self._bridge is not None:
            # The bridge runs the configured task; its own retry policy applies
            return await self._bridge.publish_task(QueueMessage(
                task_id=task.id,
                task_type=DecisionAction.PRIORITY_BOOST.value,
                agent_type=self._engine.agent_for(task),
                priority=decision.priority_adjustment or "high",
                data={"reason": decision.reason},
                max_retries=0,
            ))
        self._defer(task, 0.0)
        return True

    def _lookup(self, task_id: str) -> Optional[Task]:
        """Enabled task *task_id* from the current set, else None."""
        if self._tasks is None:
            return None
        task = self._tasks.get(task_id)
        if task is None or not task.enabled:
            return None
        return task

    def _is_disabled(self, task_id: str) -> bool:
        task = self._tasks.get(task_id) if self._tasks is not None else None
        return task is not None and not task.enabled

    def _tasks_of(self, tasks: List[Task], agent: str) -> List[Task]:
        return [t for t in tasks if self._engine.agent_for(t) == agent]

    def _defer(self, task: Task, delay: float) -> None:
        handle = asyncio.create_task(self._run_later(task.id, delay), name=f"deferred:{task.id}")
        handles = self._deferred.setdefault(task.id, set())
        handles.add(handle)
        handle.add_done_callback(handles.discard)

    async def _run_later(self, task_id: str, delay: float) -> None:
        if delay > 0:
            await self._sleep(delay)
        task = self._lookup(task_id)
        if task is None:
            logger.info("Skipping deferred run of %s: no longer an enabled task", task_id)
            return
        await self._engine.execute(task)
