"""Execution engine: runs one trigger of a task through to a terminal state.

For every invocation the engine
1. allocates a TaskExecution and registers it as active,
2. checks upstream dependencies against the history freshness window,
3. resolves and invokes the agent under a timeout,
4. builds the output envelope and hands it to the sink without waiting,
5. on failure, schedules a retry as a deferred asyncio task until the
   task's retry policy is exhausted.

Errors never escape execute(): every outcome is an execution record plus a
``task_completed`` / ``task_failed`` event.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from functools import partial
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

from taskweave.agents.registry import AgentRegistry
from taskweave.config.settings import Settings, get_settings
from taskweave.exceptions import (
    ConcurrentExecutionRejected,
    DependencyNotMet,
    ExecutionTimeoutError,
    UnrecoverableError,
    describe_error,
)
from taskweave.interfaces.event_bus import EventType, IEventBus
from taskweave.interfaces.output_sink import IOutputSink
from taskweave.scheduling.execution_history import (
    ExecutionHistory,
    ExecutionStatus,
    TaskExecution,
    current_execution,
    utcnow,
)
from taskweave.scheduling.task_definitions import Task

logger = logging.getLogger(__name__)

SleepFn = Callable[[float], Awaitable[Any]]

# Failures that another attempt cannot fix
_NON_RETRYABLE = (DependencyNotMet, ConcurrentExecutionRejected, UnrecoverableError)


class ConcurrencyPolicy(str, Enum):
    ALLOW_CONCURRENT = "allow_concurrent"
    SINGLE_FLIGHT = "single_flight"


@dataclass(frozen=True)
class RetryDecision:
    """Whether a failed attempt gets another one, and when."""

    should_retry: bool
    attempt: int  # attempt that just failed (1-indexed)
    delay: float = 0.0
    message: str = ""


class ExecutionEngine:
    """Runs tasks against agents and records every attempt."""

    def __init__(
        self,
        agents: AgentRegistry,
        event_bus: IEventBus,
        *,
        history: Optional[ExecutionHistory] = None,
        output_sink: Optional[IOutputSink] = None,
        settings: Optional[Settings] = None,
        config_version: Optional[str] = None,
        sleep: SleepFn = asyncio.sleep,
    ) -> None:
        self._settings = settings or get_settings()
        self._agents = agents
        self._bus = event_bus
        self._history = history if history is not None else ExecutionHistory(self._settings.history_max_records)
        self._sink = output_sink
        self._sleep = sleep
        self.config_version = config_version

        self._policy = ConcurrencyPolicy(self._settings.concurrency_policy)
        self._freshness = timedelta(hours=self._settings.freshness_window_hours)
        self._timeout = self._settings.execution_timeout_seconds

        self._lock = asyncio.Lock()
        # execution_id → record, for attempts currently calling their agent
        self._active: Dict[str, TaskExecution] = {}
        # lineage_id → deferred retry task
        self._pending_retries: Dict[str, asyncio.Task] = {}
        # lineages whose retry is still waiting out its backoff
        self._backing_off: Set[str] = set()
        # lineage_id → the RETRYING record its pending retry will run
        self._retry_records: Dict[str, TaskExecution] = {}
        self._lineage_tasks: Dict[str, str] = {}
        self._agent_overrides: Dict[str, str] = {}
        self._sink_writes: Set[asyncio.Task] = set()

    # ── Public API ───────────────────────────────────────────────────

    @property
    def history(self) -> ExecutionHistory:
        return self._history

    async def execute(self, task: Task, payload: Any = None) -> TaskExecution:
        """Run the first attempt of a new lineage.

        Returns once the first attempt is terminal. Retries continue in the
        background; use wait_for_lineage() for the final outcome.
        """
        lineage_id = uuid.uuid4().hex[:12]
        execution = self._new_execution(task, lineage_id, 1, payload, ExecutionStatus.RUNNING)

        async with self._lock:
            rejected = (
                self._policy is ConcurrencyPolicy.SINGLE_FLIGHT
                and self._has_inflight(task.id)
            )
            self._lineage_tasks[lineage_id] = task.id
            await self._history.append(execution)
            if not rejected:
                self._active[execution.id] = execution

        if rejected:
            logger.warning("Rejected %s: lineage already in flight", task.id)
            await self._fail(task, execution, ConcurrentExecutionRejected(task.id), payload)
            return execution

        await self._run_attempt(task, execution, payload)
        return execution

    async def wait_for_lineage(self, lineage_id: str) -> Optional[TaskExecution]:
        """Wait until no retry is pending for *lineage_id*; return its last record."""
        while True:
            pending = self._pending_retries.get(lineage_id)
            if pending is None:
                break
            await asyncio.wait({pending})
        return self._history.latest_for_lineage(lineage_id)

    def get_history(self, task_id: Optional[str] = None) -> List[TaskExecution]:
        if task_id is None:
            return self._history.all()
        return self._history.for_task(task_id)

    def get_running(self) -> List[TaskExecution]:
        return list(self._active.values())

    @property
    def running_count(self) -> int:
        return len(self._active)

    def running_by_task(self) -> Dict[str, int]:
        counts: Dict[str, int] = {}
        for execution in self._active.values():
            counts[execution.task_id] = counts.get(execution.task_id, 0) + 1
        return counts

    def pending_retry_count(self, task_id: Optional[str] = None) -> int:
        return sum(
            1 for lineage in self._pending_retries
            if task_id is None or self._lineage_tasks.get(lineage) == task_id
        )

    def reassign(self, task_id: str, agent_id: str) -> None:
        """Route subsequent executions of *task_id* to *agent_id*."""
        self._agent_overrides[task_id] = agent_id
        logger.info("Reassigned %s to agent %s", task_id, agent_id)

    def agent_for(self, task: Task) -> str:
        return self._agent_overrides.get(task.id, task.agent)

    def cancel_pending_retries(self, task_id: str) -> int:
        """Cancel deferred retries of *task_id*. In-flight attempts are untouched.

        Returns:
            Number of retries cancelled.
        """
        cancelled = 0
        for lineage, handle in list(self._pending_retries.items()):
            if self._lineage_tasks.get(lineage) == task_id and lineage in self._backing_off:
                handle.cancel()
                cancelled += 1
        if cancelled:
            logger.info("Cancelled %d pending retries of %s", cancelled, task_id)
        return cancelled

    async def prune(self, before: Optional[datetime] = None) -> int:
        """Apply the retention policy to the history."""
        if before is None:
            before = utcnow() - timedelta(hours=self._settings.history_retention_hours)
        return await self._history.prune(before)

    async def shutdown(self) -> None:
        """Cancel retries still backing off, let running ones finish, flush the sink."""
        handles = list(self._pending_retries.items())
        for lineage, handle in handles:
            if lineage in self._backing_off:
                handle.cancel()
        handles = [handle for _, handle in handles]
        if handles:
            await asyncio.gather(*handles, return_exceptions=True)
        if self._sink_writes:
            await asyncio.gather(*list(self._sink_writes), return_exceptions=True)

    @property
    def stats(self) -> Dict[str, Any]:
        return {
            "running": len(self._active),
            "pending_retries": len(self._pending_retries),
            "concurrency_policy": self._policy.value,
            "history": self._history.stats,
        }

    # ── Attempt lifecycle ────────────────────────────────────────────

    async def _run_attempt(self, task: Task, execution: TaskExecution, payload: Any) -> None:
        await self._bus.publish(EventType.TASK_STARTED, {"task": task, "execution": execution})

        try:
            self._check_dependencies(task)
            agent = self._agents.resolve(self.agent_for(task))
            result = await self._invoke(agent, task, execution, payload)
        except Exception as exc:
            await self._fail(task, execution, exc, payload)
            return

        await self._complete(task, execution, result)

    async def _invoke(self, agent: Any, task: Task, execution: TaskExecution, payload: Any) -> Any:
        token = current_execution.set(execution)
        try:
            return await asyncio.wait_for(agent.run(dict(task.config), payload), self._timeout)
        except asyncio.TimeoutError as exc:
            raise ExecutionTimeoutError(
                f"Task {task.id} timed out after {self._timeout}s"
            ) from exc
        finally:
            current_execution.reset(token)

    def _check_dependencies(self, task: Task) -> None:
        now = utcnow()
        for dep in task.dependencies:
            latest = self._history.latest_completed(dep)
            if latest is None:
                raise DependencyNotMet(dep)
            finished = latest.completed_at or latest.started_at
            age = now - finished
            if age > self._freshness:
                hours = age.total_seconds() / 3600
                raise DependencyNotMet(
                    dep, f"Dependency too old: {dep} last completed {hours:.1f} hours ago"
                )

    async def _complete(self, task: Task, execution: TaskExecution, result: Any) -> None:
        envelope = self._build_envelope(task, execution, result)
        async with self._lock:
            execution.status = ExecutionStatus.COMPLETED
            execution.completed_at = utcnow()
            execution.result = result
            execution.output_data = envelope
            self._active.pop(execution.id, None)

        self._write_output(envelope)
        logger.info(
            "Task %s completed (attempt %d, %.2fs)",
            task.id, execution.attempt, execution.duration or 0.0,
        )
        await self._bus.publish(
            EventType.TASK_COMPLETED,
            {"task": task, "execution": execution, "output_data": envelope},
        )

    async def _fail(
        self, task: Task, execution: TaskExecution, error: BaseException, payload: Any
    ) -> None:
        async with self._lock:
            execution.status = ExecutionStatus.FAILED
            execution.completed_at = utcnow()
            execution.error = describe_error(error)
            execution.error_type = type(error).__name__
            self._active.pop(execution.id, None)

        decision = self._decide_retry(task, execution, error)
        logger.warning(
            "Task %s failed (attempt %d/%d): %s",
            task.id, execution.attempt, task.retry_policy.max_attempts, execution.error,
        )
        await self._bus.publish(
            EventType.TASK_FAILED,
            {
                "task": task,
                "execution": execution,
                "error": error,
                "will_retry": decision.should_retry,
            },
        )
        if decision.should_retry:
            await self._schedule_retry(task, execution, payload, decision.delay)

    def _decide_retry(self, task: Task, execution: TaskExecution, error: BaseException) -> RetryDecision:
        policy = task.retry_policy
        if isinstance(error, _NON_RETRYABLE):
            return RetryDecision(False, execution.attempt, message="not retryable")
        if execution.attempt >= policy.max_attempts:
            return RetryDecision(False, execution.attempt, message="attempts exhausted")
        return RetryDecision(True, execution.attempt, delay=policy.backoff_seconds)

    # ── Retries ──────────────────────────────────────────────────────

    async def _schedule_retry(
        self, task: Task, previous: TaskExecution, payload: Any, delay: float
    ) -> None:
        retry = self._new_execution(
            task, previous.lineage_id, previous.attempt + 1, payload, ExecutionStatus.RETRYING
        )
        await self._history.append(retry)
        handle = asyncio.create_task(self._retry_after(task, retry, payload, delay))
        self._pending_retries[retry.lineage_id] = handle
        self._retry_records[retry.lineage_id] = retry
        self._backing_off.add(retry.lineage_id)
        handle.add_done_callback(partial(self._retry_done, retry.lineage_id))
        logger.info("Retrying %s in %.1fs (attempt %d)", task.id, delay, retry.attempt)

    async def _retry_after(self, task: Task, retry: TaskExecution, payload: Any, delay: float) -> None:
        await self._sleep(delay)
        async with self._lock:
            self._backing_off.discard(retry.lineage_id)
            retry.started_at = utcnow()
            retry.status = ExecutionStatus.RUNNING
            self._active[retry.id] = retry
        await self._bus.publish(EventType.TASK_RETRYING, {"task": task, "execution": retry})
        await self._run_attempt(task, retry, payload)

    def _retry_done(self, lineage_id: str, handle: asyncio.Task) -> None:
        if self._pending_retries.get(lineage_id) is not handle:
            return
        self._pending_retries.pop(lineage_id, None)
        self._backing_off.discard(lineage_id)
        retry = self._retry_records.pop(lineage_id, None)
        if handle.cancelled() and retry is not None and not retry.is_terminal:
            retry.status = ExecutionStatus.FAILED
            retry.completed_at = utcnow()
            retry.error = "Retry cancelled"
            retry.error_type = "CancelledError"
            self._active.pop(retry.id, None)
        elif not handle.cancelled() and handle.exception() is not None:
            logger.error("Retry of lineage %s crashed", lineage_id, exc_info=handle.exception())

    # ── Internal helpers ─────────────────────────────────────────────

    def _has_inflight(self, task_id: str) -> bool:
        if any(e.task_id == task_id for e in self._active.values()):
            return True
        return self.pending_retry_count(task_id) > 0

    def _new_execution(
        self,
        task: Task,
        lineage_id: str,
        attempt: int,
        payload: Any,
        status: ExecutionStatus,
    ) -> TaskExecution:
        started = utcnow()
        return TaskExecution(
            id=f"{task.id}_{int(started.timestamp() * 1000)}_{uuid.uuid4().hex[:6]}",
            task_id=task.id,
            lineage_id=lineage_id,
            agent=self.agent_for(task),
            attempt=attempt,
            status=status,
            started_at=started,
            trigger_payload=payload,
        )

    def _build_envelope(self, task: Task, execution: TaskExecution, result: Any) -> Dict[str, Any]:
        return {
            "task_id": task.id,
            "task_name": task.display_name,
            "executed_at": datetime.now(timezone.utc).isoformat(),
            "output_format": task.output.format,
            "output_schema": task.output.schema_name,
            "destination": task.output.destination,
            "data": result,
            "metadata": {
                "agent": execution.agent,
                "config": dict(task.config),
                "config_version": self.config_version,
                "execution_id": execution.id,
                "attempt": execution.attempt,
            },
        }

    def _write_output(self, envelope: Dict[str, Any]) -> None:
        if self._sink is None:
            return
        write = asyncio.create_task(self._sink.write(envelope))
        self._sink_writes.add(write)
        write.add_done_callback(self._sink_write_done)

    def _sink_write_done(self, write: asyncio.Task) -> None:
        self._sink_writes.discard(write)
        if not write.cancelled() and write.exception() is not None:
            logger.error("Output sink write failed", exc_info=write.exception())
