"""Scheduler: turns a TaskSet into timers and event subscriptions.

- Enabled scheduled tasks get one asyncio timer each, firing on their
  cron or interval expression in the configured timezone.
- Enabled triggered tasks get a bus subscription on their trigger event.
- Every enabled task is also reachable on demand via ``manual_<task_id>``.

Firing never waits for the execution: each run is spawned as a background
task so a slow agent cannot delay the next timer tick.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

from taskweave.config.settings import Settings, get_settings
from taskweave.interfaces.event_bus import IEventBus, manual_event
from taskweave.scheduling.execution_engine import ExecutionEngine
from taskweave.scheduling.schedule_expression import ScheduleExpression
from taskweave.scheduling.task_definitions import Task, TaskKind, TaskSet

logger = logging.getLogger(__name__)


# ── Value objects ────────────────────────────────────────────────────


@dataclass(frozen=True)
class Registration:
    """One active timer or subscription."""

    task_id: str
    kind: str  # "timer" | "trigger" | "manual"
    key: str  # schedule expression or event name
    handle: str  # subscription id, or timer task name

    def to_dict(self) -> Dict[str, str]:
        return {"task_id": self.task_id, "kind": self.kind, "key": self.key}


# ── Scheduler ────────────────────────────────────────────────────────


class Scheduler:
    """Registers timers and triggers for a TaskSet and fires the engine."""

    def __init__(
        self,
        engine: ExecutionEngine,
        event_bus: IEventBus,
        settings: Optional[Settings] = None,
        *,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._engine = engine
        self._bus = event_bus
        self._settings = settings or get_settings()
        self._sleep = sleep
        self._lock = asyncio.Lock()
        self._registrations: List[Registration] = []
        self._timers: Dict[str, asyncio.Task] = {}
        self._inflight: Set[asyncio.Task] = set()
        self._task_set: Optional[TaskSet] = None
        self._running = False
        self.fire_count = 0

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def registrations(self) -> List[Registration]:
        return list(self._registrations)

    @property
    def task_set(self) -> Optional[TaskSet]:
        return self._task_set

    async def start(self, task_set: TaskSet) -> None:
        async with self._lock:
            if self._running:
                await self._teardown()
            self._task_set = task_set
            self._running = True
            await self._register(task_set)
        logger.info(
            "Scheduler started: %d timers, %d subscriptions",
            len(self._timers), len(self._registrations) - len(self._timers),
        )

    async def stop(self) -> None:
        """Cancel every timer and subscription. No firing happens after this returns."""
        async with self._lock:
            self._running = False
            await self._teardown()
        logger.info("Scheduler stopped")

    async def reload(self, task_set: TaskSet) -> None:
        """Atomically replace all registrations with those of *task_set*."""
        async with self._lock:
            await self._teardown()
            self._task_set = task_set
            self._running = True
            await self._register(task_set)
        logger.info("Scheduler reloaded (version=%s)", task_set.version)

    async def trigger(self, event: str, payload: Optional[Dict[str, Any]] = None) -> None:
        """Publish *event* on the bus; matching triggered tasks fire."""
        await self._bus.publish(event, payload or {}, source="scheduler")

    async def wait_idle(self) -> None:
        """Wait for every execution spawned so far to return its first attempt."""
        while self._inflight:
            await asyncio.gather(*list(self._inflight), return_exceptions=True)

    # ── Registration ─────────────────────────────────────────────────

    async def _register(self, task_set: TaskSet) -> None:
        for task in task_set.enabled():
            if task.schedule:
                expression = task.schedule_expression()
                timer = asyncio.create_task(
                    self._run_timer(task, expression), name=f"timer:{task.id}"
                )
                self._timers[task.id] = timer
                self._registrations.append(
                    Registration(task.id, "timer", expression.raw, timer.get_name())
                )
            if task.kind is TaskKind.TRIGGERED:
                sub_id = await self._bus.subscribe(task.trigger_event, self._on_event(task))
                self._registrations.append(
                    Registration(task.id, "trigger", task.trigger_event, sub_id)
                )
            name = manual_event(task.id)
            sub_id = await self._bus.subscribe(name, self._on_event(task))
            self._registrations.append(Registration(task.id, "manual", name, sub_id))

    async def _teardown(self) -> None:
        timers = list(self._timers.values())
        for timer in timers:
            timer.cancel()
        if timers:
            await asyncio.gather(*timers, return_exceptions=True)
        for reg in self._registrations:
            if reg.kind != "timer":
                await self._bus.unsubscribe(reg.handle)
        self._timers.clear()
        self._registrations.clear()

    # ── Firing ───────────────────────────────────────────────────────

    async def _run_timer(self, task: Task, expression: ScheduleExpression) -> None:
        tz = self._settings.tzinfo
        next_fire = expression.next_fire(datetime.now(tz))
        while True:
            delay = (next_fire - datetime.now(tz)).total_seconds()
            if delay > 0:
                await self._sleep(delay)
            logger.debug("Timer fired for %s (%s)", task.id, expression.raw)
            self._spawn(task, None)
            next_fire = expression.next_fire(next_fire)
            now = datetime.now(tz)
            if next_fire <= now:
                next_fire = expression.next_fire(now)

    def _on_event(self, task: Task) -> Callable[[Dict[str, Any]], None]:
        def handler(data: Dict[str, Any]) -> None:
            payload = {k: v for k, v in data.items() if k != "_source"}
            self._spawn(task, payload)
        return handler

    def _spawn(self, task: Task, payload: Any) -> None:
        if not self._running:
            return
        self.fire_count += 1
        run = asyncio.create_task(self._engine.execute(task, payload), name=f"run:{task.id}")
        self._inflight.add(run)
        run.add_done_callback(self._inflight.discard)
