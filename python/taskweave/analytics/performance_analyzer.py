"""Performance analysis over the trailing execution window.

Scores each agent (completion rate, efficiency against its expected
duration), detects bottlenecks, and derives suggestions and overall system
health. The analyzer is read-only: it looks at history and the engine's
running set and produces a PerformanceAnalysis; decisions are made
elsewhere.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from taskweave.config.settings import Settings, get_settings
from taskweave.enhanced_logging import track_performance
from taskweave.interfaces.event_bus import EventType, IEventBus
from taskweave.scheduling.execution_history import (
    ExecutionHistory,
    ExecutionStatus,
    TaskExecution,
    utcnow,
)

logger = logging.getLogger(__name__)

HIGH_SYSTEM_LOAD = "high_system_load"
TASK_QUEUE_BUILDUP = "task_queue_buildup"
CONSIDER_CONSOLIDATION = "consider_task_consolidation"
REBALANCE_WORKLOAD = "rebalance_agent_workload"
CANCEL_REDUNDANT_PREFIX = "cancel_redundant:"

# Agents tracked before consolidation is suggested
_CONSOLIDATION_AGENT_COUNT = 10
_EFFICIENCY_SPREAD = 0.3
_BUSY_RUNNING_COUNT = 15
_RECENT_FAILURE_LIMIT = 3


def category_bottleneck(key: str) -> str:
    """Bottleneck name for a category minimum, e.g. prospect → qualified_prospects_low."""
    return f"qualified_{key}s_low"


# ── Value objects ────────────────────────────────────────────────────


@dataclass(frozen=True)
class PerformanceSnapshot:
    agent: str
    total: int
    completed: int
    failed: int
    completion_rate: float
    average_duration: float
    expected_duration: float
    efficiency: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "agent": self.agent,
            "total": self.total,
            "completed": self.completed,
            "failed": self.failed,
            "completion_rate": round(self.completion_rate, 4),
            "average_duration": round(self.average_duration, 3),
            "expected_duration": self.expected_duration,
            "efficiency": round(self.efficiency, 4),
        }


@dataclass
class PerformanceAnalysis:
    """Result of one analysis pass."""

    snapshots: Dict[str, PerformanceSnapshot] = field(default_factory=dict)
    bottlenecks: List[str] = field(default_factory=list)
    suggestions: List[str] = field(default_factory=list)
    recommended_tasks: List[str] = field(default_factory=list)
    system_load: float = 0.0
    system_health: float = 1.0
    running_count: int = 0
    window_size: int = 0
    analysed_at: datetime = field(default_factory=utcnow)

    @property
    def agent_efficiency(self) -> Dict[str, float]:
        return {agent: s.efficiency for agent, s in self.snapshots.items()}

    @property
    def completion_rates(self) -> Dict[str, float]:
        return {agent: s.completion_rate for agent, s in self.snapshots.items()}

    def redundant_tasks(self) -> List[str]:
        return [
            s[len(CANCEL_REDUNDANT_PREFIX):]
            for s in self.suggestions
            if s.startswith(CANCEL_REDUNDANT_PREFIX)
        ]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "agents": {agent: s.to_dict() for agent, s in self.snapshots.items()},
            "agent_efficiency": self.agent_efficiency,
            "completion_rates": self.completion_rates,
            "bottlenecks": list(self.bottlenecks),
            "suggestions": list(self.suggestions),
            "recommended_tasks": list(self.recommended_tasks),
            "system_load": round(self.system_load, 4),
            "system_health": round(self.system_health, 4),
            "running_count": self.running_count,
            "window_size": self.window_size,
            "analysed_at": self.analysed_at.isoformat(),
        }


# ── Analyzer ─────────────────────────────────────────────────────────


class PerformanceAnalyzer:
    """Builds a PerformanceAnalysis from history and the running set."""

    def __init__(
        self,
        history: ExecutionHistory,
        settings: Optional[Settings] = None,
        *,
        running_by_task: Optional[Callable[[], Dict[str, int]]] = None,
    ) -> None:
        self._history = history
        self._settings = settings or get_settings()
        self._running_by_task = running_by_task or (lambda: {})
        self._latest: Optional[PerformanceAnalysis] = None
        self._subscriptions: List[str] = []
        self.analysis_count = 0

    @property
    def latest(self) -> Optional[PerformanceAnalysis]:
        return self._latest

    @track_performance
    def analyze(self) -> PerformanceAnalysis:
        settings = self._settings
        window = self._history.recent(settings.performance_window)
        running = self._running_by_task()
        running_count = sum(running.values())

        snapshots = self._snapshots(window)
        system_load = min(running_count / settings.max_concurrent_tasks, 1.0)

        analysis = PerformanceAnalysis(
            snapshots=snapshots,
            bottlenecks=self._bottlenecks(window, running_count, system_load),
            suggestions=self._suggestions(snapshots, running),
            recommended_tasks=[t for t in settings.always_active_tasks if not running.get(t)],
            system_load=system_load,
            system_health=self._health(window, running_count, system_load),
            running_count=running_count,
            window_size=len(window),
        )
        self._latest = analysis
        self.analysis_count += 1
        logger.debug(
            "Analysis: %d agents, load %.2f, health %.2f, bottlenecks=%s",
            len(snapshots), system_load, analysis.system_health, analysis.bottlenecks,
        )
        return analysis

    async def attach(self, event_bus: IEventBus) -> None:
        """Re-analyse whenever an attempt finishes."""
        for event in (EventType.TASK_COMPLETED, EventType.TASK_FAILED):
            self._subscriptions.append(await event_bus.subscribe(event, self._on_execution_event))

    async def detach(self, event_bus: IEventBus) -> None:
        for sub_id in self._subscriptions:
            await event_bus.unsubscribe(sub_id)
        self._subscriptions.clear()

    def _on_execution_event(self, data: Dict[str, Any]) -> None:
        self.analyze()

    # ── Scoring ──────────────────────────────────────────────────────

    def _snapshots(self, window: List[TaskExecution]) -> Dict[str, PerformanceSnapshot]:
        grouped: Dict[str, List[TaskExecution]] = {}
        for record in window:
            grouped.setdefault(record.agent, []).append(record)

        snapshots: Dict[str, PerformanceSnapshot] = {}
        for agent, records in grouped.items():
            completed = [r for r in records if r.status is ExecutionStatus.COMPLETED]
            failed = len(records) - len(completed)
            expected = self._settings.expected_duration_for(agent)
            if completed:
                average = sum(r.duration or 0.0 for r in completed) / len(completed)
            else:
                average = self._settings.default_expected_duration
            efficiency = 1.0 if average <= 0 else min(expected / average, 1.0)
            snapshots[agent] = PerformanceSnapshot(
                agent=agent,
                total=len(records),
                completed=len(completed),
                failed=failed,
                completion_rate=len(completed) / len(records),
                average_duration=average,
                expected_duration=expected,
                efficiency=efficiency,
            )
        return snapshots

    def _bottlenecks(
        self, window: List[TaskExecution], running_count: int, system_load: float
    ) -> List[str]:
        settings = self._settings
        found: List[str] = []
        if system_load > settings.load_threshold:
            found.append(HIGH_SYSTEM_LOAD)
        if running_count > settings.queue_buildup_threshold:
            found.append(TASK_QUEUE_BUILDUP)
        for key, minimum in settings.category_minimums.items():
            completions = sum(
                1 for r in window
                if key in r.task_id and r.status is ExecutionStatus.COMPLETED
            )
            if completions < minimum:
                found.append(category_bottleneck(key))
        return found

    def _suggestions(
        self, snapshots: Dict[str, PerformanceSnapshot], running: Dict[str, int]
    ) -> List[str]:
        suggestions: List[str] = []
        if len(snapshots) > _CONSOLIDATION_AGENT_COUNT:
            suggestions.append(CONSIDER_CONSOLIDATION)
        efficiencies = [s.efficiency for s in snapshots.values()]
        if efficiencies and max(efficiencies) - min(efficiencies) > _EFFICIENCY_SPREAD:
            suggestions.append(REBALANCE_WORKLOAD)
        for task_id, count in sorted(running.items()):
            if count > self._settings.redundant_running_threshold:
                suggestions.append(f"{CANCEL_REDUNDANT_PREFIX}{task_id}")
        return suggestions

    def _health(self, window: List[TaskExecution], running_count: int, system_load: float) -> float:
        health = 1.0
        if system_load > self._settings.load_threshold:
            health -= 0.2
        if running_count > _BUSY_RUNNING_COUNT:
            health -= 0.3
        failures = sum(1 for r in window if r.status is ExecutionStatus.FAILED)
        if failures > _RECENT_FAILURE_LIMIT:
            health -= 0.3
        return max(health, 0.0)
