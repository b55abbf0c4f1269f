"""Adaptive scheduling from learned execution patterns.

Executions are grouped by task type (derived from the task id) and each
type gets a SchedulePattern: the hour and weekday most finished runs
started at, the success rate, the mean duration, and a confidence that
grows with sample size and duration consistency. ``recommend`` turns a
pattern, the current running count and an urgency into a suggested start
time plus a boost / maintain / defer adjustment.
"""

from __future__ import annotations

import logging
import statistics
from collections import Counter
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from taskweave.config.settings import Settings, get_settings
from taskweave.interfaces.event_bus import EventType, IEventBus
from taskweave.scheduling.execution_history import (
    ExecutionHistory,
    ExecutionStatus,
    TaskExecution,
    utcnow,
)

logger = logging.getLogger(__name__)

# Task id keyword → task type, first match wins
TASK_TYPE_KEYWORDS = (
    ("prospect", "prospecting"),
    ("pitch", "pitch_creation"),
    ("analytics", "analytics"),
    ("kanban", "kanban"),
)
GENERAL_TASK_TYPE = "general"

MIN_EXECUTIONS = 10
MIN_TYPE_EXECUTIONS = 5
MAX_CONFIDENCE = 0.95


def task_type_for(task_id: str) -> str:
    for keyword, task_type in TASK_TYPE_KEYWORDS:
        if keyword in task_id:
            return task_type
    return GENERAL_TASK_TYPE


class Urgency(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class PriorityAdjustment(str, Enum):
    BOOST = "boost"
    MAINTAIN = "maintain"
    DEFER = "defer"


# ── Value objects ────────────────────────────────────────────────────


@dataclass(frozen=True)
class SchedulePattern:
    task_type: str
    optimal_hour: int
    optimal_weekday: int  # Monday is 0
    success_rate: float
    average_duration: float
    confidence: float
    sample_size: int = 0

    @classmethod
    def initial(cls, task_type: str) -> "SchedulePattern":
        """Starting guess for a type with too little history."""
        return cls(
            task_type=task_type,
            optimal_hour=9,
            optimal_weekday=0,
            success_rate=0.8,
            average_duration=300.0,
            confidence=0.1,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "task_type": self.task_type,
            "optimal_hour": self.optimal_hour,
            "optimal_weekday": self.optimal_weekday,
            "success_rate": round(self.success_rate, 4),
            "average_duration": round(self.average_duration, 3),
            "confidence": round(self.confidence, 4),
            "sample_size": self.sample_size,
        }


@dataclass(frozen=True)
class SchedulingRecommendation:
    task_id: str
    task_type: str
    recommended_time: datetime
    adjustment: PriorityAdjustment
    reason: str
    confidence: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "task_id": self.task_id,
            "task_type": self.task_type,
            "recommended_time": self.recommended_time.isoformat(),
            "adjustment": self.adjustment.value,
            "reason": self.reason,
            "confidence": round(self.confidence, 4),
        }


# ── Learner ──────────────────────────────────────────────────────────


class SchedulePatternLearner:
    """Learns per-type schedule patterns from history and recommends start times."""

    def __init__(
        self,
        history: ExecutionHistory,
        settings: Optional[Settings] = None,
        *,
        running_count: Optional[Callable[[], int]] = None,
    ) -> None:
        self._history = history
        self._settings = settings or get_settings()
        self._running_count = running_count or (lambda: 0)
        self._patterns: Dict[str, SchedulePattern] = {}
        self._subscriptions: List[str] = []

    @property
    def patterns(self) -> Dict[str, SchedulePattern]:
        return dict(self._patterns)

    def pattern_for(self, task_id: str) -> SchedulePattern:
        task_type = task_type_for(task_id)
        return self._patterns.get(task_type) or SchedulePattern.initial(task_type)

    def learn(self) -> Dict[str, SchedulePattern]:
        """Rebuild patterns from finished executions in history."""
        finished = [r for r in self._history.all() if r.status is not ExecutionStatus.RUNNING]
        if len(finished) < MIN_EXECUTIONS:
            return self.patterns

        grouped: Dict[str, List[TaskExecution]] = {}
        for record in finished:
            grouped.setdefault(task_type_for(record.task_id), []).append(record)

        for task_type, records in grouped.items():
            if len(records) < MIN_TYPE_EXECUTIONS:
                continue
            pattern = self._build_pattern(task_type, records)
            if pattern is not None:
                self._patterns[task_type] = pattern
        logger.debug("Learned schedule patterns for %s", sorted(self._patterns))
        return self.patterns

    def recommend(
        self,
        task_id: str,
        urgency: Urgency = Urgency.MEDIUM,
        *,
        active_tasks: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> SchedulingRecommendation:
        urgency = Urgency(urgency)
        active = self._running_count() if active_tasks is None else active_tasks
        now = (now or utcnow()).astimezone(self._settings.tzinfo)
        pattern = self.pattern_for(task_id)
        recommendation = SchedulingRecommendation(
            task_id=task_id,
            task_type=pattern.task_type,
            recommended_time=self._recommended_time(pattern, active, urgency, now),
            adjustment=self._adjustment(pattern, active, urgency),
            reason=self._reason(pattern, active, urgency),
            confidence=pattern.confidence,
        )
        logger.debug(
            "Recommendation for %s: %s at %s (confidence %.2f)",
            task_id, recommendation.adjustment.value,
            recommendation.recommended_time.isoformat(), recommendation.confidence,
        )
        return recommendation

    def analytics(self) -> Dict[str, Any]:
        finished = [r for r in self._history.all() if r.status is not ExecutionStatus.RUNNING]
        completed = [r for r in finished if r.status is ExecutionStatus.COMPLETED]
        durations = [r.duration for r in completed if r.duration is not None]
        confidences = [p.confidence for p in self._patterns.values()]
        return {
            "total_executions": len(finished),
            "success_rate": len(completed) / len(finished) if finished else 0.0,
            "average_duration": sum(durations) / len(durations) if durations else 0.0,
            "patterns_learned": len(self._patterns),
            "confidence_score": sum(confidences) / len(confidences) if confidences else 0.0,
            "patterns": {t: p.to_dict() for t, p in sorted(self._patterns.items())},
        }

    async def attach(self, event_bus: IEventBus) -> None:
        """Relearn whenever an attempt finishes."""
        for event in (EventType.TASK_COMPLETED, EventType.TASK_FAILED):
            self._subscriptions.append(await event_bus.subscribe(event, self._on_execution_event))

    async def detach(self, event_bus: IEventBus) -> None:
        for sub_id in self._subscriptions:
            await event_bus.unsubscribe(sub_id)
        self._subscriptions.clear()

    def _on_execution_event(self, data: Dict[str, Any]) -> None:
        self.learn()

    # ── Pattern building ─────────────────────────────────────────────

    def _build_pattern(self, task_type: str, records: List[TaskExecution]) -> Optional[SchedulePattern]:
        completed = [r for r in records if r.status is ExecutionStatus.COMPLETED]
        if not completed:
            return None
        tz = self._settings.tzinfo
        starts = [r.started_at.astimezone(tz) for r in completed]
        hour = Counter(s.hour for s in starts).most_common(1)[0][0]
        weekday = Counter(s.weekday() for s in starts).most_common(1)[0][0]

        durations = [r.duration for r in completed if r.duration is not None]
        average = sum(durations) / len(durations) if durations else 0.0
        if len(durations) < 2 or average <= 0:
            consistency = 0.1
        else:
            consistency = max(0.0, 1.0 - statistics.pstdev(durations) / average)

        sample_factor = min(len(records) / 100, 1.0)
        confidence = min(0.7 * sample_factor + 0.3 * consistency, MAX_CONFIDENCE)
        return SchedulePattern(
            task_type=task_type,
            optimal_hour=hour,
            optimal_weekday=weekday,
            success_rate=len(completed) / len(records),
            average_duration=average,
            confidence=confidence,
            sample_size=len(records),
        )

    # ── Recommendation rules ─────────────────────────────────────────

    def _recommended_time(
        self, pattern: SchedulePattern, active: int, urgency: Urgency, now: datetime
    ) -> datetime:
        if urgency is Urgency.HIGH:
            return now + timedelta(minutes=5) if active > 10 else now
        if urgency is Urgency.LOW:
            return self._next_optimal(pattern, now)

        if pattern.optimal_hour > now.hour:
            hours_until = pattern.optimal_hour - now.hour
        else:
            hours_until = 24 - now.hour + pattern.optimal_hour
        if hours_until <= 2:
            at = now.replace(hour=pattern.optimal_hour, minute=0, second=0, microsecond=0)
            return at if at > now else at + timedelta(days=1)
        if active < 5:
            return now + timedelta(minutes=10)
        return now + timedelta(hours=1)

    @staticmethod
    def _next_optimal(pattern: SchedulePattern, now: datetime) -> datetime:
        at = now.replace(hour=pattern.optimal_hour, minute=0, second=0, microsecond=0)
        if at <= now:
            at += timedelta(days=1)
        return at + timedelta(days=(pattern.optimal_weekday - at.weekday()) % 7)

    @staticmethod
    def _adjustment(pattern: SchedulePattern, active: int, urgency: Urgency) -> PriorityAdjustment:
        if urgency is Urgency.HIGH:
            return PriorityAdjustment.BOOST
        if urgency is Urgency.LOW and active > 8:
            return PriorityAdjustment.DEFER
        if pattern.success_rate < 0.7 and active > 6:
            return PriorityAdjustment.DEFER
        if active < 3 and pattern.success_rate > 0.9:
            return PriorityAdjustment.BOOST
        return PriorityAdjustment.MAINTAIN

    @staticmethod
    def _reason(pattern: SchedulePattern, active: int, urgency: Urgency) -> str:
        reasons: List[str] = []
        if urgency is Urgency.HIGH:
            reasons.append("High urgency task")
        elif urgency is Urgency.LOW:
            reasons.append("Low urgency, scheduled for optimal time")

        percent = round(pattern.success_rate * 100)
        if pattern.success_rate > 0.9:
            reasons.append(f"High success rate ({percent}%)")
        elif pattern.success_rate < 0.7:
            reasons.append(f"Low success rate ({percent}%), scheduling carefully")

        if active > 8:
            reasons.append("System busy, deferring")
        elif active < 3:
            reasons.append("System idle, prioritizing")

        if pattern.confidence < 0.5:
            reasons.append("Limited historical data")
        return "; ".join(reasons) or "Standard scheduling"
