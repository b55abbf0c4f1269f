"""Execution records and the append-only execution history.

Every attempt of every trigger gets one TaskExecution. Records are mutated
by the execution engine until they reach a terminal status, and removed only
by the retention policy (prune / max_records).
"""

from __future__ import annotations

import asyncio
import logging
from contextvars import ContextVar
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ── Value objects ────────────────────────────────────────────────────


class ExecutionStatus(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    RETRYING = "retrying"


TERMINAL_STATUSES = frozenset({ExecutionStatus.COMPLETED, ExecutionStatus.FAILED})


@dataclass
class TaskExecution:
    """Record of a single attempt of a task."""

    id: str
    task_id: str
    lineage_id: str
    agent: str
    attempt: int = 1
    status: ExecutionStatus = ExecutionStatus.RUNNING
    started_at: datetime = field(default_factory=utcnow)
    completed_at: Optional[datetime] = None

    # Outcome
    result: Any = None
    error: Optional[str] = None
    error_type: Optional[str] = None
    output_data: Optional[Dict[str, Any]] = None

    trigger_payload: Any = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def duration(self) -> Optional[float]:
        if self.completed_at is None:
            return None
        return (self.completed_at - self.started_at).total_seconds()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "task_id": self.task_id,
            "lineage_id": self.lineage_id,
            "agent": self.agent,
            "attempt": self.attempt,
            "status": self.status.value,
            "started_at": self.started_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "duration": self.duration,
            "result": self.result,
            "error": self.error,
            "error_type": self.error_type,
        }


# Attempt whose agent call is running in the current context
current_execution: ContextVar[Optional[TaskExecution]] = ContextVar("current_execution", default=None)


# ── History ──────────────────────────────────────────────────────────


class ExecutionHistory:
    """Append-only store of TaskExecution records, oldest first.

    Inserts and pruning take an asyncio.Lock; reads are plain list scans
    on the single event loop.
    """

    def __init__(self, max_records: int = 10000) -> None:
        self._records: List[TaskExecution] = []
        self._max_records = max_records
        self._lock = asyncio.Lock()
        self._evicted = 0

    async def append(self, execution: TaskExecution) -> None:
        async with self._lock:
            self._records.append(execution)
            if len(self._records) > self._max_records:
                self._evict_oldest_terminal(len(self._records) - self._max_records)

    async def prune(self, before: datetime) -> int:
        """Remove terminal records that started before *before*.

        Returns:
            Number of records removed.
        """
        async with self._lock:
            kept = [
                r for r in self._records
                if not (r.is_terminal and r.started_at < before)
            ]
            removed = len(self._records) - len(kept)
            self._records = kept
        if removed:
            logger.info("Pruned %d execution records older than %s", removed, before.isoformat())
        return removed

    # ── Queries ──────────────────────────────────────────────────────

    def all(self) -> List[TaskExecution]:
        return list(self._records)

    def for_task(self, task_id: str) -> List[TaskExecution]:
        return [r for r in self._records if r.task_id == task_id]

    def for_lineage(self, lineage_id: str) -> List[TaskExecution]:
        return [r for r in self._records if r.lineage_id == lineage_id]

    def latest_for_lineage(self, lineage_id: str) -> Optional[TaskExecution]:
        for record in reversed(self._records):
            if record.lineage_id == lineage_id:
                return record
        return None

    def latest_completed(self, task_id: str) -> Optional[TaskExecution]:
        """Most recently completed execution of *task_id*."""
        latest: Optional[TaskExecution] = None
        for record in self._records:
            if record.task_id != task_id or record.status is not ExecutionStatus.COMPLETED:
                continue
            if latest is None or (record.completed_at or record.started_at) >= (
                latest.completed_at or latest.started_at
            ):
                latest = record
        return latest

    def recent(self, limit: int, terminal_only: bool = True) -> List[TaskExecution]:
        """The last *limit* records, oldest first."""
        records = [r for r in self._records if r.is_terminal] if terminal_only else self._records
        return list(records[-limit:]) if limit > 0 else []

    def __len__(self) -> int:
        return len(self._records)

    @property
    def stats(self) -> Dict[str, Any]:
        counts: Dict[str, int] = {s.value: 0 for s in ExecutionStatus}
        for r in self._records:
            counts[r.status.value] += 1
        return {
            "total": len(self._records),
            "by_status": counts,
            "evicted": self._evicted,
        }

    # ── Internal helpers ─────────────────────────────────────────────

    def _evict_oldest_terminal(self, count: int) -> None:
        kept: List[TaskExecution] = []
        for record in self._records:
            if count > 0 and record.is_terminal:
                count -= 1
                self._evicted += 1
                continue
            kept.append(record)
        self._records = kept
