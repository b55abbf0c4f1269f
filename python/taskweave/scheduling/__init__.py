"""Task scheduling for taskweave.

Declarative task definitions, dependency validation, cron/interval
timers, event triggers, and the execution engine with retry and history.
"""

from taskweave.scheduling.dependency_graph import DependencyGraph
from taskweave.scheduling.execution_engine import (
    ConcurrencyPolicy,
    ExecutionEngine,
    RetryDecision,
)
from taskweave.scheduling.execution_history import (
    ExecutionHistory,
    ExecutionStatus,
    TaskExecution,
)
from taskweave.scheduling.schedule_expression import ScheduleExpression, parse_schedule
from taskweave.scheduling.scheduler import Registration, Scheduler
from taskweave.scheduling.task_definitions import (
    OutputDescriptor,
    RetryPolicy,
    Task,
    TaskKind,
    TaskPriority,
    TaskSet,
    load_task_definitions,
)

__all__ = [
    # Dependency graph
    "DependencyGraph",
    # Execution engine
    "ConcurrencyPolicy",
    "ExecutionEngine",
    "RetryDecision",
    # Execution history
    "ExecutionHistory",
    "ExecutionStatus",
    "TaskExecution",
    # Schedule expressions
    "ScheduleExpression",
    "parse_schedule",
    # Scheduler
    "Registration",
    "Scheduler",
    # Task definitions
    "OutputDescriptor",
    "RetryPolicy",
    "Task",
    "TaskKind",
    "TaskPriority",
    "TaskSet",
    "load_task_definitions",
]
