"""
Error hierarchy for taskweave.

Every error raised by the orchestration core derives from TaskweaveError and
carries an ErrorContext with:
- a unique error id and timestamp
- a category used for routing and failure classification
- a severity and a recoverable flag

Only ConfigError is allowed to halt startup. Everything raised while running
a task is caught by the execution engine and turned into an execution record.
"""

import logging
import traceback
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)


# ============================================================================
# Enums
# ============================================================================

class ErrorSeverity(Enum):
    """Error severity levels."""
    CRITICAL = "critical"      # Startup cannot continue
    ERROR = "error"            # Operation failed
    WARNING = "warning"        # Degraded operation
    INFO = "info"


class ErrorCategory(Enum):
    """Error categories for classification and routing."""
    CONFIGURATION = "configuration"     # Task definitions or settings invalid
    DEPENDENCY = "dependency"           # Upstream task has no fresh completion
    EXECUTION = "execution"             # Agent raised or reported an error
    CONCURRENCY = "concurrency"         # Rejected by the concurrency policy
    AGENT = "agent"                     # Agent could not be resolved
    RATE_LIMIT = "rate_limit"           # Downstream rate limit hit
    TIMEOUT = "timeout"                 # Agent call exceeded its budget
    NETWORK = "network"                 # Connectivity failure
    QUEUE = "queue"                     # Durable queue failure
    CHANNEL = "channel"                 # Real-time agent channel failure
    INTERNAL = "internal"


# ============================================================================
# Data Classes
# ============================================================================

@dataclass
class ErrorContext:
    """Rich error context with metadata."""
    error_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    severity: ErrorSeverity = ErrorSeverity.ERROR
    category: ErrorCategory = ErrorCategory.INTERNAL
    message: str = ""
    details: Dict[str, Any] = field(default_factory=dict)
    stack_trace: Optional[str] = None
    is_recoverable: bool = True
    recovery_suggestions: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary (excludes stack trace)."""
        return {
            "error_id": self.error_id,
            "timestamp": self.timestamp.isoformat(),
            "severity": self.severity.value,
            "category": self.category.value,
            "message": self.message,
            "details": self.details,
            "is_recoverable": self.is_recoverable,
            "recovery_suggestions": self.recovery_suggestions,
        }


# ============================================================================
# Exception Hierarchy
# ============================================================================

class TaskweaveError(Exception):
    """Base exception for all taskweave errors with rich context."""

    def __init__(
        self,
        message: str,
        category: ErrorCategory = ErrorCategory.INTERNAL,
        severity: ErrorSeverity = ErrorSeverity.ERROR,
        details: Optional[Dict[str, Any]] = None,
        is_recoverable: bool = True,
        recovery_suggestions: Optional[List[str]] = None,
        context: Optional[ErrorContext] = None,
    ):
        self.message = message
        self.category = category
        self.severity = severity
        self.details = details or {}
        self.is_recoverable = is_recoverable
        self.recovery_suggestions = recovery_suggestions or []

        if context:
            self.context = context
        else:
            self.context = ErrorContext(
                severity=severity,
                category=category,
                message=message,
                details=self.details,
                stack_trace=traceback.format_exc(),
                is_recoverable=is_recoverable,
                recovery_suggestions=self.recovery_suggestions,
            )

        super().__init__(self.message)

    def __str__(self) -> str:
        return f"[{self.context.error_id}] {self.category.value}: {self.message}"

    def to_dict(self) -> Dict[str, Any]:
        return self.context.to_dict()


# ============================================================================
# Configuration Errors
# ============================================================================

class ConfigError(TaskweaveError):
    """Task definitions or settings failed validation."""
    def __init__(self, message: str, **kwargs):
        kwargs.setdefault("category", ErrorCategory.CONFIGURATION)
        kwargs.setdefault("severity", ErrorSeverity.CRITICAL)
        kwargs.setdefault("is_recoverable", False)
        super().__init__(message, **kwargs)


class CyclicDependencyError(ConfigError):
    """The task dependency graph contains a cycle."""

    def __init__(self, cycle: List[str], **kwargs):
        self.cycle = list(cycle)
        path = " -> ".join(self.cycle)
        kwargs.setdefault("details", {"cycle": self.cycle})
        super().__init__(f"Dependency cycle detected: {path}", **kwargs)


# ============================================================================
# Execution Errors
# ============================================================================

class DependencyNotMet(TaskweaveError):
    """An upstream task has no completed execution inside the freshness window."""

    def __init__(self, dependency_id: str, message: Optional[str] = None, **kwargs):
        self.dependency_id = dependency_id
        kwargs.setdefault("category", ErrorCategory.DEPENDENCY)
        kwargs.setdefault("severity", ErrorSeverity.WARNING)
        kwargs.setdefault("is_recoverable", False)
        kwargs.setdefault("details", {"dependency_id": dependency_id})
        super().__init__(
            message or f"Dependency not met: {dependency_id} has not completed successfully",
            **kwargs,
        )


class ExecutionError(TaskweaveError):
    """An agent raised or reported a failure."""
    def __init__(self, message: str, **kwargs):
        kwargs.setdefault("category", ErrorCategory.EXECUTION)
        super().__init__(message, **kwargs)


class UnrecoverableError(ExecutionError):
    """A failure that retrying cannot fix."""
    def __init__(self, message: str, **kwargs):
        kwargs.setdefault("is_recoverable", False)
        super().__init__(message, **kwargs)


class AgentNotFoundError(UnrecoverableError):
    """No agent is registered under the referenced id."""

    def __init__(self, agent_id: str, **kwargs):
        self.agent_id = agent_id
        kwargs.setdefault("category", ErrorCategory.AGENT)
        super().__init__(f"Agent not found: {agent_id}", **kwargs)


class ConcurrentExecutionRejected(TaskweaveError):
    """A task already has a lineage in flight under single-flight policy."""

    def __init__(self, task_id: str, **kwargs):
        self.task_id = task_id
        kwargs.setdefault("category", ErrorCategory.CONCURRENCY)
        kwargs.setdefault("severity", ErrorSeverity.WARNING)
        kwargs.setdefault("is_recoverable", False)
        super().__init__(f"Task {task_id} already has an execution in flight", **kwargs)


# ============================================================================
# Network, Timeout & Rate Limit Errors
# ============================================================================

class NetworkError(TaskweaveError):
    """Network connectivity error."""
    def __init__(self, message: str, **kwargs):
        kwargs.setdefault("category", ErrorCategory.NETWORK)
        kwargs.setdefault("is_recoverable", True)
        super().__init__(message, **kwargs)


class ExecutionTimeoutError(NetworkError):
    """Agent call exceeded the execution timeout."""
    def __init__(self, message: str, **kwargs):
        kwargs.setdefault("category", ErrorCategory.TIMEOUT)
        super().__init__(message, **kwargs)


class AgentUnavailableError(NetworkError):
    """A remote agent is not connected to the real-time channel."""
    def __init__(self, message: str, **kwargs):
        kwargs.setdefault("category", ErrorCategory.CHANNEL)
        super().__init__(message, **kwargs)


class RateLimitError(TaskweaveError):
    """Rate limit exceeded."""
    def __init__(self, message: str, **kwargs):
        kwargs.setdefault("category", ErrorCategory.RATE_LIMIT)
        kwargs.setdefault("severity", ErrorSeverity.WARNING)
        kwargs.setdefault("is_recoverable", True)
        super().__init__(message, **kwargs)


# ============================================================================
# Transport Errors
# ============================================================================

class QueueError(TaskweaveError):
    """Durable queue operation failed."""
    def __init__(self, message: str, **kwargs):
        kwargs.setdefault("category", ErrorCategory.QUEUE)
        super().__init__(message, **kwargs)


# ============================================================================
# Utility Functions
# ============================================================================

def describe_error(error: BaseException) -> str:
    """Plain error text for execution records (no error id prefix)."""
    if isinstance(error, TaskweaveError):
        return error.message
    text = str(error)
    return text or type(error).__name__


def categorize_error(error: BaseException) -> ErrorCategory:
    """Auto-categorize an exception, by context when available, else by type name."""
    if isinstance(error, TaskweaveError):
        return error.category

    error_type = type(error).__name__.lower()

    if "timeout" in error_type:
        return ErrorCategory.TIMEOUT
    elif "rate" in error_type or "limit" in error_type:
        return ErrorCategory.RATE_LIMIT
    elif "network" in error_type or "connection" in error_type:
        return ErrorCategory.NETWORK
    else:
        return ErrorCategory.INTERNAL
