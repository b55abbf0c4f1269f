"""Declarative task definitions and the task definition store.

Task descriptors are loaded from JSON (a directory with one file per
category, a single file, or an in-memory mapping) and validated as a whole:
any error rejects the entire load with a ConfigError.

Accepted layouts::

    # directory: config/tasks/prospecting-tasks.json
    {"version": "1.2", "tasks": [{...}, {...}]}   or   [{...}, {...}]

    # single file / mapping
    {"version": "1.2", "prospecting_tasks": [...], "analytics_tasks": [...]}
"""

from __future__ import annotations

import json
import logging
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Iterator, List, Mapping, Optional, Tuple, Union

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    field_validator,
    model_validator,
)

from taskweave.enhanced_logging import track_performance
from taskweave.exceptions import ConfigError, CyclicDependencyError
from taskweave.scheduling.dependency_graph import DependencyGraph
from taskweave.scheduling.schedule_expression import ScheduleExpression, parse_schedule

logger = logging.getLogger(__name__)

DEFAULT_CATEGORY = "default"
_CATEGORY_SUFFIX = "_tasks"


# ── Enums / value objects ────────────────────────────────────────────


class TaskKind(str, Enum):
    SCHEDULED = "scheduled"
    TRIGGERED = "triggered"
    MANUAL = "manual"


class TaskPriority(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class RetryPolicy(BaseModel):
    """How many attempts a trigger gets and how long to wait between them."""

    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")

    max_attempts: int = Field(
        default=1, ge=1, validation_alias=AliasChoices("max_attempts", "maxAttempts")
    )
    backoff_seconds: float = Field(
        default=0.0, ge=0, validation_alias=AliasChoices("backoff_seconds", "backoffSeconds")
    )


class OutputDescriptor(BaseModel):
    model_config = ConfigDict(frozen=True, extra="ignore")

    format: str = "json"
    schema_name: str = Field(default="generic", validation_alias=AliasChoices("schema", "schema_name"))
    destination: str = "default"


class Task(BaseModel):
    """Immutable task descriptor."""

    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")

    id: str = Field(min_length=1)
    name: str = ""
    description: str = ""
    kind: TaskKind = Field(validation_alias=AliasChoices("kind", "type"))
    schedule: Optional[str] = None
    trigger_event: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("trigger_event", "triggerEvent", "trigger")
    )
    agent: str = Field(min_length=1)
    enabled: bool = True
    config: Dict[str, Any] = Field(default_factory=dict)
    output: OutputDescriptor = Field(
        default_factory=OutputDescriptor,
        validation_alias=AliasChoices("output", "output_descriptor", "outputDescriptor"),
    )
    dependencies: Tuple[str, ...] = ()
    retry_policy: RetryPolicy = Field(
        default_factory=RetryPolicy,
        validation_alias=AliasChoices("retry_policy", "retryPolicy", "retry_config", "retryConfig"),
    )
    category: str = DEFAULT_CATEGORY
    priority: TaskPriority = TaskPriority.MEDIUM

    @field_validator("dependencies", mode="before")
    @classmethod
    def _dedupe_dependencies(cls, v: Any) -> Any:
        if v is None:
            return ()
        if isinstance(v, (list, tuple)):
            return tuple(dict.fromkeys(v))
        return v

    @field_validator("schedule")
    @classmethod
    def _validate_schedule(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return v
        try:
            parse_schedule(v)
        except ConfigError as exc:
            raise ValueError(exc.message) from exc
        return v

    @model_validator(mode="after")
    def _check_kind_fields(self) -> "Task":
        if self.kind is TaskKind.SCHEDULED and not self.schedule:
            raise ValueError("scheduled task requires a schedule")
        if self.kind is not TaskKind.SCHEDULED and self.schedule:
            raise ValueError(f"{self.kind.value} task must not define a schedule")
        if self.kind is TaskKind.TRIGGERED and not (self.trigger_event or "").strip():
            raise ValueError("triggered task requires a non-empty trigger_event")
        if self.kind is not TaskKind.TRIGGERED and self.trigger_event is not None:
            raise ValueError(f"{self.kind.value} task must not define a trigger_event")
        return self

    @property
    def display_name(self) -> str:
        return self.name or self.id

    def schedule_expression(self) -> Optional[ScheduleExpression]:
        return parse_schedule(self.schedule) if self.schedule else None


# ── Task set ─────────────────────────────────────────────────────────


class TaskSet:
    """Validated, immutable collection of tasks from one load."""

    def __init__(
        self,
        tasks: List[Task],
        graph: DependencyGraph,
        version: Optional[str] = None,
    ) -> None:
        self._tasks: Dict[str, Task] = {t.id: t for t in tasks}
        self._graph = graph
        self.version = version

    def get(self, task_id: str) -> Optional[Task]:
        return self._tasks.get(task_id)

    def __getitem__(self, task_id: str) -> Task:
        return self._tasks[task_id]

    def __contains__(self, task_id: object) -> bool:
        return task_id in self._tasks

    def __iter__(self) -> Iterator[Task]:
        return iter(self._tasks.values())

    def __len__(self) -> int:
        return len(self._tasks)

    def enabled(self) -> List[Task]:
        return [t for t in self._tasks.values() if t.enabled]

    def scheduled(self) -> List[Task]:
        """Enabled tasks with a schedule."""
        return [t for t in self.enabled() if t.kind is TaskKind.SCHEDULED]

    def triggered(self) -> List[Task]:
        """Enabled tasks fired by a bus event."""
        return [t for t in self.enabled() if t.kind is TaskKind.TRIGGERED]

    def for_agent(self, agent: str) -> List[Task]:
        return [t for t in self._tasks.values() if t.agent == agent]

    def execution_order(self) -> List[List[str]]:
        """Topological waves: each wave only depends on earlier waves."""
        return self._graph.execution_waves()

    @property
    def graph(self) -> DependencyGraph:
        return self._graph

    @property
    def categories(self) -> Dict[str, List[str]]:
        grouped: Dict[str, List[str]] = {}
        for task in self._tasks.values():
            grouped.setdefault(task.category, []).append(task.id)
        return grouped

    @property
    def stats(self) -> Dict[str, Any]:
        return {
            "version": self.version,
            "total": len(self._tasks),
            "enabled": len(self.enabled()),
            "scheduled": len(self.scheduled()),
            "triggered": len(self.triggered()),
            "categories": {k: len(v) for k, v in self.categories.items()},
        }


# ── Loading ──────────────────────────────────────────────────────────


TaskSource = Union[str, Path, Mapping[str, Any], List[Any]]


@track_performance
def load_task_definitions(source: TaskSource) -> TaskSet:
    """Load and validate task definitions.

    Args:
        source: Directory of ``*.json`` files, a single JSON file, or an
            already-parsed mapping/list.

    Returns:
        A TaskSet containing every task, enabled or not.

    Raises:
        ConfigError: on any schema, reference, or cycle violation.
            CyclicDependencyError is raised for cycles.
    """
    if isinstance(source, (str, Path)):
        raw_entries, version = _read_path(Path(source))
    else:
        raw_entries, version = _collect(source, DEFAULT_CATEGORY)

    tasks = _validate_entries(raw_entries)
    graph = _build_graph(tasks)
    task_set = TaskSet(tasks, graph, version=version)
    logger.info(
        "Loaded %d task definitions (%d enabled) version=%s",
        len(task_set), len(task_set.enabled()), version,
    )
    return task_set


def _read_path(path: Path) -> Tuple[List[Tuple[str, Any]], Optional[str]]:
    if path.is_dir():
        files = sorted(path.glob("*.json"))
        if not files:
            raise ConfigError(f"No task definition files found in {path}")
        entries: List[Tuple[str, Any]] = []
        version: Optional[str] = None
        for file in files:
            category = file.stem.replace("-tasks", "").replace("_tasks", "").replace("-", "_")
            file_entries, file_version = _collect(_read_json(file), category)
            entries.extend(file_entries)
            version = version or file_version
        return entries, version
    if path.is_file():
        return _collect(_read_json(path), DEFAULT_CATEGORY)
    raise ConfigError(f"Task definition source not found: {path}")


def _read_json(path: Path) -> Any:
    try:
        with path.open("r", encoding="utf-8") as f:
            return json.load(f)
    except json.JSONDecodeError as exc:
        raise ConfigError(f"Invalid JSON in {path}: {exc}", details={"file": str(path)}) from exc
    except OSError as exc:
        raise ConfigError(f"Cannot read {path}: {exc}", details={"file": str(path)}) from exc


def _collect(data: Any, category: str) -> Tuple[List[Tuple[str, Any]], Optional[str]]:
    """Flatten one document into (category, raw task) pairs."""
    if isinstance(data, list):
        return [(category, entry) for entry in data], None
    if not isinstance(data, Mapping):
        raise ConfigError(f"Task definitions must be a list or object, got {type(data).__name__}")

    version = data.get("version")
    version = str(version) if version is not None else None
    entries: List[Tuple[str, Any]] = []
    if "tasks" in data:
        tasks = data["tasks"]
        if not isinstance(tasks, list):
            raise ConfigError("'tasks' must be a list")
        entries.extend((category, entry) for entry in tasks)
    for key, value in data.items():
        if key.endswith(_CATEGORY_SUFFIX):
            if not isinstance(value, list):
                raise ConfigError(f"{key!r} must be a list")
            entries.extend((key[: -len(_CATEGORY_SUFFIX)], entry) for entry in value)
    return entries, version


def _validate_entries(raw_entries: List[Tuple[str, Any]]) -> List[Task]:
    tasks: List[Task] = []
    errors: List[str] = []
    seen: Dict[str, str] = {}

    for index, (category, raw) in enumerate(raw_entries):
        if not isinstance(raw, Mapping):
            errors.append(f"entry {index} ({category}): expected an object")
            continue
        payload = dict(raw)
        payload.setdefault("category", category)
        try:
            task = Task.model_validate(payload)
        except ValidationError as exc:
            label = raw.get("id", f"entry {index}")
            for err in exc.errors():
                loc = ".".join(str(p) for p in err["loc"]) or "task"
                errors.append(f"{label}: {loc}: {err['msg']}")
            continue
        if task.id in seen:
            errors.append(f"{task.id}: duplicate id (also in category {seen[task.id]!r})")
            continue
        seen[task.id] = task.category
        tasks.append(task)

    if errors:
        raise ConfigError(
            f"Invalid task definitions: {'; '.join(errors)}",
            details={"errors": errors},
        )
    return tasks


def _build_graph(tasks: List[Task]) -> DependencyGraph:
    graph = DependencyGraph()
    for task in tasks:
        graph.add_task(task.id, task.dependencies)

    missing = graph.missing_dependencies()
    if missing:
        errors = [f"{tid}: unknown dependency {', '.join(sorted(deps))}" for tid, deps in missing.items()]
        raise ConfigError(
            f"Invalid task definitions: {'; '.join(errors)}",
            details={"missing": {k: sorted(v) for k, v in missing.items()}},
        )

    cycle = graph.find_cycle()
    if cycle:
        raise CyclicDependencyError(cycle)
    return graph
