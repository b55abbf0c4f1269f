"""Shared fixtures for the taskweave test suite."""

import asyncio
from datetime import timedelta
from typing import Any, Dict, List

import pytest

from taskweave.agents.registry import AgentRegistry
from taskweave.config.settings import Settings, get_settings
from taskweave.event_bus import InMemoryEventBus
from taskweave.scheduling.execution_history import ExecutionStatus, TaskExecution, utcnow
from taskweave.scheduling.task_definitions import Task


@pytest.fixture(autouse=True)
def _reset_settings_cache():
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


def make_settings(**overrides: Any) -> Settings:
    """Settings isolated from the developer's environment defaults."""
    values: Dict[str, Any] = {
        "output_dir": "unused-output",
        "analysis_interval_seconds": 3600,
        "heartbeat_check_interval_seconds": 3600,
    }
    values.update(overrides)
    return Settings(**values)


def make_task(task_id: str, **fields: Any) -> Task:
    """Build a Task from descriptor-style keys (``type``, ``retryPolicy`` ...)."""
    raw: Dict[str, Any] = {"id": task_id, "type": "manual", "agent": "worker"}
    raw.update(fields)
    return Task.model_validate(raw)


def make_record(
    task_id: str,
    agent: str,
    status: ExecutionStatus = ExecutionStatus.COMPLETED,
    duration: float = 1.0,
    age: float = 0.0,
) -> TaskExecution:
    """A terminal execution record that finished *age* seconds ago."""
    completed = utcnow() - timedelta(seconds=age)
    return TaskExecution(
        id=f"{task_id}_{id(completed)}",
        task_id=task_id,
        lineage_id=f"lin_{task_id}",
        agent=agent,
        status=status,
        started_at=completed - timedelta(seconds=duration),
        completed_at=completed,
    )


class SleepRecorder:
    """Drop-in for asyncio.sleep that records delays and returns at once."""

    def __init__(self) -> None:
        self.delays: List[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)
        await asyncio.sleep(0)


async def wait_until(predicate, timeout: float = 2.0, interval: float = 0.01) -> None:
    """Poll *predicate* until it is truthy or fail after *timeout* seconds."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(interval)


@pytest.fixture
def settings():
    return make_settings()


@pytest.fixture
def bus():
    return InMemoryEventBus()


@pytest.fixture
def registry():
    return AgentRegistry()


@pytest.fixture
def instant_sleep():
    return SleepRecorder()


@pytest.fixture
def events(bus):
    """Collects every published event by topic name."""
    received: Dict[str, List[Dict[str, Any]]] = {}

    async def subscribe(*topics):
        for topic in topics:
            name = getattr(topic, "value", topic)
            received.setdefault(name, [])

            def handler(data, _name=name):
                received[_name].append(data)

            await bus.subscribe(topic, handler)
        return received

    return subscribe
