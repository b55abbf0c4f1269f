"""Tests for taskweave.scheduling.execution_engine."""

import asyncio
from datetime import timedelta

import pytest

from conftest import make_record, make_settings, make_task, wait_until
from taskweave.exceptions import NetworkError
from taskweave.interfaces.event_bus import EventType
from taskweave.output_sink import MemoryOutputSink
from taskweave.scheduling.execution_engine import ExecutionEngine
from taskweave.scheduling.execution_history import ExecutionHistory, ExecutionStatus, utcnow


class CountingAgent:
    """Agent that records its calls and optionally fails."""

    def __init__(self, result=None, error=None):
        self.calls = []
        self.result = result if result is not None else {"status": "success"}
        self.error = error

    async def run(self, config, payload=None):
        self.calls.append((config, payload))
        if self.error is not None:
            raise self.error
        return self.result


@pytest.fixture
def sink():
    return MemoryOutputSink()


@pytest.fixture
def engine(registry, bus, sink, instant_sleep):
    return ExecutionEngine(
        registry, bus, output_sink=sink, settings=make_settings(), config_version="1.4",
        sleep=instant_sleep,
    )


# ========================================================================
# SUCCESSFUL EXECUTION
# ========================================================================


class TestSuccess:

    async def test_completed_record_and_result(self, engine, registry):
        agent = CountingAgent(result={"leads": 4})
        registry.register("worker", agent)
        task = make_task("t1", config={"batch": 5})

        execution = await engine.execute(task, {"source": "api"})

        assert execution.status is ExecutionStatus.COMPLETED
        assert execution.attempt == 1
        assert execution.result == {"leads": 4}
        assert agent.calls == [({"batch": 5}, {"source": "api"})]
        assert engine.get_running() == []

    async def test_envelope_reaches_sink(self, engine, registry, sink):
        registry.register("worker", CountingAgent(result={"leads": 4}))
        task = make_task(
            "t1", name="Research",
            output={"format": "json", "schema": "prospect_list", "destination": "prospects"},
        )
        await engine.execute(task)
        await engine.shutdown()

        assert len(sink.envelopes) == 1
        envelope = sink.envelopes[0]
        assert envelope["task_id"] == "t1"
        assert envelope["task_name"] == "Research"
        assert envelope["output_schema"] == "prospect_list"
        assert envelope["destination"] == "prospects"
        assert envelope["data"] == {"leads": 4}
        assert envelope["metadata"]["agent"] == "worker"
        assert envelope["metadata"]["config_version"] == "1.4"

    async def test_sink_failure_does_not_fail_execution(self, registry, bus):
        class BrokenSink:
            async def write(self, envelope):
                raise OSError("disk full")

        engine = ExecutionEngine(registry, bus, output_sink=BrokenSink(), settings=make_settings())
        registry.register("worker", CountingAgent())
        execution = await engine.execute(make_task("t1"))
        await engine.shutdown()
        assert execution.status is ExecutionStatus.COMPLETED

    async def test_lifecycle_events(self, engine, registry, events):
        received = await events(EventType.TASK_STARTED, EventType.TASK_COMPLETED)
        registry.register("worker", CountingAgent(result=[1, 2]))
        await engine.execute(make_task("t1"))

        assert len(received["task_started"]) == 1
        completed = received["task_completed"][0]
        assert completed["task"].id == "t1"
        assert completed["execution"].status is ExecutionStatus.COMPLETED
        assert completed["output_data"]["data"] == [1, 2]

    async def test_sync_callable_agent(self, engine, registry):
        registry.register("worker", lambda config, payload: {"echo": payload})
        execution = await engine.execute(make_task("t1"), "hi")
        assert execution.result == {"echo": "hi"}


# ========================================================================
# DEPENDENCIES
# ========================================================================


class TestDependencies:

    async def test_unmet_dependency_skips_agent(self, engine, registry):
        agent = CountingAgent()
        registry.register("worker", agent)
        task = make_task("t2", dependencies=["t1"], retryPolicy={"maxAttempts": 3})

        execution = await engine.execute(task)

        assert execution.status is ExecutionStatus.FAILED
        assert execution.error_type == "DependencyNotMet"
        assert "t1" in execution.error
        assert agent.calls == []
        assert len(engine.get_history("t2")) == 1
        assert engine.pending_retry_count("t2") == 0

    async def test_fresh_dependency_allows_run(self, engine, registry):
        registry.register("worker", CountingAgent())
        await engine.history.append(make_record("t1", "worker", age=60))
        execution = await engine.execute(make_task("t2", dependencies=["t1"]))
        assert execution.status is ExecutionStatus.COMPLETED

    async def test_stale_dependency(self, engine, registry):
        registry.register("worker", CountingAgent())
        await engine.history.append(make_record("t1", "worker", age=25 * 3600))
        execution = await engine.execute(make_task("t2", dependencies=["t1"]))
        assert execution.error_type == "DependencyNotMet"
        assert "too old" in execution.error

    async def test_failed_dependency_does_not_count(self, engine, registry):
        registry.register("worker", CountingAgent())
        await engine.history.append(make_record("t1", "worker", status=ExecutionStatus.FAILED))
        execution = await engine.execute(make_task("t2", dependencies=["t1"]))
        assert execution.error_type == "DependencyNotMet"


# ========================================================================
# FAILURES AND RETRIES
# ========================================================================


class TestRetries:

    async def test_three_attempts_then_terminal(self, engine, registry, instant_sleep, events):
        received = await events(EventType.TASK_FAILED, EventType.TASK_RETRYING)
        agent = CountingAgent(error=RuntimeError("boom"))
        registry.register("worker", agent)
        task = make_task("t1", retryPolicy={"maxAttempts": 3, "backoffSeconds": 7})

        first = await engine.execute(task)
        last = await engine.wait_for_lineage(first.lineage_id)

        records = engine.get_history("t1")
        assert [r.attempt for r in records] == [1, 2, 3]
        assert all(r.status is ExecutionStatus.FAILED for r in records)
        assert {r.lineage_id for r in records} == {first.lineage_id}
        assert last is records[-1]
        assert len(agent.calls) == 3
        assert instant_sleep.delays == [7, 7]
        assert [e["will_retry"] for e in received["task_failed"]] == [True, True, False]
        assert len(received["task_retrying"]) == 2

    async def test_retry_then_success(self, engine, registry):
        outcomes = [RuntimeError("flaky"), {"ok": True}]

        async def flaky(config, payload):
            outcome = outcomes.pop(0)
            if isinstance(outcome, Exception):
                raise outcome
            return outcome

        registry.register("worker", flaky)
        task = make_task("t1", retryPolicy={"maxAttempts": 3})
        first = await engine.execute(task)
        last = await engine.wait_for_lineage(first.lineage_id)

        assert first.status is ExecutionStatus.FAILED
        assert last.status is ExecutionStatus.COMPLETED
        assert last.attempt == 2
        assert len(engine.get_history("t1")) == 2

    async def test_error_details_recorded(self, engine, registry):
        registry.register("worker", CountingAgent(error=NetworkError("connection refused")))
        execution = await engine.execute(make_task("t1"))
        assert execution.error == "connection refused"
        assert execution.error_type == "NetworkError"
        assert execution.completed_at is not None

    async def test_unknown_agent_is_not_retried(self, engine):
        task = make_task("t1", agent="ghost", retryPolicy={"maxAttempts": 3})
        execution = await engine.execute(task)
        await engine.wait_for_lineage(execution.lineage_id)
        assert execution.error_type == "AgentNotFoundError"
        assert len(engine.get_history("t1")) == 1

    async def test_timeout(self, registry, bus):
        engine = ExecutionEngine(registry, bus, settings=make_settings(execution_timeout_seconds=0.05))

        async def slow(config, payload):
            await asyncio.sleep(1)

        registry.register("worker", slow)
        execution = await engine.execute(make_task("t1"))
        assert execution.status is ExecutionStatus.FAILED
        assert execution.error_type == "ExecutionTimeoutError"

    async def test_cancel_pending_retries(self, registry, bus):
        engine = ExecutionEngine(registry, bus, settings=make_settings())
        registry.register("worker", CountingAgent(error=RuntimeError("boom")))
        task = make_task("t1", retryPolicy={"maxAttempts": 2, "backoffSeconds": 60})

        first = await engine.execute(task)
        assert engine.pending_retry_count("t1") == 1
        assert engine.history.latest_for_lineage(first.lineage_id).status is ExecutionStatus.RETRYING

        assert engine.cancel_pending_retries("t1") == 1
        last = await engine.wait_for_lineage(first.lineage_id)

        assert last.attempt == 2
        assert last.status is ExecutionStatus.FAILED
        assert last.error == "Retry cancelled"
        assert engine.pending_retry_count() == 0

    async def test_cancel_leaves_running_retry_alone(self, engine, registry):
        gate = asyncio.Event()
        calls = []

        async def flaky(config, payload):
            calls.append(payload)
            if len(calls) == 1:
                raise RuntimeError("boom")
            await gate.wait()
            return "recovered"

        registry.register("worker", flaky)
        first = await engine.execute(make_task("t1", retryPolicy={"maxAttempts": 2}))
        await wait_until(lambda: len(calls) == 2)

        assert engine.cancel_pending_retries("t1") == 0
        gate.set()
        last = await engine.wait_for_lineage(first.lineage_id)

        assert last.attempt == 2
        assert last.status is ExecutionStatus.COMPLETED
        assert last.result == "recovered"

    async def test_shutdown_waits_for_running_retry(self, engine, registry, events):
        received = await events(EventType.TASK_FAILED)
        gate = asyncio.Event()
        calls = []

        async def failing(config, payload):
            calls.append(payload)
            if len(calls) > 1:
                await gate.wait()
            raise RuntimeError(f"boom {len(calls)}")

        registry.register("worker", failing)
        first = await engine.execute(make_task("t1", retryPolicy={"maxAttempts": 2}))
        await wait_until(lambda: len(calls) == 2)

        stopping = asyncio.create_task(engine.shutdown())
        await asyncio.sleep(0.05)
        assert not stopping.done()
        gate.set()
        await stopping

        last = engine.history.latest_for_lineage(first.lineage_id)
        assert last.status is ExecutionStatus.FAILED
        assert last.error_type == "RuntimeError"
        assert last.error == "boom 2"
        assert [e["execution"].attempt for e in received["task_failed"]] == [1, 2]


# ========================================================================
# CONCURRENCY, OVERRIDES, RETENTION
# ========================================================================


class TestConcurrency:

    async def test_single_flight_rejects_second_run(self, registry, bus):
        engine = ExecutionEngine(registry, bus, settings=make_settings(concurrency_policy="single_flight"))
        gate = asyncio.Event()

        async def blocked(config, payload):
            await gate.wait()
            return "done"

        registry.register("worker", blocked)
        task = make_task("t1")
        first = asyncio.create_task(engine.execute(task))
        while engine.running_count == 0:
            await asyncio.sleep(0)

        rejected = await engine.execute(task)
        gate.set()
        completed = await first

        assert rejected.status is ExecutionStatus.FAILED
        assert rejected.error_type == "ConcurrentExecutionRejected"
        assert completed.status is ExecutionStatus.COMPLETED

    async def test_allow_concurrent_runs_both(self, engine, registry):
        gate = asyncio.Event()

        async def blocked(config, payload):
            await gate.wait()
            return "done"

        registry.register("worker", blocked)
        task = make_task("t1")
        runs = [asyncio.create_task(engine.execute(task)) for _ in range(2)]
        while engine.running_count < 2:
            await asyncio.sleep(0)
        assert engine.running_by_task() == {"t1": 2}
        gate.set()
        results = await asyncio.gather(*runs)
        assert all(r.status is ExecutionStatus.COMPLETED for r in results)


class TestOverridesAndRetention:

    async def test_reassign_routes_to_new_agent(self, engine, registry):
        old, new = CountingAgent(), CountingAgent()
        registry.register("worker", old)
        registry.register("fast_worker", new)
        task = make_task("t1")

        engine.reassign("t1", "fast_worker")
        execution = await engine.execute(task)

        assert execution.agent == "fast_worker"
        assert old.calls == []
        assert len(new.calls) == 1

    async def test_prune_removes_old_terminal_records(self, engine):
        await engine.history.append(make_record("old", "worker", age=200 * 3600))
        await engine.history.append(make_record("new", "worker", age=60))
        removed = await engine.prune()
        assert removed == 1
        assert [r.task_id for r in engine.get_history()] == ["new"]

    async def test_prune_with_explicit_cutoff(self, engine):
        await engine.history.append(make_record("a", "worker", age=7200))
        assert await engine.prune(before=utcnow() - timedelta(hours=1)) == 1

    def test_empty_history_is_kept(self, registry, bus):
        history = ExecutionHistory()
        engine = ExecutionEngine(registry, bus, history=history, settings=make_settings())
        assert engine.history is history

    async def test_history_cap_evicts_oldest(self, registry, bus):
        history = ExecutionHistory(max_records=10)
        engine = ExecutionEngine(registry, bus, history=history, settings=make_settings())
        registry.register("worker", CountingAgent())
        for i in range(12):
            await engine.execute(make_task(f"t{i}"))
        assert len(history) == 10
        assert history.all()[0].task_id == "t2"

    async def test_stats(self, engine, registry):
        registry.register("worker", CountingAgent())
        await engine.execute(make_task("t1"))
        stats = engine.stats
        assert stats["running"] == 0
        assert stats["concurrency_policy"] == "allow_concurrent"
        assert stats["history"]["by_status"]["completed"] == 1
