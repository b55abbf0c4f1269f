"""Tests for the analytics package: failure classifier, analyzer, decision engine."""

import asyncio
import itertools
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest

from conftest import SleepRecorder, make_record, make_settings, make_task, wait_until
from taskweave.analytics import (
    DecisionAction,
    DecisionEngine,
    FailureClassifier,
    FailureKind,
    OrchestrationDecision,
    PerformanceAnalysis,
    PerformanceAnalyzer,
    PerformanceSnapshot,
    PriorityAdjustment,
    SchedulePattern,
    SchedulePatternLearner,
    Urgency,
)
from taskweave.analytics.pattern_learner import task_type_for
from taskweave.analytics.performance_analyzer import (
    HIGH_SYSTEM_LOAD,
    REBALANCE_WORKLOAD,
    TASK_QUEUE_BUILDUP,
    category_bottleneck,
)
from taskweave.exceptions import NetworkError, RateLimitError
from taskweave.interfaces.event_bus import EventType
from taskweave.messaging.queue_bridge import QueueBridge
from taskweave.messaging.queue_clients import InMemoryQueueClient
from taskweave.scheduling.execution_engine import ExecutionEngine
from taskweave.scheduling.execution_history import ExecutionHistory, ExecutionStatus, TaskExecution, utcnow
from taskweave.scheduling.task_definitions import load_task_definitions


def _analysis_settings(**overrides):
    values = {"category_minimums": {}, "expected_durations": {"fast_agent": 10.0}}
    values.update(overrides)
    return make_settings(**values)


def _snapshot(agent, completion_rate=1.0, efficiency=1.0):
    return PerformanceSnapshot(
        agent=agent, total=10, completed=int(completion_rate * 10),
        failed=10 - int(completion_rate * 10), completion_rate=completion_rate,
        average_duration=60.0, expected_duration=60.0, efficiency=efficiency,
    )


@pytest.fixture
def task_set():
    return load_task_definitions({
        "version": "1.0.0",
        "prospecting_tasks": [
            {"id": "daily_prospect_research", "type": "scheduled", "schedule": "0 8 * * 1-5",
             "agent": "prospecting_agent"},
            {"id": "prospect_research_enhancement", "type": "manual", "agent": "prospecting_agent"},
        ],
        "outreach_tasks": [
            {"id": "pitch_generation", "type": "manual", "agent": "pitch_creator_agent"},
        ],
    })


@pytest.fixture
def history():
    return ExecutionHistory()


# ========================================================================
# FAILURE CLASSIFIER
# ========================================================================


class TestFailureClassifier:

    @pytest.fixture
    def classifier(self):
        return FailureClassifier(make_settings())

    def test_network_error_type(self, classifier):
        pattern = classifier.classify(NetworkError("socket closed"))
        assert pattern.kind is FailureKind.NETWORK
        assert pattern.is_recoverable
        assert pattern.confidence == 0.8
        assert pattern.backoff_seconds == 300
        assert pattern.suggested_fix == "retry_with_backoff"

    def test_builtin_timeout_is_network(self, classifier):
        assert classifier.classify(TimeoutError()).kind is FailureKind.NETWORK

    def test_rate_limit_error_type(self, classifier):
        pattern = classifier.classify(RateLimitError("slow down"))
        assert pattern.kind is FailureKind.RATE_LIMIT
        assert pattern.confidence == 0.9
        assert pattern.backoff_seconds == 900
        assert pattern.suggested_fix == "delay_and_retry"

    @pytest.mark.parametrize("text,kind,matched", [
        ("Connection reset by peer", FailureKind.NETWORK, "connection"),
        ("upstream timed out", FailureKind.NETWORK, "timed out"),
        ("HTTP 429 Too Many Requests", FailureKind.RATE_LIMIT, "too many requests"),
        ("Rate limit exceeded for key", FailureKind.RATE_LIMIT, "rate limit"),
    ])
    def test_message_patterns(self, classifier, text, kind, matched):
        pattern = classifier.classify(RuntimeError(text))
        assert pattern.kind is kind
        assert pattern.matched_pattern == matched

    def test_network_patterns_win_over_rate_limit(self, classifier):
        pattern = classifier.classify("rate limit proxy connection refused")
        assert pattern.kind is FailureKind.NETWORK

    def test_everything_else_is_unrecoverable(self, classifier):
        pattern = classifier.classify(ValueError("schema mismatch in prospect list"))
        assert pattern.kind is FailureKind.UNRECOVERABLE
        assert not pattern.is_recoverable
        assert pattern.confidence == 0.0
        assert pattern.suggested_fix == "manual_intervention"
        assert pattern.reason == "schema mismatch in prospect list"

    def test_none(self, classifier):
        assert classifier.classify(None).reason == "unknown error"

    def test_backoffs_follow_settings(self):
        classifier = FailureClassifier(make_settings(network_backoff_seconds=5))
        assert classifier.classify("network down").backoff_seconds == 5


# ========================================================================
# PERFORMANCE ANALYZER
# ========================================================================


class TestPerformanceAnalyzer:

    async def test_efficiency_against_expected_duration(self, history):
        await history.append(make_record("t1", "fast_agent", duration=20.0))
        await history.append(make_record("t2", "fast_agent", duration=20.0))
        analysis = PerformanceAnalyzer(history, _analysis_settings()).analyze()

        snapshot = analysis.snapshots["fast_agent"]
        assert snapshot.average_duration == pytest.approx(20.0)
        assert snapshot.efficiency == pytest.approx(0.5)
        assert snapshot.completion_rate == 1.0

    async def test_efficiency_is_capped_at_one(self, history):
        await history.append(make_record("t1", "fast_agent", duration=2.0))
        analysis = PerformanceAnalyzer(history, _analysis_settings()).analyze()
        assert analysis.agent_efficiency == {"fast_agent": 1.0}

    async def test_agent_without_completions_uses_default(self, history):
        await history.append(make_record("t1", "flaky", status=ExecutionStatus.FAILED))
        analysis = PerformanceAnalyzer(history, _analysis_settings()).analyze()
        snapshot = analysis.snapshots["flaky"]
        assert snapshot.completion_rate == 0.0
        assert snapshot.average_duration == 300.0
        assert snapshot.efficiency == 1.0

    async def test_window_limits_records(self, history):
        for i in range(5):
            await history.append(make_record(f"t{i}", "fast_agent"))
        analysis = PerformanceAnalyzer(history, _analysis_settings(performance_window=3)).analyze()
        assert analysis.window_size == 3
        assert analysis.snapshots["fast_agent"].total == 3

    def test_high_load(self, history):
        analyzer = PerformanceAnalyzer(
            history, _analysis_settings(max_concurrent_tasks=10), running_by_task=lambda: {"t": 9}
        )
        analysis = analyzer.analyze()
        assert analysis.system_load == pytest.approx(0.9)
        assert analysis.bottlenecks == [HIGH_SYSTEM_LOAD]
        assert analysis.system_health == pytest.approx(0.8)

    def test_load_is_capped_and_buildup_detected(self, history):
        analyzer = PerformanceAnalyzer(
            history, _analysis_settings(max_concurrent_tasks=4, redundant_running_threshold=20),
            running_by_task=lambda: {"a": 6, "b": 6},
        )
        analysis = analyzer.analyze()
        assert analysis.system_load == 1.0
        assert TASK_QUEUE_BUILDUP in analysis.bottlenecks

    async def test_category_minimum(self, history):
        await history.append(make_record("daily_prospect_research", "prospecting_agent"))
        settings = _analysis_settings(category_minimums={"prospect": 2})
        analysis = PerformanceAnalyzer(history, settings).analyze()
        assert analysis.bottlenecks == [category_bottleneck("prospect")]
        assert category_bottleneck("prospect") == "qualified_prospects_low"

    async def test_health_penalties_floor_at_zero(self, history):
        for i in range(4):
            await history.append(make_record(f"t{i}", "x", status=ExecutionStatus.FAILED))
        analyzer = PerformanceAnalyzer(
            history, _analysis_settings(max_concurrent_tasks=10, redundant_running_threshold=20),
            running_by_task=lambda: {"a": 16},
        )
        assert analyzer.analyze().system_health == pytest.approx(0.2)

    def test_redundant_runs(self, history):
        analyzer = PerformanceAnalyzer(
            history, _analysis_settings(max_concurrent_tasks=100),
            running_by_task=lambda: {"dup": 4, "ok": 1},
        )
        assert analyzer.analyze().redundant_tasks() == ["dup"]

    async def test_rebalance_and_recommended(self, history):
        await history.append(make_record("t1", "fast_agent", duration=40.0))
        await history.append(make_record("t2", "other", duration=1.0))
        settings = _analysis_settings(always_active_tasks=["keepalive", "busy"])
        analyzer = PerformanceAnalyzer(history, settings, running_by_task=lambda: {"busy": 1})
        analysis = analyzer.analyze()
        assert REBALANCE_WORKLOAD in analysis.suggestions
        assert analysis.recommended_tasks == ["keepalive"]

    def test_to_dict(self, history):
        data = PerformanceAnalyzer(history, _analysis_settings()).analyze().to_dict()
        assert data["system_health"] == 1.0
        assert data["bottlenecks"] == []

    async def test_attach_reanalyses_on_events(self, history, bus):
        analyzer = PerformanceAnalyzer(history, _analysis_settings())
        await analyzer.attach(bus)
        await bus.publish(EventType.TASK_COMPLETED, {})
        await bus.publish(EventType.TASK_FAILED, {})
        assert analyzer.analysis_count == 2
        assert analyzer.latest is not None

        await analyzer.detach(bus)
        assert bus.topics == []


# ========================================================================
# DECISION ENGINE
# ========================================================================


class RecordingAgent:
    def __init__(self):
        self.calls = 0

    async def run(self, config, payload=None):
        self.calls += 1
        return {"ok": True}


@pytest.fixture
def agent(registry):
    agent = RecordingAgent()
    for agent_id in ("prospecting_agent", "pitch_creator_agent", "fast_agent"):
        registry.register(agent_id, agent)
    return agent


@pytest.fixture
def engine(registry, bus, instant_sleep):
    return ExecutionEngine(registry, bus, settings=make_settings(), sleep=instant_sleep)


@pytest.fixture
def defer_sleep():
    return SleepRecorder()


@pytest.fixture
def decisions(engine, bus, task_set, defer_sleep):
    settings = make_settings()
    analyzer = PerformanceAnalyzer(engine.history, settings, running_by_task=engine.running_by_task)
    decision_engine = DecisionEngine(engine, analyzer, bus, settings, sleep=defer_sleep)
    decision_engine.update_tasks(task_set)
    return decision_engine


class TestDecisions:

    def test_confidence_must_be_in_range(self):
        with pytest.raises(ValueError):
            OrchestrationDecision(DecisionAction.CANCEL, "t", "why", confidence=1.5)

    @pytest.mark.parametrize("confidence,applied", [(0.81, True), (0.8, False), (0.79, False)])
    async def test_threshold_is_strict(self, decisions, engine, task_set, confidence, applied):
        decision = OrchestrationDecision(
            DecisionAction.AGENT_REASSIGN, "pitch_generation", "slow",
            confidence=confidence, agent_preference="fast_agent",
        )
        await decisions.submit(decision)
        assert decision.applied is applied
        expected = "fast_agent" if applied else "pitch_creator_agent"
        assert engine.agent_for(task_set["pitch_generation"]) == expected

    async def test_newer_decision_supersedes(self, decisions):
        first = OrchestrationDecision(DecisionAction.CANCEL, "t", "a", confidence=0.1)
        second = OrchestrationDecision(DecisionAction.SCHEDULE, "t", "b", confidence=0.1)
        assert await decisions.record(first) is None
        assert await decisions.record(second) is first
        assert decisions.active_decisions == {"t": second}

    async def test_submit_publishes_decision(self, decisions, events):
        received = await events(EventType.DECISION_MADE)
        await decisions.submit(OrchestrationDecision(DecisionAction.CANCEL, "t", "a", confidence=0.5))
        event = received["decision_made"][0]
        assert event["decision"]["action"] == "cancel"
        assert event["applied"] is False

    def test_make_decisions(self, decisions):
        analysis = PerformanceAnalysis(
            snapshots={
                "prospecting_agent": _snapshot("prospecting_agent", completion_rate=0.5, efficiency=0.9),
                "pitch_creator_agent": _snapshot("pitch_creator_agent", efficiency=0.4),
                "fast_agent": _snapshot("fast_agent", efficiency=0.95),
            },
            bottlenecks=["qualified_prospects_low", "unmapped_bottleneck"],
            suggestions=["cancel_redundant:pitch_generation"],
        )
        made = decisions.make_decisions(analysis)
        by_action = {}
        for d in made:
            by_action.setdefault(d.action, []).append(d)

        boosts = by_action[DecisionAction.PRIORITY_BOOST]
        assert {d.task_id for d in boosts} == {"daily_prospect_research", "prospect_research_enhancement"}
        assert all(d.confidence == 0.9 and d.priority_adjustment == "high" for d in boosts)

        (schedule,) = by_action[DecisionAction.SCHEDULE]
        assert schedule.task_id == "prospect_research_enhancement"
        assert schedule.confidence == 0.85
        assert schedule.suggested_timing > utcnow() + timedelta(seconds=590)

        (reassign,) = by_action[DecisionAction.AGENT_REASSIGN]
        assert reassign.task_id == "pitch_generation"
        assert reassign.agent_preference == "fast_agent"
        assert reassign.confidence == 0.7

        (cancel,) = by_action[DecisionAction.CANCEL]
        assert cancel.task_id == "pitch_generation"
        assert cancel.confidence == 0.8

    def test_single_agent_is_never_reassigned(self, decisions):
        analysis = PerformanceAnalysis(
            snapshots={"pitch_creator_agent": _snapshot("pitch_creator_agent", efficiency=0.1)},
        )
        assert decisions.make_decisions(analysis) == []

    async def test_run_cycle_schedules_bottleneck_task(self, decisions, engine, agent, defer_sleep, events):
        received = await events(EventType.SYSTEM_ANALYSIS_COMPLETE)
        made = await decisions.run_cycle()

        assert [d.action for d in made] == [DecisionAction.SCHEDULE]
        assert made[0].applied
        await wait_until(lambda: engine.get_history("prospect_research_enhancement"))
        assert defer_sleep.delays[0] == pytest.approx(600, abs=5)
        assert decisions.cycle_count == 1

        summary = received["system_analysis_complete"][0]
        assert summary["decisions"] == 1
        assert summary["applied"] == 1
        assert summary["bottlenecks"] == ["qualified_prospects_low"]

    async def test_priority_boost_goes_to_high_priority_queue(self, decisions, engine):
        client = InMemoryQueueClient()
        decisions.set_queue_bridge(QueueBridge(client, engine, make_settings()))
        decision = OrchestrationDecision(
            DecisionAction.PRIORITY_BOOST, "pitch_generation", "low rate",
            confidence=0.9, priority_adjustment="high",
        )
        await decisions.submit(decision)

        assert decision.applied
        topic, message = client.published[0]
        assert topic == "tasks.high_priority"
        assert message.task_id == "pitch_generation"
        assert message.agent_type == "pitch_creator_agent"
        await client.close()

    async def test_priority_boost_without_queue_runs_now(self, decisions, engine, agent):
        decision = OrchestrationDecision(
            DecisionAction.PRIORITY_BOOST, "pitch_generation", "low rate", confidence=0.9,
        )
        await decisions.submit(decision)
        await wait_until(lambda: engine.get_history("pitch_generation"))
        assert agent.calls == 1

    async def test_schedule_unknown_task_needs_queue(self, decisions, engine):
        decision = OrchestrationDecision(DecisionAction.SCHEDULE, "ghost", "x", confidence=0.9)
        assert await decisions.apply(decision) is False

        client = InMemoryQueueClient()
        decisions.set_queue_bridge(QueueBridge(client, engine, make_settings()))
        assert await decisions.apply(decision) is True
        assert client.published[0][0] == "tasks.medium_priority"
        await client.close()

    async def test_cancel_stops_pending_retries(self, bus, task_set):
        mock_engine = MagicMock()
        analyzer = PerformanceAnalyzer(ExecutionHistory(), make_settings())
        decision_engine = DecisionEngine(mock_engine, analyzer, bus, make_settings())
        decision = OrchestrationDecision(DecisionAction.CANCEL, "pitch_generation", "dup", confidence=0.85)

        await decision_engine.submit(decision)

        assert decision.applied
        mock_engine.cancel_pending_retries.assert_called_once_with("pitch_generation")


# ========================================================================
# FAILURE RECOVERY
# ========================================================================


def _failure(task, error, will_retry=False):
    return {"task": task, "error": error, "will_retry": will_retry}


class TestRecovery:

    async def test_recoverable_failure_is_rescheduled(self, decisions, task_set, engine, agent,
                                                      defer_sleep, events):
        received = await events(EventType.RECOVERY_SUGGESTED)
        task = task_set["pitch_generation"]

        decision = await decisions.handle_task_failure(_failure(task, NetworkError("connection reset")))

        assert decision.action is DecisionAction.RESCHEDULE
        assert decision.confidence == 0.8
        assert decision.applied
        assert decisions.recovery_count("pitch_generation") == 1
        assert received["recovery_suggested"][0]["pattern"]["kind"] == "network"
        await wait_until(lambda: engine.get_history("pitch_generation"))
        assert defer_sleep.delays[0] == pytest.approx(300, abs=5)

    async def test_unrecoverable_failure_abandons(self, decisions, task_set, events):
        received = await events(EventType.TASK_ABANDONED, EventType.RECOVERY_SUGGESTED)
        task = task_set["pitch_generation"]
        assert await decisions.handle_task_failure(_failure(task, ValueError("bad template"))) is None
        assert received["task_abandoned"][0]["reason"] == "bad template"
        assert received["recovery_suggested"] == []

    async def test_recovery_limit(self, engine, bus, task_set, events):
        received = await events(EventType.TASK_ABANDONED)
        settings = make_settings(max_recovery_reschedules=2, auto_recover=False)
        decision_engine = DecisionEngine(engine, PerformanceAnalyzer(engine.history, settings), bus, settings)
        decision_engine.update_tasks(task_set)
        task = task_set["pitch_generation"]

        for _ in range(2):
            assert await decision_engine.handle_task_failure(_failure(task, "network down")) is not None
        assert await decision_engine.handle_task_failure(_failure(task, "network down")) is None
        assert received["task_abandoned"][0]["reason"].startswith("Recovery limit of 2 reached")

    async def test_failures_with_pending_retry_are_ignored(self, decisions, task_set, events):
        received = await events(EventType.RECOVERY_SUGGESTED, EventType.TASK_ABANDONED)
        task = task_set["pitch_generation"]
        assert await decisions.handle_task_failure(_failure(task, "network", will_retry=True)) is None
        assert received == {"recovery_suggested": [], "task_abandoned": []}

    async def test_queue_tasks_are_left_to_redelivery(self, decisions):
        task = make_task("q1", category="queue")
        assert await decisions.handle_task_failure(_failure(task, "network down")) is None

    async def test_tasks_outside_the_set_are_not_applied(self, decisions):
        task = make_task("adhoc")
        decision = await decisions.handle_task_failure(_failure(task, "connection refused"))
        assert decision is not None
        assert not decision.applied
        assert decisions.deferred_count() == 0

    async def test_completion_resets_recovery_count(self, engine, bus, task_set):
        settings = make_settings(auto_recover=False)
        decision_engine = DecisionEngine(engine, PerformanceAnalyzer(engine.history, settings), bus, settings)
        decision_engine.update_tasks(task_set)
        task = task_set["pitch_generation"]
        await decision_engine.start()
        try:
            await bus.publish(EventType.TASK_FAILED, _failure(task, "network down"))
            assert decision_engine.recovery_count("pitch_generation") == 1
            await bus.publish(EventType.TASK_COMPLETED, {"task": task})
            assert decision_engine.recovery_count("pitch_generation") == 0
        finally:
            await decision_engine.stop()
        assert bus.topics == []


# ========================================================================
# DISABLED AND BOOSTED TASKS
# ========================================================================


def _with_disabled(*task_ids):
    def entry(task_id, **fields):
        return {"id": task_id, "enabled": task_id not in task_ids, **fields}

    return load_task_definitions({
        "version": "1.0.1",
        "prospecting_tasks": [
            entry("daily_prospect_research", type="scheduled", schedule="0 8 * * 1-5",
                  agent="prospecting_agent"),
            entry("prospect_research_enhancement", type="manual", agent="prospecting_agent"),
        ],
        "outreach_tasks": [
            entry("pitch_generation", type="manual", agent="pitch_creator_agent"),
        ],
    })


@pytest.fixture
def gate():
    return asyncio.Event()


@pytest.fixture
def held_decisions(engine, bus, task_set, gate):
    async def held_sleep(delay):
        await gate.wait()

    settings = make_settings()
    decision_engine = DecisionEngine(engine, PerformanceAnalyzer(engine.history, settings), bus, settings,
                                     sleep=held_sleep)
    decision_engine.update_tasks(task_set)
    return decision_engine


class TestDisabledTasks:

    async def test_disabled_bottleneck_task_is_not_run(self, decisions, engine, agent):
        decisions.update_tasks(_with_disabled("prospect_research_enhancement"))
        made = await decisions.run_cycle()

        assert [d.action for d in made] == [DecisionAction.SCHEDULE]
        assert not made[0].applied
        assert decisions.deferred_count() == 0
        await asyncio.sleep(0.05)
        assert engine.get_history("prospect_research_enhancement") == []
        assert agent.calls == 0

    async def test_disabled_task_is_not_boosted(self, decisions, engine, agent):
        decisions.update_tasks(_with_disabled("pitch_generation"))
        client = InMemoryQueueClient()
        decisions.set_queue_bridge(QueueBridge(client, engine, make_settings()))
        decision = OrchestrationDecision(
            DecisionAction.PRIORITY_BOOST, "pitch_generation", "low rate", confidence=0.9,
        )
        await decisions.submit(decision)

        assert not decision.applied
        assert client.published == []
        await client.close()

    async def test_reload_drops_deferred_runs(self, held_decisions, engine, agent, gate):
        decision = OrchestrationDecision(DecisionAction.SCHEDULE, "pitch_generation", "x", confidence=0.9)
        await held_decisions.submit(decision)
        assert held_decisions.deferred_count("pitch_generation") == 1

        held_decisions.update_tasks(_with_disabled("pitch_generation"))
        await wait_until(lambda: held_decisions.deferred_count() == 0)
        gate.set()
        await asyncio.sleep(0.05)
        assert engine.get_history("pitch_generation") == []
        assert agent.calls == 0

    async def test_reload_keeps_deferred_runs_of_enabled_tasks(self, held_decisions, gate, engine, agent):
        decision = OrchestrationDecision(DecisionAction.SCHEDULE, "pitch_generation", "x", confidence=0.9)
        await held_decisions.submit(decision)
        held_decisions.update_tasks(_with_disabled("daily_prospect_research"))
        assert held_decisions.deferred_count("pitch_generation") == 1

        gate.set()
        await wait_until(lambda: engine.get_history("pitch_generation"))
        assert agent.calls == 1

    async def test_deferred_run_uses_current_definition(self, decisions, engine, agent):
        decisions.update_tasks(_with_disabled("pitch_generation"))
        await decisions._run_later("pitch_generation", 0)
        assert engine.get_history("pitch_generation") == []

        reloaded = load_task_definitions([
            {"id": "pitch_generation", "type": "manual", "agent": "fast_agent"},
        ])
        decisions.update_tasks(reloaded)
        await decisions._run_later("pitch_generation", 0)
        await wait_until(lambda: engine.get_history("pitch_generation"))
        assert engine.get_history("pitch_generation")[0].agent == "fast_agent"

    async def test_recovery_of_disabled_task_is_not_applied(self, decisions, task_set):
        task = task_set["pitch_generation"]
        decisions.update_tasks(_with_disabled("pitch_generation"))
        decision = await decisions.handle_task_failure(_failure(task, NetworkError("connection reset")))

        assert decision is not None
        assert not decision.applied
        assert decisions.deferred_count() == 0


class TestBoostThroughQueue:

    async def test_boost_runs_configured_task_with_dependencies(self, decisions, engine, agent):
        tasks = load_task_definitions([
            {"id": "prospect_research", "type": "manual", "agent": "prospecting_agent"},
            {"id": "pitch_generation", "type": "manual", "agent": "pitch_creator_agent",
             "dependencies": ["prospect_research"], "retryPolicy": {"maxAttempts": 3}},
        ])
        decisions.update_tasks(tasks)
        client = InMemoryQueueClient()
        bridge = QueueBridge(client, engine, make_settings(), tasks=tasks)
        decisions.set_queue_bridge(bridge)
        await bridge.subscribe("tasks.high_priority")

        decision = OrchestrationDecision(
            DecisionAction.PRIORITY_BOOST, "pitch_generation", "low rate",
            confidence=0.9, priority_adjustment="high",
        )
        await decisions.submit(decision)
        await client.join("tasks.high_priority")

        records = engine.get_history("pitch_generation")
        assert len(records) == 1
        assert records[0].status is ExecutionStatus.FAILED
        assert records[0].error_type == "DependencyNotMet"
        assert agent.calls == 0
        assert bridge.dead_lettered == 1
        await bridge.stop()
        await client.close()


# ========================================================================
# ADAPTIVE SCHEDULING
# ========================================================================


_run_ids = itertools.count()

WEDNESDAY_2PM = datetime(2026, 3, 4, 14, 0, tzinfo=timezone.utc)


def _run(task_id, start, status=ExecutionStatus.COMPLETED, duration=60.0):
    return TaskExecution(
        id=f"{task_id}_{next(_run_ids)}",
        task_id=task_id,
        lineage_id=f"lin_{task_id}",
        agent="prospecting_agent",
        status=status,
        started_at=start,
        completed_at=start + timedelta(seconds=duration),
    )


async def _fill(history, records):
    for record in records:
        await history.append(record)


@pytest.fixture
def learner(history):
    return SchedulePatternLearner(history, make_settings(timezone="UTC"))


@pytest.fixture
async def learned(history, learner):
    """Seven Wednesday 2pm prospect runs plus three pitch runs."""
    await _fill(history, [_run("daily_prospect_research", WEDNESDAY_2PM + timedelta(minutes=i))
                          for i in range(7)])
    await _fill(history, [_run("pitch_generation", WEDNESDAY_2PM - timedelta(hours=4))
                          for _ in range(3)])
    learner.learn()
    return learner


class TestSchedulePatternLearner:

    @pytest.mark.parametrize("task_id,task_type", [
        ("daily_prospect_research", "prospecting"),
        ("pitch_generation", "pitch_creation"),
        ("weekly_analytics_rollup", "analytics"),
        ("kanban_sync", "kanban"),
        ("backup", "general"),
    ])
    def test_task_type_from_id(self, task_id, task_type):
        assert task_type_for(task_id) == task_type

    async def test_needs_minimum_history(self, history, learner):
        await _fill(history, [_run("daily_prospect_research", WEDNESDAY_2PM) for _ in range(9)])
        assert learner.learn() == {}
        assert learner.pattern_for("daily_prospect_research") == SchedulePattern.initial("prospecting")

    async def test_learned_pattern(self, learned):
        assert set(learned.patterns) == {"prospecting"}
        pattern = learned.patterns["prospecting"]
        assert pattern.optimal_hour == 14
        assert pattern.optimal_weekday == 2
        assert pattern.success_rate == 1.0
        assert pattern.average_duration == pytest.approx(60.0)
        # 7 samples, identical durations: 0.7 * 0.07 + 0.3 * 1.0
        assert pattern.confidence == pytest.approx(0.349)

    async def test_failures_lower_success_rate(self, history, learner):
        await _fill(history, [_run("prospect_scan", WEDNESDAY_2PM) for _ in range(3)])
        await _fill(history, [_run("prospect_scan", WEDNESDAY_2PM, ExecutionStatus.FAILED) for _ in range(3)])
        await _fill(history, [_run("pitch_generation", WEDNESDAY_2PM) for _ in range(4)])
        pattern = learner.learn()["prospecting"]
        assert pattern.success_rate == 0.5
        assert pattern.sample_size == 6

    async def test_confidence_is_capped(self, history, learner):
        await _fill(history, [_run("prospect_scan", WEDNESDAY_2PM) for _ in range(120)])
        assert learner.learn()["prospecting"].confidence == 0.95

    async def test_inconsistent_durations_lower_confidence(self, history, learner):
        await _fill(history, [_run("prospect_scan", WEDNESDAY_2PM, duration=d)
                              for d in (10, 10, 10, 10, 10, 190, 190, 190, 190, 190)])
        pattern = learner.learn()["prospecting"]
        # std 90 over mean 100 leaves consistency 0.1
        assert pattern.confidence == pytest.approx(0.7 * 0.1 + 0.3 * 0.1)

    @pytest.mark.parametrize("urgency,active,now,expected", [
        ("high", 0, WEDNESDAY_2PM, WEDNESDAY_2PM),
        ("high", 11, WEDNESDAY_2PM, WEDNESDAY_2PM + timedelta(minutes=5)),
        ("medium", 0, WEDNESDAY_2PM - timedelta(minutes=90), WEDNESDAY_2PM),
        ("medium", 2, WEDNESDAY_2PM + timedelta(hours=1), WEDNESDAY_2PM + timedelta(hours=1, minutes=10)),
        ("medium", 6, WEDNESDAY_2PM + timedelta(hours=1), WEDNESDAY_2PM + timedelta(hours=2)),
        ("low", 0, WEDNESDAY_2PM - timedelta(hours=1), WEDNESDAY_2PM),
        ("low", 0, WEDNESDAY_2PM + timedelta(hours=1), WEDNESDAY_2PM + timedelta(days=7)),
    ])
    async def test_recommended_time(self, learned, urgency, active, now, expected):
        recommendation = learned.recommend("daily_prospect_research", urgency, active_tasks=active, now=now)
        assert recommendation.recommended_time == expected

    @pytest.mark.parametrize("urgency,active,adjustment", [
        ("high", 20, "boost"),
        ("low", 9, "defer"),
        ("medium", 2, "boost"),
        ("medium", 5, "maintain"),
    ])
    async def test_adjustment(self, learned, urgency, active, adjustment):
        recommendation = learned.recommend("daily_prospect_research", urgency, active_tasks=active)
        assert recommendation.adjustment is PriorityAdjustment(adjustment)

    async def test_low_success_rate_defers_when_busy(self, history, learner):
        await _fill(history, [_run("prospect_scan", WEDNESDAY_2PM) for _ in range(3)])
        await _fill(history, [_run("prospect_scan", WEDNESDAY_2PM, ExecutionStatus.FAILED) for _ in range(3)])
        await _fill(history, [_run("pitch_generation", WEDNESDAY_2PM) for _ in range(4)])
        learner.learn()
        recommendation = learner.recommend("prospect_scan", Urgency.MEDIUM, active_tasks=7)
        assert recommendation.adjustment is PriorityAdjustment.DEFER
        assert "Low success rate (50%), scheduling carefully" in recommendation.reason

    async def test_reason(self, learned):
        recommendation = learned.recommend("daily_prospect_research", "high", active_tasks=1)
        assert recommendation.reason == (
            "High urgency task; High success rate (100%); System idle, prioritizing; Limited historical data"
        )

    async def test_standard_reason(self, history, learner):
        await _fill(history, [_run("prospect_scan", WEDNESDAY_2PM) for _ in range(80)])
        await _fill(history, [_run("prospect_scan", WEDNESDAY_2PM, ExecutionStatus.FAILED) for _ in range(20)])
        learner.learn()
        recommendation = learner.recommend("prospect_scan", "medium", active_tasks=5)
        assert recommendation.reason == "Standard scheduling"
        assert recommendation.adjustment is PriorityAdjustment.MAINTAIN

    async def test_unknown_type_uses_initial_pattern(self, learned):
        recommendation = learned.recommend("backup", "medium", active_tasks=5)
        assert recommendation.task_type == "general"
        assert recommendation.confidence == 0.1

    def test_active_tasks_default_to_running_count(self, history):
        learner = SchedulePatternLearner(history, make_settings(), running_count=lambda: 12)
        recommendation = learner.recommend("backup", "high")
        assert "System busy, deferring" in recommendation.reason

    async def test_analytics(self, learned):
        data = learned.analytics()
        assert data["total_executions"] == 10
        assert data["success_rate"] == 1.0
        assert data["patterns_learned"] == 1
        assert data["confidence_score"] == pytest.approx(0.349)
        assert data["patterns"]["prospecting"]["optimal_hour"] == 14

    async def test_attach_relearns_on_events(self, history, learner, bus):
        await _fill(history, [_run("prospect_scan", WEDNESDAY_2PM) for _ in range(10)])
        await learner.attach(bus)
        await bus.publish(EventType.TASK_COMPLETED, {})
        assert "prospecting" in learner.patterns
        await learner.detach(bus)
        assert bus.topics == []
