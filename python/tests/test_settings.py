"""Tests for settings, logging helpers and the exception hierarchy."""

import json
import logging

import pytest
from pydantic import ValidationError

from taskweave.config import Settings, get_settings
from taskweave.enhanced_logging import configure_logging, track_performance
from taskweave.exceptions import (
    AgentNotFoundError,
    ConfigError,
    CyclicDependencyError,
    DependencyNotMet,
    ErrorCategory,
    ExecutionTimeoutError,
    NetworkError,
    UnrecoverableError,
    categorize_error,
    describe_error,
)


# ========================================================================
# SETTINGS
# ========================================================================


class TestSettings:

    def test_defaults(self, monkeypatch):
        monkeypatch.delenv("TASKWEAVE_LOG_LEVEL", raising=False)
        settings = Settings(_env_file=None)
        assert settings.concurrency_policy == "allow_concurrent"
        assert settings.freshness_window_hours == 24.0
        assert settings.confidence_threshold == 0.8
        assert settings.max_recovery_reschedules == 3
        assert settings.queue_backend == "memory"
        assert settings.timezone == "America/Denver"

    def test_queue_defaults(self):
        settings = Settings(_env_file=None)
        assert settings.queue_prefetch == 10
        assert settings.queue_claim_idle_seconds > settings.execution_timeout_seconds
        assert settings.queue_message_ttl_seconds == {"high": 3600.0, "medium": 7200.0, "low": 14400.0}

    def test_environment_override(self, monkeypatch):
        monkeypatch.setenv("TASKWEAVE_CONCURRENCY_POLICY", "single_flight")
        monkeypatch.setenv("TASKWEAVE_MAX_CONCURRENT_TASKS", "4")
        monkeypatch.setenv("TASKWEAVE_QUEUE_TOPICS", '["agents.worker"]')
        settings = Settings(_env_file=None)
        assert settings.concurrency_policy == "single_flight"
        assert settings.max_concurrent_tasks == 4
        assert settings.queue_topics == ["agents.worker"]

    def test_log_level_is_normalised(self):
        assert Settings(_env_file=None, log_level="debug").log_level == "DEBUG"
        assert Settings(_env_file=None, log_level="warning").get_log_level() == logging.WARNING

    @pytest.mark.parametrize("field,value", [
        ("log_level", "LOUD"),
        ("log_format", "xml"),
        ("environment", "qa"),
        ("concurrency_policy", "queue_everything"),
        ("queue_backend", "kafka"),
        ("timezone", "Mars/Olympus_Mons"),
        ("confidence_threshold", 1.5),
        ("freshness_window_hours", 0),
        ("queue_prefetch", 0),
    ])
    def test_invalid_values(self, field, value):
        with pytest.raises(ValidationError):
            Settings(_env_file=None, **{field: value})

    def test_expected_duration_lookup(self):
        settings = Settings(_env_file=None, expected_durations={"fast": 5.0}, default_expected_duration=42.0)
        assert settings.expected_duration_for("fast") == 5.0
        assert settings.expected_duration_for("unknown") == 42.0

    def test_tzinfo(self):
        assert Settings(_env_file=None, timezone="UTC").tzinfo.key == "UTC"

    def test_get_settings_is_cached(self):
        assert get_settings() is get_settings()


# ========================================================================
# LOGGING
# ========================================================================


class TestLogging:

    @pytest.fixture
    def restore_root(self):
        root = logging.getLogger()
        level, handlers = root.level, list(root.handlers)
        yield
        for handler in list(root.handlers):
            if handler not in handlers:
                root.removeHandler(handler)
        root.setLevel(level)

    def test_json_lines_with_extra(self, tmp_path, restore_root):
        log_file = tmp_path / "taskweave.log"
        handler = configure_logging("INFO", "json", str(log_file))
        logging.getLogger("taskweave.test").info("fired %s", "t1", extra={"task_id": "t1"})
        handler.flush()
        handler.close()

        entry = json.loads(log_file.read_text().strip().splitlines()[-1])
        assert entry["message"] == "fired t1"
        assert entry["level"] == "info"
        assert entry["logger"] == "taskweave.test"
        assert entry["task_id"] == "t1"
        assert "ts" in entry

    def test_exception_is_rendered(self, tmp_path, restore_root):
        log_file = tmp_path / "taskweave.log"
        handler = configure_logging("INFO", "json", str(log_file))
        try:
            raise RuntimeError("agent exploded")
        except RuntimeError:
            logging.getLogger("taskweave.test").exception("task failed")
        handler.close()

        entry = json.loads(log_file.read_text().strip().splitlines()[-1])
        assert entry["level"] == "error"
        assert "RuntimeError: agent exploded" in entry["exception"]

    def test_text_format(self, tmp_path, restore_root):
        log_file = tmp_path / "taskweave.log"
        handler = configure_logging("INFO", "text", str(log_file))
        logging.getLogger("taskweave.test").warning("queue %s unreachable", "redis")
        handler.close()

        line = log_file.read_text().strip().splitlines()[-1]
        assert "queue redis unreachable" in line
        assert "taskweave.test" in line

    def test_reconfigure_replaces_handler(self, restore_root):
        configure_logging("INFO", "text")
        configure_logging("DEBUG", "text")
        names = [h.get_name() for h in logging.getLogger().handlers]
        assert names.count("taskweave") == 1
        assert logging.getLogger().level == logging.DEBUG

    def test_track_performance_sync(self, caplog):
        @track_performance
        def add(a, b):
            return a + b

        with caplog.at_level(logging.DEBUG):
            assert add(2, 3) == 5
        assert "add completed in" in caplog.text

    async def test_track_performance_async(self, caplog):
        @track_performance(operation="load_things")
        async def load():
            return "ok"

        with caplog.at_level(logging.DEBUG):
            assert await load() == "ok"
        assert "load_things completed in" in caplog.text


# ========================================================================
# EXCEPTIONS
# ========================================================================


class TestExceptions:

    def test_str_carries_id_and_category(self):
        error = ConfigError("bad file")
        text = str(error)
        assert text.endswith("configuration: bad file")
        assert text.startswith(f"[{error.context.error_id}]")
        assert describe_error(error) == "bad file"

    def test_cycle_error(self):
        error = CyclicDependencyError(["a", "b", "a"])
        assert error.cycle == ["a", "b", "a"]
        assert error.message == "Dependency cycle detected: a -> b -> a"
        assert error.details == {"cycle": ["a", "b", "a"]}
        assert not error.is_recoverable

    def test_dependency_not_met(self):
        error = DependencyNotMet("research")
        assert error.dependency_id == "research"
        assert error.category is ErrorCategory.DEPENDENCY

    def test_agent_not_found_is_unrecoverable(self):
        error = AgentNotFoundError("ghost")
        assert isinstance(error, UnrecoverableError)
        assert error.category is ErrorCategory.AGENT
        assert error.message == "Agent not found: ghost"

    def test_timeout_is_a_network_error(self):
        error = ExecutionTimeoutError("too slow")
        assert isinstance(error, NetworkError)
        assert error.category is ErrorCategory.TIMEOUT

    def test_to_dict(self):
        data = NetworkError("reset").to_dict()
        assert data["category"] == "network"
        assert data["message"] == "reset"

    @pytest.mark.parametrize("error,category", [
        (TimeoutError(), ErrorCategory.TIMEOUT),
        (ConnectionError(), ErrorCategory.NETWORK),
        (ValueError("x"), ErrorCategory.INTERNAL),
    ])
    def test_categorize_builtin_errors(self, error, category):
        assert categorize_error(error) is category

    def test_describe_empty_builtin(self):
        assert describe_error(KeyError()) == "KeyError"
