"""
taskweave settings.
Every field can be overridden with a ``TASKWEAVE_`` prefixed environment variable.
"""
import logging
from functools import lru_cache
from typing import Dict, List, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


DEFAULT_EXPECTED_DURATIONS: Dict[str, float] = {
    "prospecting_agent": 180.0,
    "pitch_creator_agent": 120.0,
    "analytics_generator": 60.0,
    "kanban_manager": 30.0,
    "pipeline_manager": 90.0,
}


class Settings(BaseSettings):
    """Runtime configuration for the orchestrator and its collaborators."""

    model_config = SettingsConfigDict(
        env_prefix="TASKWEAVE_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    # Application
    app_name: str = Field(default="taskweave", description="Application name")
    app_version: str = Field(default="0.1.0", description="Application version")
    environment: str = Field(default="development", description="Environment: development, staging, production")
    debug: bool = Field(default=False, description="Debug mode")

    # API
    api_host: str = Field(default="127.0.0.1", description="API host")
    api_port: int = Field(default=8000, ge=1024, le=65535, description="API port")
    cors_origins: List[str] = Field(
        default=["http://localhost:8000", "http://127.0.0.1:8000"],
        description="Allowed CORS origins"
    )

    # Logging
    log_level: str = Field(default="INFO", description="Logging level")
    log_format: str = Field(default="json", description="Log format: json or text")
    log_file: Optional[str] = Field(default=None, description="Log file path")

    # Task definitions
    tasks_config_path: str = Field(default="config/tasks", description="Task definition directory or JSON file")
    timezone: str = Field(default="America/Denver", description="Timezone for cron schedules")

    # Execution
    freshness_window_hours: float = Field(default=24.0, gt=0, description="Max age of a dependency's last completion")
    execution_timeout_seconds: float = Field(default=600.0, gt=0, description="Per-attempt agent call timeout")
    concurrency_policy: str = Field(default="allow_concurrent", description="allow_concurrent or single_flight")
    max_concurrent_tasks: int = Field(default=10, ge=1, description="Running executions treated as full load")
    history_retention_hours: float = Field(default=168.0, gt=0, description="Terminal execution retention")
    history_max_records: int = Field(default=10000, ge=10, description="Cap on stored execution records")
    output_dir: str = Field(default="data/output/json", description="Output envelope directory")

    # Analysis
    analysis_interval_seconds: float = Field(default=300.0, gt=0, description="Decision cycle interval")
    performance_window: int = Field(default=20, ge=1, description="Trailing executions considered by the analyzer")
    default_expected_duration: float = Field(default=300.0, gt=0, description="Baseline duration for unknown agents")
    expected_durations: Dict[str, float] = Field(
        default_factory=lambda: dict(DEFAULT_EXPECTED_DURATIONS),
        description="Per-agent expected duration in seconds"
    )
    load_threshold: float = Field(default=0.8, ge=0.0, le=1.0, description="System load flagged as high")
    queue_buildup_threshold: int = Field(default=10, ge=0, description="Running count flagged as queue buildup")
    redundant_running_threshold: int = Field(default=3, ge=1, description="Concurrent runs of one task flagged as redundant")
    category_minimums: Dict[str, int] = Field(
        default_factory=lambda: {"prospect": 5},
        description="Minimum recent completions for task ids containing the key"
    )
    bottleneck_tasks: Dict[str, str] = Field(
        default_factory=lambda: {"qualified_prospects_low": "prospect_research_enhancement"},
        description="Task scheduled to relieve each bottleneck"
    )
    always_active_tasks: List[str] = Field(default_factory=list, description="Tasks recommended when not running")

    # Decisions
    completion_rate_threshold: float = Field(default=0.8, ge=0.0, le=1.0, description="Below this an agent's tasks get boosted")
    efficiency_threshold: float = Field(default=0.6, ge=0.0, le=1.0, description="Below this an agent's tasks get reassigned")
    confidence_threshold: float = Field(default=0.8, ge=0.0, le=1.0, description="Decisions above this are applied")
    schedule_delay_seconds: float = Field(default=600.0, ge=0, description="Delay for bottleneck schedule decisions")
    auto_recover: bool = Field(default=True, description="Apply recovery reschedules automatically")
    max_recovery_reschedules: int = Field(default=3, ge=0, description="Consecutive recoveries before abandoning")
    network_backoff_seconds: float = Field(default=300.0, ge=0, description="Recovery delay for network failures")
    rate_limit_backoff_seconds: float = Field(default=900.0, ge=0, description="Recovery delay for rate limits")

    # Queue
    queue_backend: str = Field(default="memory", description="Queue backend: memory or redis")
    redis_url: str = Field(default="redis://localhost:6379/0", description="Redis connection URL")
    queue_topics: List[str] = Field(
        default=["tasks.high_priority", "tasks.medium_priority", "tasks.low_priority"],
        description="Topics consumed by the queue bridge"
    )
    queue_group: str = Field(default="taskweave", description="Redis consumer group")
    queue_consumer_name: str = Field(default="taskweave-1", description="Redis consumer name")
    queue_backoff_seconds: float = Field(default=300.0, ge=0, description="Retry backoff for queue tasks")
    queue_connect_attempts: int = Field(default=5, ge=1, description="Connection attempts before giving up")
    queue_reconnect_delay_seconds: float = Field(default=5.0, ge=0, description="Delay between connection attempts")
    queue_prefetch: int = Field(default=10, ge=1, description="Messages processed concurrently per topic")
    queue_claim_idle_seconds: float = Field(
        default=900.0, gt=0, description="Idle time before another consumer's pending entry is reclaimed"
    )
    queue_claim_interval_seconds: float = Field(default=60.0, gt=0, description="Pending entry reclaim interval")
    queue_message_ttl_seconds: Dict[str, float] = Field(
        default={"high": 3600.0, "medium": 7200.0, "low": 14400.0},
        description="Message lifetime per priority before it is dead-lettered"
    )

    # Agent channel
    agent_heartbeat_timeout_seconds: float = Field(default=60.0, gt=0, description="Silence before an agent is dropped")
    heartbeat_check_interval_seconds: float = Field(default=30.0, gt=0, description="Heartbeat sweep interval")
    agent_dispatch_timeout_seconds: float = Field(default=300.0, gt=0, description="Wait for a dispatched result")

    @field_validator("environment")
    @classmethod
    def validate_environment(cls, v: str) -> str:
        allowed = ["development", "staging", "production"]
        if v not in allowed:
            raise ValueError(f"Environment must be one of {allowed}")
        return v

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Accept any case, store upper case."""
        allowed = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        v_upper = v.upper()
        if v_upper not in allowed:
            raise ValueError(f"Log level must be one of {allowed}")
        return v_upper

    @field_validator("log_format")
    @classmethod
    def validate_log_format(cls, v: str) -> str:
        allowed = ["json", "text"]
        if v not in allowed:
            raise ValueError(f"Log format must be one of {allowed}")
        return v

    @field_validator("concurrency_policy")
    @classmethod
    def validate_concurrency_policy(cls, v: str) -> str:
        allowed = ["allow_concurrent", "single_flight"]
        if v not in allowed:
            raise ValueError(f"Concurrency policy must be one of {allowed}")
        return v

    @field_validator("queue_backend")
    @classmethod
    def validate_queue_backend(cls, v: str) -> str:
        allowed = ["memory", "redis"]
        if v not in allowed:
            raise ValueError(f"Queue backend must be one of {allowed}")
        return v

    @field_validator("timezone")
    @classmethod
    def validate_timezone(cls, v: str) -> str:
        """Validate the timezone name resolves."""
        try:
            ZoneInfo(v)
        except (ZoneInfoNotFoundError, ValueError) as exc:
            raise ValueError(f"Unknown timezone: {v}") from exc
        return v

    @property
    def tzinfo(self) -> ZoneInfo:
        return ZoneInfo(self.timezone)

    def get_log_level(self) -> int:
        """Numeric level for the stdlib logging module."""
        return getattr(logging, self.log_level)

    def expected_duration_for(self, agent: str) -> float:
        return self.expected_durations.get(agent, self.default_expected_duration)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Process-wide settings, read from the environment once."""
    return Settings()
