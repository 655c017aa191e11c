"""Configuration for the orchestration services.

Configuration is loaded from:
- environment variables
- and a local `.env` file (if present)

Every poll interval lives here and is handed to the driver that owns it; there
is no process-wide refresh timer.
"""

from __future__ import annotations

from pathlib import Path

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class OrchestratorSettings(BaseSettings):
    """Settings for the automation engine.

    Notes:
        Pydantic-settings supports overriding the env file in tests via:
        `OrchestratorSettings(_env_file=path_to_env)`.
    """

    log_level: str = Field(
        default="INFO",
        validation_alias="LOG_LEVEL",
        description="Root logging level",
    )

    state_path: Path = Field(
        default=Path("orchestrator_state"),
        validation_alias="ORCHESTRATOR_STATE_PATH",
        description="Directory where definitions, executions, tasks, events and jobs are persisted",
    )

    worker_count: int = Field(
        default=4,
        ge=1,
        le=64,
        validation_alias="ORCHESTRATOR_WORKER_COUNT",
        description="Worker threads started per queue by the background runtime",
    )
    worker_queues: str = Field(
        default="default",
        validation_alias="ORCHESTRATOR_WORKER_QUEUES",
        description="Comma-separated queue names served by the worker pool",
    )
    worker_poll_seconds: float = Field(
        default=0.5,
        gt=0,
        validation_alias="ORCHESTRATOR_WORKER_POLL_SECONDS",
    )

    default_queue_capacity: int = Field(
        default=100,
        ge=1,
        validation_alias="ORCHESTRATOR_DEFAULT_QUEUE_CAPACITY",
    )
    queue_degraded_ratio: float = Field(
        default=0.8,
        gt=0,
        le=1,
        validation_alias="ORCHESTRATOR_QUEUE_DEGRADED_RATIO",
        description="Pending/capacity ratio above which a queue reports 'degraded'",
    )

    default_max_retries: int = Field(
        default=3,
        ge=0,
        validation_alias="ORCHESTRATOR_DEFAULT_MAX_RETRIES",
    )
    retry_backoff_seconds: float = Field(
        default=5.0,
        ge=0,
        validation_alias="ORCHESTRATOR_RETRY_BACKOFF_SECONDS",
        description="Base delay before a failed task is re-queued (doubled per attempt)",
    )
    retry_backoff_max_seconds: float = Field(
        default=300.0,
        ge=0,
        validation_alias="ORCHESTRATOR_RETRY_BACKOFF_MAX_SECONDS",
    )

    scheduler_poll_seconds: float = Field(
        default=5.0,
        gt=0,
        validation_alias="ORCHESTRATOR_SCHEDULER_POLL_SECONDS",
    )
    supervisor_poll_seconds: float = Field(
        default=10.0,
        gt=0,
        validation_alias="ORCHESTRATOR_SUPERVISOR_POLL_SECONDS",
        description="Interval of the timeout / SLA / reconcile supervisor",
    )
    scheduler_failure_threshold: int = Field(
        default=3,
        ge=1,
        validation_alias="ORCHESTRATOR_SCHEDULER_FAILURE_THRESHOLD",
        description="Consecutive job failures after which a job is automatically deactivated",
    )

    sla_warning_percent: float = Field(
        default=80.0,
        gt=0,
        le=100,
        validation_alias="ORCHESTRATOR_SLA_WARNING_PERCENT",
    )

    notify_webhook_url: str = Field(
        default="",
        validation_alias="ORCHESTRATOR_NOTIFY_WEBHOOK_URL",
        description="If set, operator notifications are also POSTed to this URL",
    )
    webhook_timeout_seconds: float = Field(
        default=10.0,
        gt=0,
        validation_alias="ORCHESTRATOR_WEBHOOK_TIMEOUT_SECONDS",
    )

    execution_retention_days: int = Field(
        default=90,
        ge=1,
        validation_alias="ORCHESTRATOR_EXECUTION_RETENTION_DAYS",
    )

    store_backoff_max_seconds: float = Field(
        default=60.0,
        gt=0,
        validation_alias="ORCHESTRATOR_STORE_BACKOFF_MAX_SECONDS",
        description="Upper bound of the pause applied while the store is unavailable",
    )

    cors_origins: str = Field(
        default="http://localhost:5173,http://127.0.0.1:5173",
        validation_alias="ORCHESTRATOR_CORS_ORIGINS",
        description="Comma-separated list of allowed CORS origins.",
    )

    model_config = SettingsConfigDict(
        env_prefix="",
        env_file=".env",
        extra="ignore",
        populate_by_name=True,
    )

    @model_validator(mode="after")
    def _check_backoff_bounds(self) -> OrchestratorSettings:
        if self.retry_backoff_max_seconds < self.retry_backoff_seconds:
            raise ValueError(
                "ORCHESTRATOR_RETRY_BACKOFF_MAX_SECONDS must be >= "
                "ORCHESTRATOR_RETRY_BACKOFF_SECONDS"
            )
        return self

    def parsed_worker_queues(self) -> list[str]:
        return [q.strip() for q in self.worker_queues.split(",") if q.strip()] or ["default"]

    def parsed_cors_origins(self) -> list[str]:
        return [o.strip() for o in self.cors_origins.split(",") if o.strip()]
