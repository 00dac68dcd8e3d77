from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    # Read from OS env and optional .env file in project root.
    _project_root = Path(__file__).parent.parent

    model_config = SettingsConfigDict(
        env_file=str(_project_root / ".env"),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Environment / mode
    environment: str = Field(
        "development",
        alias="APP_ENV",
        description="Runtime environment, e.g. development / production",
    )
    pipeline_backend: str = Field(
        "celery",
        alias="PIPELINE_BACKEND",
        description="Queue backend: 'celery' (durable broker) or 'memory' (in-process lanes for local runs)",
    )

    # Redis connection string
    redis_url: str = Field(
        "redis://localhost:6379/0",
        alias="REDIS_URL",
        description="Redis connection URL backing session locks, counters and breaker state",
    )
    database_url: str = Field(
        "sqlite+pysqlite:///./reply_pipeline.db",
        alias="DATABASE_URL",
        description="SQLAlchemy database URL for replies and dead-letter records",
    )

    # Celery task queue configuration (defaults assume local Redis; override in .env for Docker/prod).
    celery_broker_url: str = Field(
        "redis://localhost:6379/1",
        alias="CELERY_BROKER_URL",
        description="Celery broker URL; Redis or RabbitMQ",
    )
    celery_result_backend: str = Field(
        "redis://localhost:6379/1",
        alias="CELERY_RESULT_BACKEND",
        description="Celery result backend URL; can reuse the broker URL or a dedicated DB.",
    )
    celery_timezone: str = Field(
        "UTC",
        alias="CELERY_TIMEZONE",
        description="Timezone used by Celery beat / scheduled tasks.",
    )
    pipeline_exchange: str = Field(
        "reply_pipeline",
        alias="PIPELINE_EXCHANGE",
        description="Topic exchange the lane queues are bound to",
    )

    # Message router
    router_frequency_threshold: int = Field(
        3,
        alias="ROUTER_FREQUENCY_THRESHOLD",
        description="Sessions with more messages than this inside the window go to the urgent lane",
        ge=1,
    )
    router_frequency_window_seconds: int = Field(
        300,
        alias="ROUTER_FREQUENCY_WINDOW_SECONDS",
        description="Trailing window for the per-session message counter",
        ge=1,
    )
    router_followup_window_seconds: float = Field(
        120.0,
        alias="ROUTER_FOLLOWUP_WINDOW_SECONDS",
        description="A message arriving this soon after the previous one is treated as a follow-up (urgent)",
        ge=0,
    )
    router_buffer_delay_seconds: float = Field(
        5.0,
        alias="ROUTER_BUFFER_DELAY_SECONDS",
        description="Visibility delay applied to messages routed to the buffer lane",
        ge=0,
    )
    session_activity_ttl_seconds: int = Field(
        3600,
        alias="SESSION_ACTIVITY_TTL_SECONDS",
        description="TTL of per-session activity keys (last_message_at, backlog)",
        ge=60,
    )

    # Session lock lease
    lock_initial_ttl_seconds: float = Field(
        30.0,
        alias="LOCK_INITIAL_TTL_SECONDS",
        description="Lease granted by try_acquire before the external call starts",
        gt=0,
    )
    lock_extend_seconds: float = Field(
        60.0,
        alias="LOCK_EXTEND_SECONDS",
        description="Remaining lease guaranteed before and during the external call; keep it well above COMPLETION_TIMEOUT_SECONDS (0 disables)",
        ge=0,
    )
    lock_heartbeat_seconds: float = Field(
        15.0,
        alias="LOCK_HEARTBEAT_SECONDS",
        description="Interval of periodic lease extension during the external call (0 disables)",
        ge=0,
    )
    lock_persist_grace_seconds: float = Field(
        10.0,
        alias="LOCK_PERSIST_GRACE_SECONDS",
        description="Lease re-validated and topped up to at least this much right before persisting a result",
        gt=0,
    )
    urgent_acquire_retries: int = Field(
        3,
        alias="URGENT_ACQUIRE_RETRIES",
        description="Extra lock acquisition attempts for urgent-lane tasks before falling back to the buffer lane",
        ge=0,
    )
    urgent_acquire_backoff_seconds: float = Field(
        0.5,
        alias="URGENT_ACQUIRE_BACKOFF_SECONDS",
        description="Linear backoff step between urgent-lane acquisition attempts",
        ge=0,
    )

    # Buffer wait / re-route
    buffer_wait_timeout_seconds: float = Field(
        30.0,
        alias="BUFFER_WAIT_TIMEOUT_SECONDS",
        description="Upper bound a buffered message waits for the session lock before being force-routed to normal",
        gt=0,
    )
    buffer_poll_interval_seconds: float = Field(
        1.0,
        alias="BUFFER_POLL_INTERVAL_SECONDS",
        description="Sleep between is_locked polls in the buffer wait loop",
        gt=0,
    )

    # Lanes
    urgent_message_ttl_seconds: int = Field(
        120,
        alias="URGENT_MESSAGE_TTL_SECONDS",
        description="Urgent work older than this is expired and handed to the retry handler",
        ge=1,
    )
    normal_message_ttl_seconds: int = Field(900, alias="NORMAL_MESSAGE_TTL_SECONDS", ge=1)
    buffer_message_ttl_seconds: int = Field(600, alias="BUFFER_MESSAGE_TTL_SECONDS", ge=1)
    urgent_concurrency: int = Field(8, alias="URGENT_CONCURRENCY", ge=1)
    normal_concurrency: int = Field(4, alias="NORMAL_CONCURRENCY", ge=1)
    buffer_concurrency: int = Field(4, alias="BUFFER_CONCURRENCY", ge=1)
    urgent_max_retries: int = Field(3, alias="URGENT_MAX_RETRIES", ge=0)
    normal_max_retries: int = Field(3, alias="NORMAL_MAX_RETRIES", ge=0)
    buffer_max_retries: int = Field(3, alias="BUFFER_MAX_RETRIES", ge=0)

    # External completion service
    completion_url: str = Field(
        "http://localhost:8080/v1/generate",
        alias="COMPLETION_URL",
        description="Endpoint of the external completion service",
    )
    completion_api_key: str | None = Field(
        default=None,
        alias="COMPLETION_API_KEY",
        description="Bearer token sent to the completion service",
    )
    completion_timeout_seconds: float = Field(
        30.0,
        alias="COMPLETION_TIMEOUT_SECONDS",
        description="Timeout of a single completion call; must stay below the lock lease",
        gt=0,
    )

    # Circuit breaker
    breaker_failure_threshold: int = Field(
        5,
        alias="BREAKER_FAILURE_THRESHOLD",
        description="Failures inside the window that open the circuit",
        ge=1,
    )
    breaker_window_seconds: int = Field(
        60,
        alias="BREAKER_WINDOW_SECONDS",
        description="Sliding window used to count breaker failures",
        ge=1,
    )
    breaker_recovery_timeout_seconds: float = Field(
        30.0,
        alias="BREAKER_RECOVERY_TIMEOUT_SECONDS",
        description="Time an open circuit waits before allowing a single half-open trial",
        gt=0,
    )

    # Retry / dead letter
    retry_base_delay_seconds: float = Field(
        2.0,
        alias="RETRY_BASE_DELAY_SECONDS",
        description="Base of the exponential retry backoff (delay = base * 2^attempt)",
        gt=0,
    )
    retry_max_delay_seconds: float = Field(
        300.0,
        alias="RETRY_MAX_DELAY_SECONDS",
        description="Cap applied to the exponential retry backoff",
        gt=0,
    )
    dead_letter_reprocess_interval_seconds: int = Field(
        600,
        alias="DEAD_LETTER_REPROCESS_INTERVAL_SECONDS",
        description="Celery beat interval for scheduled dead-letter reprocessing; also the next_retry_at offset",
        ge=10,
    )
    dead_letter_reprocess_batch: int = Field(
        50,
        alias="DEAD_LETTER_REPROCESS_BATCH",
        description="Maximum dead letters requeued per reprocessing run",
        ge=1,
    )
    backlog_stale_seconds: float = Field(
        1800.0,
        alias="BACKLOG_STALE_SECONDS",
        description="A pending head message older than this is parked as abandoned so its session can progress",
        gt=0,
    )
    queue_depth_sample_interval_seconds: int = Field(
        30,
        alias="QUEUE_DEPTH_SAMPLE_INTERVAL_SECONDS",
        description="Celery beat interval for sampling lane queue depth",
        ge=5,
    )

    # Events
    enable_event_publish: bool = Field(
        True,
        alias="ENABLE_EVENT_PUBLISH",
        description="Publish processing lifecycle events to Redis pub/sub",
    )
    event_channel: str = Field(
        "reply_pipeline:events",
        alias="EVENT_CHANNEL",
        description="Redis pub/sub channel for lifecycle events",
    )

    # Logging
    log_level: str = Field("INFO", alias="LOG_LEVEL")
    log_dir: str = Field(
        "logs",
        alias="LOG_DIR",
        description="Log directory; relative paths resolve against the project root",
    )
    log_timezone: str | None = Field(
        default=None,
        alias="LOG_TIMEZONE",
        description="Timezone for log timestamps, e.g. Asia/Shanghai; system local time when unset",
    )
    log_backup_days: int = Field(7, alias="LOG_BACKUP_DAYS", ge=0)
    log_split_by_business: bool = Field(
        True,
        alias="LOG_SPLIT_BY_BUSINESS",
        description="Split log files per business bucket (routing/locking/breaker/worker/...)",
    )

    def _lane_value(self, lane: str, suffix: str) -> int:
        name = str(getattr(lane, "value", lane))
        return int(getattr(self, f"{name}_{suffix}"))

    def lane_ttl(self, lane: str) -> int:
        return self._lane_value(lane, "message_ttl_seconds")

    def lane_concurrency(self, lane: str) -> int:
        return self._lane_value(lane, "concurrency")

    def lane_max_retries(self, lane: str) -> int:
        return self._lane_value(lane, "max_retries")


settings = Settings()
