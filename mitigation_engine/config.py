"""Configuration of the risk mitigation workflow engine.

Values come from ``MITIGATION_ENGINE_*`` environment variables, optionally
loaded from a dotenv file by ``load_config``.
"""

import os
from typing import Optional, Dict, Any
from enum import Enum

from dotenv import load_dotenv
from pydantic import BaseModel, Field, field_validator

from .core.exceptions import ConfigurationError


ENV_PREFIX = "MITIGATION_ENGINE_"
TRUTHY = ('true', '1', 'yes', 'on')


class LogLevel(str, Enum):
    """Logging levels."""
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class DatabaseType(str, Enum):
    """Supported database types."""
    SQLITE = "sqlite"
    POSTGRESQL = "postgresql"
    MYSQL = "mysql"


class AppConfig(BaseModel):
    """Application configuration settings."""

    # Application settings
    app_name: str = Field(default="Risk Mitigation Workflow Engine", description="Application name")
    app_version: str = Field(default="1.0.0", description="Application version")

    # Database settings; no URL means in-memory repositories
    database_url: Optional[str] = Field(
        default=None,
        description="Database connection URL for persisted executions and definitions"
    )
    database_echo: bool = Field(default=False, description="Enable SQLAlchemy query logging")

    # Execution engine settings
    max_concurrent_executions: int = Field(
        default=10,
        description="Worker threads driving executions"
    )
    match_threshold: float = Field(
        default=0.5,
        description="Score a definition must exceed to be selected by the trigger matcher"
    )
    retry_backoff_seconds: float = Field(
        default=1.0,
        description="Base delay before a failed step is retried (doubles per retry)"
    )
    retry_backoff_max_seconds: float = Field(
        default=60.0,
        description="Upper bound on the retry delay"
    )
    max_escalation_reruns: int = Field(
        default=1,
        description="How many times an approved escalation may re-run a required step"
    )
    default_approval_timeout_minutes: float = Field(
        default=60,
        description="Approval wait when a step does not set timeout_minutes"
    )

    # Deadline monitor settings
    monitor_interval_seconds: float = Field(
        default=300,
        description="Interval between deadline sweeps"
    )
    timeout_factor: float = Field(
        default=1.5,
        description="Multiple of a step's expected duration after which it is timed out"
    )
    escalation_history_size: int = Field(
        default=1000,
        description="Finished escalation records kept in memory"
    )

    # Notifier circuit breaker
    notifier_failure_threshold: int = Field(default=5, description="Failures before the notifier breaker opens")
    notifier_recovery_seconds: float = Field(default=60.0, description="Seconds before an open breaker is retried")

    # Logging settings
    log_level: LogLevel = Field(default=LogLevel.INFO, description="Logging level")
    log_format: Optional[str] = Field(default=None, description="Plain-text log format; None uses the engine default")
    log_file: Optional[str] = Field(default=None, description="Log file path")
    log_max_size: int = Field(default=10485760, description="Maximum log file size in bytes")  # 10MB
    log_backup_count: int = Field(default=5, description="Number of log backup files to keep")
    structured_logging: bool = Field(default=False, description="Emit JSON log records")

    @field_validator('database_url')
    @classmethod
    def validate_database_url(cls, v):
        """Blank URLs select in-memory storage; others must use a supported scheme."""
        if v is None or not v.strip():
            return None
        scheme = _url_scheme(v)
        if scheme not in {t.value for t in DatabaseType}:
            raise ValueError(f"Unsupported database scheme: {scheme}")
        return v.strip()

    @field_validator('max_concurrent_executions', 'escalation_history_size', 'notifier_failure_threshold')
    @classmethod
    def validate_worker_counts(cls, v):
        """Validate worker and threshold counts."""
        if v < 1:
            raise ValueError("Value must be at least 1")
        return v

    @field_validator('match_threshold')
    @classmethod
    def validate_match_threshold(cls, v):
        if not 0 <= v < 1:
            raise ValueError("Match threshold must be in [0, 1)")
        return v

    @field_validator('timeout_factor')
    @classmethod
    def validate_timeout_factor(cls, v):
        if v < 1:
            raise ValueError("Timeout factor must be at least 1")
        return v

    @field_validator('monitor_interval_seconds', 'default_approval_timeout_minutes')
    @classmethod
    def validate_positive(cls, v):
        """Validate interval values."""
        if v <= 0:
            raise ValueError("Value must be positive")
        return v

    @field_validator('retry_backoff_seconds', 'retry_backoff_max_seconds', 'notifier_recovery_seconds')
    @classmethod
    def validate_non_negative(cls, v):
        if v < 0:
            raise ValueError("Value cannot be negative")
        return v

    @field_validator('max_escalation_reruns')
    @classmethod
    def validate_reruns(cls, v):
        if v < 0:
            raise ValueError("Maximum escalation reruns cannot be negative")
        return v

    @property
    def database_type(self) -> Optional[DatabaseType]:
        """Database flavour named by the URL scheme, ``None`` for in-memory storage."""
        if self.database_url is None:
            return None
        return DatabaseType(_url_scheme(self.database_url))

    @property
    def uses_database(self) -> bool:
        return self.database_url is not None

    def get_database_connect_args(self) -> Dict[str, Any]:
        # SQLite connections are shared across the engine's worker threads.
        if self.database_type == DatabaseType.SQLITE:
            return {"check_same_thread": False}
        return {}

    @classmethod
    def from_env(cls) -> 'AppConfig':
        """Build a configuration from ``MITIGATION_ENGINE_<FIELD>`` variables.

        Every field can be set this way, e.g. ``MITIGATION_ENGINE_TIMEOUT_FACTOR=2``.
        Unset variables keep the field default.

        Raises:
            ConfigurationError: A variable cannot be converted to its field's type.
        """
        values = {}
        for name, field in cls.model_fields.items():
            raw = os.getenv(f"{ENV_PREFIX}{name.upper()}")
            if raw is not None:
                values[name] = _convert_env_value(name, raw, field.annotation)
        return cls(**values)


def _url_scheme(url: str) -> str:
    return url.split('://')[0].lower().split('+')[0]


def _convert_env_value(name: str, raw: str, annotation: Any) -> Any:
    if annotation is bool:
        return raw.strip().lower() in TRUTHY
    try:
        if annotation in (int, float):
            return annotation(raw)
        if isinstance(annotation, type) and issubclass(annotation, Enum):
            return annotation(raw.strip().upper())
    except ValueError as e:
        raise ConfigurationError(
            f"Invalid value for {ENV_PREFIX}{name.upper()}: {raw!r}",
            config_key=name
        ) from e
    return raw


_config: Optional[AppConfig] = None


def get_config() -> AppConfig:
    """Return the process-wide configuration, reading the environment on first use."""
    global _config
    if _config is None:
        _config = AppConfig.from_env()
    return _config


def load_config(config_file: Optional[str] = None) -> AppConfig:
    """Load a dotenv file into the environment, then rebuild the global configuration.

    Args:
        config_file: Path of the dotenv file. Falls back to ``./.env`` when
            omitted or missing.

    Returns:
        The new global configuration.
    """
    global _config
    for candidate in (config_file, '.env'):
        if candidate and os.path.exists(candidate):
            load_dotenv(candidate)
            break
    _config = AppConfig.from_env()
    return _config


def reset_config():
    global _config
    _config = None


def get_testing_config(**overrides) -> AppConfig:
    """In-memory storage, no retry backoff, short approval waits and quiet logs."""
    values = dict(
        database_url=None,
        log_level=LogLevel.WARNING,
        max_concurrent_executions=4,
        retry_backoff_seconds=0.0,
        monitor_interval_seconds=3600,
        default_approval_timeout_minutes=0.05,
        notifier_failure_threshold=100
    )
    values.update(overrides)
    return AppConfig(**values)
