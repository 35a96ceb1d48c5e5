# config.py
# Description: Pydantic settings for the job monitor (Redis correlation, sync, analysis, notifications)
#
# Imports
import json
from typing import Annotated, Dict, List, Literal, Optional
#
# 3rd-party imports
from apscheduler.triggers.cron import CronTrigger
from pydantic import Field, ValidationError, field_validator, model_validator
from pydantic_settings import BaseSettings, NoDecode
#
# Local imports
from loguru import logger

from job_monitor.app.core.exceptions import ConfigurationError

#######################################################################################################################
#
# Defaults

MANUAL_DISPATCH_COMMAND = "manual-dispatch"

DEFAULT_MONITORED_QUEUES = ["default", "notifications", "processing"]

DEFAULT_IGNORE_COMMANDS = [
    "schedule:run",
    "schedule:finish",
    "package:discover",
    "vendor:publish",
    "config:cache",
    "queue:retry",
    "queue:forget",
    "tinker",
    "serve",
    "migrate",
    "queue:work",
    "metrics:sync",
    "job-monitor:analyze",
    "migrate:fresh",
]


def _split_csv(v) -> List[str]:
    if v is None:
        return []
    if isinstance(v, str):
        text = v.strip()
        if text.startswith("["):
            try:
                return [str(x).strip() for x in json.loads(text) if str(x).strip()]
            except ValueError:
                pass
        return [s.strip() for s in text.split(",") if s.strip()]
    if isinstance(v, (list, tuple, set)):
        return [str(x).strip() for x in v if str(x).strip()]
    return []


#######################################################################################################################
#
# Settings Class

class JobMonitorSettings(BaseSettings):
    """Configuration for job/command telemetry collection and analysis"""

    # ===== Core Settings =====
    ENVIRONMENT: str = Field(
        default="development",
        description="Deployment environment; 'production' redacts internal error details in the API"
    )

    REDIS_URL: str = Field(
        default="redis://localhost:6379/0",
        description="Redis connection URL for the correlation store"
    )

    REDIS_ALLOW_IN_MEMORY_FALLBACK: bool = Field(
        default=True,
        description="Fall back to an in-process Redis substitute when the server is unreachable"
    )

    DATABASE_PATH: str = Field(
        default="Databases/job_monitor.db",
        description="SQLite file holding command_metrics and job_metrics"
    )

    # ===== Monitoring Switches =====
    COMMANDS_ENABLED: bool = Field(default=True, description="Record command start/finish events")
    JOB_CORRELATION_ENABLED: bool = Field(default=True, description="Record job lifecycle events")

    MONITORED_QUEUES: Annotated[List[str], NoDecode] = Field(
        default_factory=lambda: list(DEFAULT_MONITORED_QUEUES),
        description="Queue names whose jobs are tracked"
    )

    IGNORE_COMMANDS: Annotated[List[str], NoDecode] = Field(
        default_factory=lambda: list(DEFAULT_IGNORE_COMMANDS),
        description="Command names never tracked (anonymous/None commands are always ignored)"
    )

    # ===== TTLs (seconds) =====
    TRACKING_TTL: int = Field(default=86400, description="TTL for pending/processing job records")
    COMPLETED_TTL: int = Field(default=3600, description="TTL after a job completes")
    FAILED_TTL: int = Field(default=172800, description="TTL after a job fails")
    COUNTERS_TTL: int = Field(default=604800, description="Safety TTL for per-process counters")
    PID_MAP_TTL: int = Field(default=300, description="TTL for the command name -> process id index")

    EXCEPTION_FRAME_COUNT: int = Field(default=3, ge=0, description="Stack frames kept for failed jobs (0 disables)")

    # ===== Analysis =====
    ANALYZE_ENABLED: bool = Field(default=True, description="Maintain per-process counters and run analysis")
    RETENTION_DAYS: int = Field(default=7, description="Rolling window of command metrics used for baselines")

    PERFORMANCE_UPPER_MULTIPLIER: float = Field(default=1.5)
    PERFORMANCE_LOWER_MULTIPLIER: float = Field(default=0.5)
    JOB_COUNT_UPPER_MULTIPLIER: float = Field(default=1.5)
    JOB_COUNT_LOWER_MULTIPLIER: float = Field(default=0.5)
    FAILED_JOBS_UPPER_MULTIPLIER: float = Field(default=2.0)
    FAILED_JOBS_LOWER_MULTIPLIER: float = Field(default=0.1)

    ANALYSIS_INTERVAL_MINUTES: int = Field(default=15)
    SCHEDULE_ANALYSIS_ENABLED: bool = Field(default=True)
    MISSED_EXECUTION_THRESHOLD_HOURS: float = Field(default=2.0)

    SCHEDULED_COMMANDS: Dict[str, str] = Field(
        default_factory=dict,
        description="Command name -> crontab expression for commands expected on a schedule"
    )
    API_COMMANDS: Dict[str, int] = Field(
        default_factory=dict,
        description="Command name -> expected interval (minutes) for API-triggered commands"
    )
    SCHEDULE_TIMEZONE: str = Field(default="UTC")

    # ===== Sync =====
    SYNC_ENABLED: bool = Field(default=True)
    SYNC_INTERVAL_MINUTES: int = Field(default=5)
    SYNC_BATCH_SIZE: int = Field(default=500)
    SYNC_MAX_MEMORY_MB: int = Field(default=100)
    SYNC_TIMEOUT_SECONDS: int = Field(default=300)
    SYNC_CHUNK_DELAY_MS: int = Field(default=100, ge=0)
    CLEANUP_ENABLED: bool = Field(default=False)
    CLEANUP_AFTER_HOURS: float = Field(default=24.0)

    HEALTH_MAX_METRICS_AGE_HOURS: float = Field(default=24.0)

    # ===== Notifications =====
    NOTIFY_ENABLED: bool = Field(default=True, description="Deliver anomaly notifications to the configured sinks")
    NOTIFY_MIN_SEVERITY: Literal["low", "warning", "medium", "high", "critical"] = Field(default="medium")
    NOTIFY_FILE: str = Field(default="Databases/job_monitor_anomalies.jsonl")
    NOTIFY_WEBHOOK_URL: Optional[str] = Field(default=None)
    NOTIFY_EMAIL_TO: Optional[str] = Field(default=None)
    NOTIFY_SMTP_HOST: Optional[str] = Field(default=None)
    NOTIFY_SMTP_PORT: int = Field(default=587)
    NOTIFY_SMTP_STARTTLS: bool = Field(default=True)
    NOTIFY_SMTP_USER: Optional[str] = Field(default=None)
    NOTIFY_SMTP_PASSWORD: Optional[str] = Field(default=None)
    NOTIFY_EMAIL_FROM: str = Field(default="job-monitor@localhost")

    @field_validator("MONITORED_QUEUES", "IGNORE_COMMANDS", mode="before")
    @classmethod
    def parse_name_lists(cls, v):
        """Allow env strings like 'default,notifications' to map to list[str]."""
        return _split_csv(v)

    @field_validator("REDIS_URL")
    @classmethod
    def validate_redis_url(cls, v):
        """Validate Redis URL format"""
        if not v or not (v.startswith("redis://") or v.startswith("rediss://") or v.startswith("unix://")):
            raise ValueError("REDIS_URL must start with redis://, rediss:// or unix://")
        return v

    @field_validator("DATABASE_PATH")
    @classmethod
    def validate_database_path(cls, v):
        if not v or not str(v).strip():
            raise ValueError("DATABASE_PATH is required")
        return str(v).strip()

    @field_validator(
        "TRACKING_TTL",
        "COMPLETED_TTL",
        "FAILED_TTL",
        "COUNTERS_TTL",
        "PID_MAP_TTL",
        "RETENTION_DAYS",
        "ANALYSIS_INTERVAL_MINUTES",
        "SYNC_INTERVAL_MINUTES",
        "SYNC_BATCH_SIZE",
        "SYNC_MAX_MEMORY_MB",
        "SYNC_TIMEOUT_SECONDS",
    )
    @classmethod
    def validate_positive_int(cls, v, info):
        if v <= 0:
            raise ValueError(f"{info.field_name} must be positive")
        return v

    @field_validator("MISSED_EXECUTION_THRESHOLD_HOURS", "CLEANUP_AFTER_HOURS", "HEALTH_MAX_METRICS_AGE_HOURS")
    @classmethod
    def validate_positive_hours(cls, v, info):
        if v <= 0:
            raise ValueError(f"{info.field_name} must be positive")
        return v

    @field_validator("SCHEDULED_COMMANDS")
    @classmethod
    def validate_scheduled_commands(cls, v):
        """Each schedule must be a valid 5-field crontab expression."""
        for name, expr in (v or {}).items():
            try:
                CronTrigger.from_crontab(expr)
            except ValueError as exc:
                raise ValueError(f"Invalid crontab for {name!r}: {expr!r} ({exc})") from exc
        return v

    @field_validator("API_COMMANDS")
    @classmethod
    def validate_api_commands(cls, v):
        for name, minutes in (v or {}).items():
            if int(minutes) <= 0:
                raise ValueError(f"Expected interval for {name!r} must be positive")
        return v

    @model_validator(mode="after")
    def validate_multiplier_bands(self):
        """Each metric's lower multiplier must sit below its upper multiplier."""
        bands = {
            "PERFORMANCE": (self.PERFORMANCE_LOWER_MULTIPLIER, self.PERFORMANCE_UPPER_MULTIPLIER),
            "JOB_COUNT": (self.JOB_COUNT_LOWER_MULTIPLIER, self.JOB_COUNT_UPPER_MULTIPLIER),
            "FAILED_JOBS": (self.FAILED_JOBS_LOWER_MULTIPLIER, self.FAILED_JOBS_UPPER_MULTIPLIER),
        }
        for prefix, (lower, upper) in bands.items():
            if lower < 0 or upper <= 0:
                raise ValueError(f"{prefix} multipliers must be positive")
            if lower >= upper:
                raise ValueError(f"{prefix}_LOWER_MULTIPLIER must be below {prefix}_UPPER_MULTIPLIER")
        return self

    @property
    def is_production(self) -> bool:
        return str(self.ENVIRONMENT).strip().lower() in {"production", "prod"}

    def is_ignored_command(self, command_name: Optional[str]) -> bool:
        """Anonymous (None/empty) commands are always ignored."""
        if not command_name:
            return True
        return command_name in set(self.IGNORE_COMMANDS)

    def is_monitored_queue(self, queue_name: Optional[str]) -> bool:
        return (queue_name or "default") in set(self.MONITORED_QUEUES)

    model_config = {
        "env_prefix": "JOB_MONITOR_",
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "case_sensitive": False,
        "extra": "ignore",
    }


# ===== Singleton Settings Instance =====
_settings: Optional[JobMonitorSettings] = None


def get_settings() -> JobMonitorSettings:
    """Get settings singleton; invalid configuration is fatal."""
    global _settings
    if _settings is None:
        try:
            _settings = JobMonitorSettings()
        except ValidationError as exc:
            logger.error(f"Job monitor configuration invalid: {exc}")
            raise ConfigurationError(f"Invalid job monitor configuration: {exc}") from exc
        logger.info(
            f"Job monitor settings initialized - queues={_settings.MONITORED_QUEUES} "
            f"analyze={_settings.ANALYZE_ENABLED} sync={_settings.SYNC_ENABLED} env={_settings.ENVIRONMENT}"
        )
    return _settings


def set_settings(settings: JobMonitorSettings) -> None:
    """Install an explicit settings object (tests, embedding hosts)."""
    global _settings
    _settings = settings


def reset_settings():
    """Reset settings singleton (mainly for testing)"""
    global _settings
    _settings = None

