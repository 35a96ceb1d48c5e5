"""Exception hierarchy shared by the job monitor components."""

from __future__ import annotations

from typing import Optional


class JobMonitorError(Exception):
    """Base class for job monitor failures."""


class ConfigurationError(JobMonitorError):
    """Raised when settings are missing or invalid at startup."""


class CorrelationStoreError(JobMonitorError):
    """Raised when the Redis-backed correlation store cannot complete an operation."""

    def __init__(self, message: str, *, key: Optional[str] = None):
        super().__init__(message)
        self.key = key


class MetricsStoreError(JobMonitorError):
    """Raised when the durable metrics database fails."""


class SyncAbortedError(JobMonitorError):
    """Raised when a sync run must stop early (ceiling breach or fatal write failure)."""

    def __init__(self, message: str, *, reason: str = "error"):
        super().__init__(message)
        self.reason = reason
