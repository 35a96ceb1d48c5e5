"""
Job and command telemetry collector.

Records job/command lifecycle transitions into Redis, folds them into durable
SQLite metrics on a schedule, and runs anomaly detection over the results.
"""

from __future__ import annotations

__version__ = "0.3.0"
