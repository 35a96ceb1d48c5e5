"""
Logging context helpers for propagating run/process identifiers.

Usage:

    from job_monitor.app.core.Logging.log_context import log_context, new_run_id

    with log_context(run_id=new_run_id(), component="metrics_sync") as log:
        log.info("Starting sync")

The context manager contextualizes the base logger (nested logs inherit the
fields) and yields a bound logger for convenience.
"""

from __future__ import annotations

from contextlib import contextmanager
from typing import Any, Iterator
import uuid

from loguru import logger


def new_run_id() -> str:
    """Return a new opaque run identifier (hex)."""
    return uuid.uuid4().hex


@contextmanager
def log_context(**fields: Any) -> Iterator[Any]:
    """Set structured logging fields for the enclosed block and yield a bound logger."""
    clean = {k: v for k, v in fields.items() if v is not None}
    with logger.contextualize(**clean):
        bound = logger.bind(**clean)
        yield bound
