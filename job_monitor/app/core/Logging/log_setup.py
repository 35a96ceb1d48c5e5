"""
Process-wide loguru configuration shared by the API app and the CLI.

`configure_logging()` installs a single stderr sink and routes stdlib logging
(uvicorn, apscheduler, httpx) through loguru so every line shares one format.
Fields set with `log_context(...)` (`run_id`, `component`) are rendered when
present.
"""

from __future__ import annotations

import logging
import os
import re
import sys
from typing import Optional

from loguru import logger

_SECRET_PATTERN = re.compile(r"(?i)(password|token|authorization)\s*[:=]\s*[^\s,;]+")
_URL_CREDENTIALS = re.compile(r"(redis|rediss|https?)://([^:/@\s]+):([^@\s]+)@")


class InterceptHandler(logging.Handler):
    def emit(self, record):
        try:
            level = logger.level(record.levelname).name
        except ValueError:
            level = record.levelno
        # Walk back past logging internals so loguru reports the real caller
        frame, depth = logging.currentframe(), 2
        while frame is not None and frame.f_code.co_filename == logging.__file__:
            frame = frame.f_back
            depth += 1
        logger.opt(depth=depth, exception=record.exc_info).log(level, record.getMessage())


def _redact(record) -> bool:
    msg = record["message"]
    msg = _URL_CREDENTIALS.sub(r"\1://\2:***@", msg)
    msg = _SECRET_PATTERN.sub(r"\1=***REDACTED***", msg)
    record["message"] = msg
    return True


def _format(record) -> str:
    extra = record["extra"]
    context = ""
    if extra.get("run_id"):
        context = f" <yellow>[{extra.get('component', '-')}:{str(extra['run_id'])[:8]}]</yellow>"
    return (
        "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | <level>{level: <8}</level> | "
        "<cyan>{name}</cyan>:<cyan>{line}</cyan>" + context + " - <level>{message}</level>\n{exception}"
    )


def configure_logging(level: Optional[str] = None, *, intercept_stdlib: bool = True) -> None:
    """Reset loguru to one sink at `level` (default: JOB_MONITOR_LOG_LEVEL or INFO)."""
    level = (level or os.getenv("JOB_MONITOR_LOG_LEVEL", "INFO")).upper()
    logger.remove()
    logger.add(sys.stderr, level=level, format=_format, filter=_redact, colorize=sys.stderr.isatty(), enqueue=False)
    if intercept_stdlib:
        logging.basicConfig(handlers=[InterceptHandler()], level=0, force=True)
        for name in ("uvicorn", "uvicorn.error", "uvicorn.access", "apscheduler"):
            std_logger = logging.getLogger(name)
            std_logger.handlers = [InterceptHandler()]
            std_logger.propagate = False
