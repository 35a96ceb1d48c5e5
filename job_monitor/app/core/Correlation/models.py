"""
Transient record shapes kept in the correlation store.

`JobRecord` is stored as a JSON value inside the per-process jobs hash;
`CommandRunCounters` is a flat Redis hash mutated by atomic increments.
"""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


class JobStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED)


class CommandSource(str, Enum):
    CONSOLE = "console"
    SCHEDULE = "schedule"
    API = "api"

    @property
    def is_console(self) -> bool:
        return self in (CommandSource.CONSOLE, CommandSource.SCHEDULE)


@dataclass
class StackFrame:
    file: Optional[str]
    line: Optional[int]
    call: Optional[str]


@dataclass
class JobRecord:
    job_id: str
    process_id: str
    command_name: str
    status: JobStatus = JobStatus.PENDING
    queue: str = "default"
    job_class: Optional[str] = None
    job_type: Optional[str] = None
    created_at: Optional[float] = None
    started_at: Optional[float] = None
    completed_at: Optional[float] = None
    failed_at: Optional[float] = None
    queue_time: Optional[float] = None
    execution_time: Optional[float] = None
    total_time: Optional[float] = None
    attempts: int = 0
    memory_usage: Optional[int] = None
    error: Optional[str] = None
    exception_class: Optional[str] = None
    stack_trace: List[StackFrame] = field(default_factory=list)

    def to_json(self) -> str:
        data = asdict(self)
        data["status"] = self.status.value
        return json.dumps({k: v for k, v in data.items() if v is not None and v != []})

    @classmethod
    def from_json(cls, job_id: str, raw: Optional[str]) -> Optional["JobRecord"]:
        """Decode a stored record; returns None when the value is not a JSON object."""
        if not raw:
            return None
        try:
            data = json.loads(raw)
        except (TypeError, ValueError):
            return None
        if not isinstance(data, dict):
            return None
        try:
            status = JobStatus(data.get("status") or JobStatus.PENDING.value)
        except ValueError:
            return None
        frames = [
            StackFrame(file=f.get("file"), line=f.get("line"), call=f.get("call"))
            for f in data.get("stack_trace") or []
            if isinstance(f, dict)
        ]
        return cls(
            job_id=str(data.get("job_id") or job_id),
            process_id=str(data.get("process_id") or ""),
            command_name=str(data.get("command_name") or ""),
            status=status,
            queue=data.get("queue") or "default",
            job_class=data.get("job_class"),
            job_type=data.get("job_type"),
            created_at=_as_float(data.get("created_at")),
            started_at=_as_float(data.get("started_at")),
            completed_at=_as_float(data.get("completed_at")),
            failed_at=_as_float(data.get("failed_at")),
            queue_time=_as_float(data.get("queue_time")),
            execution_time=_as_float(data.get("execution_time")),
            total_time=_as_float(data.get("total_time")),
            attempts=int(data.get("attempts") or 0),
            memory_usage=_as_int(data.get("memory_usage")),
            error=data.get("error"),
            exception_class=data.get("exception_class"),
            stack_trace=frames,
        )

    def latest_timestamp(self) -> Optional[float]:
        stamps = [t for t in (self.created_at, self.started_at, self.completed_at, self.failed_at) if t is not None]
        return max(stamps) if stamps else None


class CounterValidationError(ValueError):
    """A counters hash is missing required fields or holds impossible values."""

    def __init__(self, message: str, *, warning: bool = False):
        super().__init__(message)
        self.warning = warning


@dataclass
class CommandRunCounters:
    command_name: str
    process_id: str
    source: Optional[str] = None
    start_time: Optional[str] = None
    last_update: Optional[str] = None
    job_count: int = 0
    success_jobs: int = 0
    failed_jobs: int = 0
    total_job_time: float = 0.0
    peak_memory: int = 0

    @classmethod
    def from_hash(cls, data: Dict[str, Any]) -> "CommandRunCounters":
        """
        Parse a counters hash.

        Raises:
            CounterValidationError: `warning=True` when identity fields are missing,
                `warning=False` when numbers are unparseable or negative.
        """
        command_name = str(data.get("command_name") or "").strip()
        process_id = str(data.get("process_id") or "").strip()
        if not command_name or not process_id:
            raise CounterValidationError("missing command_name or process_id", warning=True)
        try:
            counters = cls(
                command_name=command_name,
                process_id=process_id,
                source=data.get("source") or None,
                start_time=data.get("start_time") or None,
                last_update=data.get("last_update") or None,
                job_count=int(float(data.get("job_count") or 0)),
                success_jobs=int(float(data.get("success_jobs") or 0)),
                failed_jobs=int(float(data.get("failed_jobs") or 0)),
                total_job_time=float(data.get("total_job_time") or 0.0),
                peak_memory=int(float(data.get("peak_memory") or 0)),
            )
        except (TypeError, ValueError) as exc:
            raise CounterValidationError(f"unparseable counter value: {exc}") from exc
        for name in ("job_count", "success_jobs", "failed_jobs", "total_job_time", "peak_memory"):
            if getattr(counters, name) < 0:
                raise CounterValidationError(f"{name} is negative")
        return counters

    @property
    def avg_job_time(self) -> float:
        return self.total_job_time / max(1, self.job_count)

    def run_date(self) -> str:
        """ISO date of the run, from start_time, then last_update, then today."""
        for stamp in (self.start_time, self.last_update):
            parsed = parse_timestamp(stamp)
            if parsed is not None:
                return parsed.date().isoformat()
        return utcnow().date().isoformat()


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def utcnow_iso() -> str:
    return utcnow().isoformat()


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse an ISO-8601 string or epoch number into an aware UTC datetime."""
    if value is None or value == "":
        return None
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(float(value), tz=timezone.utc)
    text = str(value).strip()
    try:
        return datetime.fromtimestamp(float(text), tz=timezone.utc)
    except ValueError:
        pass
    try:
        parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _as_float(value: Any) -> Optional[float]:
    if value is None or value == "":
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _as_int(value: Any) -> Optional[int]:
    number = _as_float(value)
    return int(number) if number is not None else None
