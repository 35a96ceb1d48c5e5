"""
Lifecycle recorder: turns job/command lifecycle notifications into correlation
store mutations.

Every public method is telemetry-only. Store failures and malformed payloads
are logged and swallowed here so the host job or command never fails because
monitoring is unavailable.
"""

from __future__ import annotations

import json
import time
import traceback
import uuid
from contextlib import contextmanager
from typing import Any, Callable, Dict, Iterator, List, Optional

from loguru import logger

from job_monitor.app.core.config import MANUAL_DISPATCH_COMMAND, JobMonitorSettings, get_settings
from job_monitor.app.core.Correlation import keys
from job_monitor.app.core.Correlation.models import (
    CommandSource,
    JobRecord,
    JobStatus,
    StackFrame,
    utcnow_iso,
)
from job_monitor.app.core.Correlation.store import CounterStore, get_counter_store
from job_monitor.app.core.exceptions import CorrelationStoreError
from job_monitor.app.core.Metrics.metrics_manager import increment_counter
from job_monitor.app.core.Tracking.memory import peak_rss_bytes
from job_monitor.app.core.Tracking.trackable import JobTracking, tracking_of


def new_process_id() -> str:
    return str(uuid.uuid4())


def capture_stack_frames(exc: Optional[BaseException], limit: int) -> List[StackFrame]:
    """Innermost-first frames of `exc`, at most `limit` (0 disables capture)."""
    if exc is None or limit <= 0 or exc.__traceback__ is None:
        return []
    summary = traceback.extract_tb(exc.__traceback__)
    frames = [StackFrame(file=fs.filename, line=fs.lineno, call=fs.name) for fs in reversed(summary)]
    return frames[:limit]


class LifecycleRecorder:
    """Records job and command lifecycle transitions into the counter store."""

    def __init__(
        self,
        store: Optional[CounterStore] = None,
        settings: Optional[JobMonitorSettings] = None,
        *,
        clock: Callable[[], float] = time.time,
        memory_probe: Callable[[], int] = peak_rss_bytes,
    ):
        self.store = store or get_counter_store()
        self.settings = settings or get_settings()
        self._clock = clock
        self._memory_probe = memory_probe

    # ------------------------------------------------------------------
    # Job notifications
    # ------------------------------------------------------------------
    def on_job_queued(self, job_id: Optional[str], queue_name: Optional[str], job: Any, job_class: Optional[str] = None) -> Optional[str]:
        """Record a pending job; returns the owning process id when recorded."""
        tracking = self._accept_job("job_queued", job_id, queue_name, job)
        if tracking is None:
            return None
        return self._guard("job_queued", self._record_queued, str(job_id), queue_name or "default", job, tracking, job_class)

    def on_job_processing(self, job_id: Optional[str], queue_name: Optional[str], job: Any, attempts: int = 1) -> None:
        tracking = self._accept_job("job_processing", job_id, queue_name, job)
        if tracking is None:
            return None
        self._guard("job_processing", self._record_processing, str(job_id), queue_name or "default", job, tracking, attempts)

    def on_job_completed(self, job_id: Optional[str], queue_name: Optional[str], job: Any) -> None:
        tracking = self._accept_job("job_completed", job_id, queue_name, job)
        if tracking is None:
            return None
        self._guard("job_completed", self._record_finished, str(job_id), queue_name or "default", job, tracking, JobStatus.COMPLETED, None)

    def on_job_failed(self, job_id: Optional[str], queue_name: Optional[str], job: Any, exception: Optional[BaseException] = None) -> None:
        tracking = self._accept_job("job_failed", job_id, queue_name, job)
        if tracking is None:
            return None
        self._guard("job_failed", self._record_finished, str(job_id), queue_name or "default", job, tracking, JobStatus.FAILED, exception)

    # ------------------------------------------------------------------
    # Command notifications
    # ------------------------------------------------------------------
    def on_command_starting(
        self,
        command_name: Optional[str],
        arguments: Optional[Dict[str, Any]] = None,
        options: Optional[Dict[str, Any]] = None,
        source: str = CommandSource.CONSOLE.value,
    ) -> Optional[str]:
        """Register a running command; returns its new process id, or None when ignored."""
        if not self.settings.COMMANDS_ENABLED or self.settings.is_ignored_command(command_name):
            return None
        return self._guard("command_starting", self._record_command_start, command_name, arguments, options, source)

    def on_command_finished(self, command_name: Optional[str], exit_code: int = 0, process_id: Optional[str] = None) -> Optional[str]:
        if not self.settings.COMMANDS_ENABLED or self.settings.is_ignored_command(command_name):
            return None
        return self._guard("command_finished", self._record_command_finish, command_name, exit_code, process_id)

    def resolve_process_id(self, command_name: str) -> Optional[str]:
        """Best-effort lookup of the running process id for `command_name`."""
        return self._guard("resolve_process_id", self.store.get_value, keys.pid_map_key(command_name))

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    def _guard(self, event: str, fn: Callable[..., Any], *args: Any) -> Any:
        try:
            result = fn(*args)
        except CorrelationStoreError as exc:
            logger.error(f"Job monitor dropped {event} notification: correlation store unavailable ({exc})")
            increment_counter("job_monitor_recorder_errors_total", 1, {"event": event, "error": "store"})
            return None
        except Exception as exc:
            logger.error(f"Job monitor dropped {event} notification: {type(exc).__name__}: {exc}")
            increment_counter("job_monitor_recorder_errors_total", 1, {"event": event, "error": type(exc).__name__})
            return None
        increment_counter("job_monitor_recorder_events_total", 1, {"event": event, "outcome": "recorded"})
        return result

    def _accept_job(self, event: str, job_id: Optional[str], queue_name: Optional[str], job: Any) -> Optional[JobTracking]:
        if not self.settings.JOB_CORRELATION_ENABLED:
            return None
        if not self.settings.is_monitored_queue(queue_name):
            logger.debug(f"Job monitor skipping {event} on unmonitored queue {queue_name!r}")
            return None
        tracking = tracking_of(job)
        if tracking is None:
            logger.warning(f"Job monitor skipping {event}: payload {type(job).__name__} is not trackable")
            increment_counter("job_monitor_recorder_events_total", 1, {"event": event, "outcome": "skipped"})
            return None
        if not job_id:
            logger.warning(f"Job monitor skipping {event}: missing job id for {type(job).__name__}")
            increment_counter("job_monitor_recorder_events_total", 1, {"event": event, "outcome": "skipped"})
            return None
        return tracking

    def _ensure_identity(self, tracking: JobTracking) -> None:
        if not tracking.process_id:
            tracking.process_id = new_process_id()
            tracking.command_name = MANUAL_DISPATCH_COMMAND
        elif not tracking.command_name:
            tracking.command_name = MANUAL_DISPATCH_COMMAND

    def _load(self, process_id: str, job_id: str) -> Optional[JobRecord]:
        return JobRecord.from_json(job_id, self.store.get_field(keys.jobs_key(process_id), job_id))

    def _save(self, record: JobRecord, ttl: int) -> None:
        key = keys.jobs_key(record.process_id)
        self.store.set_field(key, record.job_id, record.to_json())
        self.store.expire(key, ttl)

    def _counters_enabled(self, command_name: Optional[str]) -> bool:
        return self.settings.ANALYZE_ENABLED and command_name != MANUAL_DISPATCH_COMMAND

    def _bump_counters(
        self,
        command_name: str,
        process_id: str,
        increments: Dict[str, int],
        float_increments: Optional[Dict[str, float]] = None,
        peak_memory: Optional[int] = None,
    ) -> None:
        key = keys.counters_key(command_name, process_id)
        self.store.set_fields(key, {
            "command_name": command_name,
            "process_id": process_id,
            "last_update": utcnow_iso(),
        })
        for field, amount in increments.items():
            self.store.increment(key, field, amount)
        for field, amount in (float_increments or {}).items():
            self.store.increment_float(key, field, amount)
        if peak_memory is not None:
            self.store.max_field(key, "peak_memory", peak_memory)
        self.store.expire(key, self.settings.COUNTERS_TTL)

    def _record_queued(self, job_id: str, queue_name: str, job: Any, tracking: JobTracking, job_class: Optional[str]) -> str:
        self._ensure_identity(tracking)
        process_id, command_name = tracking.process_id, tracking.command_name
        prior = self._load(process_id, job_id)
        if prior is not None:
            logger.debug(f"Job {job_id} already tracked as {prior.status.value}; ignoring duplicate queued notification")
            return process_id

        record = JobRecord(
            job_id=job_id,
            process_id=process_id,
            command_name=command_name,
            status=JobStatus.PENDING,
            queue=queue_name,
            job_class=job_class or type(job).__name__,
            job_type=tracking.job_type,
            created_at=self._clock(),
        )
        self._save(record, self.settings.TRACKING_TTL)
        if self._counters_enabled(command_name):
            self._bump_counters(command_name, process_id, {"job_count": 1})
        return process_id

    def _record_processing(self, job_id: str, queue_name: str, job: Any, tracking: JobTracking, attempts: int) -> None:
        self._ensure_identity(tracking)
        prior = self._load(tracking.process_id, job_id)
        if prior is not None and prior.status.is_terminal:
            logger.debug(f"Job {job_id} already {prior.status.value}; ignoring late processing notification")
            return
        now = self._clock()
        tracking.mark_job_started(now)

        if prior is not None and prior.status == JobStatus.PROCESSING:
            # repeated attempt: timing stays anchored to the first start
            prior.attempts = max(prior.attempts, int(attempts or 1))
            self._save(prior, self.settings.TRACKING_TTL)
            return

        record = prior or self._new_record(job_id, queue_name, job, tracking)
        if record.created_at is not None:
            queue_time = now - record.created_at
        else:
            queue_time = tracking.queue_time()
        record.status = JobStatus.PROCESSING
        record.started_at = now
        record.queue_time = round(max(0.0, queue_time), 4)
        record.attempts = int(attempts or 1)
        self._save(record, self.settings.TRACKING_TTL)
        if prior is None and self._counters_enabled(record.command_name):
            self._bump_counters(record.command_name, record.process_id, {"job_count": 1})

    def _record_finished(
        self,
        job_id: str,
        queue_name: str,
        job: Any,
        tracking: JobTracking,
        status: JobStatus,
        exception: Optional[BaseException],
    ) -> None:
        self._ensure_identity(tracking)
        prior = self._load(tracking.process_id, job_id)
        if prior is not None and prior.status.is_terminal:
            logger.debug(f"Job {job_id} already {prior.status.value}; ignoring duplicate {status.value} notification")
            return
        now = self._clock()

        record = prior or self._new_record(job_id, queue_name, job, tracking)
        started_at = record.started_at if record.started_at is not None else (tracking.started_at or now)
        if record.queue_time is not None:
            queue_time = record.queue_time
        else:
            queue_time = tracking.queue_time()
        execution_time = round(max(0.0, now - started_at), 4)
        memory_usage = int(self._memory_probe())

        record.status = status
        record.started_at = started_at
        record.queue_time = round(queue_time, 4)
        record.execution_time = execution_time
        record.total_time = round(execution_time + queue_time, 4)
        record.memory_usage = memory_usage
        if status == JobStatus.FAILED:
            record.failed_at = now
            record.error = str(exception) if exception is not None else None
            record.exception_class = type(exception).__name__ if exception is not None else None
            record.stack_trace = capture_stack_frames(exception, self.settings.EXCEPTION_FRAME_COUNT)
            ttl = self.settings.FAILED_TTL
        else:
            record.completed_at = now
            ttl = self.settings.COMPLETED_TTL
        self._save(record, ttl)

        if not self.settings.ANALYZE_ENABLED:
            return
        if record.command_name == MANUAL_DISPATCH_COMMAND:
            self._write_standalone_metric(record)
            return
        outcome_field = "success_jobs" if status == JobStatus.COMPLETED else "failed_jobs"
        increments = {outcome_field: 1}
        if prior is None:
            increments["job_count"] = 1
        self._bump_counters(
            record.command_name,
            record.process_id,
            increments,
            {"total_job_time": execution_time},
            peak_memory=memory_usage,
        )

    def _new_record(self, job_id: str, queue_name: str, job: Any, tracking: JobTracking) -> JobRecord:
        logger.debug(f"No prior record for job {job_id}; falling back to capability timestamps")
        return JobRecord(
            job_id=job_id,
            process_id=tracking.process_id,
            command_name=tracking.command_name,
            queue=queue_name,
            job_class=type(job).__name__,
            job_type=tracking.job_type,
            created_at=tracking.created_at,
        )

    def _write_standalone_metric(self, record: JobRecord) -> None:
        key = keys.standalone_job_key(record.job_id)
        self.store.set_fields(key, {
            "job_id": record.job_id,
            "process_id": record.process_id,
            "command_name": record.command_name,
            "job_type": record.job_type or "",
            "execution_time": record.execution_time or 0.0,
            "memory_usage": record.memory_usage or 0,
            "queue_time": record.queue_time or 0.0,
            "status": "success" if record.status == JobStatus.COMPLETED else "failed",
            "timestamp": utcnow_iso(),
        })
        self.store.expire(key, self.settings.TRACKING_TTL)

    def _record_command_start(
        self,
        command_name: str,
        arguments: Optional[Dict[str, Any]],
        options: Optional[Dict[str, Any]],
        source: str,
    ) -> str:
        process_id = new_process_id()
        started_iso = utcnow_iso()
        running = {
            "id": process_id,
            "command": command_name,
            "started_at": started_iso,
            "started_ts": self._clock(),
            "environment": self.settings.ENVIRONMENT,
            "source": source,
            "arguments": arguments or {},
            "options": options or {},
        }
        self.store.set_field(keys.RUNNING_COMMANDS_KEY, process_id, json.dumps(running, default=str))
        self.store.set_value(keys.pid_map_key(command_name), process_id, ttl=self.settings.PID_MAP_TTL)
        if self.settings.ANALYZE_ENABLED:
            counters_key = keys.counters_key(command_name, process_id)
            self.store.set_fields(counters_key, {
                "command_name": command_name,
                "process_id": process_id,
                "source": source,
                "start_time": started_iso,
                "last_update": started_iso,
                "job_count": 0,
                "success_jobs": 0,
                "failed_jobs": 0,
                "total_job_time": 0,
                "peak_memory": 0,
            })
            self.store.expire(counters_key, self.settings.COUNTERS_TTL)
        logger.debug(f"Command {command_name} started with process id {process_id}")
        return process_id

    def _record_command_finish(self, command_name: str, exit_code: int, process_id: Optional[str]) -> Optional[str]:
        map_key = keys.pid_map_key(command_name)
        mapped = self.store.get_value(map_key)
        process_id = process_id or mapped
        if not process_id:
            logger.debug(f"No running process recorded for command {command_name}; finish not correlated")
            return None

        raw = self.store.get_field(keys.RUNNING_COMMANDS_KEY, process_id)
        try:
            running = json.loads(raw) if raw else {}
        except ValueError:
            running = {}
        now = self._clock()
        started_ts = running.get("started_ts")
        finished = {
            "id": process_id,
            "command": command_name,
            "source": running.get("source"),
            "started_at": running.get("started_at"),
            "finished_at": utcnow_iso(),
            "finished_ts": now,
            "exit_code": exit_code,
            "duration": round(now - float(started_ts), 4) if started_ts is not None else None,
        }
        self.store.set_field(keys.FINISHED_COMMANDS_KEY, process_id, json.dumps(finished, default=str))
        self.store.delete_field(keys.RUNNING_COMMANDS_KEY, process_id)
        if mapped == process_id:
            self.store.delete(map_key)

        counters_key = keys.counters_key(command_name, process_id)
        if self.settings.ANALYZE_ENABLED and self.store.exists(counters_key):
            self.store.set_field(counters_key, "last_update", utcnow_iso())
        return process_id


@contextmanager
def track_command(
    recorder: LifecycleRecorder,
    command_name: str,
    arguments: Optional[Dict[str, Any]] = None,
    options: Optional[Dict[str, Any]] = None,
    source: str = CommandSource.CONSOLE.value,
) -> Iterator[Optional[str]]:
    """
    Record a command run around the enclosed block and yield its process id.

    The process id is threaded explicitly to the finish notification, so
    concurrent runs of the same command name cannot cross-wire.
    """
    process_id = recorder.on_command_starting(command_name, arguments, options, source)
    exit_code = 0
    try:
        yield process_id
    except SystemExit as exc:
        exit_code = exc.code if isinstance(exc.code, int) else 1
        raise
    except BaseException:
        exit_code = 1
        raise
    finally:
        if process_id is not None:
            recorder.on_command_finished(command_name, exit_code, process_id=process_id)
