"""
Sync engine: folds transient Redis counters and job records into the durable
metrics database.

Command counters are upserted one row at a time (each committed on its own);
job rows are written in batches, each batch a single transaction. Wall time
and process memory are checked before every chunk so a run can stop early
without corrupting anything already written; unsynced data simply stays in
Redis for the next run.
"""

from __future__ import annotations

import json
import time
from dataclasses import asdict, dataclass
from typing import Any, Callable, Dict, Iterable, List, Optional

from loguru import logger

from job_monitor.app.core.config import JobMonitorSettings, get_settings
from job_monitor.app.core.Correlation import keys
from job_monitor.app.core.Correlation.models import (
    CommandRunCounters,
    CounterValidationError,
    JobRecord,
    JobStatus,
    parse_timestamp,
)
from job_monitor.app.core.Correlation.store import CounterStore, get_counter_store
from job_monitor.app.core.DB_Management.Metrics_DB import (
    CommandMetric,
    JobMetric,
    MetricsDatabase,
    get_metrics_db,
)
from job_monitor.app.core.exceptions import CorrelationStoreError, MetricsStoreError, SyncAbortedError
from job_monitor.app.core.Logging.log_context import log_context, new_run_id
from job_monitor.app.core.Metrics.metrics_manager import get_metrics_registry
from job_monitor.app.core.Tracking.memory import current_rss_bytes

_JOB_STATUS_MAP = {
    JobStatus.COMPLETED: "success",
    JobStatus.FAILED: "failed",
}


@dataclass
class SyncOptions:
    dry_run: bool = False
    batch_size: Optional[int] = None
    cleanup_enabled: Optional[bool] = None
    force: bool = False


@dataclass
class SyncReport:
    commands_synced: int = 0
    jobs_synced: int = 0
    errors: int = 0
    warnings: int = 0
    skipped: int = 0
    cleaned: int = 0
    dry_run: bool = False
    disabled: bool = False
    aborted: bool = False
    fatal_error: Optional[str] = None
    duration_seconds: float = 0.0

    @property
    def ok(self) -> bool:
        return self.fatal_error is None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["ok"] = self.ok
        return data


def _chunks(items: List[str], size: int) -> Iterable[List[str]]:
    for start in range(0, len(items), size):
        yield items[start:start + size]


class SyncEngine:
    """Moves correlation-store state into `command_metrics` / `job_metrics`."""

    def __init__(
        self,
        store: Optional[CounterStore] = None,
        db: Optional[MetricsDatabase] = None,
        settings: Optional[JobMonitorSettings] = None,
        *,
        clock: Callable[[], float] = time.monotonic,
        wall_clock: Callable[[], float] = time.time,
        memory_probe: Callable[[], int] = current_rss_bytes,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.store = store or get_counter_store()
        self.db = db or get_metrics_db()
        self.settings = settings or get_settings()
        self._clock = clock
        self._wall_clock = wall_clock
        self._memory_probe = memory_probe
        self._sleep = sleep
        self._started = 0.0

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------
    def run_sync(self, options: Optional[SyncOptions] = None) -> SyncReport:
        options = options or SyncOptions()
        report = SyncReport(dry_run=options.dry_run)
        if not self.settings.SYNC_ENABLED and not options.force:
            logger.info("Metrics sync is disabled; skipping run (use force to override)")
            report.disabled = True
            return report

        batch_size = int(options.batch_size or self.settings.SYNC_BATCH_SIZE)
        if batch_size <= 0:
            raise ValueError("batch_size must be positive")
        cleanup = self.settings.CLEANUP_ENABLED if options.cleanup_enabled is None else options.cleanup_enabled

        self._started = self._clock()
        with log_context(run_id=new_run_id(), component="metrics_sync") as log:
            log.info(f"Metrics sync starting (dry_run={options.dry_run}, batch_size={batch_size}, cleanup={cleanup})")
            try:
                self._sync_commands(report, batch_size, options.dry_run)
                self._sync_jobs(report, batch_size, options.dry_run)
                if cleanup:
                    self._cleanup(report, options.dry_run)
            except SyncAbortedError as exc:
                report.aborted = True
                report.fatal_error = str(exc)
                log.error(f"Metrics sync aborted ({exc.reason}): {exc}")
            except CorrelationStoreError as exc:
                report.aborted = True
                report.fatal_error = f"Correlation store unavailable: {exc}"
                log.error(f"Metrics sync aborted: correlation store unavailable (key={exc.key}): {exc}")
            except MetricsStoreError as exc:
                report.aborted = True
                report.fatal_error = f"Metrics database unavailable: {exc}"
                log.error(f"Metrics sync aborted: metrics database failure: {exc}")
            finally:
                report.duration_seconds = round(self._clock() - self._started, 4)

            log.info(
                f"Metrics sync finished: commands={report.commands_synced} jobs={report.jobs_synced} "
                f"errors={report.errors} warnings={report.warnings} cleaned={report.cleaned} ok={report.ok}"
            )
        self._record_run_metrics(report)
        return report

    # ------------------------------------------------------------------
    # Ceilings
    # ------------------------------------------------------------------
    def _check_ceilings(self) -> None:
        elapsed = self._clock() - self._started
        if elapsed > self.settings.SYNC_TIMEOUT_SECONDS:
            raise SyncAbortedError(
                f"Sync exceeded time limit ({elapsed:.1f}s > {self.settings.SYNC_TIMEOUT_SECONDS}s)",
                reason="timeout",
            )
        memory_mb = self._memory_probe() / (1024 * 1024)
        if memory_mb > self.settings.SYNC_MAX_MEMORY_MB:
            raise SyncAbortedError(
                f"Sync exceeded memory limit ({memory_mb:.1f}MB > {self.settings.SYNC_MAX_MEMORY_MB}MB)",
                reason="memory",
            )

    def _pause(self) -> None:
        delay_ms = self.settings.SYNC_CHUNK_DELAY_MS
        if delay_ms > 0:
            self._sleep(delay_ms / 1000.0)

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------
    def _sync_commands(self, report: SyncReport, batch_size: int, dry_run: bool) -> None:
        counter_keys = self.store.collect_keys(keys.COUNTERS_PATTERN, count=batch_size)
        logger.debug(f"Found {len(counter_keys)} command counter hashes")
        for chunk in _chunks(counter_keys, batch_size):
            self._check_ceilings()
            for key in chunk:
                self._sync_command_key(key, report, dry_run)
            self._pause()

    def _sync_command_key(self, key: str, report: SyncReport, dry_run: bool) -> None:
        data = self.store.get_all(key)
        if not data:
            return
        try:
            counters = CommandRunCounters.from_hash(data)
        except CounterValidationError as exc:
            if exc.warning:
                report.warnings += 1
                logger.warning(f"Skipping command counters {key}: {exc}")
            else:
                report.errors += 1
                logger.error(f"Invalid command counters {key}: {exc}")
            return

        job_count = counters.job_count
        finished = counters.success_jobs + counters.failed_jobs
        if finished > job_count:
            report.warnings += 1
            logger.warning(
                f"Command counters {key} report {finished} finished jobs but job_count={job_count}; raising job_count"
            )
            job_count = finished

        metric = CommandMetric(
            process_id=counters.process_id,
            command_name=counters.command_name,
            source=counters.source,
            total_time=round(counters.total_job_time, 4),
            job_count=job_count,
            success_jobs=counters.success_jobs,
            failed_jobs=counters.failed_jobs,
            avg_job_time=round(counters.total_job_time / max(1, job_count), 4),
            peak_memory=counters.peak_memory,
            run_date=counters.run_date(),
        )
        if dry_run:
            report.commands_synced += 1
            return
        try:
            self.db.upsert_command_metric(metric)
        except MetricsStoreError as exc:
            report.errors += 1
            logger.error(f"Failed to sync command counters {key} (process {counters.process_id}): {exc}")
            return
        report.commands_synced += 1

    # ------------------------------------------------------------------
    # Jobs
    # ------------------------------------------------------------------
    def _sync_jobs(self, report: SyncReport, batch_size: int, dry_run: bool) -> None:
        batch: List[JobMetric] = []

        def _add(metric: JobMetric) -> None:
            batch.append(metric)
            if len(batch) >= batch_size:
                self._flush(batch, report, dry_run)
                batch.clear()

        for key in self.store.collect_keys(keys.JOB_HASH_PATTERN, count=batch_size):
            if keys.process_id_from_jobs_key(key) is None:
                continue
            for job_id, raw in self.store.get_all(key).items():
                record = JobRecord.from_json(job_id, raw)
                if record is None:
                    report.warnings += 1
                    logger.warning(f"Skipping unreadable job record {job_id} in {key}")
                    continue
                if not record.status.is_terminal:
                    report.skipped += 1
                    continue
                metric = self._job_metric_from_record(record)
                if metric is None:
                    report.warnings += 1
                    logger.warning(f"Skipping job record {job_id} in {key}: missing process_id/command_name/status")
                    continue
                _add(metric)

        for key in self.store.collect_keys(keys.STANDALONE_JOB_PATTERN, count=batch_size):
            metric = self._job_metric_from_hash(key, self.store.get_all(key))
            if metric is None:
                report.warnings += 1
                logger.warning(f"Skipping standalone job metric {key}: missing required fields")
                continue
            _add(metric)

        if batch:
            self._flush(batch, report, dry_run)

    def _flush(self, batch: List[JobMetric], report: SyncReport, dry_run: bool) -> None:
        self._check_ceilings()
        if dry_run:
            report.jobs_synced += len(batch)
            return
        try:
            written = self.db.bulk_upsert_job_metrics(batch)
        except MetricsStoreError as exc:
            raise SyncAbortedError(f"Bulk insert of {len(batch)} job metrics failed: {exc}", reason="bulk_insert") from exc
        report.jobs_synced += written
        logger.debug(f"Synced batch of {written} job metrics")
        self._pause()

    @staticmethod
    def _job_metric_from_record(record: JobRecord) -> Optional[JobMetric]:
        status = _JOB_STATUS_MAP.get(record.status)
        if not record.process_id or not record.command_name or status is None:
            return None
        return JobMetric(
            job_id=record.job_id,
            process_id=record.process_id,
            command_name=record.command_name,
            job_type=record.job_type,
            execution_time=float(record.execution_time or 0.0),
            memory_usage=int(record.memory_usage or 0),
            queue_time=float(record.queue_time or 0.0),
            status=status,
        )

    @staticmethod
    def _job_metric_from_hash(key: str, data: Dict[str, str]) -> Optional[JobMetric]:
        job_id = data.get("job_id") or key[len("job:metrics:"):]
        process_id = (data.get("process_id") or "").strip()
        command_name = (data.get("command_name") or "").strip()
        status = (data.get("status") or "").strip()
        if not job_id or not process_id or not command_name or status not in ("success", "failed"):
            return None
        try:
            return JobMetric(
                job_id=job_id,
                process_id=process_id,
                command_name=command_name,
                job_type=data.get("job_type") or None,
                execution_time=float(data.get("execution_time") or 0.0),
                memory_usage=int(float(data.get("memory_usage") or 0)),
                queue_time=float(data.get("queue_time") or 0.0),
                status=status,
            )
        except ValueError:
            return None

    # ------------------------------------------------------------------
    # Cleanup
    # ------------------------------------------------------------------
    def _cleanup(self, report: SyncReport, dry_run: bool) -> None:
        cutoff = self._wall_clock() - self.settings.CLEANUP_AFTER_HOURS * 3600

        def _stale(value: Any) -> bool:
            parsed = parse_timestamp(value)
            return parsed is not None and parsed.timestamp() < cutoff

        self._check_ceilings()
        stale_counters = []
        for key in self.store.collect_keys(keys.COUNTERS_PATTERN):
            data = self.store.get_all(key)
            if _stale(data.get("last_update") or data.get("start_time")):
                stale_counters.append(key)

        self._check_ceilings()
        stale_jobs: Dict[str, List[str]] = {}
        for key in self.store.collect_keys(keys.JOB_HASH_PATTERN):
            if keys.process_id_from_jobs_key(key) is None:
                continue
            for job_id, raw in self.store.get_all(key).items():
                record = JobRecord.from_json(job_id, raw)
                if record is None or _stale(record.latest_timestamp()):
                    stale_jobs.setdefault(key, []).append(job_id)

        stale_standalone = [
            key for key in self.store.collect_keys(keys.STANDALONE_JOB_PATTERN)
            if _stale(self.store.get_field(key, "timestamp"))
        ]

        stale_finished = []
        for process_id, raw in self.store.get_all(keys.FINISHED_COMMANDS_KEY).items():
            try:
                finished = json.loads(raw) if raw else {}
            except ValueError:
                finished = {}
            if _stale(finished.get("finished_ts") or finished.get("finished_at")):
                stale_finished.append(process_id)

        total = len(stale_counters) + sum(len(v) for v in stale_jobs.values()) + len(stale_standalone) + len(stale_finished)
        report.cleaned += total
        if dry_run or total == 0:
            logger.info(f"Cleanup {'would remove' if dry_run else 'removed'} {total} stale transient entries")
            return

        if stale_counters:
            self.store.delete(*stale_counters)
        for key, job_ids in stale_jobs.items():
            self.store.delete_field(key, *job_ids)
        if stale_standalone:
            self.store.delete(*stale_standalone)
        if stale_finished:
            self.store.delete_field(keys.FINISHED_COMMANDS_KEY, *stale_finished)
        logger.info(
            f"Cleanup removed {len(stale_counters)} counter hashes, "
            f"{sum(len(v) for v in stale_jobs.values())} job records, {len(stale_standalone)} standalone job metrics, "
            f"{len(stale_finished)} finished command entries"
        )

    # ------------------------------------------------------------------
    # Metrics
    # ------------------------------------------------------------------
    @staticmethod
    def _record_run_metrics(report: SyncReport) -> None:
        try:
            registry = get_metrics_registry()
            outcome = "disabled" if report.disabled else ("ok" if report.ok else "aborted")
            registry.increment("job_monitor_sync_runs_total", 1, {"outcome": outcome, "dry_run": str(report.dry_run).lower()})
            registry.observe("job_monitor_sync_duration_seconds", report.duration_seconds)
            if not report.dry_run:
                registry.increment("job_monitor_synced_records_total", report.commands_synced, {"kind": "command"})
                registry.increment("job_monitor_synced_records_total", report.jobs_synced, {"kind": "job"})
        except Exception as exc:
            logger.debug(f"Failed to record sync metrics: {exc}")


def run_metrics_sync(options: Optional[SyncOptions] = None) -> SyncReport:
    """Run one sync with the process-wide store, database and settings."""
    return SyncEngine().run_sync(options)
