"""Read-only job monitor API over the correlation store and the durable metrics."""

from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from loguru import logger

from job_monitor.app.core.config import JobMonitorSettings, get_settings
from job_monitor.app.core.Correlation import keys
from job_monitor.app.core.Correlation.models import JobRecord, JobStatus, parse_timestamp
from job_monitor.app.core.Correlation.store import CounterStore, get_counter_store
from job_monitor.app.core.DB_Management.Metrics_DB import MetricsDatabase, get_metrics_db
from job_monitor.app.core.exceptions import CorrelationStoreError, MetricsStoreError

router = APIRouter(prefix="/job-monitor", tags=["job-monitor"])


def _store_unavailable(exc: Exception) -> HTTPException:
    logger.error(f"Job monitor API backend failure: {exc}")
    return HTTPException(status_code=503, detail="Job monitor storage unavailable")


def _decode_entries(raw: Dict[str, str]) -> List[Dict[str, Any]]:
    entries = []
    for process_id, value in raw.items():
        try:
            data = json.loads(value) if value else None
        except ValueError:
            data = None
        if isinstance(data, dict):
            data.setdefault("id", process_id)
            entries.append(data)
    return sorted(entries, key=lambda e: str(e.get("started_at") or ""))


@router.get("/stats")
def stats(
    store: CounterStore = Depends(get_counter_store),
    db: MetricsDatabase = Depends(get_metrics_db),
    settings: JobMonitorSettings = Depends(get_settings),
) -> Dict[str, Any]:
    """Pending/processing counts per monitored queue plus durable failure totals."""
    queues = {q: {"pending": 0, "processing": 0, "failed": 0} for q in settings.MONITORED_QUEUES}
    try:
        for key in store.collect_keys(keys.JOB_HASH_PATTERN):
            if keys.process_id_from_jobs_key(key) is None:
                continue
            for job_id, raw in store.get_all(key).items():
                record = JobRecord.from_json(job_id, raw)
                if record is None or record.queue not in queues:
                    continue
                if record.status in (JobStatus.PENDING, JobStatus.PROCESSING, JobStatus.FAILED):
                    queues[record.queue][record.status.value] += 1
        total_failed = db.count_job_metrics(status="failed")
        total_jobs = db.count_job_metrics()
        total_commands = db.count_command_metrics()
    except (CorrelationStoreError, MetricsStoreError) as exc:
        raise _store_unavailable(exc)
    return {
        "status": "success",
        "data": {
            "total_failed": total_failed,
            "total_jobs": total_jobs,
            "total_command_runs": total_commands,
            "queues": queues,
        },
    }


@router.get("/jobs/failed")
def failed_jobs(
    page: int = Query(1, ge=1),
    per_page: int = Query(20, ge=1, le=500),
    db: MetricsDatabase = Depends(get_metrics_db),
) -> Dict[str, Any]:
    try:
        rows, total = db.list_failed_jobs(page=page, per_page=per_page)
    except MetricsStoreError as exc:
        raise _store_unavailable(exc)
    return {
        "status": "success",
        "data": [r.to_dict() for r in rows],
        "page": page,
        "per_page": per_page,
        "total": total,
        "last_page": max(1, -(-total // per_page)),
    }


@router.delete("/commands/{process_id}/jobs/{job_id}")
def delete_command_job(process_id: str, job_id: str, store: CounterStore = Depends(get_counter_store)) -> Dict[str, Any]:
    try:
        removed = store.delete_field(keys.jobs_key(process_id), job_id)
    except CorrelationStoreError as exc:
        raise _store_unavailable(exc)
    if not removed:
        raise HTTPException(status_code=404, detail=f"Job {job_id} not found for process {process_id}")
    return {"status": "success", "message": f"Job [{job_id}] has been deleted."}


@router.get("/commands/running")
def running_commands(store: CounterStore = Depends(get_counter_store)) -> Dict[str, Any]:
    try:
        raw = store.get_all(keys.RUNNING_COMMANDS_KEY)
    except CorrelationStoreError as exc:
        raise _store_unavailable(exc)
    return {"status": "success", "data": _decode_entries(raw)}


@router.get("/commands/finished")
def finished_commands(store: CounterStore = Depends(get_counter_store)) -> Dict[str, Any]:
    try:
        raw = store.get_all(keys.FINISHED_COMMANDS_KEY)
    except CorrelationStoreError as exc:
        raise _store_unavailable(exc)
    return {"status": "success", "data": _decode_entries(raw)}


@router.get("/commands/{process_id}/jobs")
def command_jobs(process_id: str, store: CounterStore = Depends(get_counter_store)) -> Dict[str, Any]:
    key = keys.jobs_key(process_id)
    try:
        if not store.exists(key):
            raise HTTPException(status_code=404, detail="Command process not found or data has expired.")
        raw = store.get_all(key)
    except CorrelationStoreError as exc:
        raise _store_unavailable(exc)
    jobs = []
    for job_id, value in sorted(raw.items()):
        record = JobRecord.from_json(job_id, value)
        if record is None:
            jobs.append({"id": job_id, "status": "unknown"})
            continue
        data = json.loads(record.to_json())
        data["id"] = job_id
        jobs.append(data)
    return {"status": "success", "data": jobs}


@router.get("/metrics/commands")
def command_metrics(
    command_name: Optional[str] = Query(None),
    limit: int = Query(100, ge=1, le=1000),
    db: MetricsDatabase = Depends(get_metrics_db),
) -> Dict[str, Any]:
    try:
        rows = db.list_command_metrics(command_name=command_name, limit=limit)
    except MetricsStoreError as exc:
        raise _store_unavailable(exc)
    return {"status": "success", "data": [r.to_dict() for r in rows]}


@router.get("/health")
def health(
    store: CounterStore = Depends(get_counter_store),
    db: MetricsDatabase = Depends(get_metrics_db),
    settings: JobMonitorSettings = Depends(get_settings),
) -> Dict[str, Any]:
    """Healthy when Redis answers and the newest command metric is recent enough."""
    checks: Dict[str, Any] = {}
    try:
        checks["redis"] = store.ping()
    except CorrelationStoreError as exc:
        logger.warning(f"Job monitor health: Redis ping failed: {exc}")
        checks["redis"] = False

    latest = None
    try:
        latest = db.latest_metric_timestamp()
        checks["database"] = True
    except MetricsStoreError as exc:
        logger.warning(f"Job monitor health: metrics database unavailable: {exc}")
        checks["database"] = False

    latest_dt = parse_timestamp(latest) if latest else None
    max_age = timedelta(hours=settings.HEALTH_MAX_METRICS_AGE_HOURS)
    fresh = latest_dt is not None and datetime.now(timezone.utc) - latest_dt <= max_age
    checks["metrics_fresh"] = fresh

    healthy = checks["redis"] and checks["database"] and fresh
    return {
        "status": "healthy" if healthy else "unhealthy",
        "checks": checks,
        "latest_metric_at": latest,
        "max_metrics_age_hours": settings.HEALTH_MAX_METRICS_AGE_HOURS,
    }
