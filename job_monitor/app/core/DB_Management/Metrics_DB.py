from __future__ import annotations

"""
Metrics_DB
SQLite storage for durable command-run and per-job metrics.

Table: command_metrics (one row per command invocation)
  - id INTEGER PRIMARY KEY AUTOINCREMENT
  - process_id TEXT UNIQUE
  - command_name TEXT
  - source TEXT NULL      -- 'console' | 'schedule' | 'api'
  - total_time REAL, job_count INTEGER, success_jobs INTEGER, failed_jobs INTEGER
  - avg_job_time REAL, peak_memory INTEGER
  - run_date TEXT (ISO date)
  - created_at / updated_at TEXT (ISO 8601 UTC)

Table: job_metrics (one row per job)
  - id INTEGER PRIMARY KEY AUTOINCREMENT
  - job_id TEXT UNIQUE
  - process_id, command_name, job_type TEXT
  - execution_time REAL, memory_usage INTEGER, queue_time REAL
  - status TEXT  -- 'success' | 'failed'
  - created_at / updated_at TEXT

Writes are upserts on the natural keys so re-syncing the same transient data
never duplicates rows.
"""

import os
import sqlite3
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence, Tuple

from loguru import logger

from job_monitor.app.core.exceptions import MetricsStoreError


def _utcnow_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class CommandMetric:
    process_id: str
    command_name: str
    source: Optional[str] = None
    total_time: float = 0.0
    job_count: int = 0
    success_jobs: int = 0
    failed_jobs: int = 0
    avg_job_time: float = 0.0
    peak_memory: int = 0
    run_date: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None
    id: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "process_id": self.process_id,
            "command_name": self.command_name,
            "source": self.source,
            "total_time": self.total_time,
            "job_count": self.job_count,
            "success_jobs": self.success_jobs,
            "failed_jobs": self.failed_jobs,
            "avg_job_time": self.avg_job_time,
            "peak_memory": self.peak_memory,
            "run_date": self.run_date,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }


@dataclass
class JobMetric:
    job_id: str
    process_id: str
    command_name: str
    status: str
    execution_time: float = 0.0
    memory_usage: int = 0
    queue_time: float = 0.0
    job_type: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None
    id: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "job_id": self.job_id,
            "process_id": self.process_id,
            "command_name": self.command_name,
            "job_type": self.job_type,
            "execution_time": self.execution_time,
            "memory_usage": self.memory_usage,
            "queue_time": self.queue_time,
            "status": self.status,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }


_COMMAND_COLUMNS = (
    "id, process_id, command_name, source, total_time, job_count, success_jobs, failed_jobs, "
    "avg_job_time, peak_memory, run_date, created_at, updated_at"
)
_JOB_COLUMNS = (
    "id, job_id, process_id, command_name, job_type, execution_time, memory_usage, queue_time, "
    "status, created_at, updated_at"
)


def _row_to_command(row: sqlite3.Row) -> CommandMetric:
    return CommandMetric(
        id=row["id"],
        process_id=row["process_id"],
        command_name=row["command_name"],
        source=row["source"],
        total_time=float(row["total_time"] or 0.0),
        job_count=int(row["job_count"] or 0),
        success_jobs=int(row["success_jobs"] or 0),
        failed_jobs=int(row["failed_jobs"] or 0),
        avg_job_time=float(row["avg_job_time"] or 0.0),
        peak_memory=int(row["peak_memory"] or 0),
        run_date=row["run_date"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _row_to_job(row: sqlite3.Row) -> JobMetric:
    return JobMetric(
        id=row["id"],
        job_id=row["job_id"],
        process_id=row["process_id"],
        command_name=row["command_name"],
        job_type=row["job_type"],
        execution_time=float(row["execution_time"] or 0.0),
        memory_usage=int(row["memory_usage"] or 0),
        queue_time=float(row["queue_time"] or 0.0),
        status=row["status"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


class MetricsDatabase:
    def __init__(self, db_path: str = "Databases/job_monitor.db") -> None:
        self.db_path = db_path
        self._lock = threading.RLock()
        parent = os.path.dirname(self.db_path)
        if parent:
            os.makedirs(parent, exist_ok=True)
        self._ensure_schema()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, timeout=10, isolation_level=None)
        conn.row_factory = sqlite3.Row
        try:
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute("PRAGMA busy_timeout=5000")
        except sqlite3.DatabaseError as exc:
            logger.debug(f"Metrics DB pragma setup skipped: {exc}")
        return conn

    def _ensure_schema(self) -> None:
        with self._lock:
            conn = self._connect()
            try:
                conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS command_metrics (
                        id INTEGER PRIMARY KEY AUTOINCREMENT,
                        process_id TEXT NOT NULL UNIQUE,
                        command_name TEXT NOT NULL,
                        source TEXT,
                        total_time REAL NOT NULL DEFAULT 0 CHECK (total_time >= 0),
                        job_count INTEGER NOT NULL DEFAULT 0 CHECK (job_count >= 0),
                        success_jobs INTEGER NOT NULL DEFAULT 0 CHECK (success_jobs >= 0),
                        failed_jobs INTEGER NOT NULL DEFAULT 0 CHECK (failed_jobs >= 0),
                        avg_job_time REAL NOT NULL DEFAULT 0,
                        peak_memory INTEGER NOT NULL DEFAULT 0,
                        run_date TEXT NOT NULL,
                        created_at TEXT NOT NULL,
                        updated_at TEXT NOT NULL
                    )
                    """
                )
                conn.execute(
                    "CREATE INDEX IF NOT EXISTS idx_command_metrics_name_date ON command_metrics(command_name, run_date)"
                )
                conn.execute("CREATE INDEX IF NOT EXISTS idx_command_metrics_source ON command_metrics(source)")
                conn.execute("CREATE INDEX IF NOT EXISTS idx_command_metrics_created ON command_metrics(created_at)")
                conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS job_metrics (
                        id INTEGER PRIMARY KEY AUTOINCREMENT,
                        job_id TEXT NOT NULL UNIQUE,
                        process_id TEXT NOT NULL,
                        command_name TEXT NOT NULL,
                        job_type TEXT,
                        execution_time REAL NOT NULL DEFAULT 0,
                        memory_usage INTEGER NOT NULL DEFAULT 0,
                        queue_time REAL NOT NULL DEFAULT 0,
                        status TEXT NOT NULL CHECK (status IN ('success', 'failed')),
                        created_at TEXT NOT NULL,
                        updated_at TEXT NOT NULL
                    )
                    """
                )
                conn.execute("CREATE INDEX IF NOT EXISTS idx_job_metrics_process ON job_metrics(process_id)")
                conn.execute("CREATE INDEX IF NOT EXISTS idx_job_metrics_command ON job_metrics(command_name)")
                conn.execute("CREATE INDEX IF NOT EXISTS idx_job_metrics_status ON job_metrics(status)")
                conn.execute("CREATE INDEX IF NOT EXISTS idx_job_metrics_created ON job_metrics(created_at)")
                conn.commit()
            finally:
                conn.close()

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------
    def upsert_command_metric(self, metric: CommandMetric) -> None:
        """Insert or refresh the row for `metric.process_id`; committed immediately."""
        now = _utcnow_iso()
        with self._lock:
            conn = self._connect()
            try:
                conn.execute(
                    """
                    INSERT INTO command_metrics (
                        process_id, command_name, source, total_time, job_count, success_jobs,
                        failed_jobs, avg_job_time, peak_memory, run_date, created_at, updated_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT(process_id) DO UPDATE SET
                        command_name = excluded.command_name,
                        source = excluded.source,
                        total_time = excluded.total_time,
                        job_count = excluded.job_count,
                        success_jobs = excluded.success_jobs,
                        failed_jobs = excluded.failed_jobs,
                        avg_job_time = excluded.avg_job_time,
                        peak_memory = excluded.peak_memory,
                        run_date = excluded.run_date,
                        updated_at = excluded.updated_at
                    """,
                    (
                        metric.process_id,
                        metric.command_name,
                        metric.source,
                        float(metric.total_time),
                        int(metric.job_count),
                        int(metric.success_jobs),
                        int(metric.failed_jobs),
                        float(metric.avg_job_time),
                        int(metric.peak_memory),
                        metric.run_date or now[:10],
                        metric.created_at or now,
                        now,
                    ),
                )
            except sqlite3.Error as exc:
                raise MetricsStoreError(f"Failed to upsert command metric {metric.process_id}: {exc}") from exc
            finally:
                conn.close()

    def bulk_upsert_job_metrics(self, metrics: Sequence[JobMetric]) -> int:
        """Write a batch of job rows in one transaction; the whole batch rolls back on failure."""
        if not metrics:
            return 0
        now = _utcnow_iso()
        params = [
            (
                m.job_id,
                m.process_id,
                m.command_name,
                m.job_type,
                float(m.execution_time),
                int(m.memory_usage),
                float(m.queue_time),
                m.status,
                m.created_at or now,
                now,
            )
            for m in metrics
        ]
        with self._lock:
            conn = self._connect()
            try:
                conn.execute("BEGIN")
                conn.executemany(
                    """
                    INSERT INTO job_metrics (
                        job_id, process_id, command_name, job_type, execution_time,
                        memory_usage, queue_time, status, created_at, updated_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT(job_id) DO UPDATE SET
                        process_id = excluded.process_id,
                        command_name = excluded.command_name,
                        job_type = excluded.job_type,
                        execution_time = excluded.execution_time,
                        memory_usage = excluded.memory_usage,
                        queue_time = excluded.queue_time,
                        status = excluded.status,
                        updated_at = excluded.updated_at
                    """,
                    params,
                )
                conn.execute("COMMIT")
            except sqlite3.Error as exc:
                try:
                    conn.execute("ROLLBACK")
                except sqlite3.Error:
                    pass
                raise MetricsStoreError(f"Bulk insert of {len(params)} job metrics failed: {exc}") from exc
            finally:
                conn.close()
        return len(params)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------
    def _query(self, sql: str, params: Tuple[Any, ...] = ()) -> List[sqlite3.Row]:
        with self._lock:
            conn = self._connect()
            try:
                return conn.execute(sql, params).fetchall()
            except sqlite3.Error as exc:
                raise MetricsStoreError(f"Metrics query failed: {exc}") from exc
            finally:
                conn.close()

    def get_command_metric(self, process_id: str) -> Optional[CommandMetric]:
        rows = self._query(f"SELECT {_COMMAND_COLUMNS} FROM command_metrics WHERE process_id = ?", (process_id,))
        return _row_to_command(rows[0]) if rows else None

    def get_job_metric(self, job_id: str) -> Optional[JobMetric]:
        rows = self._query(f"SELECT {_JOB_COLUMNS} FROM job_metrics WHERE job_id = ?", (job_id,))
        return _row_to_job(rows[0]) if rows else None

    def command_history(self, command_name: str, since_date: Optional[str] = None) -> List[CommandMetric]:
        """Rows for `command_name` with run_date >= `since_date`, newest first."""
        sql = f"SELECT {_COMMAND_COLUMNS} FROM command_metrics WHERE command_name = ?"
        params: List[Any] = [command_name]
        if since_date:
            sql += " AND run_date >= ?"
            params.append(since_date)
        sql += " ORDER BY run_date DESC, created_at DESC, id DESC"
        return [_row_to_command(r) for r in self._query(sql, tuple(params))]

    def distinct_command_names(self, since_date: Optional[str] = None) -> List[str]:
        if since_date:
            rows = self._query(
                "SELECT DISTINCT command_name FROM command_metrics WHERE run_date >= ? ORDER BY command_name",
                (since_date,),
            )
        else:
            rows = self._query("SELECT DISTINCT command_name FROM command_metrics ORDER BY command_name")
        return [r["command_name"] for r in rows]

    def latest_command_metric(self, command_name: str, sources: Optional[Sequence[str]] = None) -> Optional[CommandMetric]:
        sql = f"SELECT {_COMMAND_COLUMNS} FROM command_metrics WHERE command_name = ?"
        params: List[Any] = [command_name]
        if sources:
            sql += f" AND source IN ({', '.join('?' for _ in sources)})"
            params.extend(sources)
        sql += " ORDER BY created_at DESC, id DESC LIMIT 1"
        rows = self._query(sql, tuple(params))
        return _row_to_command(rows[0]) if rows else None

    def list_command_metrics(self, command_name: Optional[str] = None, limit: int = 100) -> List[CommandMetric]:
        sql = f"SELECT {_COMMAND_COLUMNS} FROM command_metrics"
        params: List[Any] = []
        if command_name:
            sql += " WHERE command_name = ?"
            params.append(command_name)
        sql += " ORDER BY created_at DESC, id DESC LIMIT ?"
        params.append(int(limit))
        return [_row_to_command(r) for r in self._query(sql, tuple(params))]

    def list_failed_jobs(self, page: int = 1, per_page: int = 20) -> Tuple[List[JobMetric], int]:
        offset = max(0, (int(page) - 1) * int(per_page))
        rows = self._query(
            f"SELECT {_JOB_COLUMNS} FROM job_metrics WHERE status = 'failed' ORDER BY created_at DESC, id DESC LIMIT ? OFFSET ?",
            (int(per_page), offset),
        )
        total = self._query("SELECT COUNT(*) AS n FROM job_metrics WHERE status = 'failed'")[0]["n"]
        return [_row_to_job(r) for r in rows], int(total)

    def count_job_metrics(self, status: Optional[str] = None) -> int:
        if status:
            rows = self._query("SELECT COUNT(*) AS n FROM job_metrics WHERE status = ?", (status,))
        else:
            rows = self._query("SELECT COUNT(*) AS n FROM job_metrics")
        return int(rows[0]["n"])

    def count_command_metrics(self) -> int:
        return int(self._query("SELECT COUNT(*) AS n FROM command_metrics")[0]["n"])

    def latest_metric_timestamp(self) -> Optional[str]:
        rows = self._query("SELECT MAX(updated_at) AS ts FROM command_metrics")
        return rows[0]["ts"] if rows else None


_default_db: Optional[MetricsDatabase] = None


def get_metrics_db() -> MetricsDatabase:
    global _default_db
    if _default_db is None:
        from job_monitor.app.core.config import get_settings

        _default_db = MetricsDatabase(get_settings().DATABASE_PATH)
    return _default_db


def set_metrics_db(db: Optional[MetricsDatabase]) -> None:
    global _default_db
    _default_db = db
