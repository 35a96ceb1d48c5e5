import sqlite3

import pytest

from job_monitor.app.core.DB_Management.Metrics_DB import CommandMetric, JobMetric, MetricsDatabase
from job_monitor.app.core.exceptions import MetricsStoreError


def _command(pid, name="reports:daily", run_date="2024-03-05", created_at=None, **kwargs):
    return CommandMetric(
        process_id=pid,
        command_name=name,
        run_date=run_date,
        created_at=created_at or f"{run_date}T10:00:00+00:00",
        **kwargs,
    )


def _job(job_id, status="success", **kwargs):
    return JobMetric(job_id=job_id, process_id="p1", command_name="reports:daily", status=status, **kwargs)


def test_schema_is_created_once(tmp_path):
    path = tmp_path / "nested" / "metrics.db"
    MetricsDatabase(str(path))
    MetricsDatabase(str(path))
    conn = sqlite3.connect(str(path))
    try:
        tables = {r[0] for r in conn.execute("SELECT name FROM sqlite_master WHERE type='table'")}
    finally:
        conn.close()
    assert {"command_metrics", "job_metrics"} <= tables


def test_command_upsert_keeps_created_at(db):
    db.upsert_command_metric(_command("p1", job_count=1, total_time=2.0))
    db.upsert_command_metric(_command("p1", job_count=3, total_time=6.0, created_at="2030-01-01T00:00:00+00:00"))
    row = db.get_command_metric("p1")
    assert row.job_count == 3
    assert row.total_time == 6.0
    assert row.created_at == "2024-03-05T10:00:00+00:00"
    assert db.count_command_metrics() == 1


def test_negative_counts_are_rejected(db):
    with pytest.raises(MetricsStoreError):
        db.upsert_command_metric(_command("p1", failed_jobs=-1))


def test_bulk_job_upsert_rolls_back_whole_batch(db):
    db.bulk_upsert_job_metrics([_job("j1")])
    with pytest.raises(MetricsStoreError):
        db.bulk_upsert_job_metrics([_job("j2"), _job("j3", status="exploded")])
    assert db.count_job_metrics() == 1
    assert db.get_job_metric("j2") is None


def test_bulk_job_upsert_updates_existing_rows(db):
    assert db.bulk_upsert_job_metrics([]) == 0
    db.bulk_upsert_job_metrics([_job("j1", execution_time=1.0)])
    db.bulk_upsert_job_metrics([_job("j1", status="failed", execution_time=4.0)])
    row = db.get_job_metric("j1")
    assert row.status == "failed"
    assert row.execution_time == 4.0
    assert db.count_job_metrics() == 1
    assert db.count_job_metrics("failed") == 1
    assert db.count_job_metrics("success") == 0


def test_command_history_window_and_order(db):
    db.upsert_command_metric(_command("old", run_date="2024-02-01"))
    db.upsert_command_metric(_command("a", run_date="2024-03-04"))
    db.upsert_command_metric(_command("b", run_date="2024-03-06"))
    db.upsert_command_metric(_command("c", run_date="2024-03-06", created_at="2024-03-06T12:00:00+00:00"))
    db.upsert_command_metric(_command("other", name="cleanup", run_date="2024-03-06"))

    history = db.command_history("reports:daily", since_date="2024-03-01")
    assert [m.process_id for m in history] == ["c", "b", "a"]
    assert len(db.command_history("reports:daily")) == 4
    assert db.distinct_command_names() == ["cleanup", "reports:daily"]
    assert db.distinct_command_names(since_date="2024-03-05") == ["cleanup", "reports:daily"]
    assert db.distinct_command_names(since_date="2024-04-01") == []


def test_latest_command_metric_filters_sources(db):
    db.upsert_command_metric(_command("p1", source="schedule", created_at="2024-03-05T01:00:00+00:00"))
    db.upsert_command_metric(_command("p2", source="api", created_at="2024-03-05T02:00:00+00:00"))
    assert db.latest_command_metric("reports:daily").process_id == "p2"
    assert db.latest_command_metric("reports:daily", sources=("console", "schedule")).process_id == "p1"
    assert db.latest_command_metric("missing") is None


def test_list_command_metrics(db):
    for i in range(5):
        db.upsert_command_metric(_command(f"p{i}", created_at=f"2024-03-05T0{i}:00:00+00:00"))
    db.upsert_command_metric(_command("x", name="cleanup"))
    assert [m.process_id for m in db.list_command_metrics(limit=2)] == ["x", "p4"]
    assert [m.process_id for m in db.list_command_metrics("reports:daily", limit=3)] == ["p4", "p3", "p2"]


def test_list_failed_jobs_paginates(db):
    db.bulk_upsert_job_metrics([_job(f"f{i}", status="failed", created_at=f"2024-03-05T0{i}:00:00+00:00") for i in range(5)])
    db.bulk_upsert_job_metrics([_job("ok", status="success")])

    rows, total = db.list_failed_jobs(page=1, per_page=2)
    assert total == 5
    assert [r.job_id for r in rows] == ["f4", "f3"]
    rows, _ = db.list_failed_jobs(page=3, per_page=2)
    assert [r.job_id for r in rows] == ["f0"]
    rows, _ = db.list_failed_jobs(page=4, per_page=2)
    assert rows == []


def test_latest_metric_timestamp(db):
    assert db.latest_metric_timestamp() is None
    db.upsert_command_metric(_command("p1"))
    assert db.latest_metric_timestamp() is not None


def test_to_dict_shapes(db):
    db.upsert_command_metric(_command("p1", source="console", peak_memory=10))
    data = db.get_command_metric("p1").to_dict()
    assert data["process_id"] == "p1"
    assert data["source"] == "console"
    assert data["peak_memory"] == 10
    db.bulk_upsert_job_metrics([_job("j1", job_type="export")])
    assert db.get_job_metric("j1").to_dict()["job_type"] == "export"
