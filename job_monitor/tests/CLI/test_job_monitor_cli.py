import json
from datetime import date

import pytest
from click.testing import CliRunner

from job_monitor.app.core.Correlation import keys
from job_monitor.app.core.Correlation.models import utcnow_iso
from job_monitor.app.core.DB_Management.Metrics_DB import CommandMetric
from job_monitor.app.core.Logging.log_setup import configure_logging
from job_monitor.app.core.Sync.sync_engine import SyncReport
from job_monitor.cli import job_monitor_cli
from job_monitor.cli.job_monitor_cli import main


@pytest.fixture
def runner():
    yield CliRunner()
    # the CLI points loguru at the runner's stderr, which is closed afterwards
    configure_logging(intercept_stdlib=False)


def _seed_counters(store, pid):
    store.set_fields(keys.counters_key("reports:daily", pid), {
        "command_name": "reports:daily",
        "process_id": pid,
        "source": "console",
        "start_time": utcnow_iso(),
        "job_count": 1,
        "success_jobs": 1,
        "failed_jobs": 0,
        "total_job_time": 2.5,
        "peak_memory": 100,
    })


def _seed_runs(db, latest_total_time):
    today = date.today().isoformat()
    db.upsert_command_metric(CommandMetric(
        process_id="a", command_name="reports:daily", total_time=10.0, job_count=2, success_jobs=2,
        run_date=today, created_at=f"{today}T00:00:01+00:00",
    ))
    db.upsert_command_metric(CommandMetric(
        process_id="b", command_name="reports:daily", total_time=latest_total_time, job_count=2, success_jobs=2,
        run_date=today, created_at=f"{today}T00:00:02+00:00",
    ))


def test_sync_writes_metrics(runner, settings, store, db):
    _seed_counters(store, "p1")
    result = runner.invoke(main, ["sync"])
    assert result.exit_code == 0, result.output
    assert "Synced 1 command run(s)" in result.output
    assert db.get_command_metric("p1").job_count == 1


def test_sync_dry_run(runner, settings, store, db):
    _seed_counters(store, "p1")
    result = runner.invoke(main, ["sync", "--dry-run", "--format", "json"])
    assert result.exit_code == 0, result.output
    assert '"dry_run": true' in result.output
    assert "Would sync 1 command run(s)" in result.output
    assert db.count_command_metrics() == 0


def test_sync_disabled_is_informational(runner, settings_factory, store, db):
    settings_factory(SYNC_ENABLED=False)
    result = runner.invoke(main, ["sync"])
    assert result.exit_code == 0
    assert "disabled" in result.output


def test_sync_abort_exits_nonzero(runner, settings, monkeypatch):
    monkeypatch.setattr(
        job_monitor_cli, "run_metrics_sync",
        lambda options: SyncReport(aborted=True, fatal_error="Sync exceeded memory limit"),
    )
    result = runner.invoke(main, ["sync", "--format", "simple"])
    assert result.exit_code == 1
    assert "memory limit" in result.output


def test_sync_rejects_zero_batch_size(runner, settings):
    assert runner.invoke(main, ["sync", "--batch-size", "0"]).exit_code == 2


def test_analyze_rejects_conflicting_selectors(runner, settings):
    result = runner.invoke(main, ["analyze", "--all", "--command", "reports:daily"])
    assert result.exit_code == 2


def test_analyze_disabled_unless_forced(runner, settings_factory, db):
    settings_factory(ANALYZE_ENABLED=False, SCHEDULE_ANALYSIS_ENABLED=False)
    result = runner.invoke(main, ["analyze"])
    assert result.exit_code == 0
    assert "disabled" in result.output

    forced = runner.invoke(main, ["analyze", "--force"])
    assert forced.exit_code == 0, forced.output
    assert "No anomalies detected" in forced.output


def test_analyze_reports_anomalies_as_json(runner, settings_factory, db):
    settings_factory(SCHEDULE_ANALYSIS_ENABLED=False)
    _seed_runs(db, latest_total_time=50.0)
    result = runner.invoke(main, ["--quiet", "analyze", "-c", "reports:daily", "--format", "json"])
    assert result.exit_code == 0, result.output
    payload = json.loads(result.output)
    [anomaly] = payload["results"]["reports:daily"]["anomalies"]
    assert anomaly["type"] == "performance_degradation"
    assert anomaly["severity"] == "critical"



def test_analyze_delivers_anomaly_notifications(runner, settings_factory, db):
    settings = settings_factory(SCHEDULE_ANALYSIS_ENABLED=False)
    _seed_runs(db, latest_total_time=50.0)

    result = runner.invoke(main, ["--quiet", "analyze", "-c", "reports:daily", "--format", "json"])

    assert result.exit_code == 0, result.output
    with open(settings.NOTIFY_FILE, encoding="utf-8") as f:
        [record] = [json.loads(line) for line in f if line.strip()]
    assert record["anomaly_type"] == "performance_degradation"
    assert record["command_name"] == "reports:daily"


def test_analyze_skips_notifications_when_disabled(runner, settings_factory, db, tmp_path):
    settings = settings_factory(SCHEDULE_ANALYSIS_ENABLED=False, NOTIFY_ENABLED=False)
    _seed_runs(db, latest_total_time=50.0)

    result = runner.invoke(main, ["--quiet", "analyze", "-c", "reports:daily", "--format", "json"])

    assert result.exit_code == 0, result.output
    assert not (tmp_path / "anomalies.jsonl").exists()

def test_analyze_without_anomalies(runner, settings_factory, db):
    settings_factory(SCHEDULE_ANALYSIS_ENABLED=False)
    _seed_runs(db, latest_total_time=10.0)
    result = runner.invoke(main, ["analyze", "--all"])
    assert result.exit_code == 0, result.output
    assert "No anomalies detected" in result.output


def test_version(runner):
    result = runner.invoke(main, ["--version"])
    assert result.exit_code == 0
    assert "job-monitor" in result.output
