import json
from datetime import datetime, timezone

import pytest

from job_monitor.app.core.Correlation.models import (
    CommandRunCounters,
    CounterValidationError,
    JobRecord,
    JobStatus,
    StackFrame,
    parse_timestamp,
)


def test_job_record_json_omits_empty_fields():
    record = JobRecord(job_id="j1", process_id="p1", command_name="reports:daily", created_at=100.0)
    data = json.loads(record.to_json())
    assert data["status"] == "pending"
    assert data["queue"] == "default"
    assert "error" not in data
    assert "stack_trace" not in data


def test_job_record_from_json_restores_frames_and_status():
    record = JobRecord(
        job_id="j1",
        process_id="p1",
        command_name="reports:daily",
        status=JobStatus.FAILED,
        failed_at=103.0,
        stack_trace=[StackFrame(file="a.py", line=3, call="run")],
    )
    restored = JobRecord.from_json("j1", record.to_json())
    assert restored.status == JobStatus.FAILED
    assert restored.stack_trace == [StackFrame(file="a.py", line=3, call="run")]
    assert restored.latest_timestamp() == 103.0


@pytest.mark.parametrize("raw", [None, "", "not json", "[1, 2]", json.dumps({"status": "exploded"})])
def test_job_record_from_json_rejects_garbage(raw):
    assert JobRecord.from_json("j1", raw) is None


def test_terminal_statuses():
    assert JobStatus.COMPLETED.is_terminal and JobStatus.FAILED.is_terminal
    assert not JobStatus.PENDING.is_terminal and not JobStatus.PROCESSING.is_terminal


def test_counters_from_hash_parses_numbers():
    counters = CommandRunCounters.from_hash({
        "command_name": "reports:daily",
        "process_id": "p1",
        "source": "console",
        "start_time": "2024-03-05T23:59:00+00:00",
        "job_count": "4",
        "success_jobs": "3",
        "failed_jobs": "1",
        "total_job_time": "10.0",
        "peak_memory": "2048",
    })
    assert counters.job_count == 4
    assert counters.avg_job_time == pytest.approx(2.5)
    assert counters.run_date() == "2024-03-05"


def test_counters_missing_identity_is_a_warning():
    with pytest.raises(CounterValidationError) as excinfo:
        CommandRunCounters.from_hash({"job_count": "1"})
    assert excinfo.value.warning is True


@pytest.mark.parametrize("field,value", [("job_count", "abc"), ("failed_jobs", "-1"), ("total_job_time", "-0.5")])
def test_counters_bad_numbers_are_errors(field, value):
    data = {"command_name": "c", "process_id": "p", field: value}
    with pytest.raises(CounterValidationError) as excinfo:
        CommandRunCounters.from_hash(data)
    assert excinfo.value.warning is False


def test_avg_job_time_with_zero_jobs():
    counters = CommandRunCounters(command_name="c", process_id="p", total_job_time=3.0)
    assert counters.avg_job_time == 3.0


def test_parse_timestamp_accepts_iso_and_epoch():
    assert parse_timestamp("2024-01-01T00:00:00Z") == datetime(2024, 1, 1, tzinfo=timezone.utc)
    assert parse_timestamp("2024-01-01T00:00:00") == datetime(2024, 1, 1, tzinfo=timezone.utc)
    assert parse_timestamp(0) == datetime(1970, 1, 1, tzinfo=timezone.utc)
    assert parse_timestamp("1700000000.5").timestamp() == pytest.approx(1700000000.5)
    assert parse_timestamp("yesterday") is None
    assert parse_timestamp(None) is None
