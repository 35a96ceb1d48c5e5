import json
import time

import httpx
import pytest

from job_monitor.app.core.Analysis.anomalies import AnomalyEvent, AnomalyType
from job_monitor.app.core.Monitoring import notification_service as ns


def _anomaly(severity="high", anomaly_type=AnomalyType.MISSED_EXECUTION):
    return AnomalyEvent(
        command_name="reports:daily",
        anomaly_type=anomaly_type,
        metric_name="hours_overdue",
        current_value=5.0,
        baseline_average=0.0,
        severity=severity,
        hours_overdue=5.0,
    )


def _lines(path):
    with open(path, encoding="utf-8") as f:
        return [json.loads(line) for line in f if line.strip()]


def test_file_sink_respects_min_severity(settings_factory):
    settings = settings_factory(NOTIFY_MIN_SEVERITY="high")
    service = ns.AnomalyNotificationService(settings)

    service.notify(_anomaly("medium"))
    service.notify(_anomaly("critical"))

    [record] = _lines(settings.NOTIFY_FILE)
    assert record["type"] == "job_monitor_anomaly"
    assert record["anomaly_type"] == "missed_execution"
    assert record["severity"] == "critical"
    assert record["command_name"] == "reports:daily"
    assert record["hours_overdue"] == 5.0


def test_disabled_service_writes_nothing(settings_factory, tmp_path):
    settings = settings_factory(NOTIFY_ENABLED=False)
    ns.AnomalyNotificationService(settings).notify(_anomaly("critical"))
    assert not (tmp_path / "anomalies.jsonl").exists()


def test_attach_subscribes_once_and_detach_stops(settings, bus):
    service = ns.AnomalyNotificationService(settings)
    service.attach(bus)
    service.attach(bus)
    assert bus.emit(_anomaly()) == 1

    service.detach()
    assert bus.emit(_anomaly()) == 0
    assert len(_lines(settings.NOTIFY_FILE)) == 1


def test_webhook_and_email_dispatch_on_threads(settings_factory, monkeypatch):
    settings = settings_factory(
        NOTIFY_WEBHOOK_URL="https://hooks.example.test/anomalies",
        NOTIFY_EMAIL_TO="ops@example.test",
        NOTIFY_SMTP_HOST="smtp.example.test",
    )
    started = []

    class ImmediateThread:
        def __init__(self, target, args, daemon):
            self.target, self.args = target, args
            assert daemon is True

        def start(self):
            started.append(self.target.__name__)

        def is_alive(self):
            return False

    monkeypatch.setattr(ns.threading, "Thread", ImmediateThread)
    ns.AnomalyNotificationService(settings).notify(_anomaly())
    assert started == ["_send_webhook_safe", "_send_email_safe"]



def test_flush_waits_for_webhook_delivery(settings_factory, monkeypatch):
    settings = settings_factory(NOTIFY_WEBHOOK_URL="https://hooks.example.test/anomalies")
    service = ns.AnomalyNotificationService(settings)
    delivered = []
    monkeypatch.setattr(service, "_send_webhook", lambda payload: (time.sleep(0.05), delivered.append(payload["command_name"])))

    service.notify(_anomaly())

    assert service.flush(timeout=5.0) is True
    assert delivered == ["reports:daily"]
    assert service.flush(timeout=0.1) is True

def test_webhook_failure_is_contained(settings_factory, monkeypatch):
    settings = settings_factory(NOTIFY_WEBHOOK_URL="https://hooks.example.test/anomalies")
    service = ns.AnomalyNotificationService(settings)
    calls = []

    def failing_send(payload):
        calls.append(payload)
        raise httpx.ConnectError("refused")

    monkeypatch.setattr(service, "_send_webhook", failing_send)
    service._send_webhook_safe({"type": "job_monitor_anomaly"})
    assert len(calls) == 1


def test_email_body_mentions_command(settings_factory, monkeypatch):
    settings = settings_factory(
        NOTIFY_EMAIL_TO="ops@example.test, oncall@example.test",
        NOTIFY_SMTP_HOST="smtp.example.test",
        NOTIFY_SMTP_STARTTLS=False,
    )
    sent = {}

    class FakeSMTP:
        def __init__(self, host, port, timeout):
            sent["host"] = host

        def __enter__(self):
            return self

        def __exit__(self, *exc):
            return False

        def sendmail(self, sender, recipients, message):
            sent["recipients"] = recipients
            sent["message"] = message

    monkeypatch.setattr(ns.smtplib, "SMTP", FakeSMTP)
    ns.AnomalyNotificationService(settings)._send_email(_anomaly())

    assert sent["host"] == "smtp.example.test"
    assert sent["recipients"] == ["ops@example.test", "oncall@example.test"]
    assert "reports:daily" in sent["message"]
    assert "Hours overdue: 5.0" in sent["message"]


@pytest.mark.parametrize("severity,expected", [("low", False), ("warning", False), ("medium", True), ("critical", True)])
def test_default_threshold_is_medium(settings, severity, expected):
    assert ns.AnomalyNotificationService(settings)._meets_threshold(severity) is expected
