from __future__ import annotations

"""
Anomaly notification listener.

Subscribes to `AnomalyEvent`s on the event bus and, for events at or above the
configured severity, appends a JSONL record and fans out to webhook/email on
daemon threads so the analyzer never waits on delivery.

Configuration (JobMonitorSettings, env prefix JOB_MONITOR_):
- NOTIFY_ENABLED: 'true'|'false' (default: true)
- NOTIFY_MIN_SEVERITY: 'low'|'warning'|'medium'|'high'|'critical' (default: 'medium')
- NOTIFY_FILE: JSONL sink path
- NOTIFY_WEBHOOK_URL: POST target for JSON payloads
- NOTIFY_EMAIL_TO / NOTIFY_SMTP_*: SMTP delivery
"""

import json
import smtplib
import threading
import time
from datetime import datetime, timezone
from email.mime.text import MIMEText
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

import httpx
from loguru import logger
from tenacity import retry, stop_after_attempt, wait_exponential

from job_monitor.app.core.Analysis.anomalies import AnomalyEvent, severity_at_least
from job_monitor.app.core.config import JobMonitorSettings, get_settings
from job_monitor.app.core.Events.event_bus import EventBus, get_event_bus
from job_monitor.app.core.Metrics.metrics_manager import increment_counter


class AnomalyNotificationService:
    def __init__(self, settings: Optional[JobMonitorSettings] = None) -> None:
        settings = settings or get_settings()
        self.enabled = settings.NOTIFY_ENABLED
        self.min_severity = settings.NOTIFY_MIN_SEVERITY
        self.file_path = settings.NOTIFY_FILE
        self.webhook_url = settings.NOTIFY_WEBHOOK_URL or ""
        self.email_to = settings.NOTIFY_EMAIL_TO or ""
        self.smtp_host = settings.NOTIFY_SMTP_HOST or ""
        self.smtp_port = settings.NOTIFY_SMTP_PORT
        self.smtp_starttls = settings.NOTIFY_SMTP_STARTTLS
        self.smtp_user = settings.NOTIFY_SMTP_USER or ""
        self.smtp_password = settings.NOTIFY_SMTP_PASSWORD or ""
        self.email_from = settings.NOTIFY_EMAIL_FROM
        self._lock = threading.RLock()
        self._unsubscribe: Optional[Callable[[], None]] = None
        self._pending: List[threading.Thread] = []
        try:
            Path(self.file_path).parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            logger.warning(f"Could not create notification directory for {self.file_path}: {e}")

    def attach(self, bus: Optional[EventBus] = None) -> None:
        """Start listening for anomaly events."""
        if self._unsubscribe is not None:
            return
        self._unsubscribe = (bus or get_event_bus()).subscribe(AnomalyEvent, self.notify)

    def detach(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None

    def _meets_threshold(self, severity: Optional[str]) -> bool:
        if not self.enabled:
            return False
        return severity_at_least((severity or "low").lower(), self.min_severity)

    def notify(self, anomaly: AnomalyEvent) -> None:
        """Record and dispatch one anomaly."""
        if not self._meets_threshold(anomaly.severity):
            return
        payload: Dict[str, Any] = {
            "ts": datetime.now(timezone.utc).isoformat(),
            **anomaly.to_dict(),
            "anomaly_type": anomaly.anomaly_type.value,
            "type": "job_monitor_anomaly",
        }
        try:
            with self._lock:
                with open(self.file_path, "a", encoding="utf-8") as f:
                    f.write(json.dumps(payload, ensure_ascii=False) + "\n")
            increment_counter("job_monitor_notifications_total", 1, {"channel": "file", "outcome": "sent"})
        except OSError as e:
            logger.warning(f"Notification file sink failed: {e}")
            increment_counter("job_monitor_notifications_total", 1, {"channel": "file", "outcome": "failed"})
        if self.webhook_url:
            self._dispatch(self._send_webhook_safe, payload)
        if self.email_to and self.smtp_host and self.email_from:
            self._dispatch(self._send_email_safe, anomaly)

    def _dispatch(self, target: Callable[[Any], None], arg: Any) -> None:
        worker = threading.Thread(target=target, args=(arg,), daemon=True)
        with self._lock:
            self._pending = [t for t in self._pending if t.is_alive()]
            self._pending.append(worker)
        worker.start()

    def flush(self, timeout: float = 30.0) -> bool:
        """Wait for in-flight webhook/email deliveries; False if any are still running."""
        with self._lock:
            pending, self._pending = self._pending, []
        deadline = time.monotonic() + timeout
        for worker in pending:
            worker.join(max(0.0, deadline - time.monotonic()))
        still_running = [t for t in pending if t.is_alive()]
        if still_running:
            logger.warning(f"{len(still_running)} notification delivery thread(s) still running after {timeout}s")
        return not still_running

    @retry(stop=stop_after_attempt(3), wait=wait_exponential(multiplier=1, min=1, max=8), reraise=False)
    def _send_webhook(self, payload: Dict[str, Any]) -> None:
        timeout = httpx.Timeout(5.0, connect=3.0)
        with httpx.Client(timeout=timeout) as client:
            response = client.post(self.webhook_url, json=payload, headers={"Content-Type": "application/json"})
            response.raise_for_status()

    def _send_webhook_safe(self, payload: Dict[str, Any]) -> None:
        try:
            self._send_webhook(payload)
            increment_counter("job_monitor_notifications_total", 1, {"channel": "webhook", "outcome": "sent"})
        except Exception as e:
            logger.info(f"Webhook notify failed: {e}")
            increment_counter("job_monitor_notifications_total", 1, {"channel": "webhook", "outcome": "failed"})

    @retry(stop=stop_after_attempt(3), wait=wait_exponential(multiplier=1, min=1, max=8), reraise=False)
    def _send_email(self, anomaly: AnomalyEvent) -> None:
        subject = f"Job monitor: {anomaly.anomaly_type.value} for {anomaly.command_name} ({anomaly.severity})"
        body = (
            f"Command: {anomaly.command_name}\n"
            f"Anomaly: {anomaly.anomaly_type.value} ({anomaly.category})\n"
            f"Severity: {anomaly.severity}\n"
            f"Metric: {anomaly.metric_name}\n"
            f"Current value: {anomaly.current_value}\n"
            f"Baseline average: {anomaly.baseline_average}\n"
            f"Threshold: {anomaly.threshold}\n"
            f"Change: {anomaly.percentage_change}%\n"
        )
        if anomaly.hours_overdue is not None:
            body += f"Hours overdue: {anomaly.hours_overdue}\n"
        if anomaly.command_metric is not None:
            body += f"Process: {anomaly.command_metric.process_id} (run {anomaly.command_metric.run_date})\n"
        msg = MIMEText(body)
        msg["Subject"] = subject
        msg["From"] = self.email_from
        msg["To"] = self.email_to

        with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=10) as server:
            if self.smtp_starttls:
                server.starttls()
            if self.smtp_user:
                server.login(self.smtp_user, self.smtp_password)
            server.sendmail(self.email_from, [a.strip() for a in self.email_to.split(",") if a.strip()], msg.as_string())

    def _send_email_safe(self, anomaly: AnomalyEvent) -> None:
        try:
            self._send_email(anomaly)
            increment_counter("job_monitor_notifications_total", 1, {"channel": "email", "outcome": "sent"})
        except Exception as e:
            logger.info(f"Email notify failed: {e}")
            increment_counter("job_monitor_notifications_total", 1, {"channel": "email", "outcome": "failed"})


_notify_singleton: Optional[AnomalyNotificationService] = None


def get_notification_service() -> AnomalyNotificationService:
    global _notify_singleton
    if _notify_singleton is None:
        _notify_singleton = AnomalyNotificationService()
    return _notify_singleton


def reset_notification_service() -> None:
    global _notify_singleton
    if _notify_singleton is not None:
        _notify_singleton.detach()
    _notify_singleton = None
