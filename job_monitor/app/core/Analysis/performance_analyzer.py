"""
Performance analyzer: statistical anomaly detection over durable command metrics.

For each command the newest run inside the retention window is compared with
the mean of the older runs. `total_time`, `job_count` and `failed_jobs` each
have an upper and a lower multiplier; crossing either bound (strictly) yields
an anomaly. A run with jobs but no successes is always a `complete_failure`.
Scheduled commands are additionally checked for missed or absent executions.

Nothing is persisted: every call recomputes from the database and publishes
`AnomalyEvent`s on the event bus.
"""

from __future__ import annotations

import statistics
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple

from apscheduler.triggers.cron import CronTrigger
from loguru import logger

from job_monitor.app.core.Analysis.anomalies import (
    CATEGORIES,
    SEVERITY_ORDER,
    AnomalyEvent,
    AnomalyType,
    classify_severity,
    percentage_change,
)
from job_monitor.app.core.config import JobMonitorSettings, get_settings
from job_monitor.app.core.Correlation.models import CommandSource, parse_timestamp
from job_monitor.app.core.DB_Management.Metrics_DB import CommandMetric, MetricsDatabase, get_metrics_db
from job_monitor.app.core.Events.event_bus import EventBus, get_event_bus
from job_monitor.app.core.exceptions import MetricsStoreError
from job_monitor.app.core.Logging.log_context import log_context, new_run_id
from job_monitor.app.core.Metrics.metrics_manager import increment_counter

CONSOLE_SOURCES = tuple(s.value for s in CommandSource if s.is_console)
API_SOURCES = (CommandSource.API.value,)

# (metric, settings prefix, upper anomaly, lower anomaly, upper direction, lower direction)
_THRESHOLD_RULES: Tuple[Tuple[str, str, AnomalyType, AnomalyType, str, str], ...] = (
    ("total_time", "PERFORMANCE", AnomalyType.PERFORMANCE_DEGRADATION, AnomalyType.PERFORMANCE_IMPROVEMENT, "worse", "better"),
    ("job_count", "JOB_COUNT", AnomalyType.UNUSUAL_WORKLOAD_HIGH, AnomalyType.UNUSUAL_WORKLOAD_LOW, "higher", "lower"),
    ("failed_jobs", "FAILED_JOBS", AnomalyType.HIGH_FAILURE_RATE, AnomalyType.LOW_FAILURE_RATE, "worse", "better"),
)


@dataclass
class Baseline:
    total_time: float
    total_time_std: float
    job_count: float
    job_count_std: float
    failed_jobs: float
    failed_jobs_std: float
    success_jobs: float
    avg_job_time: float
    peak_memory: float
    sample_size: int

    @classmethod
    def from_history(cls, history: List[CommandMetric]) -> "Baseline":
        def _mean(name: str) -> float:
            return float(statistics.mean(getattr(m, name) for m in history))

        def _std(name: str) -> float:
            if len(history) < 2:
                return 0.0
            return float(statistics.stdev(getattr(m, name) for m in history))

        return cls(
            total_time=_mean("total_time"),
            total_time_std=_std("total_time"),
            job_count=_mean("job_count"),
            job_count_std=_std("job_count"),
            failed_jobs=_mean("failed_jobs"),
            failed_jobs_std=_std("failed_jobs"),
            success_jobs=_mean("success_jobs"),
            avg_job_time=_mean("avg_job_time"),
            peak_memory=_mean("peak_memory"),
            sample_size=len(history),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {k: (round(v, 4) if isinstance(v, float) else v) for k, v in self.__dict__.items()}


@dataclass
class CommandAnalysis:
    command_name: str
    has_anomalies: bool = False
    anomalies: List[AnomalyEvent] = field(default_factory=list)
    baseline: Optional[Baseline] = None
    latest_metric: Optional[CommandMetric] = None
    data_points: int = 0
    reason: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "command_name": self.command_name,
            "has_anomalies": self.has_anomalies,
            "anomalies": [a.to_dict() for a in self.anomalies],
            "baseline": self.baseline.to_dict() if self.baseline else None,
            "latest_metric": self.latest_metric.to_dict() if self.latest_metric else None,
            "data_points": self.data_points,
            "reason": self.reason,
        }


@dataclass
class AnalysisReport:
    results: Dict[str, CommandAnalysis] = field(default_factory=dict)
    schedule_anomalies: List[AnomalyEvent] = field(default_factory=list)
    errors: Dict[str, str] = field(default_factory=dict)
    summary: Dict[str, Any] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.errors

    def all_anomalies(self) -> List[AnomalyEvent]:
        found = [a for r in self.results.values() for a in r.anomalies]
        return found + list(self.schedule_anomalies)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "results": {name: r.to_dict() for name, r in self.results.items()},
            "schedule_anomalies": [a.to_dict() for a in self.schedule_anomalies],
            "errors": dict(self.errors),
            "summary": dict(self.summary),
        }


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class PerformanceAnalyzer:
    def __init__(
        self,
        db: Optional[MetricsDatabase] = None,
        settings: Optional[JobMonitorSettings] = None,
        event_bus: Optional[EventBus] = None,
        *,
        now: Callable[[], datetime] = _utcnow,
    ):
        self.db = db or get_metrics_db()
        self.settings = settings or get_settings()
        self.event_bus = event_bus or get_event_bus()
        self._now = now

    def _window_start(self) -> str:
        return (self._now() - timedelta(days=self.settings.RETENTION_DAYS)).date().isoformat()

    # ------------------------------------------------------------------
    # Per-command analysis
    # ------------------------------------------------------------------
    def analyze_command(self, command_name: str) -> CommandAnalysis:
        history = self.db.command_history(command_name, since_date=self._window_start())
        analysis = CommandAnalysis(command_name=command_name, data_points=len(history))
        if len(history) < 2:
            analysis.reason = "insufficient_data"
            analysis.latest_metric = history[0] if history else None
            logger.info(f"Not enough history to analyze {command_name} ({len(history)} data point(s))")
            return analysis

        latest, previous = history[0], history[1:]
        baseline = Baseline.from_history(previous)
        analysis.latest_metric = latest
        analysis.baseline = baseline

        anomalies = self._threshold_anomalies(command_name, latest, baseline)
        if latest.job_count > 0 and latest.success_jobs == 0:
            anomalies.append(AnomalyEvent(
                command_name=command_name,
                anomaly_type=AnomalyType.COMPLETE_FAILURE,
                metric_name="success_jobs",
                current_value=0.0,
                baseline_average=round(baseline.success_jobs, 4),
                threshold=0.0,
                direction="worse",
                percentage_change=percentage_change(0.0, baseline.success_jobs),
                severity="critical",
                command_metric=latest,
            ))

        analysis.anomalies = anomalies
        analysis.has_anomalies = bool(anomalies)
        for anomaly in anomalies:
            self._emit(anomaly)
        return analysis

    def _threshold_anomalies(self, command_name: str, latest: CommandMetric, baseline: Baseline) -> List[AnomalyEvent]:
        found: List[AnomalyEvent] = []
        for metric, prefix, upper_type, lower_type, upper_dir, lower_dir in _THRESHOLD_RULES:
            current = float(getattr(latest, metric))
            average = float(getattr(baseline, metric))
            upper = average * getattr(self.settings, f"{prefix}_UPPER_MULTIPLIER")
            lower = average * getattr(self.settings, f"{prefix}_LOWER_MULTIPLIER")
            if current > upper:
                anomaly_type, threshold, direction = upper_type, upper, upper_dir
            elif current < lower:
                anomaly_type, threshold, direction = lower_type, lower, lower_dir
            else:
                continue
            found.append(AnomalyEvent(
                command_name=command_name,
                anomaly_type=anomaly_type,
                metric_name=metric,
                current_value=current,
                baseline_average=round(average, 4),
                threshold=round(threshold, 4),
                direction=direction,
                percentage_change=percentage_change(current, average),
                severity=classify_severity(current, average),
                command_metric=latest,
            ))
        return found

    # ------------------------------------------------------------------
    # Schedule checks
    # ------------------------------------------------------------------
    def check_missed_scheduled_executions(self) -> List[AnomalyEvent]:
        now = self._now()
        found: List[AnomalyEvent] = []
        threshold_hours = float(self.settings.MISSED_EXECUTION_THRESHOLD_HOURS)

        for command_name, expression in self.settings.SCHEDULED_COMMANDS.items():
            if self.settings.is_ignored_command(command_name):
                continue
            if self.db.latest_command_metric(command_name) is None:
                found.append(self._never_executed(command_name, "scheduled"))
                continue
            latest = self.db.latest_command_metric(command_name, sources=CONSOLE_SOURCES)
            last_run = parse_timestamp(latest.created_at) if latest else None
            if last_run is None:
                continue
            trigger = CronTrigger.from_crontab(expression, timezone=self.settings.SCHEDULE_TIMEZONE)
            expected = trigger.get_next_fire_time(None, last_run + timedelta(seconds=1))
            if expected is None:
                continue
            overdue = (now - expected).total_seconds() / 3600
            if overdue > threshold_hours:
                found.append(self._missed(command_name, latest, overdue, threshold_hours, f"expected at {expected.isoformat()}"))

        for command_name, interval_minutes in self.settings.API_COMMANDS.items():
            if self.settings.is_ignored_command(command_name):
                continue
            latest = self.db.latest_command_metric(command_name, sources=API_SOURCES)
            last_run = parse_timestamp(latest.created_at) if latest else None
            if last_run is None:
                found.append(self._never_executed(command_name, "api"))
                continue
            expected = last_run + timedelta(minutes=int(interval_minutes))
            if now > expected:
                overdue = (now - expected).total_seconds() / 3600
                found.append(self._missed(command_name, latest, overdue, int(interval_minutes) / 60, "api interval elapsed"))

        for anomaly in found:
            self._emit(anomaly)
        return found

    def _never_executed(self, command_name: str, kind: str) -> AnomalyEvent:
        logger.warning(f"{kind.capitalize()} command {command_name} has no recorded executions")
        return AnomalyEvent(
            command_name=command_name,
            anomaly_type=AnomalyType.NEVER_EXECUTED,
            metric_name="executions",
            current_value=0.0,
            baseline_average=0.0,
            direction="missing",
            severity="high",
        )

    def _missed(self, command_name: str, latest: CommandMetric, overdue: float, threshold: float, detail: str) -> AnomalyEvent:
        logger.warning(f"Command {command_name} missed its expected run by {overdue:.2f}h ({detail})")
        return AnomalyEvent(
            command_name=command_name,
            anomaly_type=AnomalyType.MISSED_EXECUTION,
            metric_name="hours_overdue",
            current_value=round(overdue, 2),
            baseline_average=0.0,
            threshold=round(threshold, 2),
            direction="late",
            severity="critical" if overdue >= 24 else "high",
            command_metric=latest,
            hours_overdue=round(overdue, 2),
        )

    # ------------------------------------------------------------------
    # All commands
    # ------------------------------------------------------------------
    def analyze_all_commands(self) -> AnalysisReport:
        report = AnalysisReport()
        with log_context(run_id=new_run_id(), component="performance_analysis") as log:
            names = [
                name for name in self.db.distinct_command_names(since_date=self._window_start())
                if not self.settings.is_ignored_command(name)
            ]
            log.info(f"Analyzing {len(names)} command(s)")
            for name in names:
                try:
                    report.results[name] = self.analyze_command(name)
                except MetricsStoreError as exc:
                    report.errors[name] = str(exc)
                    log.error(f"Analysis failed for {name}: {exc}")

            if self.settings.SCHEDULE_ANALYSIS_ENABLED:
                try:
                    report.schedule_anomalies = self.check_missed_scheduled_executions()
                except MetricsStoreError as exc:
                    report.errors["__schedule__"] = str(exc)
                    log.error(f"Missed-execution check failed: {exc}")

            report.summary = self.summarize(report)
            log.info(
                f"Analysis complete: {report.summary['total_anomalies']} anomalies across "
                f"{report.summary['commands_with_anomalies']} command(s)"
            )
        return report

    @staticmethod
    def summarize(report: AnalysisReport) -> Dict[str, Any]:
        anomalies = report.all_anomalies()
        analyzed = len(report.results)
        with_anomalies = sum(1 for r in report.results.values() if r.has_anomalies)
        by_category = {c: 0 for c in CATEGORIES}
        by_severity = {s: 0 for s in sorted(SEVERITY_ORDER, key=SEVERITY_ORDER.get, reverse=True)}
        by_type: Dict[str, int] = {}
        for anomaly in anomalies:
            by_category[anomaly.category] += 1
            by_severity[anomaly.severity] = by_severity.get(anomaly.severity, 0) + 1
            by_type[anomaly.anomaly_type.value] = by_type.get(anomaly.anomaly_type.value, 0) + 1
        return {
            "total_commands_analyzed": analyzed,
            "commands_with_anomalies": with_anomalies,
            "total_anomalies": len(anomalies),
            "anomaly_rate": round(with_anomalies / analyzed * 100, 2) if analyzed else 0.0,
            "by_category": by_category,
            "by_severity": by_severity,
            "by_type": by_type,
        }

    def _emit(self, anomaly: AnomalyEvent) -> None:
        logger.warning(
            f"Anomaly detected for {anomaly.command_name}: {anomaly.anomaly_type.value} "
            f"({anomaly.severity}, {anomaly.metric_name}={anomaly.current_value}, baseline {anomaly.baseline_average})"
        )
        increment_counter(
            "job_monitor_anomalies_total",
            1,
            {"anomaly_type": anomaly.anomaly_type.value, "severity": anomaly.severity},
        )
        self.event_bus.emit(anomaly)


def run_performance_analysis(command_name: Optional[str] = None) -> AnalysisReport:
    """Analyze one command (when given) or every command in the retention window."""
    analyzer = PerformanceAnalyzer()
    if command_name:
        report = AnalysisReport(results={command_name: analyzer.analyze_command(command_name)})
        report.summary = analyzer.summarize(report)
        return report
    return analyzer.analyze_all_commands()
