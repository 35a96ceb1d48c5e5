"""Anomaly vocabulary shared by the analyzer, notification listener and API."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from job_monitor.app.core.DB_Management.Metrics_DB import CommandMetric


class AnomalyType(str, Enum):
    PERFORMANCE_DEGRADATION = "performance_degradation"
    PERFORMANCE_IMPROVEMENT = "performance_improvement"
    UNUSUAL_WORKLOAD_HIGH = "unusual_workload_high"
    UNUSUAL_WORKLOAD_LOW = "unusual_workload_low"
    HIGH_FAILURE_RATE = "high_failure_rate"
    LOW_FAILURE_RATE = "low_failure_rate"
    COMPLETE_FAILURE = "complete_failure"
    MISSED_EXECUTION = "missed_execution"
    NEVER_EXECUTED = "never_executed"

    @property
    def category(self) -> str:
        return _CATEGORIES[self]


_CATEGORIES = {
    AnomalyType.PERFORMANCE_DEGRADATION: "performance",
    AnomalyType.PERFORMANCE_IMPROVEMENT: "performance",
    AnomalyType.UNUSUAL_WORKLOAD_HIGH: "workload",
    AnomalyType.UNUSUAL_WORKLOAD_LOW: "workload",
    AnomalyType.HIGH_FAILURE_RATE: "failures",
    AnomalyType.LOW_FAILURE_RATE: "failures",
    AnomalyType.COMPLETE_FAILURE: "failures",
    AnomalyType.MISSED_EXECUTION: "schedule",
    AnomalyType.NEVER_EXECUTED: "schedule",
}

CATEGORIES = ("performance", "workload", "failures", "schedule")

# Ordered from least to most severe; "warning" marks a zero baseline.
SEVERITY_ORDER = {"low": 0, "warning": 1, "medium": 2, "high": 3, "critical": 4}


def classify_severity(current: float, baseline: float) -> str:
    """Severity from relative deviation |current - baseline| / baseline."""
    if baseline == 0:
        return "warning"
    deviation = abs(current - baseline) / baseline
    if deviation >= 3.0:
        return "critical"
    if deviation >= 2.0:
        return "high"
    if deviation >= 1.5:
        return "medium"
    return "low"


def percentage_change(current: float, baseline: float) -> float:
    if baseline == 0:
        return 0.0
    return round((current - baseline) / baseline * 100, 2)


def severity_at_least(severity: str, minimum: str) -> bool:
    return SEVERITY_ORDER.get(severity, 0) >= SEVERITY_ORDER.get(minimum, 0)


@dataclass
class AnomalyEvent:
    command_name: str
    anomaly_type: AnomalyType
    metric_name: str
    current_value: float
    baseline_average: float
    severity: str
    threshold: Optional[float] = None
    direction: Optional[str] = None
    percentage_change: float = 0.0
    command_metric: Optional[CommandMetric] = None
    hours_overdue: Optional[float] = None
    detected_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def category(self) -> str:
        return self.anomaly_type.category

    def to_dict(self) -> Dict[str, Any]:
        return {
            "command_name": self.command_name,
            "type": self.anomaly_type.value,
            "category": self.category,
            "metric": self.metric_name,
            "current_value": self.current_value,
            "baseline_average": self.baseline_average,
            "threshold": self.threshold,
            "direction": self.direction,
            "percentage_change": self.percentage_change,
            "severity": self.severity,
            "hours_overdue": self.hours_overdue,
            "process_id": self.command_metric.process_id if self.command_metric else None,
            "detected_at": self.detected_at.isoformat(),
        }
