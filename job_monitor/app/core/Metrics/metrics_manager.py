"""
In-process metrics registry for the job monitor.

Counters and histograms keep running totals per label set for Prometheus
export, plus a bounded deque of recent labelled values for summary stats.
"""

import threading
import time
from typing import Dict, Any, Optional, List, Tuple
from dataclasses import dataclass, field
from enum import Enum
from collections import defaultdict, deque
import statistics

from loguru import logger


class MetricType(Enum):
    """Types of metrics supported."""
    COUNTER = "counter"
    HISTOGRAM = "histogram"


@dataclass
class MetricDefinition:
    """Definition of a metric."""
    name: str
    type: MetricType
    description: str
    unit: str = ""
    labels: List[str] = field(default_factory=list)
    buckets: Optional[List[float]] = None  # For histograms


@dataclass
class MetricValue:
    """A metric value with metadata."""
    value: float
    timestamp: float = field(default_factory=time.time)
    labels: Dict[str, str] = field(default_factory=dict)


class MetricsRegistry:
    """Registry for job monitor metrics."""

    def __init__(self):
        self.metrics: Dict[str, MetricDefinition] = {}
        self.values: Dict[str, deque] = defaultdict(lambda: deque(maxlen=1000))
        self._totals: Dict[str, Dict[Tuple[Tuple[str, str], ...], Dict[str, Any]]] = defaultdict(dict)
        self._lock = threading.Lock()
        self._register_standard_metrics()

    def _register_standard_metrics(self):
        """Register the metrics emitted by recorder, sync, analysis and Redis factory."""
        self.register_metric(
            MetricDefinition(
                name="job_monitor_recorder_events_total",
                type=MetricType.COUNTER,
                description="Lifecycle notifications recorded",
                labels=["event", "outcome"],
            )
        )
        self.register_metric(
            MetricDefinition(
                name="job_monitor_recorder_errors_total",
                type=MetricType.COUNTER,
                description="Lifecycle notifications dropped because of store errors",
                labels=["event", "error"],
            )
        )
        self.register_metric(
            MetricDefinition(
                name="job_monitor_sync_runs_total",
                type=MetricType.COUNTER,
                description="Sync runs by outcome",
                labels=["outcome", "dry_run"],
            )
        )
        self.register_metric(
            MetricDefinition(
                name="job_monitor_sync_duration_seconds",
                type=MetricType.HISTOGRAM,
                description="Sync run duration in seconds",
                unit="s",
                buckets=[0.1, 0.5, 1, 5, 10, 30, 60, 120, 300],
            )
        )
        self.register_metric(
            MetricDefinition(
                name="job_monitor_synced_records_total",
                type=MetricType.COUNTER,
                description="Records written to the durable store",
                labels=["kind"],
            )
        )
        self.register_metric(
            MetricDefinition(
                name="job_monitor_anomalies_total",
                type=MetricType.COUNTER,
                description="Anomalies detected by the performance analyzer",
                labels=["anomaly_type", "severity"],
            )
        )
        self.register_metric(
            MetricDefinition(
                name="job_monitor_notifications_total",
                type=MetricType.COUNTER,
                description="Anomaly notifications delivered per channel",
                labels=["channel", "outcome"],
            )
        )
        self.register_metric(
            MetricDefinition(
                name="infra_redis_connection_attempts_total",
                type=MetricType.COUNTER,
                description="Redis client creation attempts",
                labels=["mode", "context", "outcome"],
            )
        )
        self.register_metric(
            MetricDefinition(
                name="infra_redis_connection_duration_seconds",
                type=MetricType.HISTOGRAM,
                description="Time spent creating Redis clients",
                unit="s",
                labels=["mode", "context", "outcome"],
                buckets=[0.001, 0.005, 0.01, 0.05, 0.1, 0.5, 1, 5],
            )
        )
        self.register_metric(
            MetricDefinition(
                name="infra_redis_fallback_total",
                type=MetricType.COUNTER,
                description="Redis clients replaced by the in-memory substitute",
                labels=["mode", "context", "reason"],
            )
        )
        self.register_metric(
            MetricDefinition(
                name="infra_redis_connection_errors_total",
                type=MetricType.COUNTER,
                description="Redis client creation failures",
                labels=["mode", "context", "error"],
            )
        )

    def register_metric(self, definition: MetricDefinition) -> bool:
        """
        Register a new metric definition.

        Returns:
            True if registered successfully
        """
        if definition.name in self.metrics:
            logger.warning(f"Metric {definition.name} already registered")
            return False
        self.metrics[definition.name] = definition
        logger.debug(f"Registered metric: {definition.name}")
        return True

    def record(self, metric_name: str, value: float, labels: Optional[Dict[str, str]] = None):
        """Record a metric value."""
        if metric_name not in self.metrics:
            logger.warning(f"Metric {metric_name} not registered")
            return
        clean_labels = dict(labels or {})
        buckets = self.metrics[metric_name].buckets or []
        label_key = tuple(sorted(clean_labels.items()))
        with self._lock:
            self.values[metric_name].append(MetricValue(value=value, labels=clean_labels))
            total = self._totals[metric_name].setdefault(
                label_key, {"count": 0, "sum": 0, "buckets": [0] * len(buckets)}
            )
            total["count"] += 1
            total["sum"] += value
            for i, bound in enumerate(buckets):
                if value <= bound:
                    total["buckets"][i] += 1

    def increment(self, metric_name: str, value: float = 1, labels: Optional[Dict[str, str]] = None):
        """Increment a counter metric."""
        self.record(metric_name, value, labels)

    def observe(self, metric_name: str, value: float, labels: Optional[Dict[str, str]] = None):
        """Observe a value for histogram metric."""
        self.record(metric_name, value, labels)

    def get_metric_stats(self, metric_name: str, labels: Optional[Dict[str, str]] = None) -> Dict[str, Any]:
        """
        Get statistics for a metric.

        Args:
            metric_name: Name of the metric
            labels: Optional label filter (exact match on provided keys)
        """
        if metric_name not in self.values:
            return {}

        with self._lock:
            values = list(self.values[metric_name])
        if labels:
            values = [val for val in values if all(
                val.labels.get(key) == expected for key, expected in labels.items()
            )]
        if not values:
            return {}

        numeric_values = [v.value for v in values]
        return {
            "count": len(numeric_values),
            "sum": sum(numeric_values),
            "mean": statistics.mean(numeric_values),
            "min": min(numeric_values),
            "max": max(numeric_values),
            "latest": numeric_values[-1],
            "latest_timestamp": values[-1].timestamp,
        }

    def export_prometheus_format(self) -> str:
        """Export metrics in Prometheus text format."""
        lines = []

        with self._lock:
            snapshot = {
                name: {key: dict(total, buckets=list(total["buckets"])) for key, total in groups.items()}
                for name, groups in self._totals.items()
            }

        for metric_name, definition in self.metrics.items():
            groups = snapshot.get(metric_name)
            if not groups:
                continue

            lines.append(f"# HELP {metric_name} {definition.description}")
            lines.append(f"# TYPE {metric_name} {definition.type.value}")

            for label_key, total in groups.items():
                label_str = ",".join(f'{k}="{v}"' for k, v in label_key)
                suffix = f"{{{label_str}}}" if label_str else ""
                if definition.type == MetricType.COUNTER:
                    lines.append(f"{metric_name}{suffix} {total['sum']}")
                elif definition.type == MetricType.HISTOGRAM:
                    prefix = f"{label_str}," if label_str else ""
                    for bucket, count in zip(definition.buckets or [], total["buckets"]):
                        lines.append(f"{metric_name}_bucket{{{prefix}le=\"{bucket}\"}} {count}")
                    lines.append(f"{metric_name}_bucket{{{prefix}le=\"+Inf\"}} {total['count']}")
                    lines.append(f"{metric_name}_sum{suffix} {total['sum']}")
                    lines.append(f"{metric_name}_count{suffix} {total['count']}")

        return "\n".join(lines) + "\n"


# Global metrics registry instance
_metrics_registry: Optional[MetricsRegistry] = None


def get_metrics_registry() -> MetricsRegistry:
    """Get or create the global metrics registry."""
    global _metrics_registry
    if _metrics_registry is None:
        _metrics_registry = MetricsRegistry()
    return _metrics_registry


def increment_counter(metric_name: str, value: float = 1, labels: Optional[Dict[str, str]] = None):
    """Increment a counter metric, never raising into the caller."""
    try:
        get_metrics_registry().increment(metric_name, value, labels)
    except Exception as exc:
        logger.debug(f"Failed to record metric {metric_name}: {exc}")
