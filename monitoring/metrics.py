"""
Monitoring - Metrics.

============================================================
RESPONSIBILITY
============================================================
Collects and exposes engine metrics.

- Tracks operational counters (registrations, deliveries,
  drops, sync attempts, scaling decisions)
- Backs every series with prometheus_client in a
  CollectorRegistry owned by the collector, so two engines in
  one process never share series
- Provides metric queries and a JSON snapshot

============================================================
METRIC TYPES
============================================================
- Counter: Cumulative values (events published, retries)
- Gauge: Current values (registered modules, queue depth)
- Summary: Count and sum of observations (probe latency)

============================================================
"""

import threading
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Mapping, Optional, Tuple

from prometheus_client import CollectorRegistry, Counter, Gauge, Summary

from core.clock import ClockProtocol, SystemClock


LabelKey = Tuple[Tuple[str, str], ...]


# ============================================================
# METRIC DEFINITIONS
# ============================================================

class MetricType(Enum):
    """Supported metric types."""

    COUNTER = "counter"
    GAUGE = "gauge"
    SUMMARY = "summary"


_FACTORIES = {
    MetricType.COUNTER: Counter,
    MetricType.GAUGE: Gauge,
    MetricType.SUMMARY: Summary,
}


@dataclass(frozen=True)
class MetricDefinition:
    """Declared metric."""

    name: str
    type: MetricType
    description: str = ""


@dataclass
class MetricValue:
    """
    Current value of one labelled series.

    For summaries ``value`` is the sum of observations.
    """

    name: str
    value: float
    labels: Dict[str, str] = field(default_factory=dict)
    timestamp: Optional[datetime] = None
    count: int = 0
    total: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        data = {"value": self.value, "labels": self.labels}
        if self.count:
            data["count"] = self.count
            data["sum"] = self.total
        return data


STANDARD_METRICS = (
    MetricDefinition("registry_registrations_total", MetricType.COUNTER, "Successful registrations"),
    MetricDefinition("registry_rejections_total", MetricType.COUNTER, "Rejected registrations by reason"),
    MetricDefinition("registry_modules", MetricType.GAUGE, "Live registered modules"),
    MetricDefinition("registry_state_changes_total", MetricType.COUNTER, "Module state transitions"),
    MetricDefinition("registry_tombstones_purged_total", MetricType.COUNTER, "Tombstones dropped after retention"),
    MetricDefinition("eventbus_published_total", MetricType.COUNTER, "Events published"),
    MetricDefinition("eventbus_delivered_total", MetricType.COUNTER, "Events delivered to subscribers"),
    MetricDefinition("eventbus_dropped_total", MetricType.COUNTER, "Events dropped on full queues"),
    MetricDefinition("eventbus_handler_failures_total", MetricType.COUNTER, "Handler invocations that raised"),
    MetricDefinition("health_probe_duration_seconds", MetricType.SUMMARY, "Health probe latency"),
    MetricDefinition("health_probe_failures_total", MetricType.COUNTER, "Failed or timed-out probes"),
    MetricDefinition("scaling_decisions_total", MetricType.COUNTER, "Scaling decisions by direction"),
    MetricDefinition("scaling_action_failures_total", MetricType.COUNTER, "Failed scaling actions"),
    MetricDefinition("federation_sync_attempts_total", MetricType.COUNTER, "Federation sync attempts"),
    MetricDefinition("federation_sync_failures_total", MetricType.COUNTER, "Failed federation sync attempts"),
    MetricDefinition("federation_records_applied_total", MetricType.COUNTER, "Remote records applied"),
)


# ============================================================
# COLLECTOR
# ============================================================

class MetricsCollector:
    """
    Metrics collector over a private prometheus_client registry.

    Thread safe. Unknown metric names are registered on first use as
    the type implied by the call. Label names are fixed by the first
    call for a metric; later calls with other label names raise
    ValueError.
    """

    def __init__(self, clock: Optional[ClockProtocol] = None):
        self._clock = clock or SystemClock()
        self._lock = threading.Lock()
        self._definitions: Dict[str, MetricDefinition] = {}
        self._registry = CollectorRegistry()
        self._metrics: Dict[str, Any] = {}
        self._updated: Dict[str, Dict[LabelKey, datetime]] = {}
        for definition in STANDARD_METRICS:
            self.register_metric(definition)

    @property
    def registry(self) -> CollectorRegistry:
        """Registry to expose, e.g. with prometheus_client.generate_latest()."""
        return self._registry

    @staticmethod
    def _key(labels: Optional[Mapping[str, str]]) -> LabelKey:
        return tuple(sorted((str(k), str(v)) for k, v in (labels or {}).items()))

    def register_metric(self, definition: MetricDefinition) -> None:
        """Declare a metric. Series appear on first use."""
        with self._lock:
            self._definitions[definition.name] = definition

    def _series(self, name: str, metric_type: MetricType, key: LabelKey):
        definition = self._definitions.get(name)
        if definition is None:
            definition = MetricDefinition(name, metric_type)
            self._definitions[name] = definition

        metric = self._metrics.get(name)
        if metric is None:
            metric = _FACTORIES[definition.type](
                name,
                definition.description or name.replace("_", " "),
                labelnames=[k for k, _ in key],
                registry=self._registry,
            )
            self._metrics[name] = metric
        return metric.labels(**dict(key)) if key else metric

    def _touch(self, name: str, key: LabelKey) -> None:
        self._updated.setdefault(name, {})[key] = self._clock.now()

    def increment(self, name: str, labels: Optional[Mapping[str, str]] = None, value: float = 1.0) -> None:
        """Increment a counter."""
        key = self._key(labels)
        with self._lock:
            self._series(name, MetricType.COUNTER, key).inc(value)
            self._touch(name, key)

    def set_gauge(self, name: str, value: float, labels: Optional[Mapping[str, str]] = None) -> None:
        """Set a gauge."""
        key = self._key(labels)
        with self._lock:
            self._series(name, MetricType.GAUGE, key).set(float(value))
            self._touch(name, key)

    def observe(self, name: str, value: float, labels: Optional[Mapping[str, str]] = None) -> None:
        """Record an observation."""
        key = self._key(labels)
        with self._lock:
            self._series(name, MetricType.SUMMARY, key).observe(float(value))
            self._touch(name, key)

    # --------------------------------------------------------
    # Queries
    # --------------------------------------------------------

    def _read(self, name: str, key: LabelKey) -> MetricValue:
        definition = self._definitions[name]
        labels = dict(key)
        timestamp = self._updated[name][key]

        if definition.type == MetricType.SUMMARY:
            count = self._registry.get_sample_value(f"{name}_count", labels) or 0.0
            total = self._registry.get_sample_value(f"{name}_sum", labels) or 0.0
            return MetricValue(name, total, labels, timestamp, count=int(count), total=total)

        sample = name
        if definition.type == MetricType.COUNTER and not name.endswith("_total"):
            sample = f"{name}_total"
        value = self._registry.get_sample_value(sample, labels) or 0.0
        return MetricValue(name, value, labels, timestamp)

    def get_metric(self, name: str, labels: Optional[Mapping[str, str]] = None) -> Optional[MetricValue]:
        """Get one labelled series, None when never recorded."""
        key = self._key(labels)
        with self._lock:
            if key not in self._updated.get(name, {}):
                return None
            return self._read(name, key)

    def value(self, name: str, labels: Optional[Mapping[str, str]] = None) -> float:
        """Value of one series, 0.0 when never recorded."""
        metric = self.get_metric(name, labels)
        return metric.value if metric else 0.0

    def total(self, name: str) -> float:
        """Sum across all label sets of a metric."""
        with self._lock:
            return sum(self._read(name, key).value for key in self._updated.get(name, {}))

    def snapshot(self) -> Dict[str, Any]:
        """All recorded metrics as a plain dictionary."""
        with self._lock:
            return {
                name: {
                    "type": self._definitions[name].type.value,
                    "description": self._definitions[name].description,
                    "series": [self._read(name, key).to_dict() for key in sorted(series)],
                }
                for name, series in sorted(self._updated.items())
            }

    def reset(self) -> None:
        """Drop all recorded series, keeping definitions."""
        with self._lock:
            self._registry = CollectorRegistry()
            self._metrics.clear()
            self._updated.clear()


__all__ = [
    "MetricType",
    "MetricDefinition",
    "MetricValue",
    "STANDARD_METRICS",
    "MetricsCollector",
]
