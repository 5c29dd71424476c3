"""
Tests for the metrics collector.
"""

import pytest
from prometheus_client import generate_latest

from monitoring.metrics import MetricDefinition, MetricsCollector, MetricType


class TestMetricsCollector:
    """Tests for counters, gauges and observations."""

    def test_counter_per_label_set(self, clock):
        metrics = MetricsCollector(clock=clock)
        metrics.increment("scaling_decisions_total", {"module": "api", "direction": "up"})
        metrics.increment("scaling_decisions_total", {"direction": "up", "module": "api"})
        metrics.increment("scaling_decisions_total", {"module": "db", "direction": "down"})

        assert metrics.value("scaling_decisions_total", {"module": "api", "direction": "up"}) == 2
        assert metrics.total("scaling_decisions_total") == 3
        assert metrics.get_metric("scaling_decisions_total", {"module": "api", "direction": "up"}).timestamp == clock.now()

    def test_gauge_overwrites(self, clock):
        metrics = MetricsCollector(clock=clock)
        metrics.set_gauge("registry_modules", 4)
        metrics.set_gauge("registry_modules", 2)
        assert metrics.value("registry_modules") == 2.0

    def test_observe_accumulates(self, clock):
        metrics = MetricsCollector(clock=clock)
        metrics.observe("health_probe_duration_seconds", 0.5, {"module": "db"})
        metrics.observe("health_probe_duration_seconds", 1.5, {"module": "db"})

        series = metrics.get_metric("health_probe_duration_seconds", {"module": "db"})
        assert (series.count, series.total, series.value) == (2, 2.0, 2.0)

    def test_unknown_series_reads_zero(self, clock):
        metrics = MetricsCollector(clock=clock)
        assert metrics.value("never_recorded") == 0.0
        assert metrics.get_metric("registry_modules") is None

    def test_undeclared_metric_registered_on_use(self, clock):
        metrics = MetricsCollector(clock=clock)
        metrics.increment("custom_total")
        assert metrics.snapshot()["custom_total"]["type"] == "counter"

    def test_prometheus_text(self, clock):
        metrics = MetricsCollector(clock=clock)
        metrics.register_metric(MetricDefinition("jobs", MetricType.GAUGE, "Queued jobs"))
        metrics.set_gauge("jobs", 3, {"queue": "default"})
        metrics.observe("health_probe_duration_seconds", 0.25, {"module": "db"})

        text = generate_latest(metrics.registry).decode()
        assert "# HELP jobs Queued jobs" in text
        assert "# TYPE jobs gauge" in text
        assert 'jobs{queue="default"} 3.0' in text
        assert "# TYPE health_probe_duration_seconds summary" in text
        assert 'health_probe_duration_seconds_count{module="db"} 1.0' in text
        assert "registry_modules" not in text

    def test_reset_keeps_definitions(self, clock):
        metrics = MetricsCollector(clock=clock)
        metrics.increment("registry_registrations_total")
        metrics.reset()

        assert metrics.value("registry_registrations_total") == 0.0
        assert metrics.snapshot() == {}
        metrics.increment("registry_registrations_total")
        assert metrics.snapshot()["registry_registrations_total"]["description"] == "Successful registrations"

    def test_collectors_do_not_share_series(self, clock):
        first = MetricsCollector(clock=clock)
        second = MetricsCollector(clock=clock)
        first.increment("registry_registrations_total")
        second.increment("registry_registrations_total", value=5)

        assert first.value("registry_registrations_total") == 1.0
        assert second.value("registry_registrations_total") == 5.0
        assert b"registry_registrations_total 1.0" in generate_latest(first.registry)

    def test_label_names_fixed_by_first_use(self, clock):
        metrics = MetricsCollector(clock=clock)
        metrics.increment("eventbus_dropped_total", {"subscriber": "audit"})
        with pytest.raises(ValueError):
            metrics.increment("eventbus_dropped_total", {"queue": "audit"})

    def test_counter_without_total_suffix(self, clock):
        metrics = MetricsCollector(clock=clock)
        metrics.register_metric(MetricDefinition("restarts", MetricType.COUNTER, "Restarts"))
        metrics.increment("restarts", {"module": "db"})

        assert metrics.value("restarts", {"module": "db"}) == 1.0
        assert 'restarts_total{module="db"} 1.0' in generate_latest(metrics.registry).decode()
