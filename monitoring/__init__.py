"""
Monitoring Package.

============================================================
PURPOSE
============================================================
Health aggregation, scaling decisions and the read-only
observability surface of the engine.

PRINCIPLES:
1. HealthMonitor only observes and folds; it never provisions
2. AutoScaler only decides; provisioning is delegated
3. The HTTP endpoint is READ-ONLY

============================================================
MODULES
============================================================
- models: health, probe and scaling data models
- metrics: in-memory metrics collector
- health_monitor: periodic health sampling and system fold
- autoscaler: hysteresis control loop
- api: read-only aiohttp endpoint

health_monitor, autoscaler and api depend on the registry
and are imported by their full path.

============================================================
"""

from .metrics import MetricDefinition, MetricsCollector, MetricType, MetricValue
from .models import (
    HealthStatus,
    InstanceHealth,
    ProbeResult,
    ScalingDecision,
    ScalingDirection,
    ScalingPolicy,
    SystemHealth,
)


__all__ = [
    "MetricDefinition",
    "MetricsCollector",
    "MetricType",
    "MetricValue",
    "HealthStatus",
    "InstanceHealth",
    "ProbeResult",
    "ScalingDecision",
    "ScalingDirection",
    "ScalingPolicy",
    "SystemHealth",
]
