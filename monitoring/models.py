"""
Monitoring - Models.

============================================================
RESPONSIBILITY
============================================================
Data models for health sampling and scaling decisions.

- Instance-level health as reported by a module's probe
- Per-module fold (majority rule)
- Scaling policy and scaling decisions

============================================================
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Tuple
from uuid import uuid4

from core.clock import to_iso8601
from orchestrator.models import HealthStatus, SystemHealth


# ============================================================
# PROBES
# ============================================================

@dataclass(frozen=True)
class InstanceHealth:
    """Health of one running instance of a module."""

    instance_id: str
    healthy: bool
    detail: str = ""


@dataclass
class ProbeResult:
    """
    What a module's health probe reports.

    Attributes:
        instances: One entry per running instance
        metrics: Numeric samples (e.g. {"cpu": 72.5})
    """

    instances: List[InstanceHealth] = field(default_factory=list)
    metrics: Dict[str, float] = field(default_factory=dict)
    error: Optional[str] = None

    @property
    def total(self) -> int:
        return len(self.instances)

    @property
    def healthy_count(self) -> int:
        return sum(1 for i in self.instances if i.healthy)

    def fold(self) -> HealthStatus:
        """
        Fold instance health into a module status.

        HEALTHY on a strict majority of healthy instances, UNHEALTHY when
        none are healthy, DEGRADED otherwise. No instances -> UNKNOWN.
        """
        total = self.total
        if total == 0:
            return HealthStatus.UNKNOWN
        healthy = self.healthy_count
        if healthy * 2 > total:
            return HealthStatus.HEALTHY
        if healthy == 0:
            return HealthStatus.UNHEALTHY
        return HealthStatus.DEGRADED

    @classmethod
    def uniform(cls, healthy: int, unhealthy: int = 0, **metrics: float) -> "ProbeResult":
        """Convenience builder with numbered instances."""
        instances = [InstanceHealth(f"i-{n}", True) for n in range(healthy)]
        instances += [InstanceHealth(f"i-{healthy + n}", False) for n in range(unhealthy)]
        return cls(instances=instances, metrics=dict(metrics))

    @classmethod
    def failed(cls, error: str) -> "ProbeResult":
        """Result standing in for a probe that raised or timed out."""
        return cls(instances=[InstanceHealth("probe", False, error)], error=error)


# ============================================================
# SCALING
# ============================================================

class ScalingDirection(Enum):
    """Direction of a scaling decision."""

    UP = "up"
    DOWN = "down"


@dataclass
class ScalingPolicy:
    """
    Per-module scaling policy.

    A decision needs ``cooldown_samples`` consecutive samples beyond the
    threshold; after a decision no further decision is made for
    ``cooldown_seconds`` or until ``cooldown_samples`` fresh samples
    have arrived, whichever comes later.
    """

    min_instances: int = 1
    max_instances: int = 10
    scale_up_threshold: float = 80.0
    scale_down_threshold: float = 20.0
    cooldown_samples: int = 3
    cooldown_seconds: float = 60.0
    metric: str = "cpu"
    step: int = 1

    def validate(self) -> List[str]:
        """Validate the policy. Returns a list of errors."""
        errors = []
        if self.min_instances < 0:
            errors.append("min_instances must be >= 0")
        if self.max_instances < max(self.min_instances, 1):
            errors.append("max_instances must be >= min_instances and >= 1")
        if self.scale_down_threshold >= self.scale_up_threshold:
            errors.append("scale_down_threshold must be < scale_up_threshold")
        if self.cooldown_samples < 1:
            errors.append("cooldown_samples must be >= 1")
        if self.cooldown_seconds < 0:
            errors.append("cooldown_seconds must be >= 0")
        if self.step < 1:
            errors.append("step must be >= 1")
        if not self.metric:
            errors.append("metric must not be empty")
        return errors

    @classmethod
    def from_dict(cls, data: Mapping[str, Any], defaults: Optional["ScalingPolicy"] = None) -> "ScalingPolicy":
        """Policy from a mapping, unset keys taken from ``defaults``."""
        base = defaults or cls()
        values = {
            name: data.get(name, getattr(base, name))
            for name in cls.__dataclass_fields__
        }
        unknown = sorted(set(data) - set(values))
        if unknown:
            raise ValueError(f"Unknown scaling policy keys: {unknown}")
        return cls(**values)

    def to_dict(self) -> Dict[str, Any]:
        return {name: getattr(self, name) for name in self.__dataclass_fields__}


@dataclass(frozen=True)
class ScalingDecision:
    """One scaling decision handed to the external orchestrator."""

    module: str
    direction: ScalingDirection
    delta: int
    current_instances: int
    target_instances: int
    samples: Tuple[float, ...] = ()
    decided_at: Optional[datetime] = None
    decision_id: str = field(default_factory=lambda: uuid4().hex)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "decision_id": self.decision_id,
            "module": self.module,
            "direction": self.direction.value,
            "delta": self.delta,
            "current_instances": self.current_instances,
            "target_instances": self.target_instances,
            "samples": list(self.samples),
            "decided_at": to_iso8601(self.decided_at) if self.decided_at else None,
        }


__all__ = [
    "HealthStatus",
    "SystemHealth",
    "InstanceHealth",
    "ProbeResult",
    "ScalingDirection",
    "ScalingPolicy",
    "ScalingDecision",
]
