"""
Orchestrator - Models.

============================================================
RESPONSIBILITY
============================================================
Defines data models for the module registry.

- Module descriptors (immutable identity and declarations)
- Module lifecycle state with allowed transitions
- Module records (descriptor + mutable state, health, metrics)
- Tombstones, discovery filters and registration results

============================================================
"""

import copy
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Deque, Dict, FrozenSet, Iterable, List, Mapping, Optional, Tuple

from core.clock import from_iso8601, to_iso8601
from core.constants import LOCAL_ORIGIN
from core.exceptions import InvalidDescriptorError


DEFAULT_METRIC_WINDOW = 60


# ============================================================
# CRITICALITY
# ============================================================

class Criticality(Enum):
    """Declared importance of a module to the system as a whole."""

    LOW = "low"
    """Optional module. Failure barely affects the system."""

    NORMAL = "normal"
    """Default importance."""

    HIGH = "high"
    """Important module. Failure degrades the system."""

    CRITICAL = "critical"
    """Essential module. Failure alone makes the system unhealthy."""

    @property
    def weight(self) -> float:
        """Weight used by the system health fold."""
        return _CRITICALITY_WEIGHTS[self]


_CRITICALITY_WEIGHTS = {
    Criticality.LOW: 0.5,
    Criticality.NORMAL: 1.0,
    Criticality.HIGH: 1.5,
    Criticality.CRITICAL: 2.0,
}


# ============================================================
# MODULE STATE
# ============================================================

class ModuleState(Enum):
    """
    Module lifecycle state.

    Monotonic, except READY and DEGRADED which may alternate.
    """

    UNINITIALIZED = "uninitialized"
    """Registered, dependencies and health not yet evaluated."""

    READY = "ready"
    """All dependencies present and health checks passing."""

    DEGRADED = "degraded"
    """Missing dependency or failing health checks."""

    TERMINATED = "terminated"
    """Unregistered. Terminal."""

    def can_transition_to(self, target: "ModuleState") -> bool:
        """Check if a transition to ``target`` is allowed."""
        return target in VALID_TRANSITIONS[self]


VALID_TRANSITIONS: Dict[ModuleState, FrozenSet[ModuleState]] = {
    ModuleState.UNINITIALIZED: frozenset(
        {ModuleState.READY, ModuleState.DEGRADED, ModuleState.TERMINATED}
    ),
    ModuleState.READY: frozenset({ModuleState.DEGRADED, ModuleState.TERMINATED}),
    ModuleState.DEGRADED: frozenset({ModuleState.READY, ModuleState.TERMINATED}),
    ModuleState.TERMINATED: frozenset(),
}


class HealthStatus(Enum):
    """Health of a module or of the whole system."""

    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"
    UNKNOWN = "unknown"

    @property
    def severity(self) -> int:
        """Severity used by the system fold (unknown counts as healthy)."""
        if self == HealthStatus.UNHEALTHY:
            return 2
        if self == HealthStatus.DEGRADED:
            return 1
        return 0

    @property
    def is_failing(self) -> bool:
        """Check if this status fails a module's own health check."""
        return self in (HealthStatus.DEGRADED, HealthStatus.UNHEALTHY)


# ============================================================
# MODULE DESCRIPTOR
# ============================================================

def _dedupe(names: Iterable[str]) -> Tuple[str, ...]:
    seen = []
    for name in names:
        if name not in seen:
            seen.append(name)
    return tuple(seen)


@dataclass(frozen=True)
class ModuleDescriptor:
    """
    Immutable declaration of a module's identity and contracts.

    Attributes:
        name: Unique name within a registry
        version: Version string
        dependencies: Ordered set of module names this module depends on
        capabilities: Capability tags the module provides
        interfaces: Interface contracts the module claims to satisfy
        requires: Interface contracts the module consumes
        criticality: Importance for the system health fold
        metadata: Free-form labels
    """

    name: str
    version: str
    dependencies: Tuple[str, ...] = ()
    capabilities: FrozenSet[str] = frozenset()
    interfaces: FrozenSet[str] = frozenset()
    requires: FrozenSet[str] = frozenset()
    criticality: Criticality = Criticality.NORMAL
    metadata: Mapping[str, str] = field(default_factory=dict, compare=False)

    def __post_init__(self):
        problems = []
        if not isinstance(self.name, str) or not self.name.strip():
            problems.append("name must be a non-empty string")
        if not isinstance(self.version, str) or not self.version.strip():
            problems.append("version must be a non-empty string")
        if problems:
            raise InvalidDescriptorError(
                "Invalid module descriptor",
                module_name=self.name if isinstance(self.name, str) else None,
                problems=problems,
            )

        object.__setattr__(self, "dependencies", _dedupe(self.dependencies))
        object.__setattr__(self, "capabilities", frozenset(self.capabilities))
        object.__setattr__(self, "interfaces", frozenset(self.interfaces))
        object.__setattr__(self, "requires", frozenset(self.requires))
        object.__setattr__(self, "metadata", dict(self.metadata))
        if isinstance(self.criticality, str):
            object.__setattr__(self, "criticality", Criticality(self.criticality))

        if self.name in self.dependencies:
            raise InvalidDescriptorError(
                f"Module cannot depend on itself: {self.name}",
                module_name=self.name,
                problems=["self dependency"],
            )

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to dictionary."""
        return {
            "name": self.name,
            "version": self.version,
            "dependencies": list(self.dependencies),
            "capabilities": sorted(self.capabilities),
            "interfaces": sorted(self.interfaces),
            "requires": sorted(self.requires),
            "criticality": self.criticality.value,
            "metadata": dict(self.metadata),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "ModuleDescriptor":
        """
        Build a descriptor from a plain mapping.

        Raises:
            InvalidDescriptorError: On missing or malformed fields
        """
        if not isinstance(data, Mapping):
            raise InvalidDescriptorError(
                "Module descriptor must be a mapping",
                problems=[f"got {type(data).__name__}"],
            )
        name = data.get("name")
        problems = []
        for key in ("dependencies", "capabilities", "interfaces", "requires"):
            value = data.get(key, [])
            if isinstance(value, str) or not isinstance(value, (list, tuple, set, frozenset)):
                problems.append(f"{key} must be a list of strings")
        criticality = data.get("criticality", Criticality.NORMAL.value)
        try:
            criticality = Criticality(criticality)
        except ValueError:
            problems.append(f"unknown criticality: {criticality}")
        if problems:
            raise InvalidDescriptorError(
                "Invalid module descriptor",
                module_name=name if isinstance(name, str) else None,
                problems=problems,
            )

        return cls(
            name=name,
            version=str(data.get("version", "")),
            dependencies=tuple(data.get("dependencies", ())),
            capabilities=frozenset(data.get("capabilities", ())),
            interfaces=frozenset(data.get("interfaces", ())),
            requires=frozenset(data.get("requires", ())),
            criticality=criticality,
            metadata=dict(data.get("metadata") or {}),
        )


# ============================================================
# HEALTH AND METRICS
# ============================================================

@dataclass
class HealthSnapshot:
    """Last health fold for one module."""

    status: HealthStatus
    timestamp: datetime
    healthy_instances: int = 0
    total_instances: int = 0
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to dictionary."""
        return {
            "status": self.status.value,
            "timestamp": to_iso8601(self.timestamp),
            "healthy_instances": self.healthy_instances,
            "total_instances": self.total_instances,
            "error": self.error,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "HealthSnapshot":
        return cls(
            status=HealthStatus(data["status"]),
            timestamp=from_iso8601(data["timestamp"]),
            healthy_instances=data.get("healthy_instances", 0),
            total_instances=data.get("total_instances", 0),
            error=data.get("error"),
        )


@dataclass(frozen=True)
class MetricSample:
    """
    One numeric metric sample.

    ``seq`` increases monotonically per record so consumers can tell
    samples apart even when timestamps collide.
    """

    name: str
    value: float
    timestamp: datetime
    seq: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "value": self.value,
            "timestamp": to_iso8601(self.timestamp),
            "seq": self.seq,
        }


# ============================================================
# MODULE RECORD
# ============================================================

@dataclass
class ModuleRecord:
    """
    Registered module: descriptor plus mutable runtime state.

    Mutated only by the registry (under its write lock). Anything handed
    to callers is a ``snapshot()``.
    """

    record_id: str
    descriptor: ModuleDescriptor
    state: ModuleState = ModuleState.UNINITIALIZED
    last_health: Optional[HealthSnapshot] = None
    metrics: Dict[str, Deque[MetricSample]] = field(default_factory=dict)
    metric_window: int = DEFAULT_METRIC_WINDOW
    dependencies_satisfied: bool = True
    pending_dependencies: Tuple[str, ...] = ()
    logical_clock: int = 0
    origin_cluster: str = LOCAL_ORIGIN
    registered_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    sample_seq: int = 0

    @property
    def name(self) -> str:
        return self.descriptor.name

    @property
    def version(self) -> str:
        return self.descriptor.version

    @property
    def health_passing(self) -> bool:
        """Check if the module's own health checks pass (unknown passes)."""
        return self.last_health is None or not self.last_health.status.is_failing

    def add_sample(self, name: str, value: float, timestamp: datetime) -> MetricSample:
        """Append a sample to the bounded window for ``name``."""
        self.sample_seq += 1
        sample = MetricSample(name=name, value=float(value), timestamp=timestamp, seq=self.sample_seq)
        window = self.metrics.get(name)
        if window is None:
            window = deque(maxlen=self.metric_window)
            self.metrics[name] = window
        window.append(sample)
        return sample

    def samples(self, name: str) -> List[MetricSample]:
        """Samples of one metric, oldest first."""
        return list(self.metrics.get(name, ()))

    def snapshot(self) -> "ModuleRecord":
        """Independent deep copy safe to hand to readers."""
        return copy.deepcopy(self)

    def to_dict(self, include_metrics: bool = False) -> Dict[str, Any]:
        """Serialize to dictionary."""
        data = {
            "record_id": self.record_id,
            "descriptor": self.descriptor.to_dict(),
            "state": self.state.value,
            "last_health": self.last_health.to_dict() if self.last_health else None,
            "dependencies_satisfied": self.dependencies_satisfied,
            "pending_dependencies": list(self.pending_dependencies),
            "logical_clock": self.logical_clock,
            "origin_cluster": self.origin_cluster,
            "registered_at": to_iso8601(self.registered_at) if self.registered_at else None,
            "updated_at": to_iso8601(self.updated_at) if self.updated_at else None,
        }
        if include_metrics:
            data["metrics"] = {
                name: [s.to_dict() for s in window]
                for name, window in sorted(self.metrics.items())
            }
        return data

    @classmethod
    def from_dict(cls, data: Mapping[str, Any], metric_window: int = DEFAULT_METRIC_WINDOW) -> "ModuleRecord":
        """Rebuild a record from ``to_dict()`` output (metrics are not restored)."""
        return cls(
            record_id=data["record_id"],
            descriptor=ModuleDescriptor.from_dict(data["descriptor"]),
            state=ModuleState(data.get("state", ModuleState.UNINITIALIZED.value)),
            last_health=(
                HealthSnapshot.from_dict(data["last_health"]) if data.get("last_health") else None
            ),
            metric_window=metric_window,
            dependencies_satisfied=data.get("dependencies_satisfied", True),
            pending_dependencies=tuple(data.get("pending_dependencies", ())),
            logical_clock=data.get("logical_clock", 0),
            origin_cluster=data.get("origin_cluster", LOCAL_ORIGIN),
            registered_at=from_iso8601(data["registered_at"]) if data.get("registered_at") else None,
            updated_at=from_iso8601(data["updated_at"]) if data.get("updated_at") else None,
        )


@dataclass(frozen=True)
class Tombstone:
    """Marker for an unregistered module, kept for federation convergence."""

    name: str
    version: str
    logical_clock: int
    origin_cluster: str
    deleted_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "version": self.version,
            "logical_clock": self.logical_clock,
            "origin_cluster": self.origin_cluster,
            "deleted_at": to_iso8601(self.deleted_at),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Tombstone":
        return cls(
            name=data["name"],
            version=data["version"],
            logical_clock=data["logical_clock"],
            origin_cluster=data["origin_cluster"],
            deleted_at=from_iso8601(data["deleted_at"]),
        )


# ============================================================
# QUERIES AND RESULTS
# ============================================================

@dataclass(frozen=True)
class DiscoveryFilter:
    """Discovery predicates. Every field that is set must match."""

    capability: Optional[str] = None
    interface: Optional[str] = None
    state: Optional[ModuleState] = None

    def matches(self, record: ModuleRecord) -> bool:
        """Check if a record satisfies every set predicate."""
        if self.capability is not None and self.capability not in record.descriptor.capabilities:
            return False
        if self.interface is not None and self.interface not in record.descriptor.interfaces:
            return False
        if self.state is not None and record.state != self.state:
            return False
        return True


@dataclass(frozen=True)
class RegistrationResult:
    """Successful registration."""

    record_id: str
    name: str
    version: str
    state: ModuleState
    replaced: bool = False
    logical_clock: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ok": True,
            "record_id": self.record_id,
            "name": self.name,
            "version": self.version,
            "state": self.state.value,
            "replaced": self.replaced,
            "logical_clock": self.logical_clock,
        }


@dataclass
class SystemHealth:
    """System-wide health fold produced by the health monitor."""

    status: HealthStatus
    score: float
    module_statuses: Dict[str, HealthStatus] = field(default_factory=dict)
    timestamp: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "score": round(self.score, 2),
            "module_statuses": {
                name: status.value for name, status in sorted(self.module_statuses.items())
            },
            "timestamp": to_iso8601(self.timestamp) if self.timestamp else None,
        }


@dataclass
class RegistryHealth:
    """Aggregate health view served by the registry."""

    status: HealthStatus
    total_modules: int = 0
    ready: int = 0
    degraded: int = 0
    uninitialized: int = 0
    score: Optional[float] = None
    module_statuses: Dict[str, str] = field(default_factory=dict)
    last_health_check: Optional[datetime] = None

    @property
    def is_healthy(self) -> bool:
        return self.status == HealthStatus.HEALTHY

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to dictionary."""
        return {
            "status": self.status.value,
            "total_modules": self.total_modules,
            "ready": self.ready,
            "degraded": self.degraded,
            "uninitialized": self.uninitialized,
            "score": round(self.score, 2) if self.score is not None else None,
            "module_statuses": dict(sorted(self.module_statuses.items())),
            "last_health_check": (
                to_iso8601(self.last_health_check) if self.last_health_check else None
            ),
        }


__all__ = [
    "DEFAULT_METRIC_WINDOW",
    "Criticality",
    "ModuleState",
    "VALID_TRANSITIONS",
    "HealthStatus",
    "ModuleDescriptor",
    "HealthSnapshot",
    "MetricSample",
    "ModuleRecord",
    "Tombstone",
    "DiscoveryFilter",
    "RegistrationResult",
    "SystemHealth",
    "RegistryHealth",
]
