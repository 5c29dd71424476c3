"""
Federation - Models.

============================================================
RESPONSIBILITY
============================================================
Defines data models for cross-cluster registry sync.

- Peer sync state (connected, degraded, unreachable)
- Federation peer with its last acknowledged sync vector
- SyncRecord: wire form of a module record or tombstone
- Results of delta application and full sync rounds

Only the descriptor and its logical clock travel between
clusters. Lifecycle state is derived locally on each side.

============================================================
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Tuple

from core.clock import to_iso8601
from orchestrator.models import ModuleDescriptor


# (logical clock, origin cluster). Compared as a tuple, the same
# ordering last-writer-wins uses.
VersionKey = Tuple[int, str]


# ============================================================
# VERSION VECTORS
# ============================================================

def vector_to_wire(vector: Mapping[str, VersionKey]) -> Dict[str, List[Any]]:
    """JSON form of a version vector: name -> [clock, origin]."""
    return {name: [key[0], key[1]] for name, key in sorted(vector.items())}


def vector_from_wire(payload: Mapping[str, Any]) -> Dict[str, VersionKey]:
    """
    Parse a version vector from its JSON form.

    Raises:
        TypeError, ValueError: If an entry is not a [clock, origin] pair
    """
    vector = {}
    for name, entry in payload.items():
        clock, origin = entry
        if not isinstance(origin, str):
            raise TypeError(f"origin for {name} must be a string")
        vector[str(name)] = (int(clock), origin)
    return vector


# ============================================================
# PEER STATE
# ============================================================

class PeerSyncState(Enum):
    """Reachability of a federation peer."""

    CONNECTED = "connected"
    """Last sync succeeded."""

    DEGRADED = "degraded"
    """Recent sync failures, still within the unreachable window."""

    UNREACHABLE = "unreachable"
    """Failing longer than the unreachable window. Excluded from federation discovery."""


@dataclass
class FederationPeer:
    """
    Peer cluster and the per-module versions it has acknowledged.

    Attributes:
        cluster_id: Peer cluster identifier
        last_sync_vector: Module name -> highest (clock, origin) the peer holds
        sync_state: Current reachability
    """

    cluster_id: str
    last_sync_vector: Dict[str, VersionKey] = field(default_factory=dict)
    sync_state: PeerSyncState = PeerSyncState.CONNECTED
    consecutive_failures: int = 0
    first_failure_at: Optional[datetime] = None
    last_success_at: Optional[datetime] = None
    last_error: Optional[str] = None
    endpoint: Optional[str] = None

    @property
    def is_active(self) -> bool:
        return self.sync_state != PeerSyncState.UNREACHABLE

    def acknowledge(self, vector: Mapping[str, VersionKey]) -> None:
        """Merge versions the peer is known to hold."""
        for name, key in vector.items():
            held = self.last_sync_vector.get(name)
            if held is None or key > held:
                self.last_sync_vector[name] = key

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to dictionary."""
        return {
            "cluster_id": self.cluster_id,
            "last_sync_vector": vector_to_wire(self.last_sync_vector),
            "sync_state": self.sync_state.value,
            "consecutive_failures": self.consecutive_failures,
            "first_failure_at": to_iso8601(self.first_failure_at) if self.first_failure_at else None,
            "last_success_at": to_iso8601(self.last_success_at) if self.last_success_at else None,
            "last_error": self.last_error,
            "endpoint": self.endpoint,
        }


# ============================================================
# WIRE RECORDS
# ============================================================

@dataclass(frozen=True)
class SyncRecord:
    """
    One module change as exchanged between clusters.

    ``descriptor`` is None for tombstones.
    """

    name: str
    version: str
    logical_clock: int
    origin_cluster: str
    descriptor: Optional[ModuleDescriptor] = None
    deleted: bool = False

    @property
    def order_key(self) -> VersionKey:
        """Last-writer-wins key: higher clock wins, cluster id breaks ties."""
        return (self.logical_clock, self.origin_cluster)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "version": self.version,
            "logical_clock": self.logical_clock,
            "origin_cluster": self.origin_cluster,
            "descriptor": self.descriptor.to_dict() if self.descriptor else None,
            "deleted": self.deleted,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "SyncRecord":
        descriptor = data.get("descriptor")
        return cls(
            name=data["name"],
            version=data["version"],
            logical_clock=int(data["logical_clock"]),
            origin_cluster=data["origin_cluster"],
            descriptor=ModuleDescriptor.from_dict(descriptor) if descriptor else None,
            deleted=bool(data.get("deleted", False)),
        )


class ApplyStatus(Enum):
    """Outcome of applying one remote record."""

    APPLIED = "applied"
    """Remote record won and local state changed."""

    STALE = "stale"
    """Local state already equal or newer."""

    REJECTED = "rejected"
    """Record would break a local invariant (cycle, vocabulary)."""


@dataclass
class DeltaResult:
    """Aggregate result of applying a batch of remote records."""

    applied: List[str] = field(default_factory=list)
    stale: List[str] = field(default_factory=list)
    rejected: Dict[str, str] = field(default_factory=dict)

    def record(self, name: str, status: ApplyStatus, reason: str = "") -> None:
        if status == ApplyStatus.APPLIED:
            self.applied.append(name)
        elif status == ApplyStatus.STALE:
            self.stale.append(name)
        else:
            self.rejected[name] = reason

    def to_dict(self) -> Dict[str, Any]:
        return {
            "applied": self.applied,
            "stale": self.stale,
            "rejected": self.rejected,
        }


@dataclass
class SyncResult:
    """Result of one sync round with a peer."""

    peer_id: str
    success: bool
    pushed: int = 0
    applied: int = 0
    rejected: int = 0
    attempts: int = 0
    error: Optional[str] = None
    state: PeerSyncState = PeerSyncState.CONNECTED

    def to_dict(self) -> Dict[str, Any]:
        return {
            "peer_id": self.peer_id,
            "success": self.success,
            "pushed": self.pushed,
            "applied": self.applied,
            "rejected": self.rejected,
            "attempts": self.attempts,
            "error": self.error,
            "state": self.state.value,
        }


def records_to_wire(records: List[SyncRecord]) -> List[Dict[str, Any]]:
    return [r.to_dict() for r in records]


def records_from_wire(payload: List[Mapping[str, Any]]) -> List[SyncRecord]:
    return [SyncRecord.from_dict(r) for r in payload]


__all__ = [
    "VersionKey",
    "vector_to_wire",
    "vector_from_wire",
    "PeerSyncState",
    "FederationPeer",
    "SyncRecord",
    "ApplyStatus",
    "DeltaResult",
    "SyncResult",
    "records_to_wire",
    "records_from_wire",
]
