"""
Service Mesh - Models.

============================================================
RESPONSIBILITY
============================================================
Connectivity graph derived from the registry.

- MeshEdge: "source may call target via X"
- Pending edges for dependencies or interfaces nobody provides
- MeshSnapshot: immutable graph with query helpers

============================================================
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Set, Tuple

from core.clock import to_iso8601


DEPENDENCY_VIA = "dependency"


class EdgeKind(Enum):
    """Why an edge exists."""

    DEPENDENCY = "dependency"
    """Source declares target in its dependencies."""

    INTERFACE = "interface"
    """Source requires an interface that target provides."""


@dataclass(frozen=True)
class MeshEdge:
    """
    Directed edge source -> target.

    ``target`` is None for a pending interface edge with no provider.
    """

    source: str
    target: Optional[str]
    via: str
    kind: EdgeKind
    pending: bool = False

    @property
    def describe_pending(self) -> str:
        """Name of what is missing, for pending edges."""
        if self.kind == EdgeKind.DEPENDENCY:
            return self.target or ""
        return f"interface:{self.via}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "from": self.source,
            "to": self.target,
            "via": self.via,
            "kind": self.kind.value,
            "pending": self.pending,
        }


@dataclass(frozen=True)
class MeshSnapshot:
    """Immutable mesh produced by one rebuild."""

    edges: Tuple[MeshEdge, ...] = ()
    modules: Tuple[str, ...] = ()
    built_at: Optional[datetime] = None

    def edges_from(self, name: str) -> List[MeshEdge]:
        return [e for e in self.edges if e.source == name]

    def edges_to(self, name: str) -> List[MeshEdge]:
        return [e for e in self.edges if e.target == name]

    def pending_for(self, name: str) -> List[MeshEdge]:
        return [e for e in self.edges if e.source == name and e.pending]

    @property
    def pending_edges(self) -> List[MeshEdge]:
        return [e for e in self.edges if e.pending]

    @property
    def unsatisfied_modules(self) -> List[str]:
        """Modules with at least one pending edge, sorted."""
        return sorted({e.source for e in self.edges if e.pending})

    def callers_of(self, name: str) -> Set[str]:
        """Modules allowed to call ``name``."""
        return {e.source for e in self.edges if e.target == name and not e.pending}

    def may_call(self, source: str, target: str) -> bool:
        """Check if ``source`` has a satisfied edge to ``target``."""
        return any(
            e.source == source and e.target == target and not e.pending
            for e in self.edges
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "modules": list(self.modules),
            "edges": [e.to_dict() for e in self.edges],
            "unsatisfied_modules": self.unsatisfied_modules,
            "built_at": to_iso8601(self.built_at) if self.built_at else None,
        }


__all__ = [
    "DEPENDENCY_VIA",
    "EdgeKind",
    "MeshEdge",
    "MeshSnapshot",
]
