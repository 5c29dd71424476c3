"""
Service Mesh Package.

Derived connectivity graph between registered modules, used
for health propagation and routing decisions.

Components:
- models: edges and immutable mesh snapshots
- builder: ServiceMeshBuilder (rebuild + registry integration)
"""

from .models import DEPENDENCY_VIA, EdgeKind, MeshEdge, MeshSnapshot
from .builder import REBUILD_TRIGGERS, ServiceMeshBuilder

__all__ = [
    "DEPENDENCY_VIA",
    "EdgeKind",
    "MeshEdge",
    "MeshSnapshot",
    "REBUILD_TRIGGERS",
    "ServiceMeshBuilder",
]
