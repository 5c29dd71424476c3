"""
Federation Package.

Cross-cluster replication of registry records.

Components:
- models: peers, wire records, sync results
- sync: FederationSync (import federation.sync directly)
- transport: in-memory and aiohttp transports (import federation.transport directly)
"""

from .models import (
    ApplyStatus,
    DeltaResult,
    FederationPeer,
    PeerSyncState,
    SyncRecord,
    SyncResult,
    records_from_wire,
    records_to_wire,
)

__all__ = [
    "ApplyStatus",
    "DeltaResult",
    "FederationPeer",
    "PeerSyncState",
    "SyncRecord",
    "SyncResult",
    "records_from_wire",
    "records_to_wire",
]
