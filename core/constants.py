"""
Core Module - Constants.

============================================================
RESPONSIBILITY
============================================================
Engine-wide constants that are not tunable.

Tunable thresholds live in orchestrator.config, never here.

============================================================
"""

# ============================================================
# SYSTEM IDENTIFICATION
# ============================================================

SYSTEM_NAME = "module-orchestration-engine"
SYSTEM_VERSION = "1.0.0"

# ============================================================
# EVENT SOURCES
# ============================================================

REGISTRY_SOURCE = "Registry"
"""Source tag for events emitted by the registry itself."""

MESH_SOURCE = "ServiceMesh"
HEALTH_SOURCE = "HealthMonitor"
AUTOSCALER_SOURCE = "AutoScaler"
FEDERATION_SOURCE = "Federation"
EVENTBUS_SOURCE = "EventBus"

LOCAL_ORIGIN = "local"
"""Origin marker for events that did not arrive through federation."""

# ============================================================
# PERSISTENCE KEYS
# ============================================================

STATE_KEY_REGISTRY = "registry"
STATE_KEY_FEDERATION = "federation"
STATE_FORMAT_VERSION = 1
