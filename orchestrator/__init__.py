"""
Orchestrator Package - Module Registry and Engine.

============================================================
PACKAGE OVERVIEW
============================================================
Authoritative store of module descriptors, their lifecycle
state and their dependency structure, plus the engine that
wires every other subsystem around it.

============================================================
CORE PRINCIPLES
============================================================
1. Modules are registered explicitly (caller list or manifest)
2. The dependency graph is acyclic at every committed state
3. Every record change is published as an event
4. Readers only ever see snapshots
5. No global registry: the entry point owns the instance

============================================================
ARCHITECTURE
============================================================

    +-----------------------------------------------------+
    |                 OrchestrationEngine                 |
    |-----------------------------------------------------|
    |  Vocabulary      |  Closed capability/interface tags |
    |  Resolver        |  Topological order, cycles        |
    |  ModuleRegistry  |  Records, tombstones, state       |
    |  Manifest        |  YAML descriptor loading          |
    |  CLI             |  Command-line interface           |
    +-----------------------------------------------------+

The heavier modules (registry, core, manifest, cli) import the
event bus, federation and monitoring packages and are imported
by their full path::

    from orchestrator.registry import ModuleRegistry
    from orchestrator.core import OrchestrationEngine

============================================================
QUICK START
============================================================
Command line usage::

    # Validate a manifest and print the initialization order
    python app.py --manifest modules.yaml --validate-only --show-order

    # Run the engine with the health endpoint on port 8080
    python app.py --config engine.yaml --manifest modules.yaml --health-port 8080

============================================================
"""

from .models import (
    Criticality,
    DiscoveryFilter,
    HealthSnapshot,
    HealthStatus,
    MetricSample,
    ModuleDescriptor,
    ModuleRecord,
    ModuleState,
    RegistrationResult,
    RegistryHealth,
    SystemHealth,
    Tombstone,
    VALID_TRANSITIONS,
)
from .resolver import dependents_of, find_cycle_members, resolve, shutdown_order
from .vocabulary import ComplianceReport, InterfaceContract, Vocabulary


__all__ = [
    # Models
    "Criticality",
    "DiscoveryFilter",
    "HealthSnapshot",
    "HealthStatus",
    "MetricSample",
    "ModuleDescriptor",
    "ModuleRecord",
    "ModuleState",
    "RegistrationResult",
    "RegistryHealth",
    "SystemHealth",
    "Tombstone",
    "VALID_TRANSITIONS",
    # Resolver
    "resolve",
    "shutdown_order",
    "find_cycle_members",
    "dependents_of",
    # Vocabulary
    "ComplianceReport",
    "InterfaceContract",
    "Vocabulary",
]
