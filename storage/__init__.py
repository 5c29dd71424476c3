"""
Storage Package.

Persistence of engine state between runs.

Modules:
- state_store: JSON file and SQL state stores
"""

from .state_store import (
    JsonFileStateStore,
    SqlStateStore,
    StateSection,
    StateStore,
    create_state_store,
)

__all__ = [
    "JsonFileStateStore",
    "SqlStateStore",
    "StateSection",
    "StateStore",
    "create_state_store",
]
