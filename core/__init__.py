"""
Core Module Package.

This package contains the infrastructure pieces every other
package depends on.

Components:
- clock: Unified time abstraction
- exceptions: Error taxonomy
- task_group: Concurrent fan-out with per-task outcomes
- constants: Engine-wide constants
"""

from .clock import ClockProtocol, MockClock, SystemClock
from .constants import LOCAL_ORIGIN, REGISTRY_SOURCE
from .task_group import TaskGroupResult, TaskOutcome, run_all

__all__ = [
    "ClockProtocol",
    "MockClock",
    "SystemClock",
    "LOCAL_ORIGIN",
    "REGISTRY_SOURCE",
    "TaskGroupResult",
    "TaskOutcome",
    "run_all",
]
