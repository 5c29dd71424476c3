"""
Core Module - Task Group.

============================================================
RESPONSIBILITY
============================================================
Runs a set of named coroutines concurrently and collects a
per-task outcome (success or error) into one aggregate result.

- Every task gets its own timeout
- A failing or timed-out task never cancels its siblings
- Callers see which tasks failed and why, not an opaque list

============================================================
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional

from .exceptions import ErrorClassification, classify_exception


logger = logging.getLogger(__name__)

TaskFactory = Callable[[], Awaitable[Any]]


# ============================================================
# RESULTS
# ============================================================

@dataclass
class TaskOutcome:
    """Outcome of one task in the group."""

    name: str
    ok: bool
    value: Any = None
    error: Optional[BaseException] = None
    duration_seconds: float = 0.0

    @property
    def timed_out(self) -> bool:
        """Check if the task hit its timeout."""
        return isinstance(self.error, asyncio.TimeoutError)

    @property
    def error_type(self) -> Optional[str]:
        """Name of the error type, if any."""
        return type(self.error).__name__ if self.error else None

    @property
    def classification(self) -> Optional[ErrorClassification]:
        """Retry classification of the error, if any."""
        return classify_exception(self.error) if self.error else None


@dataclass
class TaskGroupResult:
    """Aggregate of all task outcomes."""

    outcomes: Dict[str, TaskOutcome] = field(default_factory=dict)

    @property
    def succeeded(self) -> List[str]:
        """Names of tasks that completed."""
        return sorted(n for n, o in self.outcomes.items() if o.ok)

    @property
    def failed(self) -> List[str]:
        """Names of tasks that raised or timed out."""
        return sorted(n for n, o in self.outcomes.items() if not o.ok)

    @property
    def all_ok(self) -> bool:
        """Check if every task completed."""
        return all(o.ok for o in self.outcomes.values())

    def values(self) -> Dict[str, Any]:
        """Values of succeeded tasks, keyed by name."""
        return {n: o.value for n, o in self.outcomes.items() if o.ok}

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to dictionary."""
        return {
            "succeeded": self.succeeded,
            "failed": {
                n: {"error_type": o.error_type, "error": str(o.error)}
                for n, o in self.outcomes.items()
                if not o.ok
            },
        }


# ============================================================
# EXECUTION
# ============================================================

async def _run_one(name: str, factory: TaskFactory, timeout: Optional[float]) -> TaskOutcome:
    started = time.monotonic()
    try:
        value = await asyncio.wait_for(factory(), timeout=timeout)
        return TaskOutcome(
            name=name,
            ok=True,
            value=value,
            duration_seconds=time.monotonic() - started,
        )
    except asyncio.CancelledError:
        raise
    except Exception as e:
        logger.debug(f"Task {name} failed: {type(e).__name__}: {e}")
        return TaskOutcome(
            name=name,
            ok=False,
            error=e,
            duration_seconds=time.monotonic() - started,
        )


async def run_all(
    tasks: Mapping[str, TaskFactory],
    timeout: Optional[float] = None,
) -> TaskGroupResult:
    """
    Run named task factories concurrently.

    Args:
        tasks: Mapping of task name to a zero-argument coroutine factory
        timeout: Per-task timeout in seconds (None = unbounded)

    Returns:
        TaskGroupResult with one outcome per task
    """
    if not tasks:
        return TaskGroupResult()

    names = list(tasks.keys())
    outcomes = await asyncio.gather(
        *(_run_one(name, tasks[name], timeout) for name in names)
    )
    return TaskGroupResult(outcomes={o.name: o for o in outcomes})


__all__ = [
    "TaskFactory",
    "TaskOutcome",
    "TaskGroupResult",
    "run_all",
]
