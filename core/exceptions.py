"""
Core Module - Exceptions.

============================================================
RESPONSIBILITY
============================================================
Defines the error taxonomy of the orchestration engine.

- Structural errors (conflict, cycle, not found) are raised to
  the caller and never swallowed
- Transient errors (federation timeouts, overflow) carry a
  TRANSIENT classification and are handled locally
- Every error carries severity and context for logging

============================================================
EXCEPTION HIERARCHY
============================================================
OrchestrationError (base)
├── ConfigurationError
├── RegistryError
│   ├── InvalidDescriptorError
│   ├── RegistrationConflict
│   ├── CyclicDependency
│   ├── ModuleNotFound
│   └── InvalidStateTransition
├── EventError
│   ├── UnknownEventType
│   └── SubscriberOverflow
├── FederationError
│   ├── FederationTimeout
│   └── PeerUnreachable
├── ScalingActionFailure
└── StateStoreError

============================================================
"""

from enum import Enum
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, Optional


# ============================================================
# SEVERITY LEVELS
# ============================================================

class Severity(Enum):
    """Exception severity levels for alerting."""

    LOW = "low"
    """Minor issue, informational."""

    MEDIUM = "medium"
    """Moderate issue, requires attention."""

    HIGH = "high"
    """Serious issue, caller must act."""

    CRITICAL = "critical"
    """Critical issue, engine cannot continue."""


# ============================================================
# ERROR CLASSIFICATION
# ============================================================

class ErrorClassification(Enum):
    """Classification of error recoverability."""

    RECOVERABLE = "recoverable"
    """Caller can fix the input and retry."""

    TRANSIENT = "transient"
    """Temporary error, retry may succeed."""

    NON_RECOVERABLE = "non_recoverable"
    """Permanent error, requires intervention."""


# ============================================================
# BASE EXCEPTION
# ============================================================

class OrchestrationError(Exception):
    """
    Base exception for all engine errors.

    All exceptions carry:
    - severity: for alerting
    - context: for debugging
    - classification: for retry decisions
    - timestamp: when the error occurred
    """

    default_severity: Severity = Severity.MEDIUM
    default_classification: ErrorClassification = ErrorClassification.RECOVERABLE

    def __init__(
        self,
        message: str,
        severity: Optional[Severity] = None,
        context: Optional[Dict[str, Any]] = None,
        classification: Optional[ErrorClassification] = None,
        cause: Optional[Exception] = None,
    ):
        super().__init__(message)

        self.message = message
        self.severity = severity or self.default_severity
        self.context = context or {}
        self.classification = classification or self.default_classification
        self.cause = cause
        self.timestamp = datetime.now(timezone.utc)

        if cause:
            self.context["cause_type"] = type(cause).__name__
            self.context["cause_message"] = str(cause)

    @property
    def is_transient(self) -> bool:
        """Check if a retry may succeed."""
        return self.classification == ErrorClassification.TRANSIENT

    def to_dict(self) -> Dict[str, Any]:
        """Serialize exception for logging/storage."""
        return {
            "type": type(self).__name__,
            "message": self.message,
            "severity": self.severity.value,
            "classification": self.classification.value,
            "context": self.context,
            "timestamp": self.timestamp.isoformat(),
            "cause": str(self.cause) if self.cause else None,
        }

    def to_log_format(self) -> str:
        """Format exception for structured logging."""
        line = f"[{self.severity.value.upper()}] {type(self).__name__}: {self.message}"
        if self.context:
            ctx_str = ", ".join(f"{k}={v}" for k, v in self.context.items())
            line = f"{line} | {ctx_str}"
        return line


# ============================================================
# CONFIGURATION ERRORS
# ============================================================

class ConfigurationError(OrchestrationError):
    """Invalid configuration or manifest."""

    default_severity = Severity.HIGH
    default_classification = ErrorClassification.NON_RECOVERABLE

    def __init__(
        self,
        message: str,
        config_key: Optional[str] = None,
        **kwargs,
    ):
        context = kwargs.pop("context", {})
        if config_key:
            context["config_key"] = config_key
        super().__init__(message, context=context, **kwargs)


# ============================================================
# REGISTRY ERRORS
# ============================================================

class RegistryError(OrchestrationError):
    """Base class for registry errors. Always returned to the caller."""

    default_severity = Severity.MEDIUM
    default_classification = ErrorClassification.RECOVERABLE

    def __init__(
        self,
        message: str,
        module_name: Optional[str] = None,
        **kwargs,
    ):
        context = kwargs.pop("context", {})
        if module_name:
            context["module_name"] = module_name
        self.module_name = module_name
        super().__init__(message, context=context, **kwargs)


class InvalidDescriptorError(RegistryError):
    """Descriptor fails schema or vocabulary validation."""

    def __init__(
        self,
        message: str,
        module_name: Optional[str] = None,
        problems: Optional[Iterable[str]] = None,
        **kwargs,
    ):
        self.problems = list(problems or [])
        context = kwargs.pop("context", {})
        if self.problems:
            context["problems"] = self.problems
        super().__init__(message, module_name=module_name, context=context, **kwargs)


class RegistrationConflict(RegistryError):
    """Module name already registered and replace was not requested."""

    def __init__(
        self,
        module_name: str,
        existing_version: str,
        requested_version: str,
        **kwargs,
    ):
        self.existing_version = existing_version
        self.requested_version = requested_version
        super().__init__(
            f"Module already registered: {module_name} "
            f"(existing={existing_version}, requested={requested_version})",
            module_name=module_name,
            context={
                "existing_version": existing_version,
                "requested_version": requested_version,
            },
            **kwargs,
        )


class CyclicDependency(RegistryError):
    """Dependency graph contains a cycle; lists every module on it."""

    default_severity = Severity.HIGH

    def __init__(self, cycle_members: Iterable[str], **kwargs):
        self.cycle_members = frozenset(cycle_members)
        members = ", ".join(sorted(self.cycle_members))
        super().__init__(
            f"Circular dependency detected involving: {members}",
            context={"cycle_members": sorted(self.cycle_members)},
            **kwargs,
        )


class ModuleNotFound(RegistryError):
    """Operation on an unknown module name."""

    def __init__(self, module_name: str, **kwargs):
        super().__init__(
            f"Module not found: {module_name}",
            module_name=module_name,
            **kwargs,
        )


class InvalidStateTransition(RegistryError):
    """Module lifecycle transition not allowed."""

    default_severity = Severity.HIGH

    def __init__(
        self,
        module_name: str,
        from_state: str,
        to_state: str,
        **kwargs,
    ):
        self.from_state = from_state
        self.to_state = to_state
        super().__init__(
            f"Invalid state transition for {module_name}: {from_state} -> {to_state}",
            module_name=module_name,
            context={"from_state": from_state, "to_state": to_state},
            **kwargs,
        )


# ============================================================
# EVENT ERRORS
# ============================================================

class EventError(OrchestrationError):
    """Base class for event bus errors."""


class UnknownEventType(EventError):
    """Event tag outside the closed vocabulary, or payload mismatch."""

    def __init__(self, event_type: str, reason: Optional[str] = None, **kwargs):
        self.event_type = event_type
        message = f"Unknown event type: {event_type}"
        if reason:
            message = f"{message} ({reason})"
        super().__init__(message, context={"event_type": event_type}, **kwargs)


class SubscriberOverflow(EventError):
    """Subscriber queue full; event dropped for that subscriber only."""

    default_severity = Severity.LOW
    default_classification = ErrorClassification.TRANSIENT

    def __init__(self, subscriber: str, event_id: str, capacity: int, **kwargs):
        self.subscriber = subscriber
        self.event_id = event_id
        self.capacity = capacity
        super().__init__(
            f"Subscriber queue full: {subscriber} (capacity={capacity})",
            context={"subscriber": subscriber, "event_id": event_id, "capacity": capacity},
            **kwargs,
        )


# ============================================================
# FEDERATION ERRORS
# ============================================================

class FederationError(OrchestrationError):
    """Base class for federation sync errors."""

    default_classification = ErrorClassification.TRANSIENT

    def __init__(self, message: str, peer_id: Optional[str] = None, **kwargs):
        context = kwargs.pop("context", {})
        if peer_id:
            context["peer_id"] = peer_id
        self.peer_id = peer_id
        super().__init__(message, context=context, **kwargs)


class FederationTimeout(FederationError):
    """Peer RPC exceeded its deadline."""

    def __init__(self, peer_id: str, timeout_seconds: float, **kwargs):
        self.timeout_seconds = timeout_seconds
        super().__init__(
            f"Federation RPC to {peer_id} timed out after {timeout_seconds:.2f}s",
            peer_id=peer_id,
            context={"timeout_seconds": timeout_seconds},
            **kwargs,
        )


class PeerUnreachable(FederationError):
    """Peer could not be contacted."""

    def __init__(self, peer_id: str, reason: str = "", **kwargs):
        super().__init__(
            f"Peer unreachable: {peer_id}" + (f" ({reason})" if reason else ""),
            peer_id=peer_id,
            **kwargs,
        )


# ============================================================
# SCALING / STORAGE ERRORS
# ============================================================

class ScalingActionFailure(OrchestrationError):
    """External orchestrator failed to apply a scaling decision."""

    default_classification = ErrorClassification.NON_RECOVERABLE

    def __init__(self, module_name: str, reason: str, **kwargs):
        self.module_name = module_name
        self.reason = reason
        super().__init__(
            f"Scaling action failed for {module_name}: {reason}",
            context={"module_name": module_name, "reason": reason},
            **kwargs,
        )


class StateStoreError(OrchestrationError):
    """Persisted state could not be loaded or saved."""

    default_classification = ErrorClassification.TRANSIENT


# ============================================================
# EXCEPTION UTILITIES
# ============================================================

def classify_exception(exc: BaseException) -> ErrorClassification:
    """Classify an exception for retry decisions."""
    if isinstance(exc, OrchestrationError):
        return exc.classification

    if isinstance(exc, (ConnectionError, TimeoutError, OSError)):
        return ErrorClassification.TRANSIENT

    if isinstance(exc, (ValueError, TypeError, KeyError)):
        return ErrorClassification.RECOVERABLE

    return ErrorClassification.NON_RECOVERABLE


__all__ = [
    "Severity",
    "ErrorClassification",
    "OrchestrationError",
    "ConfigurationError",
    "RegistryError",
    "InvalidDescriptorError",
    "RegistrationConflict",
    "CyclicDependency",
    "ModuleNotFound",
    "InvalidStateTransition",
    "EventError",
    "UnknownEventType",
    "SubscriberOverflow",
    "FederationError",
    "FederationTimeout",
    "PeerUnreachable",
    "ScalingActionFailure",
    "StateStoreError",
    "classify_exception",
]
