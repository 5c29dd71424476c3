"""
Orchestrator - Capability Vocabulary.

============================================================
RESPONSIBILITY
============================================================
Closed, versioned vocabulary of capability and interface tags.

- Rejects descriptors that use tags outside the vocabulary
- Checks that a module claiming an interface actually complies
  with the interface contract
- Contracts may supply their own compliance check

============================================================
COMPLIANCE
============================================================
Default check: fraction of the contract's required
capabilities present on the descriptor. A claim passes when
the score reaches the compliance threshold (default 0.70).

============================================================
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, FrozenSet, Iterable, List, Mapping, Optional

from core.exceptions import ConfigurationError, InvalidDescriptorError

from .models import ModuleDescriptor


logger = logging.getLogger(__name__)

DEFAULT_COMPLIANCE_THRESHOLD = 0.70

ComplianceCheck = Callable[[ModuleDescriptor, "InterfaceContract"], float]


# ============================================================
# CONTRACTS
# ============================================================

@dataclass(frozen=True)
class InterfaceContract:
    """
    Named interface contract.

    Attributes:
        name: Interface tag
        required_capabilities: Capabilities a provider must hold
        check: Optional custom check returning a score in [0, 1]
    """

    name: str
    required_capabilities: FrozenSet[str] = frozenset()
    check: Optional[ComplianceCheck] = field(default=None, compare=False)
    description: str = ""

    def coverage(self, capabilities: Iterable[str]) -> float:
        """Fraction of required capabilities present."""
        if not self.required_capabilities:
            return 1.0
        held = set(capabilities)
        return len(self.required_capabilities & held) / len(self.required_capabilities)

    def is_satisfied_by(self, descriptor: ModuleDescriptor) -> bool:
        """Check if a descriptor claims this interface and holds every required capability."""
        return (
            self.name in descriptor.interfaces
            and self.required_capabilities <= descriptor.capabilities
        )


@dataclass
class ComplianceReport:
    """Result of one interface compliance check."""

    interface: str
    score: float
    passed: bool
    missing: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "interface": self.interface,
            "score": round(self.score, 4),
            "passed": self.passed,
            "missing": self.missing,
        }


# ============================================================
# VOCABULARY
# ============================================================

class Vocabulary:
    """
    Closed vocabulary of capability and interface tags.

    Every descriptor is checked against it at registration time.
    """

    def __init__(
        self,
        capabilities: Iterable[str],
        interfaces: Iterable[InterfaceContract] = (),
        version: int = 1,
        compliance_threshold: float = DEFAULT_COMPLIANCE_THRESHOLD,
    ):
        self.version = version
        self.compliance_threshold = compliance_threshold
        self._capabilities = frozenset(capabilities)
        self._interfaces: Dict[str, InterfaceContract] = {}
        for contract in interfaces:
            unknown = contract.required_capabilities - self._capabilities
            if unknown:
                raise ConfigurationError(
                    f"Interface {contract.name} requires unknown capabilities: {sorted(unknown)}",
                    config_key="vocabulary.interfaces",
                )
            self._interfaces[contract.name] = contract

    @property
    def capabilities(self) -> FrozenSet[str]:
        return self._capabilities

    @property
    def interfaces(self) -> Dict[str, InterfaceContract]:
        return dict(self._interfaces)

    def contract(self, name: str) -> Optional[InterfaceContract]:
        """Get an interface contract by name."""
        return self._interfaces.get(name)

    # --------------------------------------------------------
    # Validation
    # --------------------------------------------------------

    def problems(self, descriptor: ModuleDescriptor) -> List[str]:
        """List every vocabulary problem of a descriptor (empty when valid)."""
        problems = []
        for tag in sorted(descriptor.capabilities - self._capabilities):
            problems.append(f"unknown capability: {tag}")
        for tag in sorted(descriptor.interfaces - self._interfaces.keys()):
            problems.append(f"unknown interface: {tag}")
        for tag in sorted(descriptor.requires - self._interfaces.keys()):
            problems.append(f"unknown required interface: {tag}")

        for interface in sorted(descriptor.interfaces & self._interfaces.keys()):
            report = self.check_compliance(descriptor, interface)
            if not report.passed:
                problems.append(
                    f"interface {interface} not satisfied "
                    f"(score={report.score:.2f}, missing={report.missing})"
                )
        return problems

    def validate(self, descriptor: ModuleDescriptor) -> None:
        """
        Validate a descriptor against the vocabulary.

        Raises:
            InvalidDescriptorError: If any tag is unknown or an interface
                claim fails its compliance check
        """
        problems = self.problems(descriptor)
        if problems:
            logger.debug(f"Vocabulary rejected {descriptor.name}: {problems}")
            raise InvalidDescriptorError(
                f"Descriptor {descriptor.name} fails vocabulary validation",
                module_name=descriptor.name,
                problems=problems,
            )

    def check_compliance(self, descriptor: ModuleDescriptor, interface: str) -> ComplianceReport:
        """Run the compliance check of one interface against a descriptor."""
        contract = self._interfaces.get(interface)
        if contract is None:
            return ComplianceReport(interface=interface, score=0.0, passed=False)

        missing = sorted(contract.required_capabilities - descriptor.capabilities)
        if contract.check is not None:
            score = float(contract.check(descriptor, contract))
        else:
            score = contract.coverage(descriptor.capabilities)
        score = max(0.0, min(1.0, score))
        return ComplianceReport(
            interface=interface,
            score=score,
            passed=score >= self.compliance_threshold,
            missing=missing,
        )

    # --------------------------------------------------------
    # Construction
    # --------------------------------------------------------

    @classmethod
    def default(cls, compliance_threshold: float = DEFAULT_COMPLIANCE_THRESHOLD) -> "Vocabulary":
        """Standard vocabulary shipped with the engine."""
        return cls(
            capabilities=DEFAULT_CAPABILITIES,
            interfaces=[
                InterfaceContract("http-api", frozenset({"http"}), description="Serves HTTP requests"),
                InterfaceContract("grpc-api", frozenset({"grpc"}), description="Serves gRPC requests"),
                InterfaceContract("kv-store", frozenset({"storage"}), description="Key-value storage"),
                InterfaceContract("cache", frozenset({"cache", "storage"}), description="Cache with backing store"),
                InterfaceContract("event-consumer", frozenset({"queue"}), description="Consumes queued events"),
                InterfaceContract("event-producer", frozenset({"queue", "notify"}), description="Publishes events"),
                InterfaceContract("auth-provider", frozenset({"auth"}), description="Authenticates callers"),
                InterfaceContract("metrics-sink", frozenset({"metrics"}), description="Accepts metrics"),
                InterfaceContract("search-index", frozenset({"search", "storage"}), description="Full-text search"),
                InterfaceContract("worker", frozenset({"compute", "queue"}), description="Background worker"),
            ],
            compliance_threshold=compliance_threshold,
        )

    @classmethod
    def from_dict(
        cls,
        data: Mapping[str, Any],
        compliance_threshold: Optional[float] = None,
    ) -> "Vocabulary":
        """
        Load a vocabulary from configuration.

        Expected shape::

            version: 1
            compliance_threshold: 0.7
            capabilities: [http, storage]
            interfaces:
              http-api: {required_capabilities: [http]}

        Raises:
            ConfigurationError: On malformed input
        """
        if not isinstance(data, Mapping):
            raise ConfigurationError("Vocabulary must be a mapping", config_key="vocabulary")

        capabilities = data.get("capabilities")
        if not isinstance(capabilities, list) or not all(isinstance(c, str) for c in capabilities):
            raise ConfigurationError(
                "vocabulary.capabilities must be a list of strings",
                config_key="vocabulary.capabilities",
            )

        raw_interfaces = data.get("interfaces") or {}
        if not isinstance(raw_interfaces, Mapping):
            raise ConfigurationError(
                "vocabulary.interfaces must be a mapping",
                config_key="vocabulary.interfaces",
            )

        contracts = []
        for name, entry in raw_interfaces.items():
            entry = entry or {}
            required = entry.get("required_capabilities", [])
            if not isinstance(required, list):
                raise ConfigurationError(
                    f"required_capabilities of {name} must be a list",
                    config_key=f"vocabulary.interfaces.{name}",
                )
            contracts.append(
                InterfaceContract(
                    name=str(name),
                    required_capabilities=frozenset(required),
                    description=entry.get("description", ""),
                )
            )

        threshold = compliance_threshold
        if threshold is None:
            threshold = float(data.get("compliance_threshold", DEFAULT_COMPLIANCE_THRESHOLD))

        return cls(
            capabilities=capabilities,
            interfaces=contracts,
            version=int(data.get("version", 1)),
            compliance_threshold=threshold,
        )

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to dictionary."""
        return {
            "version": self.version,
            "compliance_threshold": self.compliance_threshold,
            "capabilities": sorted(self._capabilities),
            "interfaces": {
                name: {
                    "required_capabilities": sorted(c.required_capabilities),
                    "description": c.description,
                }
                for name, c in sorted(self._interfaces.items())
            },
        }


DEFAULT_CAPABILITIES = frozenset({
    "http",
    "grpc",
    "storage",
    "cache",
    "queue",
    "auth",
    "metrics",
    "compute",
    "search",
    "notify",
    "logging",
    "scheduling",
})


__all__ = [
    "DEFAULT_COMPLIANCE_THRESHOLD",
    "DEFAULT_CAPABILITIES",
    "InterfaceContract",
    "ComplianceReport",
    "Vocabulary",
]
