"""
Orchestrator - Configuration.

============================================================
CONFIGURABLE ENGINE PARAMETERS
============================================================

Every threshold the engine uses is configurable:
- Interface compliance threshold (default 0.70)
- Scale up / scale down thresholds (default 80 / 20)
- Cooldown samples (default 3) and cooldown seconds
- Subscriber queue capacity and event history size
- Federation retry, backoff and unreachable window

Configuration can be loaded from:
- Default values
- Environment variables (prefix ORCH_, .env supported)
- YAML config file

============================================================
"""

import logging
import os
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Union

import yaml
from dotenv import load_dotenv

from core.exceptions import ConfigurationError


logger = logging.getLogger(__name__)

ENV_PREFIX = "ORCH_"


# =============================================================
# SECTIONS
# =============================================================


@dataclass
class RegistryConfig:
    """Module registry settings."""
    cluster_id: str = "local"
    metric_window: int = 60
    tombstone_retention_seconds: float = 3600.0
    purge_interval_seconds: float = 60.0


@dataclass
class EventBusConfig:
    """Event bus settings."""
    queue_capacity: int = 1000
    history_size: int = 1000
    max_delivery_attempts: int = 3
    handler_timeout_seconds: float = 30.0
    idle_timeout_seconds: float = 5.0


@dataclass
class HealthConfig:
    """
    Health monitor settings.

    - DEGRADED:  weighted impact >= degraded_impact
    - UNHEALTHY: weighted impact >= unhealthy_impact
    """
    interval_seconds: float = 10.0
    probe_timeout_seconds: float = 5.0
    degraded_impact: float = 1.0
    unhealthy_impact: float = 2.0


@dataclass
class AutoScalerConfig:
    """AutoScaler loop settings and default policy values."""
    enabled: bool = True
    interval_seconds: float = 15.0
    scale_up_threshold: float = 80.0
    scale_down_threshold: float = 20.0
    cooldown_samples: int = 3
    cooldown_seconds: float = 60.0
    metric: str = "cpu"
    step: int = 1
    action_timeout_seconds: float = 30.0
    policies: Dict[str, Dict[str, Any]] = field(default_factory=dict)


@dataclass
class FederationConfig:
    """Federation sync settings."""
    enabled: bool = False
    peers: List[Dict[str, Any]] = field(default_factory=list)
    sync_interval_seconds: float = 30.0
    rpc_timeout_seconds: float = 5.0
    max_retries: int = 3
    backoff_base_seconds: float = 0.5
    backoff_max_seconds: float = 30.0
    jitter_seconds: float = 0.25
    unreachable_after_seconds: float = 120.0


@dataclass
class VocabularyConfig:
    """Capability vocabulary settings. ``definition`` replaces the default tag set."""
    compliance_threshold: float = 0.70
    definition: Optional[Dict[str, Any]] = None


@dataclass
class StorageConfig:
    """State persistence. backend: none | json | sql."""
    backend: str = "none"
    path: str = "orchestrator_state.json"
    url: str = "sqlite:///orchestrator_state.db"


@dataclass
class ApiConfig:
    """Read-only HTTP endpoint. Disabled when port is None."""
    host: str = "127.0.0.1"
    port: Optional[int] = None


@dataclass
class LoggingConfig:
    """Logging settings. format: json | text."""
    level: str = "INFO"
    format: str = "text"
    correlation_id: Optional[str] = None


_SECTIONS = {
    "registry": RegistryConfig,
    "eventbus": EventBusConfig,
    "health": HealthConfig,
    "autoscaler": AutoScalerConfig,
    "federation": FederationConfig,
    "vocabulary": VocabularyConfig,
    "storage": StorageConfig,
    "api": ApiConfig,
    "logging": LoggingConfig,
}


def _section_from_mapping(name: str, cls, data: Any):
    if data is None:
        return cls()
    if not isinstance(data, Mapping):
        raise ConfigurationError(f"Config section {name} must be a mapping", config_key=name)
    known = {f.name for f in fields(cls)}
    unknown = sorted(set(data) - known)
    if unknown:
        raise ConfigurationError(
            f"Unknown keys in config section {name}: {unknown}",
            config_key=name,
        )
    return cls(**dict(data))


def _coerce(raw: str, target_type: Any) -> Any:
    if target_type in (bool, "bool"):
        return raw.strip().lower() in ("1", "true", "yes", "on")
    if target_type in (int, "int"):
        return int(raw)
    if target_type in (float, "float"):
        return float(raw)
    if target_type in (Optional[int], "Optional[int]"):
        return int(raw) if raw.strip() else None
    return raw


# =============================================================
# MAIN CONFIGURATION
# =============================================================


@dataclass
class EngineConfig:
    """
    Main configuration for the orchestration engine.

    Combines all sub-configurations.
    """
    registry: RegistryConfig = field(default_factory=RegistryConfig)
    eventbus: EventBusConfig = field(default_factory=EventBusConfig)
    health: HealthConfig = field(default_factory=HealthConfig)
    autoscaler: AutoScalerConfig = field(default_factory=AutoScalerConfig)
    federation: FederationConfig = field(default_factory=FederationConfig)
    vocabulary: VocabularyConfig = field(default_factory=VocabularyConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    api: ApiConfig = field(default_factory=ApiConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    @classmethod
    def from_dict(cls, data: Optional[Mapping[str, Any]]) -> "EngineConfig":
        """
        Build configuration from a nested mapping.

        Raises:
            ConfigurationError: On unknown sections or keys
        """
        data = data or {}
        if not isinstance(data, Mapping):
            raise ConfigurationError("Configuration root must be a mapping")
        unknown = sorted(set(data) - set(_SECTIONS))
        if unknown:
            raise ConfigurationError(f"Unknown config sections: {unknown}")
        return cls(**{
            name: _section_from_mapping(name, section_cls, data.get(name))
            for name, section_cls in _SECTIONS.items()
        })

    @classmethod
    def from_env(cls, env_file: Optional[str] = None, base: Optional["EngineConfig"] = None) -> "EngineConfig":
        """
        Load configuration from environment variables.

        Variables are named ``ORCH_<SECTION>_<FIELD>``, for example:
        - ORCH_REGISTRY_CLUSTER_ID
        - ORCH_EVENTBUS_QUEUE_CAPACITY
        - ORCH_AUTOSCALER_SCALE_UP_THRESHOLD
        - ORCH_FEDERATION_UNREACHABLE_AFTER_SECONDS
        - ORCH_VOCABULARY_COMPLIANCE_THRESHOLD
        - ORCH_LOGGING_LEVEL
        """
        load_dotenv(env_file)
        config = base or cls()

        for section_name in _SECTIONS:
            section = getattr(config, section_name)
            for f in fields(section):
                env_name = f"{ENV_PREFIX}{section_name.upper()}_{f.name.upper()}"
                raw = os.getenv(env_name)
                if raw is None:
                    continue
                if f.name in ("policies", "peers", "definition"):
                    logger.warning(f"{env_name} ignored: structured values are YAML only")
                    continue
                try:
                    setattr(section, f.name, _coerce(raw, f.type))
                except ValueError as e:
                    raise ConfigurationError(
                        f"Invalid value for {env_name}: {raw!r}",
                        config_key=env_name,
                        cause=e,
                    ) from e

        return config

    @classmethod
    def from_yaml(cls, path: Union[str, Path]) -> "EngineConfig":
        """
        Load configuration from a YAML file.

        Raises:
            ConfigurationError: If the file cannot be read or parsed
        """
        try:
            with open(path, "r") as f:
                data = yaml.safe_load(f)
        except (OSError, yaml.YAMLError) as e:
            raise ConfigurationError(
                f"Failed to load YAML config from {path}: {e}",
                config_key=str(path),
                cause=e,
            ) from e
        return cls.from_dict(data)

    @classmethod
    def load(cls, path: Optional[Union[str, Path]] = None) -> "EngineConfig":
        """YAML file (if given) overlaid with environment variables."""
        base = cls.from_yaml(path) if path else cls()
        return cls.from_env(base=base)

    def validate(self) -> List[str]:
        """Validate configuration. Returns a list of errors (empty when valid)."""
        errors = []

        if not self.registry.cluster_id:
            errors.append("registry.cluster_id must not be empty")
        if self.registry.metric_window < 1:
            errors.append("registry.metric_window must be >= 1")
        if self.registry.tombstone_retention_seconds < 0:
            errors.append("registry.tombstone_retention_seconds must be >= 0")
        if self.registry.purge_interval_seconds <= 0:
            errors.append("registry.purge_interval_seconds must be > 0")

        if self.eventbus.queue_capacity < 1:
            errors.append("eventbus.queue_capacity must be >= 1")
        if self.eventbus.history_size < 1:
            errors.append("eventbus.history_size must be >= 1")
        if self.eventbus.max_delivery_attempts < 1:
            errors.append("eventbus.max_delivery_attempts must be >= 1")

        if self.health.interval_seconds <= 0:
            errors.append("health.interval_seconds must be > 0")
        if self.health.probe_timeout_seconds <= 0:
            errors.append("health.probe_timeout_seconds must be > 0")
        if not 0 < self.health.degraded_impact <= self.health.unhealthy_impact:
            errors.append("health impacts must satisfy 0 < degraded_impact <= unhealthy_impact")

        scaler = self.autoscaler
        if scaler.scale_down_threshold >= scaler.scale_up_threshold:
            errors.append("autoscaler.scale_down_threshold must be < scale_up_threshold")
        if scaler.cooldown_samples < 1:
            errors.append("autoscaler.cooldown_samples must be >= 1")
        if scaler.cooldown_seconds < 0:
            errors.append("autoscaler.cooldown_seconds must be >= 0")
        if scaler.step < 1:
            errors.append("autoscaler.step must be >= 1")

        fed = self.federation
        if fed.max_retries < 0:
            errors.append("federation.max_retries must be >= 0")
        if fed.backoff_base_seconds < 0 or fed.backoff_max_seconds < fed.backoff_base_seconds:
            errors.append("federation backoff must satisfy 0 <= base <= max")
        if fed.jitter_seconds < 0:
            errors.append("federation.jitter_seconds must be >= 0")
        if fed.rpc_timeout_seconds <= 0:
            errors.append("federation.rpc_timeout_seconds must be > 0")
        for peer in fed.peers:
            if not isinstance(peer, Mapping) or not peer.get("cluster_id"):
                errors.append(f"federation peer needs a cluster_id: {peer!r}")
            elif peer["cluster_id"] == self.registry.cluster_id:
                errors.append(f"federation peer cannot be the local cluster: {peer['cluster_id']}")

        if not 0 < self.vocabulary.compliance_threshold <= 1:
            errors.append("vocabulary.compliance_threshold must be in (0, 1]")

        if self.storage.backend not in ("none", "json", "sql"):
            errors.append(f"storage.backend must be none, json or sql: {self.storage.backend}")

        if self.logging.format not in ("json", "text"):
            errors.append(f"logging.format must be json or text: {self.logging.format}")
        if logging.getLevelName(self.logging.level.upper()) == f"Level {self.logging.level.upper()}":
            errors.append(f"logging.level is not a valid level: {self.logging.level}")

        return errors

    def validate_or_raise(self) -> None:
        """Raise ConfigurationError listing every validation error."""
        errors = self.validate()
        if errors:
            raise ConfigurationError(
                "Invalid engine configuration: " + "; ".join(errors),
                context={"errors": errors},
            )

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {name: asdict(getattr(self, name)) for name in _SECTIONS}


__all__ = [
    "ENV_PREFIX",
    "RegistryConfig",
    "EventBusConfig",
    "HealthConfig",
    "AutoScalerConfig",
    "FederationConfig",
    "VocabularyConfig",
    "StorageConfig",
    "ApiConfig",
    "LoggingConfig",
    "EngineConfig",
]
