"""
Orchestrator - Manifest.

============================================================
RESPONSIBILITY
============================================================
Loads a declarative module manifest (YAML or dict).

    vocabulary:            # optional, replaces the default
      capabilities: [...]
      interfaces: {...}
    modules:
      - name: api
        version: 1.0.0
        dependencies: [db]
        capabilities: [http]
        interfaces: [http-api]
        requires: [kv-store]
        criticality: high
    scaling:               # optional, per-module policy overrides
      api: {min_instances: 2, max_instances: 8}

============================================================
"""

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Union

import yaml

from core.exceptions import ConfigurationError, InvalidDescriptorError

from .models import ModuleDescriptor
from .resolver import resolve
from .vocabulary import Vocabulary


logger = logging.getLogger(__name__)


@dataclass
class Manifest:
    """Parsed manifest."""

    modules: List[ModuleDescriptor] = field(default_factory=list)
    vocabulary: Optional[Vocabulary] = None
    scaling: Dict[str, Dict[str, Any]] = field(default_factory=dict)

    @property
    def names(self) -> List[str]:
        return [m.name for m in self.modules]

    def startup_order(self) -> List[str]:
        """
        Raises:
            CyclicDependency: If the manifest's modules form a cycle
        """
        return resolve(self.modules)


def load_manifest(
    source: Union[str, Path, Mapping[str, Any]],
    compliance_threshold: Optional[float] = None,
) -> Manifest:
    """
    Parse a manifest from a YAML file path or an already-loaded mapping.

    Raises:
        ConfigurationError: On unreadable or malformed manifests
    """
    if isinstance(source, Mapping):
        data = source
        origin = "<dict>"
    else:
        origin = str(source)
        try:
            with open(source, "r", encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}
        except OSError as e:
            raise ConfigurationError(f"Cannot read manifest {origin}: {e}", cause=e) from e
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in manifest {origin}: {e}", cause=e) from e

    if not isinstance(data, Mapping):
        raise ConfigurationError(f"Manifest {origin} must be a mapping")

    unknown = sorted(set(data) - {"vocabulary", "modules", "scaling"})
    if unknown:
        raise ConfigurationError(f"Unknown manifest sections in {origin}: {unknown}")

    vocabulary = None
    if data.get("vocabulary") is not None:
        vocabulary = Vocabulary.from_dict(data["vocabulary"], compliance_threshold=compliance_threshold)

    raw_modules = data.get("modules") or []
    if not isinstance(raw_modules, list):
        raise ConfigurationError(f"manifest.modules must be a list in {origin}", config_key="modules")

    modules: List[ModuleDescriptor] = []
    seen = set()
    for index, raw in enumerate(raw_modules):
        if not isinstance(raw, Mapping):
            raise ConfigurationError(f"Module #{index} in {origin} must be a mapping", config_key="modules")
        try:
            descriptor = ModuleDescriptor.from_dict(raw)
        except InvalidDescriptorError as e:
            detail = "; ".join(e.problems) or e.message
            raise ConfigurationError(f"Module #{index} in {origin}: {detail}", cause=e) from e
        if descriptor.name in seen:
            raise ConfigurationError(
                f"Module {descriptor.name} declared twice in {origin}",
                config_key=f"modules.{descriptor.name}",
            )
        seen.add(descriptor.name)
        modules.append(descriptor)

    scaling = data.get("scaling") or {}
    if not isinstance(scaling, Mapping) or not all(isinstance(v, Mapping) for v in scaling.values()):
        raise ConfigurationError(f"manifest.scaling must map module names to policies in {origin}")

    logger.info(f"Loaded manifest {origin}: {len(modules)} modules")
    return Manifest(
        modules=modules,
        vocabulary=vocabulary,
        scaling={name: dict(policy) for name, policy in scaling.items()},
    )


__all__ = [
    "Manifest",
    "load_manifest",
]
