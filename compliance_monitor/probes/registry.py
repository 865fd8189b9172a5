"""Probe registry for in-memory security probe management.

Classes:
    DuplicateProbeError: Raised when registering a probe with a duplicate ID
    ProbeRegistry: In-memory registry of SecurityProbeDefinitions

Functions:
    load_probe_catalog: Load probes from a YAML file or the bundled catalogue
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from pathlib import Path

from compliance_monitor.catalog import CATALOG_PACKAGE, PROBES_RESOURCE
from compliance_monitor.probes.models import Cadence, ProbeCatalog, SecurityProbeDefinition
from compliance_monitor.utils.yaml_loader import YAMLLoader

logger = logging.getLogger(__name__)


class DuplicateProbeError(Exception):
    def __init__(self, probe_id: str) -> None:
        self.probe_id = probe_id
        super().__init__(f"Probe with ID '{probe_id}' already exists in registry")


def load_probe_catalog(path: str | Path | None = None) -> list[SecurityProbeDefinition]:
    """Load probes from a YAML catalogue (bundled default when path is None).

    Raises:
        FileNotFoundError: If path doesn't exist
        YAMLLoadError: If YAML parsing or validation fails
    """
    loader = YAMLLoader()
    if path is None:
        catalog = loader.load_resource(CATALOG_PACKAGE, PROBES_RESOURCE, ProbeCatalog)
    else:
        catalog = loader.load_file(Path(path), ProbeCatalog)
    logger.info("Loaded %d security probes", len(catalog.probes))
    return catalog.probes


class ProbeRegistry:
    """Security probes keyed by ID; registration order is execution order."""

    def __init__(self, probes: Iterable[SecurityProbeDefinition] = ()) -> None:
        self._probes: dict[str, SecurityProbeDefinition] = {}
        for probe in probes:
            self.register(probe)

    def register(self, probe: SecurityProbeDefinition) -> None:
        if probe.id in self._probes:
            raise DuplicateProbeError(probe.id)
        self._probes[probe.id] = probe

    def get(self, probe_id: str) -> SecurityProbeDefinition | None:
        return self._probes.get(probe_id)

    def list_all(self) -> list[SecurityProbeDefinition]:
        return list(self._probes.values())

    def enabled(self, cadence: Cadence | None = None) -> list[SecurityProbeDefinition]:
        return [
            probe
            for probe in self._probes.values()
            if probe.enabled and (cadence is None or probe.cadence == cadence)
        ]

    def set_enabled(self, probe_id: str, enabled: bool) -> SecurityProbeDefinition:
        """Enable or disable a probe.

        Raises:
            KeyError: If no probe has this ID
        """
        probe = self._probes.get(probe_id)
        if probe is None:
            raise KeyError(probe_id)
        if probe.enabled != enabled:
            probe = probe.model_copy(update={"enabled": enabled})
            self._probes[probe_id] = probe
            logger.info("Security probe %s %s", probe_id, "enabled" if enabled else "disabled")
        return probe

    def __len__(self) -> int:
        return len(self._probes)
