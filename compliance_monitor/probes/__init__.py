"""Security probes: catalogue, check strategies, request simulation and the runner."""

from compliance_monitor.probes.checks import CHECKS, ProbeContext
from compliance_monitor.probes.models import (
    Cadence,
    ProbeCategory,
    ProbeKind,
    ProbeStatus,
    SecurityProbeDefinition,
    SecuritySummary,
    SecurityTestResult,
    SecurityVulnerability,
    VulnerabilityCandidate,
)
from compliance_monitor.probes.registry import DuplicateProbeError, ProbeRegistry, load_probe_catalog
from compliance_monitor.probes.runner import ProbeRunner
from compliance_monitor.probes.simulator import (
    HttpxRequestSimulator,
    RequestSimulator,
    SessionProbe,
    SimulatedResponse,
)

__all__ = [
    "CHECKS",
    "Cadence",
    "DuplicateProbeError",
    "HttpxRequestSimulator",
    "ProbeCategory",
    "ProbeContext",
    "ProbeKind",
    "ProbeRegistry",
    "ProbeRunner",
    "ProbeStatus",
    "RequestSimulator",
    "SecurityProbeDefinition",
    "SecuritySummary",
    "SecurityTestResult",
    "SecurityVulnerability",
    "SessionProbe",
    "SimulatedResponse",
    "VulnerabilityCandidate",
    "load_probe_catalog",
]
