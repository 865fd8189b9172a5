"""Finding model shared by the rule evaluator and the probe runner."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from compliance_monitor.audit.config import FLAG_COMPLIANCE_VIOLATION, FLAG_SECURITY_VULNERABILITY
from compliance_monitor.audit.models import Severity


class FindingKind(str, Enum):
    """Origin of a finding.

    VIOLATION: Produced by a compliance rule
    VULNERABILITY: Produced by a security probe
    """

    VIOLATION = "violation"
    VULNERABILITY = "vulnerability"


# (event_type, resource, action, compliance flag) of the re-emitted audit event
AUDIT_TRAIL_SHAPE: dict[FindingKind, tuple[str, str, str, str]] = {
    FindingKind.VIOLATION: (
        "compliance_violation",
        "compliance_system",
        "violation_detected",
        FLAG_COMPLIANCE_VIOLATION,
    ),
    FindingKind.VULNERABILITY: (
        "security_vulnerability",
        "security_system",
        "vulnerability_detected",
        FLAG_SECURITY_VULNERABILITY,
    ),
}


@dataclass(frozen=True)
class Finding:
    """A violation or vulnerability handed to the escalation sink.

    Attributes:
        kind: Violation or vulnerability
        finding_id: ID of the persisted violation/vulnerability
        source_id: Rule or probe that produced it
        source_name: Human-readable rule/probe name
        severity: Finding severity
        description: Human-readable description
        key: Identity of the underlying condition, used for paging cooldown
        details: Extra fields copied into the re-emitted audit event
    """

    kind: FindingKind
    finding_id: str
    source_id: str
    source_name: str
    severity: Severity
    description: str
    key: str
    details: dict[str, Any] = field(default_factory=dict)

    @property
    def summary(self) -> str:
        return f"{self.source_name}: {self.description}"
