"""Models for security probes, their results and vulnerabilities.

Classes:
    ProbeCategory: Weakness class a probe exercises
    Cadence: How often a probe is scheduled
    ProbeKind: Check strategy of a probe (tagged variant)
    SecurityProbeDefinition: Complete probe definition (loadable from YAML)
    ProbeCatalog: Top-level document of a probes YAML file
    ProbeStatus: Outcome of one probe execution
    VulnerabilityCandidate: What a check returns before persistence
    SecurityVulnerability: Persisted probe finding
    SecurityTestResult: One probe execution
    SecuritySummary: Aggregated probe runs over a period
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import ConfigDict, Field

from compliance_monitor.audit.models import Severity
from compliance_monitor.catalog import CatalogBaseModel
from compliance_monitor.rules.models import RiskLevel


class ProbeCategory(str, Enum):
    AUTHENTICATION = "authentication"
    AUTHORIZATION = "authorization"
    INPUT_VALIDATION = "input_validation"
    DATA_PROTECTION = "data_protection"
    SESSION_MANAGEMENT = "session_management"


class Cadence(str, Enum):
    """Probe schedule.

    CONTINUOUS and DAILY probes are scheduled by the runner; WEEKLY and
    MONTHLY probes only run on demand.
    """

    CONTINUOUS = "continuous"
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"


class ProbeKind(str, Enum):
    """Check strategies.

    INJECTION: SQL injection payloads against input-accepting endpoints
    REFLECTED_CONTENT: Markup payloads echoed back unescaped
    AUTH_BYPASS: Protected routes answering without credentials
    SESSION_FIXATION: Session id not regenerated on login
    RATE_LIMITING: Burst of calls exceeding the expected cap
    ERROR_DISCLOSURE: Sensitive keywords in error responses
    CSRF: State-changing call accepted without an anti-forgery token
    INPUT_VALIDATION: Malformed, oversized or null input accepted
    PLAINTEXT_PII: Email/phone patterns in stored audit payloads
    HORIZONTAL_PRIVILEGE: One user reading another user's data
    """

    INJECTION = "injection"
    REFLECTED_CONTENT = "reflected_content"
    AUTH_BYPASS = "auth_bypass"
    SESSION_FIXATION = "session_fixation"
    RATE_LIMITING = "rate_limiting"
    ERROR_DISCLOSURE = "error_disclosure"
    CSRF = "csrf"
    INPUT_VALIDATION = "input_validation"
    PLAINTEXT_PII = "plaintext_pii"
    HORIZONTAL_PRIVILEGE = "horizontal_privilege"


class SecurityProbeDefinition(CatalogBaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    id: str = Field(pattern=r"^[a-z0-9_]+$")
    name: str
    description: str = ""
    kind: ProbeKind
    category: ProbeCategory
    severity: Severity
    cadence: Cadence
    enabled: bool = True


class ProbeCatalog(CatalogBaseModel):
    probes: list[SecurityProbeDefinition] = Field(default_factory=list)


class ProbeStatus(str, Enum):
    PASSED = "passed"
    FAILED = "failed"
    WARNING = "warning"
    ERROR = "error"


@dataclass(frozen=True)
class VulnerabilityCandidate:
    """A finding returned by a check; the runner assigns identity and time."""

    description: str
    evidence: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class SecurityVulnerability:
    id: str
    probe_id: str
    probe_name: str
    category: ProbeCategory
    severity: Severity
    description: str
    evidence: dict[str, Any]
    detected_at: datetime
    run_id: str | None = None
    resolved: bool = False
    resolved_at: datetime | None = None
    resolved_by: str | None = None
    mitigation: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "probe_id": self.probe_id,
            "probe_name": self.probe_name,
            "category": self.category.value,
            "severity": self.severity.value,
            "description": self.description,
            "evidence": self.evidence,
            "detected_at": self.detected_at.isoformat(),
            "run_id": self.run_id,
            "resolved": self.resolved,
            "resolved_at": self.resolved_at.isoformat() if self.resolved_at else None,
            "resolved_by": self.resolved_by,
            "mitigation": self.mitigation,
        }


def derive_status(vulnerabilities: Iterable[SecurityVulnerability]) -> ProbeStatus:
    """passed with no findings, failed if any is high/critical, else warning."""
    vulnerabilities = list(vulnerabilities)
    if not vulnerabilities:
        return ProbeStatus.PASSED
    if any(v.severity.rank >= Severity.HIGH.rank for v in vulnerabilities):
        return ProbeStatus.FAILED
    return ProbeStatus.WARNING


@dataclass(frozen=True)
class SecurityTestResult:
    """Outcome of one probe execution within a run.

    error carries the failure message when status is ERROR.
    """

    run_id: str
    probe_id: str
    probe_name: str
    status: ProbeStatus
    vulnerabilities: tuple[SecurityVulnerability, ...]
    execution_time_ms: float
    timestamp: datetime
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data = {
            "run_id": self.run_id,
            "probe_id": self.probe_id,
            "probe_name": self.probe_name,
            "status": self.status.value,
            "vulnerabilities": [v.to_dict() for v in self.vulnerabilities],
            "execution_time_ms": self.execution_time_ms,
            "timestamp": self.timestamp.isoformat(),
        }
        if self.error is not None:
            data["error"] = self.error
        return data


def risk_from_vulnerability_count(count: int) -> RiskLevel:
    if count > 10:
        return RiskLevel.CRITICAL
    if count > 5:
        return RiskLevel.HIGH
    if count > 0:
        return RiskLevel.MEDIUM
    return RiskLevel.LOW


@dataclass(frozen=True)
class SecuritySummary:
    """Probe executions in [start, end].

    security_score is the pass rate in percent, 100 when nothing ran.
    """

    start_time: datetime
    end_time: datetime
    total_tests: int
    passed: int
    failed: int
    warnings: int
    errors: int
    total_vulnerabilities: int
    last_run_at: datetime | None = None

    @property
    def security_score(self) -> float:
        if self.total_tests == 0:
            return 100.0
        return self.passed / self.total_tests * 100

    @property
    def risk_level(self) -> RiskLevel:
        return risk_from_vulnerability_count(self.total_vulnerabilities)

    def to_dict(self) -> dict[str, Any]:
        return {
            "start_time": self.start_time.isoformat(),
            "end_time": self.end_time.isoformat(),
            "total_tests": self.total_tests,
            "passed": self.passed,
            "failed": self.failed,
            "warnings": self.warnings,
            "errors": self.errors,
            "total_vulnerabilities": self.total_vulnerabilities,
            "security_score": self.security_score,
            "risk_level": self.risk_level.value,
            "last_run_at": self.last_run_at.isoformat() if self.last_run_at else None,
        }
