"""Models for compliance rules, violations and metrics.

Classes:
    Regulation: Regulatory regime a rule belongs to
    RuleKind: Detector strategy of a rule (tagged variant)
    RuleConditions: Query filters, window and threshold of a rule
    ComplianceRule: Complete rule definition (loadable from YAML)
    RuleCatalog: Top-level document of a rules YAML file
    RiskLevel: Coarse bucketing of violation rate / score
    ComplianceViolation: Materialized rule finding
    ComplianceMetrics: Rolling rule-engine health metrics
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import ConfigDict, Field

from compliance_monitor.audit.models import Severity
from compliance_monitor.catalog import CatalogBaseModel


class Regulation(str, Enum):
    GDPR = "GDPR"
    CCPA = "CCPA"
    PIPEDA = "PIPEDA"
    INTERNAL = "INTERNAL"


class RuleKind(str, Enum):
    """Detector strategies.

    EXCESSIVE_ACCESS: Per-user event count above threshold
    UNAUTHORIZED_EXPORT: Export/download without an authorized marker
    CONSENT_VIOLATION: GDPR processing/storage without valid consent
    RETENTION_VIOLATION: Any event older than the retention cutoff (whole store)
    FAILED_AUTHENTICATION_THRESHOLD: Failed logins per IP reaching threshold
    SENSITIVE_ACCESS_PATTERN: Distinct target users per accessor above threshold
    """

    EXCESSIVE_ACCESS = "excessive_access"
    UNAUTHORIZED_EXPORT = "unauthorized_export"
    CONSENT_VIOLATION = "consent_violation"
    RETENTION_VIOLATION = "retention_violation"
    FAILED_AUTHENTICATION_THRESHOLD = "failed_authentication_threshold"
    SENSITIVE_ACCESS_PATTERN = "sensitive_access_pattern"


class RuleConditions(CatalogBaseModel):
    """Filters and limits of a rule.

    Attributes:
        event_types: Event types to read (empty means all)
        actions: Exact actions to read (empty means all)
        resources: Resources to read (empty means all)
        window_minutes: Length of the sliding window read on each evaluation
        threshold: Detector threshold; None uses the detector default
    """

    event_types: list[str] = Field(default_factory=list)
    actions: list[str] = Field(default_factory=list)
    resources: list[str] = Field(default_factory=list)
    window_minutes: int = Field(default=60, ge=1)
    threshold: int | None = Field(default=None, ge=0)


class ComplianceRule(CatalogBaseModel):
    """Complete rule definition.

    Rules are immutable; enabling or disabling one replaces it in the
    registry with a copy.
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    id: str = Field(pattern=r"^[a-z0-9_]+$")
    name: str
    description: str = ""
    kind: RuleKind
    regulation: Regulation
    severity: Severity
    conditions: RuleConditions = Field(default_factory=RuleConditions)
    enabled: bool = True

    def threshold_or(self, default: int) -> int:
        threshold = self.conditions.threshold
        return default if threshold is None else threshold


class RuleCatalog(CatalogBaseModel):
    rules: list[ComplianceRule] = Field(default_factory=list)


class RiskLevel(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _RISK_RANK[self]

    @classmethod
    def worst(cls, *levels: RiskLevel) -> RiskLevel:
        return max(levels, key=lambda level: level.rank)


_RISK_RANK = {RiskLevel.LOW: 0, RiskLevel.MEDIUM: 1, RiskLevel.HIGH: 2, RiskLevel.CRITICAL: 3}


def risk_from_violation_rate(rate: float) -> RiskLevel:
    """Bucket a violation rate (percent) into a risk level."""
    if rate > 10:
        return RiskLevel.CRITICAL
    if rate > 5:
        return RiskLevel.HIGH
    if rate > 1:
        return RiskLevel.MEDIUM
    return RiskLevel.LOW


@dataclass(frozen=True)
class ComplianceViolation:
    """A materialized rule finding.

    evidence holds the ids of the contributing audit events (empty for the
    retention rule). dedupe_key identifies the condition across ticks.
    """

    id: str
    rule_id: str
    rule_name: str
    severity: Severity
    description: str
    evidence: tuple[str, ...]
    detected_at: datetime
    dedupe_key: str
    resolved: bool = False
    resolved_at: datetime | None = None
    resolved_by: str | None = None
    notes: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "rule_id": self.rule_id,
            "rule_name": self.rule_name,
            "severity": self.severity.value,
            "description": self.description,
            "event_ids": list(self.evidence),
            "detected_at": self.detected_at.isoformat(),
            "resolved": self.resolved,
            "resolved_at": self.resolved_at.isoformat() if self.resolved_at else None,
            "resolved_by": self.resolved_by,
            "notes": self.notes,
        }


@dataclass(frozen=True)
class ComplianceMetrics:
    """Rule-engine health over the last period_days days."""

    total_events: int
    violations: int
    violation_rate: float
    compliance_score: float
    risk_level: RiskLevel
    last_assessment: datetime
    period_days: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_events": self.total_events,
            "violations": self.violations,
            "violation_rate": self.violation_rate,
            "compliance_score": self.compliance_score,
            "risk_level": self.risk_level.value,
            "last_assessment": self.last_assessment.isoformat(),
            "period_days": self.period_days,
        }
