"""Data models for the audit event store.

This module defines the value types passed in and out of AuditService:
- Severity: Ordinal event/finding severity shared by all components
- AuditEvent: Immutable record of one system action
- AuditQueryFilters: Conjunctive filter for AuditService.query
- AuditReportGroup / AuditReport: Output of AuditService.report
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class Severity(str, Enum):
    """Severity levels, ordered from least to most severe."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return SEVERITY_RANK[self]


SEVERITY_RANK: dict[Severity, int] = {
    Severity.LOW: 0,
    Severity.MEDIUM: 1,
    Severity.HIGH: 2,
    Severity.CRITICAL: 3,
}


class ComplianceStatus(str, Enum):
    """Audit-level compliance status of a reporting period."""

    COMPLIANT = "compliant"
    VIOLATIONS_DETECTED = "violations_detected"


@dataclass(frozen=True)
class AuditEvent:
    """One immutable audit record.

    id and timestamp are always assigned by the store. details holds the
    decrypted view when returned from AuditService.query.
    """

    id: str
    event_type: str
    resource: str
    action: str
    timestamp: datetime
    severity: Severity
    details: dict[str, Any] = field(default_factory=dict)
    user_id: str | None = None
    session_id: str | None = None
    ip_address: str | None = None
    user_agent: str | None = None
    compliance_flags: frozenset[str] = frozenset()

    def has_flag(self, flag: str) -> bool:
        return flag in self.compliance_flags

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "event_type": self.event_type,
            "user_id": self.user_id,
            "session_id": self.session_id,
            "resource": self.resource,
            "action": self.action,
            "details": self.details,
            "ip_address": self.ip_address,
            "user_agent": self.user_agent,
            "timestamp": self.timestamp.isoformat(),
            "severity": self.severity.value,
            "compliance_flags": sorted(self.compliance_flags),
        }


@dataclass
class AuditQueryFilters:
    """Filter parameters for querying audit events.

    All set fields are combined with AND. A limit of None returns every
    matching row (used by the rule evaluator for full windows).

    Attributes:
        event_type: Exact event type
        user_id: Exact user id
        resource: Exact resource
        action: Exact action
        start_time: Events at or after this time
        end_time: Events at or before this time
        severities: Any of these severities
        offset: Number of records to skip
        limit: Maximum number of records to return
    """

    event_type: str | None = None
    user_id: str | None = None
    resource: str | None = None
    action: str | None = None
    start_time: datetime | None = None
    end_time: datetime | None = None
    severities: frozenset[Severity] | None = None
    offset: int = 0
    limit: int | None = 100


@dataclass(frozen=True)
class AuditReportGroup:
    """Events sharing (event_type, action, severity, compliance_flags)."""

    event_type: str
    action: str
    severity: Severity
    compliance_flags: tuple[str, ...]
    count: int
    unique_users: int
    first_occurrence: datetime
    last_occurrence: datetime

    @property
    def flagged(self) -> bool:
        return len(self.compliance_flags) > 0


@dataclass(frozen=True)
class FlagBreakdown:
    """Number of events carrying one exact flag set."""

    flags: tuple[str, ...]
    count: int


@dataclass
class AuditReport:
    """Grouped summary of the audit trail over a period."""

    start_time: datetime
    end_time: datetime
    total_events: int
    unique_users: int
    flagged_groups: int
    groups: list[AuditReportGroup]
    compliance_status: ComplianceStatus
    violation_types: list[FlagBreakdown] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "report_period": {
                "start_time": self.start_time.isoformat(),
                "end_time": self.end_time.isoformat(),
            },
            "summary": {
                "total_events": self.total_events,
                "unique_users": self.unique_users,
                "flagged_groups": self.flagged_groups,
            },
            "event_breakdown": [
                {
                    "event_type": g.event_type,
                    "action": g.action,
                    "severity": g.severity.value,
                    "compliance_flags": list(g.compliance_flags),
                    "count": g.count,
                    "unique_users": g.unique_users,
                    "first_occurrence": g.first_occurrence.isoformat(),
                    "last_occurrence": g.last_occurrence.isoformat(),
                }
                for g in self.groups
            ],
            "compliance_status": {
                "status": self.compliance_status.value,
                "violation_types": [
                    {"flags": list(v.flags), "count": v.count} for v in self.violation_types
                ],
            },
        }
