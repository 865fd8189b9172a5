from compliance_monitor.models.audit_log import AuditLogRecord
from compliance_monitor.models.security import (
    SecurityTestResultRecord,
    SecurityVulnerabilityRecord,
)
from compliance_monitor.models.violation import ComplianceViolationRecord

__all__ = [
    "AuditLogRecord",
    "ComplianceViolationRecord",
    "SecurityTestResultRecord",
    "SecurityVulnerabilityRecord",
]
