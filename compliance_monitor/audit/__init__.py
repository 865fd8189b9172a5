"""Audit event store.

Usage:
    from compliance_monitor.audit import AuditService, AuditQueryFilters, FieldCipher

    service = AuditService(session_factory, FieldCipher(provider, settings.sensitive_fields))
    event_id = await service.log("data_access", "user_profile", "read", user_id="user-1")
    events = await service.query(AuditQueryFilters(user_id="user-1"))
"""

from compliance_monitor.audit.encryption import (
    EncryptedEnvelope,
    EncryptionProvider,
    FieldCipher,
    HashResult,
)
from compliance_monitor.audit.factory import (
    RequestContext,
    log_assessment_interaction,
    log_authentication,
    log_data_access,
)
from compliance_monitor.audit.models import (
    AuditEvent,
    AuditQueryFilters,
    AuditReport,
    AuditReportGroup,
    ComplianceStatus,
    Severity,
)
from compliance_monitor.audit.service import AuditService

__all__ = [
    "AuditEvent",
    "AuditQueryFilters",
    "AuditReport",
    "AuditReportGroup",
    "AuditService",
    "ComplianceStatus",
    "EncryptedEnvelope",
    "EncryptionProvider",
    "FieldCipher",
    "HashResult",
    "RequestContext",
    "Severity",
    "log_assessment_interaction",
    "log_authentication",
    "log_data_access",
]
