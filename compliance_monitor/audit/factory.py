"""Convenience loggers for the common audit event shapes.

This module derives severity and compliance flags for the events emitted by
the web tier, so call sites only pass what they know:

Functions:
    log_data_access: Access to stored user data
    log_authentication: Login / logout / token events
    log_assessment_interaction: Readiness-assessment activity
    determine_severity: Severity rule for data access events
    determine_compliance_flags: Flag rule for data access events

Example:
    >>> ctx = RequestContext(ip_address="203.0.113.7", user_agent="Mozilla/5.0")
    >>> await log_authentication(service, "login", user_id="user-1",
    ...                          details={"success": False}, context=ctx)
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from compliance_monitor.audit.config import (
    FLAG_ASSESSMENT_DATA,
    FLAG_BEHAVIORAL_TRACKING,
    FLAG_DATA_DELETION,
    FLAG_DATA_EXPORT,
    FLAG_DATA_PROCESSING,
    FLAG_FAILED_AUTHENTICATION,
    FLAG_GDPR_RELEVANT,
    FLAG_PERSONAL_IDENTIFIER,
)
from compliance_monitor.audit.models import Severity

if TYPE_CHECKING:
    from compliance_monitor.audit.service import AuditService


@dataclass(frozen=True)
class RequestContext:
    """Request metadata supplied by the web middleware."""

    ip_address: str | None = None
    user_agent: str | None = None


_NO_CONTEXT = RequestContext()


def extract_data_fields(details: dict[str, Any]) -> list[str]:
    """Names of the personal-data categories present in details."""
    fields: list[str] = []
    if details.get("email"):
        fields.append("email")
    if details.get("personalData"):
        fields.append("personal_data")
    if details.get("assessmentResponses"):
        fields.append("assessment_responses")
    if details.get("behavioralData"):
        fields.append("behavioral_data")
    return fields


def determine_severity(action: str, resource: str) -> Severity:
    """Severity of a data access event.

    Deletes and exports are high; updates and anything touching personal or
    sensitive resources are medium; everything else is low.
    """
    if "delete" in action or "export" in action:
        return Severity.HIGH
    if "update" in action or "modify" in action:
        return Severity.MEDIUM
    if "personal" in resource or "sensitive" in resource:
        return Severity.MEDIUM
    return Severity.LOW


def determine_compliance_flags(action: str, resource: str, details: dict[str, Any]) -> list[str]:
    flags: list[str] = []
    if details.get("personalData"):
        flags.append(FLAG_GDPR_RELEVANT)
    if details.get("email"):
        flags.append(FLAG_PERSONAL_IDENTIFIER)
    if "export" in action:
        flags.append(FLAG_DATA_EXPORT)
    if "delete" in action:
        flags.append(FLAG_DATA_DELETION)
    if "assessment" in resource:
        flags.append(FLAG_ASSESSMENT_DATA)
    return flags


def determine_assessment_flags(action: str, details: dict[str, Any]) -> list[str]:
    flags = [FLAG_ASSESSMENT_DATA]
    if details.get("personalData"):
        flags.append(FLAG_GDPR_RELEVANT)
    if details.get("behavioralData"):
        flags.append(FLAG_BEHAVIORAL_TRACKING)
    if action == "complete_assessment":
        flags.append(FLAG_DATA_PROCESSING)
    return flags


async def log_data_access(
    service: AuditService,
    user_id: str,
    resource: str,
    action: str,
    details: dict[str, Any] | None = None,
    context: RequestContext = _NO_CONTEXT,
) -> str:
    """Record access to stored user data.

    Args:
        service: AuditService to write through
        user_id: Accessing user
        resource: Resource accessed (e.g. "user_profile")
        action: Action performed (e.g. "read", "export")
        details: Access details; accessReason defaults to "system_operation"
        context: Request metadata

    Returns:
        The new audit event id
    """
    details = details or {}
    return await service.log(
        "data_access",
        resource,
        action,
        user_id=user_id,
        details={
            **details,
            "dataFields": extract_data_fields(details),
            "accessReason": details.get("accessReason") or "system_operation",
        },
        ip_address=context.ip_address,
        user_agent=context.user_agent,
        severity=determine_severity(action, resource),
        compliance_flags=determine_compliance_flags(action, resource, details),
    )


async def log_authentication(
    service: AuditService,
    action: str,
    user_id: str | None = None,
    details: dict[str, Any] | None = None,
    context: RequestContext = _NO_CONTEXT,
) -> str:
    """Record an authentication attempt.

    Failed attempts are medium severity and flagged failed_authentication;
    successful ones are low severity with no flags.
    """
    details = details or {}
    success = bool(details.get("success", False))
    return await service.log(
        "authentication",
        "auth_system",
        action,
        user_id=user_id,
        details={
            **details,
            "loginMethod": details.get("loginMethod") or "unknown",
            "success": success,
        },
        ip_address=context.ip_address,
        user_agent=context.user_agent,
        severity=Severity.LOW if success else Severity.MEDIUM,
        compliance_flags=[] if success else [FLAG_FAILED_AUTHENTICATION],
    )


async def log_assessment_interaction(
    service: AuditService,
    session_id: str,
    user_id: str,
    action: str,
    details: dict[str, Any] | None = None,
    context: RequestContext = _NO_CONTEXT,
) -> str:
    """Record a readiness-assessment interaction.

    Raw response data is never written; only a marker that it existed.
    """
    details = dict(details or {})
    if details.get("responseData"):
        details["responseData"] = "encrypted"
    else:
        details.pop("responseData", None)
    return await service.log(
        "assessment_interaction",
        "assessment_system",
        action,
        user_id=user_id,
        session_id=session_id,
        details=details,
        ip_address=context.ip_address,
        user_agent=context.user_agent,
        severity=Severity.LOW,
        compliance_flags=determine_assessment_flags(action, details),
    )
