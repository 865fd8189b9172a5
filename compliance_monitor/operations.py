"""Operational surface for an admin tool.

Each operation takes raw parameters (e.g. decoded query string or JSON
body), validates them with a pydantic request model and returns a
structured response:

    {"success": True, "data": ...}
    {"success": False, "errors": [{"field": ..., "message": ...}]}   invalid input
    {"success": False, "message": ...}                              internal failure
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, TypeVar

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from compliance_monitor.audit.models import AuditQueryFilters, Severity
from compliance_monitor.errors import ComplianceMonitorError, JobBusyError, ResolutionError
from compliance_monitor.probes.models import ProbeCategory, ProbeStatus
from compliance_monitor.system import ComplianceSystem

logger = logging.getLogger(__name__)

RequestT = TypeVar("RequestT", bound=BaseModel)


# =============================================================================
# REQUEST MODELS
# =============================================================================


class OperationRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")


class AuditLogQuery(OperationRequest):
    event_type: str | None = None
    user_id: str | None = None
    resource: str | None = None
    action: str | None = None
    start_time: datetime | None = None
    end_time: datetime | None = None
    severity: list[Severity] | None = None
    limit: int = Field(default=100, ge=1, le=1000)
    offset: int = Field(default=0, ge=0)


class ReportRequest(OperationRequest):
    start_time: datetime
    end_time: datetime

    @model_validator(mode="after")
    def check_period(self) -> ReportRequest:
        if self.end_time < self.start_time:
            raise ValueError("end_time must not be before start_time")
        return self


class MetricsRequest(OperationRequest):
    days: int = Field(default=30, ge=1, le=365)


class ViolationListRequest(OperationRequest):
    resolved: bool | None = None
    severity: Severity | None = None
    rule_id: str | None = None
    limit: int = Field(default=100, ge=1, le=1000)
    offset: int = Field(default=0, ge=0)


class ResolveViolationRequest(OperationRequest):
    violation_id: str = Field(min_length=1)
    resolved_by: str = Field(min_length=1, max_length=255)
    notes: str | None = Field(default=None, max_length=2000)


class RuleToggleRequest(OperationRequest):
    rule_id: str = Field(min_length=1)
    enabled: bool


class VulnerabilityListRequest(OperationRequest):
    resolved: bool | None = None
    severity: Severity | None = None
    category: ProbeCategory | None = None
    limit: int = Field(default=100, ge=1, le=1000)
    offset: int = Field(default=0, ge=0)


class ProbeHistoryRequest(OperationRequest):
    days: int = Field(default=30, ge=1, le=365)
    probe_id: str | None = None


class ResolveVulnerabilityRequest(OperationRequest):
    vulnerability_id: str = Field(min_length=1)
    resolved_by: str = Field(min_length=1, max_length=255)
    mitigation: str | None = Field(default=None, max_length=2000)


# =============================================================================
# RESPONSES
# =============================================================================


def ok(data: Any, **extra: Any) -> dict[str, Any]:
    return {"success": True, "data": data, **extra}


def invalid(error: ValidationError) -> dict[str, Any]:
    return {
        "success": False,
        "errors": [
            {"field": ".".join(str(part) for part in e["loc"]) or None, "message": e["msg"]}
            for e in error.errors()
        ],
    }


def failed(message: str) -> dict[str, Any]:
    return {"success": False, "message": message}


def _parse(model: type[RequestT], params: dict[str, Any] | None) -> RequestT:
    return model.model_validate(params or {})


class ComplianceOperations:
    """Admin operations over a ComplianceSystem.

    Example:
        >>> ops = ComplianceOperations(system)
        >>> await ops.query_audit_logs({"event_type": "authentication", "limit": 20})
        {'success': True, 'data': [...], 'pagination': {...}}
    """

    def __init__(self, system: ComplianceSystem) -> None:
        self.system = system

    async def query_audit_logs(self, params: dict[str, Any] | None = None) -> dict[str, Any]:
        try:
            request = _parse(AuditLogQuery, params)
        except ValidationError as e:
            return invalid(e)
        try:
            events = await self.system.audit.query(
                AuditQueryFilters(
                    event_type=request.event_type,
                    user_id=request.user_id,
                    resource=request.resource,
                    action=request.action,
                    start_time=request.start_time,
                    end_time=request.end_time,
                    severities=frozenset(request.severity) if request.severity else None,
                    offset=request.offset,
                    limit=request.limit,
                )
            )
        except ComplianceMonitorError:
            logger.exception("Failed to query audit logs")
            return failed("Failed to query audit logs")
        return ok(
            [event.to_dict() for event in events],
            pagination={"limit": request.limit, "offset": request.offset, "total": len(events)},
        )

    async def generate_report(self, params: dict[str, Any] | None = None) -> dict[str, Any]:
        try:
            request = _parse(ReportRequest, params)
        except ValidationError as e:
            return invalid(e)
        try:
            report = await self.system.reporter.report(request.start_time, request.end_time)
        except ComplianceMonitorError:
            logger.exception("Failed to generate compliance report")
            return failed("Failed to generate compliance report")
        return ok(report.to_dict())

    async def compliance_metrics(self, params: dict[str, Any] | None = None) -> dict[str, Any]:
        try:
            request = _parse(MetricsRequest, params)
        except ValidationError as e:
            return invalid(e)
        try:
            metrics = await self.system.evaluator.metrics(request.days)
        except ComplianceMonitorError:
            logger.exception("Failed to get compliance metrics")
            return failed("Failed to get compliance metrics")
        return ok(metrics.to_dict())

    async def run_compliance_check(self) -> dict[str, Any]:
        try:
            violations = await self.system.evaluator.check_now()
        except JobBusyError:
            return failed("Compliance check already in progress")
        except ComplianceMonitorError:
            logger.exception("Failed to run compliance check")
            return failed("Failed to run compliance check")
        return ok(
            {
                "violations_found": len(violations),
                "violations": [v.to_dict() for v in violations],
            }
        )

    async def list_violations(self, params: dict[str, Any] | None = None) -> dict[str, Any]:
        try:
            request = _parse(ViolationListRequest, params)
        except ValidationError as e:
            return invalid(e)
        try:
            violations = await self.system.evaluator.list_violations(
                resolved=request.resolved,
                severity=request.severity,
                rule_id=request.rule_id,
                limit=request.limit,
                offset=request.offset,
            )
        except ComplianceMonitorError:
            logger.exception("Failed to list compliance violations")
            return failed("Failed to list compliance violations")
        return ok([v.to_dict() for v in violations], total=len(violations))

    async def resolve_violation(self, params: dict[str, Any] | None = None) -> dict[str, Any]:
        try:
            request = _parse(ResolveViolationRequest, params)
        except ValidationError as e:
            return invalid(e)
        try:
            resolved = await self.system.evaluator.resolve(
                request.violation_id, request.resolved_by, request.notes
            )
        except ResolutionError as e:
            logger.warning("Violation resolution rejected: %s", e)
            return failed(str(e))
        except ComplianceMonitorError:
            logger.exception("Failed to resolve violation %s", request.violation_id)
            return failed("Failed to resolve violation")
        return ok(
            {"violation_id": request.violation_id, "resolved": resolved},
            message="Violation resolved" if resolved else "Violation was already resolved",
        )

    async def set_rule_enabled(self, params: dict[str, Any] | None = None) -> dict[str, Any]:
        try:
            request = _parse(RuleToggleRequest, params)
        except ValidationError as e:
            return invalid(e)
        try:
            rule = self.system.evaluator.registry.set_enabled(request.rule_id, request.enabled)
        except KeyError:
            return failed(f"Compliance rule '{request.rule_id}' not found")
        return ok({"rule_id": rule.id, "enabled": rule.enabled})

    async def run_security_tests(self) -> dict[str, Any]:
        try:
            results = await self.system.runner.run_all_tests()
        except ComplianceMonitorError:
            logger.exception("Failed to run security tests")
            return failed("Failed to run security tests")
        return ok(
            {
                "tests_run": len(results),
                "passed": sum(1 for r in results if r.status == ProbeStatus.PASSED),
                "failed": sum(1 for r in results if r.status == ProbeStatus.FAILED),
                "warnings": sum(1 for r in results if r.status == ProbeStatus.WARNING),
                "errors": sum(1 for r in results if r.status == ProbeStatus.ERROR),
                "total_vulnerabilities": sum(len(r.vulnerabilities) for r in results),
                "results": [r.to_dict() for r in results],
            }
        )

    async def security_history(self, params: dict[str, Any] | None = None) -> dict[str, Any]:
        try:
            request = _parse(ProbeHistoryRequest, params)
        except ValidationError as e:
            return invalid(e)
        try:
            history = await self.system.runner.history(request.days, request.probe_id)
        except ComplianceMonitorError:
            logger.exception("Failed to get security test history")
            return failed("Failed to get security test history")
        return ok(history, period_days=request.days)

    async def list_vulnerabilities(self, params: dict[str, Any] | None = None) -> dict[str, Any]:
        try:
            request = _parse(VulnerabilityListRequest, params)
        except ValidationError as e:
            return invalid(e)
        try:
            vulnerabilities = await self.system.runner.list_vulnerabilities(
                resolved=request.resolved,
                severity=request.severity,
                category=request.category,
                limit=request.limit,
                offset=request.offset,
            )
        except ComplianceMonitorError:
            logger.exception("Failed to get security vulnerabilities")
            return failed("Failed to get security vulnerabilities")
        return ok([v.to_dict() for v in vulnerabilities], total=len(vulnerabilities))

    async def resolve_vulnerability(self, params: dict[str, Any] | None = None) -> dict[str, Any]:
        try:
            request = _parse(ResolveVulnerabilityRequest, params)
        except ValidationError as e:
            return invalid(e)
        try:
            resolved = await self.system.runner.resolve_vulnerability(
                request.vulnerability_id, request.resolved_by, request.mitigation
            )
        except ResolutionError as e:
            logger.warning("Vulnerability resolution rejected: %s", e)
            return failed(str(e))
        except ComplianceMonitorError:
            logger.exception("Failed to resolve vulnerability %s", request.vulnerability_id)
            return failed("Failed to resolve vulnerability")
        return ok({"vulnerability_id": request.vulnerability_id, "resolved": resolved})

    async def system_status(self) -> dict[str, Any]:
        return ok(await self.system.status())
