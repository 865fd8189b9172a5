"""ComplianceReporter: point-in-time compliance report.

Merges the audit store report, the rule engine metrics and the probe run
summary into one document.

Scoring:
    audit score     = max(0, 100 - 10 * groups carrying a violation-type flag)
    compliance score = rule engine compliance_score (last 30 days)
    security score  = passed / total probe runs * 100 (100 with no runs)
    overall score   = round(mean of the three)

Risk:
    overall risk = worst of (risk from audit score, rule risk level,
    risk from the vulnerability count of the period)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Protocol, runtime_checkable

from compliance_monitor.audit.config import FLAG_GDPR_RELEVANT, is_violation_flag
from compliance_monitor.audit.models import AuditReport, AuditReportGroup, Severity
from compliance_monitor.audit.service import AuditService
from compliance_monitor.errors import StorageError
from compliance_monitor.probes.models import SecuritySummary
from compliance_monitor.probes.runner import ProbeRunner
from compliance_monitor.rules.evaluator import RuleEvaluator
from compliance_monitor.rules.models import ComplianceMetrics, RiskLevel
from compliance_monitor.utils.timeutil import ensure_utc

logger = logging.getLogger(__name__)

METRICS_PERIOD_DAYS = 30

RECOMMEND_RESOLVE_VIOLATIONS = "Review and resolve compliance violations"
RECOMMEND_ADDRESS_VULNERABILITIES = "Address security vulnerabilities identified in testing"
RECOMMEND_MORE_CONTROLS = "Implement additional compliance monitoring controls"
RECOMMEND_TRAINING = "Enhance compliance training and awareness programs"
RECOMMEND_CONTINUE = "Continue current compliance and security practices"


@runtime_checkable
class AnalyticsProvider(Protocol):
    """Source of anonymized analytics for the report period."""

    async def anonymized_summary(self, start: datetime, end: datetime) -> dict[str, Any]: ...


def violation_groups(groups: list[AuditReportGroup]) -> list[AuditReportGroup]:
    return [g for g in groups if any(is_violation_flag(flag) for flag in g.compliance_flags)]


def audit_score(flagged: int) -> float:
    return float(max(0, 100 - flagged * 10))


def risk_from_score(score: float) -> RiskLevel:
    if score <= 0:
        return RiskLevel.CRITICAL
    if score < 50:
        return RiskLevel.HIGH
    if score < 90:
        return RiskLevel.MEDIUM
    return RiskLevel.LOW


def data_processing_status(flagged: int) -> str:
    if flagged == 0:
        return "compliant"
    if flagged < 5:
        return "minor_issues"
    return "non_compliant"


def gdpr_status(groups: list[AuditReportGroup]) -> str:
    gdpr_violations = sum(
        1 for g in violation_groups(groups) if FLAG_GDPR_RELEVANT in g.compliance_flags
    )
    if gdpr_violations == 0:
        return "compliant"
    if gdpr_violations < 3:
        return "minor_issues"
    return "non_compliant"


def build_recommendations(
    metrics: ComplianceMetrics, security: SecuritySummary, flagged: int
) -> list[str]:
    recommendations = []
    if metrics.violations > 0:
        recommendations.append(RECOMMEND_RESOLVE_VIOLATIONS)
    if security.total_vulnerabilities > 0:
        recommendations.append(RECOMMEND_ADDRESS_VULNERABILITIES)
    if flagged > 10:
        recommendations.append(RECOMMEND_MORE_CONTROLS)
    if metrics.compliance_score < 80:
        recommendations.append(RECOMMEND_TRAINING)
    if not recommendations:
        recommendations.append(RECOMMEND_CONTINUE)
    return recommendations


@dataclass(frozen=True)
class ComplianceReport:
    start_time: datetime
    end_time: datetime
    generated_at: datetime
    overall_score: int
    risk_level: RiskLevel
    audit_score: float
    compliance_score: float
    security_score: float
    data_processing_compliance: str
    audit_summary: AuditReport
    compliance_metrics: ComplianceMetrics
    security_summary: SecuritySummary
    data_retention_compliance: str
    gdpr_compliance: str
    encryption_status: str
    recommendations: list[str]
    anonymized_analytics: dict[str, Any] | None = None
    anonymization_status: str = "inactive"

    def to_dict(self) -> dict[str, Any]:
        return {
            "report_period": {
                "start_time": self.start_time.isoformat(),
                "end_time": self.end_time.isoformat(),
            },
            "generated_at": self.generated_at.isoformat(),
            "summary": {
                "overall_compliance_score": self.overall_score,
                "risk_level": self.risk_level.value,
                "total_audit_events": self.audit_summary.total_events,
                "compliance_violations": self.compliance_metrics.violations,
                "security_vulnerabilities": self.security_summary.total_vulnerabilities,
                "data_processing_compliance": self.data_processing_compliance,
            },
            "scores": {
                "audit": self.audit_score,
                "compliance": self.compliance_score,
                "security": self.security_score,
            },
            "audit_summary": self.audit_summary.to_dict(),
            "compliance_metrics": self.compliance_metrics.to_dict(),
            "security_summary": self.security_summary.to_dict(),
            "data_privacy": {
                "anonymization_status": self.anonymization_status,
                "data_retention_compliance": self.data_retention_compliance,
                "gdpr_compliance": self.gdpr_compliance,
                "encryption_status": self.encryption_status,
            },
            "anonymized_analytics": self.anonymized_analytics,
            "recommendations": list(self.recommendations),
        }


class ComplianceReporter:
    """Builds merged compliance reports.

    Args:
        audit: AuditService
        evaluator: RuleEvaluator providing rolling metrics
        runner: ProbeRunner providing the probe summary
        analytics: Optional AnalyticsProvider for anonymized analytics
    """

    def __init__(
        self,
        audit: AuditService,
        evaluator: RuleEvaluator,
        runner: ProbeRunner,
        analytics: AnalyticsProvider | None = None,
    ) -> None:
        self._audit = audit
        self._evaluator = evaluator
        self._runner = runner
        self._analytics = analytics

    async def report(self, start: datetime, end: datetime) -> ComplianceReport:
        """Generate a compliance report for [start, end].

        Raises:
            StorageError: If one of the stores cannot be read
        """
        start, end = ensure_utc(start), ensure_utc(end)

        audit_report = await self._audit.report(start, end)
        metrics = await self._evaluator.metrics(METRICS_PERIOD_DAYS)
        security = await self._runner.summary(start, end)
        analytics = await self._anonymized_analytics(start, end)

        flagged = len(violation_groups(audit_report.groups))
        scores = {
            "audit": audit_score(flagged),
            "compliance": metrics.compliance_score,
            "security": security.security_score,
        }
        overall = round(sum(scores.values()) / 3)
        risk = RiskLevel.worst(
            risk_from_score(scores["audit"]), metrics.risk_level, security.risk_level
        )

        report = ComplianceReport(
            start_time=start,
            end_time=end,
            generated_at=self._audit.now(),
            overall_score=overall,
            risk_level=risk,
            audit_score=scores["audit"],
            compliance_score=scores["compliance"],
            security_score=scores["security"],
            data_processing_compliance=data_processing_status(flagged),
            audit_summary=audit_report,
            compliance_metrics=metrics,
            security_summary=security,
            data_retention_compliance=await self._retention_status(),
            gdpr_compliance=gdpr_status(audit_report.groups),
            encryption_status="active" if self._audit.cipher.sensitive_fields else "inactive",
            recommendations=build_recommendations(metrics, security, flagged),
            anonymized_analytics=analytics,
            anonymization_status="active" if analytics is not None else "inactive",
        )

        await self._audit.log(
            "compliance_report",
            "audit_system",
            "report_generated",
            details={
                "reportPeriod": {"startTime": start.isoformat(), "endTime": end.isoformat()},
                "overallScore": overall,
                "riskLevel": risk.value,
            },
            severity=Severity.LOW,
            compliance_flags=["compliance_report"],
        )
        logger.info("Compliance report generated: score=%d risk=%s", overall, risk.value)
        return report

    async def _retention_status(self) -> str:
        try:
            stale = await self._audit.count_older_than(self._audit.retention_cutoff())
        except StorageError:
            logger.exception("Failed to check data retention compliance")
            return "unknown"
        return "compliant" if stale == 0 else "violation_detected"

    async def _anonymized_analytics(self, start: datetime, end: datetime) -> dict[str, Any] | None:
        if self._analytics is None:
            return None
        try:
            return await self._analytics.anonymized_summary(start, end)
        except Exception:
            logger.exception("Anonymized analytics unavailable for report")
            return None
