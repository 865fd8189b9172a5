"""Tests for ComplianceReporter scoring and the report audit trail."""

from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest

from conftest import FIXED_NOW
from compliance_monitor.audit.models import AuditQueryFilters, AuditReportGroup, Severity
from compliance_monitor.probes.registry import ProbeRegistry, load_probe_catalog
from compliance_monitor.probes.runner import ProbeRunner
from compliance_monitor.reporting.reporter import (
    RECOMMEND_ADDRESS_VULNERABILITIES,
    RECOMMEND_CONTINUE,
    RECOMMEND_MORE_CONTROLS,
    RECOMMEND_RESOLVE_VIOLATIONS,
    RECOMMEND_TRAINING,
    ComplianceReporter,
    audit_score,
    build_recommendations,
    data_processing_status,
    gdpr_status,
    risk_from_score,
)
from compliance_monitor.rules.evaluator import RuleEvaluator, compute_metrics
from compliance_monitor.rules.models import RiskLevel
from compliance_monitor.rules.registry import RuleRegistry, load_rule_catalog

START = FIXED_NOW - timedelta(days=1)
END = FIXED_NOW + timedelta(minutes=5)


def make_group(flags, event_type="data_access"):
    return AuditReportGroup(
        event_type=event_type,
        action="read",
        severity=Severity.MEDIUM,
        compliance_flags=tuple(flags),
        count=1,
        unique_users=1,
        first_occurrence=FIXED_NOW,
        last_occurrence=FIXED_NOW,
    )


def make_security(vulnerabilities=0):
    security = MagicMock()
    security.total_vulnerabilities = vulnerabilities
    return security


@pytest.fixture
def reporter_parts(audit, session_factory, sink, secure_simulator, clock):
    evaluator = RuleEvaluator(
        audit, RuleRegistry(load_rule_catalog()), session_factory, sink, clock=clock
    )
    runner = ProbeRunner(
        ProbeRegistry(load_probe_catalog()),
        secure_simulator,
        audit,
        session_factory,
        sink,
        clock=clock,
    )
    return evaluator, runner


@pytest.fixture
def reporter(audit, reporter_parts):
    evaluator, runner = reporter_parts
    return ComplianceReporter(audit, evaluator, runner)


class TestReport:
    """Tests for ComplianceReporter.report."""

    @pytest.mark.asyncio
    async def test_empty_period(self, reporter):
        """A clean period scores 100 everywhere and is low risk."""
        report = await reporter.report(START, END)

        assert report.overall_score == 100
        assert (report.audit_score, report.compliance_score, report.security_score) == (
            100.0,
            100.0,
            100.0,
        )
        assert report.risk_level == RiskLevel.LOW
        assert report.recommendations == [RECOMMEND_CONTINUE]
        assert report.data_processing_compliance == "compliant"
        assert report.data_retention_compliance == "compliant"
        assert report.gdpr_compliance == "compliant"
        assert report.encryption_status == "active"
        assert report.anonymization_status == "inactive"
        assert report.anonymized_analytics is None

    @pytest.mark.asyncio
    async def test_report_is_audited(self, reporter, audit):
        """Generating a report logs a report_generated event."""
        report = await reporter.report(START, END)

        [event] = await audit.query(AuditQueryFilters(action="report_generated"))
        assert event.event_type == "compliance_report"
        assert event.has_flag("compliance_report")
        assert event.details["overallScore"] == report.overall_score
        assert event.details["riskLevel"] == "low"

    @pytest.mark.asyncio
    async def test_flagged_groups_lower_audit_score(self, reporter, audit):
        """Three violation groups cost 30 audit points."""
        await audit.log("access_a", "r", "read", compliance_flags=["compliance_violation"])
        await audit.log(
            "access_b", "r", "read", compliance_flags=["compliance_violation", "gdpr_relevant"]
        )
        await audit.log("access_c", "r", "read", compliance_flags=["security_vulnerability"])
        await audit.log("access_d", "r", "read", compliance_flags=["gdpr_relevant"])

        report = await reporter.report(START, END)

        assert report.audit_score == 70.0
        assert report.overall_score == 90
        assert report.risk_level == RiskLevel.MEDIUM
        assert report.data_processing_compliance == "minor_issues"
        assert report.gdpr_compliance == "minor_issues"
        assert report.audit_summary.total_events == 4

    @pytest.mark.asyncio
    async def test_stale_events_break_retention(self, reporter, audit, clock):
        """Events older than the retention period are reported."""
        await audit.log("data_access", "r", "read")
        clock.advance(days=2556)

        report = await reporter.report(clock.now - timedelta(days=1), clock.now)

        assert report.data_retention_compliance == "violation_detected"

    @pytest.mark.asyncio
    async def test_to_dict_sections(self, reporter):
        payload = (await reporter.report(START, END)).to_dict()

        assert payload["summary"]["overall_compliance_score"] == 100
        assert payload["data_privacy"]["encryption_status"] == "active"
        assert set(payload) >= {"audit_summary", "compliance_metrics", "security_summary"}


class TestAnonymizedAnalytics:
    """Tests for the optional analytics section."""

    @pytest.mark.asyncio
    async def test_analytics_included(self, audit, reporter_parts):
        analytics = MagicMock()
        analytics.anonymized_summary = AsyncMock(return_value={"sessions": 12})
        reporter = ComplianceReporter(audit, *reporter_parts, analytics=analytics)

        report = await reporter.report(START, END)

        assert report.anonymized_analytics == {"sessions": 12}
        assert report.anonymization_status == "active"

    @pytest.mark.asyncio
    async def test_analytics_failure_is_omitted(self, audit, reporter_parts):
        """A failing analytics source does not fail the report."""
        analytics = MagicMock()
        analytics.anonymized_summary = AsyncMock(side_effect=RuntimeError("offline"))
        reporter = ComplianceReporter(audit, *reporter_parts, analytics=analytics)

        report = await reporter.report(START, END)

        assert report.anonymized_analytics is None
        assert report.anonymization_status == "inactive"


class TestScoringHelpers:
    """Tests for the pure scoring helpers."""

    @pytest.mark.parametrize(
        "flagged,expected", [(0, 100.0), (3, 70.0), (10, 0.0), (14, 0.0)]
    )
    def test_audit_score(self, flagged, expected):
        assert audit_score(flagged) == expected

    @pytest.mark.parametrize(
        "score,expected",
        [
            (0.0, RiskLevel.CRITICAL),
            (49.0, RiskLevel.HIGH),
            (50.0, RiskLevel.MEDIUM),
            (89.9, RiskLevel.MEDIUM),
            (90.0, RiskLevel.LOW),
        ],
    )
    def test_risk_from_score(self, score, expected):
        assert risk_from_score(score) == expected

    @pytest.mark.parametrize(
        "flagged,expected", [(0, "compliant"), (4, "minor_issues"), (5, "non_compliant")]
    )
    def test_data_processing_status(self, flagged, expected):
        assert data_processing_status(flagged) == expected

    def test_gdpr_status_counts_violation_groups_only(self):
        """gdpr_relevant alone is not a violation."""
        groups = [make_group(["gdpr_relevant"])] + [
            make_group(["gdpr_relevant", "compliance_violation"], f"t{i}") for i in range(3)
        ]

        assert gdpr_status(groups[:1]) == "compliant"
        assert gdpr_status(groups[:3]) == "minor_issues"
        assert gdpr_status(groups) == "non_compliant"

    def test_all_recommendations(self):
        """Every triggered recommendation is listed in order."""
        metrics = compute_metrics(10, 2, FIXED_NOW, 30)

        assert build_recommendations(metrics, make_security(3), flagged=11) == [
            RECOMMEND_RESOLVE_VIOLATIONS,
            RECOMMEND_ADDRESS_VULNERABILITIES,
            RECOMMEND_MORE_CONTROLS,
            RECOMMEND_TRAINING,
        ]

    def test_continue_when_clean(self):
        metrics = compute_metrics(10, 0, FIXED_NOW, 30)
        assert build_recommendations(metrics, make_security(), flagged=0) == [RECOMMEND_CONTINUE]
