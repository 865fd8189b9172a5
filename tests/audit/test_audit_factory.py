"""Tests for the convenience audit loggers and their severity/flag rules."""

import pytest

from compliance_monitor.audit.factory import (
    RequestContext,
    determine_compliance_flags,
    determine_severity,
    extract_data_fields,
    log_assessment_interaction,
    log_authentication,
    log_data_access,
)
from compliance_monitor.audit.models import Severity


class TestDetermineSeverity:
    """Tests for the data access severity rule."""

    @pytest.mark.parametrize(
        "action,resource,expected",
        [
            ("delete_account", "user_profile", Severity.HIGH),
            ("export", "user_profile", Severity.HIGH),
            ("update", "user_profile", Severity.MEDIUM),
            ("modify_settings", "settings", Severity.MEDIUM),
            ("read", "personal_details", Severity.MEDIUM),
            ("read", "sensitive_records", Severity.MEDIUM),
            ("read", "public_page", Severity.LOW),
        ],
    )
    def test_severity(self, action, resource, expected):
        """Deletes/exports are high, updates and personal resources medium."""
        assert determine_severity(action, resource) == expected


class TestDetermineComplianceFlags:
    """Tests for the data access flag rule."""

    def test_personal_data_is_gdpr_relevant(self):
        """personalData marks the event GDPR relevant."""
        flags = determine_compliance_flags("read", "profile", {"personalData": {"a": 1}})
        assert "gdpr_relevant" in flags

    def test_email_is_personal_identifier(self):
        """An email marks the event as carrying a personal identifier."""
        flags = determine_compliance_flags("read", "profile", {"email": "a@b.co"})
        assert flags == ["personal_identifier"]

    def test_export_delete_and_assessment(self):
        """Action and resource substrings add their flags."""
        assert "data_export" in determine_compliance_flags("export", "r", {})
        assert "data_deletion" in determine_compliance_flags("delete", "r", {})
        assert "assessment_data" in determine_compliance_flags("read", "assessment_results", {})

    def test_extract_data_fields(self):
        """Only present, truthy categories are listed."""
        assert extract_data_fields({"email": "a@b.co", "behavioralData": {"x": 1}}) == [
            "email",
            "behavioral_data",
        ]


class TestLogAuthentication:
    """Tests for log_authentication."""

    @pytest.mark.asyncio
    async def test_failed_login_is_flagged(self, audit):
        """Failed logins are medium and flagged failed_authentication."""
        ctx = RequestContext(ip_address="10.0.0.5", user_agent="curl/8")
        await log_authentication(audit, "login", user_id="u1", details={"success": False}, context=ctx)

        [event] = await audit.query()
        assert event.event_type == "authentication"
        assert event.resource == "auth_system"
        assert event.severity == Severity.MEDIUM
        assert event.has_flag("failed_authentication")
        assert event.ip_address == "10.0.0.5"
        assert event.details["loginMethod"] == "unknown"

    @pytest.mark.asyncio
    async def test_successful_login_is_unflagged(self, audit):
        """Successful logins are low with no flags."""
        await log_authentication(audit, "login", user_id="u1", details={"success": True})

        [event] = await audit.query()
        assert event.severity == Severity.LOW
        assert event.compliance_flags == frozenset()

    @pytest.mark.asyncio
    async def test_missing_success_counts_as_failure(self, audit):
        """An attempt without an explicit success marker is a failure."""
        await log_authentication(audit, "login")

        [event] = await audit.query()
        assert event.details["success"] is False


class TestLogDataAccess:
    """Tests for log_data_access."""

    @pytest.mark.asyncio
    async def test_export_event_shape(self, audit):
        """Exports are high severity with derived flags and fields."""
        await log_data_access(
            audit, "u1", "user_profile", "export", details={"email": "a@example.com"}
        )

        [event] = await audit.query()
        assert event.event_type == "data_access"
        assert event.severity == Severity.HIGH
        assert event.compliance_flags == {"data_export", "personal_identifier"}
        assert event.details["dataFields"] == ["email"]
        assert event.details["accessReason"] == "system_operation"
        assert event.details["email"] == "a@example.com"


class TestLogAssessmentInteraction:
    """Tests for log_assessment_interaction."""

    @pytest.mark.asyncio
    async def test_response_data_is_never_written(self, audit):
        """Raw responses are replaced by a marker."""
        await log_assessment_interaction(
            audit,
            "session-1",
            "u1",
            "complete_assessment",
            details={"responseData": {"q1": "yes"}, "behavioralData": {"clicks": 3}},
        )

        [event] = await audit.query()
        assert event.details["responseData"] == "encrypted"
        assert event.session_id == "session-1"
        assert event.compliance_flags == {
            "assessment_data",
            "behavioral_tracking",
            "data_processing",
        }
