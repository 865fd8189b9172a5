"""Tests for RuleEvaluator: evaluation, de-duplication, metrics and resolution."""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio

from compliance_monitor.audit.factory import RequestContext, log_authentication, log_data_access
from compliance_monitor.audit.models import AuditQueryFilters, Severity
from compliance_monitor.errors import JobBusyError, ResolutionError
from compliance_monitor.rules.evaluator import (
    EVALUATION_JOB_ID,
    RuleEvaluator,
    build_dedupe_key,
    compute_metrics,
)
from compliance_monitor.rules.models import RiskLevel
from compliance_monitor.rules.registry import RuleRegistry, load_rule_catalog


@pytest.fixture
def evaluator(audit, session_factory, sink, scheduler, clock):
    return RuleEvaluator(
        audit,
        RuleRegistry(load_rule_catalog()),
        session_factory,
        sink,
        scheduler=scheduler,
        clock=clock,
    )


async def log_failed_logins(audit, count, ip="10.0.0.5"):
    ctx = RequestContext(ip_address=ip)
    for _ in range(count):
        await log_authentication(
            audit, "login", user_id="victim", details={"success": False}, context=ctx
        )


@pytest_asyncio.fixture
async def brute_force_violation(evaluator, audit):
    await log_failed_logins(audit, 6)
    [violation] = await evaluator.evaluate()
    return violation


class TestEvaluate:
    """Tests for RuleEvaluator.evaluate."""

    @pytest.mark.asyncio
    async def test_failed_logins_from_one_ip(self, evaluator, audit):
        """Six failed logins from one IP produce one violation with six events."""
        await log_failed_logins(audit, 6)

        violations = await evaluator.evaluate()

        assert len(violations) == 1
        violation = violations[0]
        assert violation.rule_id == "failed_authentication_threshold"
        assert violation.severity == Severity.MEDIUM
        assert len(violation.evidence) == 6
        assert violation.id.startswith("failed_authentication_threshold_")
        assert "10.0.0.5" in violation.description

    @pytest.mark.asyncio
    async def test_below_threshold_is_clean(self, evaluator, audit):
        """Four failures stay below the default threshold of five."""
        await log_failed_logins(audit, 4)
        assert await evaluator.evaluate() == []

    @pytest.mark.asyncio
    async def test_persisting_condition_is_stored_once(self, evaluator, audit, clock):
        """Re-evaluating the same condition does not duplicate it."""
        await log_failed_logins(audit, 6)

        first = await evaluator.evaluate()
        clock.advance(minutes=1)
        second = await evaluator.evaluate()

        assert len(first) == 1
        assert second == []
        assert len(await evaluator.list_violations()) == 1

    @pytest.mark.asyncio
    async def test_new_violations_reach_audit_trail(self, evaluator, audit):
        """Each new violation is re-emitted as a flagged audit event."""
        await log_failed_logins(audit, 6)
        [violation] = await evaluator.evaluate()

        [event] = await audit.query(AuditQueryFilters(event_type="compliance_violation"))
        assert event.action == "violation_detected"
        assert event.has_flag("compliance_violation")
        assert event.details["violationId"] == violation.id
        assert event.details["eventCount"] == 6

    @pytest.mark.asyncio
    async def test_disabled_rule_is_skipped(self, evaluator, audit):
        """Disabled rules are not evaluated."""
        evaluator.registry.set_enabled("failed_authentication_threshold", False)
        await log_failed_logins(audit, 6)

        assert await evaluator.evaluate() == []

    @pytest.mark.asyncio
    async def test_events_outside_window_are_ignored(self, evaluator, audit, clock):
        """The failed-login rule reads a 15 minute window."""
        await log_failed_logins(audit, 6)
        clock.advance(minutes=16)

        assert await evaluator.evaluate() == []

    @pytest.mark.asyncio
    async def test_failing_detector_does_not_stop_other_rules(
        self, audit, session_factory, sink, clock
    ):
        """A rule whose detector raises is logged and skipped."""
        consent = MagicMock()
        consent.has_valid_consent = AsyncMock(side_effect=RuntimeError("consent registry down"))
        evaluator = RuleEvaluator(
            audit,
            RuleRegistry(load_rule_catalog()),
            session_factory,
            sink,
            consent=consent,
            clock=clock,
        )
        await log_data_access(audit, "u1", "user_profile", "process", details={"personalData": {"a": 1}})
        await log_failed_logins(audit, 5)

        violations = await evaluator.evaluate()

        assert [v.rule_id for v in violations] == ["failed_authentication_threshold"]
        consent.has_valid_consent.assert_awaited()

    @pytest.mark.asyncio
    async def test_consent_violation(self, audit, session_factory, sink, clock):
        """GDPR processing by a non-consenting user is a critical violation."""
        consent = MagicMock()
        consent.has_valid_consent = AsyncMock(return_value=False)
        evaluator = RuleEvaluator(
            audit,
            RuleRegistry(load_rule_catalog()),
            session_factory,
            sink,
            consent=consent,
            clock=clock,
        )
        await log_data_access(audit, "u1", "user_profile", "process", details={"personalData": {"a": 1}})

        [violation] = await evaluator.evaluate()
        assert violation.rule_id == "gdpr_consent_violation"
        assert violation.severity == Severity.CRITICAL

    @pytest.mark.asyncio
    async def test_retention_violation(self, audit, session_factory, sink, clock):
        """Events past retention are reported once per cutoff day."""
        evaluator = RuleEvaluator(
            audit,
            RuleRegistry(load_rule_catalog()),
            session_factory,
            sink,
            retention_days=30,
            clock=clock,
        )
        await audit.log("system", "scheduler", "tick")
        clock.advance(days=31)

        [violation] = await evaluator.evaluate()
        assert violation.rule_id == "data_retention_violation"
        assert violation.evidence == ()

        clock.advance(hours=1)
        assert await evaluator.evaluate() == []


class TestDedupeKey:
    """Tests for build_dedupe_key."""

    def test_format(self):
        """rule_id:group_key:anchor with a UTC ISO anchor."""
        from conftest import FIXED_NOW

        assert (
            build_dedupe_key("rule", "10.0.0.5", FIXED_NOW)
            == "rule:10.0.0.5:2026-01-15T12:00:00+00:00"
        )


class TestMetrics:
    """Tests for compliance metrics."""

    def test_high_violation_rate_is_critical(self):
        """12 violations over 100 events clamps the score at 0."""
        from conftest import FIXED_NOW

        metrics = compute_metrics(100, 12, FIXED_NOW, 30)

        assert metrics.violation_rate == pytest.approx(12.0)
        assert metrics.compliance_score == 0.0
        assert metrics.risk_level == RiskLevel.CRITICAL

    @pytest.mark.parametrize(
        "violations,score,risk",
        [
            (0, 100.0, RiskLevel.LOW),
            (1, 90.0, RiskLevel.LOW),
            (3, 70.0, RiskLevel.MEDIUM),
            (6, 40.0, RiskLevel.HIGH),
        ],
    )
    def test_rate_buckets(self, violations, score, risk):
        """Score loses 10 points per percent; risk buckets at 1/5/10 percent."""
        from conftest import FIXED_NOW

        metrics = compute_metrics(100, violations, FIXED_NOW, 30)
        assert metrics.compliance_score == pytest.approx(score)
        assert metrics.risk_level == risk

    def test_empty_store(self):
        """No events means a zero rate, not a division error."""
        from conftest import FIXED_NOW

        metrics = compute_metrics(0, 0, FIXED_NOW, 30)
        assert metrics.violation_rate == 0.0
        assert metrics.compliance_score == 100.0

    @pytest.mark.asyncio
    async def test_metrics_count_unresolved_violations(
        self, evaluator, brute_force_violation, clock
    ):
        """Resolved violations no longer count."""
        metrics = await evaluator.metrics(days=30)
        # 6 failed logins plus the re-emitted violation event
        assert metrics.total_events == 7
        assert metrics.violations == 1
        assert metrics.last_assessment == clock.now

        await evaluator.resolve(brute_force_violation.id, "admin")
        assert (await evaluator.metrics(days=30)).violations == 0


class TestResolve:
    """Tests for RuleEvaluator.resolve."""

    @pytest.mark.asyncio
    async def test_first_resolution_wins(self, evaluator, brute_force_violation, audit):
        """The second resolve is a no-op and keeps the first resolver."""
        assert await evaluator.resolve(brute_force_violation.id, "alice", "false positive")
        assert not await evaluator.resolve(brute_force_violation.id, "bob", "duplicate")

        stored = await evaluator.get_violation(brute_force_violation.id)
        assert stored.resolved
        assert stored.resolved_by == "alice"
        assert stored.notes == "false positive"

        events = await audit.query(AuditQueryFilters(action="violation_resolved"))
        assert len(events) == 1
        assert events[0].has_flag("violation_resolved")

    @pytest.mark.asyncio
    async def test_unknown_violation_raises(self, evaluator):
        """Resolving an unknown id is an error."""
        with pytest.raises(ResolutionError, match="not found"):
            await evaluator.resolve("missing", "alice")

    @pytest.mark.asyncio
    async def test_list_filters(self, evaluator, brute_force_violation):
        """Listing filters on resolution state, severity and rule."""
        assert len(await evaluator.list_violations(resolved=False)) == 1
        assert await evaluator.list_violations(severity=Severity.CRITICAL) == []
        assert await evaluator.list_violations(rule_id="unauthorized_export") == []

        await evaluator.resolve(brute_force_violation.id, "alice")
        assert await evaluator.list_violations(resolved=False) == []
        [resolved] = await evaluator.list_violations(resolved=True)
        assert resolved.to_dict()["resolved_by"] == "alice"


class TestScheduling:
    """Tests for start/stop."""

    def test_start_and_stop(self, evaluator, scheduler):
        """start registers one job; stop removes it."""
        evaluator.start(interval_minutes=15)
        evaluator.start(interval_minutes=5)

        assert evaluator.monitoring
        assert scheduler.job_ids() == [EVALUATION_JOB_ID]

        evaluator.stop()
        assert not evaluator.monitoring

    def test_start_without_scheduler(self, audit, session_factory, sink):
        """An evaluator without a scheduler can only be run on demand."""
        evaluator = RuleEvaluator(audit, RuleRegistry(), session_factory, sink)

        with pytest.raises(RuntimeError):
            evaluator.start()

    @pytest.mark.asyncio
    async def test_guarded_job_runs_evaluation(self, evaluator, audit):
        """A scheduler tick runs one evaluation."""
        await log_failed_logins(audit, 6)

        assert await evaluator.job.run_once()
        assert evaluator.job.runs == 1
        assert len(await evaluator.list_violations()) == 1

    @pytest.mark.asyncio
    async def test_check_now_refused_while_tick_runs(self, evaluator, audit, monkeypatch):
        """An on-demand check never overlaps a scheduled evaluation."""
        await log_failed_logins(audit, 6)
        release = asyncio.Event()
        started = asyncio.Event()
        read_window = evaluator._read_window

        async def blocking_read(rule, now):
            started.set()
            await release.wait()
            return await read_window(rule, now)

        monkeypatch.setattr(evaluator, "_read_window", blocking_read)
        tick = asyncio.create_task(evaluator.job.run_once())
        await started.wait()

        with pytest.raises(JobBusyError):
            await evaluator.check_now()

        release.set()
        assert await tick is True
        assert len(await evaluator.list_violations()) == 1
        assert await evaluator.check_now() == []
