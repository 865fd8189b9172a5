"""Tests for ProbeRunner: batches, error isolation, persistence and resolution."""

import asyncio
from datetime import timedelta

import pytest
import pytest_asyncio

from compliance_monitor.audit.models import AuditQueryFilters, Severity
from compliance_monitor.errors import ResolutionError
from compliance_monitor.probes.models import Cadence, ProbeCategory, ProbeStatus
from compliance_monitor.probes.registry import ProbeRegistry, load_probe_catalog
from compliance_monitor.probes.runner import CONTINUOUS_JOB_ID, DAILY_JOB_ID, ProbeRunner
from compliance_monitor.probes.simulator import SessionProbe, SimulatedResponse


class RaisingSimulator:
    """Every HTTP call fails; session checks succeed."""

    async def request(self, method, endpoint, data=None, **kwargs):
        raise RuntimeError("boom")

    async def session_ids_around_login(self):
        return SessionProbe(before="a", after="b")


class SlowSimulator:
    async def request(self, method, endpoint, data=None, **kwargs):
        await asyncio.sleep(5)
        return SimulatedResponse(200)

    async def session_ids_around_login(self):
        await asyncio.sleep(5)
        return SessionProbe(before="a", after="a")


class OverlapRecordingSimulator:
    """Answers every call and records calls that start while another is in flight.

    Calls from the rate-limit burst may overlap one another; any other
    overlap means two checks ran at the same time.
    """

    def __init__(self):
        self.active = []
        self.overlaps = []
        self.max_burst_in_flight = 0

    @staticmethod
    def _burst_call(label):
        return label.startswith("Rate Limit Test")

    async def _track(self, label):
        if any(not (self._burst_call(label) and self._burst_call(other)) for other in self.active):
            self.overlaps.append((label, list(self.active)))
        self.active.append(label)
        if self._burst_call(label):
            self.max_burst_in_flight = max(
                self.max_burst_in_flight, sum(1 for a in self.active if self._burst_call(a))
            )
        await asyncio.sleep(0)
        self.active.remove(label)

    async def request(self, method, endpoint, data=None, **kwargs):
        name = (data or {}).get("name")
        await self._track(name if isinstance(name, str) else f"{method} {endpoint}")
        return SimulatedResponse(200)

    async def session_ids_around_login(self):
        await self._track("login")
        return SessionProbe(before="a", after="b")



def make_runner(simulator, audit, session_factory, sink, clock, **kwargs):
    return ProbeRunner(
        ProbeRegistry(load_probe_catalog()),
        simulator,
        audit,
        session_factory,
        sink,
        clock=clock,
        **kwargs,
    )


@pytest.fixture
def secure_runner(secure_simulator, audit, session_factory, sink, scheduler, clock):
    return make_runner(secure_simulator, audit, session_factory, sink, clock, scheduler=scheduler)


@pytest.fixture
def vulnerable_runner(vulnerable_simulator, audit, session_factory, sink, clock):
    return make_runner(vulnerable_simulator, audit, session_factory, sink, clock)


@pytest_asyncio.fixture
async def vulnerable_results(vulnerable_runner):
    return await vulnerable_runner.run_all_tests()


class TestRunAllTests:
    """Tests for ProbeRunner.run_all_tests."""

    @pytest.mark.asyncio
    async def test_secure_surface_passes(self, secure_runner):
        """Every enabled probe passes against the hardened sandbox."""
        results = await secure_runner.run_all_tests()

        assert len(results) == 10
        assert {r.status for r in results} == {ProbeStatus.PASSED}
        assert len({r.run_id for r in results}) == 1

    @pytest.mark.asyncio
    async def test_vulnerable_surface_statuses(self, vulnerable_results):
        """Status follows the probe severity: high/critical fail, others warn."""
        statuses = {r.probe_id: r.status for r in vulnerable_results}

        assert statuses == {
            "sql_injection_test": ProbeStatus.FAILED,
            "xss_test": ProbeStatus.FAILED,
            "authentication_bypass_test": ProbeStatus.FAILED,
            "session_fixation_test": ProbeStatus.WARNING,
            "rate_limiting_test": ProbeStatus.WARNING,
            "data_exposure_test": ProbeStatus.WARNING,
            "csrf_test": ProbeStatus.WARNING,
            "input_validation_test": ProbeStatus.WARNING,
            "encryption_test": ProbeStatus.PASSED,
            "access_control_test": ProbeStatus.FAILED,
        }

    @pytest.mark.asyncio
    async def test_vulnerabilities_inherit_probe_metadata(self, vulnerable_results):
        """Vulnerabilities carry the probe's id, category, severity and run id."""
        sql = next(r for r in vulnerable_results if r.probe_id == "sql_injection_test")

        assert len(sql.vulnerabilities) == 4
        for vulnerability in sql.vulnerabilities:
            assert vulnerability.id.startswith("sql_injection_test_")
            assert vulnerability.category == ProbeCategory.INPUT_VALIDATION
            assert vulnerability.severity == Severity.CRITICAL
            assert vulnerability.run_id == sql.run_id

    @pytest.mark.asyncio
    async def test_raising_probes_become_errors(self, audit, session_factory, sink, clock):
        """A probe that raises yields an error result and the batch continues."""
        runner = make_runner(RaisingSimulator(), audit, session_factory, sink, clock)

        results = await runner.run_all_tests()

        assert len(results) == len(runner.registry.enabled())
        errors = [r for r in results if r.status == ProbeStatus.ERROR]
        assert {r.probe_id for r in results if r.status != ProbeStatus.ERROR} == {
            "session_fixation_test",
            "encryption_test",
        }
        assert all("boom" in r.error for r in errors)
        assert all(r.vulnerabilities == () for r in errors)

    @pytest.mark.asyncio
    async def test_timeout_becomes_error(self, audit, session_factory, sink, clock):
        """A probe exceeding its timeout is recorded as an error."""
        runner = make_runner(
            SlowSimulator(), audit, session_factory, sink, clock, timeout_seconds=0.05
        )
        for probe in runner.registry.list_all():
            if probe.id != "authentication_bypass_test":
                runner.registry.set_enabled(probe.id, False)

        [result] = await runner.run_all_tests()

        assert result.status == ProbeStatus.ERROR
        assert "timed out" in result.error
        assert result.to_dict()["error"] == result.error

    @pytest.mark.asyncio
    async def test_probes_run_one_at_a_time(self, audit, session_factory, sink, clock):
        """No check starts a request while another check has one in flight."""
        simulator = OverlapRecordingSimulator()
        runner = make_runner(simulator, audit, session_factory, sink, clock)

        results = await runner.run_all_tests()

        assert len(results) == 10
        assert simulator.overlaps == []
        assert simulator.max_burst_in_flight > 1

    @pytest.mark.asyncio
    async def test_disabled_probes_are_skipped(self, secure_runner):
        """Only enabled probes run."""
        secure_runner.registry.set_enabled("csrf_test", False)

        results = await secure_runner.run_all_tests()
        assert "csrf_test" not in {r.probe_id for r in results}
        assert len(results) == 9

    @pytest.mark.asyncio
    async def test_run_cadence(self, secure_runner):
        """run_cadence runs only the probes of that cadence."""
        continuous = await secure_runner.run_cadence(Cadence.CONTINUOUS)
        weekly = await secure_runner.run_cadence("weekly")

        assert {r.probe_id for r in continuous} == {
            "authentication_bypass_test",
            "data_exposure_test",
        }
        assert [r.probe_id for r in weekly] == ["encryption_test"]


class TestEscalation:
    """Tests for vulnerability escalation."""

    @pytest.mark.asyncio
    async def test_each_vulnerability_reaches_audit_trail(self, vulnerable_results, audit):
        """Every stored vulnerability is re-emitted once."""
        total = sum(len(r.vulnerabilities) for r in vulnerable_results)

        events = await audit.query(
            AuditQueryFilters(event_type="security_vulnerability", limit=None)
        )
        assert len(events) == total == 20
        assert all(e.has_flag("security_vulnerability") for e in events)
        assert {e.details["runId"] for e in events} == {vulnerable_results[0].run_id}


class TestReads:
    """Tests for summary, history and vulnerability listing."""

    @pytest.mark.asyncio
    async def test_summary(self, vulnerable_runner, vulnerable_results, clock):
        """Summary counts statuses and vulnerabilities in the period."""
        summary = await vulnerable_runner.summary(clock.now - timedelta(hours=1), clock.now)

        assert summary.total_tests == 10
        assert (summary.passed, summary.failed, summary.warnings, summary.errors) == (1, 4, 5, 0)
        assert summary.total_vulnerabilities == 20
        assert summary.security_score == pytest.approx(10.0)
        assert summary.last_run_at == clock.now
        assert summary.to_dict()["risk_level"] == "critical"

    @pytest.mark.asyncio
    async def test_summary_of_empty_period(self, secure_runner, clock):
        """With no runs the score is 100."""
        summary = await secure_runner.summary(clock.now - timedelta(days=1), clock.now)

        assert summary.total_tests == 0
        assert summary.security_score == 100.0
        assert summary.last_run_at is None
        assert await secure_runner.last_run_at() is None

    @pytest.mark.asyncio
    async def test_history(self, secure_runner, clock):
        """History lists executions, optionally for one probe."""
        await secure_runner.run_all_tests()
        clock.advance(minutes=5)
        await secure_runner.run_cadence(Cadence.CONTINUOUS)

        history = await secure_runner.history(days=1)
        assert len(history) == 12
        assert history[0]["timestamp"] == clock.now.isoformat()

        csrf = await secure_runner.history(days=1, probe_id="csrf_test")
        assert [h["status"] for h in csrf] == ["passed"]

    @pytest.mark.asyncio
    async def test_list_vulnerabilities_filters(self, vulnerable_runner, vulnerable_results):
        """Listing filters on severity and category."""
        critical = await vulnerable_runner.list_vulnerabilities(severity="critical")
        session = await vulnerable_runner.list_vulnerabilities(
            category=ProbeCategory.SESSION_MANAGEMENT
        )

        assert len(critical) == 6
        assert [v.probe_id for v in session] == ["session_fixation_test"]


class TestResolveVulnerability:
    """Tests for ProbeRunner.resolve_vulnerability."""

    @pytest.mark.asyncio
    async def test_first_resolution_wins(self, vulnerable_runner, vulnerable_results, audit):
        """Resolving twice keeps the first resolver and logs once."""
        target = next(r for r in vulnerable_results if r.vulnerabilities).vulnerabilities[0]

        assert await vulnerable_runner.resolve_vulnerability(target.id, "alice", "patched")
        assert not await vulnerable_runner.resolve_vulnerability(target.id, "bob")

        [stored] = [
            v
            for v in await vulnerable_runner.list_vulnerabilities(resolved=True)
            if v.id == target.id
        ]
        assert stored.resolved_by == "alice"
        assert stored.mitigation == "patched"

        events = await audit.query(AuditQueryFilters(action="vulnerability_resolved"))
        assert len(events) == 1

    @pytest.mark.asyncio
    async def test_unknown_vulnerability_raises(self, secure_runner):
        """Unknown ids raise ResolutionError."""
        with pytest.raises(ResolutionError):
            await secure_runner.resolve_vulnerability("missing", "alice")


class TestCleanup:
    """Tests for probe history retention."""

    @pytest.mark.asyncio
    async def test_cleanup_keeps_vulnerabilities(
        self, vulnerable_runner, vulnerable_results, clock
    ):
        """Old execution history is deleted; vulnerabilities stay."""
        clock.advance(days=91)

        assert await vulnerable_runner.cleanup_results(retention_days=90) == 10
        assert await vulnerable_runner.cleanup_results(retention_days=90) == 0
        assert len(await vulnerable_runner.list_vulnerabilities()) == 20


class TestAutomation:
    """Tests for start_automation / stop_automation."""

    def test_start_registers_both_schedules(self, secure_runner, scheduler):
        """Continuous and daily jobs are scheduled once."""
        secure_runner.start_automation(continuous_interval_minutes=5)
        secure_runner.start_automation(continuous_interval_minutes=1)

        assert secure_runner.automation_active
        assert sorted(scheduler.job_ids()) == sorted([CONTINUOUS_JOB_ID, DAILY_JOB_ID])

        secure_runner.stop_automation()
        assert not secure_runner.automation_active
        assert scheduler.job_ids() == []

    def test_start_without_scheduler(self, vulnerable_runner):
        """A runner without a scheduler cannot automate."""
        with pytest.raises(RuntimeError):
            vulnerable_runner.start_automation()

    @pytest.mark.asyncio
    async def test_continuous_job_runs_continuous_probes(self, secure_runner):
        """The continuous job runs the continuous cadence."""
        assert await secure_runner.continuous_job.run_once()
        history = await secure_runner.history(days=1)
        assert {h["probe_id"] for h in history} == {
            "authentication_bypass_test",
            "data_exposure_test",
        }
