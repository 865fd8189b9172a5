"""ProbeRunner: executes security probes and escalates their findings.

Runs are sequential within a batch to bound load on the system under
test. Each probe executes under its own timeout; a probe that raises or
times out yields a result with status error and no vulnerabilities, and
the batch continues.

Schedules:
    continuous probes: every continuous_interval_minutes (default 5)
    daily probes: once a day at local midnight
    weekly / monthly probes: on demand only (run_all_tests, run_cadence)
"""

from __future__ import annotations

import asyncio
import logging
import time
from datetime import datetime, timedelta
from uuid import uuid4

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from compliance_monitor.audit.models import Severity
from compliance_monitor.audit.service import AuditService
from compliance_monitor.errors import ProbeExecutionError, ResolutionError, StorageError
from compliance_monitor.escalation.models import Finding, FindingKind
from compliance_monitor.escalation.sink import EscalationSink
from compliance_monitor.models.security import SecurityTestResultRecord, SecurityVulnerabilityRecord
from compliance_monitor.probes.checks import ProbeContext, get_check
from compliance_monitor.probes.models import (
    Cadence,
    ProbeCategory,
    ProbeStatus,
    SecurityProbeDefinition,
    SecuritySummary,
    SecurityTestResult,
    SecurityVulnerability,
    derive_status,
)
from compliance_monitor.probes.registry import ProbeRegistry
from compliance_monitor.probes.repository import ProbeResultRepository
from compliance_monitor.probes.simulator import RequestSimulator
from compliance_monitor.utils.timeutil import Clock, ensure_utc, utc_now
from compliance_monitor.workers.scheduler import GuardedJob, MonitorScheduler

logger = logging.getLogger(__name__)

CONTINUOUS_JOB_ID = "security_probes_continuous"
DAILY_JOB_ID = "security_probes_daily"
DEFAULT_CONTINUOUS_INTERVAL_MINUTES = 5
DEFAULT_TIMEOUT_SECONDS = 30.0
DEFAULT_RESULT_RETENTION_DAYS = 90


def vulnerability_from_record(record: SecurityVulnerabilityRecord) -> SecurityVulnerability:
    return SecurityVulnerability(
        id=record.id,
        probe_id=record.probe_id,
        probe_name=record.probe_name,
        category=ProbeCategory(record.category),
        severity=Severity(record.severity),
        description=record.description,
        evidence=record.evidence or {},
        detected_at=ensure_utc(record.detected_at),
        run_id=record.run_id,
        resolved=record.resolved,
        resolved_at=ensure_utc(record.resolved_at) if record.resolved_at else None,
        resolved_by=record.resolved_by,
        mitigation=record.mitigation,
    )


class ProbeRunner:
    """Runs security probes through a RequestSimulator.

    Args:
        registry: ProbeRegistry with the probe catalogue
        simulator: RequestSimulator bound to a sandbox surface
        audit: AuditService (stored payload sampling and resolution events)
        session_factory: async_sessionmaker for probe result tables
        sink: EscalationSink for vulnerabilities
        scheduler: MonitorScheduler used by start_automation()
        timeout_seconds: Per-probe timeout
        clock: Source of the current UTC time

    Example:
        >>> runner = ProbeRunner(registry, simulator, audit, session_factory, sink, scheduler)
        >>> results = await runner.run_all_tests()
        >>> runner.start_automation()
    """

    def __init__(
        self,
        registry: ProbeRegistry,
        simulator: RequestSimulator,
        audit: AuditService,
        session_factory: async_sessionmaker[AsyncSession],
        sink: EscalationSink,
        scheduler: MonitorScheduler | None = None,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        clock: Clock = utc_now,
    ) -> None:
        self.registry = registry
        self._context = ProbeContext(simulator=simulator, audit=audit)
        self._audit = audit
        self._session_factory = session_factory
        self._sink = sink
        self._scheduler = scheduler
        self.timeout_seconds = timeout_seconds
        self._clock = clock
        self.continuous_job = GuardedJob(
            CONTINUOUS_JOB_ID, lambda: self.run_cadence(Cadence.CONTINUOUS)
        )
        self.daily_job = GuardedJob(DAILY_JOB_ID, lambda: self.run_cadence(Cadence.DAILY))

    def _now(self) -> datetime:
        return ensure_utc(self._clock())

    # -------------------------------------------------------------------------
    # Scheduling
    # -------------------------------------------------------------------------

    @property
    def automation_active(self) -> bool:
        return self._scheduler is not None and (
            self._scheduler.has_job(CONTINUOUS_JOB_ID) or self._scheduler.has_job(DAILY_JOB_ID)
        )

    def start_automation(
        self, continuous_interval_minutes: float = DEFAULT_CONTINUOUS_INTERVAL_MINUTES
    ) -> None:
        """Schedule continuous and daily probes, replacing existing schedules."""
        if self._scheduler is None:
            raise RuntimeError("ProbeRunner has no scheduler configured")
        self._scheduler.add_interval_job(
            CONTINUOUS_JOB_ID,
            "Run continuous security probes",
            self.continuous_job,
            continuous_interval_minutes,
        )
        self._scheduler.add_cron_job(
            DAILY_JOB_ID, "Run daily security probes", self.daily_job, hour=0, minute=0
        )
        logger.info("Automated security testing started")

    def stop_automation(self) -> None:
        if self._scheduler is None:
            return
        removed = self._scheduler.remove_job(CONTINUOUS_JOB_ID)
        removed = self._scheduler.remove_job(DAILY_JOB_ID) or removed
        if removed:
            logger.info("Automated security testing stopped")

    # -------------------------------------------------------------------------
    # Execution
    # -------------------------------------------------------------------------

    async def run_all_tests(self) -> list[SecurityTestResult]:
        """Run every enabled probe once.

        Returns:
            One result per enabled probe, in registry order
        """
        return await self._run_batch(self.registry.enabled())

    async def run_cadence(self, cadence: Cadence | str) -> list[SecurityTestResult]:
        """Run the enabled probes of one cadence."""
        return await self._run_batch(self.registry.enabled(Cadence(cadence)))

    async def _run_batch(self, probes: list[SecurityProbeDefinition]) -> list[SecurityTestResult]:
        run_id = str(uuid4())
        logger.info("Starting security probe run %s (%d probes)", run_id, len(probes))

        results = [await self._execute(probe, run_id) for probe in probes]

        findings: list[Finding] = []
        for result in results:
            if await self._store(result) and result.vulnerabilities:
                findings.extend(self._to_finding(v) for v in result.vulnerabilities)

        if findings:
            await self._sink.handle(findings)

        logger.info(
            "Security probe run %s complete: %d passed, %d failed, %d warnings, %d errors",
            run_id,
            sum(1 for r in results if r.status == ProbeStatus.PASSED),
            sum(1 for r in results if r.status == ProbeStatus.FAILED),
            sum(1 for r in results if r.status == ProbeStatus.WARNING),
            sum(1 for r in results if r.status == ProbeStatus.ERROR),
        )
        return results

    async def _execute(self, probe: SecurityProbeDefinition, run_id: str) -> SecurityTestResult:
        started = time.perf_counter()
        check = get_check(probe.kind)
        try:
            candidates = await asyncio.wait_for(
                check(probe, self._context), timeout=self.timeout_seconds
            )
        except asyncio.TimeoutError:
            error = ProbeExecutionError(probe.id, f"timed out after {self.timeout_seconds}s")
        except Exception as e:
            error = ProbeExecutionError(probe.id, str(e) or type(e).__name__)
        else:
            timestamp = self._now()
            vulnerabilities = tuple(
                SecurityVulnerability(
                    id=f"{probe.id}_{uuid4().hex[:16]}",
                    probe_id=probe.id,
                    probe_name=probe.name,
                    category=probe.category,
                    severity=probe.severity,
                    description=candidate.description,
                    evidence=candidate.evidence,
                    detected_at=timestamp,
                    run_id=run_id,
                )
                for candidate in candidates
            )
            return SecurityTestResult(
                run_id=run_id,
                probe_id=probe.id,
                probe_name=probe.name,
                status=derive_status(vulnerabilities),
                vulnerabilities=vulnerabilities,
                execution_time_ms=(time.perf_counter() - started) * 1000,
                timestamp=timestamp,
            )

        logger.error("Security probe %s failed: %s", probe.id, error)
        return SecurityTestResult(
            run_id=run_id,
            probe_id=probe.id,
            probe_name=probe.name,
            status=ProbeStatus.ERROR,
            vulnerabilities=(),
            execution_time_ms=(time.perf_counter() - started) * 1000,
            timestamp=self._now(),
            error=str(error),
        )

    async def _store(self, result: SecurityTestResult) -> bool:
        record = SecurityTestResultRecord(
            run_id=result.run_id,
            probe_id=result.probe_id,
            probe_name=result.probe_name,
            status=result.status.value,
            vulnerabilities_count=len(result.vulnerabilities),
            execution_time_ms=result.execution_time_ms,
            timestamp=result.timestamp,
        )
        vulnerability_records = [
            SecurityVulnerabilityRecord(
                id=v.id,
                run_id=result.run_id,
                probe_id=v.probe_id,
                probe_name=v.probe_name,
                category=v.category.value,
                severity=v.severity.value,
                description=v.description,
                evidence=v.evidence,
                detected_at=v.detected_at,
            )
            for v in result.vulnerabilities
        ]
        try:
            async with self._session_factory() as session:
                await ProbeResultRepository(session).record_result(record, vulnerability_records)
        except SQLAlchemyError:
            logger.exception("Failed to store security probe result for %s", result.probe_id)
            return False
        return True

    @staticmethod
    def _to_finding(vulnerability: SecurityVulnerability) -> Finding:
        return Finding(
            kind=FindingKind.VULNERABILITY,
            finding_id=vulnerability.id,
            source_id=vulnerability.probe_id,
            source_name=vulnerability.probe_name,
            severity=vulnerability.severity,
            description=vulnerability.description,
            key=f"{vulnerability.probe_id}:{vulnerability.description}",
            details={"category": vulnerability.category.value, "runId": vulnerability.run_id},
        )

    # -------------------------------------------------------------------------
    # Reads, resolution and cleanup
    # -------------------------------------------------------------------------

    async def summary(self, start: datetime, end: datetime) -> SecuritySummary:
        start, end = ensure_utc(start), ensure_utc(end)
        try:
            async with self._session_factory() as session:
                row = await ProbeResultRepository(session).summary(start, end)
        except SQLAlchemyError as e:
            raise StorageError("Security summary calculation failed") from e
        return SecuritySummary(
            start_time=start,
            end_time=end,
            total_tests=row.total,
            passed=row.passed,
            failed=row.failed,
            warnings=row.warnings,
            errors=row.errors,
            total_vulnerabilities=row.vulnerabilities,
            last_run_at=ensure_utc(row.last_run_at) if row.last_run_at else None,
        )

    async def last_run_at(self) -> datetime | None:
        try:
            async with self._session_factory() as session:
                value = await ProbeResultRepository(session).last_run_at()
        except SQLAlchemyError as e:
            raise StorageError("Security probe history lookup failed") from e
        return ensure_utc(value) if value else None

    async def list_vulnerabilities(
        self,
        resolved: bool | None = None,
        severity: Severity | str | None = None,
        category: ProbeCategory | str | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[SecurityVulnerability]:
        try:
            async with self._session_factory() as session:
                records = await ProbeResultRepository(session).list_vulnerabilities(
                    resolved=resolved,
                    severity=Severity(severity).value if severity is not None else None,
                    category=ProbeCategory(category).value if category is not None else None,
                    limit=limit,
                    offset=offset,
                )
        except SQLAlchemyError as e:
            raise StorageError("Vulnerability listing failed") from e
        return [vulnerability_from_record(record) for record in records]

    async def history(self, days: int = 30, probe_id: str | None = None) -> list[dict]:
        """Probe executions from the last ``days`` days, newest first."""
        since = self._now() - timedelta(days=days)
        try:
            async with self._session_factory() as session:
                records = await ProbeResultRepository(session).history(since, probe_id)
        except SQLAlchemyError as e:
            raise StorageError("Security probe history lookup failed") from e
        return [
            {
                "run_id": r.run_id,
                "probe_id": r.probe_id,
                "probe_name": r.probe_name,
                "status": r.status,
                "vulnerabilities_count": r.vulnerabilities_count,
                "execution_time_ms": r.execution_time_ms,
                "timestamp": ensure_utc(r.timestamp).isoformat(),
            }
            for r in records
        ]

    async def resolve_vulnerability(
        self, vulnerability_id: str, resolved_by: str, mitigation: str | None = None
    ) -> bool:
        """Resolve a vulnerability; same first-resolver-wins policy as violations.

        Raises:
            ResolutionError: If the vulnerability doesn't exist or the update fails
        """
        try:
            async with self._session_factory() as session:
                repo = ProbeResultRepository(session)
                if await repo.get_vulnerability(vulnerability_id) is None:
                    raise ResolutionError(f"Security vulnerability '{vulnerability_id}' not found")
                resolved = await repo.resolve_vulnerability(
                    vulnerability_id, resolved_by, mitigation, self._now()
                )
        except SQLAlchemyError as e:
            raise ResolutionError(
                f"Vulnerability resolution failed for '{vulnerability_id}'"
            ) from e

        if not resolved:
            logger.info("Vulnerability %s already resolved; keeping first resolution", vulnerability_id)
            return False

        await self._audit.log(
            "security_vulnerability",
            "security_system",
            "vulnerability_resolved",
            details={
                "vulnerabilityId": vulnerability_id,
                "resolvedBy": resolved_by,
                "mitigation": mitigation,
            },
            severity=Severity.LOW,
            compliance_flags=["vulnerability_resolved"],
        )
        return True

    async def cleanup_results(self, retention_days: int = DEFAULT_RESULT_RETENTION_DAYS) -> int:
        """Delete probe execution history older than retention_days. Vulnerabilities are kept."""
        cutoff = self._now() - timedelta(days=retention_days)
        try:
            async with self._session_factory() as session:
                count = await ProbeResultRepository(session).delete_results_older_than(cutoff)
        except SQLAlchemyError as e:
            raise StorageError("Security test result cleanup failed") from e
        if count > 0:
            logger.info("Cleaned up %d old security test results", count)
        return count
