"""RuleEvaluator: scheduled compliance rule evaluation.

This module provides the RuleEvaluator class that reads the audit store
for each enabled rule's window, runs the rule's detector, persists new
violations and hands them to the escalation sink.

Classes:
    RuleEvaluator: evaluate / metrics / resolve / list_violations, start / stop

De-duplication:
    A violation is identified by ``rule_id:group_key:anchor``. The key is a
    unique column; a condition that persists across ticks with the same
    anchor is stored once and only new violations are returned/escalated.

Resolution policy:
    Resolution is a conditional update. The first call wins and records an
    audit event; later calls are no-ops returning False and keep the first
    resolver's metadata. Unknown ids raise ResolutionError.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from uuid import uuid4

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from compliance_monitor.audit.models import AuditEvent, AuditQueryFilters, Severity
from compliance_monitor.audit.service import AuditService
from compliance_monitor.errors import ResolutionError, RuleDetectorError, StorageError
from compliance_monitor.escalation.models import Finding, FindingKind
from compliance_monitor.escalation.sink import EscalationSink
from compliance_monitor.models.violation import ComplianceViolationRecord
from compliance_monitor.rules.detectors import (
    AnonymousConsentPolicy,
    ConsentChecker,
    DetectorContext,
    ViolationCandidate,
    get_detector,
)
from compliance_monitor.rules.models import (
    ComplianceMetrics,
    ComplianceRule,
    ComplianceViolation,
    risk_from_violation_rate,
)
from compliance_monitor.rules.registry import RuleRegistry
from compliance_monitor.rules.repository import ViolationRepository
from compliance_monitor.utils.timeutil import Clock, ensure_utc, utc_now
from compliance_monitor.workers.scheduler import GuardedJob, MonitorScheduler

logger = logging.getLogger(__name__)

EVALUATION_JOB_ID = "compliance_evaluation"
DEFAULT_INTERVAL_MINUTES = 15


def build_dedupe_key(rule_id: str, group_key: str, anchor: datetime) -> str:
    return f"{rule_id}:{group_key}:{ensure_utc(anchor).isoformat()}"


def violation_from_record(record: ComplianceViolationRecord) -> ComplianceViolation:
    return ComplianceViolation(
        id=record.id,
        rule_id=record.rule_id,
        rule_name=record.rule_name,
        severity=Severity(record.severity),
        description=record.description,
        evidence=tuple(record.event_ids or ()),
        detected_at=ensure_utc(record.detected_at),
        dedupe_key=record.dedupe_key,
        resolved=record.resolved,
        resolved_at=ensure_utc(record.resolved_at) if record.resolved_at else None,
        resolved_by=record.resolved_by,
        notes=record.notes,
    )


class RuleEvaluator:
    """Evaluates compliance rules against the audit store.

    Args:
        audit: AuditService to read events from (and record resolutions in)
        registry: RuleRegistry with the rule catalogue
        session_factory: async_sessionmaker for the violations table
        sink: EscalationSink for new violations
        scheduler: MonitorScheduler used by start()/stop()
        consent: ConsentChecker for the consent rule (default: anonymous policy)
        retention_days: Retention period scanned by the retention rule
        clock: Source of the current UTC time

    Example:
        >>> evaluator = RuleEvaluator(audit, registry, session_factory, sink, scheduler)
        >>> violations = await evaluator.evaluate()
        >>> evaluator.start(interval_minutes=15)
    """

    def __init__(
        self,
        audit: AuditService,
        registry: RuleRegistry,
        session_factory: async_sessionmaker[AsyncSession],
        sink: EscalationSink,
        scheduler: MonitorScheduler | None = None,
        consent: ConsentChecker | None = None,
        retention_days: int | None = None,
        clock: Clock = utc_now,
    ) -> None:
        self.audit = audit
        self.registry = registry
        self._session_factory = session_factory
        self._sink = sink
        self._scheduler = scheduler
        self._consent = consent or AnonymousConsentPolicy()
        self.retention_days = retention_days if retention_days is not None else audit.retention_days
        self._clock = clock
        self.job = GuardedJob(EVALUATION_JOB_ID, self.evaluate)

    def _now(self) -> datetime:
        return ensure_utc(self._clock())

    # -------------------------------------------------------------------------
    # Scheduling
    # -------------------------------------------------------------------------

    @property
    def monitoring(self) -> bool:
        return self._scheduler is not None and self._scheduler.has_job(EVALUATION_JOB_ID)

    def start(self, interval_minutes: float = DEFAULT_INTERVAL_MINUTES) -> None:
        """Schedule evaluation every interval_minutes, replacing any existing schedule."""
        if self._scheduler is None:
            raise RuntimeError("RuleEvaluator has no scheduler configured")
        self._scheduler.add_interval_job(
            EVALUATION_JOB_ID, "Evaluate compliance rules", self.job, interval_minutes
        )
        logger.info("Compliance monitoring started with %s minute intervals", interval_minutes)

    def stop(self) -> None:
        """Cancel future evaluation ticks; a running evaluation completes."""
        if self._scheduler is not None and self._scheduler.remove_job(EVALUATION_JOB_ID):
            logger.info("Compliance monitoring stopped")

    # -------------------------------------------------------------------------
    # Evaluation
    # -------------------------------------------------------------------------

    async def evaluate(self) -> list[ComplianceViolation]:
        """Evaluate every enabled rule once.

        Each rule is isolated: a failing query or detector is logged and the
        remaining rules still run.

        Returns:
            Violations newly stored by this evaluation
        """
        now = self._now()
        ctx = DetectorContext(
            now=now, audit=self.audit, consent=self._consent, retention_days=self.retention_days
        )
        new_violations: list[ComplianceViolation] = []

        for rule in self.registry.enabled():
            try:
                candidates = await self._check_rule(rule, ctx)
            except RuleDetectorError as e:
                logger.error("Error checking compliance rule %s: %s", rule.id, e)
                continue

            for candidate in candidates:
                violation = self._build_violation(rule, candidate, now)
                if await self._store(violation):
                    new_violations.append(violation)

        if new_violations:
            logger.warning("Detected %d compliance violations", len(new_violations))
            await self._sink.handle([self._to_finding(v) for v in new_violations])

        return new_violations

    async def check_now(self) -> list[ComplianceViolation]:
        """Evaluate on demand, sharing the scheduled job's busy guard.

        Raises:
            JobBusyError: If a scheduled or on-demand evaluation is running
        """
        return await self.job.run_exclusive()

    async def _check_rule(
        self, rule: ComplianceRule, ctx: DetectorContext
    ) -> list[ViolationCandidate]:
        try:
            events = await self._read_window(rule, ctx.now)
            return await get_detector(rule.kind)(rule, events, ctx)
        except Exception as e:
            raise RuleDetectorError(rule.id, str(e)) from e

    async def _read_window(self, rule: ComplianceRule, now: datetime) -> list[AuditEvent]:
        """Read the rule's window, applying its exact-match conditions."""
        conditions = rule.conditions
        filters = AuditQueryFilters(
            event_type=conditions.event_types[0] if len(conditions.event_types) == 1 else None,
            action=conditions.actions[0] if len(conditions.actions) == 1 else None,
            resource=conditions.resources[0] if len(conditions.resources) == 1 else None,
            start_time=now - timedelta(minutes=conditions.window_minutes),
            end_time=now,
            limit=None,
        )
        events = await self.audit.query(filters)
        return [
            event
            for event in events
            if (not conditions.event_types or event.event_type in conditions.event_types)
            and (not conditions.actions or event.action in conditions.actions)
            and (not conditions.resources or event.resource in conditions.resources)
        ]

    def _build_violation(
        self, rule: ComplianceRule, candidate: ViolationCandidate, now: datetime
    ) -> ComplianceViolation:
        return ComplianceViolation(
            id=f"{rule.id}_{uuid4().hex[:16]}",
            rule_id=rule.id,
            rule_name=rule.name,
            severity=rule.severity,
            description=candidate.description,
            evidence=candidate.evidence,
            detected_at=now,
            dedupe_key=build_dedupe_key(rule.id, candidate.group_key, candidate.anchor),
        )

    async def _store(self, violation: ComplianceViolation) -> bool:
        record = ComplianceViolationRecord(
            id=violation.id,
            rule_id=violation.rule_id,
            rule_name=violation.rule_name,
            severity=violation.severity.value,
            description=violation.description,
            event_ids=list(violation.evidence),
            dedupe_key=violation.dedupe_key,
            detected_at=violation.detected_at,
        )
        try:
            async with self._session_factory() as session:
                inserted = await ViolationRepository(session).insert_if_absent(record)
        except SQLAlchemyError:
            logger.exception("Failed to store compliance violation %s", violation.id)
            return False

        if not inserted:
            logger.debug("Violation %s already recorded", violation.dedupe_key)
        return inserted

    @staticmethod
    def _to_finding(violation: ComplianceViolation) -> Finding:
        return Finding(
            kind=FindingKind.VIOLATION,
            finding_id=violation.id,
            source_id=violation.rule_id,
            source_name=violation.rule_name,
            severity=violation.severity,
            description=violation.description,
            key=violation.dedupe_key,
            details={"eventCount": len(violation.evidence)},
        )

    # -------------------------------------------------------------------------
    # Metrics, listing and resolution
    # -------------------------------------------------------------------------

    async def metrics(self, days: int = 30) -> ComplianceMetrics:
        """Rolling compliance metrics over the last ``days`` days.

        Raises:
            StorageError: If the store cannot be read
        """
        now = self._now()
        start = now - timedelta(days=days)
        total_events = await self.audit.count(start, now)
        try:
            async with self._session_factory() as session:
                violations = await ViolationRepository(session).count_unresolved_since(start)
        except SQLAlchemyError as e:
            raise StorageError("Compliance metrics calculation failed") from e

        return compute_metrics(total_events, violations, now, days)

    async def list_violations(
        self,
        resolved: bool | None = None,
        severity: Severity | str | None = None,
        rule_id: str | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[ComplianceViolation]:
        severity_value = Severity(severity).value if severity is not None else None
        try:
            async with self._session_factory() as session:
                records = await ViolationRepository(session).list_violations(
                    resolved=resolved,
                    severity=severity_value,
                    rule_id=rule_id,
                    limit=limit,
                    offset=offset,
                )
        except SQLAlchemyError as e:
            raise StorageError("Violation listing failed") from e
        return [violation_from_record(record) for record in records]

    async def get_violation(self, violation_id: str) -> ComplianceViolation | None:
        try:
            async with self._session_factory() as session:
                record = await ViolationRepository(session).get(violation_id)
        except SQLAlchemyError as e:
            raise StorageError("Violation lookup failed") from e
        return violation_from_record(record) if record is not None else None

    async def resolve(self, violation_id: str, resolved_by: str, notes: str | None = None) -> bool:
        """Resolve a violation.

        Args:
            violation_id: ID of the violation
            resolved_by: Operator resolving it
            notes: Optional resolution notes

        Returns:
            True if this call resolved the violation, False if it was already resolved

        Raises:
            ResolutionError: If the violation doesn't exist or the update fails
        """
        try:
            async with self._session_factory() as session:
                repo = ViolationRepository(session)
                if await repo.get(violation_id) is None:
                    raise ResolutionError(f"Compliance violation '{violation_id}' not found")
                resolved = await repo.resolve(violation_id, resolved_by, notes, self._now())
        except SQLAlchemyError as e:
            raise ResolutionError(f"Violation resolution failed for '{violation_id}'") from e

        if not resolved:
            logger.info("Violation %s already resolved; keeping first resolution", violation_id)
            return False

        await self.audit.log(
            "compliance_violation",
            "compliance_system",
            "violation_resolved",
            details={"violationId": violation_id, "resolvedBy": resolved_by, "notes": notes},
            severity=Severity.LOW,
            compliance_flags=["violation_resolved"],
        )
        return True


def compute_metrics(
    total_events: int, violations: int, assessed_at: datetime, days: int
) -> ComplianceMetrics:
    """Derive rate, score and risk from raw counts.

    violation_rate is a percentage of events; the score loses 10 points per
    percent and is clamped at 0.
    """
    violation_rate = (violations / total_events) * 100 if total_events > 0 else 0.0
    compliance_score = max(0.0, 100 - violation_rate * 10)
    return ComplianceMetrics(
        total_events=total_events,
        violations=violations,
        violation_rate=violation_rate,
        compliance_score=compliance_score,
        risk_level=risk_from_violation_rate(violation_rate),
        last_assessment=assessed_at,
        period_days=days,
    )
