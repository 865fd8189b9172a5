"""Audit service: the append-only, selectively encrypted event store.

This module provides the AuditService class, the single write path for
audit events and the read path used by the rule evaluator, the security
probes, the escalation sink and the reporter.

Classes:
    AuditService: log / query / report / cleanup over audit_logs

Write semantics:
- id and timestamp are assigned here, never taken from the caller
- allow-listed detail keys are encrypted per field; a field that cannot be
  encrypted is masked and the event gains the encryption_failed flag, but
  the event is still written
- a persistence failure raises StorageError
"""

import logging
from collections.abc import Iterable
from datetime import datetime, timedelta
from typing import Any
from uuid import uuid4

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from compliance_monitor.audit.config import FLAG_ENCRYPTION_FAILED, FLAG_FAILED_AUTHENTICATION
from compliance_monitor.audit.encryption import FieldCipher
from compliance_monitor.audit.models import (
    AuditEvent,
    AuditQueryFilters,
    AuditReport,
    AuditReportGroup,
    ComplianceStatus,
    FlagBreakdown,
    Severity,
)
from compliance_monitor.audit.repository import AuditRepository, decode_flags, encode_flags
from compliance_monitor.errors import StorageError
from compliance_monitor.models.audit_log import AuditLogRecord
from compliance_monitor.utils.timeutil import Clock, ensure_utc, utc_now

logger = logging.getLogger(__name__)


class AuditService:
    """Service for logging and reading audit events.

    Every operation opens its own session from session_factory, so
    concurrent writers never share state.

    Args:
        session_factory: async_sessionmaker producing AsyncSession instances
        cipher: FieldCipher applied to the sensitive-field allow-list
        retention_days: Default retention for cleanup (default: 2555, ~7 years)
        clock: Source of the current UTC time

    Example:
        >>> service = AuditService(session_factory, FieldCipher(provider, fields))
        >>> event_id = await service.log(
        ...     "data_access", "user_profile", "read",
        ...     user_id="user-1", details={"email": "a@example.com"},
        ... )
        >>> events = await service.query(AuditQueryFilters(user_id="user-1"))
    """

    DEFAULT_RETENTION_DAYS = 2555

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        cipher: FieldCipher,
        retention_days: int = DEFAULT_RETENTION_DAYS,
        clock: Clock = utc_now,
    ) -> None:
        self._session_factory = session_factory
        self._cipher = cipher
        self.retention_days = retention_days
        self._clock = clock

    @property
    def cipher(self) -> FieldCipher:
        return self._cipher

    def now(self) -> datetime:
        return ensure_utc(self._clock())

    async def log(
        self,
        event_type: str,
        resource: str,
        action: str,
        *,
        details: dict[str, Any] | None = None,
        user_id: str | None = None,
        session_id: str | None = None,
        ip_address: str | None = None,
        user_agent: str | None = None,
        severity: Severity | str = Severity.LOW,
        compliance_flags: Iterable[str] = (),
    ) -> str:
        """Append an audit event.

        Args:
            event_type: Event classification (e.g. "data_access")
            resource: Resource acted upon
            action: Action performed
            details: Arbitrary details; allow-listed keys are encrypted
            user_id: Acting user, if known
            session_id: Session identifier, if known
            ip_address: Client IP address from the request context
            user_agent: Client user agent from the request context
            severity: Event severity
            compliance_flags: Free-form compliance tags

        Returns:
            The id assigned to the event

        Raises:
            StorageError: If the row could not be persisted
        """
        event_id = str(uuid4())
        timestamp = self.now()
        severity = Severity(severity)
        flags = set(compliance_flags)

        stored_details, failed_fields = self._cipher.protect(details or {})
        if failed_fields:
            flags.add(FLAG_ENCRYPTION_FAILED)
            logger.warning(
                "Audit event %s written with redacted fields %s (encryption failed)",
                event_id,
                ", ".join(failed_fields),
            )

        record = AuditLogRecord(
            id=event_id,
            event_type=event_type,
            user_id=user_id,
            session_id=session_id,
            resource=resource,
            action=action,
            details=stored_details,
            ip_address=ip_address,
            user_agent=user_agent,
            timestamp=timestamp,
            severity=severity.value,
            compliance_flags=encode_flags(flags),
            created_at=timestamp,
        )

        try:
            async with self._session_factory() as session:
                await AuditRepository(session).insert(record)
        except SQLAlchemyError as e:
            logger.error("Failed to persist audit event %s (type=%s): %s", event_id, event_type, e)
            raise StorageError(f"Audit logging failed for event {event_id}") from e

        if severity == Severity.CRITICAL or FLAG_FAILED_AUTHENTICATION in flags:
            logger.warning(
                "Audit event %s needs attention (type=%s, severity=%s, flags=%s)",
                event_id,
                event_type,
                severity.value,
                sorted(flags),
            )

        return event_id

    async def query(self, filters: AuditQueryFilters | None = None) -> list[AuditEvent]:
        """Read events matching all set filters, newest first.

        Sensitive fields are decrypted; a field that cannot be decrypted is
        returned as a placeholder.

        Raises:
            StorageError: If the read fails
        """
        filters = filters or AuditQueryFilters()
        try:
            async with self._session_factory() as session:
                records = await AuditRepository(session).query(filters)
        except SQLAlchemyError as e:
            raise StorageError("Audit query failed") from e
        return [self._to_event(record) for record in records]

    async def report(self, start: datetime, end: datetime) -> AuditReport:
        """Summarize events in [start, end] grouped by type, action, severity and flags."""
        start, end = ensure_utc(start), ensure_utc(end)
        try:
            async with self._session_factory() as session:
                repo = AuditRepository(session)
                rows = await repo.group_summary(start, end)
                unique_users = await repo.distinct_users(start, end)
                breakdown = await repo.flag_breakdown(start, end)
        except SQLAlchemyError as e:
            raise StorageError("Audit report generation failed") from e

        groups = [
            AuditReportGroup(
                event_type=row.event_type,
                action=row.action,
                severity=Severity(row.severity),
                compliance_flags=decode_flags(row.compliance_flags),
                count=row.event_count,
                unique_users=row.unique_users,
                first_occurrence=ensure_utc(row.first_occurrence),
                last_occurrence=ensure_utc(row.last_occurrence),
            )
            for row in rows
        ]
        violation_types = [FlagBreakdown(flags=decode_flags(raw), count=n) for raw, n in breakdown]
        flagged_groups = sum(1 for group in groups if group.flagged)

        return AuditReport(
            start_time=start,
            end_time=end,
            total_events=sum(group.count for group in groups),
            unique_users=unique_users,
            flagged_groups=flagged_groups,
            groups=groups,
            compliance_status=(
                ComplianceStatus.COMPLIANT
                if not violation_types
                else ComplianceStatus.VIOLATIONS_DETECTED
            ),
            violation_types=violation_types,
        )

    def retention_cutoff(self, retention_days: int | None = None) -> datetime:
        if retention_days is None:
            retention_days = self.retention_days
        return self.now() - timedelta(days=retention_days)

    async def cleanup(self, retention_days: int | None = None) -> int:
        """Delete events older than the retention period.

        Args:
            retention_days: Days to retain events. Defaults to the service retention.

        Returns:
            Number of events deleted.
        """
        cutoff = self.retention_cutoff(retention_days)
        try:
            async with self._session_factory() as session:
                count = await AuditRepository(session).delete_older_than(cutoff)
        except SQLAlchemyError as e:
            raise StorageError("Audit log cleanup failed") from e

        if count > 0:
            logger.info("Cleaned up %d old audit log entries (cutoff=%s)", count, cutoff.isoformat())
        return count

    async def count(self, start: datetime | None = None, end: datetime | None = None) -> int:
        try:
            async with self._session_factory() as session:
                return await AuditRepository(session).count(start, end)
        except SQLAlchemyError as e:
            raise StorageError("Audit count failed") from e

    async def count_older_than(self, cutoff: datetime) -> int:
        try:
            async with self._session_factory() as session:
                return await AuditRepository(session).count_older_than(cutoff)
        except SQLAlchemyError as e:
            raise StorageError("Audit count failed") from e

    async def sample_details(self, keywords: Iterable[str], limit: int = 10) -> list[dict[str, Any]]:
        """Raw stored detail payloads (not decrypted) that mention any keyword."""
        try:
            async with self._session_factory() as session:
                return await AuditRepository(session).sample_details(list(keywords), limit)
        except SQLAlchemyError as e:
            raise StorageError("Audit detail sampling failed") from e

    def _to_event(self, record: AuditLogRecord) -> AuditEvent:
        return AuditEvent(
            id=record.id,
            event_type=record.event_type,
            resource=record.resource,
            action=record.action,
            timestamp=ensure_utc(record.timestamp),
            severity=Severity(record.severity),
            details=self._cipher.reveal(record.details or {}),
            user_id=record.user_id,
            session_id=record.session_id,
            ip_address=record.ip_address,
            user_agent=record.user_agent,
            compliance_flags=frozenset(decode_flags(record.compliance_flags)),
        )
