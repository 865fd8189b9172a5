"""Audit repository for persisting and querying audit_logs rows.

This module provides the AuditRepository class for database operations:
- insert: Append one audit row
- query: Filtered, paginated select ordered newest first
- group_summary / distinct_users / flag_breakdown: Report aggregates
- count / count_older_than: Count aggregates
- delete_older_than: Retention cleanup
- sample_details: Raw stored detail payloads matching keywords

Rows are never updated. compliance_flags is stored as canonical JSON text
(sorted, de-duplicated) so equal flag sets group together.
"""

import json
from collections.abc import Iterable
from datetime import datetime
from typing import Any

from sqlalchemy import Text, cast, delete, distinct, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from compliance_monitor.audit.models import AuditQueryFilters
from compliance_monitor.models.audit_log import AuditLogRecord


def encode_flags(flags: Iterable[str]) -> str:
    return json.dumps(sorted(set(flags)))


def decode_flags(raw: str | None) -> tuple[str, ...]:
    if not raw:
        return ()
    return tuple(json.loads(raw))


class AuditRepository:
    """Repository for audit_logs database operations.

    Args:
        session: SQLAlchemy async session for database operations
    """

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def insert(self, record: AuditLogRecord) -> None:
        """Persist a new audit row and commit."""
        self._session.add(record)
        await self._session.commit()

    async def query(self, filters: AuditQueryFilters) -> list[AuditLogRecord]:
        """Query audit rows with filters and pagination.

        Args:
            filters: AuditQueryFilters with filter criteria and pagination

        Returns:
            Matching rows ordered by timestamp descending
        """
        stmt = select(AuditLogRecord)

        if filters.event_type is not None:
            stmt = stmt.where(AuditLogRecord.event_type == filters.event_type)
        if filters.user_id is not None:
            stmt = stmt.where(AuditLogRecord.user_id == filters.user_id)
        if filters.resource is not None:
            stmt = stmt.where(AuditLogRecord.resource == filters.resource)
        if filters.action is not None:
            stmt = stmt.where(AuditLogRecord.action == filters.action)
        if filters.start_time is not None:
            stmt = stmt.where(AuditLogRecord.timestamp >= filters.start_time)
        if filters.end_time is not None:
            stmt = stmt.where(AuditLogRecord.timestamp <= filters.end_time)
        if filters.severities:
            stmt = stmt.where(AuditLogRecord.severity.in_([s.value for s in filters.severities]))

        stmt = stmt.order_by(AuditLogRecord.timestamp.desc(), AuditLogRecord.created_at.desc())

        if filters.offset:
            stmt = stmt.offset(filters.offset)
        if filters.limit is not None:
            stmt = stmt.limit(filters.limit)

        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def group_summary(self, start: datetime, end: datetime) -> list[Any]:
        """Aggregate rows in [start, end] by (event_type, action, severity, flags).

        Returns:
            Rows with event_type, action, severity, compliance_flags,
            event_count, unique_users, first_occurrence, last_occurrence;
            largest groups first
        """
        event_count = func.count(AuditLogRecord.id).label("event_count")
        stmt = (
            select(
                AuditLogRecord.event_type,
                AuditLogRecord.action,
                AuditLogRecord.severity,
                AuditLogRecord.compliance_flags,
                event_count,
                func.count(distinct(AuditLogRecord.user_id)).label("unique_users"),
                func.min(AuditLogRecord.timestamp).label("first_occurrence"),
                func.max(AuditLogRecord.timestamp).label("last_occurrence"),
            )
            .where(AuditLogRecord.timestamp.between(start, end))
            .group_by(
                AuditLogRecord.event_type,
                AuditLogRecord.action,
                AuditLogRecord.severity,
                AuditLogRecord.compliance_flags,
            )
            .order_by(event_count.desc())
        )
        result = await self._session.execute(stmt)
        return list(result.all())

    async def distinct_users(self, start: datetime, end: datetime) -> int:
        stmt = select(func.count(distinct(AuditLogRecord.user_id))).where(
            AuditLogRecord.timestamp.between(start, end)
        )
        return (await self._session.execute(stmt)).scalar_one()

    async def flag_breakdown(self, start: datetime, end: datetime) -> list[tuple[str, int]]:
        """Count rows per exact non-empty flag set in [start, end]."""
        stmt = (
            select(AuditLogRecord.compliance_flags, func.count(AuditLogRecord.id))
            .where(AuditLogRecord.timestamp.between(start, end))
            .where(AuditLogRecord.compliance_flags != "[]")
            .group_by(AuditLogRecord.compliance_flags)
        )
        result = await self._session.execute(stmt)
        return [(row[0], row[1]) for row in result.all()]

    async def count(self, start: datetime | None = None, end: datetime | None = None) -> int:
        stmt = select(func.count(AuditLogRecord.id))
        if start is not None:
            stmt = stmt.where(AuditLogRecord.timestamp >= start)
        if end is not None:
            stmt = stmt.where(AuditLogRecord.timestamp <= end)
        return (await self._session.execute(stmt)).scalar_one()

    async def count_older_than(self, cutoff: datetime) -> int:
        stmt = select(func.count(AuditLogRecord.id)).where(AuditLogRecord.timestamp < cutoff)
        return (await self._session.execute(stmt)).scalar_one()

    async def delete_older_than(self, cutoff: datetime) -> int:
        """Delete rows with timestamp before cutoff and commit.

        Returns:
            Number of rows deleted
        """
        result = await self._session.execute(
            delete(AuditLogRecord).where(AuditLogRecord.timestamp < cutoff)
        )
        await self._session.commit()
        return result.rowcount or 0

    async def sample_details(self, keywords: Iterable[str], limit: int) -> list[dict[str, Any]]:
        """Return raw stored details whose serialized form mentions a keyword."""
        details_text = cast(AuditLogRecord.details, Text)
        conditions = [details_text.like(f"%{keyword}%") for keyword in keywords]
        if not conditions:
            return []
        stmt = (
            select(AuditLogRecord.details)
            .where(or_(*conditions))
            .order_by(AuditLogRecord.timestamp.desc())
            .limit(limit)
        )
        result = await self._session.execute(stmt)
        return [row[0] for row in result.all() if isinstance(row[0], dict)]
