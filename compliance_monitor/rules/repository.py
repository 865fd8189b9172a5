"""Violation repository for the compliance_violations table.

Methods:
- insert_if_absent: Insert unless a row with the same dedupe_key exists
- get: Fetch one violation row by id
- resolve: Conditional update, only rows still unresolved
- list_violations: Filtered, paginated listing, newest first
- count_unresolved_since: Unresolved violations detected since a time
- count_unresolved_by_severity: Same, grouped by severity
"""

from datetime import datetime

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from compliance_monitor.models.violation import ComplianceViolationRecord


class ViolationRepository:
    """Repository for compliance violation rows.

    Args:
        session: SQLAlchemy async session for database operations
    """

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def insert_if_absent(self, record: ComplianceViolationRecord) -> bool:
        """Insert a violation unless its dedupe_key is already stored.

        Returns:
            True if the row was inserted, False if it already existed
        """
        existing = await self._session.execute(
            select(ComplianceViolationRecord.id).where(
                ComplianceViolationRecord.dedupe_key == record.dedupe_key
            )
        )
        if existing.scalar_one_or_none() is not None:
            return False

        self._session.add(record)
        try:
            await self._session.commit()
        except IntegrityError:
            # Concurrent insert of the same dedupe_key
            await self._session.rollback()
            return False
        return True

    async def get(self, violation_id: str) -> ComplianceViolationRecord | None:
        result = await self._session.execute(
            select(ComplianceViolationRecord).where(ComplianceViolationRecord.id == violation_id)
        )
        return result.scalar_one_or_none()

    async def resolve(
        self,
        violation_id: str,
        resolved_by: str,
        notes: str | None,
        resolved_at: datetime,
    ) -> bool:
        """Mark a violation resolved if it is not already.

        Returns:
            True if this call resolved it, False if no unresolved row matched
        """
        result = await self._session.execute(
            update(ComplianceViolationRecord)
            .where(ComplianceViolationRecord.id == violation_id)
            .where(ComplianceViolationRecord.resolved.is_(False))
            .values(
                resolved=True,
                resolved_at=resolved_at,
                resolved_by=resolved_by,
                notes=notes,
            )
        )
        await self._session.commit()
        return (result.rowcount or 0) == 1

    async def list_violations(
        self,
        resolved: bool | None = None,
        severity: str | None = None,
        rule_id: str | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[ComplianceViolationRecord]:
        stmt = select(ComplianceViolationRecord)
        if resolved is not None:
            stmt = stmt.where(ComplianceViolationRecord.resolved.is_(resolved))
        if severity is not None:
            stmt = stmt.where(ComplianceViolationRecord.severity == severity)
        if rule_id is not None:
            stmt = stmt.where(ComplianceViolationRecord.rule_id == rule_id)
        stmt = (
            stmt.order_by(ComplianceViolationRecord.detected_at.desc())
            .offset(offset)
            .limit(limit)
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def count_unresolved_since(self, since: datetime) -> int:
        stmt = (
            select(func.count(ComplianceViolationRecord.id))
            .where(ComplianceViolationRecord.detected_at >= since)
            .where(ComplianceViolationRecord.resolved.is_(False))
        )
        return (await self._session.execute(stmt)).scalar_one()

    async def count_unresolved_by_severity(self, since: datetime) -> dict[str, int]:
        stmt = (
            select(ComplianceViolationRecord.severity, func.count(ComplianceViolationRecord.id))
            .where(ComplianceViolationRecord.detected_at >= since)
            .where(ComplianceViolationRecord.resolved.is_(False))
            .group_by(ComplianceViolationRecord.severity)
        )
        result = await self._session.execute(stmt)
        return {row[0]: row[1] for row in result.all()}
