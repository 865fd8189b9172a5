"""Repository for the security_test_results and security_vulnerabilities tables.

Methods:
- record_result: Insert one probe execution and its vulnerabilities atomically
- get_vulnerability: Fetch one vulnerability row by id
- resolve_vulnerability: Conditional update, only rows still unresolved
- list_vulnerabilities: Filtered, paginated listing, newest first
- history: Probe executions since a time, newest first
- summary: Status counts and vulnerability total over a period
- last_run_at: Timestamp of the most recent probe execution
- delete_results_older_than: Retention cleanup of execution history
"""

from datetime import datetime

from sqlalchemy import case, delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from compliance_monitor.models.security import SecurityTestResultRecord, SecurityVulnerabilityRecord


class ProbeResultRepository:
    """Repository for probe execution history and vulnerabilities.

    Args:
        session: SQLAlchemy async session for database operations
    """

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def record_result(
        self,
        result: SecurityTestResultRecord,
        vulnerabilities: list[SecurityVulnerabilityRecord],
    ) -> None:
        self._session.add(result)
        self._session.add_all(vulnerabilities)
        await self._session.commit()

    async def get_vulnerability(self, vulnerability_id: str) -> SecurityVulnerabilityRecord | None:
        result = await self._session.execute(
            select(SecurityVulnerabilityRecord).where(
                SecurityVulnerabilityRecord.id == vulnerability_id
            )
        )
        return result.scalar_one_or_none()

    async def resolve_vulnerability(
        self,
        vulnerability_id: str,
        resolved_by: str,
        mitigation: str | None,
        resolved_at: datetime,
    ) -> bool:
        """Mark a vulnerability resolved if it is not already.

        Returns:
            True if this call resolved it, False if no unresolved row matched
        """
        result = await self._session.execute(
            update(SecurityVulnerabilityRecord)
            .where(SecurityVulnerabilityRecord.id == vulnerability_id)
            .where(SecurityVulnerabilityRecord.resolved.is_(False))
            .values(
                resolved=True,
                resolved_at=resolved_at,
                resolved_by=resolved_by,
                mitigation=mitigation,
            )
        )
        await self._session.commit()
        return (result.rowcount or 0) == 1

    async def list_vulnerabilities(
        self,
        resolved: bool | None = None,
        severity: str | None = None,
        category: str | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[SecurityVulnerabilityRecord]:
        stmt = select(SecurityVulnerabilityRecord)
        if resolved is not None:
            stmt = stmt.where(SecurityVulnerabilityRecord.resolved.is_(resolved))
        if severity is not None:
            stmt = stmt.where(SecurityVulnerabilityRecord.severity == severity)
        if category is not None:
            stmt = stmt.where(SecurityVulnerabilityRecord.category == category)
        stmt = (
            stmt.order_by(SecurityVulnerabilityRecord.detected_at.desc())
            .offset(offset)
            .limit(limit)
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def history(
        self, since: datetime, probe_id: str | None = None, limit: int = 500
    ) -> list[SecurityTestResultRecord]:
        stmt = select(SecurityTestResultRecord).where(SecurityTestResultRecord.timestamp >= since)
        if probe_id is not None:
            stmt = stmt.where(SecurityTestResultRecord.probe_id == probe_id)
        stmt = stmt.order_by(
            SecurityTestResultRecord.timestamp.desc(), SecurityTestResultRecord.id.desc()
        ).limit(limit)
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def summary(self, start: datetime, end: datetime):
        """One labeled row: total, passed, failed, warnings, errors, vulnerabilities, last_run_at."""

        def status_count(status: str):
            return func.coalesce(
                func.sum(case((SecurityTestResultRecord.status == status, 1), else_=0)), 0
            )

        stmt = select(
            func.count(SecurityTestResultRecord.id).label("total"),
            status_count("passed").label("passed"),
            status_count("failed").label("failed"),
            status_count("warning").label("warnings"),
            status_count("error").label("errors"),
            func.coalesce(func.sum(SecurityTestResultRecord.vulnerabilities_count), 0).label(
                "vulnerabilities"
            ),
            func.max(SecurityTestResultRecord.timestamp).label("last_run_at"),
        ).where(
            SecurityTestResultRecord.timestamp >= start,
            SecurityTestResultRecord.timestamp <= end,
        )
        return (await self._session.execute(stmt)).one()

    async def last_run_at(self) -> datetime | None:
        stmt = select(func.max(SecurityTestResultRecord.timestamp))
        return (await self._session.execute(stmt)).scalar_one()

    async def delete_results_older_than(self, cutoff: datetime) -> int:
        result = await self._session.execute(
            delete(SecurityTestResultRecord).where(SecurityTestResultRecord.timestamp < cutoff)
        )
        await self._session.commit()
        return result.rowcount or 0
