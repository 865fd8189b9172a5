"""AuditLogRecord model for the append-only audit event store."""

from datetime import datetime
from typing import Any

from sqlalchemy import JSON, DateTime, Index, String, Text
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from compliance_monitor.db.database import Base
from compliance_monitor.utils.timeutil import utc_now

JSONType = JSON().with_variant(JSONB(), "postgresql")


class AuditLogRecord(Base):
    """Row in audit_logs.

    Rows are inserted once and never updated. compliance_flags holds a
    canonical (sorted) JSON list so that it can be grouped on in reports.
    """

    __tablename__ = "audit_logs"
    __table_args__ = (Index("idx_audit_logs_timestamp", "timestamp"),)

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    event_type: Mapped[str] = mapped_column(String(100), index=True)
    user_id: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)
    session_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    resource: Mapped[str] = mapped_column(String(255))
    action: Mapped[str] = mapped_column(String(255))
    details: Mapped[dict[str, Any]] = mapped_column(JSONType, default=dict)
    ip_address: Mapped[str | None] = mapped_column(String(64), nullable=True)
    user_agent: Mapped[str | None] = mapped_column(Text, nullable=True)
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    severity: Mapped[str] = mapped_column(String(20), index=True)
    compliance_flags: Mapped[str] = mapped_column(Text, default="[]")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)
