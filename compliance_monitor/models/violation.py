"""ComplianceViolationRecord model."""

from datetime import datetime

from sqlalchemy import Boolean, DateTime, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from compliance_monitor.db.database import Base
from compliance_monitor.models.audit_log import JSONType


class ComplianceViolationRecord(Base):
    """Persisted compliance violation.

    dedupe_key is unique: the same rule firing for the same group and
    anchor on consecutive evaluation ticks maps to one row.
    """

    __tablename__ = "compliance_violations"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    rule_id: Mapped[str] = mapped_column(String(255), index=True)
    rule_name: Mapped[str] = mapped_column(String(255))
    severity: Mapped[str] = mapped_column(String(20))
    description: Mapped[str] = mapped_column(Text)
    event_ids: Mapped[list[str]] = mapped_column(JSONType, default=list)
    dedupe_key: Mapped[str] = mapped_column(String(512), unique=True)
    detected_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True)
    resolved: Mapped[bool] = mapped_column(Boolean, default=False, index=True)
    resolved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    resolved_by: Mapped[str | None] = mapped_column(String(255), nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    def __init__(self, **kwargs):
        kwargs.setdefault("resolved", False)
        kwargs.setdefault("event_ids", [])
        super().__init__(**kwargs)
