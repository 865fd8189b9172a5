"""Security probe result and vulnerability models."""

from datetime import datetime
from typing import Any

from sqlalchemy import Boolean, DateTime, Float, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from compliance_monitor.db.database import Base
from compliance_monitor.models.audit_log import JSONType


class SecurityTestResultRecord(Base):
    """One probe execution. Append-only history."""

    __tablename__ = "security_test_results"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    run_id: Mapped[str] = mapped_column(String(36), index=True)
    probe_id: Mapped[str] = mapped_column(String(255), index=True)
    probe_name: Mapped[str] = mapped_column(String(255))
    status: Mapped[str] = mapped_column(String(20))
    vulnerabilities_count: Mapped[int] = mapped_column(Integer, default=0)
    execution_time_ms: Mapped[float] = mapped_column(Float, default=0.0)
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True)


class SecurityVulnerabilityRecord(Base):
    """Vulnerability produced by a probe run."""

    __tablename__ = "security_vulnerabilities"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    run_id: Mapped[str] = mapped_column(String(36), index=True)
    probe_id: Mapped[str] = mapped_column(String(255), index=True)
    probe_name: Mapped[str] = mapped_column(String(255))
    category: Mapped[str] = mapped_column(String(100), index=True)
    severity: Mapped[str] = mapped_column(String(20), index=True)
    description: Mapped[str] = mapped_column(Text)
    evidence: Mapped[dict[str, Any]] = mapped_column(JSONType, default=dict)
    detected_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True)
    resolved: Mapped[bool] = mapped_column(Boolean, default=False)
    resolved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    resolved_by: Mapped[str | None] = mapped_column(String(255), nullable=True)
    mitigation: Mapped[str | None] = mapped_column(Text, nullable=True)

    def __init__(self, **kwargs):
        kwargs.setdefault("resolved", False)
        super().__init__(**kwargs)
