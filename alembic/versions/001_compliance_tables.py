"""Create audit and compliance monitoring tables.

Revision ID: 001_compliance_tables
Revises:
Create Date: 2026-10-18
"""

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects.postgresql import JSONB

revision = "001_compliance_tables"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    # Append-only audit event store
    op.create_table(
        "audit_logs",
        sa.Column("id", sa.VARCHAR(36), primary_key=True),
        sa.Column("event_type", sa.VARCHAR(100), nullable=False),
        sa.Column("user_id", sa.VARCHAR(255), nullable=True),
        sa.Column("session_id", sa.VARCHAR(255), nullable=True),
        sa.Column("resource", sa.VARCHAR(255), nullable=False),
        sa.Column("action", sa.VARCHAR(255), nullable=False),
        sa.Column("details", JSONB, nullable=True),
        sa.Column("ip_address", sa.VARCHAR(64), nullable=True),
        sa.Column("user_agent", sa.Text, nullable=True),
        sa.Column("timestamp", sa.TIMESTAMP(timezone=True), nullable=False),
        sa.Column("severity", sa.VARCHAR(20), nullable=False),
        # Canonical sorted JSON list, grouped on in reports
        sa.Column("compliance_flags", sa.Text, nullable=False, server_default="[]"),
        sa.Column(
            "created_at",
            sa.TIMESTAMP(timezone=True),
            nullable=False,
            server_default=sa.text("NOW()"),
        ),
    )
    op.create_index("idx_audit_logs_timestamp", "audit_logs", ["timestamp"])
    op.create_index("ix_audit_logs_user_id", "audit_logs", ["user_id"])
    op.create_index("ix_audit_logs_event_type", "audit_logs", ["event_type"])
    op.create_index("ix_audit_logs_severity", "audit_logs", ["severity"])

    op.create_table(
        "compliance_violations",
        sa.Column("id", sa.VARCHAR(64), primary_key=True),
        sa.Column("rule_id", sa.VARCHAR(255), nullable=False),
        sa.Column("rule_name", sa.VARCHAR(255), nullable=False),
        sa.Column("severity", sa.VARCHAR(20), nullable=False),
        sa.Column("description", sa.Text, nullable=False),
        sa.Column("event_ids", JSONB, nullable=True),
        sa.Column("dedupe_key", sa.VARCHAR(512), nullable=False),
        sa.Column("detected_at", sa.TIMESTAMP(timezone=True), nullable=False),
        sa.Column("resolved", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("resolved_at", sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column("resolved_by", sa.VARCHAR(255), nullable=True),
        sa.Column("notes", sa.Text, nullable=True),
    )
    # One row per rule/group/anchor across evaluation ticks
    op.create_index(
        "ix_compliance_violations_dedupe_key",
        "compliance_violations",
        ["dedupe_key"],
        unique=True,
    )
    op.create_index("ix_compliance_violations_rule_id", "compliance_violations", ["rule_id"])
    op.create_index(
        "ix_compliance_violations_detected_at", "compliance_violations", ["detected_at"]
    )
    op.create_index("ix_compliance_violations_resolved", "compliance_violations", ["resolved"])

    op.create_table(
        "security_test_results",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("run_id", sa.VARCHAR(36), nullable=False),
        sa.Column("probe_id", sa.VARCHAR(255), nullable=False),
        sa.Column("probe_name", sa.VARCHAR(255), nullable=False),
        sa.Column("status", sa.VARCHAR(20), nullable=False),
        sa.Column("vulnerabilities_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("execution_time_ms", sa.Float, nullable=False, server_default="0"),
        sa.Column("timestamp", sa.TIMESTAMP(timezone=True), nullable=False),
    )
    op.create_index("ix_security_test_results_run_id", "security_test_results", ["run_id"])
    op.create_index("ix_security_test_results_probe_id", "security_test_results", ["probe_id"])
    op.create_index(
        "ix_security_test_results_timestamp", "security_test_results", ["timestamp"]
    )

    op.create_table(
        "security_vulnerabilities",
        sa.Column("id", sa.VARCHAR(64), primary_key=True),
        sa.Column("run_id", sa.VARCHAR(36), nullable=False),
        sa.Column("probe_id", sa.VARCHAR(255), nullable=False),
        sa.Column("probe_name", sa.VARCHAR(255), nullable=False),
        sa.Column("category", sa.VARCHAR(100), nullable=False),
        sa.Column("severity", sa.VARCHAR(20), nullable=False),
        sa.Column("description", sa.Text, nullable=False),
        sa.Column("evidence", JSONB, nullable=True),
        sa.Column("detected_at", sa.TIMESTAMP(timezone=True), nullable=False),
        sa.Column("resolved", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("resolved_at", sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column("resolved_by", sa.VARCHAR(255), nullable=True),
        sa.Column("mitigation", sa.Text, nullable=True),
    )
    for column in ("run_id", "probe_id", "category", "severity", "detected_at"):
        op.create_index(
            f"ix_security_vulnerabilities_{column}", "security_vulnerabilities", [column]
        )


def downgrade() -> None:
    for column in ("detected_at", "severity", "category", "probe_id", "run_id"):
        op.drop_index(f"ix_security_vulnerabilities_{column}", table_name="security_vulnerabilities")
    op.drop_table("security_vulnerabilities")

    op.drop_index("ix_security_test_results_timestamp", table_name="security_test_results")
    op.drop_index("ix_security_test_results_probe_id", table_name="security_test_results")
    op.drop_index("ix_security_test_results_run_id", table_name="security_test_results")
    op.drop_table("security_test_results")

    op.drop_index("ix_compliance_violations_resolved", table_name="compliance_violations")
    op.drop_index("ix_compliance_violations_detected_at", table_name="compliance_violations")
    op.drop_index("ix_compliance_violations_rule_id", table_name="compliance_violations")
    op.drop_index("ix_compliance_violations_dedupe_key", table_name="compliance_violations")
    op.drop_table("compliance_violations")

    op.drop_index("ix_audit_logs_severity", table_name="audit_logs")
    op.drop_index("ix_audit_logs_event_type", table_name="audit_logs")
    op.drop_index("ix_audit_logs_user_id", table_name="audit_logs")
    op.drop_index("idx_audit_logs_timestamp", table_name="audit_logs")
    op.drop_table("audit_logs")
