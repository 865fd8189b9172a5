"""ComplianceSystem: wiring and lifecycle of the monitoring engine.

All services are constructed explicitly once, here, and shared by
reference. There are no module-level singletons.

Scheduled jobs:
    compliance_evaluation      every rule_interval_minutes
    security_probes_continuous every continuous_probe_interval_minutes
    security_probes_daily      daily at 00:00
    retention_cleanup          daily at cleanup_hour (audit log and probe history)

Usage:
    system = ComplianceSystem(Settings(), encryption_provider)
    await system.initialize()
    ...
    await system.shutdown()
"""

from __future__ import annotations

import logging
import time
from typing import Any

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from compliance_monitor.audit.encryption import EncryptionProvider, FieldCipher
from compliance_monitor.audit.service import AuditService
from compliance_monitor.config import Settings
from compliance_monitor.db.database import create_engine, create_schema, create_session_factory
from compliance_monitor.errors import StorageError
from compliance_monitor.escalation.channels import EmailChannel, NotificationChannel, WebhookChannel
from compliance_monitor.escalation.cooldown import CooldownCache
from compliance_monitor.escalation.sink import EscalationSink
from compliance_monitor.probes.registry import ProbeRegistry, load_probe_catalog
from compliance_monitor.probes.runner import ProbeRunner
from compliance_monitor.probes.simulator import HttpxRequestSimulator, RequestSimulator
from compliance_monitor.reporting.reporter import AnalyticsProvider, ComplianceReporter
from compliance_monitor.rules.detectors import ConsentChecker
from compliance_monitor.rules.evaluator import RuleEvaluator
from compliance_monitor.rules.registry import RuleRegistry, load_rule_catalog
from compliance_monitor.utils.timeutil import Clock, utc_now
from compliance_monitor.workers.scheduler import GuardedJob, MonitorScheduler

logger = logging.getLogger(__name__)

CLEANUP_JOB_ID = "retention_cleanup"


def build_channels(settings: Settings) -> dict[str, NotificationChannel]:
    """Paging channels from settings; email only when an SMTP host is configured."""
    channels: dict[str, NotificationChannel] = {
        "webhook": WebhookChannel(timeout_seconds=settings.webhook_timeout_seconds),
    }
    if settings.smtp_host:
        channels["email"] = EmailChannel(
            smtp_host=settings.smtp_host,
            smtp_port=settings.smtp_port,
            sender=settings.smtp_sender,
            username=settings.smtp_username,
            password=settings.smtp_password,
        )
    return channels


class ComplianceSystem:
    """Builds and owns the monitoring services.

    Args:
        settings: Monitor settings
        encryption_provider: Encryption collaborator for sensitive detail fields
        simulator: RequestSimulator for probes (default: httpx against sandbox_base_url)
        consent: ConsentChecker for the consent rule
        analytics: Optional AnalyticsProvider for reports
        channels: Paging channels (default: built from settings)
        engine: Existing AsyncEngine; created from settings.database_url when omitted
        session_factory: Existing session factory bound to engine
        scheduler: MonitorScheduler (tests pass one that is never started)
        clock: Source of the current UTC time
    """

    def __init__(
        self,
        settings: Settings,
        encryption_provider: EncryptionProvider,
        simulator: RequestSimulator | None = None,
        consent: ConsentChecker | None = None,
        analytics: AnalyticsProvider | None = None,
        channels: dict[str, NotificationChannel] | None = None,
        engine: AsyncEngine | None = None,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        scheduler: MonitorScheduler | None = None,
        clock: Clock = utc_now,
    ) -> None:
        self.settings = settings
        self._owns_engine = engine is None
        self.engine = engine if engine is not None else create_engine(settings)
        self.session_factory = session_factory or create_session_factory(self.engine)
        self.scheduler = scheduler or MonitorScheduler()

        self.audit = AuditService(
            self.session_factory,
            FieldCipher(encryption_provider, settings.sensitive_fields),
            retention_days=settings.retention_days,
            clock=clock,
        )
        self.sink = EscalationSink(
            self.audit,
            channels=channels if channels is not None else build_channels(settings),
            cooldown=CooldownCache(ttl_seconds=settings.paging_cooldown_minutes * 60),
        )
        self.evaluator = RuleEvaluator(
            self.audit,
            RuleRegistry(load_rule_catalog(settings.rules_file)),
            self.session_factory,
            self.sink,
            scheduler=self.scheduler,
            consent=consent,
            retention_days=settings.retention_days,
            clock=clock,
        )
        self.runner = ProbeRunner(
            ProbeRegistry(load_probe_catalog(settings.probes_file)),
            simulator
            or HttpxRequestSimulator(
                settings.sandbox_base_url,
                timeout_seconds=settings.probe_timeout_seconds,
                auth_token=settings.sandbox_auth_token,
                csrf_token=settings.sandbox_csrf_token,
            ),
            self.audit,
            self.session_factory,
            self.sink,
            scheduler=self.scheduler,
            timeout_seconds=settings.probe_timeout_seconds,
            clock=clock,
        )
        self.reporter = ComplianceReporter(self.audit, self.evaluator, self.runner, analytics)
        self.cleanup_job = GuardedJob(CLEANUP_JOB_ID, self.run_cleanup)

        self.initialized = False
        self._started_at: float | None = None

    async def initialize(self, create_tables: bool = True, start_jobs: bool = True) -> None:
        """Create the schema and start the scheduled jobs.

        Args:
            create_tables: Create missing tables with metadata.create_all
            start_jobs: Register and start the scheduled jobs
        """
        if self.initialized:
            return

        logger.info("Initializing compliance monitoring system...")
        if create_tables:
            await create_schema(self.engine)

        if start_jobs:
            self.evaluator.start(self.settings.rule_interval_minutes)
            if self.settings.probe_automation_enabled:
                self.runner.start_automation(self.settings.continuous_probe_interval_minutes)
            self.scheduler.add_cron_job(
                CLEANUP_JOB_ID,
                "Clean up expired audit logs and probe history",
                self.cleanup_job,
                hour=self.settings.cleanup_hour,
            )
            self.scheduler.start()

        self.initialized = True
        self._started_at = time.monotonic()
        logger.info("Compliance monitoring system initialized")

    async def shutdown(self) -> None:
        """Stop scheduling; runs already in progress complete on their own."""
        logger.info("Shutting down compliance monitoring system...")
        self.evaluator.stop()
        self.runner.stop_automation()
        self.scheduler.remove_job(CLEANUP_JOB_ID)
        self.scheduler.shutdown()
        if self._owns_engine:
            await self.engine.dispose()
        self.initialized = False
        logger.info("Compliance monitoring system shutdown complete")

    async def run_cleanup(self) -> dict[str, int]:
        """Apply retention to the audit log and to probe history."""
        logger.info("Running compliance system cleanup tasks...")
        deleted_logs = await self.audit.cleanup()
        deleted_results = await self.runner.cleanup_results(
            self.settings.test_result_retention_days
        )
        logger.info(
            "Cleanup complete: %d audit logs, %d test results deleted",
            deleted_logs,
            deleted_results,
        )
        return {"audit_logs": deleted_logs, "test_results": deleted_results}

    async def status(self) -> dict[str, Any]:
        """Health snapshot of the engine and its schedules."""
        database_connected = True
        total_logs: int | None = None
        recent_violations: int | None = None
        last_test = None
        try:
            total_logs = await self.audit.count()
            recent_violations = (await self.evaluator.metrics(days=1)).violations
            last_test = await self.runner.last_run_at()
        except StorageError:
            logger.exception("Status check could not read the stores")
            database_connected = False

        return {
            "initialized": self.initialized,
            "uptime_seconds": (
                time.monotonic() - self._started_at if self._started_at is not None else 0.0
            ),
            "database": {"connected": database_connected},
            "monitoring": {
                "compliance_monitoring": self.evaluator.monitoring,
                "security_testing": self.runner.automation_active,
                "scheduler_running": self.scheduler.running,
                "jobs": {
                    job.name: {
                        "runs": job.runs,
                        "skipped": job.skipped,
                        "failures": job.failures,
                        "running": job.running,
                    }
                    for job in (
                        self.evaluator.job,
                        self.runner.continuous_job,
                        self.runner.daily_job,
                        self.cleanup_job,
                    )
                },
            },
            "metrics": {
                "total_audit_logs": total_logs,
                "recent_violations": recent_violations,
                "last_security_test": last_test.isoformat() if last_test else None,
            },
            "escalation": {
                "pages_sent": self.sink.pages_sent,
                "pages_suppressed": self.sink.pages_suppressed,
            },
        }
