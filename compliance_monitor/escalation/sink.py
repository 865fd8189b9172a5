"""EscalationSink: shared fan-out for violations and vulnerabilities.

Usage:
    sink = EscalationSink(audit_service, channels={"email": email, "webhook": webhook})
    recorded = await sink.handle(findings)

Behavior per batch:
- critical findings are logged at CRITICAL and paged through the routed
  channels, unless the same finding key was paged within the cooldown
- high findings are logged as a warning
- every finding is re-emitted as an audit event flagged
  compliance_violation / security_vulnerability
Failures to page or to re-emit one finding are logged and never raised.
"""

import logging

from compliance_monitor.audit.models import Severity
from compliance_monitor.audit.service import AuditService
from compliance_monitor.escalation.channels import NotificationChannel
from compliance_monitor.escalation.cooldown import CooldownCache
from compliance_monitor.escalation.models import AUDIT_TRAIL_SHAPE, Finding
from compliance_monitor.escalation.routing import RoutingConfig, get_destinations_for_finding

logger = logging.getLogger(__name__)

DEFAULT_COOLDOWN_MINUTES = 10


class EscalationSink:
    """Escalates findings by severity and records them in the audit trail.

    Args:
        audit: AuditService used to re-emit findings
        channels: Mapping of channel type to NotificationChannel for paging
        routing: RoutingConfig; default routes page critical findings only
        cooldown: CooldownCache for paging; defaults to a 10 minute window
    """

    def __init__(
        self,
        audit: AuditService,
        channels: dict[str, NotificationChannel] | None = None,
        routing: RoutingConfig | None = None,
        cooldown: CooldownCache | None = None,
    ) -> None:
        self._audit = audit
        self._channels = channels or {}
        self._routing = routing or RoutingConfig()
        self._cooldown = cooldown or CooldownCache(ttl_seconds=DEFAULT_COOLDOWN_MINUTES * 60)
        self.pages_sent = 0
        self.pages_suppressed = 0

    async def handle(self, findings: list[Finding]) -> int:
        """Escalate a batch of findings.

        Args:
            findings: Newly persisted violations and/or vulnerabilities

        Returns:
            Number of findings re-emitted into the audit trail
        """
        if not findings:
            return 0

        critical = [f for f in findings if f.severity == Severity.CRITICAL]
        high = [f for f in findings if f.severity == Severity.HIGH]

        if critical:
            logger.critical("CRITICAL findings detected: %d", len(critical))
            for finding in critical:
                logger.critical(
                    "CRITICAL %s %s from %s: %s",
                    finding.kind.value,
                    finding.finding_id,
                    finding.source_id,
                    finding.description,
                )
                await self._page(finding)

        if high:
            logger.warning("High severity findings detected: %d", len(high))

        recorded = 0
        for finding in findings:
            if await self._record(finding):
                recorded += 1
        return recorded

    async def _record(self, finding: Finding) -> bool:
        event_type, resource, action, flag = AUDIT_TRAIL_SHAPE[finding.kind]
        try:
            await self._audit.log(
                event_type,
                resource,
                action,
                details={
                    f"{finding.kind.value}Id": finding.finding_id,
                    "sourceId": finding.source_id,
                    "severity": finding.severity.value,
                    "description": finding.description,
                    **finding.details,
                },
                severity=finding.severity,
                compliance_flags=[flag],
            )
            return True
        except Exception:
            logger.exception(
                "Failed to record %s %s in the audit trail", finding.kind.value, finding.finding_id
            )
            return False

    async def _page(self, finding: Finding) -> None:
        cooldown_key = f"{finding.kind.value}:{finding.key}"
        if not await self._cooldown.try_acquire(cooldown_key):
            self.pages_suppressed += 1
            logger.info("Page for %s suppressed (cooldown active)", cooldown_key)
            return

        destinations = get_destinations_for_finding(finding, self._routing)
        if not destinations:
            logger.debug("No paging destinations for %s %s", finding.kind.value, finding.finding_id)
            return

        for channel_type, destination in destinations:
            channel = self._channels.get(channel_type)
            if channel is None:
                logger.warning(
                    "Unknown channel type '%s' for finding %s, skipping",
                    channel_type,
                    finding.finding_id,
                )
                continue
            try:
                result = await channel.send(finding, destination)
            except Exception as e:
                logger.exception(
                    "Page for %s via %s raised: %s", finding.finding_id, channel_type, e
                )
                continue
            if result.success:
                self.pages_sent += 1
                logger.info("Paged %s via %s to %s", finding.finding_id, channel_type, destination)
            else:
                logger.error(
                    "Page for %s via %s failed: %s",
                    finding.finding_id,
                    channel_type,
                    result.error_message,
                )
