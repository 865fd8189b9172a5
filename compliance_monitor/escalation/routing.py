"""Where critical findings are paged.

A destination key names a channel and a mailbox or hook, e.g.
``email:security``. Keys are mapped to addresses through environment
variables so that no address lives in code or in the catalogues.

For a finding, the candidate keys are the kind-specific recipients
followed by the global recipients. A key is used only if its channel is
enabled for the finding's severity and its variable is set. Duplicate
(channel, address) pairs are delivered once, in first-seen order.
"""

import os
from dataclasses import dataclass, field

from compliance_monitor.audit.models import Severity
from compliance_monitor.escalation.models import Finding, FindingKind

DESTINATION_ENV_MAP: dict[str, str] = {
    "email:default": "COMPLIANCE_ALERT_EMAIL_DEFAULT",
    "email:compliance": "COMPLIANCE_ALERT_EMAIL_COMPLIANCE",
    "email:security": "COMPLIANCE_ALERT_EMAIL_SECURITY",
    "webhook:default": "COMPLIANCE_ALERT_WEBHOOK_DEFAULT",
}


def _critical_only() -> dict[Severity, list[str]]:
    return {Severity.CRITICAL: ["email", "webhook"]}


def _kind_mailboxes() -> dict[FindingKind, list[str]]:
    return {
        FindingKind.VIOLATION: ["email:compliance"],
        FindingKind.VULNERABILITY: ["email:security"],
    }


@dataclass
class RoutingConfig:
    """Paging routes.

    Attributes:
        severity_channels: Channel types enabled per severity; a severity
            that is absent (or maps to []) is logged but never paged
        kind_recipients: Destination keys added per finding kind
        global_recipients: Destination keys used for every paged finding
    """

    severity_channels: dict[Severity, list[str]] = field(default_factory=_critical_only)
    kind_recipients: dict[FindingKind, list[str]] = field(default_factory=_kind_mailboxes)
    global_recipients: list[str] = field(
        default_factory=lambda: ["email:default", "webhook:default"]
    )

    def get_channels_for_severity(self, severity: Severity) -> list[str]:
        return self.severity_channels.get(severity, [])

    def destination_keys(self, finding: Finding) -> list[str]:
        """Candidate keys for a finding whose channel is enabled for its severity."""
        enabled = set(self.get_channels_for_severity(finding.severity))
        keys = [*self.kind_recipients.get(finding.kind, []), *self.global_recipients]
        return [key for key in keys if key.partition(":")[0] in enabled]


def resolve_destination(key: str) -> str | None:
    """Address for a destination key, or None if the key is unknown or unset."""
    variable = DESTINATION_ENV_MAP.get(key)
    return os.getenv(variable) if variable else None


def get_destinations_for_finding(
    finding: Finding, config: RoutingConfig | None = None
) -> list[tuple[str, str]]:
    """Resolved (channel_type, address) pairs to page for a finding.

    Returns:
        Unique pairs in routing order; empty when the severity is not paged
    """
    config = config or RoutingConfig()
    resolved = (
        (key.partition(":")[0], resolve_destination(key))
        for key in config.destination_keys(finding)
    )
    return list(dict.fromkeys(pair for pair in resolved if pair[1]))
