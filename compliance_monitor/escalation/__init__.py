from compliance_monitor.escalation.channels import (
    DeliveryResult,
    EmailChannel,
    NotificationChannel,
    WebhookChannel,
)
from compliance_monitor.escalation.cooldown import CooldownCache
from compliance_monitor.escalation.models import Finding, FindingKind
from compliance_monitor.escalation.routing import RoutingConfig
from compliance_monitor.escalation.sink import EscalationSink

__all__ = [
    "CooldownCache",
    "DeliveryResult",
    "EmailChannel",
    "EscalationSink",
    "Finding",
    "FindingKind",
    "NotificationChannel",
    "RoutingConfig",
    "WebhookChannel",
]
