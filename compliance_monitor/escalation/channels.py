"""Paging channels for critical findings.

Channels never raise on delivery problems; they report the outcome as a
DeliveryResult and leave logging to the sink.

This module provides:
- DeliveryResult: Outcome of one delivery attempt
- NotificationChannel: Abstract base class for paging channels
- EmailChannel: SMTP delivery via aiosmtplib
- WebhookChannel: Slack-compatible JSON POST via httpx
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from email.message import EmailMessage
from typing import Any

import aiosmtplib
import httpx

from compliance_monitor.audit.models import Severity
from compliance_monitor.escalation.models import Finding, FindingKind

SMTP_OK = 250

KIND_HEADINGS = {
    FindingKind.VIOLATION: "Compliance violation",
    FindingKind.VULNERABILITY: "Security vulnerability",
}


def subject_line(finding: Finding) -> str:
    return f"[{finding.severity.value.upper()}] {finding.summary}"


@dataclass
class DeliveryResult:
    """Outcome of a delivery attempt.

    Attributes:
        success: Whether the page was accepted
        response_code: HTTP status or SMTP reply code, when known
        error_message: Failure reason
    """

    success: bool
    response_code: int | None = None
    error_message: str | None = None


class NotificationChannel(ABC):
    """A way of paging someone about a finding."""

    @abstractmethod
    async def send(self, finding: Finding, destination: str) -> DeliveryResult:
        """Deliver one page.

        Args:
            finding: The finding being escalated
            destination: Email address, webhook URL, etc.
        """


class EmailChannel(NotificationChannel):
    """Pages by email through an SMTP relay (STARTTLS by default)."""

    def __init__(
        self,
        smtp_host: str,
        smtp_port: int,
        sender: str,
        username: str | None = None,
        password: str | None = None,
        use_tls: bool = True,
    ):
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.sender = sender
        self.username = username
        self.password = password
        self.use_tls = use_tls

    def build_message(self, finding: Finding, destination: str) -> EmailMessage:
        lines = [
            f"{KIND_HEADINGS[finding.kind]} detected",
            "",
            f"Finding: {finding.description}",
            f"Kind: {finding.kind.value}",
            f"Source: {finding.source_name} ({finding.source_id})",
            f"Severity: {finding.severity.value}",
            f"Finding ID: {finding.finding_id}",
        ]
        if finding.details:
            lines += ["", "Details:"]
            lines += [f"  {key}: {value}" for key, value in finding.details.items()]

        message = EmailMessage()
        message["Subject"] = subject_line(finding)
        message["From"] = self.sender
        message["To"] = destination
        message.set_content("\n".join(lines))
        return message

    async def send(self, finding: Finding, destination: str) -> DeliveryResult:
        try:
            await aiosmtplib.send(
                self.build_message(finding, destination),
                hostname=self.smtp_host,
                port=self.smtp_port,
                username=self.username,
                password=self.password,
                start_tls=self.use_tls,
            )
        except aiosmtplib.SMTPException as e:
            return DeliveryResult(success=False, error_message=str(e))
        return DeliveryResult(success=True, response_code=SMTP_OK)


class WebhookChannel(NotificationChannel):
    """Pages by POSTing a Slack-compatible message to a webhook URL.

    Args:
        timeout_seconds: Request timeout
        transport: Optional httpx transport (tests pass a MockTransport)
    """

    SEVERITY_EMOJI = {
        Severity.CRITICAL: ":rotating_light:",
        Severity.HIGH: ":fire:",
        Severity.MEDIUM: ":warning:",
        Severity.LOW: ":information_source:",
    }
    SEVERITY_COLOR = {Severity.CRITICAL: "#ff0000", Severity.HIGH: "#ff8800"}
    DEFAULT_COLOR = "#ffcc00"

    def __init__(
        self, timeout_seconds: float = 10.0, transport: httpx.AsyncBaseTransport | None = None
    ):
        self.timeout_seconds = timeout_seconds
        self._transport = transport

    def build_payload(self, finding: Finding) -> dict[str, Any]:
        fields = [
            {"title": "Kind", "value": KIND_HEADINGS[finding.kind], "short": True},
            {"title": "Source", "value": finding.source_id, "short": True},
            {"title": "Finding ID", "value": finding.finding_id, "short": False},
        ]
        fields += [
            {"title": key, "value": str(value), "short": True}
            for key, value in finding.details.items()
        ]
        emoji = self.SEVERITY_EMOJI.get(finding.severity, "")
        return {
            "text": f"{emoji} {subject_line(finding)}",
            "attachments": [
                {
                    "color": self.SEVERITY_COLOR.get(finding.severity, self.DEFAULT_COLOR),
                    "text": finding.description,
                    "fields": fields,
                }
            ],
        }

    async def send(self, finding: Finding, destination: str) -> DeliveryResult:
        try:
            async with httpx.AsyncClient(
                timeout=self.timeout_seconds, transport=self._transport
            ) as client:
                response = await client.post(destination, json=self.build_payload(finding))
                response.raise_for_status()
        except httpx.TimeoutException:
            return DeliveryResult(success=False, error_message="Request timed out")
        except httpx.HTTPStatusError as e:
            return DeliveryResult(
                success=False, response_code=e.response.status_code, error_message=str(e)
            )
        except httpx.RequestError as e:
            return DeliveryResult(success=False, error_message=str(e))
        return DeliveryResult(success=True, response_code=response.status_code)
