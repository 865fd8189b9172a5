"""Detector strategies for compliance rules.

Each RuleKind maps to exactly one async detector through DETECTORS. A
detector receives the rule, the events read for the rule's window and a
DetectorContext, and returns ViolationCandidates. The evaluator turns
candidates into persisted violations.

Candidate identity:
    group_key: What the finding is about (user id, IP, event id, "store")
    anchor: Earliest contributing event timestamp, or the retention cutoff
            date for the whole-store retention scan
"""

from __future__ import annotations

import logging
from collections import defaultdict
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Protocol, runtime_checkable

from compliance_monitor.audit.config import (
    FLAG_ASSESSMENT_DATA,
    FLAG_GDPR_RELEVANT,
    FLAG_PERSONAL_IDENTIFIER,
)
from compliance_monitor.audit.models import AuditEvent
from compliance_monitor.rules.models import ComplianceRule, RuleKind

if TYPE_CHECKING:
    from compliance_monitor.audit.service import AuditService

logger = logging.getLogger(__name__)

ANONYMOUS_USER = "anonymous"

# Detector defaults when a rule carries no threshold
DEFAULT_EXCESSIVE_ACCESS_THRESHOLD = 50
DEFAULT_FAILED_AUTH_THRESHOLD = 5
DEFAULT_SENSITIVE_TARGETS_THRESHOLD = 10


@runtime_checkable
class ConsentChecker(Protocol):
    """Consent registry collaborator."""

    async def has_valid_consent(self, user_id: str) -> bool: ...


class AnonymousConsentPolicy:
    """Treats every identified user as consenting and anonymous traffic as not."""

    async def has_valid_consent(self, user_id: str) -> bool:
        return user_id != ANONYMOUS_USER


@dataclass(frozen=True)
class DetectorContext:
    """Inputs a detector may need beyond the window's events."""

    now: datetime
    audit: AuditService
    consent: ConsentChecker
    retention_days: int

    @property
    def retention_cutoff(self) -> datetime:
        return self.audit.retention_cutoff(self.retention_days)


@dataclass(frozen=True)
class ViolationCandidate:
    group_key: str
    description: str
    evidence: tuple[str, ...]
    anchor: datetime


Detector = Callable[
    [ComplianceRule, list[AuditEvent], DetectorContext], Awaitable[list[ViolationCandidate]]
]


def _earliest(events: list[AuditEvent]) -> datetime:
    return min(event.timestamp for event in events)


def _ids(events: list[AuditEvent]) -> tuple[str, ...]:
    return tuple(dict.fromkeys(event.id for event in events))


async def detect_excessive_access(
    rule: ComplianceRule, events: list[AuditEvent], ctx: DetectorContext
) -> list[ViolationCandidate]:
    """Flag users whose event count in the window exceeds the threshold."""
    threshold = rule.threshold_or(DEFAULT_EXCESSIVE_ACCESS_THRESHOLD)
    by_user: dict[str, list[AuditEvent]] = defaultdict(list)
    for event in events:
        if event.user_id:
            by_user[event.user_id].append(event)

    return [
        ViolationCandidate(
            group_key=user_id,
            description=(
                f"User {user_id} accessed data {len(user_events)} times in "
                f"{rule.conditions.window_minutes} minutes (threshold: {threshold})"
            ),
            evidence=_ids(user_events),
            anchor=_earliest(user_events),
        )
        for user_id, user_events in by_user.items()
        if len(user_events) > threshold
    ]


def is_export_event(event: AuditEvent) -> bool:
    return (
        "export" in event.action
        or "download" in event.action
        or event.details.get("dataExport") is True
    )


def is_export_authorized(event: AuditEvent) -> bool:
    return event.user_id is not None and event.details.get("authorized") is True


async def detect_unauthorized_export(
    rule: ComplianceRule, events: list[AuditEvent], ctx: DetectorContext
) -> list[ViolationCandidate]:
    """Flag each export/download lacking the authorized marker."""
    return [
        ViolationCandidate(
            group_key=event.id,
            description=(
                f"Unauthorized data export attempt by user {event.user_id or 'unknown'} "
                f"for resource {event.resource}"
            ),
            evidence=(event.id,),
            anchor=event.timestamp,
        )
        for event in events
        if is_export_event(event) and not is_export_authorized(event)
    ]


async def detect_consent_violation(
    rule: ComplianceRule, events: list[AuditEvent], ctx: DetectorContext
) -> list[ViolationCandidate]:
    """Flag GDPR-relevant processing/storage by users without valid consent."""
    candidates: list[ViolationCandidate] = []
    for event in events:
        if not event.has_flag(FLAG_GDPR_RELEVANT):
            continue
        if "process" not in event.action and "store" not in event.action:
            continue
        if await ctx.consent.has_valid_consent(event.user_id or ANONYMOUS_USER):
            continue
        candidates.append(
            ViolationCandidate(
                group_key=event.id,
                description=(
                    "GDPR data processing without valid consent for user "
                    f"{event.user_id or ANONYMOUS_USER}"
                ),
                evidence=(event.id,),
                anchor=event.timestamp,
            )
        )
    return candidates


async def detect_retention_violation(
    rule: ComplianceRule, events: list[AuditEvent], ctx: DetectorContext
) -> list[ViolationCandidate]:
    """Flag the store when any event is older than the retention cutoff.

    Ignores the window's events and scans the whole store.
    """
    cutoff = ctx.retention_cutoff
    expired = await ctx.audit.count_older_than(cutoff)
    if expired <= 0:
        return []
    return [
        ViolationCandidate(
            group_key="store",
            description=(
                f"{expired} audit log entries exceed data retention period of "
                f"{ctx.retention_days} days"
            ),
            evidence=(),
            anchor=datetime(cutoff.year, cutoff.month, cutoff.day, tzinfo=timezone.utc),
        )
    ]


async def detect_failed_authentication(
    rule: ComplianceRule, events: list[AuditEvent], ctx: DetectorContext
) -> list[ViolationCandidate]:
    """Flag IP addresses whose failed logins in the window reach the threshold."""
    threshold = rule.threshold_or(DEFAULT_FAILED_AUTH_THRESHOLD)
    by_ip: dict[str, list[AuditEvent]] = defaultdict(list)
    for event in events:
        if event.event_type != "authentication" or event.details.get("success") is not False:
            continue
        if event.ip_address:
            by_ip[event.ip_address].append(event)

    return [
        ViolationCandidate(
            group_key=ip_address,
            description=(
                f"{len(failures)} failed authentication attempts from IP {ip_address} "
                f"in {rule.conditions.window_minutes} minutes"
            ),
            evidence=_ids(failures),
            anchor=_earliest(failures),
        )
        for ip_address, failures in by_ip.items()
        if len(failures) >= threshold
    ]


async def detect_sensitive_access_pattern(
    rule: ComplianceRule, events: list[AuditEvent], ctx: DetectorContext
) -> list[ViolationCandidate]:
    """Flag accessors touching more distinct target users than the threshold."""
    threshold = rule.threshold_or(DEFAULT_SENSITIVE_TARGETS_THRESHOLD)
    sensitive = [
        event
        for event in events
        if event.has_flag(FLAG_PERSONAL_IDENTIFIER) or event.has_flag(FLAG_ASSESSMENT_DATA)
    ]

    targets: dict[str, set[str]] = defaultdict(set)
    for event in sensitive:
        target = event.details.get("targetUserId")
        if event.user_id and target:
            targets[event.user_id].add(str(target))

    candidates: list[ViolationCandidate] = []
    for user_id, accessed in targets.items():
        if len(accessed) <= threshold:
            continue
        user_events = [event for event in sensitive if event.user_id == user_id]
        candidates.append(
            ViolationCandidate(
                group_key=user_id,
                description=(
                    f"User {user_id} accessed {len(accessed)} different user records in "
                    f"{rule.conditions.window_minutes} minutes"
                ),
                evidence=_ids(user_events),
                anchor=_earliest(user_events),
            )
        )
    return candidates


DETECTORS: dict[RuleKind, Detector] = {
    RuleKind.EXCESSIVE_ACCESS: detect_excessive_access,
    RuleKind.UNAUTHORIZED_EXPORT: detect_unauthorized_export,
    RuleKind.CONSENT_VIOLATION: detect_consent_violation,
    RuleKind.RETENTION_VIOLATION: detect_retention_violation,
    RuleKind.FAILED_AUTHENTICATION_THRESHOLD: detect_failed_authentication,
    RuleKind.SENSITIVE_ACCESS_PATTERN: detect_sensitive_access_pattern,
}


def _check_exhaustive() -> None:
    missing = set(RuleKind) - DETECTORS.keys()
    if missing:
        raise ImportError(
            f"No detector registered for rule kinds: {sorted(kind.value for kind in missing)}"
        )


_check_exhaustive()


def get_detector(kind: RuleKind) -> Detector:
    return DETECTORS[kind]
