"""Compliance rules: catalogue, detectors and the scheduled evaluator."""

from compliance_monitor.rules.detectors import (
    DETECTORS,
    AnonymousConsentPolicy,
    ConsentChecker,
    ViolationCandidate,
)
from compliance_monitor.rules.evaluator import RuleEvaluator, compute_metrics
from compliance_monitor.rules.models import (
    ComplianceMetrics,
    ComplianceRule,
    ComplianceViolation,
    Regulation,
    RiskLevel,
    RuleConditions,
    RuleKind,
)
from compliance_monitor.rules.registry import DuplicateRuleError, RuleRegistry, load_rule_catalog

__all__ = [
    "DETECTORS",
    "AnonymousConsentPolicy",
    "ComplianceMetrics",
    "ComplianceRule",
    "ComplianceViolation",
    "ConsentChecker",
    "DuplicateRuleError",
    "Regulation",
    "RiskLevel",
    "RuleConditions",
    "RuleEvaluator",
    "RuleKind",
    "RuleRegistry",
    "ViolationCandidate",
    "compute_metrics",
    "load_rule_catalog",
]
