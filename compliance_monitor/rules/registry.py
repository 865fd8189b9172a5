"""Rule registry for in-memory compliance rule management.

Classes:
    DuplicateRuleError: Raised when registering a rule with a duplicate ID
    RuleRegistry: In-memory registry of ComplianceRules

Functions:
    load_rule_catalog: Load rules from a YAML file or the bundled catalogue

Example:
    >>> registry = RuleRegistry(load_rule_catalog())
    >>> registry.set_enabled("unauthorized_export", False)
    >>> [rule.id for rule in registry.enabled()]
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from pathlib import Path

from compliance_monitor.catalog import CATALOG_PACKAGE, RULES_RESOURCE
from compliance_monitor.rules.models import ComplianceRule, RuleCatalog
from compliance_monitor.utils.yaml_loader import YAMLLoader

logger = logging.getLogger(__name__)


class DuplicateRuleError(Exception):
    """Raised when a rule with the same ID is already registered.

    Attributes:
        rule_id: The ID that caused the duplicate error.
    """

    def __init__(self, rule_id: str) -> None:
        self.rule_id = rule_id
        super().__init__(f"Rule with ID '{rule_id}' already exists in registry")


def load_rule_catalog(path: str | Path | None = None) -> list[ComplianceRule]:
    """Load rules from a YAML catalogue.

    Args:
        path: Catalogue file; the bundled default catalogue when None

    Raises:
        FileNotFoundError: If path doesn't exist
        YAMLLoadError: If YAML parsing or validation fails
    """
    loader = YAMLLoader()
    if path is None:
        catalog = loader.load_resource(CATALOG_PACKAGE, RULES_RESOURCE, RuleCatalog)
    else:
        catalog = loader.load_file(Path(path), RuleCatalog)
    logger.info("Loaded %d compliance rules", len(catalog.rules))
    return catalog.rules


class RuleRegistry:
    """In-memory registry of compliance rules, keyed by rule ID.

    Registration order is preserved and is the evaluation order.
    """

    def __init__(self, rules: Iterable[ComplianceRule] = ()) -> None:
        self._rules: dict[str, ComplianceRule] = {}
        for rule in rules:
            self.register(rule)

    def register(self, rule: ComplianceRule) -> None:
        """Register a rule.

        Raises:
            DuplicateRuleError: If a rule with the same ID exists.
        """
        if rule.id in self._rules:
            raise DuplicateRuleError(rule.id)
        self._rules[rule.id] = rule
        logger.debug("Registered compliance rule: %s (%s)", rule.id, rule.kind.value)

    def get(self, rule_id: str) -> ComplianceRule | None:
        return self._rules.get(rule_id)

    def list_all(self) -> list[ComplianceRule]:
        return list(self._rules.values())

    def enabled(self) -> list[ComplianceRule]:
        return [rule for rule in self._rules.values() if rule.enabled]

    def set_enabled(self, rule_id: str, enabled: bool) -> ComplianceRule:
        """Enable or disable a rule.

        Args:
            rule_id: ID of the rule to change
            enabled: New enabled flag

        Returns:
            The updated rule

        Raises:
            KeyError: If no rule has this ID
        """
        rule = self._rules.get(rule_id)
        if rule is None:
            raise KeyError(rule_id)
        if rule.enabled != enabled:
            rule = rule.model_copy(update={"enabled": enabled})
            self._rules[rule_id] = rule
            logger.info("Compliance rule %s %s", rule_id, "enabled" if enabled else "disabled")
        return rule

    def __len__(self) -> int:
        return len(self._rules)
