"""Bundled rule and probe catalogues.

The YAML files in this package are the default catalogues; a deployment can
point Settings.rules_file / Settings.probes_file at its own copies.
"""

from pydantic import BaseModel, ConfigDict

CATALOG_PACKAGE = "compliance_monitor.catalog"
RULES_RESOURCE = "rules.yml"
PROBES_RESOURCE = "probes.yml"


class CatalogBaseModel(BaseModel):
    """Base model for catalogue entries.

    Uses extra='forbid' so that typos in YAML catalogues fail at load time
    instead of silently disabling a condition.
    """

    model_config = ConfigDict(extra="forbid")
