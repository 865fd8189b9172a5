"""
Shared utilities: YAML loading and UTC time helpers.
"""

from compliance_monitor.utils.timeutil import Clock, ensure_utc, utc_now
from compliance_monitor.utils.yaml_loader import YAMLLoader, YAMLLoadError

__all__: list[str] = [
    "Clock",
    "YAMLLoadError",
    "YAMLLoader",
    "ensure_utc",
    "utc_now",
]
