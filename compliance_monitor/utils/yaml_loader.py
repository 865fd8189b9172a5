"""Catalogue loading: YAML documents validated into Pydantic models.

Rule and probe catalogues ship as package data and can be overridden by a
file path from settings. Both sources go through the same parse and
validate step, so a typo in an override fails exactly like a typo in the
bundled file.

Example:
    >>> loader = YAMLLoader()
    >>> catalog = loader.load_file(Path("config/rules.yml"), RuleCatalog)
    >>> bundled = loader.load_resource("compliance_monitor.catalog", "rules.yml", RuleCatalog)
"""

from __future__ import annotations

import logging
from importlib import resources
from pathlib import Path
from typing import TypeVar

import yaml
from pydantic import BaseModel, ValidationError

from compliance_monitor.errors import ComplianceMonitorError

logger = logging.getLogger(__name__)

T = TypeVar("T", bound=BaseModel)


class YAMLLoadError(ComplianceMonitorError):
    """A catalogue could not be parsed or failed validation.

    Attributes:
        message: Human-readable error description
        source: File path or package resource that failed to load
    """

    def __init__(self, message: str, source: Path | str) -> None:
        self.message = message
        self.source = source
        super().__init__(f"{message} ({source})")


def format_validation_errors(error: ValidationError) -> str:
    """One "loc: msg" entry per error, joined with "; "."""
    return "; ".join(
        f"{'.'.join(str(part) for part in item['loc'])}: {item['msg']}" for item in error.errors()
    )


class YAMLLoader:
    """Load catalogue YAML into Pydantic models."""

    def load_file(self, path: Path, model_cls: type[T]) -> T:
        """Load a catalogue override from disk.

        Raises:
            FileNotFoundError: If the file doesn't exist
            YAMLLoadError: If YAML parsing or model validation fails
        """
        if not path.is_file():
            raise FileNotFoundError(f"Catalogue file not found: {path}")
        return self.load_text(path.read_text(encoding="utf-8"), model_cls, source=path)

    def load_resource(self, package: str, name: str, model_cls: type[T]) -> T:
        """Load a catalogue shipped as package data."""
        content = resources.files(package).joinpath(name).read_text(encoding="utf-8")
        return self.load_text(content, model_cls, source=f"{package}/{name}")

    def load_text(self, content: str, model_cls: type[T], source: Path | str = "<string>") -> T:
        try:
            data = yaml.safe_load(content) or {}
        except yaml.YAMLError as e:
            raise YAMLLoadError(f"YAML syntax error: {e}", source) from e

        try:
            model = model_cls.model_validate(data)
        except ValidationError as e:
            raise YAMLLoadError(
                f"Catalogue validation failed: {format_validation_errors(e)}", source
            ) from e

        logger.debug("Loaded %s from %s", model_cls.__name__, source)
        return model
