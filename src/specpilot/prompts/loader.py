"""Prompt template loading utilities."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Iterable

import yaml
from pydantic import ValidationError

from .models import DEFAULT_TEMPLATE, PromptTemplate

logger = logging.getLogger(__name__)


class TemplateLoadError(RuntimeError):
    """Raised when one or more template files cannot be parsed."""


class TemplateLoader:
    """Loads prompt templates from YAML files on disk."""

    def __init__(self, search_paths: Iterable[Path] | None = None) -> None:
        paths = [Path(path) for path in (search_paths or [])]
        self._search_paths: list[Path] = [path for path in paths if path.is_dir()]

    @property
    def search_paths(self) -> list[Path]:
        return list(self._search_paths)

    def load_all(self) -> dict[str, PromptTemplate]:
        """Load templates from all search paths, built-in default included.

        Later search paths override earlier ones when template ids collide.
        """

        templates: dict[str, PromptTemplate] = {DEFAULT_TEMPLATE.id: DEFAULT_TEMPLATE}
        errors: list[str] = []

        for base in self._search_paths:
            for path in sorted(base.glob("*.yml")) + sorted(base.glob("*.yaml")):
                try:
                    document = yaml.safe_load(path.read_text(encoding="utf-8"))
                except yaml.YAMLError as exc:
                    errors.append(f"Failed to parse YAML in {path}: {exc}")
                    continue

                if document is None:
                    continue

                try:
                    template = PromptTemplate.model_validate(document)
                except ValidationError as exc:
                    errors.append(f"Template validation error in {path}: {exc}")
                    continue

                if template.id in templates and template.id != DEFAULT_TEMPLATE.id:
                    logger.debug("Template overridden", extra={"template_id": template.id, "path": str(path)})
                templates[template.id] = template

        if errors:
            raise TemplateLoadError("; ".join(errors))

        return templates

    def get(self, template_id: str) -> PromptTemplate:
        templates = self.load_all()
        try:
            return templates[template_id]
        except KeyError as exc:
            raise TemplateLoadError(f"Template '{template_id}' not found in search paths") from exc


def load_templates(search_paths: Iterable[Path] | None = None) -> dict[str, PromptTemplate]:
    """Convenience wrapper for loading templates from the provided paths."""

    return TemplateLoader(search_paths).load_all()


__all__ = ["TemplateLoadError", "TemplateLoader", "load_templates"]
