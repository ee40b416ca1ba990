"""Template catalog -- loads templates.yaml into typed LoopTemplate objects."""

from __future__ import annotations

from pathlib import Path
from typing import Any

import yaml

from iterloop.constants import BUNDLED_TEMPLATES_FILE
from iterloop.models import ConfigurationError, LoopTemplate, _coerce_bool, _coerce_non_negative_int

_REQUIRED_FIELDS = ("id", "name", "category", "prompt")


def _parse_template(raw: Any) -> LoopTemplate:
    """Convert a raw YAML mapping into a ``LoopTemplate``."""
    if not isinstance(raw, dict):
        raise ConfigurationError("template entries must be mappings")
    missing = [key for key in _REQUIRED_FIELDS if not str(raw.get(key) or "").strip()]
    if missing:
        raise ConfigurationError(
            f"template {raw.get('id', '<unnamed>')!r} is missing: {', '.join(missing)}"
        )
    tools_raw = raw.get("tools") or []
    if not isinstance(tools_raw, list):
        raise ConfigurationError(f"template {raw['id']!r}: tools must be a list")
    promise = raw.get("completion_promise")
    return LoopTemplate(
        id=str(raw["id"]).strip(),
        name=str(raw["name"]).strip(),
        description=str(raw.get("description", "")).strip(),
        category=str(raw["category"]).strip(),
        prompt=str(raw["prompt"]).strip(),
        completion_promise=str(promise).strip() if promise else None,
        max_iterations=_coerce_non_negative_int(raw.get("max_iterations"), default=0),
        tools=tuple(str(tool) for tool in tools_raw),
        git_enabled=_coerce_bool(raw.get("git_enabled"), default=True),
        auto_commit=_coerce_bool(raw.get("auto_commit"), default=False),
    )


class TemplateCatalog:
    def __init__(self, templates: list[LoopTemplate]) -> None:
        self._templates: dict[str, LoopTemplate] = {}
        for template in templates:
            if template.id in self._templates:
                raise ConfigurationError(f"duplicate template id: {template.id}")
            self._templates[template.id] = template

    @classmethod
    def load(cls, path: Path | None = None) -> TemplateCatalog:
        """Load templates from *path*, defaulting to the bundled catalog."""
        source = path or BUNDLED_TEMPLATES_FILE
        try:
            data = yaml.safe_load(source.read_text(encoding="utf-8"))
        except (OSError, yaml.YAMLError) as exc:
            raise ConfigurationError(f"template catalog could not be loaded: {source}: {exc}") from exc
        entries = data.get("templates") if isinstance(data, dict) else None
        if not isinstance(entries, list):
            raise ConfigurationError(f"template catalog must contain a 'templates' list: {source}")
        return cls([_parse_template(entry) for entry in entries])

    def get(self, template_id: str) -> LoopTemplate | None:
        return self._templates.get(template_id)

    def all(self) -> list[LoopTemplate]:
        return list(self._templates.values())

    def by_category(self, category: str) -> list[LoopTemplate]:
        return [template for template in self._templates.values() if template.category == category]

    def categories(self) -> list[str]:
        return sorted({template.category for template in self._templates.values()})

    def search(self, keyword: str) -> list[LoopTemplate]:
        needle = keyword.strip().lower()
        if not needle:
            return self.all()
        return [
            template
            for template in self._templates.values()
            if needle in template.name.lower()
            or needle in template.description.lower()
            or needle in template.category.lower()
        ]
