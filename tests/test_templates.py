from __future__ import annotations

from pathlib import Path

import pytest
import yaml

from iterloop.models import ConfigurationError
from iterloop.templates import TemplateCatalog


def _write_catalog(tmp_path: Path, templates: list) -> Path:
    path = tmp_path / "templates.yaml"
    path.write_text(yaml.safe_dump({"templates": templates}, sort_keys=False), encoding="utf-8")
    return path


def test_bundled_catalog_contents() -> None:
    catalog = TemplateCatalog.load()

    ids = [template.id for template in catalog.all()]
    assert ids == [
        "rest-api",
        "tdd",
        "refactor",
        "bug-fix",
        "docs",
        "optimize",
        "security",
        "db-migrate",
        "review",
    ]
    bug_fix = catalog.get("bug-fix")
    assert bug_fix is not None
    assert bug_fix.completion_promise == "BUG_FIXED"
    assert bug_fix.max_iterations == 15
    assert bug_fix.tools == ("javascript-test",)
    assert "<promise>BUG_FIXED</promise>" in bug_fix.prompt
    refactor = catalog.get("refactor")
    assert refactor is not None and refactor.auto_commit


def test_categories_are_sorted_and_filterable() -> None:
    catalog = TemplateCatalog.load()

    assert catalog.categories() == sorted(catalog.categories())
    assert "testing" in catalog.categories()
    assert [template.id for template in catalog.by_category("testing")] == ["tdd"]
    assert catalog.by_category("nonexistent") == []


def test_search_matches_name_description_and_category() -> None:
    catalog = TemplateCatalog.load()

    assert [template.id for template in catalog.search("SECURITY")] == ["security"]
    assert "db-migrate" in [template.id for template in catalog.search("schema")]
    assert catalog.search("   ") == catalog.all()
    assert catalog.get("missing") is None


def test_load_custom_catalog_applies_defaults(tmp_path: Path) -> None:
    path = _write_catalog(
        tmp_path,
        [{"id": "lint", "name": "Lint", "category": "quality", "prompt": "Fix lint\n"}],
    )

    (template,) = TemplateCatalog.load(path).all()

    assert template.prompt == "Fix lint"
    assert template.completion_promise is None
    assert template.max_iterations == 0
    assert template.git_enabled and not template.auto_commit


@pytest.mark.parametrize(
    "templates",
    [
        [{"id": "x", "name": "X", "category": "c"}],
        [{"id": "x", "name": "X", "category": "c", "prompt": "p", "tools": "all"}],
        [
            {"id": "x", "name": "X", "category": "c", "prompt": "p"},
            {"id": "x", "name": "Y", "category": "c", "prompt": "q"},
        ],
        ["not-a-mapping"],
    ],
)
def test_invalid_catalog_entries_raise(tmp_path: Path, templates: list) -> None:
    with pytest.raises(ConfigurationError):
        TemplateCatalog.load(_write_catalog(tmp_path, templates))


def test_catalog_without_templates_list_raises(tmp_path: Path) -> None:
    path = tmp_path / "templates.yaml"
    path.write_text("templates: {}\n", encoding="utf-8")
    with pytest.raises(ConfigurationError, match="'templates' list"):
        TemplateCatalog.load(path)
