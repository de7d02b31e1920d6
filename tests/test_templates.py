"""Tests for prompt templates and the template registry."""

import json
from pathlib import Path

import pytest

from stock_tagger.templates import (
    PRESET_TEMPLATES,
    PromptTemplate,
    TemplateRegistry,
    interpolate_template,
    missing_variables,
)


def test_interpolate_template_replaces_known_variables() -> None:
    result = interpolate_template(
        "${titleLimit}/${descriptionLimit}/${keywordLimit} ${fileName} ${currentDate} ${unknown}",
        title_limit=70,
        description_limit=150,
        keyword_limit=25,
        file_name="IMG_1.jpg",
        current_date="2024-05-01",
    )

    assert result == "70/150/25 IMG_1.jpg 2024-05-01 ${unknown}"


def test_presets_carry_every_required_variable() -> None:
    assert [template.id for template in PRESET_TEMPLATES] == ["stock-photo", "product-catalog", "social-media"]
    for template in PRESET_TEMPLATES:
        assert template.is_preset
        assert missing_variables(template.template) == []


def test_user_templates_shadow_presets() -> None:
    custom = PromptTemplate(id="stock-photo", name="Mine", template="Only ${titleLimit}")
    registry = TemplateRegistry([custom])

    assert registry.get("stock-photo") == custom
    assert registry.get("social-media") is not None
    assert registry.get("nope") is None
    assert registry.get(None) is None
    assert registry.ids() == ["stock-photo", "product-catalog", "social-media"]


def test_registry_from_file(tmp_path: Path) -> None:
    path = tmp_path / "templates.json"
    path.write_text(
        json.dumps([{"id": "travel", "name": "Travel", "template": "Travel ${titleLimit}"}]),
        encoding="utf-8",
    )

    registry = TemplateRegistry.from_file(path)

    travel = registry.get("travel")
    assert travel is not None
    assert not travel.is_preset
    assert "stock-photo" in registry.ids()


@pytest.mark.parametrize("content", ["not json", json.dumps([{"id": "broken"}]), None])
def test_registry_from_unusable_file_keeps_presets(tmp_path: Path, content: str | None) -> None:
    path = tmp_path / "templates.json"
    if content is not None:
        path.write_text(content, encoding="utf-8")

    registry = TemplateRegistry.from_file(path)

    assert registry.ids() == [template.id for template in PRESET_TEMPLATES]


def test_registry_without_file_has_presets_only() -> None:
    assert TemplateRegistry.from_file(None).ids() == ["stock-photo", "product-catalog", "social-media"]
