"""Prompt templates that folders can be assigned, looked up by id."""

import json
import re
from datetime import UTC, datetime
from pathlib import Path

from loguru import logger
from pydantic import BaseModel, TypeAdapter, ValidationError


REQUIRED_VARIABLES = ("${titleLimit}", "${descriptionLimit}", "${keywordLimit}")
_VARIABLE_PATTERN = re.compile(r"\$\{(\w+)\}")


class PromptTemplate(BaseModel):
    id: str
    name: str
    template: str
    is_preset: bool = False


def _preset(template_id: str, name: str, intro: str, focus: tuple[str, str, str]) -> PromptTemplate:
    title_focus, description_focus, keyword_focus = focus
    return PromptTemplate(
        id=template_id,
        name=name,
        is_preset=True,
        template=(
            f"{intro}\n\n"
            "IMPORTANT: Write complete, natural text. End at complete words, never cut words "
            "in half.\n\n"
            "Requirements:\n"
            "1. Title:\n"
            "   - Target approximately ${titleLimit} characters\n"
            "   - No colons (:) or special characters\n"
            f"   - {title_focus}\n\n"
            "2. Description:\n"
            "   - Target under ${descriptionLimit} characters\n"
            "   - No colons (:) or special characters\n"
            f"   - {description_focus}\n\n"
            "3. Keywords:\n"
            "   - Provide approximately ${keywordLimit} keywords\n"
            "   - No colons (:) or special characters\n"
            f"   - {keyword_focus}"
        ),
    )


PRESET_TEMPLATES: tuple[PromptTemplate, ...] = (
    _preset(
        "stock-photo",
        "Stock Photo",
        "Generate stock photo metadata for this image. Make titles descriptive and marketable "
        "for stock photography platforms.",
        (
            "Focus on visual elements and potential use cases",
            "Describe composition, mood, and potential applications",
            "Include style, mood, subject, and technical terms",
        ),
    ),
    _preset(
        "product-catalog",
        "Product Catalog",
        "Generate e-commerce product metadata for this image. Focus on product features, "
        "benefits, and selling points.",
        (
            "Include brand, product type, and key features",
            "Highlight features, benefits, and use cases",
            "Include product attributes, categories, and search terms",
        ),
    ),
    _preset(
        "social-media",
        "Social Media",
        "Generate social media metadata for this image. Create engaging content for social "
        "media platforms.",
        (
            "Use conversational, engaging language",
            "Include relevant hashtags and calls to action",
            "Include trending topics, hashtags, and relevant tags",
        ),
    ),
)


def interpolate_template(
    template: str,
    *,
    title_limit: int,
    description_limit: int,
    keyword_limit: int,
    file_name: str | None = None,
    current_date: str | None = None,
) -> str:
    """
    Substitute ``${...}`` variables; unknown variables are left untouched.

    Examples:
        >>> interpolate_template(
        ...     "Title under ${titleLimit} for ${fileName}",
        ...     title_limit=70,
        ...     description_limit=200,
        ...     keyword_limit=30,
        ...     file_name="beach.jpg",
        ... )
        'Title under 70 for beach.jpg'

    """
    values = {
        "titleLimit": str(title_limit),
        "descriptionLimit": str(description_limit),
        "keywordLimit": str(keyword_limit),
        "fileName": file_name or "",
        "currentDate": current_date or datetime.now(tz=UTC).date().isoformat(),
    }
    return _VARIABLE_PATTERN.sub(lambda m: values.get(m.group(1), m.group(0)), template)


def missing_variables(template: str) -> list[str]:
    """
    Required variables absent from a template.

    Examples:
        >>> missing_variables("Only ${titleLimit}")
        ['${descriptionLimit}', '${keywordLimit}']

    """
    return [variable for variable in REQUIRED_VARIABLES if variable not in template]


class TemplateRegistry:
    """Preset templates plus user templates; user templates shadow presets with the same id."""

    def __init__(self, user_templates: list[PromptTemplate] | None = None) -> None:
        self._templates: dict[str, PromptTemplate] = {t.id: t for t in PRESET_TEMPLATES}
        for template in user_templates or []:
            if missing := missing_variables(template.template):
                logger.warning("template_missing_variables", template=template.id, missing=missing)
            self._templates[template.id] = template

    @classmethod
    def from_file(cls, path: Path | None) -> "TemplateRegistry":
        """Load user templates from a JSON list; an unreadable file leaves only presets."""
        if path is None:
            return cls()
        try:
            raw = json.loads(path.read_text(encoding="utf-8"))
            templates = TypeAdapter(list[PromptTemplate]).validate_python(raw)
        except (OSError, ValueError, ValidationError) as exc:
            logger.error("templates_file_unreadable", path=str(path), error=str(exc))
            return cls()
        logger.info("user_templates_loaded", count=len(templates), path=str(path))
        return cls(templates)

    def get(self, template_id: str | None) -> PromptTemplate | None:
        if not template_id:
            return None
        return self._templates.get(template_id)

    def ids(self) -> list[str]:
        return list(self._templates)
