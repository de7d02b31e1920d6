"""Tests covering AI analysis helpers using LiteLLM mocks."""

import asyncio
import io
import json
from pathlib import Path
from types import SimpleNamespace
from typing import Any

import litellm
import pytest
from PIL import Image
from pydantic import ValidationError
from pydantic_ai import BinaryContent, ModelSettings

import stock_tagger.ai as ai
from stock_tagger.ai import (
    AgentMetadataGenerator,
    GenerationRequest,
    MetadataValidationError,
    ModelUnavailableError,
    analyze_image_with_ai,
    apply_limits,
    build_metadata_prompt,
    prepare_image_for_agent,
)
from stock_tagger.config import AvoidWords, MetadataLimits
from stock_tagger.state import GeneratedMetadata


class LiteLLMAgentStub:
    """Minimal agent stub that delegates to LiteLLM's mock completion helper."""

    def __init__(self, payload: str, *, model: str = "gpt-4o-mini") -> None:
        """Store the canned payload and model name used for mock completions."""
        self._payload = payload
        self._model = model
        self.calls: list[dict[str, Any]] = []

    async def run(
        self,
        items: list[object],
        model_settings: ModelSettings,
        output_type: type[GeneratedMetadata],
    ) -> SimpleNamespace:
        """Mimic Agent.run by validating LiteLLM mock output."""
        self.calls.append(
            {
                "items": items,
                "temperature": model_settings.get("temperature"),
                "max_tokens": model_settings.get("max_tokens"),
            },
        )

        response = litellm.mock_completion(
            model=self._model,
            messages=[{"role": "user", "content": "stub"}],
            mock_response=self._payload,
        )
        content = response.choices[0].message["content"]  # type: ignore[union-attr]
        metadata = output_type.model_validate_json(content)
        return SimpleNamespace(output=metadata)


def _payload(**overrides: object) -> str:
    body: dict[str, object] = {
        "title": "Forest Companions",
        "description": "Two marmosets share a quiet branch in the canopy.",
        "keywords": ["Animal", "Forest", "Primate"],
    }
    body.update(overrides)
    return json.dumps(body)


def test_analyze_image_with_ai_parses_litellm_payload() -> None:
    """LiteLLM mock responses are parsed into GeneratedMetadata and returned."""
    agent = LiteLLMAgentStub(_payload())
    image_bytes = BinaryContent(data=b"\xff\xd8stubjpeg", media_type="image/jpeg")
    target_temperature = 0.42
    target_max_tokens = 88

    metadata = asyncio.run(
        analyze_image_with_ai(
            image_bytes,
            agent,  # type: ignore[arg-type]
            user_prompt="Describe the photograph",
            temperature=target_temperature,
            max_tokens=target_max_tokens,
        ),
    )

    assert metadata.title == "Forest Companions"
    assert metadata.description == "Two marmosets share a quiet branch in the canopy."
    assert metadata.keywords == ["Animal", "Forest", "Primate"]

    assert len(agent.calls) == 1
    recorded = agent.calls[0]
    assert recorded["items"][0] == "Describe the photograph"
    assert isinstance(recorded["items"][1], BinaryContent)
    assert recorded["temperature"] == target_temperature
    assert recorded["max_tokens"] == target_max_tokens


def test_analyze_image_with_ai_invalid_litellm_payload_raises() -> None:
    """Invalid LiteLLM output bubbles up as a validation error."""
    agent = LiteLLMAgentStub("not-json")
    image_bytes = BinaryContent(data=b"\xff\xd8stubjpeg", media_type="image/jpeg")

    with pytest.raises(ValidationError):
        asyncio.run(
            analyze_image_with_ai(image_bytes, agent, user_prompt="Describe"),  # type: ignore[arg-type]
        )


def test_prompt_carries_limits_place_rule_and_avoid_words() -> None:
    prompt = build_metadata_prompt(
        MetadataLimits(title_limit=70, description_limit=150, keyword_limit=30),
        include_place_name=False,
        avoid_words=AvoidWords(title=["amazing"], keywords=["stock", "photo"]),
    )

    assert "Title: Maximum 70 characters" in prompt
    assert "Description: Maximum 150 characters" in prompt
    assert "Up to 30 relevant" in prompt
    assert "DO NOT include specific location" in prompt
    assert "- Title: amazing" in prompt
    assert "- Keywords: stock, photo" in prompt
    assert "- Description:" not in prompt.split("Never use these words:")[1]


def test_prompt_uses_template_and_custom_instruction() -> None:
    prompt = build_metadata_prompt(
        MetadataLimits(title_limit=60),
        include_place_name=True,
        template="Catalog shot ${fileName}, title up to ${titleLimit} chars.",
        custom_instruction="  Mention the red umbrella  ",
        file_name="IMG_0001.jpg",
    )

    assert prompt.startswith("Catalog shot IMG_0001.jpg, title up to 60 chars.")
    assert "INCLUDE specific location" in prompt
    assert prompt.endswith("Additional instruction: Mention the red umbrella")
    assert "STRICT REQUIREMENTS" not in prompt


def test_apply_limits_cleans_keywords() -> None:
    metadata = GeneratedMetadata(
        title="  Quiet harbor at dawn ",
        description="Fishing boats moored in a calm harbor.",
        keywords=["Boat, Harbor", "boat", "Stock image", "", "Dawn", "Sea"],
    )

    cleaned = apply_limits(metadata, MetadataLimits(keyword_limit=3), AvoidWords(keywords=["Stock"]))

    assert cleaned.title == "Quiet harbor at dawn"
    assert cleaned.keywords == ["Boat", "Harbor", "Dawn"]


@pytest.mark.parametrize(
    ("title", "description", "message"),
    [
        ("Sky", "A wide blue sky over hills.", "invalid title"),
        ("Blue sky over hills", "Sky", "invalid description"),
    ],
)
def test_apply_limits_rejects_short_fields(title: str, description: str, message: str) -> None:
    metadata = GeneratedMetadata(title=title, description=description, keywords=[])

    with pytest.raises(MetadataValidationError, match=message):
        apply_limits(metadata, MetadataLimits())


def test_prepare_image_for_agent_flattens_transparency(tmp_path: Path) -> None:
    """Transparent PNGs become downscaled JPEGs."""
    source = tmp_path / "logo.png"
    Image.new("RGBA", (64, 32), (255, 0, 0, 0)).save(source)

    content = prepare_image_for_agent(source, jpg_quality=70, max_size=16)

    assert content.media_type == "image/jpeg"
    assert content.data.startswith(b"\xff\xd8")
    with Image.open(io.BytesIO(content.data)) as img:
        assert img.size == (16, 8)
        assert img.mode == "RGB"


def test_prepare_image_for_agent_rejects_video(tmp_path: Path) -> None:
    clip = tmp_path / "clip.mp4"
    clip.write_bytes(b"\x00\x00")

    with pytest.raises(ValueError, match="video"):
        prepare_image_for_agent(clip)


def test_generator_builds_prompt_and_applies_limits(
    monkeypatch: pytest.MonkeyPatch,
    tmp_path: Path,
) -> None:
    """The production generator wires preparation, prompt, model call and cleanup together."""
    image_path = tmp_path / "IMG_0042.jpg"
    image_path.write_bytes(b"\xff\xd8stub")
    agent = LiteLLMAgentStub(_payload(keywords=["Animal", "animal", "Stock", "Forest"]))
    generator = AgentMetadataGenerator(temperature=0.1, max_tokens=64)
    monkeypatch.setattr(generator, "agent_for", lambda *_args: agent)
    monkeypatch.setattr(
        ai,
        "prepare_image_for_agent",
        lambda *_args: BinaryContent(data=b"\xff\xd8jpeg", media_type="image/jpeg"),
    )
    request = GenerationRequest(
        image_path=image_path,
        provider="openai",
        model="gpt-4o-mini",
        api_key="sk-test",
        limits=MetadataLimits(keyword_limit=5),
        avoid_words=AvoidWords(keywords=["stock"]),
        custom_instruction="Focus on the primates",
    )

    metadata = asyncio.run(generator.generate(request))

    assert metadata.keywords == ["Animal", "Forest"]
    recorded = agent.calls[0]
    assert recorded["temperature"] == pytest.approx(0.1)
    assert recorded["max_tokens"] == 64
    assert "Additional instruction: Focus on the primates" in recorded["items"][0]


def test_agent_for_requires_api_key_for_hosted_providers() -> None:
    generator = AgentMetadataGenerator()

    with pytest.raises(ModelUnavailableError, match="No API key"):
        generator.agent_for("openrouter", "qwen/qwen2.5-vl-72b-instruct", None)


def test_agent_for_reuses_agents(monkeypatch: pytest.MonkeyPatch) -> None:
    created: list[tuple[str, str]] = []

    def fake_create_agent(provider: str, model: str, **_kwargs: object) -> object:
        created.append((provider, model))
        return object()

    monkeypatch.setattr(ai, "_create_agent", fake_create_agent)
    generator = AgentMetadataGenerator()

    first = generator.agent_for("ollama", "llava", None)
    second = generator.agent_for("ollama", "llava", None)

    assert first is second
    assert created == [("ollama", "llava")]
