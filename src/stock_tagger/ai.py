"""
AI metadata generation: prompt building, in-memory image preparation and the model call.

The orchestrator only depends on the ``MetadataGenerator`` protocol. ``AgentMetadataGenerator``
is the production implementation: a Pydantic AI agent talking to an OpenAI-compatible
vision-language model (OpenAI, OpenRouter, Ollama or LM Studio).
"""
# ruff: noqa: PLR0913

import asyncio
import os
import time
import urllib.parse
from http import HTTPStatus
from io import BytesIO
from pathlib import Path
from typing import Protocol

import httpx
import rawpy
from loguru import logger
from PIL import Image
from pydantic import BaseModel, Field
from pydantic_ai import Agent, AgentRunResult, BinaryContent, ModelSettings
from pydantic_ai.models.openai import OpenAIChatModel
from pydantic_ai.providers.ollama import OllamaProvider
from pydantic_ai.providers.openai import OpenAIProvider

from stock_tagger.config import AvoidWords, BatchConfig, MetadataLimits, ProviderName
from stock_tagger.folders import VIDEO_EXTENSIONS
from stock_tagger.state import GeneratedMetadata
from stock_tagger.templates import interpolate_template


DEFAULT_JPEG_QUALITY = int(os.getenv("JPEG_QUALITY", "80"))
DEFAULT_DIMENSIONS = int(os.getenv("JPEG_DIMENSIONS", "1024"))
DEFAULT_TEMPERATURE = float(os.getenv("TEMPERATURE", "0.2"))
DEFAULT_MAX_TOKENS = int(os.getenv("MAX_TOKENS", "1000"))
DEFAULT_RETRIES = int(os.getenv("RETRIES", "3"))
MIN_TITLE_LENGTH = 5
MIN_DESCRIPTION_LENGTH = 10
PROVIDER_URLS: dict[str, str] = {
    "openai": os.getenv("OPENAI_BASE_URL", "https://api.openai.com/v1"),
    "openrouter": os.getenv("OPENROUTER_BASE_URL", "https://openrouter.ai/api/v1"),
    "ollama": os.getenv("OLLAMA_BASE_URL", "http://localhost:11434/v1"),
    "lmstudio": os.getenv("LM_STUDIO_BASE_URL", "http://localhost:1234/v1"),
}
NON_RAW_EXTENSIONS = frozenset(
    {
        ".jpg",
        ".jpeg",
        ".png",
        ".webp",
        ".bmp",
        ".gif",
        ".jpe",
        ".jp2",
        ".tif",
        ".tiff",
        ".heic",
        ".heif",
        ".avif",
        ".psd",
    },
)

DEFAULT_SYSTEM_PROMPT = (
    "You are a professional metadata generator for stock photos and videos. "
    "You analyze the provided image carefully and produce real, specific, marketable "
    "metadata based only on what is visible. The output must strictly conform to the "
    "schema provided by the user."
)


class MetadataValidationError(ValueError):
    """The model answered, but the metadata is unusable."""


class ModelUnavailableError(RuntimeError):
    """The configured provider cannot serve the requested model."""


class GenerationRequest(BaseModel):
    """Everything the generator needs for one image."""

    image_path: Path
    provider: ProviderName
    model: str
    api_key: str | None = None
    api_base_url: str | None = None
    limits: MetadataLimits = Field(default_factory=MetadataLimits)
    include_place_name: bool = False
    avoid_words: AvoidWords = Field(default_factory=AvoidWords)
    template: str | None = None
    custom_instruction: str | None = None

    @classmethod
    def from_config(
        cls,
        image_path: Path,
        config: BatchConfig,
        *,
        template: str | None = None,
        custom_instruction: str | None = None,
    ) -> "GenerationRequest":
        return cls(
            image_path=image_path,
            provider=config.provider,
            model=config.model,
            api_key=config.api_key,
            api_base_url=config.api_base_url,
            limits=config.limits,
            include_place_name=config.include_place_name,
            avoid_words=config.avoid_words,
            template=template,
            custom_instruction=custom_instruction,
        )


class MetadataGenerator(Protocol):
    async def generate(self, request: GenerationRequest) -> GeneratedMetadata: ...


def build_metadata_prompt(
    limits: MetadataLimits,
    *,
    include_place_name: bool = False,
    avoid_words: AvoidWords | None = None,
    template: str | None = None,
    custom_instruction: str | None = None,
    file_name: str | None = None,
) -> str:
    """
    Create the user prompt for one image.

    A folder template replaces the built-in instructions; the place-name rule, avoid-word
    lists and the per-image custom instruction are appended in every case.

    Examples:
        >>> prompt = build_metadata_prompt(
        ...     MetadataLimits(title_limit=70, description_limit=150, keyword_limit=30),
        ...     avoid_words=AvoidWords(keywords=["stock"]),
        ...     custom_instruction="Mention the red umbrella",
        ... )
        >>> "Maximum 70 characters" in prompt
        True
        >>> "- Keywords: stock" in prompt
        True

    """
    if template:
        base = interpolate_template(
            template,
            title_limit=limits.title_limit,
            description_limit=limits.description_limit,
            keyword_limit=limits.keyword_limit,
            file_name=file_name,
        )
    else:
        base = (
            "ANALYZE the provided image carefully and generate REAL, SPECIFIC metadata "
            "based on what you actually see.\n\n"
            "STRICT REQUIREMENTS:\n"
            f"- Title: Maximum {limits.title_limit} characters. Be specific and descriptive.\n"
            f"- Description: Maximum {limits.description_limit} characters. "
            "Describe what's actually in the image.\n"
            f"- Keywords: Up to {limits.keyword_limit} relevant single keywords or short "
            "phrases, most important first.\n\n"
            "IMPORTANT RULES:\n"
            '1. DO NOT use generic phrases like "Auto-generated description"\n'
            "2. DO NOT use placeholder text\n"
            "3. BE SPECIFIC about colors, objects, actions, mood, composition\n"
            "4. Use professional stock photo terminology"
        )

    if include_place_name:
        place_rule = (
            "INCLUDE specific location or place names if they are identifiable in the image "
            "(e.g., 'Eiffel Tower', 'Grand Canyon')."
        )
    else:
        place_rule = (
            "DO NOT include specific location or place names (city, landmark or country "
            "names). Use generic terms instead (e.g., 'city skyline', 'mountain landscape')."
        )
    sections = [base.strip(), place_rule]

    avoid = avoid_words or AvoidWords()
    avoid_lines = [
        f"- {label}: {', '.join(words)}"
        for label, words in (
            ("Title", avoid.title),
            ("Description", avoid.description),
            ("Keywords", avoid.keywords),
        )
        if words
    ]
    if avoid_lines:
        sections.append("Never use these words:\n" + "\n".join(avoid_lines))

    if custom_instruction and custom_instruction.strip():
        sections.append(f"Additional instruction: {custom_instruction.strip()}")

    return "\n\n".join(sections)


def apply_limits(
    metadata: GeneratedMetadata,
    limits: MetadataLimits,
    avoid_words: AvoidWords | None = None,
) -> GeneratedMetadata:
    """
    Validate and clean model output.

    Title and description limits are only targets for the model; the keyword limit is
    enforced after dropping blanks, case-insensitive duplicates and avoided words.

    Raises:
        MetadataValidationError: If the title or description is missing or too short.

    Examples:
        >>> cleaned = apply_limits(
        ...     GeneratedMetadata(
        ...         title="Red umbrella in rain",
        ...         description="A red umbrella on a rainy street.",
        ...         keywords=["Rain", "rain", " ", "Stock Photo", "Umbrella", "City"],
        ...     ),
        ...     MetadataLimits(keyword_limit=2),
        ...     AvoidWords(keywords=["stock"]),
        ... )
        >>> cleaned.keywords
        ['Rain', 'Umbrella']

    """
    title = metadata.title.strip()
    description = metadata.description.strip()
    if len(title) < MIN_TITLE_LENGTH:
        msg = "AI returned invalid title (too short)"
        raise MetadataValidationError(msg)
    if len(description) < MIN_DESCRIPTION_LENGTH:
        msg = "AI returned invalid description (too short)"
        raise MetadataValidationError(msg)

    banned = {word.casefold() for word in (avoid_words.keywords if avoid_words else [])}
    seen: set[str] = set()
    keywords: list[str] = []
    for raw in metadata.keywords:
        # Models sometimes return one comma-separated string instead of a list.
        for keyword in (part.strip() for part in raw.split(",")):
            key = keyword.casefold()
            if not keyword or key in seen:
                continue
            if any(word in key.split() or word == key for word in banned):
                logger.debug("keyword_avoided", keyword=keyword)
                continue
            seen.add(key)
            keywords.append(keyword)

    return GeneratedMetadata(
        title=title,
        description=description,
        keywords=keywords[: limits.keyword_limit],
    )


def _pil_from_image_path(image_path: Path) -> Image.Image:
    """Open an image from a path with PIL, using rawpy unless format is known non-RAW."""
    suffix = image_path.suffix.lower()
    if suffix not in NON_RAW_EXTENSIONS:
        try:
            with rawpy.imread(str(image_path)) as raw:  # type: ignore[no-untyped-call]
                rgb = raw.postprocess()  # 8-bit RGB np.ndarray
            logger.debug("image_opened_with_rawpy")
            return Image.fromarray(rgb)
        except Exception as exc:  # noqa: BLE001
            logger.warning("rawpy_failed_falling_back_to_pil", error=str(exc))

    return Image.open(image_path)


def prepare_image_for_agent(
    image_path: Path,
    jpg_quality: int = DEFAULT_JPEG_QUALITY,
    max_size: int = DEFAULT_DIMENSIONS,
) -> BinaryContent:
    """
    Downscale an image to an in-memory JPEG ready to send to the model.

    Handles RAW (CR2, CR3, NEF, ARW, RW2, RAF, DNG) and standard formats. Transparent
    images are composited on white. No temporary files are created.

    Raises:
        ValueError: For video files, which need a preview frame from the thumbnail pipeline.

    """
    if image_path.suffix.lower() in VIDEO_EXTENSIONS:
        msg = f"No preview frame available for video {image_path.name}"
        raise ValueError(msg)

    img = _pil_from_image_path(image_path)
    if img.mode in ("RGBA", "LA") or (img.mode == "P" and "transparency" in img.info):
        alpha = img.convert("RGBA")
        bg = Image.new("RGBA", alpha.size, (255, 255, 255, 255))
        img = Image.alpha_composite(bg, alpha).convert("RGB")
    else:
        img = img.convert("RGB")

    img.thumbnail((max_size, max_size), Image.Resampling.LANCZOS)
    buf = BytesIO()
    img.save(buf, format="JPEG", quality=jpg_quality)
    jpeg_bytes = buf.getvalue()

    logger.debug(
        "image_prepared_for_agent",
        width=img.width,
        height=img.height,
        size_kb=len(jpeg_bytes) // 1024,
    )
    return BinaryContent(data=jpeg_bytes, media_type="image/jpeg")


async def analyze_image_with_ai(
    image_bytes: BinaryContent,
    agent: Agent,
    *,
    user_prompt: str,
    temperature: float = DEFAULT_TEMPERATURE,
    max_tokens: int = DEFAULT_MAX_TOKENS,
) -> GeneratedMetadata:
    """
    Generate a title, description and keywords using a vision-language model.

    Args:
        image_bytes: Image data as BinaryContent (JPEG format)
        agent: Configured Pydantic AI Agent
        user_prompt: Prompt built by ``build_metadata_prompt``
        temperature: Sampling temperature for generation (0.0-1.0)
        max_tokens: Maximum tokens to generate in response

    Returns:
        The raw structured output of the model.

    """
    _t0 = time.perf_counter()
    result: AgentRunResult[GeneratedMetadata] = await agent.run(
        [
            user_prompt,
            image_bytes,
        ],
        model_settings=ModelSettings(
            temperature=temperature,
            max_tokens=max_tokens,
        ),
        output_type=GeneratedMetadata,
    )
    logger.info(
        "ai_inference_completed",
        seconds=round(time.perf_counter() - _t0, 3),
        temperature=temperature,
        max_tokens=max_tokens,
    )
    logger.debug(
        "ai_generated_metadata",
        title=result.output.title,
        description=result.output.description,
        keywords=result.output.keywords,
    )
    return result.output


def _validate_lmstudio_model(api_base_url: str, model_name: str, api_key: str | None) -> None:
    """Fail fast when LM Studio cannot resolve the requested model name."""
    url = urllib.parse.urljoin(api_base_url.rstrip("/") + "/", "models")
    parsed = urllib.parse.urlparse(url)
    if parsed.scheme not in {"http", "https"} or not parsed.netloc:
        msg = f"Invalid LM Studio URL: {url}"
        raise ModelUnavailableError(msg)
    headers = {"Accept": "application/json"}
    if api_key:
        headers["Authorization"] = f"Bearer {api_key}"
    try:
        response = httpx.get(url, headers=headers, timeout=5.0)
    except httpx.HTTPError as exc:
        msg = f"Could not list LM Studio models at {url}: {exc}"
        raise ModelUnavailableError(msg) from exc

    if response.status_code != HTTPStatus.OK:
        msg = f"LM Studio model listing failed with status {response.status_code}"
        raise ModelUnavailableError(msg)

    try:
        listing = response.json()
    except ValueError as exc:
        msg = f"LM Studio returned invalid JSON from {url}"
        raise ModelUnavailableError(msg) from exc

    models = [
        str(entry["id"])
        for entry in listing.get("data", [])
        if isinstance(entry, dict) and "id" in entry
    ]
    if model_name not in models:
        logger.error("lmstudio_model_not_available", requested=model_name, available=models)
        msg = f"Model {model_name!r} is not available in LM Studio"
        raise ModelUnavailableError(msg)

    logger.debug("lmstudio_model_validated", model=model_name)


def _create_agent(
    provider_name: ProviderName,
    model_name: str,
    *,
    api_base_url: str | None,
    api_key: str | None,
    retries: int,
) -> Agent:
    resolved_url = api_base_url or PROVIDER_URLS[provider_name]
    logger.info("provider_config_resolved", provider=provider_name, url=resolved_url, model=model_name)

    if provider_name == "ollama":
        provider = OllamaProvider(base_url=resolved_url, api_key=api_key)
    else:
        if provider_name == "lmstudio":
            _validate_lmstudio_model(resolved_url, model_name, api_key)
        elif not api_key:
            msg = f"No API key provided for {provider_name}"
            raise ModelUnavailableError(msg)
        provider = OpenAIProvider(base_url=resolved_url, api_key=api_key)

    chat_model = OpenAIChatModel(model_name=model_name, provider=provider)
    return Agent(
        chat_model,
        output_type=GeneratedMetadata,  # type: ignore[arg-type]
        retries=retries,
        system_prompt=DEFAULT_SYSTEM_PROMPT,
    )


class AgentMetadataGenerator:
    """
    Production ``MetadataGenerator`` backed by Pydantic AI agents.

    One agent is created per (provider, model, key, url) combination and reused across
    images. Image decoding runs in a worker thread so the event loop stays free for
    other in-flight requests.
    """

    def __init__(
        self,
        *,
        temperature: float = DEFAULT_TEMPERATURE,
        max_tokens: int = DEFAULT_MAX_TOKENS,
        retries: int = DEFAULT_RETRIES,
        jpeg_quality: int = DEFAULT_JPEG_QUALITY,
        jpeg_dimensions: int = DEFAULT_DIMENSIONS,
    ) -> None:
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.retries = retries
        self.jpeg_quality = jpeg_quality
        self.jpeg_dimensions = jpeg_dimensions
        self._agents: dict[tuple[str, str, str | None, str | None], Agent] = {}

    def agent_for(
        self,
        provider: ProviderName,
        model: str,
        api_key: str | None,
        api_base_url: str | None = None,
    ) -> Agent:
        key = (provider, model, api_key, api_base_url)
        if key not in self._agents:
            self._agents[key] = _create_agent(
                provider,
                model,
                api_base_url=api_base_url,
                api_key=api_key,
                retries=self.retries,
            )
        return self._agents[key]

    async def generate(self, request: GenerationRequest) -> GeneratedMetadata:
        agent = self.agent_for(
            request.provider,
            request.model,
            request.api_key,
            request.api_base_url,
        )
        image_bytes = await asyncio.to_thread(
            prepare_image_for_agent,
            request.image_path,
            self.jpeg_quality,
            self.jpeg_dimensions,
        )
        prompt = build_metadata_prompt(
            request.limits,
            include_place_name=request.include_place_name,
            avoid_words=request.avoid_words,
            template=request.template,
            custom_instruction=request.custom_instruction,
            file_name=request.image_path.name,
        )
        raw = await analyze_image_with_ai(
            image_bytes,
            agent,
            user_prompt=prompt,
            temperature=self.temperature,
            max_tokens=self.max_tokens,
        )
        return apply_limits(raw, request.limits, request.avoid_words)
