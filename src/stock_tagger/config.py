"""Configuration bundle for a batch run, with environment-driven defaults."""

import os
from pathlib import Path
from typing import Literal

from pydantic import BaseModel, Field


ProviderName = Literal["openai", "openrouter", "ollama", "lmstudio"]
ProcessingMode = Literal["sequential", "parallel"]
ExportPlatform = Literal["adobe_stock", "shutterstock"]

# Configuration defaults
DEFAULT_PROVIDER: ProviderName = os.getenv("AI_PROVIDER", "openai")  # type: ignore[assignment]
DEFAULT_MODEL_NAME = os.getenv("MODEL_NAME", "gpt-4o-mini")
DEFAULT_API_KEY = os.getenv("AI_API_KEY", os.getenv("OPENAI_API_KEY"))
DEFAULT_TITLE_LIMIT = int(os.getenv("TITLE_LIMIT", "200"))
DEFAULT_DESCRIPTION_LIMIT = int(os.getenv("DESCRIPTION_LIMIT", "200"))
DEFAULT_KEYWORD_LIMIT = int(os.getenv("KEYWORD_LIMIT", "49"))
DEFAULT_REQUEST_DELAY_MS = int(os.getenv("REQUEST_DELAY_MS", "0"))
DEFAULT_PARALLEL_WORKERS = int(os.getenv("PARALLEL_WORKERS", "3"))
DEFAULT_PROGRESS_FILE = Path(os.getenv("PROGRESS_FILE", ".stock-tagger/batch_progress.json"))
DEFAULT_TEMPLATES_FILE = os.getenv("TEMPLATES_FILE")


class MetadataLimits(BaseModel):
    """Targets handed to the model; only the keyword limit is enforced on the response."""

    title_limit: int = Field(default=DEFAULT_TITLE_LIMIT, ge=1)
    description_limit: int = Field(default=DEFAULT_DESCRIPTION_LIMIT, ge=1)
    keyword_limit: int = Field(default=DEFAULT_KEYWORD_LIMIT, ge=1)


class AvoidWords(BaseModel):
    title: list[str] = Field(default_factory=list)
    keywords: list[str] = Field(default_factory=list)
    description: list[str] = Field(default_factory=list)


class EmbedFields(BaseModel):
    """Which generated fields are written into the file when embedding is on."""

    title: bool = True
    description: bool = True
    keywords: bool = True


class CategorySelection(BaseModel):
    """
    Stock platform categories for an image or, as a fallback, for the whole batch.

    Adobe Stock categories are given by id ("1".."21") or by name.
    """

    adobe_stock: str = ""
    shutterstock_1: str = ""
    shutterstock_2: str = ""


class ExportSettings(BaseModel):
    export_dir: Path
    platform: ExportPlatform = "adobe_stock"
    categories: CategorySelection = Field(default_factory=CategorySelection)


class BatchConfig(BaseModel):
    """Everything the orchestrator needs to know about one batch run."""

    provider: ProviderName = DEFAULT_PROVIDER
    model: str = DEFAULT_MODEL_NAME
    api_key: str | None = DEFAULT_API_KEY
    api_base_url: str | None = None
    limits: MetadataLimits = Field(default_factory=MetadataLimits)
    include_place_name: bool = False
    avoid_words: AvoidWords = Field(default_factory=AvoidWords)
    request_delay_ms: int = Field(default=DEFAULT_REQUEST_DELAY_MS, ge=0)
    embed_enabled: bool = False
    embed_fields: EmbedFields = Field(default_factory=EmbedFields)
    processing_mode: ProcessingMode = "sequential"
    parallel_workers: int = Field(default=DEFAULT_PARALLEL_WORKERS, ge=1)
    export: ExportSettings | None = None
