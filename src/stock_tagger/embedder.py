"""Write generated metadata into media files with ExifTool."""

import asyncio
from pathlib import Path
from typing import NamedTuple, Protocol

from exiftool import ExifToolHelper  # type: ignore[attr-defined]
from exiftool.exceptions import ExifToolExecuteError
from loguru import logger
from pydantic import BaseModel


class EmbedPayload(BaseModel):
    """The subset of generated metadata to write; ``None`` fields are left untouched."""

    title: str | None = None
    description: str | None = None
    keywords: list[str] | None = None


class EmbedResult(NamedTuple):
    success: bool
    message: str


class TagEmbedder(Protocol):
    async def embed(self, file_path: Path, fields: EmbedPayload) -> EmbedResult: ...


def build_tags(fields: EmbedPayload) -> dict[str, str | list[str]]:
    """
    Map metadata fields to the XMP/IPTC/EXIF tags stock platforms read.

    Examples:
        >>> sorted(build_tags(EmbedPayload(title="Harbor at dawn")))
        ['IPTC:ObjectName', 'XMP-dc:Title']
        >>> build_tags(EmbedPayload(keywords=[" boat ", ""]))["IPTC:Keywords"]
        ['boat']

    """
    tags: dict[str, str | list[str]] = {}
    if fields.title and fields.title.strip():
        tags["XMP-dc:Title"] = fields.title
        tags["IPTC:ObjectName"] = fields.title
    if fields.description and fields.description.strip():
        tags["XMP-dc:Description"] = fields.description
        tags["EXIF:ImageDescription"] = fields.description
        tags["IPTC:Caption-Abstract"] = fields.description
    if fields.keywords:
        keywords = [kw.strip() for kw in fields.keywords if kw and kw.strip()]
        if keywords:
            tags["XMP-dc:Subject"] = keywords
            # Lightroom and most stock portals read IPTC:Keywords for JPEGs, mirror Subject there.
            tags["IPTC:Keywords"] = keywords
    return tags


def write_metadata(file_path: Path, fields: EmbedPayload, *, backup: bool = False) -> EmbedResult:
    """
    Write tags directly into ``file_path``.

    Args:
        file_path: Media file to update in place
        fields: Metadata to write
        backup: If True, let ExifTool keep an ``_original`` copy

    Returns:
        EmbedResult; failures are reported, never raised.

    """
    if not file_path.exists():
        return EmbedResult(success=False, message=f"File does not exist: {file_path}")
    if not file_path.is_file():
        return EmbedResult(success=False, message=f"Path is not a file: {file_path}")

    tags = build_tags(fields)
    if not tags:
        logger.warning("no_data_to_write", file=file_path.name)
        return EmbedResult(success=False, message="No metadata provided")

    params = [] if backup else ["-overwrite_original"]
    try:
        with ExifToolHelper() as et:  # type: ignore[no-untyped-call]
            et.set_tags(files=[str(file_path)], tags=tags, params=params)
    except (ValueError, TypeError, ExifToolExecuteError, OSError) as e:
        logger.warning("metadata_write_failed", error=str(e), target=str(file_path))
        return EmbedResult(success=False, message=f"Failed to embed metadata: {e}")

    logger.info(
        "metadata_written_successfully",
        target=str(file_path),
        tags=sorted(tags),
        backup_created=backup,
    )
    return EmbedResult(success=True, message="Metadata successfully embedded")


class ExifToolEmbedder:
    """``TagEmbedder`` that runs ExifTool in a worker thread."""

    def __init__(self, *, backup: bool = False) -> None:
        self.backup = backup

    async def embed(self, file_path: Path, fields: EmbedPayload) -> EmbedResult:
        return await asyncio.to_thread(write_metadata, file_path, fields, backup=self.backup)
