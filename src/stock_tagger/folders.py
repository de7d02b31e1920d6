"""Folder source: discover supported media files and describe folders ready for a batch."""

import contextlib
import hashlib
from pathlib import Path

from loguru import logger
from pydantic import BaseModel, Field

from stock_tagger.config import CategorySelection


IMAGE_EXTENSIONS = frozenset(
    {
        ".jpg",
        ".jpeg",
        ".png",
        ".webp",
        ".tif",
        ".tiff",
        ".heic",
        ".heif",
        ".avif",
        ".cr2",
        ".cr3",
        ".nef",
        ".arw",
        ".rw2",
        ".raf",
        ".dng",
    },
)
VIDEO_EXTENSIONS = frozenset({".mp4", ".mov", ".m4v", ".avi", ".mkv", ".webm"})
SUPPORTED_EXTENSIONS = IMAGE_EXTENSIONS | VIDEO_EXTENSIONS


class MediaFile(BaseModel):
    """One media file of a folder; ``file_name`` is relative to the folder root."""

    file_name: str
    file_path: Path


class ReadyFolder(BaseModel):
    """A scanned folder whose file listing is available and can enter a batch run."""

    folder_id: str
    folder_path: Path
    files: list[MediaFile] = Field(default_factory=list)
    assigned_template_id: str | None = None
    custom_instructions: dict[str, str] = Field(default_factory=dict)
    categories: dict[str, CategorySelection] = Field(default_factory=dict)

    @property
    def file_paths(self) -> dict[str, Path]:
        return {media.file_name: media.file_path for media in self.files}


def is_supported_media(file_name: str, extensions: frozenset[str] = SUPPORTED_EXTENSIONS) -> bool:
    """
    Check a file name against the supported media extensions (case insensitive).

    Examples:
        >>> is_supported_media("IMG_0001.CR3")
        True
        >>> is_supported_media("notes.txt")
        False

    """
    return Path(file_name).suffix.lower() in extensions


def parse_extensions(image_extensions: str) -> frozenset[str]:
    """
    Normalize comma-separated extensions into a lower-case set like {".cr3", ".jpg"}.

    Extensions outside ``SUPPORTED_EXTENSIONS`` are dropped with a warning.

    Examples:
        >>> sorted(parse_extensions("cr3, jpg ,PNG"))
        ['.cr3', '.jpg', '.png']
        >>> sorted(parse_extensions("jpg,bmp"))
        ['.jpg']

    """
    requested = {
        f".{ext.strip().lstrip('.').lower()}"
        for ext in image_extensions.split(",")
        if ext.strip().lstrip(".")
    }
    if unsupported := sorted(requested - SUPPORTED_EXTENSIONS):
        logger.warning("unsupported_extensions_ignored", extensions=unsupported)
    return frozenset(requested & SUPPORTED_EXTENSIONS)


def folder_id_for(folder_path: Path) -> str:
    """Stable identifier derived from the resolved folder path."""
    resolved = folder_path
    with contextlib.suppress(OSError):
        resolved = folder_path.resolve()
    return hashlib.sha1(str(resolved).encode("utf-8"), usedforsecurity=False).hexdigest()[:12]


def scan_folder(
    folder_path: Path,
    extensions: frozenset[str] = SUPPORTED_EXTENSIONS,
    *,
    recursive: bool = False,
) -> list[MediaFile]:
    """
    List the supported media files of a folder in a stable (sorted) order.

    Args:
        folder_path: Directory to scan
        extensions: Lower-case extensions with a leading dot
        recursive: Also descend into subdirectories

    Returns:
        MediaFile entries; names are POSIX paths relative to ``folder_path``.

    """
    if not folder_path.is_dir():
        logger.warning("folder_not_a_directory", path=str(folder_path))
        return []

    pattern = "**/*" if recursive else "*"
    found = [
        path
        for path in folder_path.glob(pattern)
        if path.is_file() and path.suffix.lower() in extensions
    ]
    found.sort(key=lambda p: p.relative_to(folder_path).as_posix().casefold())

    files = [
        MediaFile(file_name=path.relative_to(folder_path).as_posix(), file_path=path)
        for path in found
    ]
    logger.debug("folder_scanned", path=str(folder_path), count=len(files), recursive=recursive)
    return files


def build_ready_folder(
    folder_path: Path,
    extensions: frozenset[str] = SUPPORTED_EXTENSIONS,
    *,
    recursive: bool = False,
    assigned_template_id: str | None = None,
) -> ReadyFolder:
    return ReadyFolder(
        folder_id=folder_id_for(folder_path),
        folder_path=folder_path,
        files=scan_folder(folder_path, extensions, recursive=recursive),
        assigned_template_id=assigned_template_id,
    )


def restore_ready_folder(
    folder_id: str,
    folder_path: Path,
    file_names: list[str],
    *,
    assigned_template_id: str | None = None,
) -> ReadyFolder:
    """
    Rebuild a ready folder from the relative file names saved with a batch.

    Names are resolved against ``folder_path`` as they were scanned, so files found by a
    recursive scan keep their subdirectory. Files no longer on disk are left out and fail
    later as missing paths.
    """
    files = []
    for file_name in file_names:
        file_path = folder_path / file_name
        if file_path.is_file():
            files.append(MediaFile(file_name=file_name, file_path=file_path))
        else:
            logger.warning("saved_file_missing", path=str(file_path))
    return ReadyFolder(
        folder_id=folder_id,
        folder_path=folder_path,
        files=files,
        assigned_template_id=assigned_template_id,
    )


def resolve_ready_folders(
    inputs: list[Path],
    extensions: frozenset[str] = SUPPORTED_EXTENSIONS,
    *,
    recursive: bool = False,
    assigned_template_id: str | None = None,
) -> list[ReadyFolder]:
    """
    Turn input directories into ready folders, keeping order and dropping duplicates.

    Folders without any supported media are skipped with a warning.
    """
    ready: list[ReadyFolder] = []
    seen: set[str] = set()
    for path in inputs:
        if not path.is_dir():
            logger.warning("input_not_a_directory", path=str(path))
            continue
        folder = build_ready_folder(
            path,
            extensions,
            recursive=recursive,
            assigned_template_id=assigned_template_id,
        )
        if folder.folder_id in seen:
            logger.debug("duplicate_folder_skipped", path=str(path))
            continue
        seen.add(folder.folder_id)
        if not folder.files:
            logger.warning("folder_has_no_media", path=str(path))
            continue
        ready.append(folder)

    logger.info(
        "ready_folders_resolved",
        folders=len(ready),
        images=sum(len(f.files) for f in ready),
    )
    return ready
