"""
Export coordinator: one stock-platform CSV per processed folder.

Export works on plain ``ExportRecord`` values built from the progress store, so a folder
restored from a snapshot can be exported without any live file handle.
"""

from datetime import UTC, datetime
from pathlib import Path
from typing import NamedTuple

from loguru import logger

from stock_tagger.config import CategorySelection, ExportPlatform
from stock_tagger.state import FolderRun, GeneratedMetadata


ADOBE_STOCK_CATEGORIES: dict[str, str] = {
    "1": "Animals",
    "2": "Buildings",
    "3": "Business",
    "4": "Drinks",
    "5": "Environment",
    "6": "Mind",
    "7": "Food",
    "8": "Graphic",
    "9": "Hobby",
    "10": "Industry",
    "11": "Landscape",
    "12": "Lifestyle",
    "13": "People",
    "14": "Plant",
    "15": "Culture",
    "16": "Science",
    "17": "Social",
    "18": "Sport",
    "19": "Technology",
    "20": "Transport",
    "21": "Travel",
}
PLATFORM_FILE_NAMES: dict[str, str] = {
    "adobe_stock": "Adobe_Stock",
    "shutterstock": "shutterstock",
}
ADOBE_STOCK_HEADERS = ("Filename", "Title", "Description", "Keywords", "Category")
SHUTTERSTOCK_HEADERS = ("Filename", "Title", "Description", "Keywords", "Category 1", "Category 2")


class ExportRecord(NamedTuple):
    file_name: str
    metadata: GeneratedMetadata
    categories: CategorySelection | None = None


def escape_csv_field(field: str | None) -> str:
    """
    Quote a CSV field only when it contains a comma, quote or line break.

    Examples:
        >>> escape_csv_field("plain")
        'plain'
        >>> escape_csv_field('say "cheese", please')
        '"say ""cheese"", please"'
        >>> escape_csv_field(None)
        ''

    """
    if not field:
        return ""
    if any(char in field for char in (",", '"', "\n", "\r")):
        return '"' + field.replace('"', '""') + '"'
    return field


def adobe_category_name(category: str) -> str:
    """
    Adobe Stock category name for an id; names and unknown values pass through.

    Examples:
        >>> adobe_category_name("11")
        'Landscape'
        >>> adobe_category_name("Travel")
        'Travel'

    """
    return ADOBE_STOCK_CATEGORIES.get(category.strip(), category)


def collect_records(folder: FolderRun) -> list[ExportRecord]:
    """Completed images that carry metadata, in folder order."""
    return [
        ExportRecord(image.file_name, image.metadata, image.categories)
        for image in folder.images
        if image.status == "completed" and image.metadata is not None
    ]


def _common_fields(record: ExportRecord) -> list[str]:
    return [
        record.file_name,
        record.metadata.title,
        record.metadata.description,
        ", ".join(record.metadata.keywords),
    ]


def generate_adobe_stock_csv(records: list[ExportRecord], fallback: CategorySelection) -> str:
    rows = [",".join(ADOBE_STOCK_HEADERS)]
    for record in records:
        own = record.categories
        category = (own.adobe_stock if own else "") or fallback.adobe_stock
        fields = [*_common_fields(record), adobe_category_name(category) if category else ""]
        rows.append(",".join(escape_csv_field(field) for field in fields))
    return "\n".join(rows)


def generate_shutterstock_csv(records: list[ExportRecord], fallback: CategorySelection) -> str:
    rows = [",".join(SHUTTERSTOCK_HEADERS)]
    for record in records:
        own = record.categories
        category_1 = (own.shutterstock_1 if own else "") or fallback.shutterstock_1
        category_2 = (own.shutterstock_2 if own else "") or fallback.shutterstock_2
        fields = [*_common_fields(record), category_1, category_2]
        rows.append(",".join(escape_csv_field(field) for field in fields))
    return "\n".join(rows)


def export_file_name(folder_name: str, platform: ExportPlatform, today: datetime | None = None) -> str:
    """
    Deterministic CSV name for a folder export.

    Examples:
        >>> export_file_name("Beach", "adobe_stock", datetime(2024, 5, 1, tzinfo=UTC))
        'Beach_Adobe_Stock_Export_2024-05-01.csv'

    """
    date = (today or datetime.now(tz=UTC)).date().isoformat()
    return f"{folder_name}_{PLATFORM_FILE_NAMES[platform]}_Export_{date}.csv"


def export_folder(
    folder: FolderRun,
    categories: CategorySelection,
    platform: ExportPlatform,
    export_root: Path,
    *,
    today: datetime | None = None,
) -> Path | None:
    """
    Write the folder's completed metadata as a CSV for ``platform``.

    Args:
        folder: Folder state after processing
        categories: Batch-wide categories used when an image has no selection of its own
        platform: Target stock platform
        export_root: Directory receiving the CSV (created if missing)
        today: Date stamped into the file name, defaults to the current UTC date

    Returns:
        Path of the written file, or None when nothing was exportable or the write failed.

    """
    records = collect_records(folder)
    if not records:
        logger.warning("no_completed_images_to_export", folder=folder.folder_name)
        return None

    if platform == "adobe_stock":
        content = generate_adobe_stock_csv(records, categories)
    else:
        content = generate_shutterstock_csv(records, categories)

    target = export_root / export_file_name(folder.folder_name, platform, today)
    try:
        export_root.mkdir(parents=True, exist_ok=True)
        target.write_text(content, encoding="utf-8")
    except OSError as exc:
        logger.error("export_failed", folder=folder.folder_name, target=str(target), error=str(exc))
        return None

    logger.info("folder_exported", folder=folder.folder_name, target=str(target), rows=len(records))
    return target
