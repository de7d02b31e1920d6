#!/usr/bin/env python3
"""
Stock Tagger: CLI app to batch-generate stock metadata for folders of photos and videos.

Each input folder is scanned, every supported image is sent to a vision-language model for a
title, description and keywords, the metadata is optionally embedded into the file with
ExifTool, and a per-folder CSV is written for Adobe Stock or Shutterstock.

Progress is saved after every folder and on pause/failure, so a batch interrupted with
Ctrl+C can be continued later with `stock-tagger resume`.

Requirements:
 - ExifTool installed and available in PATH (only when embedding).
 - An OpenAI-compatible vision-language model (OpenAI, OpenRouter, Ollama or LM Studio).

"""
# ruff: noqa: PLR0913

import asyncio
import contextlib
import signal
import sys
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Annotated, Any, Literal

from cyclopts import App, Parameter, validators
from loguru import logger

from stock_tagger import __version__
from stock_tagger.ai import AgentMetadataGenerator, ModelUnavailableError
from stock_tagger.config import (
    DEFAULT_API_KEY,
    DEFAULT_MODEL_NAME,
    DEFAULT_PARALLEL_WORKERS,
    DEFAULT_PROGRESS_FILE,
    DEFAULT_PROVIDER,
    DEFAULT_REQUEST_DELAY_MS,
    DEFAULT_TEMPLATES_FILE,
    AvoidWords,
    BatchConfig,
    CategorySelection,
    EmbedFields,
    ExportPlatform,
    ExportSettings,
    MetadataLimits,
    ProcessingMode,
    ProviderName,
)
from stock_tagger.controller import BatchController
from stock_tagger.embedder import ExifToolEmbedder
from stock_tagger.folders import (
    IMAGE_EXTENSIONS,
    ReadyFolder,
    parse_extensions,
    resolve_ready_folders,
    restore_ready_folder,
)
from stock_tagger.persistence import JsonFilePersistence, inspect_snapshot
from stock_tagger.state import BatchRun, ProgressStore
from stock_tagger.templates import TemplateRegistry


LogLevel = Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL", "OFF"]
PROGRESS_EVENTS = frozenset({"image_completed", "image_failed"})

app = App(
    name="stock-tagger",
    version=__version__,
)


def setup_logging(
    file_log_level: LogLevel = "DEBUG",
    console_log_level: LogLevel = "INFO",
    log_folder: Path = Path("logs"),
) -> None:
    """
    Send batch events to the console and to a JSON-lines file for the current run.

    Each invocation writes its own ``<timestamp>-stock_tagger.log`` so a paused batch and its
    resumes can be read side by side; only the ten newest run logs are kept.

    Args:
        file_log_level: Log level for the run log (use 'OFF' to disable)
        console_log_level: Log level for the console (use 'OFF' to disable)
        log_folder: Directory holding the run logs

    """
    logger.remove()

    if file_log_level != "OFF":
        log_folder.mkdir(parents=True, exist_ok=True)
        logger.add(
            log_folder / "{time:YYYYMMDDHHmmss}-stock_tagger.log",
            level=file_log_level,
            serialize=True,
            retention=10,
        )

    if console_log_level != "OFF":
        logger.add(
            sys.stderr,
            level=console_log_level,
            colorize=True,
            format=(
                "<green>{time:HH:mm:ss}</green> "
                "<level>{level: <7}</level> "
                "<level>{message}</level> "
                "<yellow>{extra}</yellow>"
            ),
        )


@Parameter(name="*")
@dataclass
class BatchOptions:
    """Options shared by `run` and `resume`."""

    provider: Annotated[
        ProviderName,
        Parameter(name=("--provider",), help="Model provider"),
    ] = DEFAULT_PROVIDER
    model: Annotated[
        str,
        Parameter(name=("--model", "-m"), help="Vision-language model name"),
    ] = DEFAULT_MODEL_NAME
    api_key: Annotated[
        str | None,
        Parameter(name=("--api-key", "-k"), help="Provider API key. Will try env vars if not set"),
    ] = DEFAULT_API_KEY
    api_base_url: Annotated[
        str | None,
        Parameter(name=("--url", "-u"), help="Provider API base URL"),
    ] = None
    title_limit: Annotated[int, Parameter(name=("--title-limit",))] = MetadataLimits().title_limit
    description_limit: Annotated[
        int,
        Parameter(name=("--description-limit",)),
    ] = MetadataLimits().description_limit
    keyword_limit: Annotated[
        int,
        Parameter(name=("--keyword-limit",)),
    ] = MetadataLimits().keyword_limit
    include_place_name: Annotated[
        bool,
        Parameter(
            name=("--place-names",),
            negative="--no-place-names",
            help="Allow specific location and landmark names in the metadata",
        ),
    ] = False
    avoid_title: Annotated[
        list[str] | None,
        Parameter(name=("--avoid-title",), help="Words the title must not contain (repeatable)"),
    ] = None
    avoid_description: Annotated[
        list[str] | None,
        Parameter(name=("--avoid-description",), help="Words the description must not contain"),
    ] = None
    avoid_keywords: Annotated[
        list[str] | None,
        Parameter(name=("--avoid-keyword",), help="Keywords to drop from the output"),
    ] = None
    request_delay_ms: Annotated[
        int,
        Parameter(
            name=("--delay",),
            validator=validators.Number(gte=0),
            help="Delay in milliseconds between images (sequential) or chunks (parallel)",
        ),
    ] = DEFAULT_REQUEST_DELAY_MS
    processing_mode: Annotated[
        ProcessingMode | None,
        Parameter(
            name=("--mode",),
            help=(
                "Process images one by one or in parallel chunks "
                "[default: sequential, or the saved mode on resume]"
            ),
        ),
    ] = None
    parallel_workers: Annotated[
        int | None,
        Parameter(
            name=("--workers", "-w"),
            validator=validators.Number(gte=1),
            help=(
                "Maximum simultaneous model calls in parallel mode "
                f"[default: {DEFAULT_PARALLEL_WORKERS}, or the saved count on resume]"
            ),
        ),
    ] = None
    embed: Annotated[
        bool,
        Parameter(
            name=("--embed",),
            negative="--no-embed",
            help="Embed the generated metadata into each file with ExifTool",
        ),
    ] = False
    embed_title: Annotated[
        bool,
        Parameter(name=("--embed-title",), negative="--no-embed-title"),
    ] = True
    embed_description: Annotated[
        bool,
        Parameter(name=("--embed-description",), negative="--no-embed-description"),
    ] = True
    embed_keywords: Annotated[
        bool,
        Parameter(name=("--embed-keywords",), negative="--no-embed-keywords"),
    ] = True
    export_dir: Annotated[
        Path | None,
        Parameter(name=("--export-dir", "-o"), help="Write one CSV per folder into this directory"),
    ] = None
    platform: Annotated[
        ExportPlatform,
        Parameter(name=("--platform",), help="CSV layout of the export"),
    ] = "adobe_stock"
    adobe_category: Annotated[
        str,
        Parameter(name=("--adobe-category",), help="Default Adobe Stock category id or name"),
    ] = ""
    shutterstock_category_1: Annotated[str, Parameter(name=("--shutterstock-category-1",))] = ""
    shutterstock_category_2: Annotated[str, Parameter(name=("--shutterstock-category-2",))] = ""
    templates_file: Annotated[
        Path | None,
        Parameter(name=("--templates-file",), help="JSON list of user prompt templates"),
    ] = Path(DEFAULT_TEMPLATES_FILE) if DEFAULT_TEMPLATES_FILE else None
    progress_file: Annotated[
        Path,
        Parameter(name=("--progress-file",), help="Where batch progress is saved for resume"),
    ] = DEFAULT_PROGRESS_FILE
    file_log_level: Annotated[
        LogLevel,
        Parameter(name="--file-log-level", help="Log level for file (use 'OFF' to disable)"),
    ] = "DEBUG"
    console_log_level: Annotated[
        LogLevel,
        Parameter(name="--console-log-level", help="Log level for console (use 'OFF' to disable)"),
    ] = "INFO"
    log_folder: Annotated[
        Path,
        Parameter(name=("--log-folder",), help="Folder where log files are stored"),
    ] = Path("logs")

    def to_config(self) -> BatchConfig:
        export = None
        if self.export_dir is not None:
            export = ExportSettings(
                export_dir=self.export_dir,
                platform=self.platform,
                categories=CategorySelection(
                    adobe_stock=self.adobe_category,
                    shutterstock_1=self.shutterstock_category_1,
                    shutterstock_2=self.shutterstock_category_2,
                ),
            )
        return BatchConfig(
            provider=self.provider,
            model=self.model,
            api_key=self.api_key,
            api_base_url=self.api_base_url,
            limits=MetadataLimits(
                title_limit=self.title_limit,
                description_limit=self.description_limit,
                keyword_limit=self.keyword_limit,
            ),
            include_place_name=self.include_place_name,
            avoid_words=AvoidWords(
                title=self.avoid_title or [],
                description=self.avoid_description or [],
                keywords=self.avoid_keywords or [],
            ),
            request_delay_ms=self.request_delay_ms,
            embed_enabled=self.embed,
            embed_fields=EmbedFields(
                title=self.embed_title,
                description=self.embed_description,
                keywords=self.embed_keywords,
            ),
            processing_mode=self.processing_mode or "sequential",
            parallel_workers=self.parallel_workers or DEFAULT_PARALLEL_WORKERS,
            export=export,
        )


def _log_progress(event: str, run: BatchRun) -> None:
    if event in PROGRESS_EVENTS:
        done = run.completed_images + run.failed_images
        logger.info(
            "batch_progress",
            done=f"{done}/{run.total_images}",
            completed=run.completed_images,
            failed=run.failed_images,
            folder=f"{run.current_folder_index + 1}/{run.total_folders}",
        )


def _report_saved_progress(persistence: JsonFilePersistence) -> None:
    """Mention an unfinished batch without resuming it."""
    snapshot = persistence.load()
    if snapshot is None:
        return
    info = inspect_snapshot(snapshot)
    logger.info(
        "incomplete_batch_found",
        hours_ago=info.age_hours,
        stale=info.is_stale,
        hint="Starting a new batch replaces it; use `stock-tagger resume` to continue instead",
    )


async def _run_batch(
    ready_folders: list[ReadyFolder],
    options: BatchOptions,
    resume_snapshot: dict[str, Any] | None,
    *,
    retry_failed: bool = False,
) -> BatchRun:
    config = options.to_config()
    generator = AgentMetadataGenerator()
    generator.agent_for(config.provider, config.model, config.api_key, config.api_base_url)

    store = ProgressStore()
    store.subscribe(_log_progress)
    if resume_snapshot is not None and retry_failed:
        # Requeue on a restored copy so the snapshot handed to the controller carries it.
        store.restore(resume_snapshot, config.parallel_workers, config.processing_mode)
        store.requeue_failed()
        resume_snapshot = store.snapshot(saved_at=resume_snapshot.get("savedAt"))

    controller = BatchController(
        generator,
        JsonFilePersistence(options.progress_file),
        embedder=ExifToolEmbedder() if config.embed_enabled else None,
        templates=TemplateRegistry.from_file(options.templates_file),
        store=store,
    )

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        with contextlib.suppress(NotImplementedError, RuntimeError):
            loop.add_signal_handler(sig, controller.cancel)

    try:
        return await controller.start(ready_folders, config, resume_snapshot)
    finally:
        for sig in (signal.SIGINT, signal.SIGTERM):
            with contextlib.suppress(NotImplementedError, RuntimeError):
                loop.remove_signal_handler(sig)


def _finish(run: BatchRun) -> None:
    logger.info(
        "processing_summary",
        status=run.overall_status,
        total_images=run.total_images,
        successful=run.completed_images,
        failed=run.failed_images,
        exports=[f.exported_file_path for f in run.folders if f.exported_file_path],
    )
    if run.overall_status == "paused":
        logger.info("batch_can_be_resumed", hint="Run `stock-tagger resume` to continue")
        return
    if run.overall_status == "error" or run.failed_images:
        raise SystemExit(1)


def _execute(
    ready_folders: list[ReadyFolder],
    options: BatchOptions,
    resume_snapshot: dict[str, Any] | None = None,
    *,
    retry_failed: bool = False,
) -> None:
    try:
        run = asyncio.run(
            _run_batch(ready_folders, options, resume_snapshot, retry_failed=retry_failed),
        )
    except ModelUnavailableError as exc:
        logger.error("model_unavailable", error=str(exc))
        raise SystemExit(1) from exc
    _finish(run)


@app.command
def run(
    inputs: Annotated[
        list[Path],
        Parameter(
            name=("--input", "-i"),
            validator=validators.Path(exists=True, file_okay=False, dir_okay=True),
            help="One or more folders to process, in order (repeat this option)",
        ),
    ],
    *,
    image_extensions: Annotated[
        str,
        Parameter(
            name=("--ext", "--extensions"),
            help="Comma-separated file extensions to process (case insensitive)",
        ),
    ] = ",".join(sorted(ext.lstrip(".") for ext in IMAGE_EXTENSIONS)),
    recursive: Annotated[
        bool,
        Parameter(name=("--recursive", "-r"), help="Include files in subdirectories"),
    ] = False,
    template_id: Annotated[
        str | None,
        Parameter(name=("--template", "-t"), help="Prompt template id assigned to every folder"),
    ] = None,
    options: BatchOptions | None = None,
) -> None:
    """
    Start a new batch over one or more folders.

    Folders are processed one after another; images inside a folder are processed
    sequentially or in parallel chunks (--mode parallel --workers N). Press Ctrl+C to pause;
    progress is saved and can be continued with `stock-tagger resume`.

    Examples:
        stock-tagger run -i ./shoot-01 -i ./shoot-02 --export-dir ./csv
        stock-tagger run -i ./shoot-01 --mode parallel -w 4 --embed --delay 500

    """
    options = options or BatchOptions()
    setup_logging(options.file_log_level, options.console_log_level, options.log_folder)
    ext_set = parse_extensions(image_extensions)
    if not ext_set:
        logger.error("no_valid_extensions_provided", raw_input=image_extensions)
        raise SystemExit(1)

    persistence = JsonFilePersistence(options.progress_file)
    _report_saved_progress(persistence)

    ready = resolve_ready_folders(
        inputs,
        ext_set,
        recursive=recursive,
        assigned_template_id=template_id,
    )
    if not ready:
        logger.error("no_ready_folders", inputs=[str(p) for p in inputs])
        raise SystemExit(1)
    _execute(ready, options)


def _options_for_snapshot(options: BatchOptions, snapshot: dict[str, Any]) -> BatchOptions:
    """Fill in the processing mode and worker count the batch was saved with, unless given."""
    return replace(
        options,
        processing_mode=options.processing_mode or snapshot.get("processingMode", "sequential"),
        parallel_workers=options.parallel_workers
        or int(snapshot.get("parallelWorkers", DEFAULT_PARALLEL_WORKERS)),
    )


def _ready_folders_from_snapshot(snapshot: dict[str, Any]) -> list[ReadyFolder]:
    """Rebuild the ready folders of a saved batch from the file names it recorded."""
    return [
        restore_ready_folder(
            folder["folderId"],
            Path(folder["folderPath"]),
            [image["fileName"] for image in folder.get("images", [])],
            assigned_template_id=folder.get("assignedTemplateId"),
        )
        for folder in snapshot.get("folders", [])
    ]


@app.command
def resume(
    *,
    force: Annotated[
        bool,
        Parameter(name=("--force",), help="Resume even if the saved batch is older than 24 hours"),
    ] = False,
    retry_failed: Annotated[
        bool,
        Parameter(name=("--retry-failed",), help="Process images that failed before again"),
    ] = False,
    options: BatchOptions | None = None,
) -> None:
    """
    Continue the saved batch from its folder and image cursors.

    The saved processing mode and worker count are reused unless --mode or --workers is given.
    """
    options = options or BatchOptions()
    setup_logging(options.file_log_level, options.console_log_level, options.log_folder)
    persistence = JsonFilePersistence(options.progress_file)
    snapshot = persistence.load()
    if snapshot is None:
        logger.error("no_saved_batch_progress", path=str(options.progress_file))
        raise SystemExit(1)

    info = inspect_snapshot(snapshot)
    if info.is_stale and not force:
        logger.error(
            "saved_batch_is_stale",
            hours_ago=info.age_hours,
            hint="Pass --force to resume it anyway",
        )
        raise SystemExit(1)

    try:
        ready = _ready_folders_from_snapshot(snapshot)
    except (KeyError, TypeError) as exc:
        logger.error("saved_batch_malformed", path=str(options.progress_file), error=repr(exc))
        raise SystemExit(1) from exc

    options = _options_for_snapshot(options, snapshot)
    logger.info(
        "resuming_batch",
        folders=len(ready),
        hours_ago=info.age_hours,
        processing_mode=options.processing_mode,
        parallel_workers=options.parallel_workers,
    )
    _execute(ready, options, snapshot, retry_failed=retry_failed)



@app.command
def status(
    progress_file: Annotated[
        Path,
        Parameter(name=("--progress-file",), help="Where batch progress is saved"),
    ] = DEFAULT_PROGRESS_FILE,
) -> None:
    """Show the saved batch progress."""
    setup_logging(file_log_level="OFF", console_log_level="INFO")
    snapshot = JsonFilePersistence(progress_file).load()
    if snapshot is None:
        logger.info("no_saved_batch_progress", path=str(progress_file))
        return

    info = inspect_snapshot(snapshot)
    logger.info(
        "saved_batch",
        hours_ago=info.age_hours,
        stale=info.is_stale,
        mode=snapshot.get("processingMode"),
        folder=f"{snapshot.get('currentFolderIndex', 0) + 1}/{snapshot.get('totalFolders', 0)}",
        completed=snapshot.get("completedImages", 0),
        failed=snapshot.get("failedImages", 0),
        total=snapshot.get("totalImages", 0),
    )
    for folder in snapshot.get("folders", []):
        logger.info(
            "saved_folder",
            name=folder.get("folderName"),
            status=folder.get("status"),
            cursor=f"{folder.get('currentImageIndex', 0)}/{len(folder.get('images', []))}",
            exported=folder.get("exportedFilePath"),
        )


@app.command
def reset(
    progress_file: Annotated[
        Path,
        Parameter(name=("--progress-file",), help="Where batch progress is saved"),
    ] = DEFAULT_PROGRESS_FILE,
) -> None:
    """Discard the saved batch progress."""
    setup_logging(file_log_level="OFF", console_log_level="INFO")
    JsonFilePersistence(progress_file).clear()
    logger.info("batch_progress_reset", path=str(progress_file))


if __name__ == "__main__":
    app()
