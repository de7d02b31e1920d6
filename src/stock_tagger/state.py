"""
Progress store: the batch -> folder -> image state tree of a batch run.

The store is the single owner of the tree. Everything else changes it through the
update operations below, keyed by ``folder_id`` and ``file_name``, and observers are
notified after every mutation. ``snapshot`` produces the JSON document that the
persistence port saves, and ``restore`` rebuilds the tree from it.
"""

import time
from collections.abc import Callable, Sequence
from pathlib import PurePath
from typing import Any, Literal

from loguru import logger
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from stock_tagger.config import CategorySelection, ProcessingMode
from stock_tagger.folders import ReadyFolder, is_supported_media


BatchStatus = Literal[
    "idle",
    "scanning",
    "processing",
    "embedding",
    "exporting",
    "completed",
    "paused",
    "error",
]
FolderStatus = Literal["pending", "processing", "completed", "error"]
ImageStatus = Literal["pending", "processing", "completed", "error"]
Stage = Literal["ai_generation", "metadata_embedding", "exporting", "none"]

TERMINAL_IMAGE_STATUSES: frozenset[str] = frozenset({"completed", "error"})
STAGE_TO_STATUS: dict[str, BatchStatus] = {
    "ai_generation": "processing",
    "metadata_embedding": "embedding",
    "exporting": "exporting",
}

ProgressObserver = Callable[[str, "BatchRun"], None]


class _SnapshotModel(BaseModel):
    """Models serialize with camelCase keys to match the persisted snapshot format."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class GeneratedMetadata(_SnapshotModel):
    """Schema for structured generation results."""

    title: str
    description: str
    keywords: list[str] = Field(default_factory=list)


class ImageRun(_SnapshotModel):
    file_name: str
    file_path: str = ""
    status: ImageStatus = "pending"
    metadata: GeneratedMetadata | None = None
    error: str | None = None
    custom_instruction: str | None = None
    categories: CategorySelection | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_IMAGE_STATUSES


class FolderRun(_SnapshotModel):
    folder_id: str
    folder_path: str
    folder_name: str
    status: FolderStatus = "pending"
    images: list[ImageRun] = Field(default_factory=list)
    current_image_index: int = 0
    assigned_template_id: str | None = None
    exported_file_path: str | None = None
    error: str | None = None


class BatchRun(_SnapshotModel):
    is_processing: bool = False
    overall_status: BatchStatus = "idle"
    processing_mode: ProcessingMode = "sequential"
    parallel_workers: int = 1
    current_folder_index: int = 0
    total_folders: int = 0
    total_images: int = 0
    completed_images: int = 0
    failed_images: int = 0
    current_stage: Stage = "none"
    folders: list[FolderRun] = Field(default_factory=list)
    started_at: int | None = None
    error: str | None = None


def folder_name_from_path(folder_path: str) -> str:
    """
    Last component of a folder path, accepting both separators.

    Examples:
        >>> folder_name_from_path("/photos/2024/Beach")
        'Beach'
        >>> folder_name_from_path("C:\\\\Shots\\\\City\\\\")
        'City'
        >>> folder_name_from_path("")
        'Unknown'

    """
    parts = [part for part in folder_path.replace("\\", "/").split("/") if part]
    return parts[-1] if parts else "Unknown"


def _now_millis() -> int:
    return int(time.time() * 1000)


class ProgressStore:
    """Owner of the batch state tree; all writes go through the methods of this class."""

    def __init__(self) -> None:
        self._run = BatchRun()
        self._observers: list[ProgressObserver] = []

    @property
    def run(self) -> BatchRun:
        return self._run

    def subscribe(self, observer: ProgressObserver) -> Callable[[], None]:
        """Register ``observer(event, run)``; returns a function that unsubscribes it."""
        self._observers.append(observer)

        def unsubscribe() -> None:
            if observer in self._observers:
                self._observers.remove(observer)

        return unsubscribe

    def _emit(self, event: str) -> None:
        for observer in list(self._observers):
            try:
                observer(event, self._run)
            except Exception as exc:  # noqa: BLE001
                logger.opt(exception=exc).warning("progress_observer_failed", event_name=event)

    # -- lookups -------------------------------------------------------------

    def folder(self, folder_id: str) -> FolderRun:
        for folder in self._run.folders:
            if folder.folder_id == folder_id:
                return folder
        msg = f"Unknown folder: {folder_id}"
        raise KeyError(msg)

    def image(self, folder_id: str, file_name: str) -> ImageRun:
        for image in self.folder(folder_id).images:
            if image.file_name == file_name:
                return image
        msg = f"Unknown image {file_name!r} in folder {folder_id}"
        raise KeyError(msg)

    # -- batch lifecycle -----------------------------------------------------

    def start_batch(
        self,
        folders: Sequence[ReadyFolder],
        processing_mode: ProcessingMode,
        parallel_workers: int = 1,
    ) -> None:
        """Build a fresh tree with one FolderRun per folder and one ImageRun per media file."""
        folder_runs: list[FolderRun] = []
        for folder in folders:
            folder_path = str(folder.folder_path)
            images = [
                ImageRun(
                    file_name=media.file_name,
                    custom_instruction=folder.custom_instructions.get(media.file_name),
                    categories=folder.categories.get(media.file_name),
                )
                for media in folder.files
                if is_supported_media(media.file_name)
            ]
            folder_runs.append(
                FolderRun(
                    folder_id=folder.folder_id,
                    folder_path=folder_path,
                    folder_name=folder_name_from_path(folder_path),
                    images=images,
                    assigned_template_id=folder.assigned_template_id,
                ),
            )

        self._run = BatchRun(
            is_processing=True,
            overall_status="scanning",
            processing_mode=processing_mode,
            parallel_workers=parallel_workers,
            total_folders=len(folder_runs),
            total_images=sum(len(f.images) for f in folder_runs),
            folders=folder_runs,
            started_at=_now_millis(),
        )
        self._emit("batch_started")

    def restore(
        self,
        snapshot: dict[str, Any],
        parallel_workers: int | None = None,
        processing_mode: ProcessingMode | None = None,
    ) -> None:
        """
        Rebuild the tree from a persisted snapshot; the run is left ``paused``.

        ``processing_mode`` and ``parallel_workers`` override the values saved in the
        snapshot when given.
        """
        folders = [FolderRun.model_validate(data) for data in snapshot.get("folders", [])]
        self._run = BatchRun(
            is_processing=False,
            overall_status="paused",
            processing_mode=processing_mode or snapshot.get("processingMode", "sequential"),
            parallel_workers=parallel_workers or int(snapshot.get("parallelWorkers", 1)),
            current_folder_index=int(snapshot.get("currentFolderIndex", 0)),
            total_folders=int(snapshot.get("totalFolders", len(folders))),
            total_images=int(
                snapshot.get("totalImages", sum(len(f.images) for f in folders)),
            ),
            completed_images=int(snapshot.get("completedImages", 0)),
            failed_images=int(snapshot.get("failedImages", 0)),
            folders=folders,
        )
        self._emit("batch_restored")

    def resume(self) -> None:
        self._run.is_processing = True
        self._run.overall_status = "processing"
        self._run.error = None
        self._emit("batch_resumed")

    def complete_batch(self) -> None:
        self._run.is_processing = False
        self._run.overall_status = "completed"
        self._run.current_stage = "none"
        self._emit("batch_completed")

    def pause_batch(self) -> None:
        self._run.is_processing = False
        self._run.overall_status = "paused"
        self._emit("batch_paused")

    def fail_batch(self, message: str) -> None:
        self._run.is_processing = False
        self._run.overall_status = "error"
        self._run.error = message
        self._emit("batch_failed")

    def reset(self) -> None:
        self._run = BatchRun()
        self._emit("batch_reset")

    def set_current_stage(self, stage: Stage) -> None:
        self._run.current_stage = stage
        if status := STAGE_TO_STATUS.get(stage):
            self._run.overall_status = status
        self._emit("stage_changed")

    def set_current_folder_index(self, index: int) -> None:
        """Move the folder cursor; earlier folders are done, later ones pending."""
        if index < self._run.current_folder_index:
            logger.warning(
                "folder_cursor_moved_backwards",
                current=self._run.current_folder_index,
                requested=index,
            )
        self._run.current_folder_index = index
        for position, folder in enumerate(self._run.folders):
            if position < index:
                folder.status = "completed"
            elif position == index:
                folder.status = "processing"
            elif folder.status != "completed":
                folder.status = "pending"
        self._emit("folder_index_changed")

    # -- folder updates ------------------------------------------------------

    def set_folder_status(
        self,
        folder_id: str,
        status: FolderStatus,
        error: str | None = None,
    ) -> None:
        folder = self.folder(folder_id)
        folder.status = status
        if error:
            folder.error = error
        self._emit("folder_status_changed")

    def set_image_progress(self, folder_id: str, current_image_index: int) -> None:
        self.folder(folder_id).current_image_index = current_image_index
        self._emit("image_progress_changed")

    def mark_folder_exported(self, folder_id: str, exported_file_path: str) -> None:
        self.folder(folder_id).exported_file_path = exported_file_path
        self._emit("folder_exported")

    # -- image updates -------------------------------------------------------

    def set_file_path(self, folder_id: str, file_name: str, file_path: str | PurePath) -> None:
        self.image(folder_id, file_name).file_path = str(file_path)
        self._emit("file_path_set")

    def mark_image_processing(self, folder_id: str, file_name: str) -> None:
        image = self.image(folder_id, file_name)
        if image.is_terminal:
            msg = f"Image {file_name!r} already finished with status {image.status!r}"
            raise ValueError(msg)
        image.status = "processing"
        image.error = None
        self._emit("image_processing")

    def complete_image(self, folder_id: str, file_name: str, metadata: GeneratedMetadata) -> None:
        image = self.image(folder_id, file_name)
        if image.is_terminal:
            logger.warning("image_already_terminal", file=file_name, status=image.status)
            return
        image.status = "completed"
        image.metadata = metadata
        self._run.completed_images += 1
        self._emit("image_completed")

    def fail_image(self, folder_id: str, file_name: str, error: str) -> None:
        image = self.image(folder_id, file_name)
        if image.is_terminal:
            logger.warning("image_already_terminal", file=file_name, status=image.status)
            return
        image.status = "error"
        image.error = error
        self._run.failed_images += 1
        self._emit("image_failed")

    def requeue_failed(self, folder_id: str | None = None) -> int:
        """
        Put ``error`` images back to ``pending`` for a caller-initiated retry.

        Folders that gain pending images get their cursor rewound and, if they were
        already completed, go back to ``pending``. The batch cursor moves to the first
        such folder.

        Returns:
            Number of images requeued.

        """
        requeued = 0
        first_index: int | None = None
        for position, folder in enumerate(self._run.folders):
            if folder_id is not None and folder.folder_id != folder_id:
                continue
            folder_requeued = 0
            for image in folder.images:
                if image.status == "error":
                    image.status = "pending"
                    image.error = None
                    folder_requeued += 1
            if folder_requeued:
                folder.current_image_index = 0
                folder.exported_file_path = None
                if folder.status == "completed":
                    folder.status = "pending"
                if first_index is None:
                    first_index = position
                requeued += folder_requeued

        if requeued:
            self._run.failed_images -= requeued
            if first_index is not None and first_index < self._run.current_folder_index:
                self._run.current_folder_index = first_index
            logger.info("failed_images_requeued", count=requeued, folder=folder_id)
            self._emit("failed_images_requeued")
        return requeued

    # -- persistence ---------------------------------------------------------

    def snapshot(self, saved_at: int | None = None) -> dict[str, Any]:
        """JSON-ready document with everything needed to resume the run."""
        return {
            "folders": [
                folder.model_dump(mode="json", by_alias=True) for folder in self._run.folders
            ],
            "currentFolderIndex": self._run.current_folder_index,
            "totalFolders": self._run.total_folders,
            "totalImages": self._run.total_images,
            "completedImages": self._run.completed_images,
            "failedImages": self._run.failed_images,
            "processingMode": self._run.processing_mode,
            "parallelWorkers": self._run.parallel_workers,
            "savedAt": saved_at if saved_at is not None else _now_millis(),
        }
