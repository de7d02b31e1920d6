"""
Batch controller: drives every ready folder through a strategy, export and persistence.

Folders are processed strictly one after another, in list order, even when the images
inside a folder are processed in parallel. A snapshot is persisted after every folder
and whenever the run pauses or fails, so an interrupted batch can continue from the
stored folder and image cursors.
"""

from collections.abc import Sequence
from typing import Any

from loguru import logger

from stock_tagger.ai import MetadataGenerator
from stock_tagger.cancellation import CancellationToken
from stock_tagger.config import BatchConfig
from stock_tagger.embedder import TagEmbedder
from stock_tagger.export import export_folder
from stock_tagger.folders import ReadyFolder
from stock_tagger.persistence import PersistencePort
from stock_tagger.runner import ImageTaskRunner
from stock_tagger.state import BatchRun, ProgressStore
from stock_tagger.strategies import get_strategy
from stock_tagger.templates import TemplateRegistry


class BatchController:
    """Top-level driver of a batch run."""

    def __init__(
        self,
        generator: MetadataGenerator,
        persistence: PersistencePort,
        *,
        embedder: TagEmbedder | None = None,
        templates: TemplateRegistry | None = None,
        store: ProgressStore | None = None,
        token: CancellationToken | None = None,
    ) -> None:
        self.store = store or ProgressStore()
        self.token = token or CancellationToken()
        self.persistence = persistence
        self.runner = ImageTaskRunner(
            self.store,
            generator,
            embedder,
            self.token,
            templates,
        )

    def cancel(self) -> None:
        """Request a pause; the run stops at its next cancellation check."""
        self.token.cancel()
        self._persist()

    def _persist(self) -> None:
        try:
            self.persistence.save(self.store.snapshot())
        except Exception as exc:  # noqa: BLE001
            logger.opt(exception=exc).error("batch_progress_save_failed", error=str(exc))

    def _clear_persisted(self) -> None:
        try:
            self.persistence.clear()
        except Exception as exc:  # noqa: BLE001
            logger.opt(exception=exc).error("batch_progress_clear_failed", error=str(exc))

    def _pause(self) -> BatchRun:
        self.store.pause_batch()
        self._persist()
        logger.info(
            "batch_paused",
            folder_index=self.store.run.current_folder_index,
            completed=self.store.run.completed_images,
            failed=self.store.run.failed_images,
        )
        return self.store.run

    def _initialize(
        self,
        ready_folders: Sequence[ReadyFolder],
        config: BatchConfig,
        resume_snapshot: dict[str, Any] | None,
    ) -> int:
        if resume_snapshot is None:
            self.store.start_batch(ready_folders, config.processing_mode, config.parallel_workers)
            self.store.resume()
            return 0

        self.store.restore(resume_snapshot, config.parallel_workers, config.processing_mode)
        self.store.resume()
        known = {folder.folder_id for folder in self.store.run.folders}
        if missing := [f.folder_path for f in ready_folders if f.folder_id not in known]:
            msg = f"Folders not part of the saved batch: {', '.join(map(str, missing))}"
            raise ValueError(msg)
        return self.store.run.current_folder_index

    async def start(
        self,
        ready_folders: Sequence[ReadyFolder],
        config: BatchConfig,
        resume_snapshot: dict[str, Any] | None = None,
    ) -> BatchRun:
        """
        Process every ready folder and return the terminal state of the run.

        Args:
            ready_folders: Scanned folders, in processing order
            config: Configuration bundle
            resume_snapshot: Snapshot of a paused or failed run to continue

        Returns:
            The BatchRun, with ``overall_status`` completed, paused or error.

        """
        self.token.reset()
        logger.info(
            "batch_processing_started",
            provider=config.provider,
            model=config.model,
            processing_mode=config.processing_mode,
            parallel_workers=config.parallel_workers,
            request_delay_ms=config.request_delay_ms,
            folders=len(ready_folders),
            resuming=resume_snapshot is not None,
        )

        initialized = False
        try:
            start_index = self._initialize(ready_folders, config, resume_snapshot)
            initialized = True
            paths_by_folder = {folder.folder_id: folder.file_paths for folder in ready_folders}
            strategy = get_strategy(
                self.store.run.processing_mode,
                self.store,
                self.runner,
                self.token,
            )

            for folder_index in range(start_index, len(self.store.run.folders)):
                if self.token.cancelled:
                    return self._pause()

                folder = self.store.run.folders[folder_index]
                if folder.status == "completed":
                    logger.debug("skipping_completed_folder", folder=folder.folder_name)
                    continue
                self.store.set_current_folder_index(folder_index)
                self.store.set_folder_status(folder.folder_id, "processing")
                self.store.set_current_stage("ai_generation")

                with logger.contextualize(folder=folder.folder_name):
                    logger.info(
                        "folder_processing_started",
                        position=f"{folder_index + 1}/{len(self.store.run.folders)}",
                        images=len(folder.images),
                        resume_index=folder.current_image_index,
                    )
                    await strategy.process(
                        folder.folder_id,
                        paths_by_folder.get(folder.folder_id, {}),
                        config,
                        folder.current_image_index,
                    )

                    if self.token.cancelled:
                        return self._pause()

                    self._export(folder.folder_id, config)
                    self.store.set_folder_status(folder.folder_id, "completed")
                    logger.info("folder_completed", exported=folder.exported_file_path)
                self._persist()

        except Exception as exc:
            message = str(exc) or type(exc).__name__
            logger.exception("batch_processing_failed", error=message)
            folders = self.store.run.folders
            current = self.store.run.current_folder_index
            if 0 <= current < len(folders) and folders[current].status == "processing":
                self.store.set_folder_status(folders[current].folder_id, "error", message)
            self.store.fail_batch(message)
            # A store that never took over the batch must not replace the saved snapshot.
            if initialized:
                self._persist()
            return self.store.run

        self.store.complete_batch()
        self._clear_persisted()
        logger.info(
            "batch_processing_completed",
            total=self.store.run.total_images,
            completed=self.store.run.completed_images,
            failed=self.store.run.failed_images,
        )
        return self.store.run

    def _export(self, folder_id: str, config: BatchConfig) -> None:
        settings = config.export
        if settings is None:
            return
        self.store.set_current_stage("exporting")
        exported = export_folder(
            self.store.folder(folder_id),
            settings.categories,
            settings.platform,
            settings.export_dir,
        )
        if exported is not None:
            self.store.mark_folder_exported(folder_id, str(exported))
