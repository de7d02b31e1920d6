"""
Folder processing strategies.

Both strategies feed a folder's images to the ``ImageTaskRunner`` starting at the
folder's resume cursor, skip images that already reached a terminal status, and return
as soon as cancellation is observed. The sequential strategy awaits one image at a
time; the parallel strategy awaits fixed-size chunks, so ``parallel_workers`` caps the
number of simultaneous model calls.
"""

import asyncio
from collections.abc import Mapping
from pathlib import Path
from typing import Protocol

from loguru import logger

from stock_tagger.cancellation import CancellationToken, cancellable_delay
from stock_tagger.config import BatchConfig, ProcessingMode
from stock_tagger.runner import ImageTaskRunner
from stock_tagger.state import ProgressStore


MISSING_PATH_ERROR = "File path not found"


class FolderStrategy(Protocol):
    async def process(
        self,
        folder_id: str,
        file_paths: Mapping[str, Path],
        config: BatchConfig,
        start_index: int = 0,
    ) -> None: ...


class _BaseStrategy:
    def __init__(
        self,
        store: ProgressStore,
        runner: ImageTaskRunner,
        token: CancellationToken,
    ) -> None:
        self.store = store
        self.runner = runner
        self.token = token

    def _pending_names(self, folder_id: str, names: list[str]) -> list[str]:
        pending = []
        for name in names:
            image = self.store.image(folder_id, name)
            if image.is_terminal:
                logger.debug("skipping_finished_image", file=name, status=image.status)
                continue
            pending.append(name)
        return pending

    def _resolve_path(
        self,
        folder_id: str,
        file_name: str,
        file_paths: Mapping[str, Path],
    ) -> Path | None:
        file_path = file_paths.get(file_name)
        if file_path is None:
            logger.warning("file_path_not_found", file=file_name)
            self.store.fail_image(folder_id, file_name, MISSING_PATH_ERROR)
            return None
        self.store.set_file_path(folder_id, file_name, file_path)
        return file_path


class SequentialStrategy(_BaseStrategy):
    """One image at a time, with the request delay between images."""

    async def process(
        self,
        folder_id: str,
        file_paths: Mapping[str, Path],
        config: BatchConfig,
        start_index: int = 0,
    ) -> None:
        names = [image.file_name for image in self.store.folder(folder_id).images]
        last_index = len(names) - 1

        for index in range(max(start_index, 0), len(names)):
            if self.token.cancelled:
                logger.info("sequential_processing_paused", index=index)
                return

            file_name = names[index]
            if not self._pending_names(folder_id, [file_name]):
                continue

            file_path = self._resolve_path(folder_id, file_name, file_paths)
            if file_path is not None:
                status = await self.runner.run(folder_id, file_name, file_path, config)
                if status is None:
                    logger.info("sequential_processing_paused", index=index)
                    return

            self.store.set_image_progress(folder_id, index + 1)

            if self.token.cancelled:
                logger.info("sequential_processing_paused", index=index + 1)
                return
            if config.request_delay_ms > 0 and index < last_index:
                await cancellable_delay(config.request_delay_ms, self.token)


class ParallelStrategy(_BaseStrategy):
    """Chunks of ``parallel_workers`` images run together; each chunk is awaited in full."""

    async def _run_one(
        self,
        folder_id: str,
        file_name: str,
        file_paths: Mapping[str, Path],
        config: BatchConfig,
    ) -> None:
        if self.token.cancelled:
            return
        file_path = self._resolve_path(folder_id, file_name, file_paths)
        if file_path is not None:
            await self.runner.run(folder_id, file_name, file_path, config)

    async def process(
        self,
        folder_id: str,
        file_paths: Mapping[str, Path],
        config: BatchConfig,
        start_index: int = 0,
    ) -> None:
        names = [image.file_name for image in self.store.folder(folder_id).images]
        workers = config.parallel_workers

        for chunk_start in range(max(start_index, 0), len(names), workers):
            if self.token.cancelled:
                logger.info("parallel_processing_paused", index=chunk_start)
                return

            chunk_end = min(chunk_start + workers, len(names))
            pending = self._pending_names(folder_id, names[chunk_start:chunk_end])
            if not pending:
                self.store.set_image_progress(folder_id, chunk_end)
                continue

            logger.debug("processing_chunk", start=chunk_start, size=len(pending))
            await asyncio.gather(
                *(self._run_one(folder_id, name, file_paths, config) for name in pending),
            )

            if self.token.cancelled:
                logger.info("parallel_processing_paused", index=chunk_start)
                return

            self.store.set_image_progress(folder_id, chunk_end)
            if config.request_delay_ms > 0 and chunk_end < len(names):
                await cancellable_delay(config.request_delay_ms, self.token)


def get_strategy(
    mode: ProcessingMode,
    store: ProgressStore,
    runner: ImageTaskRunner,
    token: CancellationToken,
) -> FolderStrategy:
    if mode == "parallel":
        return ParallelStrategy(store, runner, token)
    return SequentialStrategy(store, runner, token)
