"""Tests for the progress store state tree."""

from collections.abc import Callable
from pathlib import Path

import pytest

from stock_tagger.config import CategorySelection
from stock_tagger.folders import MediaFile, ReadyFolder
from stock_tagger.state import BatchRun, GeneratedMetadata, ProgressStore


METADATA = GeneratedMetadata(title="Sunset over dunes", description="Orange light on sand.", keywords=["dune"])


def _ready(name: str, *files: str, **extra: object) -> ReadyFolder:
    root = Path("/photos") / name
    return ReadyFolder(
        folder_id=f"id-{name}",
        folder_path=root,
        files=[MediaFile(file_name=f, file_path=root / f) for f in files],
        **extra,  # type: ignore[arg-type]
    )


@pytest.fixture
def store() -> ProgressStore:
    progress = ProgressStore()
    progress.start_batch(
        [_ready("Beach", "a.jpg", "b.jpg", "notes.txt"), _ready("City", "c.jpg")],
        "parallel",
        4,
    )
    return progress


def test_start_batch_builds_tree(store: ProgressStore) -> None:
    """Unsupported files are left out and totals follow the supported media."""
    run = store.run

    assert run.overall_status == "scanning"
    assert run.is_processing
    assert run.processing_mode == "parallel"
    assert run.parallel_workers == 4
    assert run.total_folders == 2
    assert run.total_images == 3
    assert [image.file_name for image in run.folders[0].images] == ["a.jpg", "b.jpg"]
    assert run.folders[0].folder_name == "Beach"
    assert all(folder.status == "pending" for folder in run.folders)
    assert run.started_at is not None


def test_start_batch_carries_per_image_settings() -> None:
    progress = ProgressStore()
    progress.start_batch(
        [
            _ready(
                "Beach",
                "a.jpg",
                custom_instructions={"a.jpg": "Mention the pier"},
                categories={"a.jpg": CategorySelection(adobe_stock="21")},
                assigned_template_id="social-media",
            ),
        ],
        "sequential",
    )

    folder = progress.run.folders[0]
    assert folder.assigned_template_id == "social-media"
    assert folder.images[0].custom_instruction == "Mention the pier"
    assert folder.images[0].categories == CategorySelection(adobe_stock="21")


def test_image_transitions_update_counters_once(store: ProgressStore) -> None:
    store.mark_image_processing("id-Beach", "a.jpg")
    store.complete_image("id-Beach", "a.jpg", METADATA)
    store.complete_image("id-Beach", "a.jpg", METADATA)
    store.fail_image("id-Beach", "a.jpg", "late failure")
    store.mark_image_processing("id-Beach", "b.jpg")
    store.fail_image("id-Beach", "b.jpg", "timeout")

    image_a = store.image("id-Beach", "a.jpg")
    assert image_a.status == "completed"
    assert image_a.metadata == METADATA
    assert store.image("id-Beach", "b.jpg").error == "timeout"
    assert store.run.completed_images == 1
    assert store.run.failed_images == 1


def test_terminal_image_cannot_restart(store: ProgressStore) -> None:
    store.complete_image("id-Beach", "a.jpg", METADATA)

    with pytest.raises(ValueError, match="already finished"):
        store.mark_image_processing("id-Beach", "a.jpg")


def test_unknown_lookups_raise_key_error(store: ProgressStore) -> None:
    with pytest.raises(KeyError):
        store.folder("missing")
    with pytest.raises(KeyError):
        store.image("id-Beach", "missing.jpg")


def test_folder_cursor_sets_folder_statuses(store: ProgressStore) -> None:
    store.set_current_folder_index(1)

    assert [folder.status for folder in store.run.folders] == ["completed", "processing"]
    assert store.run.current_folder_index == 1


def test_stage_maps_to_overall_status(store: ProgressStore) -> None:
    store.set_current_stage("metadata_embedding")
    assert store.run.overall_status == "embedding"

    store.set_current_stage("exporting")
    assert store.run.overall_status == "exporting"

    store.set_current_stage("none")
    assert store.run.overall_status == "exporting"
    assert store.run.current_stage == "none"


def test_lifecycle_flags(store: ProgressStore) -> None:
    store.resume()
    assert store.run.overall_status == "processing"

    store.pause_batch()
    assert store.run.overall_status == "paused"
    assert not store.run.is_processing

    store.fail_batch("boom")
    assert store.run.overall_status == "error"
    assert store.run.error == "boom"

    store.resume()
    assert store.run.error is None

    store.complete_batch()
    assert store.run.overall_status == "completed"
    assert not store.run.is_processing

    store.reset()
    assert store.run == BatchRun()


def test_snapshot_restore_round_trip(store: ProgressStore) -> None:
    """A restored store is paused and resumes from the saved cursors and counters."""
    store.set_current_folder_index(0)
    store.set_file_path("id-Beach", "a.jpg", Path("/photos/Beach/a.jpg"))
    store.complete_image("id-Beach", "a.jpg", METADATA)
    store.set_image_progress("id-Beach", 1)

    snapshot = store.snapshot(saved_at=1234)

    assert snapshot["savedAt"] == 1234
    assert snapshot["processingMode"] == "parallel"
    folder = snapshot["folders"][0]
    assert folder["folderId"] == "id-Beach"
    assert folder["currentImageIndex"] == 1
    assert folder["images"][0]["fileName"] == "a.jpg"
    assert folder["images"][0]["metadata"]["title"] == "Sunset over dunes"

    restored = ProgressStore()
    restored.restore(snapshot, parallel_workers=2)

    assert restored.run.overall_status == "paused"
    assert not restored.run.is_processing
    assert restored.run.parallel_workers == 2
    assert restored.run.completed_images == 1
    assert restored.run.total_images == 3
    assert restored.run.folders == store.run.folders


def test_requeue_failed_rewinds_folder(store: ProgressStore) -> None:
    store.set_current_folder_index(0)
    store.complete_image("id-Beach", "a.jpg", METADATA)
    store.fail_image("id-Beach", "b.jpg", "timeout")
    store.set_image_progress("id-Beach", 2)
    store.mark_folder_exported("id-Beach", "/csv/Beach.csv")
    store.set_current_folder_index(1)

    requeued = store.requeue_failed()

    beach = store.folder("id-Beach")
    assert requeued == 1
    assert store.run.failed_images == 0
    assert store.run.current_folder_index == 0
    assert beach.status == "pending"
    assert beach.current_image_index == 0
    assert beach.exported_file_path is None
    assert store.image("id-Beach", "b.jpg").status == "pending"
    assert store.image("id-Beach", "a.jpg").status == "completed"
    assert store.requeue_failed() == 0


def test_observers_are_notified_and_isolated(store: ProgressStore) -> None:
    events: list[str] = []

    def broken(_event: str, _run: BatchRun) -> None:
        msg = "observer bug"
        raise RuntimeError(msg)

    record: Callable[[str, BatchRun], None] = lambda event, _run: events.append(event)  # noqa: E731
    store.subscribe(broken)
    unsubscribe = store.subscribe(record)

    store.set_image_progress("id-City", 1)
    unsubscribe()
    store.set_image_progress("id-City", 0)

    assert events == ["image_progress_changed"]
    assert store.folder("id-City").current_image_index == 0


def test_restore_keeps_saved_mode_and_workers_unless_overridden(store: ProgressStore) -> None:
    snapshot = store.snapshot()
    assert snapshot["parallelWorkers"] == store.run.parallel_workers

    saved = ProgressStore()
    saved.restore(snapshot)
    assert saved.run.processing_mode == "parallel"
    assert saved.run.parallel_workers == store.run.parallel_workers

    overridden = ProgressStore()
    overridden.restore(snapshot, parallel_workers=5, processing_mode="sequential")
    assert overridden.run.processing_mode == "sequential"
    assert overridden.run.parallel_workers == 5
