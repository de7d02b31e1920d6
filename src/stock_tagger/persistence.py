"""Persistence port for batch progress snapshots, plus file and in-memory adapters."""

import json
import os
import tempfile
import time
from pathlib import Path
from typing import Any, NamedTuple, Protocol

from loguru import logger


STALE_AFTER_HOURS = 24.0
_MILLIS_PER_HOUR = 1000 * 60 * 60


class PersistencePort(Protocol):
    """Durable key-value slot holding at most one batch snapshot."""

    def save(self, snapshot: dict[str, Any]) -> None: ...

    def load(self) -> dict[str, Any] | None: ...

    def clear(self) -> None: ...


class SnapshotInfo(NamedTuple):
    age_hours: float
    is_stale: bool


def inspect_snapshot(
    snapshot: dict[str, Any],
    now_millis: int | None = None,
    *,
    stale_after_hours: float = STALE_AFTER_HOURS,
) -> SnapshotInfo:
    """
    Report how old a snapshot is and whether it is too old to resume automatically.

    Examples:
        >>> inspect_snapshot({"savedAt": 0}, now_millis=3_600_000)
        SnapshotInfo(age_hours=1.0, is_stale=False)
        >>> inspect_snapshot({"savedAt": 0}, now_millis=25 * 3_600_000).is_stale
        True

    """
    now = now_millis if now_millis is not None else int(time.time() * 1000)
    saved_at = int(snapshot.get("savedAt", 0))
    age_hours = max(now - saved_at, 0) / _MILLIS_PER_HOUR
    return SnapshotInfo(age_hours=round(age_hours, 1), is_stale=age_hours >= stale_after_hours)


class JsonFilePersistence:
    """Keeps the snapshot in a single JSON file, replaced atomically on every save."""

    def __init__(self, path: Path) -> None:
        self.path = path

    def save(self, snapshot: dict[str, Any]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(
            dir=self.path.parent,
            prefix=f".{self.path.name}.",
            suffix=".tmp",
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                json.dump(snapshot, handle, ensure_ascii=False, indent=2)
            Path(tmp_name).replace(self.path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise
        logger.debug("batch_progress_saved", path=str(self.path))

    def load(self) -> dict[str, Any] | None:
        if not self.path.exists():
            return None
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            logger.warning("batch_progress_unreadable", path=str(self.path), error=str(exc))
            return None
        if not isinstance(data, dict):
            logger.warning("batch_progress_malformed", path=str(self.path))
            return None
        return data

    def clear(self) -> None:
        self.path.unlink(missing_ok=True)
        logger.debug("batch_progress_cleared", path=str(self.path))


class MemoryPersistence:
    """Process-local snapshot slot; the stored document is deep-copied through JSON."""

    def __init__(self) -> None:
        self._data: str | None = None
        self.saves = 0

    def save(self, snapshot: dict[str, Any]) -> None:
        self._data = json.dumps(snapshot)
        self.saves += 1

    def load(self) -> dict[str, Any] | None:
        return json.loads(self._data) if self._data is not None else None

    def clear(self) -> None:
        self._data = None
