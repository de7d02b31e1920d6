"""Shared fakes for the orchestrator tests."""

import asyncio
from collections.abc import Callable
from pathlib import Path

import pytest

from stock_tagger.ai import GenerationRequest
from stock_tagger.embedder import EmbedPayload, EmbedResult
from stock_tagger.folders import MediaFile, ReadyFolder
from stock_tagger.state import GeneratedMetadata


class FakeGenerator:
    """Deterministic MetadataGenerator that records calls and tracks concurrency."""

    def __init__(
        self,
        *,
        fail_for: set[str] | None = None,
        after_call: Callable[[str], None] | None = None,
        yields: int = 1,
    ) -> None:
        self.fail_for = fail_for or set()
        self.after_call = after_call
        self.yields = yields
        self.calls: list[str] = []
        self.requests: list[GenerationRequest] = []
        self.in_flight = 0
        self.max_in_flight = 0

    async def generate(self, request: GenerationRequest) -> GeneratedMetadata:
        name = request.image_path.name
        self.calls.append(name)
        self.requests.append(request)
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            for _ in range(self.yields):
                await asyncio.sleep(0)
            if name in self.fail_for:
                msg = f"model refused {name}"
                raise RuntimeError(msg)
            return GeneratedMetadata(
                title=f"Title for {name}",
                description=f"Description of {name}, in detail",
                keywords=["alpha", "beta"],
            )
        finally:
            self.in_flight -= 1
            if self.after_call is not None:
                self.after_call(name)


class FakeEmbedder:
    def __init__(self, *, succeed: bool = True, raise_error: bool = False) -> None:
        self.succeed = succeed
        self.raise_error = raise_error
        self.calls: list[tuple[Path, EmbedPayload]] = []

    async def embed(self, file_path: Path, fields: EmbedPayload) -> EmbedResult:
        self.calls.append((file_path, fields))
        if self.raise_error:
            msg = "exiftool crashed"
            raise OSError(msg)
        return EmbedResult(success=self.succeed, message="ok" if self.succeed else "write failed")


@pytest.fixture
def make_folder(tmp_path: Path) -> Callable[..., ReadyFolder]:
    """Create a folder on disk with the given files and describe it as a ReadyFolder."""

    def factory(
        name: str = "Beach",
        files: tuple[str, ...] = ("a.jpg", "b.jpg", "c.jpg"),
        **extra: object,
    ) -> ReadyFolder:
        folder = tmp_path / name
        folder.mkdir(parents=True, exist_ok=True)
        media = []
        for file_name in files:
            path = folder / file_name
            path.write_bytes(b"\xff\xd8stub")
            media.append(MediaFile(file_name=file_name, file_path=path))
        return ReadyFolder(
            folder_id=f"id-{name}",
            folder_path=folder,
            files=media,
            **extra,  # type: ignore[arg-type]
        )

    return factory
