from __future__ import annotations

import asyncio
from typing import Any

import pytest

from aiostreamify.errors import ExtractionError, PipelineDestroyedError
from aiostreamify.models.config import AutoLeaveConfig, StreamifyConfig
from aiostreamify.models.filters import FilterConfig
from aiostreamify.models.track import Track
from aiostreamify.server.pipeline import PipelineStream


class FakePipeline:
    """In-memory stand-in for Pipeline; the test decides when data flows and ends."""

    def __init__(
        self,
        track: Track,
        filters: FilterConfig,
        *,
        error: Exception | None = None,
        hold: bool = False,
    ) -> None:
        self.track = track
        self.filters = filters
        self.error = error
        self.seek_ms: int | None = None
        self.destroyed = False
        self.create_calls = 0
        self.chunks: asyncio.Queue[bytes | None] = asyncio.Queue()
        self._stream: PipelineStream | None = None
        self._released = asyncio.Event()
        if not hold:
            self._released.set()

    async def create(self, seek_ms: int = 0) -> PipelineStream | None:
        if self.destroyed:
            raise PipelineDestroyedError("Pipeline already destroyed")
        self.create_calls += 1
        if self._stream is not None:
            return self._stream
        if self.seek_ms is None:
            self.seek_ms = seek_ms
        await self._released.wait()
        if self.destroyed:
            return None
        if self._stream is not None:
            return self._stream
        if self.error is not None:
            self.destroyed = True
            raise self.error
        self._stream = PipelineStream(self, self.chunks)  # type: ignore[arg-type]
        return self._stream

    def release(self) -> None:
        self._released.set()

    def feed(self, data: bytes) -> None:
        self.chunks.put_nowait(data)

    def finish(self) -> None:
        self.chunks.put_nowait(None)

    def destroy(self) -> None:
        if self.destroyed:
            return
        self.destroyed = True
        self._released.set()
        self.chunks.put_nowait(None)


class FakePipelineFactory:
    """Callable matching the SessionManager pipeline factory signature."""

    def __init__(self) -> None:
        self.created: list[FakePipeline] = []
        self.failing: set[str] = set()
        self.held: set[str] = set()

    def __call__(
        self, track: Track, filters: FilterConfig, config: StreamifyConfig, **_: Any
    ) -> FakePipeline:
        error = None
        if track.id in self.failing:
            error = ExtractionError("yt-dlp failed with code 1", returncode=1)
        pipeline = FakePipeline(track, filters, error=error, hold=track.id in self.held)
        self.created.append(pipeline)
        return pipeline

    def for_track(self, track_id: str) -> list[FakePipeline]:
        return [p for p in self.created if p.track.id == track_id]

    def last(self, track_id: str) -> FakePipeline:
        return self.for_track(track_id)[-1]


@pytest.fixture
def config() -> StreamifyConfig:
    return StreamifyConfig(
        ytdlp_path="yt-dlp",
        ffmpeg_path="ffmpeg",
        auto_leave=AutoLeaveConfig(enabled=True, empty_delay=30.0, inactivity_timeout=300.0),
    )


@pytest.fixture
def pipelines() -> FakePipelineFactory:
    return FakePipelineFactory()
