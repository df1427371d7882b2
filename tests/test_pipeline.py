from __future__ import annotations

import asyncio
import stat
from pathlib import Path

import pytest

from aiostreamify.errors import (
    ExtractionError,
    InvalidTrackError,
    PipelineDestroyedError,
    ResolutionError,
    TranscodeError,
)
from aiostreamify.models.config import StreamifyConfig
from aiostreamify.models.filters import FilterConfig
from aiostreamify.models.track import Track
from aiostreamify.models.types import PipelineState, ShutdownReason
from aiostreamify.server import pipeline as pipeline_module
from aiostreamify.server.pipeline import (
    LIVE_FORMAT,
    LIVE_READY_TIMEOUT_S,
    READY_TIMEOUT_S,
    YOUTUBE_FORMAT,
    Pipeline,
    build_extractor_args,
    extractor_url,
)


def _script(path: Path, body: str) -> str:
    path.write_text(f"#!/bin/sh\n{body}\n")
    path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return str(path)


def _config(tmp_path: Path, extractor: str, transcoder: str = "cat") -> StreamifyConfig:
    return StreamifyConfig(
        ytdlp_path=_script(tmp_path / "yt-dlp", extractor),
        ffmpeg_path=_script(tmp_path / "ffmpeg", transcoder),
    )


async def _read_all(stream) -> bytes:
    data = b""
    async for chunk in stream:
        data += chunk
    return data


def test_extractor_args_for_youtube_seek() -> None:
    config = StreamifyConfig(cookies_path="/tmp/cookies.txt")
    track = Track(id="abc", duration=200)

    args = build_extractor_args(track, "abc", config, seek_ms=65_500)

    assert args[:4] == ["--cookies", "/tmp/cookies.txt", "-f", YOUTUBE_FORMAT]
    assert "--download-sections" in args
    assert args[args.index("--download-sections") + 1] == "*65-"
    assert args[args.index("--sponsorblock-remove") + 1] == "sponsor,selfpromo"
    assert args[-3:] == ["-o", "-", "https://www.youtube.com/watch?v=abc"]


def test_extractor_args_for_live_track_never_seek() -> None:
    config = StreamifyConfig()
    config.sponsorblock.enabled = False
    config.extractor.additional_args = ["--proxy", "socks5://proxy"]
    track = Track(id="live", is_live=True)

    args = build_extractor_args(track, "live", config, seek_ms=10_000)

    assert args[:2] == ["-f", LIVE_FORMAT]
    assert "--no-live-from-start" in args
    assert "--download-sections" not in args
    assert "--sponsorblock-remove" not in args
    assert args[-5:-3] == ["--proxy", "socks5://proxy"]


def test_extractor_url_by_source() -> None:
    assert extractor_url(Track(id="x", source="spotify"), "yt1") == (
        "https://www.youtube.com/watch?v=yt1"
    )
    assert extractor_url(Track(id="42", source="soundcloud"), "42") == (
        "https://api.soundcloud.com/tracks/42/stream"
    )
    assert extractor_url(Track(id="r", source="http", uri="https://radio/stream"), "r") == (
        "https://radio/stream"
    )


def test_ready_timeout_depends_on_track() -> None:
    config = StreamifyConfig()
    assert Pipeline(Track(id="a", duration=10), None, config).ready_timeout == READY_TIMEOUT_S
    assert Pipeline(Track(id="b", duration=0), None, config).ready_timeout == LIVE_READY_TIMEOUT_S


@pytest.mark.asyncio
async def test_pipeline_streams_transcoder_output(tmp_path: Path) -> None:
    config = _config(tmp_path, "printf 'encoded-audio'")
    pipeline = Pipeline(Track(id="abc", duration=100), FilterConfig({"bass": 5}), config)

    stream = await pipeline.create()

    assert stream is not None
    assert pipeline.state is PipelineState.READY
    assert await pipeline.create() is stream
    assert await _read_all(stream) == b"encoded-audio"
    assert stream.at_eof
    assert pipeline.metrics.bytes_sent == len(b"encoded-audio")
    await pipeline.aclose()
    assert pipeline.destroyed


@pytest.mark.asyncio
async def test_pipeline_passes_seek_to_extractor(tmp_path: Path) -> None:
    config = _config(tmp_path, 'printf "%s" "$*"')
    pipeline = Pipeline(Track(id="abc", duration=300), None, config)

    stream = await pipeline.create(seek_ms=90_000)

    assert stream is not None
    assert pipeline.seek_ms == 90_000
    output = (await _read_all(stream)).decode()
    assert "--download-sections *90-" in output
    assert output.endswith("https://www.youtube.com/watch?v=abc")
    await pipeline.aclose()


@pytest.mark.asyncio
async def test_extractor_failure_is_classified(tmp_path: Path) -> None:
    config = _config(
        tmp_path,
        "echo 'ERROR: [youtube] abc: Video unavailable' >&2\nexit 1",
        "cat\nexec sleep 0.5",
    )
    pipeline = Pipeline(Track(id="abc", duration=100), None, config)

    with pytest.raises(ExtractionError) as exc_info:
        await pipeline.create()

    assert exc_info.value.returncode == 1
    assert "Video unavailable" in exc_info.value.stderr
    assert pipeline.destroyed
    assert pipeline.shutdown_reason is ShutdownReason.EXTRACTOR_FAILED
    with pytest.raises(PipelineDestroyedError):
        await pipeline.create()
    await pipeline.aclose()


@pytest.mark.asyncio
async def test_missing_extractor_binary_raises(tmp_path: Path) -> None:
    config = StreamifyConfig(
        ytdlp_path=str(tmp_path / "missing-yt-dlp"),
        ffmpeg_path=_script(tmp_path / "ffmpeg", "cat"),
    )
    pipeline = Pipeline(Track(id="abc", duration=100), None, config)

    with pytest.raises(ExtractionError) as exc_info:
        await pipeline.create()
    assert exc_info.value.returncode is None


@pytest.mark.asyncio
async def test_invalid_track_id_raises(tmp_path: Path) -> None:
    config = _config(tmp_path, "printf data")

    with pytest.raises(InvalidTrackError):
        await Pipeline(Track(id="undefined"), None, config).create()
    with pytest.raises(InvalidTrackError):
        await Pipeline(Track(id=None), None, config).create()


@pytest.mark.asyncio
async def test_resolution_attaches_resolved_id(tmp_path: Path) -> None:
    config = _config(tmp_path, 'printf "%s" "$*"')
    track = Track(id="spotify-1", title="Song", source="spotify", duration=100)

    async def _resolve(item: Track) -> str | None:
        return "yt-123"

    pipeline = Pipeline(track, None, config, resolver=_resolve)
    stream = await pipeline.create()

    assert track.resolved_id == "yt-123"
    assert (await _read_all(stream)).decode().endswith("watch?v=yt-123")
    await pipeline.aclose()


@pytest.mark.asyncio
async def test_resolution_failure_raises(tmp_path: Path) -> None:
    config = _config(tmp_path, "printf data")
    track = Track(id="spotify-1", source="spotify", duration=100)

    async def _resolve(item: Track) -> str | None:
        return None

    with pytest.raises(ResolutionError):
        await Pipeline(track, None, config, resolver=_resolve).create()
    with pytest.raises(ResolutionError):
        await Pipeline(track, None, config).create()


@pytest.mark.asyncio
async def test_destroy_during_create_returns_none(tmp_path: Path) -> None:
    config = _config(tmp_path, "exec sleep 5")
    pipeline = Pipeline(Track(id="abc", duration=100), None, config)

    create_task = asyncio.create_task(pipeline.create())
    await asyncio.sleep(0.2)
    pipeline.destroy()
    pipeline.destroy()

    assert await asyncio.wait_for(create_task, timeout=2) is None
    assert pipeline.shutdown_reason is ShutdownReason.REQUESTED
    await asyncio.wait_for(pipeline.aclose(), timeout=5)


@pytest.mark.asyncio
async def test_destroy_is_idempotent_and_blocks_create() -> None:
    pipeline = Pipeline(Track(id="abc", duration=100), None, StreamifyConfig())

    pipeline.destroy()
    pipeline.destroy()

    assert pipeline.state is PipelineState.DESTROYED
    with pytest.raises(PipelineDestroyedError, match="already destroyed"):
        await pipeline.create()
    await pipeline.aclose()


@pytest.mark.asyncio
async def test_transcoder_failure_is_classified(tmp_path: Path) -> None:
    config = _config(tmp_path, "exec sleep 5", "echo 'Unknown encoder' >&2\nexit 3")
    pipeline = Pipeline(Track(id="abc", duration=100), None, config)

    with pytest.raises(TranscodeError) as exc_info:
        await pipeline.create()

    assert exc_info.value.returncode == 3
    assert pipeline.destroyed
    assert pipeline.shutdown_reason is ShutdownReason.TRANSCODER_FAILED
    await asyncio.wait_for(pipeline.aclose(), timeout=5)


@pytest.mark.asyncio
async def test_readiness_timeout_proceeds_with_stream(
    monkeypatch: pytest.MonkeyPatch, tmp_path: Path
) -> None:
    monkeypatch.setattr(pipeline_module, "READY_TIMEOUT_S", 0.3)
    config = _config(tmp_path, "exec sleep 5")
    pipeline = Pipeline(Track(id="abc", duration=100), None, config)

    stream = await asyncio.wait_for(pipeline.create(), timeout=3)

    assert stream is not None
    assert pipeline.state is PipelineState.READY
    assert pipeline.metrics.bytes_sent == 0
    await asyncio.wait_for(pipeline.aclose(), timeout=5)
