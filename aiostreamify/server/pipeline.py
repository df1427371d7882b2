"""
Extractor and transcoder process pipeline for a single track.

A Pipeline spawns the extractor (yt-dlp) and the transcoder (ffmpeg), wires the
extractor's output into the transcoder's input and exposes the transcoder's output as
a PipelineStream once the first encoded chunk arrives.
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from collections.abc import Awaitable, Callable
from contextlib import suppress
from dataclasses import dataclass
from typing import TYPE_CHECKING

from aiostreamify.errors import (
    ExtractionError,
    InvalidTrackError,
    PipelineDestroyedError,
    ProcessError,
    ReadinessTimeout,
    ResolutionError,
    TranscodeError,
)
from aiostreamify.models.filters import FilterConfig
from aiostreamify.models.track import YOUTUBE_SOURCES
from aiostreamify.models.types import PipelineState, ShutdownReason

from .filters import build_transcoder_args

if TYPE_CHECKING:
    from aiostreamify.models.config import StreamifyConfig
    from aiostreamify.models.track import Track

logger = logging.getLogger(__name__)

READY_TIMEOUT_S = 15.0
LIVE_READY_TIMEOUT_S = 30.0
READ_CHUNK_SIZE = 8192
# Bounded so a slow consumer applies backpressure to both processes
STREAM_BUFFER_CHUNKS = 64
STDERR_TAIL_LINES = 20

YOUTUBE_FORMAT = "18/22/bestaudio[ext=webm]/bestaudio/best"
LIVE_FORMAT = "bestaudio*/best"

Resolver = Callable[["Track"], Awaitable[str | None]]


def extractor_url(track: Track, video_id: str) -> str:
    """Return the url handed to the extractor for a track."""
    if track.source == "soundcloud":
        return track.uri or f"https://api.soundcloud.com/tracks/{video_id}/stream"
    if track.source in YOUTUBE_SOURCES or not track.uri:
        return f"https://www.youtube.com/watch?v={video_id}"
    return track.uri


def build_extractor_args(
    track: Track, video_id: str, config: StreamifyConfig, seek_ms: int = 0
) -> list[str]:
    """Build the yt-dlp argument vector (without the executable)."""
    is_youtube = track.source in YOUTUBE_SOURCES
    is_live = track.is_indeterminate

    args: list[str] = []
    if config.cookies_path:
        args += ["--cookies", config.cookies_path]

    if is_live:
        fmt = LIVE_FORMAT
    elif is_youtube:
        fmt = YOUTUBE_FORMAT
    else:
        fmt = config.extractor.format
    args += [
        "-f",
        fmt,
        "--no-playlist",
        "--no-check-certificates",
        "--no-warnings",
        "--retries",
        "3",
        "--fragment-retries",
        "3",
    ]

    if is_live:
        # Live streams cannot be trimmed, so no time range is requested
        args.append("--no-live-from-start")
    else:
        if is_youtube:
            args += ["--extractor-args", "youtube:player_client=web_creator"]
        if seek_ms > 0:
            args += ["--download-sections", f"*{seek_ms // 1000}-"]

    if config.sponsorblock.enabled and is_youtube:
        args += ["--sponsorblock-remove", ",".join(config.sponsorblock.categories)]

    args += config.extractor.additional_args
    args += ["-o", "-", extractor_url(track, video_id)]
    return args


@dataclass
class PipelineMetrics:
    """Timing and byte counters of a pipeline, for observability only."""

    metadata_ms: int = 0
    spawn_ms: int = 0
    first_byte_ms: int = 0
    total_ms: int = 0
    bytes_received: int = 0
    """Bytes read from the extractor."""
    bytes_sent: int = 0
    """Bytes produced by the transcoder."""


class PipelineStream:
    """Async iterator over the encoded output of a pipeline."""

    def __init__(self, pipeline: Pipeline, chunks: asyncio.Queue[bytes | None]) -> None:
        """Initialize the stream handle; use Pipeline.create() instead."""
        self._pipeline = pipeline
        self._chunks = chunks
        self._eof = False

    @property
    def pipeline(self) -> Pipeline:
        """The pipeline producing this stream."""
        return self._pipeline

    @property
    def track(self) -> Track:
        """The track this stream plays."""
        return self._pipeline.track

    @property
    def at_eof(self) -> bool:
        """True once the end of the stream was consumed."""
        return self._eof

    async def read(self) -> bytes:
        """Return the next chunk, or b'' at the end of the stream."""
        if self._eof:
            return b""
        chunk = await self._chunks.get()
        if chunk is None:
            self._eof = True
            return b""
        return chunk

    def __aiter__(self) -> PipelineStream:
        return self

    async def __anext__(self) -> bytes:
        chunk = await self.read()
        if not chunk:
            raise StopAsyncIteration
        return chunk


class Pipeline:
    """
    Extractor and transcoder processes for one track.

    A pipeline is owned by exactly one player slot (current or prefetch) and is never
    shared. It can be created once and destroyed any number of times.
    """

    def __init__(
        self,
        track: Track,
        filters: FilterConfig | None,
        config: StreamifyConfig,
        *,
        resolver: Resolver | None = None,
    ) -> None:
        """
        Initialize a pipeline; no process is started until create() is called.

        Args:
            track: Track to play.
            filters: Filter configuration rendered into the transcoder arguments.
            config: Executable paths, extractor and output settings.
            resolver: Coroutine function returning an extractable id for tracks whose
                source needs cross-source resolution.
        """
        self.track = track
        self.filters = filters or FilterConfig()
        self._config = config
        self._resolver = resolver
        self._state = PipelineState.IDLE
        self.shutdown_reason: ShutdownReason | None = None
        self.metrics = PipelineMetrics()
        self.seek_ms = 0

        self._extractor: asyncio.subprocess.Process | None = None
        self._transcoder: asyncio.subprocess.Process | None = None
        self._extractor_stderr: deque[str] = deque(maxlen=STDERR_TAIL_LINES)
        self._transcoder_stderr: deque[str] = deque(maxlen=STDERR_TAIL_LINES)
        self._chunks: asyncio.Queue[bytes | None] = asyncio.Queue(maxsize=STREAM_BUFFER_CHUNKS)
        self._tasks: list[asyncio.Task[None]] = []
        self._create_task: asyncio.Task[PipelineStream | None] | None = None
        self._ready: asyncio.Future[None] | None = None
        self._reaper: asyncio.Task[None] | None = None
        self._stream: PipelineStream | None = None
        self._started_at: float | None = None

    @property
    def state(self) -> PipelineState:
        """Current lifecycle state."""
        return self._state

    @property
    def destroyed(self) -> bool:
        """True once destroy() was called."""
        return self._state is PipelineState.DESTROYED

    @property
    def stream(self) -> PipelineStream | None:
        """The stream handle once ready."""
        return self._stream

    @property
    def ready_timeout(self) -> float:
        """Readiness timeout in seconds; longer for live and indeterminate tracks."""
        return LIVE_READY_TIMEOUT_S if self.track.is_indeterminate else READY_TIMEOUT_S

    @property
    def extractor_stderr(self) -> str:
        """Tail of the extractor diagnostics."""
        return "\n".join(self._extractor_stderr)

    @property
    def transcoder_stderr(self) -> str:
        """Tail of the transcoder diagnostics."""
        return "\n".join(self._transcoder_stderr)

    async def create(self, seek_ms: int = 0) -> PipelineStream | None:
        """
        Start the processes and return the stream once the transcoder produced data.

        Calling create() again returns the cached stream, or joins the creation that is
        in flight. Returns None if the pipeline is destroyed while creating.

        Raises:
            PipelineDestroyedError: If the pipeline was already destroyed.
            InvalidTrackError: If the track has no usable id.
            ResolutionError: If cross-source resolution failed.
            ExtractionError: If the extractor exited before any output.
            TranscodeError: If the transcoder exited before any output.
        """
        if self._state is PipelineState.DESTROYED:
            raise PipelineDestroyedError("Pipeline already destroyed")
        if self._stream is not None:
            return self._stream
        if self._create_task is None:
            self._create_task = asyncio.get_running_loop().create_task(self._create(seek_ms))
        return await asyncio.shield(self._create_task)

    async def _create(self, seek_ms: int) -> PipelineStream | None:
        loop = asyncio.get_running_loop()
        self._state = PipelineState.STARTING
        self.seek_ms = seek_ms
        self._started_at = start = loop.time()
        self._ready = loop.create_future()

        try:
            video_id = await self._resolve_id()
            self.metrics.metadata_ms = int((loop.time() - start) * 1000)
            if self.destroyed:
                return None

            logger.info("Creating stream for %s (%s)", video_id, self.track.source)
            if self.filters:
                logger.debug("Filter chain: %s", self.filters.describe())

            spawn_start = loop.time()
            await self._spawn(video_id, seek_ms)
            self.metrics.spawn_ms = int((loop.time() - spawn_start) * 1000)
            if self.destroyed:
                self._kill_processes()
                return None

            try:
                await self._wait_ready()
            except ReadinessTimeout as err:
                logger.warning("%s, proceeding anyway", err)
                self._set_ready()
        except (InvalidTrackError, ResolutionError, ExtractionError, TranscodeError) as err:
            if self.destroyed:
                return None
            self._fail(
                ShutdownReason.TRANSCODER_FAILED
                if isinstance(err, TranscodeError)
                else ShutdownReason.EXTRACTOR_FAILED
            )
            raise

        if self.destroyed:
            return None

        self._state = PipelineState.READY
        self._stream = PipelineStream(self, self._chunks)
        self.metrics.total_ms = int((loop.time() - start) * 1000)
        logger.info(
            "Ready %dms | metadata: %dms, spawn: %dms, first byte: %dms | buffered: %d bytes",
            self.metrics.total_ms,
            self.metrics.metadata_ms,
            self.metrics.spawn_ms,
            self.metrics.first_byte_ms,
            self.metrics.bytes_sent,
        )
        return self._stream

    async def _resolve_id(self) -> str:
        track = self.track
        video_id = track.playable_id
        if track.needs_resolution and track.local_path is None:
            if self._resolver is None:
                raise ResolutionError(f"No resolver available for {track.source} track {track.id}")
            logger.info("Resolving %s track: %s", track.source, track.title)
            try:
                video_id = await self._resolver(track)
            except ResolutionError:
                raise
            except Exception as err:
                raise ResolutionError(
                    f"Failed to resolve {track.source} track {track.id}: {err}"
                ) from err
            if not video_id:
                raise ResolutionError(f"No match found for {track.source} track {track.id}")
            track.attach_resolved_id(video_id)

        if track.local_path is not None:
            return track.local_path
        if not video_id or video_id == "undefined":
            raise InvalidTrackError(
                f"Invalid track ID: {video_id} (source: {track.source}, title: {track.title})"
            )
        return video_id

    async def _spawn(self, video_id: str, seek_ms: int) -> None:
        config = self._config
        audio = config.audio
        loop = asyncio.get_running_loop()

        if self.track.local_path is not None:
            transcoder_args = build_transcoder_args(
                self.filters,
                output_format=audio.format,
                bitrate=audio.bitrate,
                input_path=self.track.local_path,
                seek_ms=seek_ms,
            )
        else:
            extractor_args = build_extractor_args(self.track, video_id, config, seek_ms)
            if seek_ms > 0 and not self.track.is_indeterminate:
                logger.info("Seeking to %ds", seek_ms // 1000)
            try:
                self._extractor = await asyncio.create_subprocess_exec(
                    config.ytdlp_path or "yt-dlp",
                    *extractor_args,
                    stdin=asyncio.subprocess.DEVNULL,
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.PIPE,
                )
            except OSError as err:
                raise ExtractionError(
                    f"Failed to start extractor: {err}", returncode=None
                ) from err
            transcoder_args = build_transcoder_args(
                self.filters, output_format=audio.format, bitrate=audio.bitrate
            )

        try:
            self._transcoder = await asyncio.create_subprocess_exec(
                config.ffmpeg_path or "ffmpeg",
                *transcoder_args,
                stdin=asyncio.subprocess.PIPE
                if self._extractor is not None
                else asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as err:
            raise TranscodeError(f"Failed to start transcoder: {err}", returncode=None) from err

        if self._extractor is not None:
            self._tasks.append(loop.create_task(self._pump()))
            self._tasks.append(
                loop.create_task(
                    self._supervise(self._extractor, self._extractor_stderr, extractor=True)
                )
            )
        self._tasks.append(loop.create_task(self._read_output()))
        self._tasks.append(
            loop.create_task(
                self._supervise(self._transcoder, self._transcoder_stderr, extractor=False)
            )
        )

    async def _wait_ready(self) -> None:
        assert self._ready is not None
        timeout = self.ready_timeout
        try:
            await asyncio.wait_for(asyncio.shield(self._ready), timeout)
        except TimeoutError as err:
            raise ReadinessTimeout(
                f"Timeout waiting for data after {timeout:.0f}s "
                f"(received: {self.metrics.bytes_sent}, live: {self.track.is_indeterminate})"
            ) from err

    def _set_ready(self, error: ProcessError | None = None) -> None:
        if self._ready is None or self._ready.done():
            return
        if error is None:
            self._ready.set_result(None)
        else:
            self._ready.set_exception(error)

    async def _pump(self) -> None:
        """Copy extractor output into the transcoder, then half-close its input."""
        assert self._extractor is not None and self._extractor.stdout is not None
        assert self._transcoder is not None and self._transcoder.stdin is not None
        source = self._extractor.stdout
        sink = self._transcoder.stdin
        try:
            while chunk := await source.read(READ_CHUNK_SIZE):
                self.metrics.bytes_received += len(chunk)
                sink.write(chunk)
                await sink.drain()
        except (BrokenPipeError, ConnectionResetError):
            if not self.destroyed:
                logger.debug("Transcoder closed its input early")
        finally:
            with suppress(BrokenPipeError, ConnectionResetError):
                sink.close()

    async def _read_output(self) -> None:
        assert self._transcoder is not None and self._transcoder.stdout is not None
        loop = asyncio.get_running_loop()
        output = self._transcoder.stdout
        while chunk := await output.read(READ_CHUNK_SIZE):
            if not self.metrics.bytes_sent and self._started_at is not None:
                self.metrics.first_byte_ms = int(
                    (loop.time() - self._started_at) * 1000
                    - self.metrics.metadata_ms
                    - self.metrics.spawn_ms
                )
                self._set_ready()
            self.metrics.bytes_sent += len(chunk)
            await self._chunks.put(chunk)
        await self._chunks.put(None)

    async def _supervise(
        self,
        process: asyncio.subprocess.Process,
        tail: deque[str],
        *,
        extractor: bool,
    ) -> None:
        """Collect the diagnostics of a process and classify its exit."""
        name = "yt-dlp" if extractor else "ffmpeg"
        assert process.stderr is not None
        # Progress output uses carriage returns, so lines are split by hand
        pending = b""
        while chunk := await process.stderr.read(READ_CHUNK_SIZE):
            *lines, pending = (pending + chunk).replace(b"\r", b"\n").split(b"\n")
            pending = pending[-READ_CHUNK_SIZE:]
            for raw_line in lines:
                self._log_stderr(name, tail, raw_line)
        self._log_stderr(name, tail, pending)
        returncode = await process.wait()
        if self.destroyed:
            return

        if extractor:
            if returncode != 0:
                logger.error("%s failed (code: %s) for %s", name, returncode, self.track.id)
                self.shutdown_reason = ShutdownReason.EXTRACTOR_FAILED
                self._set_ready(
                    ExtractionError(
                        f"{name} failed with code {returncode}. "
                        f"stderr: {self.extractor_stderr[-200:] or 'none'}",
                        returncode=returncode,
                        stderr=self.extractor_stderr,
                    )
                )
            return

        if self._ready is not None and not self._ready.done():
            if (
                self._extractor is not None
                and self._extractor.returncode not in (None, 0)
            ):
                error: ProcessError = ExtractionError(
                    f"yt-dlp failed with code {self._extractor.returncode}. "
                    f"stderr: {self.extractor_stderr[-200:] or 'none'}",
                    returncode=self._extractor.returncode,
                    stderr=self.extractor_stderr,
                )
            else:
                error = TranscodeError(
                    f"{name} closed before producing data (code: {returncode}). "
                    f"ffmpeg stderr: {self.transcoder_stderr[-200:] or 'none'} | "
                    f"yt-dlp stderr: {self.extractor_stderr[-200:] or 'none'}",
                    returncode=returncode,
                    stderr=self.transcoder_stderr,
                )
            self._set_ready(error)
        if returncode != 0:
            self.shutdown_reason = self.shutdown_reason or ShutdownReason.TRANSCODER_FAILED
        else:
            self.shutdown_reason = self.shutdown_reason or ShutdownReason.COMPLETED

    def _log_stderr(self, name: str, tail: deque[str], raw_line: bytes) -> None:
        line = raw_line.decode(errors="replace").strip()
        if not line or self.destroyed:
            return
        tail.append(line)
        if line.startswith("ERROR:") and "Retrying" not in line:
            logger.error("[%s] %s", name, line)
        else:
            logger.debug("[%s] %s", name, line)

    def _kill_processes(self) -> None:
        for process in (self._extractor, self._transcoder):
            if process is None or process.returncode is not None:
                continue
            with suppress(ProcessLookupError):
                process.kill()
        if self._transcoder is not None and self._transcoder.stdin is not None:
            with suppress(BrokenPipeError, ConnectionResetError):
                self._transcoder.stdin.close()

    def _fail(self, reason: ShutdownReason) -> None:
        """Tear down after a failed creation, keeping the failure classification."""
        if self.shutdown_reason is None:
            self.shutdown_reason = reason
        self.destroy()

    def destroy(self) -> None:
        """
        Kill both processes and end the stream.

        Safe to call any number of times, including while create() is in flight.
        """
        if self._state is PipelineState.DESTROYED:
            return
        self._state = PipelineState.DESTROYED
        if self.shutdown_reason is None:
            self.shutdown_reason = ShutdownReason.REQUESTED

        elapsed = 0.0
        with suppress(RuntimeError):
            loop = asyncio.get_running_loop()
            if self._started_at is not None:
                elapsed = loop.time() - self._started_at
        logger.info(
            "Destroying stream for %s | duration: %dms | data out: %.2f MB",
            self.track.id,
            elapsed * 1000,
            self.metrics.bytes_sent / 1024 / 1024,
        )

        for task in self._tasks:
            task.cancel()
        self._kill_processes()
        self._set_ready()

        # Wake consumers blocked on the stream
        while not self._chunks.empty():
            self._chunks.get_nowait()
        self._chunks.put_nowait(None)

        processes = [p for p in (self._extractor, self._transcoder) if p is not None]
        if processes:
            with suppress(RuntimeError):
                self._reaper = asyncio.get_running_loop().create_task(self._reap(processes))

    async def _reap(self, processes: list[asyncio.subprocess.Process]) -> None:
        for process in processes:
            with suppress(ProcessLookupError):
                await process.wait()

    async def aclose(self) -> None:
        """Destroy the pipeline and wait until both processes exited."""
        self.destroy()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        if self._reaper is not None:
            await self._reaper
