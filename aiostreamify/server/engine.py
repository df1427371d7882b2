"""Playback engine: drains the exposed pipeline stream into the attached sinks."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from contextlib import suppress

from .events import EngineErrorEvent, EngineEvent, EngineIdleEvent
from .pipeline import PipelineStream

logger = logging.getLogger(__name__)

Sink = Callable[[bytes], Awaitable[None]]


class PlaybackEngine:
    """
    Consumes one PipelineStream at a time and forwards its chunks to sinks.

    Consumption waits while the engine is paused or no sink is attached, which applies
    backpressure to the pipeline processes. Exactly one of EngineIdleEvent or
    EngineErrorEvent is emitted for every stream that was handed to play().
    """

    def __init__(self) -> None:
        """Initialize an idle engine."""
        self._stream: PipelineStream | None = None
        self._task: asyncio.Task[None] | None = None
        self._sinks: list[Sink] = []
        self._paused = False
        self._writable = asyncio.Event()
        self._closed = asyncio.Event()
        self._event_cbs: list[Callable[[PlaybackEngine, EngineEvent], None]] = []

    @property
    def stream(self) -> PipelineStream | None:
        """The stream being played."""
        return self._stream

    @property
    def playing(self) -> bool:
        """True while a stream is being played and not paused."""
        return self._stream is not None and not self._paused

    @property
    def paused(self) -> bool:
        """True while paused."""
        return self._paused

    @property
    def closed(self) -> bool:
        """True once close() was called."""
        return self._closed.is_set()

    @property
    def sink_count(self) -> int:
        """Number of attached sinks."""
        return len(self._sinks)

    def _update_writable(self) -> None:
        if self._sinks and not self._paused:
            self._writable.set()
        else:
            self._writable.clear()

    def add_sink(self, sink: Sink) -> Callable[[], None]:
        """
        Attach a sink receiving every chunk played from now on.

        A sink raising an exception is detached. Returns a function to detach it.
        """
        self._sinks.append(sink)
        self._update_writable()

        def _remove() -> None:
            with suppress(ValueError):
                self._sinks.remove(sink)
            self._update_writable()

        return _remove

    def play(self, stream: PipelineStream) -> None:
        """Start playing stream, replacing the stream being played."""
        if self.closed:
            logger.debug("Ignoring play() on a closed engine")
            return
        if self._task is not None:
            self._task.cancel()
        self._stream = stream
        self._paused = False
        self._update_writable()
        self._task = asyncio.get_running_loop().create_task(self._consume(stream))

    def pause(self) -> bool:
        """Stop forwarding chunks until unpause(); returns False if nothing is playing."""
        if self._stream is None or self._paused:
            return False
        self._paused = True
        self._update_writable()
        return True

    def unpause(self) -> bool:
        """Resume forwarding chunks; returns False if not paused."""
        if not self._paused:
            return False
        self._paused = False
        self._update_writable()
        return True

    def stop(self, *, force: bool = False) -> bool:
        """
        Stop playing the current stream; returns False if nothing was playing.

        The idle event for the stopped stream follows asynchronously. With force the
        paused flag is cleared as well.
        """
        if force:
            self._paused = False
            self._update_writable()
        if self._task is None:
            return False
        self._task.cancel()
        self._task = None
        self._stream = None
        return True

    async def close(self) -> None:
        """Stop playing, detach all sinks and release waiters of wait_closed()."""
        task = self._task
        self.stop(force=True)
        if task is not None:
            with suppress(asyncio.CancelledError):
                await task
        self._sinks.clear()
        self._update_writable()
        self._closed.set()

    async def wait_closed(self) -> None:
        """Wait until close() was called."""
        await self._closed.wait()

    async def _consume(self, stream: PipelineStream) -> None:
        try:
            while True:
                await self._writable.wait()
                chunk = await stream.read()
                if not chunk:
                    break
                await self._deliver(chunk)
        except asyncio.CancelledError:
            self._finish(stream, None)
            raise
        except Exception as err:
            logger.warning("Playback of %s failed: %s", stream.track.id, err)
            self._finish(stream, err)
            return
        self._finish(stream, None)

    async def _deliver(self, chunk: bytes) -> None:
        for sink in list(self._sinks):
            try:
                await sink(chunk)
            except (ConnectionError, OSError) as err:
                logger.debug("Detaching sink after write failure: %s", err)
                with suppress(ValueError):
                    self._sinks.remove(sink)
                self._update_writable()

    def _finish(self, stream: PipelineStream, error: Exception | None) -> None:
        if self._stream is stream:
            self._stream = None
            self._task = None
            self._paused = False
            self._update_writable()
        if error is None:
            self._signal_event(EngineIdleEvent(stream))
        else:
            self._signal_event(EngineErrorEvent(stream, error))

    def add_event_listener(
        self, callback: Callable[[PlaybackEngine, EngineEvent], None]
    ) -> Callable[[], None]:
        """
        Register a callback for idle and error events of played streams.

        Returns a function to remove the listener.
        """
        self._event_cbs.append(callback)

        def _remove() -> None:
            with suppress(ValueError):
                self._event_cbs.remove(callback)

        return _remove

    def _signal_event(self, event: EngineEvent) -> None:
        for cb in list(self._event_cbs):
            try:
                cb(self, event)
            except Exception:
                logger.exception("Error in event listener")
