"""Per-session player: queue, pipelines, playback state machine and presence timers."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Coroutine, Iterable, Mapping, Sequence
from contextlib import suppress
from dataclasses import replace
from typing import TYPE_CHECKING, Any

from aiostreamify.errors import StreamifyError
from aiostreamify.models.filters import EffectPreset, FilterConfig
from aiostreamify.models.snapshot import PlayerSnapshot
from aiostreamify.models.track import Track
from aiostreamify.models.types import PlayerState, RepeatMode, TrackEndReason
from aiostreamify.util import clamp, to_float

from .events import (
    AutoPauseEvent,
    AutoplayAddEvent,
    AutoplayStartEvent,
    AutoResumeEvent,
    ChannelEmptyEvent,
    ChannelMoveEvent,
    EngineErrorEvent,
    EngineEvent,
    PlayerDestroyedEvent,
    PlayerEvent,
    QueueEndEvent,
    TrackEndEvent,
    TrackErrorEvent,
    TrackStartEvent,
    UserJoinEvent,
    UserLeaveEvent,
)
from .filters import EQ_BANDS, EQ_PRESETS, EFFECT_PRESETS, apply_effect_preset, combine_effect_presets
from .queue import PlaybackQueue

if TYPE_CHECKING:
    from .engine import PlaybackEngine
    from .manager import SessionManager
    from .pipeline import Pipeline, PipelineStream

logger = logging.getLogger(__name__)

# Minimum interval between two channel status updates
STATUS_INTERVAL_S = 300.0
MAX_VOLUME = 200

_TRANSITIONS: dict[PlayerState, frozenset[PlayerState]] = {
    PlayerState.IDLE: frozenset({PlayerState.LOADING, PlayerState.DESTROYED}),
    PlayerState.LOADING: frozenset(
        {PlayerState.LOADING, PlayerState.PLAYING, PlayerState.IDLE, PlayerState.DESTROYED}
    ),
    PlayerState.PLAYING: frozenset(
        {PlayerState.PAUSED, PlayerState.LOADING, PlayerState.IDLE, PlayerState.DESTROYED}
    ),
    PlayerState.PAUSED: frozenset(
        {PlayerState.PLAYING, PlayerState.LOADING, PlayerState.IDLE, PlayerState.DESTROYED}
    ),
    PlayerState.DESTROYED: frozenset(),
}


class Player:
    """
    Playback state machine of a single session.

    A player owns one PlaybackQueue, at most one exposed pipeline, at most one pipeline
    under construction and at most one prefetched pipeline. All methods must be called
    from the manager's event loop. Once destroyed, every operation is a no-op.
    """

    def __init__(
        self,
        manager: SessionManager,
        session_id: str,
        channel_id: str | None = None,
        *,
        text_channel_id: str | None = None,
        volume: int | None = None,
    ) -> None:
        """
        Initialize a player; use SessionManager.create() instead.

        Args:
            manager: Owning manager; supplies configuration, pipelines and the engine.
            session_id: Registry key of this player.
            channel_id: Channel the audio is delivered to.
            text_channel_id: Channel used by the application for notifications.
            volume: Initial volume in percent, defaults to the configured volume.
        """
        self._manager = manager
        self._loop = manager.loop
        self._config = manager.config
        self.session_id = session_id
        self.channel_id = channel_id
        self.text_channel_id = text_channel_id
        self._logger = logger.getChild(session_id)

        self.queue = PlaybackQueue(self._config.max_previous_tracks)
        self.auto_leave = replace(self._config.auto_leave)
        self.auto_pause = replace(self._config.auto_pause)
        self.autoplay = replace(self._config.autoplay)

        self._engine: PlaybackEngine = manager.create_engine()
        self._remove_engine_listener = self._engine.add_event_listener(self._on_engine_event)
        self._engine_close_task: asyncio.Task[None] | None = None

        self._state = PlayerState.IDLE
        self._volume = int(clamp(volume or self._config.default_volume, 0, MAX_VOLUME))
        self._filters = FilterConfig()
        self._effect_presets: list[EffectPreset] = []

        self._pipeline: Pipeline | None = None
        self._stream: PipelineStream | None = None
        self._loading_pipeline: Pipeline | None = None
        self._prefetch: Pipeline | None = None
        self._started_track: Track | None = None
        self._generation = 0

        self._position_ms = 0
        self._position_started: float | None = None

        self._manual_skip = 0
        self._changing_stream = 0
        self._auto_paused = False

        self._empty_timer: asyncio.TimerHandle | None = None
        self._inactivity_timer: asyncio.TimerHandle | None = None
        self._last_status_at: float | None = None

        self._tasks: set[asyncio.Task[Any]] = set()
        self._event_cbs: list[Callable[[Player, PlayerEvent], None]] = []

    # Properties

    @property
    def state(self) -> PlayerState:
        """Current playback state."""
        return self._state

    @property
    def destroyed(self) -> bool:
        """True once destroy() was called."""
        return self._state is PlayerState.DESTROYED

    @property
    def playing(self) -> bool:
        """True while audio is playing (not paused, not loading)."""
        return self._state is PlayerState.PLAYING

    @property
    def paused(self) -> bool:
        """True while paused."""
        return self._state is PlayerState.PAUSED

    @property
    def current(self) -> Track | None:
        """The current track of the queue."""
        return self.queue.current

    @property
    def volume(self) -> int:
        """Volume in percent (0-200)."""
        return self._volume

    @property
    def filters(self) -> FilterConfig:
        """Active filter configuration."""
        return self._filters

    @property
    def engine(self) -> PlaybackEngine:
        """The playback engine consuming this player's streams."""
        return self._engine

    @property
    def stream(self) -> PipelineStream | None:
        """The stream currently exposed to the engine."""
        return self._stream

    @property
    def auto_paused(self) -> bool:
        """True if the current pause was triggered by presence, not by the user."""
        return self._auto_paused

    @property
    def manual_skip(self) -> bool:
        """True while a skip or previous operation is in progress."""
        return self._manual_skip > 0

    @property
    def changing_stream(self) -> bool:
        """True while the current track's pipeline is being rebuilt."""
        return self._changing_stream > 0

    @property
    def position(self) -> int:
        """
        Playback position in milliseconds.

        Running while playing and frozen while paused. While loading it reports the
        offset the new pipeline starts at (the requested start offset, or the frozen
        position when resuming); when idle it is 0.
        """
        if self._state is PlayerState.PLAYING and self._position_started is not None:
            elapsed = self._loop.time() - self._position_started
            return self._position_ms + int(elapsed * 1000)
        if self._state in (PlayerState.PAUSED, PlayerState.LOADING):
            return self._position_ms
        return 0

    # State machine helpers

    def _can_transition(self, state: PlayerState) -> bool:
        return state is self._state or state in _TRANSITIONS[self._state]

    def _set_state(self, state: PlayerState) -> bool:
        if state is self._state:
            return True
        if state not in _TRANSITIONS[self._state]:
            self._logger.warning("Illegal state transition %s -> %s", self._state, state)
            return False
        self._logger.debug("State %s -> %s", self._state.value, state.value)
        self._state = state
        return True

    def _freeze_position(self, position_ms: int | None = None) -> None:
        self._position_ms = self.position if position_ms is None else position_ms
        self._position_started = None

    def _start_clock(self, position_ms: int) -> None:
        self._position_ms = position_ms
        self._position_started = self._loop.time()

    def _effective_filters(self) -> FilterConfig:
        """Filters handed to a new pipeline, with the player volume folded in."""
        preset_volume = to_float(self._filters.get("volume"))
        volume = self._volume if preset_volume is None else self._volume * preset_volume / 100
        return self._filters.with_filter("volume", volume)

    def _create_task(self, coro: Coroutine[Any, Any, Any]) -> asyncio.Task[Any]:
        task = self._loop.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._on_task_done)
        return task

    def _on_task_done(self, task: asyncio.Task[Any]) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and (exc := task.exception()) is not None:
            self._logger.error("Background task failed", exc_info=exc)

    # Pipeline ownership

    def _abort_loading(self) -> None:
        """Abort the pipeline under construction, if any."""
        pipeline = self._loading_pipeline
        self._loading_pipeline = None
        if pipeline is not None and pipeline is not self._pipeline:
            pipeline.destroy()

    def _release_current(self) -> None:
        """Stop the engine and destroy the exposed pipeline."""
        pipeline = self._pipeline
        self._pipeline = None
        self._stream = None
        self._engine.stop()
        if pipeline is not None:
            pipeline.destroy()

    def _expose(self, pipeline: Pipeline, stream: PipelineStream) -> None:
        """Hand a ready stream to the engine, then destroy the previous pipeline."""
        previous = self._pipeline
        self._pipeline = pipeline
        self._stream = stream
        self._engine.play(stream)
        if previous is not None and previous is not pipeline:
            previous.destroy()

    def _clear_prefetch(self) -> None:
        pipeline = self._prefetch
        self._prefetch = None
        if pipeline is not None:
            pipeline.destroy()

    def _take_prefetch(self, track: Track) -> Pipeline | None:
        pipeline = self._prefetch
        if pipeline is not None and not pipeline.destroyed and pipeline.track.id == track.id:
            self._prefetch = None
            self._logger.info("Using prefetched stream for %s", track.id)
            return pipeline
        self._clear_prefetch()
        return None

    async def _build(
        self, track: Track, start_ms: int, *, allow_prefetch: bool
    ) -> tuple[Pipeline, PipelineStream] | None:
        """
        Build (or adopt) a pipeline for track and wait until it is ready.

        Starting a build supersedes every build still in flight. Returns None if this
        build was superseded or the player was destroyed meanwhile; errors of a
        superseded build are dropped.
        """
        self._abort_loading()
        self._generation += 1
        generation = self._generation

        pipeline = self._take_prefetch(track) if allow_prefetch and start_ms == 0 else None
        if pipeline is None:
            pipeline = self._manager.create_pipeline(track, self._effective_filters())
        self._loading_pipeline = pipeline
        try:
            stream = await pipeline.create(start_ms)
        except StreamifyError:
            pipeline.destroy()
            if self.destroyed or generation != self._generation:
                return None
            raise
        finally:
            if self._loading_pipeline is pipeline:
                self._loading_pipeline = None

        if stream is None or self.destroyed or generation != self._generation:
            pipeline.destroy()
            return None
        return pipeline, stream

    # Playback flow

    def _end_track(self, reason: TrackEndReason) -> None:
        track = self._started_track
        self._started_track = None
        if track is not None:
            self._signal_event(TrackEndEvent(track, reason))

    async def _play_track(self, track: Track, start_ms: int = 0) -> Track | None:
        """
        Load track and expose it once ready.

        The previously exposed pipeline keeps playing until the new one is ready.
        On failure a trackError is emitted and the queue advances asynchronously.
        """
        if self.destroyed:
            return None
        self._cancel_inactivity_timer()
        self._logger.info("Playing: %s (%s)", track.title, track.id)
        self._set_state(PlayerState.LOADING)
        self._freeze_position(start_ms)

        try:
            built = await self._build(track, start_ms, allow_prefetch=True)
        except StreamifyError as err:
            self._logger.error("Failed to play track %s: %s", track.id, err)
            self._release_current()
            self._end_track(TrackEndReason.SKIPPED)
            self._freeze_position(0)
            self._set_state(PlayerState.IDLE)
            self._signal_event(TrackErrorEvent(track, err))
            self._schedule_advance(track)
            return None
        if built is None:
            return None

        pipeline, stream = built
        if self._started_track is not track:
            self._end_track(TrackEndReason.SKIPPED)
        self._expose(pipeline, stream)
        self._start_clock(start_ms)
        self._set_state(PlayerState.PLAYING)
        self._started_track = track
        self._signal_event(TrackStartEvent(track))
        self.update_status()
        self._schedule_prefetch()
        return track

    def _schedule_advance(self, failed: Track) -> None:
        """Advance to the next track from a fresh task instead of recursing."""
        generation = self._generation

        async def _advance() -> None:
            if self.destroyed or generation != self._generation:
                return
            if self.queue.repeat_mode is RepeatMode.TRACK and self.queue.current is failed:
                # Replaying a track that cannot be built would loop forever
                self.queue.current = None
            next_track = self.queue.shift()
            if next_track is None:
                self._end_queue()
                return
            await self._play_track(next_track)

        self._create_task(_advance())

    def _end_queue(self) -> None:
        self._logger.info("Queue ended")
        self._signal_event(QueueEndEvent())
        self._reset_inactivity_timer()

    def _on_engine_event(self, _engine: PlaybackEngine, event: EngineEvent) -> None:
        if event.stream is not self._stream or self.destroyed:
            return
        if isinstance(event, EngineErrorEvent):
            self._handle_stream_error(event.error)
            return
        if self._manual_skip or self._changing_stream or self._state is not PlayerState.PLAYING:
            return
        self._handle_track_finished()

    def _handle_track_finished(self) -> None:
        track = self.queue.current
        self._release_current()
        self._freeze_position(0)
        self._set_state(PlayerState.IDLE)
        self._end_track(TrackEndReason.FINISHED)

        next_track = self.queue.shift()
        if next_track is not None:
            self._create_task(self._play_track(next_track))
        elif self.autoplay.enabled and track is not None:
            self._create_task(self._autoplay(track))
        else:
            self._end_queue()

    def _handle_stream_error(self, error: Exception) -> None:
        track = self.queue.current
        self._logger.error("Audio player error: %s", error)
        self._release_current()
        self._freeze_position(0)
        self._started_track = None
        self._set_state(PlayerState.IDLE)
        if track is not None:
            self._signal_event(TrackErrorEvent(track, error))
            self._schedule_advance(track)
        else:
            self._end_queue()

    async def _autoplay(self, last_track: Track) -> None:
        self._logger.info("Autoplay: fetching related tracks for %s", last_track.title)
        self._signal_event(AutoplayStartEvent(last_track))
        tracks = await self._manager.get_related(last_track, self.autoplay.max_tracks)
        if self.destroyed or self.queue.current is not None or self._state is not PlayerState.IDLE:
            return
        if not tracks:
            self._logger.info("Autoplay: no related tracks found")
            self._end_queue()
            return

        first, *rest = tracks
        for track in tracks:
            track.is_autoplay = True
        self.queue.add_many(rest)
        self.queue.current = first
        self._logger.info("Autoplay: playing %s", first.title)
        self._signal_event(AutoplayAddEvent(list(tracks)))
        await self._play_track(first)

    def _schedule_prefetch(self) -> None:
        if self.destroyed or not self.queue.tracks:
            return
        next_track = self.queue.tracks[0]
        prefetch = self._prefetch
        if prefetch is not None and not prefetch.destroyed and prefetch.track.id == next_track.id:
            return
        self._clear_prefetch()
        self._logger.info("Prefetching: %s (%s)", next_track.title, next_track.id)
        pipeline = self._manager.create_pipeline(next_track, self._effective_filters())
        self._prefetch = pipeline
        self._create_task(self._run_prefetch(pipeline))

    async def _run_prefetch(self, pipeline: Pipeline) -> None:
        try:
            stream = await pipeline.create()
        except StreamifyError as err:
            self._logger.debug("Prefetch failed: %s", err)
            if self._prefetch is pipeline:
                self._prefetch = None
            pipeline.destroy()
            return
        if stream is not None:
            self._logger.info("Prefetch ready: %s", pipeline.track.id)

    async def _rebuild(self, position_ms: int, *, seeking: bool = False) -> bool:
        """
        Rebuild the current track's pipeline at position with the active filters.

        The old pipeline keeps playing until the new one is ready, so audio played
        during the build is heard again after the swap. A pause arriving mid-build
        postpones the rebuild to resume(); a seek keeps its target in that case.
        """
        track = self.queue.current
        if track is None or self.destroyed:
            return False
        if self._state is PlayerState.PAUSED:
            # Rebuilt on resume
            self._freeze_position(position_ms)
            self._release_current()
            return True
        if self._state is PlayerState.LOADING:
            return await self._play_track(track, position_ms) is not None
        if self._state is not PlayerState.PLAYING:
            return False

        self._changing_stream += 1
        try:
            built = await self._build(track, position_ms, allow_prefetch=False)
        except StreamifyError as err:
            self._logger.error("Failed to rebuild stream for %s: %s", track.id, err)
            self._release_current()
            self._freeze_position(0)
            self._started_track = None
            self._set_state(PlayerState.IDLE)
            self._signal_event(TrackErrorEvent(track, err))
            self._schedule_advance(track)
            return False
        finally:
            self._changing_stream -= 1
        if built is not None and self._state is PlayerState.PAUSED:
            built[0].destroy()
            self._release_current()
            if seeking:
                self._freeze_position(position_ms)
            return True
        if built is None or self._state is not PlayerState.PLAYING:
            if built is not None:
                built[0].destroy()
            return False

        self._expose(*built)
        self._start_clock(position_ms)
        self._schedule_prefetch()
        return True

    async def _apply_filters(self) -> bool:
        self._clear_prefetch()
        if self.destroyed:
            return False
        if self.queue.current is None or self._state is PlayerState.IDLE:
            return True
        if self._state is PlayerState.LOADING:
            await self._play_track(self.queue.current, self._position_ms)
            return True
        return await self._rebuild(self.position)

    # Public controls

    async def play(
        self,
        track: Track,
        *,
        replace: bool = False,
        start_ms: int = 0,
        volume: int | None = None,
        filters: FilterConfig | Mapping[str, Any] | None = None,
    ) -> Track | None:
        """
        Play a track.

        If a track is already current and replace is not set, the new track is put in
        front of the queue and the current one is skipped. Returns the track that
        started playing, or None if nothing started.
        """
        if self.destroyed:
            return None
        if volume is not None:
            self._volume = int(clamp(volume, 0, MAX_VOLUME))
        if filters is not None:
            self._filters = filters if isinstance(filters, FilterConfig) else FilterConfig(dict(filters))
        if volume is not None or filters is not None:
            self._clear_prefetch()

        if self.queue.current is not None and not replace:
            self.queue.add(track, 0)
            return await self.skip()

        self.queue.current = track
        self._auto_paused = False
        return await self._play_track(track, max(0, start_ms))

    def pause(self, destroy_stream: bool = True) -> bool:  # noqa: FBT001, FBT002
        """
        Pause playback and freeze the position.

        Unless destroy_stream is False the current pipeline and any prefetch are torn
        down; resume() rebuilds them at the frozen position.
        """
        if self._state is PlayerState.PAUSED or not self._can_transition(PlayerState.PAUSED):
            return False
        self._freeze_position()
        self._set_state(PlayerState.PAUSED)
        self._auto_paused = False
        self._engine.pause()
        if destroy_stream:
            self._clear_prefetch()
            self._release_current()
        self._logger.info(
            "Paused at %ds%s",
            self._position_ms // 1000,
            " (stream destroyed)" if destroy_stream else "",
        )
        return True

    async def resume(self) -> bool:
        """Resume a paused player, rebuilding the pipeline if it was torn down."""
        if self._state is not PlayerState.PAUSED:
            return False
        self._auto_paused = False

        if self._stream is not None:
            self._engine.unpause()
            self._start_clock(self._position_ms)
            self._set_state(PlayerState.PLAYING)
            return True

        track = self.queue.current
        if track is None:
            self._freeze_position(0)
            self._set_state(PlayerState.IDLE)
            return False

        self._logger.info("Resuming from %ds (recreating stream)", self._position_ms // 1000)
        self._changing_stream += 1
        try:
            built = await self._build(track, self._position_ms, allow_prefetch=False)
        except StreamifyError as err:
            self._logger.error("Resume failed: %s", err)
            self._freeze_position(0)
            self._started_track = None
            self._set_state(PlayerState.IDLE)
            self._signal_event(TrackErrorEvent(track, err))
            return False
        finally:
            self._changing_stream -= 1
        if built is None or self._state is not PlayerState.PAUSED:
            if built is not None:
                built[0].destroy()
            return False

        self._expose(*built)
        self._start_clock(self._position_ms)
        self._set_state(PlayerState.PLAYING)
        self._schedule_prefetch()
        return True

    async def skip(self) -> Track | None:
        """
        Skip to the next queued track.

        Returns the track that started playing, or None when the queue is empty
        (a queueEnd event is emitted then) or the next track failed to load.
        """
        if self.destroyed:
            return None
        if self._state is PlayerState.IDLE and self.queue.is_empty:
            return None

        self._manual_skip += 1
        try:
            self._abort_loading()
            self._generation += 1
            self._release_current()
            self._freeze_position(0)
            self._end_track(TrackEndReason.SKIPPED)
            self._auto_paused = False

            next_track = self.queue.shift()
            if next_track is None:
                self._clear_prefetch()
                self._set_state(PlayerState.IDLE)
                self._end_queue()
                return None
            return await self._play_track(next_track)
        finally:
            self._manual_skip -= 1

    async def previous(self) -> Track | None:
        """Go back to the previous track; returns None if the history is empty."""
        if self.destroyed:
            return None
        self._clear_prefetch()
        track = self.queue.unshift()
        if track is None:
            return None

        self._manual_skip += 1
        try:
            self._abort_loading()
            self._generation += 1
            self._release_current()
            self._freeze_position(0)
            self._end_track(TrackEndReason.SKIPPED)
            self._auto_paused = False
            return await self._play_track(track)
        finally:
            self._manual_skip -= 1

    def stop(self) -> bool:
        """Stop playback and clear the queue."""
        if self.destroyed:
            return False
        self._generation += 1
        self._clear_prefetch()
        self._abort_loading()
        self._release_current()
        self._end_track(TrackEndReason.STOPPED)
        self.queue.clear()
        self.queue.current = None
        self._freeze_position(0)
        self._auto_paused = False
        self._set_state(PlayerState.IDLE)
        return True

    async def seek(self, position_ms: int) -> bool:
        """Seek within the current track; live tracks cannot be seeked."""
        track = self.queue.current
        if self.destroyed or track is None:
            return False
        if self._state not in (PlayerState.PLAYING, PlayerState.PAUSED):
            return False
        if track.is_indeterminate:
            self._logger.debug("Ignoring seek on live track %s", track.id)
            return False
        position_ms = max(0, int(position_ms))
        self._logger.info("Seeking to %ds", position_ms // 1000)
        return await self._rebuild(position_ms, seeking=True)

    async def set_volume(self, volume: int) -> int:
        """Set the volume (clamped to 0-200) and rebuild the stream if playing."""
        if self.destroyed:
            return self._volume
        volume = int(clamp(volume, 0, MAX_VOLUME))
        if volume != self._volume:
            self._volume = volume
            await self._apply_filters()
        return self._volume

    def set_loop(self, mode: RepeatMode | str) -> bool:
        """Set the repeat mode of the queue."""
        return self.queue.set_repeat_mode(mode)

    def set_autoplay(self, enabled: bool) -> bool:  # noqa: FBT001
        """Enable or disable autoplay."""
        self.autoplay.enabled = enabled
        return self.autoplay.enabled

    def set_auto_pause(self, enabled: bool) -> bool:  # noqa: FBT001
        """Enable or disable auto pause."""
        self.auto_pause.enabled = enabled
        return self.auto_pause.enabled

    # Filters

    async def set_filter(self, name: str, value: Any) -> bool:
        """Set (or, with None, remove) a filter and rebuild the stream at its position."""
        if self.destroyed:
            return False
        self._filters = self._filters.with_filter(name, value)
        return await self._apply_filters()

    async def clear_filters(self) -> bool:
        """Remove all filters and effect presets."""
        if self.destroyed:
            return False
        self._filters = FilterConfig()
        self._effect_presets = []
        return await self._apply_filters()

    async def set_eq(self, bands: Sequence[float]) -> bool:
        """Set the 15 equalizer band gains (-0.25 to 1.0)."""
        if isinstance(bands, (str, bytes)) or len(bands) != len(EQ_BANDS):
            raise ValueError("EQ must be a list of 15 band gains (-0.25 to 1.0)")
        return await self.set_filter("equalizer", list(bands))

    async def set_preset(self, name: str) -> bool:
        """Select a named equalizer preset, replacing custom band gains."""
        if name not in EQ_PRESETS:
            raise ValueError(f"Unknown preset: {name}. Available: {', '.join(EQ_PRESETS)}")
        if self.destroyed:
            return False
        self._filters = self._filters.without("equalizer").with_filter("preset", name)
        return await self._apply_filters()

    async def clear_eq(self) -> bool:
        """Remove custom band gains and the equalizer preset."""
        if self.destroyed:
            return False
        self._filters = self._filters.without("equalizer", "preset")
        return await self._apply_filters()

    def get_presets(self) -> list[str]:
        """Names of the equalizer presets."""
        return list(EQ_PRESETS)

    def _effect_preset_keys(self) -> set[str]:
        keys: set[str] = set()
        for preset in self._effect_presets:
            keys.update(apply_effect_preset(preset.name, preset.intensity) or {})
        return keys

    async def set_effect_presets(
        self,
        presets: Iterable[EffectPreset | str | tuple[str, float]],
        *,
        replace: bool = True,
    ) -> bool:
        """
        Apply effect presets on top of the current filters.

        With replace, the filters of the previously active presets are removed first.
        Returns False if none of the presets is known.
        """
        if self.destroyed:
            return False
        merged, applied = combine_effect_presets(presets)
        if not applied:
            return False
        base = self._filters
        if replace:
            base = base.without(*self._effect_preset_keys())
            self._effect_presets = applied
        else:
            self._effect_presets = [*self._effect_presets, *applied]
        self._filters = base.merged(merged)
        self._logger.info(
            "Effect presets: %s", ", ".join(f"{p.name} ({p.intensity})" for p in applied)
        )
        return await self._apply_filters()

    def get_active_effect_presets(self) -> list[EffectPreset]:
        """Effect presets currently applied."""
        return list(self._effect_presets)

    async def clear_effect_presets(self) -> bool:
        """Remove the filters contributed by effect presets."""
        if self.destroyed:
            return False
        self._filters = self._filters.without(*self._effect_preset_keys())
        self._effect_presets = []
        return await self._apply_filters()

    def get_effect_presets(self) -> list[str]:
        """Names of the available effect presets."""
        return list(EFFECT_PRESETS)

    # Presence

    def move_to(self, channel_id: str) -> None:
        """Record that the player was moved to another channel."""
        if self.destroyed or channel_id == self.channel_id:
            return
        old_channel_id = self.channel_id
        self.channel_id = channel_id
        self._logger.info("Moved from channel %s to %s", old_channel_id, channel_id)
        self._signal_event(ChannelMoveEvent(old_channel_id, channel_id))

    def handle_member_change(
        self, user_id: str | None, *, joined: bool | None, member_count: int
    ) -> None:
        """
        React to a listener joining or leaving the player's channel.

        Args:
            user_id: The listener that changed, if known.
            joined: True for a join, False for a leave, None if neither.
            member_count: Listeners in the channel after the change.
        """
        if self.destroyed:
            return
        if user_id is not None and joined is True:
            self._signal_event(UserJoinEvent(user_id, member_count))
        elif user_id is not None and joined is False:
            self._signal_event(UserLeaveEvent(user_id, member_count))

        if member_count < self.auto_pause.min_users:
            if member_count == 0:
                self._signal_event(ChannelEmptyEvent())
            if self.auto_pause.enabled and self.playing and not self._auto_paused:
                self.auto_pause_playback(member_count)
            if self.auto_leave.enabled:
                self.start_empty_timeout()
        else:
            self.cancel_empty_timeout()
            if self.auto_pause.enabled and self._auto_paused and self.paused:
                self._create_task(self.auto_resume_playback(member_count))

    def auto_pause_playback(self, member_count: int) -> bool:
        """Pause because too few listeners remain; resumed automatically later."""
        if not self.pause():
            return False
        self._auto_paused = True
        self._logger.info("Auto-paused (%d users in channel)", member_count)
        self._signal_event(AutoPauseEvent(member_count))
        return True

    async def auto_resume_playback(self, member_count: int) -> bool:
        """Resume a pause started by auto_pause_playback(); user pauses are left alone."""
        if not self._auto_paused or self._state is not PlayerState.PAUSED:
            return False
        resumed = await self.resume()
        if resumed:
            self._logger.info("Auto-resumed (%d users in channel)", member_count)
            self._signal_event(AutoResumeEvent(member_count))
        return resumed

    # Timers

    def start_empty_timeout(self) -> None:
        """Start the empty channel countdown unless it is already running."""
        if self.destroyed or not self.auto_leave.enabled or self._empty_timer is not None:
            return
        delay = self.auto_leave.empty_delay
        self._logger.info("Channel empty, will leave in %ds", delay)
        self._empty_timer = self._loop.call_later(delay, self._on_empty_timeout)

    def cancel_empty_timeout(self) -> None:
        """Cancel the empty channel countdown."""
        if self._empty_timer is not None:
            self._empty_timer.cancel()
            self._empty_timer = None

    def _on_empty_timeout(self) -> None:
        self._empty_timer = None
        self._logger.info("Leaving due to empty channel")
        self.destroy()

    def _reset_inactivity_timer(self) -> None:
        self._cancel_inactivity_timer()
        timeout = self.auto_leave.inactivity_timeout
        if self.destroyed or not self.auto_leave.enabled or timeout <= 0:
            return
        self._inactivity_timer = self._loop.call_later(timeout, self._on_inactivity_timeout)

    def _cancel_inactivity_timer(self) -> None:
        if self._inactivity_timer is not None:
            self._inactivity_timer.cancel()
            self._inactivity_timer = None

    def _on_inactivity_timeout(self) -> None:
        self._inactivity_timer = None
        if self._state is not PlayerState.PLAYING:
            self._logger.info("Leaving due to inactivity")
            self.destroy()

    # Channel status

    def update_status(self, *, force: bool = False) -> bool:
        """
        Publish the status text for the current track through the manager.

        Rate limited to one update per 5 minutes unless force is set. Returns True if
        an update was sent.
        """
        settings = self._config.voice_channel_status
        track = self.queue.current
        if (
            self.destroyed
            or not settings.enabled
            or track is None
            or self.channel_id is None
            or self._manager.status_handler is None
        ):
            return False
        now = self._loop.time()
        if (
            not force
            and self._last_status_at is not None
            and now - self._last_status_at < STATUS_INTERVAL_S
        ):
            return False
        self._last_status_at = now
        text = (
            settings.template.replace("{title}", track.title)
            .replace("{artist}", track.author)
            .replace("{requester}", track.requested_by or "Unknown")
        )
        self._create_task(self._manager.set_status(self.channel_id, text))
        return True

    # Lifecycle

    def destroy(self) -> None:
        """Tear down pipelines, timers and tasks; emits a single destroy event."""
        if self.destroyed:
            return
        self._logger.info("Destroying player for session %s", self.session_id)
        self._generation += 1
        self.cancel_empty_timeout()
        self._cancel_inactivity_timer()
        self._clear_prefetch()
        self._abort_loading()
        self._release_current()
        self._end_track(TrackEndReason.STOPPED)
        self._set_state(PlayerState.DESTROYED)
        self._freeze_position(0)
        self._auto_paused = False

        current = asyncio.current_task(self._loop)
        for task in list(self._tasks):
            if task is not current:
                task.cancel()
        self._remove_engine_listener()
        self._engine_close_task = self._loop.create_task(self._engine.close())

        self.queue.clear()
        self.queue.current = None
        self._signal_event(PlayerDestroyedEvent())
        self._event_cbs.clear()

    async def aclose(self) -> None:
        """Destroy the player and wait for its tasks and the engine to finish."""
        self.destroy()
        current = asyncio.current_task(self._loop)
        tasks = [task for task in self._tasks if task is not current]
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        if self._engine_close_task is not None:
            with suppress(asyncio.CancelledError):
                await self._engine_close_task

    def snapshot(self) -> PlayerSnapshot:
        """Return a serializable view of the player."""
        return PlayerSnapshot(
            session_id=self.session_id,
            channel_id=self.channel_id,
            state=self._state,
            volume=self._volume,
            position=self.position,
            autoplay=self.autoplay.enabled,
            auto_pause=self.auto_pause.enabled,
            auto_paused=self._auto_paused,
            filters=dict(self._filters.values),
            effect_presets=[preset.name for preset in self._effect_presets],
            queue=self.queue.snapshot(),
        )

    # Events

    def add_event_listener(
        self, callback: Callable[[Player, PlayerEvent], None]
    ) -> Callable[[], None]:
        """
        Register a callback for events of this player.

        Callbacks run synchronously in registration order. Returns a function to
        remove the listener.
        """
        self._event_cbs.append(callback)

        def _remove() -> None:
            with suppress(ValueError):
                self._event_cbs.remove(callback)

        return _remove

    def _signal_event(self, event: PlayerEvent) -> None:
        for cb in list(self._event_cbs):
            try:
                cb(self, event)
            except Exception:
                self._logger.exception("Error in event listener")
