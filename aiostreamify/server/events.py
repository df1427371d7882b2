"""Events emitted by players, the manager and the playback engine."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from aiostreamify.models.track import Track
from aiostreamify.models.types import TrackEndReason

if TYPE_CHECKING:
    from .pipeline import PipelineStream
    from .player import Player


class PlayerEvent:
    """Base event type used by Player.add_event_listener()."""


@dataclass
class TrackStartEvent(PlayerEvent):
    """A track started playing; emitted only after its stream is ready."""

    track: Track


@dataclass
class TrackEndEvent(PlayerEvent):
    """A track stopped playing."""

    track: Track
    reason: TrackEndReason


@dataclass
class TrackErrorEvent(PlayerEvent):
    """A track could not be played; the player advances on its own."""

    track: Track
    error: Exception


@dataclass
class QueueEndEvent(PlayerEvent):
    """The queue ran dry and nothing else is playing."""


@dataclass
class AutoplayStartEvent(PlayerEvent):
    """Autoplay is looking up tracks related to the last one played."""

    track: Track
    """The track related tracks are looked up for."""


@dataclass
class AutoplayAddEvent(PlayerEvent):
    """Autoplay added related tracks."""

    tracks: list[Track] = field(default_factory=list)


@dataclass
class AutoPauseEvent(PlayerEvent):
    """Playback was paused because too few listeners remain."""

    user_count: int


@dataclass
class AutoResumeEvent(PlayerEvent):
    """Playback resumed after an auto pause."""

    user_count: int


@dataclass
class UserJoinEvent(PlayerEvent):
    """A listener joined the channel."""

    user_id: str
    user_count: int


@dataclass
class UserLeaveEvent(PlayerEvent):
    """A listener left the channel."""

    user_id: str
    user_count: int


@dataclass
class ChannelEmptyEvent(PlayerEvent):
    """The last listener left; the empty channel countdown started."""


@dataclass
class ChannelMoveEvent(PlayerEvent):
    """The player was moved to another channel."""

    old_channel_id: str | None
    new_channel_id: str


@dataclass
class PlayerDestroyedEvent(PlayerEvent):
    """The player was destroyed; no further events follow."""


class ManagerEvent:
    """Base event type used by SessionManager.add_event_listener()."""


@dataclass
class PlayerCreatedEvent(ManagerEvent):
    """A player was created."""

    session_id: str
    player: Player


@dataclass
class PlayerRemovedEvent(ManagerEvent):
    """A player was destroyed and removed from the registry."""

    session_id: str


class EngineEvent:
    """Base event type used by PlaybackEngine.add_event_listener()."""


@dataclass
class EngineIdleEvent(EngineEvent):
    """The engine stopped playing a stream (it ended or was stopped)."""

    stream: PipelineStream


@dataclass
class EngineErrorEvent(EngineEvent):
    """Consuming a stream failed."""

    stream: PipelineStream
    error: Exception
