"""Public interface for the aiostreamify playback server."""

from .engine import PlaybackEngine, Sink
from .events import (
    AutoPauseEvent,
    AutoplayAddEvent,
    AutoplayStartEvent,
    AutoResumeEvent,
    ChannelEmptyEvent,
    ChannelMoveEvent,
    EngineErrorEvent,
    EngineEvent,
    EngineIdleEvent,
    ManagerEvent,
    PlayerCreatedEvent,
    PlayerDestroyedEvent,
    PlayerEvent,
    PlayerRemovedEvent,
    QueueEndEvent,
    TrackEndEvent,
    TrackErrorEvent,
    TrackStartEvent,
    UserJoinEvent,
    UserLeaveEvent,
)
from .http import stream_response
from .manager import MetadataProvider, PresenceUpdate, SessionManager, StatusHandler
from .pipeline import Pipeline, PipelineStream
from .player import Player
from .queue import PlaybackQueue

__all__ = [
    "AutoPauseEvent",
    "AutoResumeEvent",
    "AutoplayAddEvent",
    "AutoplayStartEvent",
    "ChannelEmptyEvent",
    "ChannelMoveEvent",
    "EngineErrorEvent",
    "EngineEvent",
    "EngineIdleEvent",
    "ManagerEvent",
    "MetadataProvider",
    "Pipeline",
    "PipelineStream",
    "PlaybackEngine",
    "PlaybackQueue",
    "Player",
    "PlayerCreatedEvent",
    "PlayerDestroyedEvent",
    "PlayerEvent",
    "PlayerRemovedEvent",
    "PresenceUpdate",
    "QueueEndEvent",
    "SessionManager",
    "Sink",
    "StatusHandler",
    "TrackEndEvent",
    "TrackErrorEvent",
    "TrackStartEvent",
    "UserJoinEvent",
    "UserLeaveEvent",
    "stream_response",
]
