"""Serializable snapshots of queue, player and manager state."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from mashumaro.config import BaseConfig
from mashumaro.mixins.orjson import DataClassORJSONMixin

from .track import Track
from .types import PlayerState, RepeatMode


@dataclass
class QueueSnapshot(DataClassORJSONMixin):
    """State of a PlaybackQueue at one point in time."""

    current: Track | None
    tracks: list[Track] = field(default_factory=list)
    previous: list[Track] = field(default_factory=list)
    repeat_mode: RepeatMode = RepeatMode.OFF
    size: int = 0
    total_duration: int = 0
    """Seconds, current plus pending."""


@dataclass
class PlayerSnapshot(DataClassORJSONMixin):
    """State of a Player at one point in time."""

    session_id: str
    channel_id: str | None
    state: PlayerState
    volume: int
    position: int
    """Milliseconds."""
    autoplay: bool
    auto_pause: bool
    auto_paused: bool
    filters: dict[str, Any]
    effect_presets: list[str]
    queue: QueueSnapshot

    class Config(BaseConfig):
        """Config for serializing player snapshots."""

        omit_none = True


@dataclass
class ManagerStats(DataClassORJSONMixin):
    """Aggregated counters across all players of a manager."""

    players: int = 0
    playing: int = 0
    paused: int = 0
    idle: int = 0
    queued_tracks: int = 0
