"""Data models for aiostreamify."""

from __future__ import annotations

__all__ = [
    "AudioConfig",
    "AutoLeaveConfig",
    "AutoPauseConfig",
    "AutoplayConfig",
    "EffectPreset",
    "ExtractorConfig",
    "FilterConfig",
    "ManagerStats",
    "OutputFormat",
    "PipelineState",
    "PlayerSnapshot",
    "PlayerState",
    "QueueSnapshot",
    "RepeatMode",
    "ShutdownReason",
    "SponsorBlockConfig",
    "StreamifyConfig",
    "Track",
    "TrackEndReason",
    "VoiceChannelStatusConfig",
    "config",
    "filters",
    "load_config",
    "snapshot",
    "track",
    "types",
]

from . import config, filters, snapshot, track, types
from .config import (
    AudioConfig,
    AutoLeaveConfig,
    AutoPauseConfig,
    AutoplayConfig,
    ExtractorConfig,
    SponsorBlockConfig,
    StreamifyConfig,
    VoiceChannelStatusConfig,
    load_config,
)
from .filters import EffectPreset, FilterConfig
from .snapshot import ManagerStats, PlayerSnapshot, QueueSnapshot
from .track import Track
from .types import (
    OutputFormat,
    PipelineState,
    PlayerState,
    RepeatMode,
    ShutdownReason,
    TrackEndReason,
)
