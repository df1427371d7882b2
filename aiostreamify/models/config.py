"""Configuration models and loading."""

from __future__ import annotations

import logging
import os
import shutil
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import orjson
from mashumaro.config import BaseConfig
from mashumaro.mixins.orjson import DataClassORJSONMixin

from aiostreamify.errors import ConfigurationError

from .types import OutputFormat

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_FILE = "config.json"


@dataclass
class AudioConfig(DataClassORJSONMixin):
    """Transcoder output settings."""

    bitrate: str = "128k"
    format: OutputFormat = OutputFormat.OPUS


@dataclass
class ExtractorConfig(DataClassORJSONMixin):
    """Extractor (yt-dlp) settings."""

    format: str = "bestaudio/best"
    """Format selector for sources that are not YouTube-like."""
    additional_args: list[str] = field(default_factory=list)


@dataclass
class SponsorBlockConfig(DataClassORJSONMixin):
    """SponsorBlock segment removal for YouTube-like sources."""

    enabled: bool = True
    categories: list[str] = field(default_factory=lambda: ["sponsor", "selfpromo"])


@dataclass
class AutoLeaveConfig(DataClassORJSONMixin):
    """Automatic teardown of idle or abandoned players."""

    enabled: bool = True
    empty_delay: float = 30.0
    """Seconds to wait after the channel empties."""
    inactivity_timeout: float = 300.0
    """Seconds to wait after the queue ends; 0 disables."""


@dataclass
class AutoPauseConfig(DataClassORJSONMixin):
    """Automatic pause when too few listeners remain."""

    enabled: bool = True
    min_users: int = 1


@dataclass
class AutoplayConfig(DataClassORJSONMixin):
    """Related-track autoplay once the queue runs dry."""

    enabled: bool = False
    max_tracks: int = 5


@dataclass
class VoiceChannelStatusConfig(DataClassORJSONMixin):
    """Status text published when a track starts."""

    enabled: bool = False
    template: str = "🎶 Now Playing: {title} - {artist} | Requested by: {requester}"


@dataclass
class StreamifyConfig(DataClassORJSONMixin):
    """Top level configuration shared by all players of a manager."""

    ytdlp_path: str | None = None
    ffmpeg_path: str | None = None
    cookies_path: str | None = None
    default_volume: int = 80
    max_previous_tracks: int = 25
    audio: AudioConfig = field(default_factory=AudioConfig)
    extractor: ExtractorConfig = field(default_factory=ExtractorConfig)
    sponsorblock: SponsorBlockConfig = field(default_factory=SponsorBlockConfig)
    auto_leave: AutoLeaveConfig = field(default_factory=AutoLeaveConfig)
    auto_pause: AutoPauseConfig = field(default_factory=AutoPauseConfig)
    autoplay: AutoplayConfig = field(default_factory=AutoplayConfig)
    voice_channel_status: VoiceChannelStatusConfig = field(
        default_factory=VoiceChannelStatusConfig
    )

    class Config(BaseConfig):
        """Config for parsing configuration files."""

        omit_none = True


def _deep_merge(base: dict[str, Any], overrides: dict[str, Any]) -> dict[str, Any]:
    """Merge overrides into base, recursing into nested sections."""
    merged = dict(base)
    for key, value in overrides.items():
        if value is None:
            continue
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def _read_config_file(path: Path) -> dict[str, Any]:
    try:
        data = orjson.loads(path.read_bytes())
    except (OSError, orjson.JSONDecodeError) as err:
        logger.warning("Failed to parse config file %s: %s", path, err)
        return {}
    if not isinstance(data, dict):
        logger.warning("Ignoring config file %s: top level is not an object", path)
        return {}
    return data


def _write_cookies(cookies: str) -> str:
    """Write inline cookies to a temp file and return its path."""
    directory = Path(tempfile.gettempdir()) / "aiostreamify"
    directory.mkdir(parents=True, exist_ok=True)
    cookies_file = directory / "cookies.txt"
    cookies_file.write_text(cookies)
    logger.info("Cookies written to %s", cookies_file)
    return str(cookies_file)


def load_config(path: str | os.PathLike[str] | None = None, **overrides: Any) -> StreamifyConfig:
    """
    Build a StreamifyConfig.

    Precedence (lowest first): defaults, JSON file, keyword overrides, environment.
    When no path is given, ./config.json is used if it exists.

    Raises:
        ConfigurationError: If yt-dlp or ffmpeg cannot be found.
    """
    raw: dict[str, Any] = {}
    config_file = Path(path) if path is not None else Path(DEFAULT_CONFIG_FILE)
    if config_file.exists():
        raw = _read_config_file(config_file)
    elif path is not None:
        logger.warning("Config file %s does not exist, using defaults", config_file)

    raw = _deep_merge(raw, overrides)

    cookies = os.environ.get("COOKIES") or raw.pop("cookies", None)
    env_overrides = {
        "ytdlp_path": os.environ.get("YTDLP_PATH"),
        "ffmpeg_path": os.environ.get("FFMPEG_PATH"),
        "cookies_path": os.environ.get("COOKIES_PATH"),
    }
    raw = _deep_merge(raw, env_overrides)

    config = StreamifyConfig.from_dict(raw)

    if cookies and not config.cookies_path:
        config.cookies_path = _write_cookies(cookies)
    if not config.ytdlp_path:
        config.ytdlp_path = shutil.which("yt-dlp")
    if not config.ffmpeg_path:
        config.ffmpeg_path = shutil.which("ffmpeg")
    if not config.ytdlp_path:
        raise ConfigurationError("yt-dlp not found. Install it: pip install yt-dlp")
    if not config.ffmpeg_path:
        raise ConfigurationError("ffmpeg not found. Install it with your package manager")

    logger.debug(
        "Configuration loaded: ytdlp=%s, ffmpeg=%s, format=%s",
        config.ytdlp_path,
        config.ffmpeg_path,
        config.audio.format.value,
    )
    return config
