"""Track model."""

from __future__ import annotations

from dataclasses import dataclass

from mashumaro.config import BaseConfig
from mashumaro.mixins.orjson import DataClassORJSONMixin

# Sources whose ids cannot be handed to the extractor directly
RESOLVABLE_SOURCES = frozenset({"spotify"})
# Sources extracted through a YouTube watch url
YOUTUBE_SOURCES = frozenset({"youtube", "spotify"})


@dataclass
class Track(DataClassORJSONMixin):
    """
    A playable source item.

    Tracks are supplied by external metadata lookups and treated as immutable, with one
    exception: the cross-source resolved id may be attached once, lazily.
    """

    id: str | None
    """Identifier within the source catalog."""
    title: str = ""
    author: str = ""
    duration: int = 0
    """Duration in seconds; 0 means indeterminate (live)."""
    source: str = "youtube"
    """Source tag (youtube, spotify, soundcloud, local, http, ...)."""
    uri: str | None = None
    """Playable uri for sources that are not addressed by id."""
    thumbnail: str | None = None
    album: str | None = None
    is_live: bool = False
    is_autoplay: bool = False
    requested_by: str | None = None
    local_path: str | None = None
    """Absolute path for local files; the transcoder reads it directly."""
    resolved_id: str | None = None
    """Extractable id resolved from another source (e.g. Spotify -> YouTube)."""

    class Config(BaseConfig):
        """Config for serializing tracks."""

        omit_none = True

    @property
    def is_indeterminate(self) -> bool:
        """True for live streams and tracks without a known duration."""
        return self.is_live or not self.duration

    @property
    def playable_id(self) -> str | None:
        """Id handed to the extractor."""
        return self.resolved_id or self.id

    @property
    def needs_resolution(self) -> bool:
        """True if a cross-source id must be resolved before extraction."""
        return self.source in RESOLVABLE_SOURCES and not self.resolved_id

    def attach_resolved_id(self, resolved_id: str) -> None:
        """Attach the cross-source id; a different id cannot replace an attached one."""
        if self.resolved_id is not None and self.resolved_id != resolved_id:
            raise ValueError(
                f"Track {self.id} is already resolved to {self.resolved_id}, not {resolved_id}"
            )
        self.resolved_id = resolved_id
