"""Models for enum types used by aiostreamify."""

from enum import Enum


class RepeatMode(Enum):
    """Enum for queue Repeat Modes."""

    OFF = "off"
    TRACK = "track"
    """Replay the current track on every advance."""
    QUEUE = "queue"
    """Refill the queue from history once it runs dry."""


class PlayerState(Enum):
    """Enum for Player states."""

    IDLE = "idle"
    """Nothing is playing and nothing is being loaded."""
    LOADING = "loading"
    """A pipeline is under construction for the current track."""
    PLAYING = "playing"
    PAUSED = "paused"
    DESTROYED = "destroyed"
    """Terminal state, entered exactly once."""


class PipelineState(Enum):
    """Enum for Pipeline states."""

    IDLE = "idle"
    STARTING = "starting"
    READY = "ready"
    DESTROYED = "destroyed"


class ShutdownReason(Enum):
    """Why a pipeline stopped producing audio."""

    REQUESTED = "requested"
    """destroy() was called by the owner."""
    COMPLETED = "completed"
    """Both processes ran to completion."""
    EXTRACTOR_FAILED = "extractor_failed"
    TRANSCODER_FAILED = "transcoder_failed"


class TrackEndReason(Enum):
    """Reason reported with a track end event."""

    FINISHED = "finished"
    SKIPPED = "skipped"
    STOPPED = "stopped"


class OutputFormat(Enum):
    """Delivery codecs the transcoder can produce."""

    OPUS = "opus"
    MP3 = "mp3"
    AAC = "aac"

    @property
    def content_type(self) -> str:
        """HTTP content type of the container produced for this codec."""
        return _CONTENT_TYPES[self]


_CONTENT_TYPES = {
    OutputFormat.OPUS: "audio/ogg",
    OutputFormat.MP3: "audio/mpeg",
    OutputFormat.AAC: "audio/aac",
}
