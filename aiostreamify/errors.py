"""Exceptions raised by aiostreamify."""

from __future__ import annotations


class StreamifyError(Exception):
    """Base class for all aiostreamify errors."""


class ConfigurationError(StreamifyError):
    """The configuration is unusable (for example a required executable is missing)."""


class InvalidTrackError(StreamifyError):
    """The track has no id that can be handed to the extractor."""


class ResolutionError(StreamifyError):
    """A cross-source id could not be resolved for the track."""


class PipelineDestroyedError(StreamifyError):
    """The pipeline was destroyed before the operation was attempted."""


class ReadinessTimeout(StreamifyError):
    """
    The transcoder produced no output within the readiness window.

    Non-fatal: the pipeline proceeds optimistically and the stream is handed out anyway.
    """


class ProcessError(StreamifyError):
    """An external process exited before producing any audio."""

    def __init__(self, message: str, *, returncode: int | None, stderr: str = "") -> None:
        """Initialize with the exit code and the captured stderr tail."""
        super().__init__(message)
        self.returncode = returncode
        self.stderr = stderr


class ExtractionError(ProcessError):
    """The extractor exited before emitting any bytes."""


class TranscodeError(ProcessError):
    """The transcoder exited before emitting any bytes."""
