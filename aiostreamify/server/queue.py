"""Playback queue: pending tracks, bounded history and repeat mode."""

from __future__ import annotations

import random
from collections.abc import Iterable

from aiostreamify.models.snapshot import QueueSnapshot
from aiostreamify.models.track import Track
from aiostreamify.models.types import RepeatMode

DEFAULT_MAX_PREVIOUS = 25


class PlaybackQueue:
    """
    Ordered queue of a single player.

    `current` is never part of `tracks`. `previous` holds played tracks, most recent
    first, bounded by `max_previous`.
    """

    def __init__(self, max_previous: int = DEFAULT_MAX_PREVIOUS) -> None:
        """Initialize an empty queue."""
        self.tracks: list[Track] = []
        self.previous: list[Track] = []
        self.current: Track | None = None
        self.repeat_mode = RepeatMode.OFF
        self.max_previous = max_previous

    def __len__(self) -> int:
        return len(self.tracks)

    @property
    def size(self) -> int:
        """Number of pending tracks."""
        return len(self.tracks)

    @property
    def is_empty(self) -> bool:
        """True if no track is pending."""
        return not self.tracks

    @property
    def total_duration(self) -> int:
        """Duration of the current and all pending tracks, in seconds."""
        duration = self.current.duration if self.current else 0
        return duration + sum(track.duration for track in self.tracks)

    def _valid_insert(self, position: int | None) -> bool:
        return position is not None and 0 <= position < len(self.tracks)

    def add(self, track: Track, position: int | None = None) -> int:
        """Insert a track at position, or append it; returns the new queue size."""
        if self._valid_insert(position):
            self.tracks.insert(position, track)  # type: ignore[arg-type]
        else:
            self.tracks.append(track)
        return len(self.tracks)

    def add_many(self, tracks: Iterable[Track], position: int | None = None) -> int:
        """Insert several tracks at position, or append them; returns the new queue size."""
        if self._valid_insert(position):
            self.tracks[position:position] = list(tracks)  # type: ignore[misc]
        else:
            self.tracks.extend(tracks)
        return len(self.tracks)

    def remove(self, index: int) -> Track | None:
        """Remove and return the pending track at index, or None if out of range."""
        if 0 <= index < len(self.tracks):
            return self.tracks.pop(index)
        return None

    def clear(self) -> int:
        """Drop all pending tracks and return how many were removed."""
        count = len(self.tracks)
        self.tracks = []
        return count

    def shuffle(self) -> None:
        """Uniformly permute the pending tracks in place."""
        random.shuffle(self.tracks)

    def move(self, from_index: int, to_index: int) -> bool:
        """Move a pending track; returns False if either index is out of range."""
        size = len(self.tracks)
        if not (0 <= from_index < size and 0 <= to_index < size):
            return False
        track = self.tracks.pop(from_index)
        self.tracks.insert(to_index, track)
        return True

    def shift(self) -> Track | None:
        """
        Advance to the next track and return the new current track.

        With repeat mode TRACK the current track is returned unchanged. With repeat mode
        QUEUE an exhausted queue is refilled from history in play order.
        """
        if self.current is not None:
            self.previous.insert(0, self.current)
            del self.previous[self.max_previous :]
            if self.repeat_mode is RepeatMode.TRACK:
                return self.current

        if self.repeat_mode is RepeatMode.QUEUE and not self.tracks and self.previous:
            self.tracks = list(reversed(self.previous))
            self.previous = []

        self.current = self.tracks.pop(0) if self.tracks else None
        return self.current

    def unshift(self) -> Track | None:
        """Go back to the most recent history entry; returns None if history is empty."""
        if not self.previous:
            return None
        if self.current is not None:
            self.tracks.insert(0, self.current)
        self.current = self.previous.pop(0)
        return self.current

    def set_repeat_mode(self, mode: RepeatMode | str) -> bool:
        """Set the repeat mode; returns False for unknown modes."""
        try:
            self.repeat_mode = RepeatMode(mode)
        except ValueError:
            return False
        return True

    def snapshot(self) -> QueueSnapshot:
        """Return a serializable copy of the queue."""
        return QueueSnapshot(
            current=self.current,
            tracks=list(self.tracks),
            previous=list(self.previous),
            repeat_mode=self.repeat_mode,
            size=len(self.tracks),
            total_duration=self.total_duration,
        )
