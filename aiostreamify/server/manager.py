"""Session manager: registry of players keyed by session id."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from contextlib import suppress
from dataclasses import dataclass
from typing import Protocol

from aiostreamify.errors import ResolutionError
from aiostreamify.models.config import StreamifyConfig
from aiostreamify.models.filters import FilterConfig
from aiostreamify.models.snapshot import ManagerStats
from aiostreamify.models.track import Track
from aiostreamify.models.types import PlayerState

from .engine import PlaybackEngine
from .events import ManagerEvent, PlayerCreatedEvent, PlayerDestroyedEvent, PlayerEvent, PlayerRemovedEvent
from .pipeline import Pipeline
from .player import Player

logger = logging.getLogger(__name__)

PipelineFactory = Callable[..., Pipeline]
"""Called as factory(track, filters, config, resolver=...)."""
EngineFactory = Callable[[], PlaybackEngine]
StatusHandler = Callable[[str, str], Awaitable[None]]
"""Called with (channel_id, text) to publish a now-playing status."""


class MetadataProvider(Protocol):
    """Track metadata lookups needed during playback."""

    async def resolve_id(self, track: Track) -> str | None:
        """Return an extractable id for a track from a non-extractable source."""
        ...

    async def get_related(self, track: Track, limit: int) -> list[Track]:
        """Return up to limit tracks related to track, used by autoplay."""
        ...


@dataclass
class PresenceUpdate:
    """A member joined, left or moved between channels."""

    session_id: str
    user_id: str
    old_channel_id: str | None
    new_channel_id: str | None
    member_count: int
    """Listeners (excluding the player itself) in the player's channel after the update."""
    is_self: bool = False
    """True if the update concerns the player's own connection."""


class SessionManager:
    """Creates, looks up and destroys players; at most one player per session."""

    _players: dict[str, Player]
    """Active players keyed by session id."""
    _loop: asyncio.AbstractEventLoop
    _event_cbs: list[Callable[[SessionManager, ManagerEvent], None]]
    _player_listeners: dict[str, Callable[[], None]]
    """Functions removing the manager's listener from each player."""

    def __init__(
        self,
        loop: asyncio.AbstractEventLoop,
        config: StreamifyConfig,
        *,
        metadata: MetadataProvider | None = None,
        engine_factory: EngineFactory = PlaybackEngine,
        pipeline_factory: PipelineFactory = Pipeline,
        status_handler: StatusHandler | None = None,
    ) -> None:
        """
        Initialize a session manager.

        Args:
            loop: The asyncio event loop all players run on.
            config: Configuration shared by all players, see load_config().
            metadata: Provider used for cross-source resolution and autoplay.
            engine_factory: Creates the playback engine of each player.
            pipeline_factory: Creates pipelines; replaceable for testing.
            status_handler: Publishes now-playing status texts, if enabled.
        """
        self._loop = loop
        self.config = config
        self._metadata = metadata
        self._engine_factory = engine_factory
        self._pipeline_factory = pipeline_factory
        self.status_handler = status_handler
        self._players = {}
        self._player_listeners = {}
        self._event_cbs = []

    @property
    def loop(self) -> asyncio.AbstractEventLoop:
        """The event loop players run on."""
        return self._loop

    @property
    def players(self) -> list[Player]:
        """All active players."""
        return list(self._players.values())

    def get(self, session_id: str) -> Player | None:
        """Return the player of a session, if any."""
        return self._players.get(session_id)

    def create(
        self,
        session_id: str,
        channel_id: str | None = None,
        *,
        text_channel_id: str | None = None,
        volume: int | None = None,
    ) -> Player:
        """
        Return the player of a session, creating it if needed.

        An existing player is moved to channel_id if it differs.
        """
        if (player := self._players.get(session_id)) is not None:
            if channel_id is not None and player.channel_id != channel_id:
                player.move_to(channel_id)
            return player

        player = Player(
            self,
            session_id,
            channel_id,
            text_channel_id=text_channel_id,
            volume=volume,
        )
        self._players[session_id] = player
        self._player_listeners[session_id] = player.add_event_listener(self._on_player_event)
        logger.info("Created player for session %s", session_id)
        self._signal_event(PlayerCreatedEvent(session_id, player))
        return player

    def destroy(self, session_id: str) -> bool:
        """Destroy the player of a session; returns False if there is none."""
        player = self._players.get(session_id)
        if player is None:
            return False
        player.destroy()
        return True

    def destroy_all(self) -> int:
        """Destroy all players and return how many were destroyed."""
        players = list(self._players.values())
        for player in players:
            player.destroy()
        return len(players)

    async def close(self) -> None:
        """Destroy all players and wait for their processes and engines to finish."""
        players = list(self._players.values())
        self.destroy_all()
        await asyncio.gather(*(player.aclose() for player in players))

    def _on_player_event(self, player: Player, event: PlayerEvent) -> None:
        if not isinstance(event, PlayerDestroyedEvent):
            return
        session_id = player.session_id
        if self._players.get(session_id) is not player:
            return
        del self._players[session_id]
        remove_listener = self._player_listeners.pop(session_id, None)
        if remove_listener is not None:
            remove_listener()
        logger.info("Removed player for session %s", session_id)
        self._signal_event(PlayerRemovedEvent(session_id))

    # Collaborators used by players

    def create_engine(self) -> PlaybackEngine:
        """Create the playback engine for a new player."""
        return self._engine_factory()

    def create_pipeline(self, track: Track, filters: FilterConfig) -> Pipeline:
        """Create an unstarted pipeline for track."""
        return self._pipeline_factory(track, filters, self.config, resolver=self.resolve_track_id)

    async def resolve_track_id(self, track: Track) -> str:
        """
        Resolve an extractable id for track through the metadata provider.

        Raises:
            ResolutionError: If no provider is configured or it found no match.
        """
        if self._metadata is None:
            raise ResolutionError(f"No metadata provider to resolve {track.source} track {track.id}")
        try:
            resolved = await self._metadata.resolve_id(track)
        except ResolutionError:
            raise
        except Exception as err:
            raise ResolutionError(f"Failed to resolve {track.id}: {err}") from err
        if not resolved:
            raise ResolutionError(f"No match found for {track.title} ({track.id})")
        return resolved

    async def get_related(self, track: Track, limit: int) -> list[Track]:
        """Return tracks related to track; lookup failures yield an empty list."""
        if self._metadata is None:
            return []
        try:
            return list(await self._metadata.get_related(track, limit))[:limit]
        except Exception as err:  # noqa: BLE001
            logger.warning("Related track lookup for %s failed: %s", track.id, err)
            return []

    async def set_status(self, channel_id: str, text: str) -> None:
        """Publish a status text for channel_id through the status handler."""
        if self.status_handler is None:
            return
        try:
            await self.status_handler(channel_id, text)
        except Exception as err:  # noqa: BLE001
            logger.warning("Failed to set status of channel %s: %s", channel_id, err)

    # Presence

    def handle_presence_update(self, update: PresenceUpdate) -> None:
        """
        Translate a presence change into player level triggers.

        A disconnect of the player itself destroys the player, a move of it updates the
        channel. Member changes in the player's channel drive auto pause, auto resume
        and the empty channel countdown.
        """
        player = self._players.get(update.session_id)
        if player is None:
            return

        if update.is_self:
            if update.new_channel_id is None:
                logger.info("Disconnected from session %s", update.session_id)
                player.destroy()
            elif update.new_channel_id != player.channel_id:
                player.move_to(update.new_channel_id)
            return

        channel_id = player.channel_id
        if channel_id is None:
            return
        left = update.old_channel_id == channel_id and update.new_channel_id != channel_id
        joined = update.new_channel_id == channel_id and update.old_channel_id != channel_id
        if not left and not joined:
            return
        player.handle_member_change(
            update.user_id, joined=joined, member_count=max(0, update.member_count)
        )

    def get_stats(self) -> ManagerStats:
        """Return counters over all players."""
        players = list(self._players.values())
        return ManagerStats(
            players=len(players),
            playing=sum(1 for p in players if p.state is PlayerState.PLAYING),
            paused=sum(1 for p in players if p.state is PlayerState.PAUSED),
            idle=sum(1 for p in players if p.state is PlayerState.IDLE),
            queued_tracks=sum(p.queue.size for p in players),
        )

    # Events

    def add_event_listener(
        self, callback: Callable[[SessionManager, ManagerEvent], None]
    ) -> Callable[[], None]:
        """
        Register a callback for player creation and removal.

        Returns a function to remove the listener.
        """
        self._event_cbs.append(callback)

        def _remove() -> None:
            with suppress(ValueError):
                self._event_cbs.remove(callback)

        return _remove

    def _signal_event(self, event: ManagerEvent) -> None:
        for cb in list(self._event_cbs):
            try:
                cb(self, event)
            except Exception:
                logger.exception("Error in event listener")
