from __future__ import annotations

import asyncio
from collections.abc import Callable

import pytest

from aiostreamify.errors import ResolutionError
from aiostreamify.models.track import Track
from aiostreamify.models.types import PlayerState
from aiostreamify.server.events import (
    AutoPauseEvent,
    AutoResumeEvent,
    ChannelEmptyEvent,
    ChannelMoveEvent,
    ManagerEvent,
    PlayerCreatedEvent,
    PlayerDestroyedEvent,
    PlayerEvent,
    PlayerRemovedEvent,
    UserJoinEvent,
    UserLeaveEvent,
)
from aiostreamify.server.manager import PresenceUpdate, SessionManager


def _track(track_id: str) -> Track:
    return Track(id=track_id, title=f"Title {track_id}", author="Artist", duration=120)


async def _wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    async with asyncio.timeout(timeout):
        while not predicate():
            await asyncio.sleep(0.01)


def _presence(
    user_id: str,
    old: str | None,
    new: str | None,
    count: int,
    *,
    is_self: bool = False,
) -> PresenceUpdate:
    return PresenceUpdate(
        session_id="guild-1",
        user_id=user_id,
        old_channel_id=old,
        new_channel_id=new,
        member_count=count,
        is_self=is_self,
    )


class BrokenMetadata:
    async def resolve_id(self, track: Track) -> str | None:
        raise RuntimeError("search backend unavailable")

    async def get_related(self, track: Track, limit: int) -> list[Track]:
        raise RuntimeError("search backend unavailable")


class EmptyMetadata:
    async def resolve_id(self, track: Track) -> str | None:
        return None

    async def get_related(self, track: Track, limit: int) -> list[Track]:
        return []


@pytest.mark.asyncio
async def test_create_get_destroy(config, pipelines) -> None:
    manager = SessionManager(asyncio.get_running_loop(), config, pipeline_factory=pipelines)
    events: list[ManagerEvent] = []
    manager.add_event_listener(lambda _manager, event: events.append(event))

    player = manager.create("guild-1", "voice-1", text_channel_id="text-1", volume=50)
    assert manager.get("guild-1") is player
    assert player.volume == 50
    assert player.text_channel_id == "text-1"
    assert manager.create("guild-1") is player
    assert [type(e) for e in events] == [PlayerCreatedEvent]

    assert manager.destroy("guild-1") is True
    assert manager.destroy("guild-1") is False
    assert manager.get("guild-1") is None
    assert isinstance(events[-1], PlayerRemovedEvent)
    assert events[-1].session_id == "guild-1"
    await manager.close()


@pytest.mark.asyncio
async def test_create_existing_player_moves_channel(config, pipelines) -> None:
    manager = SessionManager(asyncio.get_running_loop(), config, pipeline_factory=pipelines)
    player = manager.create("guild-1", "voice-1")
    events: list[PlayerEvent] = []
    player.add_event_listener(lambda _player, event: events.append(event))

    assert manager.create("guild-1", "voice-2") is player
    assert player.channel_id == "voice-2"
    assert events == [ChannelMoveEvent("voice-1", "voice-2")]
    await manager.close()


@pytest.mark.asyncio
async def test_destroy_all_and_stats(config, pipelines) -> None:
    manager = SessionManager(asyncio.get_running_loop(), config, pipeline_factory=pipelines)
    playing = manager.create("guild-1", "voice-1")
    paused = manager.create("guild-2", "voice-2")
    manager.create("guild-3", "voice-3")

    await playing.play(_track("a"))
    playing.queue.add(_track("b"))
    await paused.play(_track("c"))
    paused.pause()

    stats = manager.get_stats()
    assert stats.players == 3
    assert stats.playing == 1
    assert stats.paused == 1
    assert stats.idle == 1
    assert stats.queued_tracks == 1

    assert manager.destroy_all() == 3
    assert manager.players == []
    await manager.close()


@pytest.mark.asyncio
async def test_member_leave_auto_pauses_and_join_resumes(config, pipelines) -> None:
    manager = SessionManager(asyncio.get_running_loop(), config, pipeline_factory=pipelines)
    player = manager.create("guild-1", "voice-1")
    events: list[PlayerEvent] = []
    player.add_event_listener(lambda _player, event: events.append(event))
    await player.play(_track("a"))

    manager.handle_presence_update(_presence("user-1", "voice-1", None, 0))
    assert player.state is PlayerState.PAUSED
    assert player.auto_paused
    assert [type(e) for e in events[-3:]] == [UserLeaveEvent, ChannelEmptyEvent, AutoPauseEvent]

    manager.handle_presence_update(_presence("user-1", None, "voice-1", 1))
    await _wait_until(lambda: player.playing)
    assert not player.auto_paused
    assert isinstance(events[-1], AutoResumeEvent)
    assert events[-1].user_count == 1
    assert any(isinstance(e, UserJoinEvent) for e in events)
    await manager.close()


@pytest.mark.asyncio
async def test_user_pause_is_not_auto_resumed(config, pipelines) -> None:
    manager = SessionManager(asyncio.get_running_loop(), config, pipeline_factory=pipelines)
    player = manager.create("guild-1", "voice-1")
    await player.play(_track("a"))
    player.pause()

    manager.handle_presence_update(_presence("user-1", "voice-1", None, 0))
    manager.handle_presence_update(_presence("user-1", None, "voice-1", 1))
    await asyncio.sleep(0.05)

    assert player.state is PlayerState.PAUSED
    assert not player.auto_paused
    await manager.close()


@pytest.mark.asyncio
async def test_presence_in_other_channel_is_ignored(config, pipelines) -> None:
    manager = SessionManager(asyncio.get_running_loop(), config, pipeline_factory=pipelines)
    player = manager.create("guild-1", "voice-1")
    events: list[PlayerEvent] = []
    player.add_event_listener(lambda _player, event: events.append(event))

    manager.handle_presence_update(_presence("user-1", "voice-7", None, 0))
    manager.handle_presence_update(
        PresenceUpdate("guild-9", "user-1", "voice-1", None, 0)
    )
    assert events == []
    await manager.close()


@pytest.mark.asyncio
async def test_empty_channel_timeout_destroys_player(config, pipelines) -> None:
    config.auto_leave.empty_delay = 0.05
    manager = SessionManager(asyncio.get_running_loop(), config, pipeline_factory=pipelines)
    player = manager.create("guild-1", "voice-1")

    manager.handle_presence_update(_presence("user-1", "voice-1", None, 0))
    await _wait_until(lambda: player.destroyed)
    assert manager.get("guild-1") is None
    await manager.close()


@pytest.mark.asyncio
async def test_rejoin_cancels_empty_channel_timeout(config, pipelines) -> None:
    config.auto_leave.empty_delay = 0.05
    manager = SessionManager(asyncio.get_running_loop(), config, pipeline_factory=pipelines)
    player = manager.create("guild-1", "voice-1")

    manager.handle_presence_update(_presence("user-1", "voice-1", None, 0))
    manager.handle_presence_update(_presence("user-1", None, "voice-1", 1))
    await asyncio.sleep(0.1)

    assert not player.destroyed
    await manager.close()


@pytest.mark.asyncio
async def test_own_disconnect_and_move(config, pipelines) -> None:
    manager = SessionManager(asyncio.get_running_loop(), config, pipeline_factory=pipelines)
    player = manager.create("guild-1", "voice-1")
    events: list[PlayerEvent] = []
    player.add_event_listener(lambda _player, event: events.append(event))

    manager.handle_presence_update(_presence("bot", "voice-1", "voice-2", 3, is_self=True))
    assert player.channel_id == "voice-2"
    assert events == [ChannelMoveEvent("voice-1", "voice-2")]

    manager.handle_presence_update(_presence("bot", "voice-2", None, 0, is_self=True))
    assert player.destroyed
    assert isinstance(events[-1], PlayerDestroyedEvent)
    assert manager.get("guild-1") is None
    await manager.close()


@pytest.mark.asyncio
async def test_resolve_track_id_wraps_provider_errors(config, pipelines) -> None:
    loop = asyncio.get_running_loop()
    track = Track(id="sp-1", title="Song", source="spotify")

    manager = SessionManager(loop, config, pipeline_factory=pipelines)
    with pytest.raises(ResolutionError, match="No metadata provider"):
        await manager.resolve_track_id(track)

    broken = SessionManager(loop, config, pipeline_factory=pipelines, metadata=BrokenMetadata())
    with pytest.raises(ResolutionError, match="search backend unavailable"):
        await broken.resolve_track_id(track)
    assert await broken.get_related(track, 5) == []

    empty = SessionManager(loop, config, pipeline_factory=pipelines, metadata=EmptyMetadata())
    with pytest.raises(ResolutionError, match="No match found"):
        await empty.resolve_track_id(track)


@pytest.mark.asyncio
async def test_status_text_is_rate_limited(config, pipelines) -> None:
    config.voice_channel_status.enabled = True
    calls: list[tuple[str, str]] = []

    async def _status(channel_id: str, text: str) -> None:
        calls.append((channel_id, text))

    manager = SessionManager(
        asyncio.get_running_loop(), config, pipeline_factory=pipelines, status_handler=_status
    )
    player = manager.create("guild-1", "voice-1")
    track = Track(id="a", title="Song", author="Band", duration=100, requested_by="alice")
    await player.play(track)
    await _wait_until(lambda: len(calls) == 1)

    assert calls == [("voice-1", "🎶 Now Playing: Song - Band | Requested by: alice")]
    assert player.update_status() is False
    assert player.update_status(force=True) is True
    await _wait_until(lambda: len(calls) == 2)
    await manager.close()
