from __future__ import annotations

import asyncio
import socket
from collections.abc import Callable
from types import SimpleNamespace

import pytest
from aiohttp import ClientSession, web

from aiostreamify.models.track import Track
from aiostreamify.models.types import OutputFormat
from aiostreamify.server.engine import PlaybackEngine
from aiostreamify.server.events import EngineErrorEvent, EngineEvent, EngineIdleEvent
from aiostreamify.server.http import stream_response
from aiostreamify.server.pipeline import PipelineStream


def _get_free_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


async def _wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    async with asyncio.timeout(timeout):
        while not predicate():
            await asyncio.sleep(0.01)


def _stream(track_id: str = "a") -> tuple[PipelineStream, asyncio.Queue[bytes | None]]:
    chunks: asyncio.Queue[bytes | None] = asyncio.Queue()
    owner = SimpleNamespace(track=Track(id=track_id))
    return PipelineStream(owner, chunks), chunks  # type: ignore[arg-type]


class FailingStream:
    track = Track(id="broken")

    async def read(self) -> bytes:
        raise RuntimeError("decoder exploded")


@pytest.mark.asyncio
async def test_engine_forwards_chunks_and_signals_idle_once() -> None:
    engine = PlaybackEngine()
    received: list[bytes] = []
    events: list[EngineEvent] = []
    engine.add_event_listener(lambda _engine, event: events.append(event))

    async def _sink(chunk: bytes) -> None:
        received.append(chunk)

    engine.add_sink(_sink)
    stream, chunks = _stream()
    engine.play(stream)
    chunks.put_nowait(b"one")
    chunks.put_nowait(b"two")
    chunks.put_nowait(None)

    await _wait_until(lambda: bool(events))
    await asyncio.sleep(0.02)
    assert received == [b"one", b"two"]
    assert events == [EngineIdleEvent(stream)]
    assert engine.stream is None
    await engine.close()


@pytest.mark.asyncio
async def test_engine_waits_for_sinks_and_unpause() -> None:
    engine = PlaybackEngine()
    received: list[bytes] = []

    async def _sink(chunk: bytes) -> None:
        received.append(chunk)

    stream, chunks = _stream()
    engine.play(stream)
    chunks.put_nowait(b"one")
    await asyncio.sleep(0.02)
    assert received == []

    remove = engine.add_sink(_sink)
    await _wait_until(lambda: received == [b"one"])

    assert engine.pause() is True
    chunks.put_nowait(b"two")
    await asyncio.sleep(0.02)
    assert received == [b"one"]

    assert engine.unpause() is True
    await _wait_until(lambda: received == [b"one", b"two"])
    remove()
    assert engine.sink_count == 0
    await engine.close()


@pytest.mark.asyncio
async def test_engine_stop_signals_idle_for_stopped_stream() -> None:
    engine = PlaybackEngine()
    events: list[EngineEvent] = []
    engine.add_event_listener(lambda _engine, event: events.append(event))
    stream, _ = _stream()

    engine.play(stream)
    assert engine.stop() is True
    assert engine.stop() is False
    await _wait_until(lambda: bool(events))
    assert events == [EngineIdleEvent(stream)]
    await engine.close()


@pytest.mark.asyncio
async def test_engine_signals_error_and_detaches_broken_sink() -> None:
    engine = PlaybackEngine()
    events: list[EngineEvent] = []
    engine.add_event_listener(lambda _engine, event: events.append(event))

    async def _broken(chunk: bytes) -> None:
        raise ConnectionResetError("gone")

    engine.add_sink(_broken)
    stream, chunks = _stream()
    engine.play(stream)
    chunks.put_nowait(b"one")
    await _wait_until(lambda: engine.sink_count == 0)

    failing = FailingStream()
    engine.add_sink(_noop_sink)
    engine.play(failing)  # type: ignore[arg-type]
    await _wait_until(lambda: any(isinstance(e, EngineErrorEvent) for e in events))

    error_event = next(e for e in events if isinstance(e, EngineErrorEvent))
    assert error_event.stream is failing
    assert str(error_event.error) == "decoder exploded"
    assert len([e for e in events if e.stream is failing]) == 1
    await engine.close()


async def _noop_sink(chunk: bytes) -> None:
    return None


@pytest.mark.asyncio
async def test_http_listener_receives_audio() -> None:
    engine = PlaybackEngine()

    async def _handler(request: web.Request) -> web.StreamResponse:
        return await stream_response(request, engine, OutputFormat.MP3)

    app = web.Application()
    app.router.add_get("/listen", _handler)
    runner = web.AppRunner(app)
    await runner.setup()
    port = _get_free_port()
    site = web.TCPSite(runner, "127.0.0.1", port)
    await site.start()

    stream, chunks = _stream()
    engine.play(stream)
    try:
        async with ClientSession() as session:
            async with session.get(f"http://127.0.0.1:{port}/listen") as response:
                assert response.status == 200
                assert response.headers["Content-Type"] == "audio/mpeg"
                await _wait_until(lambda: engine.sink_count == 1)
                chunks.put_nowait(b"frame-one")
                data = await asyncio.wait_for(response.content.readexactly(9), timeout=2)
                assert data == b"frame-one"

                await engine.close()
                assert await asyncio.wait_for(response.content.read(), timeout=2) == b""
        await _wait_until(lambda: engine.sink_count == 0)
    finally:
        await runner.cleanup()
