"""Serve the audio of a playback engine to HTTP listeners."""

from __future__ import annotations

import asyncio
import logging

from aiohttp import hdrs, web

from aiostreamify.models.types import OutputFormat

from .engine import PlaybackEngine

logger = logging.getLogger(__name__)


async def stream_response(
    request: web.Request,
    engine: PlaybackEngine,
    output_format: OutputFormat = OutputFormat.OPUS,
) -> web.StreamResponse:
    """
    Stream the engine's audio to the requesting client.

    The response stays open until the client disconnects or the engine is closed.
    Route registration is left to the application, for example:

        app.router.add_get("/listen/{session}", handler)
    """
    response = web.StreamResponse(
        headers={
            hdrs.CONTENT_TYPE: output_format.content_type,
            hdrs.CACHE_CONTROL: "no-cache",
        }
    )
    response.enable_chunked_encoding()
    await response.prepare(request)

    disconnected = asyncio.Event()

    async def _write(chunk: bytes) -> None:
        try:
            await response.write(chunk)
        except ConnectionResetError:
            disconnected.set()
            raise

    remove_sink = engine.add_sink(_write)
    logger.debug("HTTP listener %s attached", request.remote)
    waiters = [
        asyncio.ensure_future(disconnected.wait()),
        asyncio.ensure_future(engine.wait_closed()),
    ]
    try:
        await asyncio.wait(waiters, return_when=asyncio.FIRST_COMPLETED)
    finally:
        for waiter in waiters:
            waiter.cancel()
        remove_sink()
        logger.debug("HTTP listener %s detached", request.remote)

    if not disconnected.is_set():
        await response.write_eof()
    return response
