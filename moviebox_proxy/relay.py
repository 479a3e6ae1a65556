"""Relay an upstream media body to the client.

Headers are fixed before the first body byte: once ``StreamingResponse``
starts sending, a failure can only drop the connection.  The body is copied
one upstream chunk at a time, so a slow client slows the upstream reads and
nothing is buffered beyond the chunk in flight.
"""

import logging
import re
from typing import AsyncIterator, Awaitable, Callable
from urllib.parse import quote

import httpx
from fastapi.responses import StreamingResponse

from moviebox_proxy.errors import StreamInterrupted
from moviebox_proxy.ranges import ByteRange
from moviebox_proxy.upstream import UpstreamResult

logger = logging.getLogger("relay")

IsDisconnected = Callable[[], Awaitable[bool]]

_UNSAFE_FILENAME = re.compile(r'[<>:"/\\|?*]')
_WHITESPACE = re.compile(r"\s+")
_UNDERSCORES = re.compile(r"_{2,}")


def sanitize_filename(name: str) -> str:
    name = _UNSAFE_FILENAME.sub("", name)
    name = _WHITESPACE.sub("_", name)
    name = _UNDERSCORES.sub("_", name)
    return name.strip()


def build_filename(
    title: str | None,
    quality: str | None = None,
    season: int | None = None,
    episode: int | None = None,
    extension: str = "mp4",
) -> str:
    """``Wednesday``, ``720p``, 1, 1 -> ``Wednesday_S01E01_720p.mp4``."""
    filename = sanitize_filename(title or "") or "video"
    if season is not None and episode is not None:
        filename += f"_S{season:02d}E{episode:02d}"
    quality = sanitize_filename(quality or "")
    if quality:
        filename += f"_{quality}"
    return f"{filename}.{extension}"


def content_disposition(filename: str) -> str:
    try:
        filename.encode("ascii")
    except UnicodeEncodeError:
        fallback = filename.encode("ascii", "ignore").decode("ascii") or "video.mp4"
        return f"attachment; filename=\"{fallback}\"; filename*=UTF-8''{quote(filename)}"
    return f'attachment; filename="{filename}"'


def framing_headers(
    byte_range: ByteRange,
    total_length: int,
    *,
    partial: bool,
    content_type: str,
    filename: str | None = None,
) -> dict[str, str]:
    headers = {
        "Content-Type": content_type,
        "Content-Length": str(byte_range.length),
        "Accept-Ranges": "bytes",
        "Cache-Control": "no-cache",
    }
    if partial:
        headers["Content-Range"] = byte_range.content_range(total_length)
    if filename is not None:
        headers["Content-Disposition"] = content_disposition(filename)
    return headers


async def copy_window(
    source: AsyncIterator[bytes],
    *,
    limit: int,
    skip: int = 0,
    is_disconnected: IsDisconnected | None = None,
) -> AsyncIterator[bytes]:
    """Yield at most ``limit`` bytes from ``source`` after dropping ``skip``.

    ``is_disconnected`` is polled before every chunk; once it reports true
    the copy stops.
    """
    sent = 0
    async for chunk in source:
        if is_disconnected is not None and await is_disconnected():
            logger.info("Client disconnected after %d bytes", sent)
            return
        if skip:
            if len(chunk) <= skip:
                skip -= len(chunk)
                continue
            chunk = chunk[skip:]
            skip = 0
        remaining = limit - sent
        if len(chunk) >= remaining:
            if remaining:
                yield chunk[:remaining]
            return
        sent += len(chunk)
        yield chunk


async def _relay_body(
    upstream: UpstreamResult,
    byte_range: ByteRange,
    *,
    skip: int,
    chunk_size: int | None,
    is_disconnected: IsDisconnected | None,
) -> AsyncIterator[bytes]:
    try:
        async for chunk in copy_window(
            upstream.iter_body(chunk_size),
            limit=byte_range.length,
            skip=skip,
            is_disconnected=is_disconnected,
        ):
            yield chunk
    except httpx.HTTPError as e:
        logger.error("Upstream stream failed for %s: %s", upstream.url, e)
        raise StreamInterrupted("Upstream stream failed", detail=str(e)) from e
    finally:
        await upstream.aclose()


def relay(
    upstream: UpstreamResult,
    byte_range: ByteRange,
    total_length: int,
    *,
    partial: bool,
    content_type: str,
    is_disconnected: IsDisconnected | None = None,
    filename: str | None = None,
    upstream_offset: int = 0,
    chunk_size: int | None = None,
) -> StreamingResponse:
    """Build the streaming response for an already-negotiated window.

    ``upstream_offset`` is the number of leading upstream bytes to discard,
    used when the CDN ignored the Range header and sent the whole file.
    """
    headers = framing_headers(
        byte_range,
        total_length,
        partial=partial,
        content_type=content_type,
        filename=filename,
    )
    body = _relay_body(
        upstream,
        byte_range,
        skip=upstream_offset,
        chunk_size=chunk_size,
        is_disconnected=is_disconnected,
    )
    return StreamingResponse(
        body,
        status_code=206 if partial else 200,
        headers=headers,
        media_type=content_type,
    )
