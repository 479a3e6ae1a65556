"""Range-aware stream and download proxy for the video CDN.

``/api/stream`` serves inline playback with seeking, ``/api/download``
serves the same bytes as a resumable attachment.  Both go through
:class:`ProxyOrchestrator`:

1. the target URL must belong to an allowed CDN origin (otherwise 400, and
   nothing is fetched);
2. a metadata probe learns the total length and content type, with HEAD
   first and a ``Range: bytes=0-0`` GET for CDNs that reject HEAD;
3. the client ``Range`` header is negotiated against that length;
4. the window is fetched and relayed.

The orchestrator is the only place where failure conditions become HTTP
statuses.
"""

import logging
import re
from dataclasses import dataclass, field
from enum import Enum

import httpx
from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse, Response

from moviebox_proxy.config import Settings
from moviebox_proxy.errors import (
    InvalidTarget,
    MetadataUnavailable,
    ProxyError,
    RangeUnsatisfiable,
    UpstreamError,
    UpstreamUnreachable,
)
from moviebox_proxy.ranges import ByteRange, negotiate
from moviebox_proxy.relay import IsDisconnected, build_filename, relay
from moviebox_proxy.upstream import UpstreamClient, UpstreamResult

logger = logging.getLogger("proxy")

router = APIRouter(prefix="/api")

_CONTENT_RANGE_TOTAL = re.compile(r"^\s*bytes\s+\d+-\d+/(\d+)\s*$", re.IGNORECASE)
_FIRST_BYTE = ByteRange(0, 0, satisfiable=True)


class Mode(str, Enum):
    STREAM = "stream"
    DOWNLOAD = "download"


@dataclass(frozen=True)
class MediaMetadata:
    title: str = "video"
    quality: str = ""
    season: int | None = None
    episode: int | None = None


@dataclass(frozen=True)
class ProxyRequest:
    target_url: str
    mode: Mode
    range_header: str | None = None
    metadata: MediaMetadata = field(default_factory=MediaMetadata)


@dataclass(frozen=True)
class ResourceDescriptor:
    url: str
    total_length: int
    content_type: str


def is_allowed_target(url: str, origins: list[str]) -> bool:
    """True when ``url``'s scheme, host and port match an allowed origin."""
    try:
        parsed = httpx.URL(url)
    except httpx.InvalidURL:
        return False
    if not parsed.scheme or not parsed.host or parsed.userinfo:
        return False
    origin = f"{parsed.scheme}://{parsed.host}"
    if parsed.port is not None:
        origin += f":{parsed.port}"
    return origin in origins


def _is_digits(value: str | None) -> bool:
    return value is not None and value.strip().isascii() and value.strip().isdigit()


def _parse_length(value: str | None) -> int | None:
    return int(value) if _is_digits(value) else None


def total_from_content_range(value: str | None) -> int | None:
    """``"bytes 0-0/12345"`` -> 12345.  Unknown totals (``*``) give None."""
    if not value:
        return None
    m = _CONTENT_RANGE_TOTAL.match(value)
    return int(m.group(1)) if m else None


def _optional_int(value: str | None) -> int | None:
    if not _is_digits(value):
        return None
    number = int(value)
    return number if number > 0 else None


class ProxyOrchestrator:
    def __init__(self, upstream: UpstreamClient, settings: Settings):
        self._upstream = upstream
        self._settings = settings

    # -- Entry points ---------------------------------------------------------

    async def handle_stream(self, request: ProxyRequest, is_disconnected: IsDisconnected | None = None) -> Response:
        return await self._serve(request, is_disconnected, filename=None)

    async def handle_download(self, request: ProxyRequest, is_disconnected: IsDisconnected | None = None) -> Response:
        meta = request.metadata
        filename = build_filename(meta.title, meta.quality, meta.season, meta.episode)
        logger.info("Download filename: %s", filename)
        return await self._serve(request, is_disconnected, filename=filename)

    async def _serve(
        self,
        request: ProxyRequest,
        is_disconnected: IsDisconnected | None,
        filename: str | None,
    ) -> Response:
        try:
            self.check_target(request)
            resource = await self.probe(request.target_url)
            byte_range = negotiate(request.range_header, resource.total_length)
            if not byte_range.satisfiable:
                logger.info(
                    "Unsatisfiable range %r for %d bytes", request.range_header, resource.total_length
                )
                raise RangeUnsatisfiable(resource.total_length)
            partial = request.range_header is not None
            upstream, offset = await self.fetch_window(resource.url, byte_range, partial=partial)
        except ProxyError as e:
            return self.error_response(e)

        logger.info(
            "Relaying %s bytes %d-%d/%d (%s)",
            request.mode.value,
            byte_range.start,
            byte_range.end,
            resource.total_length,
            "partial" if partial else "full",
        )
        return relay(
            upstream,
            byte_range,
            resource.total_length,
            partial=partial,
            content_type=resource.content_type,
            is_disconnected=is_disconnected,
            filename=filename,
            upstream_offset=offset,
        )

    # -- Steps ----------------------------------------------------------------

    def check_target(self, request: ProxyRequest):
        if not is_allowed_target(request.target_url, self._settings.cdn_origins):
            logger.warning("Rejected %s target: %.100s", request.mode.value, request.target_url)
            raise InvalidTarget(f"Invalid {request.mode.value} URL")

    async def probe(self, url: str) -> ResourceDescriptor:
        """Learn total length and content type of ``url``.

        HEAD first; when HEAD is unreachable, rejected, or lacks a length,
        a one-byte ranged GET is tried and its ``Content-Range`` total used.
        """
        try:
            head = await self._upstream.request(url, method="HEAD", timeout=self._settings.probe_timeout_s)
        except UpstreamUnreachable:
            logger.warning("HEAD probe unreachable, retrying with ranged GET: %.100s", url)
        else:
            try:
                length = _parse_length(head.headers.get("content-length")) if head.ok else None
                if length:
                    return self._descriptor(url, length, head)
                logger.warning(
                    "HEAD probe unusable (HTTP %d), retrying with ranged GET: %.100s",
                    head.status_code,
                    url,
                )
            finally:
                await head.aclose()

        probe = await self._upstream.request(url, byte_range=_FIRST_BYTE, timeout=self._settings.probe_timeout_s)
        try:
            length = None
            if probe.ok:
                length = total_from_content_range(probe.headers.get("content-range"))
                if length is None and probe.status_code == 200:
                    length = _parse_length(probe.headers.get("content-length"))
            if not length:
                raise MetadataUnavailable(url, detail=f"upstream returned HTTP {probe.status_code}")
            return self._descriptor(url, length, probe)
        finally:
            await probe.aclose()

    def _descriptor(self, url: str, length: int, result: UpstreamResult) -> ResourceDescriptor:
        content_type = result.headers.get("content-type") or self._settings.default_content_type
        return ResourceDescriptor(url=url, total_length=length, content_type=content_type)

    async def fetch_window(
        self, url: str, byte_range: ByteRange, *, partial: bool
    ) -> tuple[UpstreamResult, int]:
        """Open the body for ``byte_range``.

        Returns the unread result and how many leading bytes of it precede
        the window (non-zero only when the CDN ignored Range and sent 200).
        """
        # Body reads are unbounded; only connecting is time-limited.
        timeout = httpx.Timeout(self._settings.probe_timeout_s, read=None, write=None)
        result = await self._upstream.request(
            url,
            byte_range=byte_range if partial else None,
            timeout=timeout,
        )
        if not result.ok:
            await result.aclose()
            logger.error("Ranged fetch returned HTTP %d: %.100s", result.status_code, url)
            raise UpstreamError(url, result.status_code)
        offset = byte_range.start if partial and result.status_code == 200 else 0
        return result, offset

    @staticmethod
    def error_response(exc: ProxyError) -> Response:
        if isinstance(exc, RangeUnsatisfiable):
            return Response(
                status_code=exc.status_code,
                headers={"Content-Range": f"bytes */{exc.total_length}"},
            )
        return JSONResponse(exc.to_payload(), status_code=exc.status_code)


# -- Routes -------------------------------------------------------------------

@router.get("/stream")
async def stream(request: Request, url: str = ""):
    """Proxy a CDN video for inline playback, honoring Range for seeking."""
    proxy_request = ProxyRequest(
        target_url=url,
        mode=Mode.STREAM,
        range_header=request.headers.get("range") or None,
    )
    return await request.app.state.orchestrator.handle_stream(proxy_request, request.is_disconnected)


@router.get("/download")
async def download(
    request: Request,
    url: str = "",
    title: str = "video",
    quality: str = "",
    season: str | None = None,
    episode: str | None = None,
):
    """Proxy a CDN video as a resumable attachment with a readable filename."""
    proxy_request = ProxyRequest(
        target_url=url,
        mode=Mode.DOWNLOAD,
        range_header=request.headers.get("range") or None,
        metadata=MediaMetadata(
            title=title,
            quality=quality,
            season=_optional_int(season),
            episode=_optional_int(episode),
        ),
    )
    return await request.app.state.orchestrator.handle_download(proxy_request, request.is_disconnected)
