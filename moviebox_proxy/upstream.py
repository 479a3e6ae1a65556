"""Authenticated HTTP calls to the catalog API and the video CDN.

The two upstreams trust callers differently: the catalog wants the session
cookie from :mod:`moviebox_proxy.session`, the CDN only checks that
``Referer``/``Origin`` name the web player.  :class:`UpstreamClient` picks
the header set by :class:`Target` and never sends the cookie to the CDN.

Responses come back unread (``stream=True``).  Whoever receives an
:class:`UpstreamResult` owns it and must ``aclose()`` it.
"""

import json as _json
import logging
from enum import Enum
from typing import Any, AsyncIterator, Mapping

import httpx

from moviebox_proxy.config import Settings
from moviebox_proxy.errors import UpstreamError, UpstreamUnreachable
from moviebox_proxy.ranges import ByteRange
from moviebox_proxy.session import CredentialCache

logger = logging.getLogger("upstream")


class Target(str, Enum):
    CATALOG = "catalog"
    CDN = "cdn"


def merge_headers(*layers: Mapping[str, str] | None) -> dict[str, str]:
    """Merge header layers, lowest precedence first.

    Names compare case-insensitively; a later layer replaces both the value
    and the spelling of an earlier one.  ``None`` layers are skipped.  The
    proxy calls it as ``merge_headers(base, mode, overrides)``.
    """
    merged: dict[str, tuple[str, str]] = {}
    for layer in layers:
        if not layer:
            continue
        for name, value in layer.items():
            merged[name.lower()] = (name, value)
    return dict(merged.values())


def base_headers(settings: Settings) -> dict[str, str]:
    return {
        "User-Agent": settings.client_user_agent,
        "Accept-Language": settings.accept_language,
        "Connection": "keep-alive",
    }


def catalog_headers(settings: Settings) -> dict[str, str]:
    ip = settings.spoofed_client_ip
    return {
        "Accept": "application/json",
        "X-Client-Info": _json.dumps({"timezone": settings.client_timezone}, separators=(",", ":")),
        "Referer": settings.api_base_url,
        "X-Forwarded-For": ip,
        "CF-Connecting-IP": ip,
        "X-Real-IP": ip,
    }


def cdn_headers(settings: Settings) -> dict[str, str]:
    # identity keeps Content-Length and Range offsets in raw bytes
    return {
        "Referer": settings.player_origin.rstrip("/") + "/",
        "Origin": settings.player_origin.rstrip("/"),
        "Accept-Encoding": "identity",
    }


class UpstreamResult:
    """Status, headers and unread body of one upstream response."""

    def __init__(self, response: httpx.Response):
        self._response = response
        self._closed = False

    @property
    def url(self) -> str:
        return str(self._response.request.url)

    @property
    def status_code(self) -> int:
        return self._response.status_code

    @property
    def headers(self) -> httpx.Headers:
        return self._response.headers

    @property
    def ok(self) -> bool:
        return 200 <= self._response.status_code < 300

    @property
    def closed(self) -> bool:
        return self._closed

    def iter_body(self, chunk_size: int | None = None) -> AsyncIterator[bytes]:
        """Body bytes exactly as sent by upstream, without content decoding."""
        return self._response.aiter_raw(chunk_size)

    async def aread(self) -> bytes:
        return await self._response.aread()

    def json(self) -> Any:
        return self._response.json()

    async def aclose(self):
        if self._closed:
            return
        self._closed = True
        await self._response.aclose()


class UpstreamClient:
    def __init__(self, http: httpx.AsyncClient, settings: Settings, credentials: CredentialCache):
        self._http = http
        self._settings = settings
        self._credentials = credentials
        self._base = base_headers(settings)

    @property
    def credentials(self) -> CredentialCache:
        return self._credentials

    async def _mode_headers(self, target: Target) -> dict[str, str]:
        if target is Target.CDN:
            return cdn_headers(self._settings)
        headers = catalog_headers(self._settings)
        cred = await self._credentials.get_credential()
        if cred is not None:
            headers["Cookie"] = cred.value
        return headers

    async def request(
        self,
        url: str,
        *,
        method: str = "GET",
        target: Target = Target.CDN,
        headers: Mapping[str, str] | None = None,
        byte_range: ByteRange | None = None,
        params: Mapping[str, Any] | None = None,
        payload: Any = None,
        timeout: float | httpx.Timeout | None = None,
    ) -> UpstreamResult:
        """Send one request and return the response with its body unread.

        Non-2xx statuses are returned as-is.  Connection-level failures raise
        :class:`UpstreamUnreachable`.  ``timeout=None`` keeps the client default.
        """
        merged = merge_headers(self._base, await self._mode_headers(target), headers)
        if byte_range is not None:
            merged["Range"] = f"bytes={byte_range.start}-{byte_range.end}"

        kwargs: dict[str, Any] = {"headers": merged}
        if params is not None:
            kwargs["params"] = params
        if payload is not None:
            kwargs["json"] = payload
        if timeout is not None:
            kwargs["timeout"] = timeout

        req = self._http.build_request(method, url, **kwargs)
        try:
            response = await self._http.send(req, stream=True)
        except httpx.TransportError as e:
            logger.error("%s %s unreachable: %s", method, url, e)
            raise UpstreamUnreachable(url, detail=str(e) or type(e).__name__) from e
        return UpstreamResult(response)

    async def catalog_json(
        self,
        path: str,
        *,
        method: str = "GET",
        params: Mapping[str, Any] | None = None,
        payload: Any = None,
        headers: Mapping[str, str] | None = None,
    ) -> Any:
        """Call a catalog endpoint and return its decoded JSON body."""
        url = self._settings.api_base_url + path
        result = await self.request(
            url,
            method=method,
            target=Target.CATALOG,
            headers=headers,
            params=params,
            payload=payload,
        )
        try:
            if not result.ok:
                logger.warning("Catalog %s %s returned %d", method, path, result.status_code)
                raise UpstreamError(url, result.status_code)
            await result.aread()
            return result.json()
        finally:
            await result.aclose()
