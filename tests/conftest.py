"""Test configuration: isolated settings and a stub catalog/CDN upstream."""

import os

# Never pick up a developer's .env; must be set before any package imports
os.environ["MOVIEBOX_ENV_FILE"] = "tests/.env.does-not-exist"

import httpx  # noqa: E402
import pytest  # noqa: E402
from httpx import ASGITransport, AsyncClient  # noqa: E402

from moviebox_proxy.config import Settings  # noqa: E402
from moviebox_proxy.main import create_app  # noqa: E402

CATALOG_HOST = "h5.aoneroom.com"
CDN_URL = "https://bcdnw.hakunaymatata.com/resource/2f1c/wednesday-720p.mp4"
PAYLOAD = bytes(i % 251 for i in range(1000))
SESSION_COOKIES = ("account=abc123; Path=/; Max-Age=3600; HttpOnly", "i18n_lang=en; Path=/")


class TrackedStream(httpx.AsyncByteStream):
    """Response body that records whether it was closed."""

    def __init__(self, stub: "StubUpstream", body: bytes, fail_after: int | None = None):
        self._stub = stub
        self._body = body
        self._fail_after = fail_after
        self.closed = False
        stub.streams.append(self)

    async def __aiter__(self):
        size = self._stub.chunk_size
        for offset in range(0, len(self._body), size):
            if self._fail_after is not None and offset >= self._fail_after:
                raise httpx.ReadError("connection reset by peer")
            yield self._body[offset:offset + size]

    async def aclose(self):
        self.closed = True


class StubUpstream:
    """In-memory stand-in for the catalog API and the video CDN."""

    def __init__(self, payload: bytes = PAYLOAD):
        self.payload = payload
        self.chunk_size = 100
        self.calls: list[httpx.Request] = []
        self.streams: list[TrackedStream] = []
        # CDN behaviour knobs
        self.head_status = 200
        self.head_error: Exception | None = None
        self.honor_range = True
        self.fail_after: int | None = None
        self.get_status: int | None = None
        self.get_error: Exception | None = None
        self.content_type: str | None = "video/mp4"
        # Catalog behaviour knobs
        self.cookies = list(SESSION_COOKIES)
        self.catalog: dict[str, object] = {}

    def requests_to(self, host: str, method: str | None = None) -> list[httpx.Request]:
        return [
            r for r in self.calls
            if r.url.host == host and (method is None or r.method == method)
        ]

    @property
    def open_streams(self) -> int:
        return sum(1 for s in self.streams if not s.closed)

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.calls.append(request)
        if request.url.host == CATALOG_HOST:
            return self._catalog(request)
        return self._cdn(request)

    def _catalog(self, request: httpx.Request) -> httpx.Response:
        if request.url.path.endswith("/get-latest-app-pkgs"):
            headers = [("Set-Cookie", c) for c in self.cookies]
            return httpx.Response(200, headers=headers, json={"code": 0, "data": {}})
        body = self.catalog.get(request.url.path)
        if body is None:
            return httpx.Response(404, json={"code": 404, "message": "not found"})
        if callable(body):
            body = body(request)
        return httpx.Response(200, json=body)

    def _cdn(self, request: httpx.Request) -> httpx.Response:
        total = len(self.payload)
        if request.method == "HEAD":
            if self.head_error is not None:
                raise self.head_error
            if self.head_status != 200:
                return httpx.Response(self.head_status)
            return httpx.Response(200, headers=self._media_headers(total))

        if self.get_error is not None:
            raise self.get_error
        if self.get_status is not None:
            return httpx.Response(self.get_status, json={"error": "rejected"})

        range_header = request.headers.get("range")
        if range_header and self.honor_range:
            start, end = (int(x) for x in range_header.removeprefix("bytes=").split("-"))
            body = self.payload[start:end + 1]
            headers = self._media_headers(len(body))
            headers["Content-Range"] = f"bytes {start}-{end}/{total}"
            return httpx.Response(206, headers=headers, stream=TrackedStream(self, body, self.fail_after))
        return httpx.Response(
            200,
            headers=self._media_headers(total),
            stream=TrackedStream(self, self.payload, self.fail_after),
        )

    def _media_headers(self, length: int) -> dict[str, str]:
        headers = {"Content-Length": str(length)}
        if self.content_type is not None:
            headers["Content-Type"] = self.content_type
        return headers


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
def proxy_settings():
    return Settings(cors_allowed_origins="*")


@pytest.fixture
def stub():
    return StubUpstream()


@pytest.fixture
async def api_client(stub, proxy_settings):
    app = create_app(proxy_settings, transport=httpx.MockTransport(stub.handler))
    async with app.router.lifespan_context(app):
        transport = ASGITransport(app=app)
        async with AsyncClient(transport=transport, base_url="http://test") as client:
            yield client
