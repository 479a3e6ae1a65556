import httpx
import pytest

from moviebox_proxy.errors import StreamInterrupted
from moviebox_proxy.ranges import ByteRange
from moviebox_proxy.relay import (
    build_filename,
    content_disposition,
    copy_window,
    framing_headers,
    relay,
    sanitize_filename,
)
from moviebox_proxy.session import CredentialCache
from moviebox_proxy.upstream import UpstreamClient

from conftest import CDN_URL, StubUpstream


# -- Filenames ---------------------------------------------------------------

def test_build_filename_with_episode_and_quality():
    assert build_filename("Wednesday", "720p", 1, 1) == "Wednesday_S01E01_720p.mp4"


def test_build_filename_movie_without_episode():
    assert build_filename("The Dark Knight", "1080p") == "The_Dark_Knight_1080p.mp4"


def test_build_filename_needs_both_season_and_episode():
    assert build_filename("Show", "", 2, None) == "Show.mp4"


def test_build_filename_defaults_title():
    assert build_filename("", None) == "video.mp4"
    assert build_filename('<>:"/\\|?*', "480p") == "video_480p.mp4"


def test_sanitize_filename_strips_and_collapses():
    assert sanitize_filename('Spider-Man: No  Way \t Home?') == "Spider-Man_No_Way_Home"
    assert sanitize_filename("a _ b") == "a_b"


def test_content_disposition_falls_back_for_non_ascii():
    assert content_disposition("Wednesday.mp4") == 'attachment; filename="Wednesday.mp4"'
    header = content_disposition("Amélie_720p.mp4")
    assert header.startswith('attachment; filename="Amlie_720p.mp4"')
    assert "filename*=UTF-8''Am%C3%A9lie_720p.mp4" in header


def test_framing_headers_partial():
    headers = framing_headers(ByteRange(200, 299, True), 1000, partial=True, content_type="video/mp4")
    assert headers["Content-Length"] == "100"
    assert headers["Content-Range"] == "bytes 200-299/1000"
    assert headers["Accept-Ranges"] == "bytes"
    assert "Content-Disposition" not in headers


def test_framing_headers_full_download():
    headers = framing_headers(
        ByteRange(0, 999, True), 1000, partial=False, content_type="video/webm", filename="x.mp4"
    )
    assert headers["Content-Length"] == "1000"
    assert headers["Content-Type"] == "video/webm"
    assert "Content-Range" not in headers
    assert headers["Content-Disposition"] == 'attachment; filename="x.mp4"'


# -- Byte copy ---------------------------------------------------------------

async def _chunks(*parts):
    for part in parts:
        yield part


async def _collect(iterator):
    return b"".join([chunk async for chunk in iterator])


@pytest.mark.anyio
async def test_copy_window_limits_output():
    out = await _collect(copy_window(_chunks(b"abcd", b"efgh", b"ijkl"), limit=6))
    assert out == b"abcdef"


@pytest.mark.anyio
async def test_copy_window_skips_leading_bytes():
    out = await _collect(copy_window(_chunks(b"abcd", b"efgh", b"ijkl"), skip=5, limit=4))
    assert out == b"fghi"


@pytest.mark.anyio
async def test_copy_window_stops_when_client_disconnects():
    polls = iter([False, False, True])

    async def disconnected():
        return next(polls)

    out = await _collect(copy_window(_chunks(b"ab", b"cd", b"ef", b"gh"), limit=8, is_disconnected=disconnected))
    assert out == b"abcd"


# -- Relay -------------------------------------------------------------------

@pytest.fixture
async def cdn(proxy_settings):
    stub = StubUpstream()

    async def no_cookies():
        return []

    async with httpx.AsyncClient(transport=httpx.MockTransport(stub.handler)) as http:
        yield stub, UpstreamClient(http, proxy_settings, CredentialCache(no_cookies))


@pytest.mark.anyio
async def test_relay_forwards_window_and_releases_upstream(cdn):
    stub, client = cdn
    window = ByteRange(200, 299, True)
    upstream = await client.request(CDN_URL, byte_range=window)

    response = relay(upstream, window, 1000, partial=True, content_type="video/mp4", chunk_size=30)

    assert response.status_code == 206
    assert response.headers["content-range"] == "bytes 200-299/1000"
    assert await _collect(response.body_iterator) == stub.payload[200:300]
    assert upstream.closed
    assert stub.open_streams == 0


@pytest.mark.anyio
async def test_client_disconnect_releases_upstream_within_one_chunk(cdn):
    stub, client = cdn
    window = ByteRange(0, 999, True)
    upstream = await client.request(CDN_URL)
    polls = []

    async def disconnected():
        polls.append(True)
        return len(polls) > 2

    response = relay(upstream, window, 1000, partial=False, content_type="video/mp4", is_disconnected=disconnected)
    body = await _collect(response.body_iterator)

    assert body == stub.payload[:200]
    assert upstream.closed
    assert stub.open_streams == 0


@pytest.mark.anyio
async def test_cancelled_response_closes_upstream(cdn):
    stub, client = cdn
    window = ByteRange(0, 999, True)
    upstream = await client.request(CDN_URL)
    response = relay(upstream, window, 1000, partial=False, content_type="video/mp4")

    iterator = response.body_iterator
    first = await iterator.__anext__()
    assert first == stub.payload[:100]
    assert stub.open_streams == 1

    # What the server does with the body iterator when the client goes away.
    await iterator.aclose()

    assert upstream.closed
    assert stub.open_streams == 0


@pytest.mark.anyio
async def test_upstream_failure_mid_body_interrupts_stream(cdn):
    stub, client = cdn
    stub.fail_after = 300
    window = ByteRange(0, 999, True)
    upstream = await client.request(CDN_URL)
    response = relay(upstream, window, 1000, partial=False, content_type="video/mp4")

    received = []
    with pytest.raises(StreamInterrupted):
        async for chunk in response.body_iterator:
            received.append(chunk)

    assert b"".join(received) == stub.payload[:300]
    assert upstream.closed
