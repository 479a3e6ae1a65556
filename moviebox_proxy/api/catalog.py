"""Catalog JSON endpoints: homepage, trending, search, info and sources.

Thin reshaping over the catalog API.  Every call goes through
``UpstreamClient.catalog_json`` and therefore carries the cached session
cookie.  ``/api/sources`` is where the stream and download proxy URLs handed
to clients are built.
"""

import logging
from enum import IntEnum
from typing import Any
from urllib.parse import urlencode

import httpx
from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from moviebox_proxy.errors import ProxyError
from moviebox_proxy.upstream import UpstreamClient

logger = logging.getLogger("catalog")

router = APIRouter(prefix="/api")

_HOME = "/wefeed-h5-bff/web/home"
_TRENDING = "/wefeed-h5-bff/web/subject/trending"
_SEARCH = "/wefeed-h5-bff/web/subject/search"
_DETAIL = "/wefeed-h5-bff/web/subject/detail"
_DOWNLOADS = "/wefeed-h5-bff/web/subject/download"

# Failures the catalog layer turns into a 500 envelope.
_CATALOG_ERRORS = (ProxyError, httpx.HTTPError, ValueError)


class SubjectType(IntEnum):
    ALL = 0
    MOVIES = 1
    TV_SERIES = 2
    MUSIC = 6


def unwrap(payload: Any) -> Any:
    """Strip the catalog's ``{"data": ...}`` envelope when present."""
    if isinstance(payload, dict) and payload.get("data"):
        return payload["data"]
    return payload


def add_thumbnail(item: dict):
    """Expose ``cover.url`` (else ``stills.url``) as ``thumbnail``."""
    for key in ("cover", "stills"):
        image = item.get(key)
        if isinstance(image, dict) and image.get("url"):
            item["thumbnail"] = image["url"]
            return


def build_source_links(
    base_url: str,
    downloads: list[dict],
    title: str,
    season: int = 0,
    episode: int = 0,
) -> list[dict]:
    """Turn catalog download entries into proxied stream/download links."""
    is_episode = season > 0 and episode > 0
    sources = []
    for file in downloads:
        quality = file.get("resolution") or "Unknown"
        params = {"url": file.get("url", ""), "title": title, "quality": quality}
        if is_episode:
            params["season"] = season
            params["episode"] = episode
        sources.append({
            "id": file.get("id"),
            "quality": quality,
            "directUrl": file.get("url"),
            "downloadUrl": f"{base_url}/api/download?{urlencode(params)}",
            "streamUrl": f"{base_url}/api/stream?{urlencode({'url': file.get('url', '')})}",
            "size": file.get("size"),
            "format": "mp4",
        })
    return sources


def _base_url(request: Request) -> str:
    proto = request.headers.get("x-forwarded-proto") or request.url.scheme
    host = request.headers.get("host") or request.url.netloc
    return f"{proto}://{host}"


def _upstream(request: Request) -> UpstreamClient:
    return request.app.state.upstream


def _success(data: Any) -> dict:
    return {"status": "success", "data": data}


def _failure(message: str, error: Exception | str) -> JSONResponse:
    if isinstance(error, ProxyError):
        detail = error.detail or error.message
    else:
        detail = str(error)
    return JSONResponse({"status": "error", "message": message, "error": detail}, status_code=500)


@router.get("/homepage")
async def homepage(request: Request):
    try:
        content = unwrap(await _upstream(request).catalog_json(_HOME))
    except _CATALOG_ERRORS as e:
        logger.error("Homepage error: %s", e)
        return _failure("Failed to fetch homepage content", e)
    return _success(content)


@router.get("/trending")
async def trending(request: Request, page: int = 0, perPage: int = 18):
    params = {"page": page, "perPage": perPage, "uid": request.app.state.settings.trending_uid}
    try:
        content = unwrap(await _upstream(request).catalog_json(_TRENDING, params=params))
    except _CATALOG_ERRORS as e:
        logger.error("Trending error: %s", e)
        return _failure("Failed to fetch trending content", e)
    return _success(content)


@router.get("/search/{query}")
async def search(request: Request, query: str, page: int = 1, perPage: int = 24, type: int = 0):
    payload = {"keyword": query, "page": page, "perPage": perPage, "subjectType": type}
    try:
        content = unwrap(await _upstream(request).catalog_json(_SEARCH, method="POST", payload=payload))
    except _CATALOG_ERRORS as e:
        logger.error("Search error: %s", e)
        return _failure("Failed to search content", e)

    items = content.get("items") if isinstance(content, dict) else None
    if items:
        if type != SubjectType.ALL:
            items = [item for item in items if item.get("subjectType") == type]
            content["items"] = items
        for item in items:
            add_thumbnail(item)
    return _success(content)


@router.get("/info/{movie_id}")
async def info(request: Request, movie_id: str):
    try:
        content = unwrap(await _upstream(request).catalog_json(_DETAIL, params={"subjectId": movie_id}))
    except _CATALOG_ERRORS as e:
        logger.error("Info error: %s", e)
        return _failure("Failed to fetch movie/series info", e)

    subject = content.get("subject") if isinstance(content, dict) else None
    if isinstance(subject, dict):
        add_thumbnail(subject)
    return _success(content)


@router.get("/sources/{movie_id}")
async def sources(request: Request, movie_id: str, season: int = 0, episode: int = 0):
    """Download entries for a title, plus proxied stream/download URLs."""
    upstream = _upstream(request)
    player = request.app.state.settings.player_origin.rstrip("/")
    logger.info("Getting sources for movieId: %s", movie_id)
    try:
        movie_info = unwrap(await upstream.catalog_json(_DETAIL, params={"subjectId": movie_id}))
        subject = (movie_info.get("subject") if isinstance(movie_info, dict) else None) or {}
        detail_path = subject.get("detailPath")
        if not detail_path:
            return _failure("Failed to fetch streaming sources", "Could not get movie detail path")

        referer = f"{player}/spa/videoPlayPage/movies/{detail_path}?id={movie_id}&type=/movie/detail"
        content = unwrap(await upstream.catalog_json(
            _DOWNLOADS,
            params={"subjectId": movie_id, "se": season, "ep": episode},
            headers={"Referer": referer, "Origin": player},
        ))
    except _CATALOG_ERRORS as e:
        logger.error("Sources error: %s", e)
        return _failure("Failed to fetch streaming sources", e)

    if isinstance(content, dict) and content.get("downloads"):
        content["processedSources"] = build_source_links(
            _base_url(request),
            content["downloads"],
            subject.get("title") or "video",
            season,
            episode,
        )
    return _success(content)
