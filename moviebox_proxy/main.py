"""FastAPI application entrypoint: lifespan, routes, and error handlers."""

import logging
import time
from contextlib import asynccontextmanager

import httpx
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from moviebox_proxy.api.catalog import router as catalog_router
from moviebox_proxy.api.proxy import ProxyOrchestrator, router as proxy_router
from moviebox_proxy.config import Settings, settings as default_settings
from moviebox_proxy.session import CredentialCache, http_bootstrap
from moviebox_proxy.upstream import UpstreamClient, base_headers, catalog_headers, merge_headers

logging.basicConfig(
    level=default_settings.log_level.upper(),
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger("main")

AVAILABLE_ENDPOINTS = [
    "GET /api/homepage",
    "GET /api/trending",
    "GET /api/search/:query",
    "GET /api/info/:movieId",
    "GET /api/sources/:movieId",
    "GET /api/stream?url=...",
    "GET /api/download?url=...",
    "GET /api/health",
]


def create_app(
    settings: Settings | None = None,
    *,
    transport: httpx.AsyncBaseTransport | None = None,
) -> FastAPI:
    """Build the application.

    ``transport`` replaces the network for every upstream call (catalog
    bootstrap included); tests pass an ``httpx.MockTransport``.
    """
    settings = settings or default_settings

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Startup and shutdown logic."""
        from moviebox_proxy.config import _resolve_env_file
        env_path = _resolve_env_file()
        logger.info(
            "Starting MovieBox proxy (env_file=%s, exists=%s, api_host=%s)",
            env_path, env_path.exists(), settings.api_host,
        )
        settings.warn_insecure_defaults()
        app.state.start_time = time.time()
        app.state.settings = settings

        # One pooled client for catalog and CDN; per-call timeouts override.
        http = httpx.AsyncClient(
            transport=transport,
            timeout=settings.catalog_timeout_s,
            follow_redirects=True,
        )
        bootstrap = http_bootstrap(
            http,
            settings.bootstrap_url,
            merge_headers(base_headers(settings), catalog_headers(settings)),
        )
        credentials = CredentialCache(bootstrap, ttl=settings.credential_ttl_s)
        upstream = UpstreamClient(http, settings, credentials)

        app.state.http_client = http
        app.state.credentials = credentials
        app.state.upstream = upstream
        app.state.orchestrator = ProxyOrchestrator(upstream, settings)

        logger.info("Server ready (cdn_origins=%s)", ", ".join(settings.cdn_origins))
        yield

        logger.info("Shutting down")
        await http.aclose()
        logger.info("Shutdown complete")

    app = FastAPI(
        title="MovieBox Proxy",
        lifespan=lifespan,
        docs_url="/api/docs",
        redoc_url=None,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
        allow_headers=["Origin", "X-Requested-With", "Content-Type", "Accept", "Authorization", "Range"],
        expose_headers=["Content-Length", "Content-Range", "Accept-Ranges", "Content-Disposition"],
    )

    app.include_router(proxy_router)
    app.include_router(catalog_router)

    @app.get("/api/health")
    async def health(request: Request):
        return {
            "status": "ok",
            "credential_cached": request.app.state.credentials.is_fresh(),
            "uptime_seconds": round(time.time() - request.app.state.start_time, 1),
        }

    @app.exception_handler(StarletteHTTPException)
    async def http_error(request: Request, exc: StarletteHTTPException):
        if exc.status_code == 404:
            return JSONResponse(
                {
                    "status": "error",
                    "message": "Endpoint not found",
                    "availableEndpoints": AVAILABLE_ENDPOINTS,
                },
                status_code=404,
            )
        return JSONResponse(
            {"status": "error", "message": str(exc.detail)},
            status_code=exc.status_code,
            headers=getattr(exc, "headers", None),
        )

    @app.exception_handler(Exception)
    async def unhandled_error(request: Request, exc: Exception):
        logger.exception("Unhandled error on %s", request.url.path)
        return JSONResponse(
            {"status": "error", "message": "Internal server error", "error": str(exc)},
            status_code=500,
        )

    return app


app = create_app()


def run():
    import uvicorn

    uvicorn.run(
        "moviebox_proxy.main:app",
        host=default_settings.host,
        port=default_settings.port,
        log_level=default_settings.log_level.lower(),
    )
