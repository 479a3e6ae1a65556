"""Configuration via Pydantic Settings, loaded from .env file."""

import logging
import os
from functools import cached_property
from pathlib import Path
from pydantic_settings import BaseSettings

_cfg_logger = logging.getLogger("config")

_DEFAULT_CDN_ORIGINS = [
    "https://bcdnw.hakunaymatata.com",
    "https://valiw.hakunaymatata.com",
]

# Resolve .env path relative to the project root (parent of moviebox_proxy/)
# so it works regardless of the working directory the process is launched from.
_PROJECT_ROOT = Path(__file__).resolve().parent.parent


def _resolve_env_file() -> Path:
    """Return an absolute path to the .env file.

    If ``MOVIEBOX_ENV_FILE`` is set, use it (resolved relative to the project
    root when not absolute).  Otherwise default to ``<project_root>/.env``.
    """
    raw = os.environ.get("MOVIEBOX_ENV_FILE", "")
    if raw:
        p = Path(raw)
        return p if p.is_absolute() else _PROJECT_ROOT / p
    return _PROJECT_ROOT / ".env"


class Settings(BaseSettings):
    # Server
    host: str = "0.0.0.0"
    port: int = 5000
    log_level: str = "INFO"
    cors_allowed_origins: str = "*"

    # -- Catalog API ----------------------------------------------------------

    api_host: str = "h5.aoneroom.com"
    bootstrap_path: str = "/wefeed-h5-bff/app/get-latest-app-pkgs?app_name=moviebox"
    credential_ttl_s: float = 3600.0
    catalog_timeout_s: float = 30.0
    trending_uid: str = "5591179548772780352"

    # Mobile app identity. The catalog geo-restricts by client IP, so the
    # spoofed address is sent in every forwarding header it inspects.
    client_user_agent: str = "okhttp/4.12.0"
    client_timezone: str = "Africa/Nairobi"
    accept_language: str = "en-US,en;q=0.5"
    spoofed_client_ip: str = "1.1.1.1"

    # -- CDN ------------------------------------------------------------------

    # Comma-separated scheme://host[:port] origins the proxy may fetch from.
    cdn_allowed_origins: str = ",".join(_DEFAULT_CDN_ORIGINS)
    # The CDN authorizes by Referer/Origin of the web player.
    player_origin: str = "https://fmoviesunblocked.net"
    default_content_type: str = "video/mp4"
    probe_timeout_s: float = 10.0

    model_config = {
        "env_file": str(_resolve_env_file()),
        "env_file_encoding": "utf-8",
        "extra": "ignore",
    }

    @property
    def api_base_url(self) -> str:
        return f"https://{self.api_host}"

    @property
    def bootstrap_url(self) -> str:
        return self.api_base_url + self.bootstrap_path

    @cached_property
    def cors_origins(self) -> list[str]:
        origins = [origin.strip() for origin in self.cors_allowed_origins.split(",") if origin.strip()]
        return origins or ["*"]

    @cached_property
    def cdn_origins(self) -> list[str]:
        origins = [
            origin.strip().rstrip("/").lower()
            for origin in self.cdn_allowed_origins.split(",")
            if origin.strip()
        ]
        return origins or list(_DEFAULT_CDN_ORIGINS)

    def warn_insecure_defaults(self):
        """Log warnings about permissive defaults. Called once at startup."""
        if "*" in self.cors_origins:
            _cfg_logger.info(
                "CORS_ALLOWED_ORIGINS is '*'; any web page may embed the "
                "stream and download endpoints. Set CORS_ALLOWED_ORIGINS to "
                "restrict it."
            )


settings = Settings()
