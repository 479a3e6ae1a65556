"""Session cookie cache for the catalog API.

The catalog hands out its session cookies from a bootstrap endpoint.  The
cookies are reused for ``ttl`` seconds and refreshed lazily on the first call
after expiry.  Refresh is best effort: when the bootstrap call fails or sets
no cookies, the last credential (possibly none) keeps being served and the
catalog call that needed it fails on its own.

No lock is taken.  Callers racing past an expired entry may each trigger a
refresh; the results are interchangeable.
"""

import logging
import time
from dataclasses import dataclass
from typing import Awaitable, Callable

import httpx

from moviebox_proxy.errors import UpstreamUnreachable

logger = logging.getLogger("session")

Bootstrap = Callable[[], Awaitable[list[str]]]


@dataclass(frozen=True)
class Credential:
    value: str
    acquired_at: float


def cookie_pairs(set_cookie_headers: list[str]) -> str:
    """Reduce ``Set-Cookie`` values to a ``Cookie`` request header value.

    ``"sid=abc; Path=/; HttpOnly"`` contributes ``"sid=abc"``; pairs are
    joined with ``"; "``.
    """
    pairs = []
    for header in set_cookie_headers:
        pair = header.split(";", 1)[0].strip()
        if pair:
            pairs.append(pair)
    return "; ".join(pairs)


class CredentialCache:
    def __init__(
        self,
        bootstrap: Bootstrap,
        *,
        ttl: float = 3600.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._bootstrap = bootstrap
        self._ttl = ttl
        self._clock = clock
        self._credential: Credential | None = None

    @property
    def current(self) -> Credential | None:
        """The cached credential, without refreshing or checking expiry."""
        return self._credential

    def is_fresh(self) -> bool:
        cred = self._credential
        return cred is not None and self._clock() - cred.acquired_at < self._ttl

    def invalidate(self):
        self._credential = None

    async def get_credential(self) -> Credential | None:
        if self.is_fresh():
            return self._credential

        now = self._clock()
        try:
            headers = await self._bootstrap()
        except (httpx.HTTPError, UpstreamUnreachable) as e:
            logger.warning("Session bootstrap failed, keeping previous credential: %s", e)
            return self._credential

        value = cookie_pairs(headers)
        if not value:
            logger.warning("Session bootstrap returned no cookies")
            return self._credential

        self._credential = Credential(value=value, acquired_at=now)
        logger.info("Session cookies refreshed (%d cookie(s))", value.count(";") + 1)
        return self._credential


def http_bootstrap(client: httpx.AsyncClient, url: str, headers: dict[str, str]) -> Bootstrap:
    """Build a bootstrap coroutine that GETs ``url`` and returns its Set-Cookie values."""

    async def _bootstrap() -> list[str]:
        response = await client.get(url, headers=headers)
        return response.headers.get_list("set-cookie")

    return _bootstrap
