"""Typed failure conditions raised below the proxy orchestrator.

Each condition carries the HTTP status it maps to; only
``api.proxy.ProxyOrchestrator`` turns them into responses.
"""


class ProxyError(Exception):
    status_code = 500

    def __init__(self, message: str, *, detail: str | None = None):
        super().__init__(message)
        self.message = message
        self.detail = detail

    def to_payload(self) -> dict:
        payload = {"status": "error", "message": self.message}
        if self.detail:
            payload["error"] = self.detail
        return payload


class InvalidTarget(ProxyError):
    """Target URL is not on the CDN allow-list."""

    status_code = 400


class RangeUnsatisfiable(ProxyError):
    status_code = 416

    def __init__(self, total_length: int):
        super().__init__("Range not satisfiable")
        self.total_length = total_length


class MetadataUnavailable(ProxyError):
    """The probe could not learn a usable length for the resource."""

    def __init__(self, url: str, detail: str | None = None):
        super().__init__("Could not determine file size", detail=detail)
        self.url = url


class UpstreamUnreachable(ProxyError):
    """Connection-level failure (DNS, TLS, connect, timeout) reaching upstream."""

    def __init__(self, url: str, detail: str | None = None):
        super().__init__("Upstream unreachable", detail=detail)
        self.url = url


class UpstreamError(ProxyError):
    """Upstream answered, but with a non-2xx status."""

    def __init__(self, url: str, upstream_status: int):
        super().__init__(
            "Upstream request failed",
            detail=f"upstream returned HTTP {upstream_status}",
        )
        self.url = url
        self.upstream_status = upstream_status


class StreamInterrupted(ProxyError):
    """Failure after response headers were committed; the connection is dropped."""
