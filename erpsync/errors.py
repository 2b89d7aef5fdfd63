"""Exception hierarchy for the ERP sync engine.

Two class-level flags drive how the fetch driver reacts:

- ``retryable``: the HTTP client retries the request with backoff.
- ``fatal``: the whole run ends, whatever page it happened on.

Everything else that escapes a page fetch after retries only costs that page.
"""
from typing import Optional


class ErpSyncError(Exception):
    """Base exception for sync errors."""

    retryable = False
    fatal = False

    def __init__(
        self,
        message: str,
        status_code: int = 0,
        response_body: str = "",
        url: Optional[str] = None,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.response_body = response_body
        self.url = url


class AuthFailure(ErpSyncError):
    """Upstream rejected the credentials (401)."""

    fatal = True


class EndpointMissing(ErpSyncError):
    """Upstream endpoint not found (404)."""

    fatal = True


class UpstreamServerError(ErpSyncError):
    """Upstream returned a 5xx."""

    retryable = True


class RateLimited(ErpSyncError):
    """Upstream throttled us (429)."""

    retryable = True


class UpstreamTimeout(ErpSyncError):
    """Request exceeded its deadline."""

    retryable = True


class UpstreamConnectionError(ErpSyncError):
    """Network-level failure before a response was received."""

    retryable = True


class UpstreamRequestError(ErpSyncError):
    """Any other non-2xx response."""


class MalformedResponse(ErpSyncError):
    """Response body is not JSON or carries no item array."""


class PersistenceFailure(ErpSyncError):
    """Write to the record store failed."""


class SyncAlreadyRunning(ErpSyncError):
    """Another sync holds the active-run guard."""


class SyncRunFailed(ErpSyncError):
    """The run could not produce a meaningful result (e.g. page 1 unreachable)."""

    def __init__(self, message: str, run_id: Optional[str] = None, page: Optional[int] = None):
        super().__init__(message)
        self.run_id = run_id
        self.page = page


def error_for_status(status_code: int, body: str = "", url: Optional[str] = None) -> ErpSyncError:
    """Map a non-2xx upstream status to its typed exception."""
    snippet = (body or "")[:500]
    if status_code == 401:
        return AuthFailure("Unauthorized (401): check the ERP API key", status_code, snippet, url)
    if status_code == 404:
        return EndpointMissing("Endpoint not found (404)", status_code, snippet, url)
    if status_code == 429:
        return RateLimited("Too many requests (429)", status_code, snippet, url)
    if 500 <= status_code < 600:
        return UpstreamServerError(f"Upstream server error ({status_code})", status_code, snippet, url)
    return UpstreamRequestError(f"Upstream request failed ({status_code})", status_code, snippet, url)
