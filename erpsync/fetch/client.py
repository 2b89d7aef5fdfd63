"""HTTP client for ERP page requests with retries and typed errors."""
import logging
from typing import Any, Optional
import httpx
import orjson
from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from erpsync.config import config
from erpsync.errors import (
    ErpSyncError,
    UpstreamConnectionError,
    UpstreamTimeout,
    error_for_status,
)
from erpsync.fetch.endpoints import build_page_url
from erpsync.parse.normalize import normalize_page

logger = logging.getLogger(__name__)


def is_retryable(exc: BaseException) -> bool:
    """5xx, 429, timeouts and connection errors are worth another attempt."""
    return isinstance(exc, ErpSyncError) and exc.retryable


def parse_body(response: httpx.Response) -> Any:
    """JSON body, or {"raw": text} when the upstream did not send JSON."""
    if not response.content.strip():
        return {}
    try:
        return orjson.loads(response.content)
    except orjson.JSONDecodeError:
        return {"raw": response.text}


class ErpClient:
    """Fetches ERP report pages, directly or through the forwarding proxy."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        proxy_url: Optional[str] = None,
        page_size: Optional[int] = None,
        timeout: Optional[float] = None,
        max_attempts: Optional[int] = None,
        backoff_base: Optional[float] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.api_key = api_key
        self.proxy_url = proxy_url
        self.page_size = page_size or config.PAGE_SIZE
        self.timeout = timeout if timeout is not None else config.REQUEST_TIMEOUT
        self.max_attempts = max_attempts or config.MAX_RETRIES
        self.backoff_base = backoff_base if backoff_base is not None else config.RETRY_BASE_DELAY

        if client is None:
            limits = httpx.Limits(
                max_connections=10,
                max_keepalive_connections=5,
            )
            client = httpx.AsyncClient(
                http2=True,
                timeout=self.timeout,
                follow_redirects=True,
                limits=limits,
            )
        self.client = client
        self.retry_count = 0

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.aclose()

    async def aclose(self) -> None:
        await self.client.aclose()

    def _headers(self) -> dict[str, str]:
        headers = {"Accept": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    async def _request(self, url: str) -> Any:
        """One attempt, raising the typed error for any failure."""
        headers = self._headers()
        try:
            if self.proxy_url:
                response = await self.client.post(
                    self.proxy_url,
                    json={"url": url, "method": "GET", "headers": headers},
                    timeout=self.timeout,
                )
            else:
                response = await self.client.get(url, headers=headers, timeout=self.timeout)
        except httpx.TimeoutException as e:
            raise UpstreamTimeout(f"Request timed out after {self.timeout}s", url=url) from e
        except httpx.TransportError as e:
            raise UpstreamConnectionError(f"Network error: {e}", url=url) from e

        if not response.is_success:
            raise error_for_status(response.status_code, response.text, url)
        return parse_body(response)

    async def fetch_page(self, base_url: str, page: int) -> Any:
        """Fetch one page, retrying retryable failures with exponential backoff."""
        url = build_page_url(base_url, page, self.page_size)
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(multiplier=self.backoff_base, max=30),
            retry=retry_if_exception(is_retryable),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )
        payload = None
        async for attempt in retrying:
            with attempt:
                if attempt.retry_state.attempt_number > 1:
                    self.retry_count += 1
                payload = await self._request(url)
        return payload

    async def test_connection(self, base_url: str) -> tuple[bool, str]:
        """Fetch page 1 once and describe the outcome."""
        try:
            payload = await self._request(build_page_url(base_url, 1, self.page_size))
        except ErpSyncError as e:
            return False, f"Connection failed: {e}"

        envelope = normalize_page(payload, self.page_size)
        if envelope.malformed:
            return False, "Response does not contain a valid record list"
        total = envelope.total if envelope.total is not None else len(envelope.items)
        return True, f"Connection OK: {total} records found"
