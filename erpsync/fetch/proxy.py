"""Pass-through relay: forwards a JSON-described request to an upstream URL."""
import logging
from typing import Any, Literal, Optional

import httpx
import orjson
from pydantic import BaseModel, Field

from erpsync.config import config
from erpsync.fetch.endpoints import is_http_url
from erpsync.parse.redact import redact_json

logger = logging.getLogger(__name__)


class ProxyRequest(BaseModel):
    url: str
    method: Literal["GET", "POST", "PUT", "DELETE"] = "GET"
    headers: dict[str, str] = Field(default_factory=dict)
    body: Optional[Any] = None


class ProxyResult(BaseModel):
    status_code: int
    content: Any


async def relay(request: ProxyRequest, client: Optional[httpx.AsyncClient] = None) -> ProxyResult:
    """Forward the request and return the parsed upstream response.

    2xx responses come back as parsed JSON, or ``{"raw": text}`` for other
    bodies. Upstream failures keep their status code with an error envelope.
    """
    url = request.url.strip()
    if not url:
        return ProxyResult(status_code=400, content={"error": "url is required"})
    if not is_http_url(url):
        return ProxyResult(status_code=400, content={"error": "Invalid URL (only http/https)"})

    headers = {"Accept": "application/json", **request.headers}
    content = None
    if request.body is not None:
        headers.setdefault("Content-Type", "application/json")
        content = orjson.dumps(request.body)
    logger.debug(f"Relaying {request.method} {url} headers={redact_json(headers)}")

    owns_client = client is None
    if client is None:
        client = httpx.AsyncClient(timeout=config.REQUEST_TIMEOUT, follow_redirects=True)
    try:
        upstream = await client.request(request.method, url, headers=headers, content=content)
    except httpx.TimeoutException:
        logger.warning(f"Proxy upstream timed out: {request.method} {url}")
        return ProxyResult(status_code=504, content={"error": "Upstream timed out"})
    except httpx.TransportError as e:
        logger.warning(f"Proxy upstream unreachable: {request.method} {url}: {e}")
        return ProxyResult(status_code=502, content={"error": f"Upstream unreachable: {e}"})
    finally:
        if owns_client:
            await client.aclose()

    text = upstream.text
    if not upstream.is_success:
        return ProxyResult(
            status_code=upstream.status_code,
            content={
                "error": f"Upstream returned {upstream.status_code}: {upstream.reason_phrase}",
                "details": text[:3000],
            },
        )

    try:
        data = orjson.loads(upstream.content)
    except orjson.JSONDecodeError:
        data = {"raw": text}
    return ProxyResult(status_code=200, content=data)
