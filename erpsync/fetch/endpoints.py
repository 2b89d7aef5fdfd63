"""URL builders for ERP page requests."""
from typing import Optional
from urllib.parse import urlparse

import httpx

from erpsync.config import config


def build_page_url(base_url: str, page: int, limit: Optional[int] = None) -> str:
    """Base report URL with the page and page size merged into its query."""
    params = {"page": page, "limit": limit or config.PAGE_SIZE}
    return str(httpx.URL(base_url).copy_merge_params(params))


def is_http_url(raw: str) -> bool:
    """Only absolute http(s) URLs may be requested or relayed."""
    try:
        parsed = urlparse(raw)
    except ValueError:
        return False
    return parsed.scheme in ("http", "https") and bool(parsed.netloc)
