"""Normalize heterogeneous ERP page envelopes.

Different ERP deployments name the same envelope fields differently. Each
normalized field has an ordered alias table; the first alias holding a valid
value wins. Nothing here raises: missing or malformed fields fall back to an
empty list, ``None`` or the caller's default.
"""
import logging
import math
from dataclasses import dataclass, field
from typing import Any, Optional

logger = logging.getLogger(__name__)

ITEM_ALIASES: tuple[str, ...] = ("data", "items", "results", "records", "registros", "rows")
TOTAL_ALIASES: tuple[str, ...] = (
    "total",
    "totalCount",
    "count",
    "totalRecords",
    "total_count",
    "qtd_total",
    "total_registros",
)
LIMIT_ALIASES: tuple[str, ...] = ("limit", "pageSize", "perPage", "page_size", "per_page", "limite")
PAGE_ALIASES: tuple[str, ...] = ("page", "currentPage", "pageNumber", "pagina")


@dataclass
class PageEnvelope:
    """One page of upstream data, with the envelope fields resolved."""

    items: list[Any] = field(default_factory=list)
    total: Optional[int] = None
    limit: int = 100
    page: Optional[int] = None
    malformed: bool = False

    @property
    def total_pages(self) -> Optional[int]:
        """ceil(total / limit), or None while the total is unknown."""
        if self.total is None or self.limit <= 0:
            return None
        return math.ceil(self.total / self.limit)


def to_positive_number(value: Any) -> Optional[float]:
    """Coerce a number or numeric string to a positive float, else None."""
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, (int, float)):
        number = float(value)
    elif isinstance(value, str):
        try:
            number = float(value.strip())
        except ValueError:
            return None
    else:
        return None
    if math.isnan(number) or math.isinf(number) or number <= 0:
        return None
    return number


def _first_positive(payload: Any, aliases: tuple[str, ...]) -> Optional[int]:
    if not isinstance(payload, dict):
        return None
    for alias in aliases:
        number = to_positive_number(payload.get(alias))
        if number is not None:
            return int(number)
    return None


def extract_items(payload: Any) -> Optional[list[Any]]:
    """Return the record array, or None when the payload carries none."""
    if isinstance(payload, list):
        return payload
    if not isinstance(payload, dict):
        return None
    for alias in ITEM_ALIASES:
        value = payload.get(alias)
        if isinstance(value, list):
            return value
    return None


def extract_total(payload: Any) -> Optional[int]:
    """Total record count, or None when unknown (never 0)."""
    return _first_positive(payload, TOTAL_ALIASES)


def extract_limit(payload: Any, default_limit: int = 100) -> int:
    """Page size announced by the upstream, or the default."""
    limit = _first_positive(payload, LIMIT_ALIASES)
    return limit if limit is not None else default_limit


def extract_page(payload: Any) -> Optional[int]:
    """Page index echoed by the upstream, if any."""
    return _first_positive(payload, PAGE_ALIASES)


def normalize_page(payload: Any, default_limit: int = 100) -> PageEnvelope:
    """Resolve items, total, limit and page for one raw page payload."""
    items = extract_items(payload)
    malformed = items is None
    if malformed:
        keys = list(payload.keys())[:10] if isinstance(payload, dict) else type(payload).__name__
        logger.warning(f"Page payload has no item array (keys: {keys}), treating as empty")
    return PageEnvelope(
        items=items or [],
        total=extract_total(payload),
        limit=extract_limit(payload, default_limit),
        page=extract_page(payload),
        malformed=malformed,
    )
