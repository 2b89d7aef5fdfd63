"""Content fingerprint of an invoice aggregate.

The fingerprint is the only signal used to decide whether an invoice really
changed between two syncs, so it covers business content only and must be
stable across key order, item order and float noise:

- money is rendered with 2 decimals, weights with 3;
- items are reduced to (sku, quantity, weightKg) and sorted;
- keys are sorted recursively before serialising to compact JSON.
"""
import hashlib
from typing import Any

import orjson

from erpsync.parse.models import InvoiceAggregate, InvoiceItem
from erpsync.parse.numbers import format_fixed, format_number


def _item_signature(item: InvoiceItem) -> dict[str, Any]:
    return {
        "sku": item.sku,
        "quantity": format_number(item.quantity),
        "weightKg": format_fixed(item.weight_kg, 3),
    }


def fingerprint_payload(aggregate: InvoiceAggregate) -> dict[str, Any]:
    """The exact object that gets hashed."""
    items = sorted(
        (_item_signature(item) for item in aggregate.items),
        key=lambda sig: (sig["sku"], float(sig["quantity"]), sig["weightKg"]),
    )
    return {
        "customerName": aggregate.customer_name,
        "customerCity": aggregate.customer_city,
        "totalValue": format_fixed(aggregate.total_value, 2),
        "totalWeight": format_fixed(aggregate.total_weight, 3),
        "itemCount": len(aggregate.items),
        "items": items,
    }


def canonical_json(data: Any) -> bytes:
    """Compact JSON with recursively sorted keys."""
    return orjson.dumps(data, option=orjson.OPT_SORT_KEYS)


def compute_fingerprint(aggregate: InvoiceAggregate) -> str:
    """SHA-256 hex digest of the aggregate's business content."""
    return hashlib.sha256(canonical_json(fingerprint_payload(aggregate))).hexdigest()
