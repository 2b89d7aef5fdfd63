"""Fold flat ERP transaction lines into invoice aggregates."""
import logging
from typing import Any, Iterable, Optional

from pydantic import ValidationError

from erpsync.parse.models import InvoiceAggregate, InvoiceItem, TransactionLine
from erpsync.parse.numbers import round_half_up

logger = logging.getLogger(__name__)

# Display/storage precision. The fingerprint uses 3 decimals for weight.
VALUE_PLACES = 2
WEIGHT_PLACES = 2


def invoice_id(company_code: Optional[int], document_number: int) -> str:
    """Stable identity of an invoice across syncs."""
    company = company_code if company_code is not None else 0
    return f"nf-{company}-{document_number}"


def parse_line(row: Any, index: int = 0) -> Optional[TransactionLine]:
    """Validate one raw row; None (with a warning) when it cannot be used."""
    if isinstance(row, TransactionLine):
        line = row
    elif isinstance(row, dict):
        try:
            line = TransactionLine.model_validate(row)
        except ValidationError as e:
            logger.warning(f"Skipping invalid transaction line #{index}: {e.error_count()} validation errors")
            return None
    else:
        logger.warning(f"Skipping transaction line #{index}: not an object ({type(row).__name__})")
        return None

    if line.document_number is None:
        logger.warning(f"Skipping transaction line #{index} (sku={line.sku!r}): no document number")
        return None
    return line


def _format_city(line: TransactionLine) -> str:
    if line.customer_city and line.customer_state:
        return f"{line.customer_city} - {line.customer_state}"
    return line.customer_city or line.customer_state


def _new_aggregate(line: TransactionLine) -> InvoiceAggregate:
    return InvoiceAggregate(
        id=invoice_id(line.company_code, line.document_number),
        document_number=line.document_number,
        number=str(line.document_number),
        company_code=line.company_code,
        customer_name=line.customer_name,
        customer_city=_format_city(line),
        document_date=line.document_date.split("T")[0],
    )


def build_aggregates(rows: Iterable[Any]) -> dict[int, InvoiceAggregate]:
    """Group lines by document number, first line wins for header fields."""
    aggregates: dict[int, InvoiceAggregate] = {}
    for index, row in enumerate(rows):
        line = parse_line(row, index)
        if line is None:
            continue

        aggregate = aggregates.get(line.document_number)
        if aggregate is None:
            aggregate = _new_aggregate(line)
            aggregates[line.document_number] = aggregate

        aggregate.items.append(
            InvoiceItem(
                sku=line.sku,
                description=line.description,
                quantity=line.quantity,
                unit=line.unit,
                weight_kg=line.weight_kg,
                quantity_picked=0,
            )
        )
        aggregate.total_value += line.net_value
        aggregate.total_weight += line.weight_kg

    for aggregate in aggregates.values():
        aggregate.total_value = round_half_up(aggregate.total_value, VALUE_PLACES)
        aggregate.total_weight = round_half_up(aggregate.total_weight, WEIGHT_PLACES)
    return aggregates


def merge_aggregates(
    target: dict[int, InvoiceAggregate],
    page_aggregates: dict[int, InvoiceAggregate],
) -> list[int]:
    """Merge one page's aggregates into the run-wide map.

    A document is not expected to span pages; when it does, its items and
    totals are appended to the aggregate already seen. Returns the document
    numbers touched by this page, in page order.
    """
    touched = []
    for number, aggregate in page_aggregates.items():
        existing = target.get(number)
        if existing is None:
            target[number] = aggregate
        else:
            logger.warning(
                f"Invoice {number} spans pages: merging {len(aggregate.items)} more items "
                f"into {len(existing.items)}"
            )
            existing.items.extend(aggregate.items)
            existing.total_value = round_half_up(existing.total_value + aggregate.total_value, VALUE_PLACES)
            existing.total_weight = round_half_up(existing.total_weight + aggregate.total_weight, WEIGHT_PLACES)
            existing.fingerprint = None
        touched.append(number)
    return touched
