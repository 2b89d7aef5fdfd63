"""Tests for invoice fingerprints."""
from erpsync.parse.fingerprint import canonical_json, compute_fingerprint, fingerprint_payload
from erpsync.parse.models import InvoiceAggregate, InvoiceItem


def _aggregate(**overrides) -> InvoiceAggregate:
    data = {
        "id": "nf-1-100",
        "document_number": 100,
        "number": "100",
        "company_code": 1,
        "customer_name": "ACME LTDA",
        "customer_city": "Curitiba - PR",
        "document_date": "2024-05-01",
        "total_value": 150.0,
        "total_weight": 3.5,
        "items": [
            InvoiceItem(sku="A", quantity=3, weight_kg=1.5),
            InvoiceItem(sku="B", quantity=1, weight_kg=2.0),
        ],
    }
    data.update(overrides)
    return InvoiceAggregate(**data)


def test_fingerprint_is_deterministic():
    """Test hashing twice gives the same digest."""
    aggregate = _aggregate()
    assert compute_fingerprint(aggregate) == compute_fingerprint(aggregate)
    assert len(compute_fingerprint(aggregate)) == 64


def test_item_order_does_not_matter():
    """Test permuting the item list keeps the digest."""
    reordered = _aggregate(
        items=[
            InvoiceItem(sku="B", quantity=1, weight_kg=2.0),
            InvoiceItem(sku="A", quantity=3, weight_kg=1.5),
        ]
    )
    assert compute_fingerprint(reordered) == compute_fingerprint(_aggregate())


def test_key_order_does_not_matter():
    """Test canonical JSON sorts keys."""
    assert canonical_json({"b": 1, "a": {"d": 2, "c": 3}}) == canonical_json({"a": {"c": 3, "d": 2}, "b": 1})


def test_non_business_fields_are_ignored():
    """Test that description, flags and dates do not affect the digest."""
    base = compute_fingerprint(_aggregate())
    assert compute_fingerprint(_aggregate(is_assigned=True, document_date="2024-06-01")) == base
    described = _aggregate(
        items=[
            InvoiceItem(sku="A", quantity=3, weight_kg=1.5, description="changed"),
            InvoiceItem(sku="B", quantity=1, weight_kg=2.0, quantity_picked=1),
        ]
    )
    assert compute_fingerprint(described) == base


def test_float_noise_below_precision_is_ignored():
    """Test values equal after rounding hash identically."""
    assert compute_fingerprint(_aggregate(total_value=150.001)) == compute_fingerprint(_aggregate())


def test_value_change_changes_digest():
    """Test a one-cent change in total value is detected."""
    assert compute_fingerprint(_aggregate(total_value=150.01)) != compute_fingerprint(_aggregate())


def test_item_changes_change_digest():
    """Test sku, quantity and weight changes are detected."""
    base = compute_fingerprint(_aggregate())
    for changed in (
        InvoiceItem(sku="C", quantity=3, weight_kg=1.5),
        InvoiceItem(sku="A", quantity=4, weight_kg=1.5),
        InvoiceItem(sku="A", quantity=3, weight_kg=1.501),
    ):
        aggregate = _aggregate(items=[changed, InvoiceItem(sku="B", quantity=1, weight_kg=2.0)])
        assert compute_fingerprint(aggregate) != base


def test_customer_change_changes_digest():
    """Test header fields covered by the fingerprint."""
    assert compute_fingerprint(_aggregate(customer_name="OTHER")) != compute_fingerprint(_aggregate())


def test_payload_shape():
    """Test the hashed object renders decimals as fixed strings."""
    payload = fingerprint_payload(_aggregate())
    assert payload["totalValue"] == "150.00"
    assert payload["totalWeight"] == "3.500"
    assert payload["itemCount"] == 2
    assert payload["items"][0] == {"sku": "A", "quantity": 3, "weightKg": "1.500"}
