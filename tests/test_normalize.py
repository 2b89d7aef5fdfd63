"""Tests for page envelope normalization."""
from erpsync.parse.normalize import (
    extract_items,
    extract_limit,
    extract_total,
    normalize_page,
    to_positive_number,
)


def test_standard_envelope():
    """Test the common {data, total, limit, page} shape."""
    envelope = normalize_page({"data": [{"a": 1}], "total": 250, "limit": 100, "page": 2})
    assert envelope.items == [{"a": 1}]
    assert envelope.total == 250
    assert envelope.limit == 100
    assert envelope.page == 2
    assert envelope.total_pages == 3
    assert not envelope.malformed


def test_non_standard_field_names():
    """Test records + string qtd_total fallback."""
    rows = [{"nr_docto": 1}, {"nr_docto": 2}]
    envelope = normalize_page({"records": rows, "qtd_total": "250"})
    assert envelope.items == rows
    assert envelope.total == 250


def test_first_alias_wins():
    """Test alias order: data is preferred over items."""
    assert extract_items({"items": [2], "data": [1]}) == [1]


def test_bare_list_payload():
    """Test a payload that is the record array itself."""
    envelope = normalize_page([{"a": 1}, {"a": 2}])
    assert len(envelope.items) == 2
    assert envelope.total is None
    assert envelope.total_pages is None


def test_missing_item_array_is_malformed_not_error():
    """Test that a payload without records becomes an empty, malformed page."""
    envelope = normalize_page({"message": "ok"})
    assert envelope.items == []
    assert envelope.malformed

    envelope = normalize_page({"raw": "<html>maintenance</html>"})
    assert envelope.malformed


def test_non_numeric_and_non_positive_totals_are_unknown():
    """Test that zero, negative and garbage totals are treated as unknown."""
    assert extract_total({"total": 0}) is None
    assert extract_total({"total": -5}) is None
    assert extract_total({"total": "abc"}) is None
    assert extract_total({"total": True}) is None
    assert extract_total({"total": 0, "count": 40}) == 40


def test_limit_falls_back_to_default():
    """Test the caller's page size is used when the upstream does not announce one."""
    assert extract_limit({"data": []}, default_limit=50) == 50
    assert extract_limit({"pageSize": "25"}, default_limit=50) == 25


def test_to_positive_number():
    """Test numeric coercion edge cases."""
    assert to_positive_number("12") == 12.0
    assert to_positive_number(" 3.5 ") == 3.5
    assert to_positive_number(float("nan")) is None
    assert to_positive_number(float("inf")) is None
    assert to_positive_number(None) is None
    assert to_positive_number([1]) is None
