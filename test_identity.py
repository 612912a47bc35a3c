"""
Tests for deterministic external ids.
"""

import hashlib

import pytest

from changewatch.errors import DataError
from changewatch.identity import compute_external_id


def test_external_id_is_stable_hash_of_identity_values():
    record = {"sku": "ABC-1", "color": "red", "price": 10}
    expected = hashlib.sha256("ABC-1\x00red".encode("utf-8")).digest()[:16].hex()

    assert compute_external_id(record, ["sku", "color"]) == expected
    assert len(expected) == 32


def test_field_order_matters():
    record = {"sku": "ABC-1", "color": "red"}
    assert compute_external_id(record, ["sku", "color"]) != compute_external_id(record, ["color", "sku"])


def test_non_identity_fields_do_not_affect_id():
    a = {"id": "A", "price": 10}
    b = {"id": "A", "price": 99, "stock": 3}
    assert compute_external_id(a, ["id"]) == compute_external_id(b, ["id"])


def test_surrounding_whitespace_is_ignored():
    assert compute_external_id({"name": "  Widget "}, ["name"]) == compute_external_id({"name": "Widget"}, ["name"])


def test_number_and_numeric_string_hash_the_same():
    assert compute_external_id({"id": 10}, ["id"]) == compute_external_id({"id": "10"}, ["id"])


def test_integral_float_hashes_like_the_int():
    assert compute_external_id({"id": 10}, ["id"]) == compute_external_id({"id": 10.0}, ["id"])
    assert compute_external_id({"id": 10.5}, ["id"]) != compute_external_id({"id": 10}, ["id"])


def test_booleans_are_not_numbers():
    assert compute_external_id({"id": True}, ["id"]) != compute_external_id({"id": 1}, ["id"])
    assert compute_external_id({"id": False}, ["id"]) != compute_external_id({"id": 0.0}, ["id"])


@pytest.mark.parametrize("record", [
    {"price": 10},
    {"id": None},
    {"id": "   "},
    ["id", "A"],
    "A",
])
def test_unresolvable_records_raise(record):
    with pytest.raises(DataError):
        compute_external_id(record, ["id"])


def test_no_identity_fields_raises():
    with pytest.raises(DataError):
        compute_external_id({"id": "A"}, [])
