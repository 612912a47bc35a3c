"""
Tests for the diff engine.
"""

from typing import Any, Dict

from changewatch.differ import compute_diff, diff_fields, values_equal
from changewatch.identity import compute_external_id
from changewatch.models import Entity, EntityStatus

IDENTITY = ["id"]


def stored(*records: Dict[str, Any], status: EntityStatus = EntityStatus.ACTIVE) -> Dict[str, Entity]:
    snapshot = {}
    for i, record in enumerate(records):
        external_id = compute_external_id(record, IDENTITY)
        snapshot[external_id] = Entity(
            id=f"ent-{i}",
            tenant="org_test",
            watch_id="w1",
            schema_type="ecommerce_product",
            external_id=external_id,
            content=dict(record),
            status=status,
        )
    return snapshot


def test_first_run_everything_appears():
    result = compute_diff({}, [{"id": "A", "price": 10}, {"id": "B", "price": 5}], IDENTITY)

    assert [d.content["id"] for d in result.appeared] == ["A", "B"]
    assert not result.changed and not result.disappeared and not result.unchanged
    assert result.found == 2
    assert result.event_count == 2


def test_diff_is_idempotent():
    records = [{"id": "A", "price": 10}, {"id": "B", "price": 5}]
    result = compute_diff(stored(*records), records, IDENTITY)

    assert result.event_count == 0
    assert len(result.unchanged) == 2


def test_every_id_lands_in_exactly_one_bucket():
    snapshot = stored({"id": "A", "price": 10}, {"id": "B", "price": 5}, {"id": "C", "price": 1})
    records = [{"id": "A", "price": 10}, {"id": "B", "price": 4}, {"id": "D", "price": 7}]
    result = compute_diff(snapshot, records, IDENTITY)

    buckets = {
        "appeared": {d.external_id for d in result.appeared},
        "changed": {d.external_id for d in result.changed},
        "disappeared": {d.external_id for d in result.disappeared},
        "unchanged": {d.external_id for d in result.unchanged},
    }
    all_ids = set(snapshot) | {compute_external_id(r, IDENTITY) for r in records}
    assert set().union(*buckets.values()) == all_ids
    assert sum(len(b) for b in buckets.values()) == len(all_ids)
    assert [d.content["id"] for d in result.disappeared] == ["C"]
    assert [d.content["id"] for d in result.appeared] == ["D"]


def test_integer_and_float_prices_are_equal():
    result = compute_diff(stored({"id": "A", "price": 10}), [{"id": "A", "price": 10.0}], IDENTITY)
    assert result.event_count == 0


def test_float_form_of_numeric_identity_is_the_same_entity():
    result = compute_diff(stored({"id": 10, "price": 1}), [{"id": 10.0, "price": 1}], IDENTITY)

    assert len(result.unchanged) == 1
    assert not result.appeared and not result.disappeared


def id_buckets(result) -> Dict[str, set]:
    return {
        "appeared": {d.external_id for d in result.appeared},
        "changed": {d.external_id for d in result.changed},
        "disappeared": {d.external_id for d in result.disappeared},
        "unchanged": {d.external_id for d in result.unchanged},
    }


def test_batch_order_does_not_change_the_diff():
    snapshot = stored(
        {"id": "A", "price": 10}, {"id": "B", "price": 5}, {"id": "C", "price": 1}, {"id": "E", "price": 3}
    )
    records = [
        {"id": "A", "price": 10},
        {"id": "B", "price": 4},
        {"id": "D", "price": 7},
        {"id": "E", "price": 3},
        {"id": "F", "price": 2},
    ]
    expected = id_buckets(compute_diff(snapshot, records, IDENTITY))
    assert [len(expected[k]) for k in ("appeared", "changed", "disappeared", "unchanged")] == [2, 1, 1, 2]

    for batch in (list(reversed(records)), records[2:] + records[:2], [records[i] for i in (3, 0, 4, 1, 2)]):
        result = compute_diff(snapshot, batch, IDENTITY)
        assert id_buckets(result) == expected
        assert {compute_external_id(r, IDENTITY) for r in batch} == {
            compute_external_id(r, IDENTITY) for r in records
        }
        changed = {d.external_id: [(c.field, c.old, c.new) for c in d.changes] for d in result.changed}
        assert list(changed.values()) == [[("price", 5, 4)]]


def test_whitespace_only_difference_is_not_a_change():
    result = compute_diff(stored({"id": "A", "name": "Widget"}), [{"id": "A", "name": " Widget  "}], IDENTITY)
    assert result.event_count == 0


def test_boolean_is_not_a_number():
    assert not values_equal(True, 1)
    assert not values_equal(0, False)
    assert values_equal(True, True)


def test_null_and_absent_are_equivalent():
    assert diff_fields({"id": "A", "note": None}, {"id": "A"}) == []
    assert diff_fields({"id": "A"}, {"id": "A", "note": None}) == []


def test_field_changes_follow_new_then_removed_field_order():
    changes = diff_fields(
        {"id": "A", "price": 10, "stock": 3, "color": "red"},
        {"id": "A", "stock": 2, "price": 9, "size": "L"},
    )
    assert [(c.field, c.old, c.new) for c in changes] == [
        ("stock", 3, 2),
        ("price", 10, 9),
        ("size", None, "L"),
        ("color", "red", None),
    ]


def test_changed_entity_carries_old_and_new_values():
    result = compute_diff(stored({"id": "A", "price": 10}), [{"id": "A", "price": 8}], IDENTITY)

    assert len(result.changed) == 1
    diff = result.changed[0]
    assert diff.previous.id == "ent-0"
    assert [(c.field, c.old, c.new) for c in diff.changes] == [("price", 10, 8)]


def test_removed_entity_reappearing_is_reactivated():
    snapshot = stored({"id": "A", "price": 10}, status=EntityStatus.REMOVED)
    result = compute_diff(snapshot, [{"id": "A", "price": 12}], IDENTITY)

    assert len(result.appeared) == 1
    diff = result.appeared[0]
    assert diff.reactivated
    assert diff.previous.id == "ent-0"
    assert not result.changed


def test_removed_entity_still_absent_is_ignored():
    snapshot = stored({"id": "A", "price": 10}, status=EntityStatus.REMOVED)
    result = compute_diff(snapshot, [], IDENTITY)

    assert result.event_count == 0


def test_identity_collision_keeps_last_record():
    records = [{"id": "A", "price": 10}, {"id": "B", "price": 1}, {"id": "A", "price": 12}]
    result = compute_diff({}, records, IDENTITY)

    assert [d.content for d in result.appeared] == [{"id": "B", "price": 1}, {"id": "A", "price": 12}]
    assert len(result.dropped) == 1
    assert result.dropped[0].index == 0


def test_unresolvable_records_are_dropped_and_counted():
    records = [{"id": "A"}, {"price": 3}, {"id": ""}, "not a record"]
    result = compute_diff({}, records, IDENTITY)

    assert [d.content["id"] for d in result.appeared] == ["A"]
    assert [d.index for d in result.dropped] == [1, 2, 3]
    assert result.found == 4


def test_dropped_record_does_not_make_entity_disappear():
    # the record for A lost its identity, so A is gone from this batch
    snapshot = stored({"id": "A", "price": 10}, {"id": "B", "price": 2})
    result = compute_diff(snapshot, [{"price": 10}, {"id": "B", "price": 2}], IDENTITY)

    assert [d.content["id"] for d in result.disappeared] == ["A"]
    assert len(result.dropped) == 1
