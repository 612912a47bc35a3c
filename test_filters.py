"""
Tests for subscription filter parsing and evaluation.
"""

import pytest

from changewatch.errors import ConfigurationError
from changewatch.filters import Changed, Decreased, Eq, event_matches, parse_filters
from changewatch.models import Event, EventType


def make_event(event_type=EventType.ENTITY_CHANGED, **payload) -> Event:
    return Event(id="e1", tenant="org_test", event_type=event_type, watch_id="w1", payload=payload)


def price_event(old, new) -> Event:
    return make_event(
        entity={"id": "A", "price": new, "availability": "in_stock"},
        previous={"id": "A", "price": old, "availability": "in_stock"},
        changes=[{"field": "price", "old": old, "new": new}],
    )


def test_parse_conditions():
    expression = parse_filters({"conditions": [
        {"field": "price", "operator": "decreased"},
        {"field": "brand", "operator": "eq", "value": "Acme"},
        {"field": "stock", "operator": "changed"},
    ]})
    assert isinstance(expression.conditions[0], Decreased)
    assert isinstance(expression.conditions[1], Eq)
    assert isinstance(expression.conditions[2], Changed)


def test_list_shorthand():
    expression = parse_filters([{"field": "price", "operator": "increased"}])
    assert len(expression.conditions) == 1


@pytest.mark.parametrize("raw", [
    {"conditions": [{"field": "price", "operator": "between"}]},
    {"conditions": [{"operator": "changed"}]},
    {"conditions": [{"field": "", "operator": "changed"}]},
    {"conditions": "price"},
])
def test_invalid_filters_are_rejected(raw):
    with pytest.raises(ConfigurationError):
        parse_filters(raw)


def test_empty_filter_matches_everything():
    for raw in (None, {}, []):
        assert event_matches(parse_filters(raw), price_event(10, 8))
        assert event_matches(parse_filters(raw), make_event(EventType.ENTITY_APPEARED, entity={"id": "A"}))


def test_decreased():
    expression = parse_filters([{"field": "price", "operator": "decreased"}])
    assert event_matches(expression, price_event(10, 8))
    assert not event_matches(expression, price_event(8, 10))
    assert not event_matches(expression, price_event(10, 10.0))


def test_increased_with_numeric_strings():
    expression = parse_filters([{"field": "price", "operator": "increased"}])
    assert event_matches(expression, price_event("9.99", "12.50"))
    assert not event_matches(expression, price_event("n/a", "12.50"))


def test_changed_only_for_listed_fields():
    expression = parse_filters([{"field": "availability", "operator": "changed"}])
    assert not event_matches(expression, price_event(10, 8))
    assert event_matches(expression, make_event(
        entity={"id": "A", "availability": "in_stock"},
        previous={"id": "A", "availability": "out_of_stock"},
        changes=[{"field": "availability", "old": "out_of_stock", "new": "in_stock"}],
    ))


def test_eq_compares_new_value():
    expression = parse_filters([{"field": "availability", "operator": "eq", "value": "in_stock"}])
    assert event_matches(expression, price_event(10, 8))

    numeric = parse_filters([{"field": "price", "operator": "eq", "value": 8}])
    assert event_matches(numeric, price_event(10, "8.0"))
    assert not event_matches(numeric, price_event(8, 10))


def test_eq_on_missing_field_fails():
    expression = parse_filters([{"field": "brand", "operator": "eq", "value": "Acme"}])
    assert not event_matches(expression, price_event(10, 8))


def test_conditions_are_anded():
    expression = parse_filters([
        {"field": "price", "operator": "decreased"},
        {"field": "availability", "operator": "eq", "value": "out_of_stock"},
    ])
    assert not event_matches(expression, price_event(10, 8))


def test_change_operators_fail_for_appeared_events():
    event = make_event(EventType.ENTITY_APPEARED, entity={"id": "A", "price": 8})
    for operator in ("changed", "increased", "decreased"):
        assert not event_matches(parse_filters([{"field": "price", "operator": operator}]), event)
    assert event_matches(parse_filters([{"field": "price", "operator": "eq", "value": 8}]), event)
