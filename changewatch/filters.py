"""
Subscription filter predicates.

A filter is a conjunction of conditions. Each condition is one of four
variants told apart by ``operator``; evaluation is a pure function of the old
values, the new values and the set of fields that changed.
"""

from typing import Annotated, Any, Dict, List, Literal, Mapping, Optional, Set, Tuple, Union

from pydantic import BaseModel, Field, ValidationError

from .errors import ConfigurationError
from .models import Event


class Eq(BaseModel):
    operator: Literal["eq"] = "eq"
    field: str = Field(min_length=1)
    value: Any = None


class Changed(BaseModel):
    operator: Literal["changed"] = "changed"
    field: str = Field(min_length=1)


class Increased(BaseModel):
    operator: Literal["increased"] = "increased"
    field: str = Field(min_length=1)


class Decreased(BaseModel):
    operator: Literal["decreased"] = "decreased"
    field: str = Field(min_length=1)


Condition = Annotated[Union[Eq, Changed, Increased, Decreased], Field(discriminator="operator")]


class FilterExpression(BaseModel):
    conditions: List[Condition] = Field(default_factory=list)


def parse_filters(raw: Any) -> FilterExpression:
    """Validate a stored filter document; an empty/missing document matches everything.

    A bare list is read as the condition list.
    """
    if not raw:
        return FilterExpression()
    if isinstance(raw, list):
        raw = {"conditions": raw}
    try:
        return FilterExpression.model_validate(raw)
    except ValidationError as e:
        raise ConfigurationError(f"invalid filter: {e}") from e


def to_number(value: Any) -> Optional[float]:
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value.strip())
        except ValueError:
            return None
    return None


def literal_equals(actual: Any, expected: Any) -> bool:
    actual_num, expected_num = to_number(actual), to_number(expected)
    if actual_num is not None and expected_num is not None:
        return actual_num == expected_num
    if actual is None or expected is None:
        return actual is None and expected is None
    if isinstance(actual, bool) or isinstance(expected, bool):
        return str(actual).lower() == str(expected).lower()
    return str(actual).strip() == str(expected).strip()


def evaluate(
    condition: Condition,
    old: Mapping[str, Any],
    new: Mapping[str, Any],
    changed_fields: Set[str],
) -> bool:
    """Evaluate one condition."""
    if isinstance(condition, Eq):
        return condition.field in new and literal_equals(new[condition.field], condition.value)

    if condition.field not in changed_fields:
        return False

    if isinstance(condition, Changed):
        return True

    old_num = to_number(old.get(condition.field))
    new_num = to_number(new.get(condition.field))
    if old_num is None or new_num is None:
        return False
    if isinstance(condition, Increased):
        return new_num > old_num
    if isinstance(condition, Decreased):
        return new_num < old_num
    return False


def matches(
    expression: FilterExpression,
    old: Mapping[str, Any],
    new: Mapping[str, Any],
    changed_fields: Set[str],
) -> bool:
    return all(evaluate(c, old, new, changed_fields) for c in expression.conditions)


def event_values(event: Event) -> Tuple[Dict[str, Any], Dict[str, Any], Set[str]]:
    """Old values, new values and changed fields taken from an event payload."""
    new = dict(event.payload.get("entity") or {})
    old = dict(event.payload.get("previous") or {})
    changed_fields: Set[str] = set()
    for change in event.payload.get("changes") or []:
        name = change.get("field")
        if name is None:
            continue
        changed_fields.add(name)
        old[name] = change.get("old")
        new[name] = change.get("new")
    return old, new, changed_fields


def event_matches(expression: FilterExpression, event: Event) -> bool:
    old, new, changed_fields = event_values(event)
    return matches(expression, old, new, changed_fields)
