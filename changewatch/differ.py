"""
Diff engine: compares a watch's stored entity snapshot with a freshly
extracted batch and classifies every external id as appeared, changed,
disappeared or unchanged.

The engine is pure. It reads nothing from the database and writes nothing;
the emitter persists its result.
"""

import logging
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

from pydantic import BaseModel, Field

from .errors import DataError
from .identity import compute_external_id
from .models import Entity, EntityStatus, FieldChange

logger = logging.getLogger(__name__)


class DroppedRecord(BaseModel):
    index: int
    reason: str
    record: Any = None


class EntityDiff(BaseModel):
    external_id: str
    content: Dict[str, Any]
    previous: Optional[Entity] = None
    changes: List[FieldChange] = Field(default_factory=list)

    @property
    def reactivated(self) -> bool:
        return self.previous is not None and self.previous.status == EntityStatus.REMOVED


class DiffResult(BaseModel):
    appeared: List[EntityDiff] = Field(default_factory=list)
    changed: List[EntityDiff] = Field(default_factory=list)
    disappeared: List[EntityDiff] = Field(default_factory=list)
    unchanged: List[EntityDiff] = Field(default_factory=list)
    dropped: List[DroppedRecord] = Field(default_factory=list)
    found: int = 0

    @property
    def event_count(self) -> int:
        return len(self.appeared) + len(self.changed) + len(self.disappeared)


def _as_number(value: Any) -> Optional[float]:
    # bool is an int subclass but never a number here
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    return None


def values_equal(old: Any, new: Any) -> bool:
    """Compare two field values the way the differ does.

    Strings compare after stripping whitespace, numbers compare numerically,
    everything else by equality.
    """
    if old is None and new is None:
        return True
    if old is None or new is None:
        return False
    if isinstance(old, str) and isinstance(new, str):
        return old.strip() == new.strip()
    if isinstance(old, bool) or isinstance(new, bool):
        return type(old) is type(new) and old == new
    old_num, new_num = _as_number(old), _as_number(new)
    if old_num is not None and new_num is not None:
        return old_num == new_num
    return old == new


def diff_fields(old: Mapping[str, Any], new: Mapping[str, Any]) -> List[FieldChange]:
    """Field-level comparison over the union of fields.

    A null value counts as an absent field.
    """
    changes: List[FieldChange] = []
    for name, new_value in new.items():
        if name not in old:
            if new_value is not None:
                changes.append(FieldChange(field=name, old=None, new=new_value))
            continue
        if not values_equal(old[name], new_value):
            changes.append(FieldChange(field=name, old=old[name], new=new_value))

    for name, old_value in old.items():
        if name not in new and old_value is not None:
            changes.append(FieldChange(field=name, old=old_value, new=None))
    return changes


def key_records(
    records: Sequence[Any], identity_fields: Sequence[str]
) -> Tuple[Dict[str, Dict[str, Any]], List[DroppedRecord]]:
    """Reduce extracted records to ``{external_id: record}``.

    Returns the keyed mapping (in extraction order) and the dropped records.
    On an identity collision the later record wins.
    """
    keyed: Dict[str, Dict[str, Any]] = {}
    positions: Dict[str, int] = {}
    dropped: List[DroppedRecord] = []

    for index, record in enumerate(records):
        try:
            external_id = compute_external_id(record, identity_fields)
        except DataError as e:
            logger.warning(f"Dropping record #{index}: {e}")
            dropped.append(DroppedRecord(index=index, reason=str(e), record=record))
            continue

        if external_id in keyed:
            earlier = positions[external_id]
            logger.warning(
                f"Identity collision on {external_id}: record #{index} replaces record #{earlier}"
            )
            dropped.append(DroppedRecord(
                index=earlier,
                reason=f"identity collision, superseded by record #{index}",
                record=keyed[external_id],
            ))
            # keep extraction order of the winner
            del keyed[external_id]

        keyed[external_id] = dict(record)
        positions[external_id] = index

    return keyed, dropped


def compute_diff(
    stored: Mapping[str, Entity],
    records: Sequence[Any],
    identity_fields: Sequence[str],
) -> DiffResult:
    """Diff a stored snapshot (keyed by external id) against extracted records."""
    extracted, dropped = key_records(records, identity_fields)
    result = DiffResult(dropped=dropped, found=len(records))

    for external_id, content in extracted.items():
        previous = stored.get(external_id)
        if previous is None:
            result.appeared.append(EntityDiff(external_id=external_id, content=content))
            continue

        if previous.status == EntityStatus.REMOVED:
            # same row comes back to life, reported as appeared again
            result.appeared.append(EntityDiff(
                external_id=external_id,
                content=content,
                previous=previous,
                changes=diff_fields(previous.content, content),
            ))
            continue

        changes = diff_fields(previous.content, content)
        entity_diff = EntityDiff(
            external_id=external_id, content=content, previous=previous, changes=changes
        )
        if changes:
            result.changed.append(entity_diff)
        else:
            result.unchanged.append(entity_diff)

    for external_id, entity in stored.items():
        if external_id in extracted or entity.status != EntityStatus.ACTIVE:
            continue
        result.disappeared.append(EntityDiff(
            external_id=external_id, content=entity.content, previous=entity
        ))

    logger.debug(
        f"Diff: {len(result.appeared)} appeared, {len(result.changed)} changed, "
        f"{len(result.disappeared)} disappeared, {len(result.unchanged)} unchanged, "
        f"{len(result.dropped)} dropped"
    )
    return result
