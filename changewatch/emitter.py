"""
Event emitter: turns a DiffResult into entity mutations and event rows.

Both are written through the same transaction handle, so an event never
exists without its entity mutation and vice versa.
"""

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel

from .differ import DiffResult, EntityDiff
from .infra.db import Transaction
from .models import Entity, EntityStatus, Event, EventType, Run, Watch
from .store import Store, new_id

logger = logging.getLogger(__name__)


class EmitContext(BaseModel):
    watch: Watch
    run: Run
    schema_type: str
    now: datetime


def appeared_payload(d: EntityDiff) -> Dict[str, Any]:
    payload: Dict[str, Any] = {
        "external_id": d.external_id,
        "entity": d.content,
        "reactivated": d.reactivated,
    }
    if d.reactivated:
        payload["previous"] = d.previous.content
    return payload


def changed_payload(d: EntityDiff) -> Dict[str, Any]:
    return {
        "external_id": d.external_id,
        "entity": d.content,
        "previous": d.previous.content if d.previous else {},
        "changes": [c.model_dump() for c in d.changes],
    }


def disappeared_payload(d: EntityDiff) -> Dict[str, Any]:
    return {
        "external_id": d.external_id,
        "entity": d.content,
    }


class EventEmitter:
    """Persists diff outcomes as events plus Entity Store mutations."""

    def __init__(self, store: Store):
        self.store = store

    async def emit(self, tx: Transaction, ctx: EmitContext, diff: DiffResult) -> List[Event]:
        """Apply ``diff`` inside ``tx`` and return the events written, in order."""
        events: List[Event] = []

        for d in diff.appeared:
            entity_id = await self._apply_appeared(tx, ctx, d)
            events.append(await self._record(
                tx, ctx, EventType.ENTITY_APPEARED, entity_id, appeared_payload(d)
            ))

        for d in diff.changed:
            await self.store.update_entity(
                d.previous.id, d.content, EntityStatus.ACTIVE, ctx.now, conn=tx
            )
            events.append(await self._record(
                tx, ctx, EventType.ENTITY_CHANGED, d.previous.id, changed_payload(d)
            ))

        for d in diff.disappeared:
            await self.store.mark_entity_removed(d.previous.id, ctx.now, conn=tx)
            events.append(await self._record(
                tx, ctx, EventType.ENTITY_DISAPPEARED, d.previous.id, disappeared_payload(d)
            ))

        for d in diff.unchanged:
            await self.store.touch_entity(d.previous.id, ctx.now, conn=tx)

        if events:
            logger.info(
                f"Watch {ctx.watch.id} run {ctx.run.id}: emitted {len(events)} events "
                f"({len(diff.appeared)} appeared, {len(diff.changed)} changed, "
                f"{len(diff.disappeared)} disappeared)"
            )
        return events

    async def _apply_appeared(self, tx: Transaction, ctx: EmitContext, d: EntityDiff) -> str:
        if d.previous is not None:
            # reactivation keeps the original row and first_seen_at
            await self.store.update_entity(
                d.previous.id, d.content, EntityStatus.ACTIVE, ctx.now, conn=tx
            )
            return d.previous.id

        entity = Entity(
            id=new_id(),
            tenant=ctx.watch.tenant,
            watch_id=ctx.watch.id,
            schema_type=ctx.schema_type,
            external_id=d.external_id,
            content=d.content,
            status=EntityStatus.ACTIVE,
            first_seen_at=ctx.now,
            last_seen_at=ctx.now,
        )
        await self.store.insert_entity(entity, conn=tx)
        return entity.id

    async def _record(
        self,
        tx: Transaction,
        ctx: EmitContext,
        event_type: EventType,
        entity_id: Optional[str],
        payload: Dict[str, Any],
    ) -> Event:
        event = Event(
            id=new_id(),
            tenant=ctx.watch.tenant,
            event_type=event_type,
            watch_id=ctx.watch.id,
            run_id=ctx.run.id,
            entity_id=entity_id,
            payload=payload,
            occurred_at=ctx.now,
        )
        await self.store.insert_event(event, conn=tx)
        return event
