"""
Data-access layer shared by the pipeline stages.

Every method takes an optional ``conn``: pass the handle yielded by
``Database.transaction()`` to run the statement inside that transaction,
or leave it out to run it on its own.
"""

import json
import logging
import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional, Union

from .infra.db import Database, Transaction
from .models import (
    Blueprint,
    Delivery,
    DeliveryStatus,
    Entity,
    EntityStatus,
    Event,
    Run,
    RunStatus,
    Subscription,
    SubscriptionStatus,
    Watch,
    WatchStatus,
    to_db_time,
)

logger = logging.getLogger(__name__)

Conn = Union[Database, Transaction]


def new_id() -> str:
    return str(uuid.uuid4())


def dump_json(value: Any) -> str:
    return json.dumps(value, ensure_ascii=False, default=str)


class Store:
    """Queries for watches, runs, entities, events, subscriptions and deliveries."""

    def __init__(self, db: Database):
        self.db = db

    def _c(self, conn: Optional[Conn]) -> Conn:
        return conn if conn is not None else self.db

    # ---------------------------------------------- #
    # Blueprints
    async def insert_blueprint(self, blueprint: Blueprint, conn: Optional[Conn] = None) -> None:
        await self._c(conn).execute(
            """INSERT INTO blueprints (id, tenant, name, schema_type, extraction_rules, created_at)
               VALUES (?, ?, ?, ?, ?, ?)""",
            (
                blueprint.id,
                blueprint.tenant,
                blueprint.name,
                blueprint.schema_type,
                dump_json(blueprint.extraction_rules),
                to_db_time(blueprint.created_at),
            ),
        )

    async def get_blueprint(self, blueprint_id: str, conn: Optional[Conn] = None) -> Optional[Blueprint]:
        row = await self._c(conn).fetch_one("SELECT * FROM blueprints WHERE id = ?", (blueprint_id,))
        return Blueprint.from_row(row) if row else None

    # ---------------------------------------------- #
    # Watches
    async def insert_watch(self, watch: Watch, conn: Optional[Conn] = None) -> None:
        await self._c(conn).execute(
            """INSERT INTO watches (id, tenant, name, url, blueprint_id, schedule, identity_fields,
                                    status, next_run_at, consecutive_failures, created_at, updated_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                watch.id,
                watch.tenant,
                watch.name,
                watch.url,
                watch.blueprint_id,
                watch.schedule,
                dump_json(watch.identity_fields),
                watch.status.value,
                to_db_time(watch.next_run_at),
                watch.consecutive_failures,
                to_db_time(watch.created_at),
                to_db_time(watch.updated_at),
            ),
        )

    async def get_watch(
        self, watch_id: str, tenant: Optional[str] = None, conn: Optional[Conn] = None
    ) -> Optional[Watch]:
        sql = "SELECT * FROM watches WHERE id = ? AND deleted_at IS NULL"
        params: tuple = (watch_id,)
        if tenant is not None:
            sql += " AND tenant = ?"
            params += (tenant,)
        row = await self._c(conn).fetch_one(sql, params)
        return Watch.from_row(row) if row else None

    async def list_watches(self, tenant: Optional[str] = None) -> List[Watch]:
        sql = "SELECT * FROM watches WHERE deleted_at IS NULL"
        params: tuple = ()
        if tenant is not None:
            sql += " AND tenant = ?"
            params = (tenant,)
        rows = await self.db.fetch_all(sql + " ORDER BY created_at", params)
        return [Watch.from_row(r) for r in rows]

    async def update_watch(
        self, watch_id: str, fields: Dict[str, Any], conn: Optional[Conn] = None
    ) -> int:
        """Write the given columns; lists/dicts are stored as JSON, datetimes as UTC text."""
        if not fields:
            return 0
        columns, values = [], []
        for name, value in fields.items():
            if isinstance(value, datetime):
                value = to_db_time(value)
            elif isinstance(value, WatchStatus):
                value = value.value
            elif isinstance(value, (list, dict)):
                value = dump_json(value)
            columns.append(f"{name} = ?")
            values.append(value)
        sql = f"UPDATE watches SET {', '.join(columns)} WHERE id = ?"
        return await self._c(conn).execute(sql, tuple(values) + (watch_id,))

    async def due_watches(self, now: datetime, conn: Optional[Conn] = None) -> List[Watch]:
        rows = await self._c(conn).fetch_all(
            """SELECT w.* FROM watches w
               WHERE w.status = 'active'
                 AND w.deleted_at IS NULL
                 AND (w.next_run_at IS NULL OR w.next_run_at <= ?)
                 AND NOT EXISTS (
                     SELECT 1 FROM watch_runs r WHERE r.watch_id = w.id AND r.status = 'running'
                 )
               ORDER BY w.next_run_at""",
            (to_db_time(now),),
        )
        return [Watch.from_row(r) for r in rows]

    async def count_watches_by_status(self) -> Dict[str, int]:
        rows = await self.db.fetch_all(
            "SELECT status, COUNT(*) AS n FROM watches WHERE deleted_at IS NULL GROUP BY status"
        )
        return {r["status"]: r["n"] for r in rows}

    # ---------------------------------------------- #
    # Runs
    async def running_run(self, watch_id: str, conn: Optional[Conn] = None) -> Optional[Run]:
        row = await self._c(conn).fetch_one(
            "SELECT * FROM watch_runs WHERE watch_id = ? AND status = 'running'", (watch_id,)
        )
        return Run.from_row(row) if row else None

    async def insert_run(self, run: Run, conn: Optional[Conn] = None) -> None:
        await self._c(conn).execute(
            """INSERT INTO watch_runs (id, tenant, watch_id, trigger, status, started_at)
               VALUES (?, ?, ?, ?, ?, ?)""",
            (run.id, run.tenant, run.watch_id, run.trigger, run.status.value, to_db_time(run.started_at)),
        )

    async def complete_run(
        self,
        run_id: str,
        status: RunStatus,
        completed_at: datetime,
        stats: Optional[Dict[str, int]] = None,
        error_message: Optional[str] = None,
        conn: Optional[Conn] = None,
    ) -> int:
        """Close a running run. Returns 0 if the run was already closed."""
        stats = stats or {}
        return await self._c(conn).execute(
            """UPDATE watch_runs
               SET status = ?, completed_at = ?, entities_found = ?, entities_new = ?,
                   entities_changed = ?, entities_removed = ?, records_dropped = ?,
                   events_emitted = ?, error_message = ?
               WHERE id = ? AND status = 'running'""",
            (
                status.value,
                to_db_time(completed_at),
                stats.get("found"),
                stats.get("new"),
                stats.get("changed"),
                stats.get("removed"),
                stats.get("dropped"),
                stats.get("events"),
                error_message,
                run_id,
            ),
        )

    async def get_run(self, run_id: str, conn: Optional[Conn] = None) -> Optional[Run]:
        row = await self._c(conn).fetch_one("SELECT * FROM watch_runs WHERE id = ?", (run_id,))
        return Run.from_row(row) if row else None

    async def list_runs(self, watch_id: str, limit: int = 20) -> List[Run]:
        rows = await self.db.fetch_all(
            "SELECT * FROM watch_runs WHERE watch_id = ? ORDER BY started_at DESC LIMIT ?",
            (watch_id, limit),
        )
        return [Run.from_row(r) for r in rows]

    async def stale_runs(self, started_before: datetime) -> List[Run]:
        rows = await self.db.fetch_all(
            "SELECT * FROM watch_runs WHERE status = 'running' AND started_at <= ?",
            (to_db_time(started_before),),
        )
        return [Run.from_row(r) for r in rows]

    async def count_running_runs(self) -> int:
        row = await self.db.fetch_one("SELECT COUNT(*) AS n FROM watch_runs WHERE status = 'running'")
        return row["n"]

    # ---------------------------------------------- #
    # Entities
    async def load_snapshot(self, watch: Watch, schema_type: str, conn: Optional[Conn] = None) -> Dict[str, Entity]:
        """All entities (active and removed) of a watch keyed by external id."""
        rows = await self._c(conn).fetch_all(
            """SELECT * FROM entities
               WHERE tenant = ? AND watch_id = ? AND schema_type = ?""",
            (watch.tenant, watch.id, schema_type),
        )
        return {r["external_id"]: Entity.from_row(r) for r in rows}

    async def insert_entity(self, entity: Entity, conn: Optional[Conn] = None) -> None:
        await self._c(conn).execute(
            """INSERT INTO entities (id, tenant, watch_id, schema_type, external_id, content, status,
                                     first_seen_at, last_seen_at, updated_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                entity.id,
                entity.tenant,
                entity.watch_id,
                entity.schema_type,
                entity.external_id,
                dump_json(entity.content),
                entity.status.value,
                to_db_time(entity.first_seen_at),
                to_db_time(entity.last_seen_at),
                to_db_time(entity.last_seen_at),
            ),
        )

    async def update_entity(
        self,
        entity_id: str,
        content: Dict[str, Any],
        status: EntityStatus,
        seen_at: datetime,
        conn: Optional[Conn] = None,
    ) -> int:
        return await self._c(conn).execute(
            """UPDATE entities SET content = ?, status = ?, last_seen_at = ?, updated_at = ?
               WHERE id = ?""",
            (dump_json(content), status.value, to_db_time(seen_at), to_db_time(seen_at), entity_id),
        )

    async def touch_entity(self, entity_id: str, seen_at: datetime, conn: Optional[Conn] = None) -> int:
        return await self._c(conn).execute(
            "UPDATE entities SET last_seen_at = ? WHERE id = ?", (to_db_time(seen_at), entity_id)
        )

    async def mark_entity_removed(self, entity_id: str, at: datetime, conn: Optional[Conn] = None) -> int:
        return await self._c(conn).execute(
            "UPDATE entities SET status = 'removed', updated_at = ? WHERE id = ? AND status = 'active'",
            (to_db_time(at), entity_id),
        )

    async def get_entity(self, entity_id: str) -> Optional[Entity]:
        row = await self.db.fetch_one("SELECT * FROM entities WHERE id = ?", (entity_id,))
        return Entity.from_row(row) if row else None

    async def list_entities(self, watch_id: str, status: Optional[EntityStatus] = None) -> List[Entity]:
        sql = "SELECT * FROM entities WHERE watch_id = ?"
        params: tuple = (watch_id,)
        if status is not None:
            sql += " AND status = ?"
            params += (status.value,)
        rows = await self.db.fetch_all(sql + " ORDER BY first_seen_at", params)
        return [Entity.from_row(r) for r in rows]

    # ---------------------------------------------- #
    # Events
    async def insert_event(self, event: Event, conn: Optional[Conn] = None) -> None:
        await self._c(conn).execute(
            """INSERT INTO events (id, tenant, event_type, watch_id, run_id, entity_id, payload, occurred_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                event.id,
                event.tenant,
                event.event_type.value,
                event.watch_id,
                event.run_id,
                event.entity_id,
                dump_json(event.payload),
                to_db_time(event.occurred_at),
            ),
        )

    async def get_event(self, event_id: str, conn: Optional[Conn] = None) -> Optional[Event]:
        row = await self._c(conn).fetch_one("SELECT * FROM events WHERE id = ?", (event_id,))
        return Event.from_row(row) if row else None

    async def events_for_run(self, run_id: str) -> List[Event]:
        rows = await self.db.fetch_all(
            "SELECT * FROM events WHERE run_id = ? ORDER BY occurred_at, seq", (run_id,)
        )
        return [Event.from_row(r) for r in rows]

    async def list_events(self, watch_id: str, limit: int = 100) -> List[Event]:
        rows = await self.db.fetch_all(
            "SELECT * FROM events WHERE watch_id = ? ORDER BY occurred_at, seq LIMIT ?",
            (watch_id, limit),
        )
        return [Event.from_row(r) for r in rows]

    async def unmatched_events(self, limit: int = 500) -> List[Event]:
        rows = await self.db.fetch_all(
            "SELECT * FROM events WHERE matched_at IS NULL ORDER BY occurred_at, seq LIMIT ?",
            (limit,),
        )
        return [Event.from_row(r) for r in rows]

    async def count_unmatched_events(self) -> int:
        row = await self.db.fetch_one("SELECT COUNT(*) AS n FROM events WHERE matched_at IS NULL")
        return row["n"]

    async def mark_event_matched(self, event_id: str, at: datetime, conn: Optional[Conn] = None) -> int:
        return await self._c(conn).execute(
            "UPDATE events SET matched_at = ? WHERE id = ? AND matched_at IS NULL",
            (to_db_time(at), event_id),
        )

    # ---------------------------------------------- #
    # Subscriptions
    async def insert_subscription(self, sub: Subscription, conn: Optional[Conn] = None) -> None:
        await self._c(conn).execute(
            """INSERT INTO subscriptions (id, tenant, name, event_types, watch_id, filters, channel_type,
                                          channel_config, status, created_at, updated_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                sub.id,
                sub.tenant,
                sub.name,
                dump_json([t.value for t in sub.event_types]),
                sub.watch_id,
                dump_json(sub.filters),
                sub.channel_type.value,
                dump_json(sub.channel_config),
                sub.status.value,
                to_db_time(sub.created_at),
                to_db_time(sub.updated_at),
            ),
        )

    async def get_subscription(
        self,
        subscription_id: str,
        tenant: Optional[str] = None,
        include_deleted: bool = False,
        conn: Optional[Conn] = None,
    ) -> Optional[Subscription]:
        sql = "SELECT * FROM subscriptions WHERE id = ?"
        params: tuple = (subscription_id,)
        if not include_deleted:
            sql += " AND deleted_at IS NULL"
        if tenant is not None:
            sql += " AND tenant = ?"
            params += (tenant,)
        row = await self._c(conn).fetch_one(sql, params)
        return Subscription.from_row(row) if row else None

    async def update_subscription(
        self, subscription_id: str, fields: Dict[str, Any], conn: Optional[Conn] = None
    ) -> int:
        if not fields:
            return 0
        columns, values = [], []
        for name, value in fields.items():
            if isinstance(value, datetime):
                value = to_db_time(value)
            elif hasattr(value, "value"):
                value = value.value
            elif isinstance(value, (list, dict)):
                value = dump_json(value)
            columns.append(f"{name} = ?")
            values.append(value)
        sql = f"UPDATE subscriptions SET {', '.join(columns)} WHERE id = ?"
        return await self._c(conn).execute(sql, tuple(values) + (subscription_id,))

    async def list_subscriptions(self, tenant: Optional[str] = None) -> List[Subscription]:
        sql = "SELECT * FROM subscriptions WHERE deleted_at IS NULL"
        params: tuple = ()
        if tenant is not None:
            sql += " AND tenant = ?"
            params = (tenant,)
        rows = await self.db.fetch_all(sql + " ORDER BY created_at", params)
        return [Subscription.from_row(r) for r in rows]

    async def candidate_subscriptions(self, event: Event) -> List[Subscription]:
        """Active subscriptions of the event's tenant scoped to its watch or to all watches."""
        rows = await self.db.fetch_all(
            """SELECT * FROM subscriptions
               WHERE tenant = ? AND status = ? AND deleted_at IS NULL
                 AND (watch_id IS NULL OR watch_id = ?)
               ORDER BY created_at""",
            (event.tenant, SubscriptionStatus.ACTIVE.value, event.watch_id),
        )
        subs = []
        for row in rows:
            try:
                sub = Subscription.from_row(row)
            except ValueError as e:
                logger.warning(f"Skipping unreadable subscription {row['id']}: {e}")
                continue
            if event.event_type in sub.event_types:
                subs.append(sub)
        return subs

    # ---------------------------------------------- #
    # Deliveries
    async def insert_delivery(self, delivery: Delivery, conn: Optional[Conn] = None) -> bool:
        """Insert unless a row for the same (event, subscription) exists. True if inserted."""
        count = await self._c(conn).execute(
            """INSERT INTO deliveries (id, tenant, event_id, subscription_id, status, attempts,
                                       max_attempts, next_retry_at, created_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
               ON CONFLICT(event_id, subscription_id) DO NOTHING""",
            (
                delivery.id,
                delivery.tenant,
                delivery.event_id,
                delivery.subscription_id,
                delivery.status.value,
                delivery.attempts,
                delivery.max_attempts,
                to_db_time(delivery.next_retry_at),
                to_db_time(delivery.created_at),
            ),
        )
        return count == 1

    async def get_delivery(self, delivery_id: str) -> Optional[Delivery]:
        row = await self.db.fetch_one("SELECT * FROM deliveries WHERE id = ?", (delivery_id,))
        return Delivery.from_row(row) if row else None

    async def list_deliveries(
        self, status: Optional[DeliveryStatus] = None, limit: int = 100
    ) -> List[Delivery]:
        sql = "SELECT * FROM deliveries"
        params: tuple = ()
        if status is not None:
            sql += " WHERE status = ?"
            params = (status.value,)
        rows = await self.db.fetch_all(sql + " ORDER BY created_at DESC LIMIT ?", params + (limit,))
        return [Delivery.from_row(r) for r in rows]

    async def count_deliveries_by_status(self) -> Dict[str, int]:
        rows = await self.db.fetch_all("SELECT status, COUNT(*) AS n FROM deliveries GROUP BY status")
        return {r["status"]: r["n"] for r in rows}

    async def claim_deliveries(
        self, now: datetime, token: str, lease_until: datetime, limit: int
    ) -> List[Delivery]:
        """Atomically select due pending deliveries and stamp them with ``token``."""
        now_s = to_db_time(now)
        async with self.db.transaction() as tx:
            rows = await tx.fetch_all(
                """SELECT id FROM deliveries
                   WHERE status = 'pending' AND next_retry_at <= ?
                     AND (claim_expires_at IS NULL OR claim_expires_at <= ?)
                   ORDER BY next_retry_at LIMIT ?""",
                (now_s, now_s, limit),
            )
            for row in rows:
                await tx.execute(
                    """UPDATE deliveries SET claim_token = ?, claim_expires_at = ?
                       WHERE id = ? AND status = 'pending'""",
                    (token, to_db_time(lease_until), row["id"]),
                )
            claimed = await tx.fetch_all(
                "SELECT * FROM deliveries WHERE claim_token = ? ORDER BY next_retry_at", (token,)
            )
        return [Delivery.from_row(r) for r in claimed]

    async def finish_delivery(
        self,
        delivery_id: str,
        token: str,
        status: DeliveryStatus,
        attempts: int,
        next_retry_at: Optional[datetime] = None,
        last_error: Optional[str] = None,
        delivered_at: Optional[datetime] = None,
    ) -> int:
        """Record an attempt outcome and drop the claim.

        Only the holder of the claim can write; returns 0 if the claim was
        lost (lease expired and another sweep took the row).
        """
        return await self.db.execute(
            """UPDATE deliveries
               SET status = ?, attempts = ?,
                   next_retry_at = COALESCE(?, next_retry_at),
                   last_error = COALESCE(?, last_error),
                   delivered_at = ?,
                   claim_token = NULL, claim_expires_at = NULL
               WHERE id = ? AND claim_token = ? AND status = 'pending'""",
            (
                status.value,
                attempts,
                to_db_time(next_retry_at),
                last_error,
                to_db_time(delivered_at),
                delivery_id,
                token,
            ),
        )

    async def release_delivery(self, delivery_id: str, token: str, next_retry_at: datetime) -> int:
        return await self.db.execute(
            """UPDATE deliveries SET claim_token = NULL, claim_expires_at = NULL, next_retry_at = ?
               WHERE id = ? AND claim_token = ? AND status = 'pending'""",
            (to_db_time(next_retry_at), delivery_id, token),
        )
