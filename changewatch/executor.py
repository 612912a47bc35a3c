"""
Run executor: one watch, one run, start to finish.

A run is claimed in its own transaction (the partial unique index on running
runs makes the claim exclusive). The diff, its entity mutations, its events,
the run completion and the watch's next schedule are then committed together
in a second transaction, so a failed or aborted run leaves no trace besides
the failed run row and the watch's failure counter.
"""

import asyncio
import logging
from datetime import datetime
from typing import List, Optional, Tuple

import aiosqlite

from .config import Settings
from .differ import compute_diff
from .emitter import EmitContext, EventEmitter
from .errors import (
    ConfigurationError,
    ExtractionTimeout,
    InvariantViolation,
    RunAlreadyActive,
    WatchNotSchedulable,
)
from .infra.scheduler import next_run_after
from .interfaces import Extractor
from .models import (
    Blueprint,
    Event,
    ExtractionRequest,
    Run,
    RunStatus,
    Watch,
    WatchStatus,
    utcnow,
)
from .store import Store, new_id

logger = logging.getLogger(__name__)


class RunExecutor:
    """Claims, executes and closes watch runs."""

    def __init__(
        self,
        store: Store,
        extractor: Extractor,
        settings: Optional[Settings] = None,
        matcher=None,
        emitter: Optional[EventEmitter] = None,
    ):
        self.store = store
        self.extractor = extractor
        self.settings = settings or Settings()
        self.matcher = matcher
        self.emitter = emitter or EventEmitter(store)

    async def execute(self, watch: Watch, trigger: str = "schedule") -> Run:
        """Claim a run for ``watch`` and carry it out. Returns the closed run."""
        run = await self.claim(watch, trigger)
        return await self.run(watch, run)

    async def claim(self, watch: Watch, trigger: str = "schedule", now: Optional[datetime] = None) -> Run:
        """Insert a running run for ``watch``.

        Raises RunAlreadyActive if another run holds the watch and
        WatchNotSchedulable if the watch is not active.
        """
        now = now or utcnow()
        run = Run(id=new_id(), tenant=watch.tenant, watch_id=watch.id, trigger=trigger, started_at=now)
        try:
            async with self.store.db.transaction() as tx:
                current = await self.store.get_watch(watch.id, conn=tx)
                if current is None:
                    raise WatchNotSchedulable(watch.id, "deleted")
                if current.status != WatchStatus.ACTIVE:
                    raise WatchNotSchedulable(watch.id, current.status.value)
                if await self.store.running_run(watch.id, conn=tx) is not None:
                    raise RunAlreadyActive(watch.id)
                await self.store.insert_run(run, conn=tx)
        except aiosqlite.IntegrityError as e:
            raise RunAlreadyActive(watch.id) from e

        logger.info(f"Watch {watch.id} ({watch.name}): run {run.id} started ({trigger})")
        return run

    async def run(self, watch: Watch, run: Run) -> Run:
        """Carry out a claimed run and close it."""
        try:
            events = await self._execute(watch, run)
        except ConfigurationError as e:
            logger.error(f"Watch {watch.id} run {run.id}: configuration error: {e}")
            await self.fail_run(run, str(e), configuration=True)
        except Exception as e:
            logger.error(f"Watch {watch.id} run {run.id} failed: {type(e).__name__}: {e}")
            await self.fail_run(run, f"{type(e).__name__}: {e}")
        else:
            await self._match(watch, run, events)

        closed = await self.store.get_run(run.id)
        return closed or run

    async def _resolve(self, watch: Watch) -> Blueprint:
        blueprint = await self.store.get_blueprint(watch.blueprint_id)
        if blueprint is None or blueprint.tenant != watch.tenant:
            raise ConfigurationError(f"blueprint {watch.blueprint_id} not found")
        if not watch.identity_fields:
            raise ConfigurationError("watch has no identity fields")
        return blueprint

    async def _execute(self, watch: Watch, run: Run) -> List[Event]:
        blueprint = await self._resolve(watch)
        # validates the schedule before any work is done
        next_run_after(watch.schedule, run.started_at, self.settings.timezone)

        request = ExtractionRequest(
            tenant=watch.tenant,
            url=watch.url,
            extraction_rules=blueprint.extraction_rules,
            schema_type=blueprint.schema_type,
        )
        timeout = self.settings.extraction_timeout_seconds
        try:
            records = await asyncio.wait_for(self.extractor.extract(request), timeout=timeout)
        except asyncio.TimeoutError as e:
            raise ExtractionTimeout(f"extraction timed out after {timeout:.0f}s") from e
        logger.info(f"Watch {watch.id} run {run.id}: extracted {len(records)} records")

        finished = utcnow()
        next_run = next_run_after(watch.schedule, finished, self.settings.timezone)

        async with self.store.db.transaction() as tx:
            snapshot = await self.store.load_snapshot(watch, blueprint.schema_type, conn=tx)
            diff = compute_diff(snapshot, records, watch.identity_fields)
            ctx = EmitContext(watch=watch, run=run, schema_type=blueprint.schema_type, now=finished)
            events = await self.emitter.emit(tx, ctx, diff)

            stats = {
                "found": diff.found,
                "new": len(diff.appeared),
                "changed": len(diff.changed),
                "removed": len(diff.disappeared),
                "dropped": len(diff.dropped),
                "events": len(events),
            }
            closed = await self.store.complete_run(run.id, RunStatus.COMPLETED, finished, stats, conn=tx)
            if closed == 0:
                # reaped while we were extracting; roll everything back
                raise InvariantViolation(f"run {run.id} was closed by another worker")
            await self.store.update_watch(
                watch.id,
                {"consecutive_failures": 0, "next_run_at": next_run, "updated_at": finished},
                conn=tx,
            )

        logger.info(
            f"Watch {watch.id} run {run.id} completed: {stats['found']} found, {stats['new']} new, "
            f"{stats['changed']} changed, {stats['removed']} removed, {stats['dropped']} dropped"
        )
        return events

    async def _match(self, watch: Watch, run: Run, events: List[Event]) -> None:
        if not events or self.matcher is None:
            return
        try:
            await self.matcher.match(events)
        except Exception as e:
            # events stay unmatched and are picked up by the pending-match sweep
            logger.error(f"Watch {watch.id} run {run.id}: matching failed: {e}")

    async def fail_run(
        self,
        run: Run,
        error: str,
        configuration: bool = False,
        now: Optional[datetime] = None,
    ) -> Tuple[bool, Optional[WatchStatus]]:
        """Close ``run`` as failed and count the failure against its watch.

        Returns whether the run was closed by this call and the watch's new
        status (None if the watch is gone).
        """
        now = now or utcnow()
        async with self.store.db.transaction() as tx:
            closed = await self.store.complete_run(
                run.id, RunStatus.FAILED, now, error_message=error, conn=tx
            )
            if closed == 0:
                return False, None

            current = await self.store.get_watch(run.watch_id, conn=tx)
            if current is None:
                return True, None

            failures = current.consecutive_failures + 1
            fields = {"consecutive_failures": failures, "updated_at": now}
            status = current.status
            ceiling = self.settings.max_consecutive_failures
            if current.status == WatchStatus.ACTIVE and (configuration or failures >= ceiling):
                status = WatchStatus.ERROR
                fields["status"] = status
            try:
                fields["next_run_at"] = next_run_after(current.schedule, now, self.settings.timezone)
            except ConfigurationError:
                pass
            await self.store.update_watch(current.id, fields, conn=tx)

        if status == WatchStatus.ERROR and current.status != WatchStatus.ERROR:
            logger.warning(
                f"Watch {current.id} ({current.name}) moved to error "
                f"({failures} consecutive failures, last: {error})"
            )
        return True, status

