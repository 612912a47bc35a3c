"""
Watch scheduler: finds due watches and starts their runs.
"""

import asyncio
import logging
from datetime import datetime, timedelta
from typing import List, Optional, Set

from .config import Settings
from .errors import NotFoundError, RunAlreadyActive, WatchNotSchedulable
from .executor import RunExecutor
from .models import Run, TriggerResult, Watch, WatchStatus, utcnow
from .store import Store

logger = logging.getLogger(__name__)


class WatchScheduler:
    """Decides when watches run. Exclusivity is enforced by the executor's claim."""

    def __init__(self, store: Store, executor: RunExecutor, settings: Optional[Settings] = None):
        self.store = store
        self.executor = executor
        self.settings = settings or executor.settings
        self._semaphore = asyncio.Semaphore(self.settings.max_concurrent_runs)
        self._background: Set[asyncio.Task] = set()

    async def due_watches(self, now: Optional[datetime] = None) -> List[Watch]:
        """Active watches whose next run time has passed and that have no running run."""
        return await self.store.due_watches(now or utcnow())

    async def tick(self, now: Optional[datetime] = None) -> List[Run]:
        """Run every due watch, at most ``max_concurrent_runs`` at a time."""
        watches = await self.due_watches(now)
        if not watches:
            return []
        logger.info(f"{len(watches)} watches due")
        runs = await asyncio.gather(*(self._execute(w) for w in watches))
        return [r for r in runs if r is not None]

    async def _execute(self, watch: Watch) -> Optional[Run]:
        async with self._semaphore:
            try:
                return await self.executor.execute(watch, "schedule")
            except RunAlreadyActive:
                logger.debug(f"Watch {watch.id} already running, skipping")
            except WatchNotSchedulable as e:
                logger.debug(f"Skipping watch {watch.id}: {e}")
        return None

    async def trigger(self, tenant: str, watch_id: str) -> TriggerResult:
        """Start a run now, regardless of schedule. Never queues behind a running run."""
        watch = await self.store.get_watch(watch_id, tenant)
        if watch is None:
            return TriggerResult(accepted=False, reason="not_found")
        try:
            run = await self.executor.claim(watch, "manual")
        except RunAlreadyActive:
            return TriggerResult(accepted=False, reason="already_running")
        except WatchNotSchedulable:
            return TriggerResult(accepted=False, reason="not_schedulable")

        task = asyncio.create_task(self._run_claimed(watch, run))
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return TriggerResult(accepted=True, run_id=run.id)

    async def _run_claimed(self, watch: Watch, run: Run) -> Run:
        async with self._semaphore:
            return await self.executor.run(watch, run)

    async def drain(self) -> None:
        """Wait for manually triggered runs still in flight."""
        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    async def resume(self, tenant: str, watch_id: str, now: Optional[datetime] = None) -> Watch:
        """Put a paused or errored watch back on schedule, due immediately."""
        now = now or utcnow()
        watch = await self._get(tenant, watch_id)
        await self.store.update_watch(
            watch.id,
            {
                "status": WatchStatus.ACTIVE,
                "consecutive_failures": 0,
                "next_run_at": now,
                "updated_at": now,
            },
        )
        logger.info(f"Watch {watch.id} ({watch.name}) resumed")
        return await self._get(tenant, watch_id)

    async def pause(self, tenant: str, watch_id: str, now: Optional[datetime] = None) -> Watch:
        now = now or utcnow()
        watch = await self._get(tenant, watch_id)
        await self.store.update_watch(watch.id, {"status": WatchStatus.PAUSED, "updated_at": now})
        logger.info(f"Watch {watch.id} ({watch.name}) paused")
        return await self._get(tenant, watch_id)

    async def reap_stale_runs(self, now: Optional[datetime] = None) -> int:
        """Fail runs left ``running`` by a crashed process. Returns how many were closed."""
        now = now or utcnow()
        cutoff = now - timedelta(seconds=self.settings.stale_run_seconds)
        reaped = 0
        for run in await self.store.stale_runs(cutoff):
            closed, _ = await self.executor.fail_run(
                run, "run abandoned (no result before the stale-run limit)", now=now
            )
            if closed:
                reaped += 1
                logger.warning(f"Reaped stale run {run.id} of watch {run.watch_id} (started {run.started_at})")
        return reaped

    async def _get(self, tenant: str, watch_id: str) -> Watch:
        watch = await self.store.get_watch(watch_id, tenant)
        if watch is None:
            raise NotFoundError(f"watch {watch_id} not found")
        return watch
