"""
Orchestrator: wires the pipeline together and drives its poll loops.
"""

import functools
import logging
import traceback
from typing import Any, Awaitable, Callable, Dict, Optional

from .admin import Admin
from .config import Settings, load_settings
from .dispatcher import DeliveryDispatcher
from .executor import RunExecutor
from .extraction import HttpExtractor
from .health import health_report
from .infra.db import Database
from .infra.scheduler import Scheduler
from .interfaces import Extractor, Transport
from .matcher import SubscriptionMatcher
from .models import ChannelType
from .scheduler import WatchScheduler
from .store import Store
from .transports import LogTransport, ResendEmailTransport, WebhookTransport

logger = logging.getLogger(__name__)


def build_transports(settings: Settings) -> Dict[ChannelType, Transport]:
    """One transport per channel type. E-mail is only available with a Resend key."""
    timeout = settings.delivery.send_timeout_seconds
    transports: Dict[ChannelType, Transport] = {
        ChannelType.LOG: LogTransport(),
        ChannelType.WEBHOOK: WebhookTransport(timeout=timeout),
    }
    if settings.resend_api_key:
        transports[ChannelType.EMAIL] = ResendEmailTransport(
            settings.resend_api_key, settings.resend_from_email, timeout=timeout
        )
    else:
        logger.warning("No Resend API key configured; e-mail deliveries will fail")
    return transports


class Orchestrator:
    """Owns the database, the pipeline components and the poll jobs."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        extractor: Optional[Extractor] = None,
        transports: Optional[Dict[ChannelType, Transport]] = None,
    ):
        self.settings = settings or load_settings()
        self.db = Database(self.settings.db_path)
        self.store = Store(self.db)

        self.extractor = extractor or HttpExtractor(
            self.settings.worker_url,
            self.settings.worker_api_key,
            timeout=self.settings.extraction_timeout_seconds,
        )
        self.transports = transports if transports is not None else build_transports(self.settings)

        self.dispatcher = DeliveryDispatcher(
            self.store,
            self.transports,
            self.settings.delivery,
            max_concurrent=self.settings.max_concurrent_deliveries,
        )
        self.matcher = SubscriptionMatcher(self.store, self.dispatcher)
        self.executor = RunExecutor(self.store, self.extractor, self.settings, matcher=self.matcher)
        self.watches = WatchScheduler(self.store, self.executor, self.settings)
        self.admin = Admin(self.store, self.settings)

        self.scheduler = Scheduler(timezone=self.settings.timezone)
        self._running = False

    async def _guard(self, name: str, job: Callable[[], Awaitable[Any]]) -> None:
        """Run one poll iteration; a failing iteration is logged and retried next poll."""
        try:
            await job()
        except Exception as e:
            logger.error(f"{name} failed: {e}")
            logger.debug(traceback.format_exc())

    async def start(self) -> None:
        """Connect the database and register the poll loops."""
        if self._running:
            return

        await self.db.connect()
        self._running = True
        await self.scheduler.start()

        s = self.settings
        jobs = [
            ("watch_tick", s.schedule_poll_seconds, self.watches.tick),
            ("delivery_sweep", s.delivery_poll_seconds, self.dispatcher.sweep),
            ("pending_match", s.match_poll_seconds, self.matcher.match_pending),
            ("stale_run_reaper", s.reaper_poll_seconds, self.watches.reap_stale_runs),
        ]
        for job_id, seconds, func in jobs:
            self.scheduler.add_interval_job(
                functools.partial(self._guard, job_id, func),
                seconds=seconds,
                job_id=job_id,
                name=job_id,
            )
        logger.info(f"Orchestrator started with database {s.db_path}")

    async def run_once(self) -> Dict[str, Any]:
        """One pass of every loop without the scheduler. Returns what happened."""
        await self.db.connect()
        reaped = await self.watches.reap_stale_runs()
        runs = await self.watches.tick()
        matched = await self.matcher.match_pending()
        deliveries = await self.dispatcher.sweep()
        return {
            "reaped": reaped,
            "runs": len(runs),
            "pending_matched": len(matched),
            "deliveries": deliveries,
        }

    async def status(self) -> Dict[str, Any]:
        await self.db.connect()
        report = await health_report(self.store, self.settings)
        report["jobs"] = self.scheduler.list_jobs() if self.scheduler.running else {}
        return report

    async def stop(self) -> None:
        """Stop polling, let manual runs finish and release resources."""
        if self._running:
            self._running = False
            await self.scheduler.stop()
        await self.watches.drain()

        await self.extractor.close()
        for transport in self.transports.values():
            await transport.close()
        await self.db.close()
        logger.info("Orchestrator stopped")

    async def __aenter__(self) -> "Orchestrator":
        await self.db.connect()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.stop()

