"""
Health and status reporting over the pipeline's tables.
"""

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from .config import Settings
from .models import DeliveryStatus, WatchStatus, to_db_time, utcnow
from .store import Store

logger = logging.getLogger(__name__)


async def health_report(store: Store, settings: Settings, now: Optional[datetime] = None) -> Dict[str, Any]:
    """Snapshot of watches, runs, events and deliveries, with a healthy flag.

    A watch counts as overdue when it has been due for more than two
    scheduler polls; a run is stale past ``stale_run_seconds``.
    """
    now = now or utcnow()
    grace = timedelta(seconds=settings.schedule_poll_seconds * 2)

    watches = await store.count_watches_by_status()
    overdue = await store.due_watches(now - grace)
    running = await store.count_running_runs()
    stale = await store.stale_runs(now - timedelta(seconds=settings.stale_run_seconds))
    deliveries = await store.count_deliveries_by_status()
    unmatched = await store.count_unmatched_events()

    report = {
        "timestamp": to_db_time(now),
        "watches": {s.value: watches.get(s.value, 0) for s in WatchStatus},
        "overdue_watches": len(overdue),
        "overdue_watch_ids": [w.id for w in overdue],
        "running_runs": running,
        "stale_runs": len(stale),
        "unmatched_events": unmatched,
        "deliveries": {s.value: deliveries.get(s.value, 0) for s in DeliveryStatus},
    }
    report["healthy"] = not overdue and not stale and report["watches"]["error"] == 0
    if not report["healthy"]:
        logger.warning(
            f"Unhealthy: {len(overdue)} overdue watches, {len(stale)} stale runs, "
            f"{report['watches']['error']} watches in error"
        )
    return report
