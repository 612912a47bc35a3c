"""
Subscription matcher: routes events to the subscriptions that want them.
"""

import logging
from typing import List, Optional, Sequence, Tuple

from .errors import ConfigurationError
from .filters import event_matches, parse_filters
from .models import Event, Subscription, utcnow
from .store import Store

logger = logging.getLogger(__name__)

Pair = Tuple[Event, Subscription]


class SubscriptionMatcher:
    """Turns events into (event, subscription) pairs and hands them to the dispatcher."""

    def __init__(self, store: Store, dispatcher):
        self.store = store
        self.dispatcher = dispatcher

    async def candidates(self, event: Event) -> List[Subscription]:
        """Subscriptions whose filters accept ``event``."""
        matched: List[Subscription] = []
        for sub in await self.store.candidate_subscriptions(event):
            try:
                expression = parse_filters(sub.filters)
            except ConfigurationError as e:
                logger.warning(f"Skipping subscription {sub.id}: {e}")
                continue
            if event_matches(expression, event):
                matched.append(sub)
        return matched

    async def match(self, events: Sequence[Event]) -> List[Pair]:
        """Match events in order, enqueue deliveries and mark each event processed."""
        pairs: List[Pair] = []
        for event in events:
            subs = await self.candidates(event)
            event_pairs = [(event, sub) for sub in subs]
            if event_pairs:
                await self.dispatcher.enqueue(event_pairs)
                logger.info(
                    f"Event {event.id} ({event.event_type.value}) matched {len(event_pairs)} subscriptions"
                )
            await self.store.mark_event_matched(event.id, utcnow())
            pairs.extend(event_pairs)
        return pairs

    async def match_pending(self, limit: Optional[int] = 500) -> List[Pair]:
        """Pick up events that were committed but never matched (e.g. after a crash)."""
        events = await self.store.unmatched_events(limit)
        if not events:
            return []
        logger.info(f"Matching {len(events)} pending events")
        return await self.match(events)
