"""
Delivery dispatcher: turns matched (event, subscription) pairs into durable
delivery rows and works them off with bounded retry.

Retry state lives entirely in the ``deliveries`` table. A sweep claims due
rows with a lease token; outcomes are written back only by the lease holder,
so overlapping sweeps (or processes) never send the same row twice while a
lease is live.
"""

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Dict, List, Mapping, Optional, Sequence, Tuple

from .config import DeliverySettings
from .errors import ConfigurationError
from .interfaces import Transport, TransportRequest
from .models import (
    ChannelType,
    Delivery,
    DeliveryStatus,
    Event,
    Subscription,
    SubscriptionStatus,
    utcnow,
)
from .notifications import build_notification
from .store import Store, new_id

logger = logging.getLogger(__name__)


def backoff_seconds(attempts: int, base: float, maximum: float) -> float:
    """Delay before the next try after ``attempts`` failed attempts."""
    return min(base * 2 ** max(attempts - 1, 0), maximum)


def recipients_for(subscription: Subscription) -> List[str]:
    """Destination list from the channel config; raises ConfigurationError if unusable."""
    config = subscription.channel_config or {}
    if subscription.channel_type == ChannelType.WEBHOOK:
        raw = config.get("url")
        if "urls" in config or isinstance(raw, list):
            raise ConfigurationError(
                f"webhook subscription {subscription.id} must have exactly one 'url'"
            )
    else:
        raw = config.get("to")
    if isinstance(raw, str):
        raw = [raw]
    recipients = [r.strip() for r in (raw or []) if isinstance(r, str) and r.strip()]
    if not recipients and subscription.channel_type != ChannelType.LOG:
        raise ConfigurationError(
            f"no recipients in channel config of subscription {subscription.id}"
        )
    return recipients


class DeliveryDispatcher:
    """Creates deliveries and sends them through per-channel transports."""

    def __init__(
        self,
        store: Store,
        transports: Mapping[ChannelType, Transport],
        settings: Optional[DeliverySettings] = None,
        max_concurrent: int = 3,
    ):
        self.store = store
        self.transports = dict(transports)
        self.settings = settings or DeliverySettings()
        self.max_concurrent = max_concurrent

    # ---------------------------------------------- #
    # Enqueue
    async def enqueue(
        self, pairs: Sequence[Tuple[Event, Subscription]], now: Optional[datetime] = None
    ) -> int:
        """Create one pending delivery per pair. Existing pairs are left untouched.

        Returns the number of rows created.
        """
        now = now or utcnow()
        created = 0
        for event, sub in pairs:
            delivery = Delivery(
                id=new_id(),
                tenant=event.tenant,
                event_id=event.id,
                subscription_id=sub.id,
                status=DeliveryStatus.PENDING,
                attempts=0,
                max_attempts=self.settings.max_attempts,
                next_retry_at=now,
                created_at=now,
            )
            if await self.store.insert_delivery(delivery):
                created += 1
            else:
                logger.debug(f"Delivery for event {event.id} / subscription {sub.id} already exists")
        return created

    # ---------------------------------------------- #
    # Claim & sweep
    async def claim(self, now: Optional[datetime] = None, limit: Optional[int] = None) -> Tuple[str, List[Delivery]]:
        """Lease due pending deliveries. Returns the lease token and the claimed rows."""
        now = now or utcnow()
        token = new_id()
        lease_until = now + timedelta(seconds=self.settings.claim_lease_seconds)
        claimed = await self.store.claim_deliveries(
            now, token, lease_until, limit or self.settings.batch_size
        )
        return token, claimed

    async def sweep(self, now: Optional[datetime] = None) -> Dict[str, int]:
        """Claim due deliveries and attempt each once. Returns outcome counts."""
        now = now or utcnow()
        token, deliveries = await self.claim(now)
        outcomes: Dict[str, int] = {}
        if not deliveries:
            return outcomes

        logger.info(f"Dispatching {len(deliveries)} deliveries")
        semaphore = asyncio.Semaphore(self.max_concurrent)

        async def worker(delivery: Delivery) -> str:
            async with semaphore:
                return await self.process(delivery, token, now)

        for outcome in await asyncio.gather(*(worker(d) for d in deliveries)):
            outcomes[outcome] = outcomes.get(outcome, 0) + 1
        logger.info(f"Delivery sweep finished: {outcomes}")
        return outcomes

    # ---------------------------------------------- #
    # One delivery
    async def process(self, delivery: Delivery, token: str, now: datetime) -> str:
        """Attempt one claimed delivery and record the outcome.

        Returns one of ``delivered``, ``retry``, ``failed``, ``deferred`` or
        ``lost`` (the lease expired and someone else owns the row now).
        """
        sub = await self.store.get_subscription(delivery.subscription_id, include_deleted=True)
        if sub is None or sub.deleted_at is not None:
            return await self._fail(delivery, token, "subscription deleted")

        if sub.status == SubscriptionStatus.PAUSED:
            retry_at = now + timedelta(seconds=self.settings.retry_base_seconds)
            if await self.store.release_delivery(delivery.id, token, retry_at) == 0:
                return self._lost(delivery)
            logger.debug(f"Delivery {delivery.id} deferred: subscription {sub.id} is paused")
            return "deferred"

        event = await self.store.get_event(delivery.event_id)
        if event is None:
            return await self._fail(delivery, token, "event not found")

        transport = self.transports.get(sub.channel_type)
        if transport is None:
            return await self._fail(delivery, token, f"no transport for channel {sub.channel_type.value}")

        try:
            recipients = recipients_for(sub)
        except ConfigurationError as e:
            return await self._fail(delivery, token, str(e))

        try:
            notification = build_notification(event, sub)
            request = TransportRequest(
                recipients=recipients,
                subject=notification.subject,
                text=notification.text,
                html=notification.html,
                payload={
                    "event_id": event.id,
                    "event_type": event.event_type.value,
                    "watch_id": event.watch_id,
                    "occurred_at": event.occurred_at.isoformat(),
                    **event.payload,
                },
            )
        except Exception as e:
            return await self._fail(delivery, token, f"cannot render notification: {type(e).__name__}: {e}")

        attempts = delivery.attempts + 1
        try:
            await asyncio.wait_for(transport.send(request), timeout=self.settings.send_timeout_seconds)
        except asyncio.TimeoutError:
            return await self._retry_or_fail(delivery, token, attempts, now, "send timed out")
        except Exception as e:
            return await self._retry_or_fail(delivery, token, attempts, now, f"{type(e).__name__}: {e}")

        written = await self.store.finish_delivery(
            delivery.id, token, DeliveryStatus.DELIVERED, attempts, delivered_at=utcnow()
        )
        if written == 0:
            return self._lost(delivery)
        logger.info(
            f"Delivery {delivery.id} sent via {transport.name} "
            f"({event.event_type.value}, subscription {sub.name})"
        )
        return "delivered"

    async def _retry_or_fail(
        self, delivery: Delivery, token: str, attempts: int, now: datetime, error: str
    ) -> str:
        if attempts >= delivery.max_attempts:
            written = await self.store.finish_delivery(
                delivery.id, token, DeliveryStatus.FAILED, attempts, last_error=error
            )
            if written == 0:
                return self._lost(delivery)
            logger.error(f"Delivery {delivery.id} failed permanently after {attempts} attempts: {error}")
            return "failed"

        delay = backoff_seconds(
            attempts, self.settings.retry_base_seconds, self.settings.retry_max_seconds
        )
        retry_at = now + timedelta(seconds=delay)
        written = await self.store.finish_delivery(
            delivery.id,
            token,
            DeliveryStatus.PENDING,
            attempts,
            next_retry_at=retry_at,
            last_error=error,
        )
        if written == 0:
            return self._lost(delivery)
        logger.warning(
            f"Delivery {delivery.id} attempt {attempts}/{delivery.max_attempts} failed, "
            f"retry in {delay:.0f}s: {error}"
        )
        return "retry"

    async def _fail(self, delivery: Delivery, token: str, error: str) -> str:
        """Terminal failure without consuming an attempt (nothing was sent)."""
        written = await self.store.finish_delivery(
            delivery.id, token, DeliveryStatus.FAILED, delivery.attempts, last_error=error
        )
        if written == 0:
            return self._lost(delivery)
        logger.error(f"Delivery {delivery.id} failed: {error}")
        return "failed"

    @staticmethod
    def _lost(delivery: Delivery) -> str:
        logger.warning(f"Lost claim on delivery {delivery.id}; outcome not recorded")
        return "lost"
