"""
Administration: create, edit and delete blueprints, watches and subscriptions.

Only configuration columns are written here. Run state, entities, events and
deliveries belong to the pipeline.
"""

import logging
from typing import Any, Dict, List, Optional, Sequence

from .config import Settings
from .errors import ConfigurationError, NotFoundError
from .filters import parse_filters
from .infra.scheduler import next_run_after, validate_cron_expression
from .models import (
    Blueprint,
    ChannelType,
    EventType,
    Subscription,
    SubscriptionStatus,
    Watch,
    WatchStatus,
    utcnow,
)
from .store import Store, new_id

logger = logging.getLogger(__name__)

WATCH_FIELDS = {"name", "url", "schedule", "identity_fields", "blueprint_id"}
SUBSCRIPTION_FIELDS = {"name", "event_types", "watch_id", "filters", "channel_type", "channel_config"}

# Ready-made subscriptions for product listings.
PRESETS: Dict[str, Dict[str, Any]] = {
    "price_decreased": {
        "event_types": [EventType.ENTITY_CHANGED],
        "filters": {"conditions": [{"field": "price", "operator": "decreased"}]},
    },
    "price_increased": {
        "event_types": [EventType.ENTITY_CHANGED],
        "filters": {"conditions": [{"field": "price", "operator": "increased"}]},
    },
    "availability_changed": {
        "event_types": [EventType.ENTITY_CHANGED],
        "filters": {"conditions": [{"field": "availability", "operator": "changed"}]},
    },
    "back_in_stock": {
        "event_types": [EventType.ENTITY_CHANGED],
        "filters": {"conditions": [
            {"field": "availability", "operator": "changed"},
            {"field": "availability", "operator": "eq", "value": "in_stock"},
        ]},
    },
    "new_product": {"event_types": [EventType.ENTITY_APPEARED], "filters": {}},
    "product_removed": {"event_types": [EventType.ENTITY_DISAPPEARED], "filters": {}},
}


def validate_identity_fields(identity_fields: Sequence[str]) -> List[str]:
    fields = [f.strip() for f in identity_fields if isinstance(f, str) and f.strip()]
    if not fields or len(fields) != len(identity_fields):
        raise ConfigurationError("identity fields must be a non-empty list of field names")
    if len(set(fields)) != len(fields):
        raise ConfigurationError("identity fields must not repeat")
    return fields


def validate_url(url: str) -> str:
    if not isinstance(url, str) or not url.strip():
        raise ConfigurationError("url is required")
    return url.strip()


def validate_event_types(event_types: Sequence[Any]) -> List[EventType]:
    if not event_types:
        raise ConfigurationError("at least one event type is required")
    try:
        return list(dict.fromkeys(EventType(t) for t in event_types))
    except ValueError as e:
        raise ConfigurationError(f"unknown event type: {e}") from e


def validate_channel(channel_type: Any, channel_config: Optional[Dict[str, Any]]) -> ChannelType:
    try:
        channel = ChannelType(channel_type)
    except ValueError as e:
        raise ConfigurationError(f"unknown channel type: {channel_type}") from e
    config = channel_config or {}
    if channel == ChannelType.EMAIL and not config.get("to"):
        raise ConfigurationError("email channel needs at least one recipient in 'to'")
    if channel == ChannelType.WEBHOOK:
        url = config.get("url")
        if "urls" in config or not isinstance(url, str) or not url.strip():
            raise ConfigurationError("webhook channel needs exactly one 'url'")
    return channel


class Admin:
    """Tenant-scoped configuration writes."""

    def __init__(self, store: Store, settings: Optional[Settings] = None):
        self.store = store
        self.settings = settings or Settings()

    # ---------------------------------------------- #
    # Blueprints
    async def create_blueprint(
        self,
        tenant: str,
        name: str,
        schema_type: str,
        extraction_rules: Optional[Dict[str, Any]] = None,
    ) -> Blueprint:
        if not schema_type:
            raise ConfigurationError("schema_type is required")
        blueprint = Blueprint(
            id=new_id(),
            tenant=tenant,
            name=name,
            schema_type=schema_type,
            extraction_rules=extraction_rules or {},
        )
        await self.store.insert_blueprint(blueprint)
        logger.info(f"Created blueprint {blueprint.id} ({name}) for {tenant}")
        return blueprint

    async def get_blueprint(self, tenant: str, blueprint_id: str) -> Blueprint:
        blueprint = await self.store.get_blueprint(blueprint_id)
        if blueprint is None or blueprint.tenant != tenant:
            raise NotFoundError(f"blueprint {blueprint_id} not found")
        return blueprint

    # ---------------------------------------------- #
    # Watches
    async def create_watch(
        self,
        tenant: str,
        name: str,
        url: str,
        blueprint_id: str,
        schedule: str,
        identity_fields: Sequence[str] = ("name",),
    ) -> Watch:
        """Create an active watch that is due immediately."""
        validate_cron_expression(schedule)
        await self._blueprint_for(tenant, blueprint_id)
        now = utcnow()
        watch = Watch(
            id=new_id(),
            tenant=tenant,
            name=name,
            url=validate_url(url),
            blueprint_id=blueprint_id,
            schedule=schedule,
            identity_fields=validate_identity_fields(list(identity_fields)),
            status=WatchStatus.ACTIVE,
            next_run_at=now,
            created_at=now,
            updated_at=now,
        )
        await self.store.insert_watch(watch)
        logger.info(f"Created watch {watch.id} ({name}) on {watch.url}")
        return watch

    async def get_watch(self, tenant: str, watch_id: str) -> Watch:
        watch = await self.store.get_watch(watch_id, tenant)
        if watch is None:
            raise NotFoundError(f"watch {watch_id} not found")
        return watch

    async def list_watches(self, tenant: str) -> List[Watch]:
        return await self.store.list_watches(tenant)

    async def update_watch(self, tenant: str, watch_id: str, **changes: Any) -> Watch:
        """Edit configuration fields. A new schedule takes effect from now."""
        unknown = set(changes) - WATCH_FIELDS
        if unknown:
            raise ConfigurationError(f"cannot update watch fields: {', '.join(sorted(unknown))}")
        watch = await self.get_watch(tenant, watch_id)
        now = utcnow()
        fields: Dict[str, Any] = {}

        if "name" in changes:
            fields["name"] = changes["name"]
        if "url" in changes:
            fields["url"] = validate_url(changes["url"])
        if "blueprint_id" in changes:
            await self._blueprint_for(tenant, changes["blueprint_id"])
            fields["blueprint_id"] = changes["blueprint_id"]
        if "identity_fields" in changes:
            fields["identity_fields"] = validate_identity_fields(list(changes["identity_fields"]))
        if "schedule" in changes and changes["schedule"] != watch.schedule:
            fields["schedule"] = changes["schedule"]
            fields["next_run_at"] = next_run_after(changes["schedule"], now, self.settings.timezone)

        if fields:
            fields["updated_at"] = now
            await self.store.update_watch(watch.id, fields)
        return await self.get_watch(tenant, watch_id)

    async def delete_watch(self, tenant: str, watch_id: str) -> None:
        watch = await self.get_watch(tenant, watch_id)
        now = utcnow()
        await self.store.update_watch(watch.id, {"deleted_at": now, "updated_at": now})
        logger.info(f"Deleted watch {watch.id} ({watch.name})")

    async def _blueprint_for(self, tenant: str, blueprint_id: str) -> Blueprint:
        blueprint = await self.store.get_blueprint(blueprint_id)
        if blueprint is None or blueprint.tenant != tenant:
            raise ConfigurationError(f"blueprint {blueprint_id} not found")
        return blueprint

    # ---------------------------------------------- #
    # Subscriptions
    async def create_subscription(
        self,
        tenant: str,
        name: str,
        event_types: Sequence[Any],
        channel_type: Any = ChannelType.EMAIL,
        channel_config: Optional[Dict[str, Any]] = None,
        watch_id: Optional[str] = None,
        filters: Optional[Dict[str, Any]] = None,
    ) -> Subscription:
        if watch_id is not None:
            await self.get_watch(tenant, watch_id)
        filters = parse_filters(filters).model_dump()
        now = utcnow()
        sub = Subscription(
            id=new_id(),
            tenant=tenant,
            name=name,
            event_types=validate_event_types(event_types),
            watch_id=watch_id,
            filters=filters,
            channel_type=validate_channel(channel_type, channel_config),
            channel_config=channel_config or {},
            status=SubscriptionStatus.ACTIVE,
            created_at=now,
            updated_at=now,
        )
        await self.store.insert_subscription(sub)
        logger.info(f"Created subscription {sub.id} ({name}) for {tenant}")
        return sub

    async def create_subscription_from_preset(
        self,
        tenant: str,
        preset: str,
        channel_type: Any = ChannelType.EMAIL,
        channel_config: Optional[Dict[str, Any]] = None,
        watch_id: Optional[str] = None,
        name: Optional[str] = None,
    ) -> Subscription:
        if preset not in PRESETS:
            raise ConfigurationError(f"unknown preset: {preset}")
        preset_def = PRESETS[preset]
        return await self.create_subscription(
            tenant,
            name or preset.replace("_", " ").capitalize(),
            preset_def["event_types"],
            channel_type=channel_type,
            channel_config=channel_config,
            watch_id=watch_id,
            filters=preset_def["filters"],
        )

    async def get_subscription(self, tenant: str, subscription_id: str) -> Subscription:
        sub = await self.store.get_subscription(subscription_id, tenant)
        if sub is None:
            raise NotFoundError(f"subscription {subscription_id} not found")
        return sub

    async def list_subscriptions(self, tenant: str) -> List[Subscription]:
        return await self.store.list_subscriptions(tenant)

    async def update_subscription(self, tenant: str, subscription_id: str, **changes: Any) -> Subscription:
        """Edit a subscription. New filters apply to events matched from now on."""
        unknown = set(changes) - SUBSCRIPTION_FIELDS
        if unknown:
            raise ConfigurationError(f"cannot update subscription fields: {', '.join(sorted(unknown))}")
        sub = await self.get_subscription(tenant, subscription_id)
        fields: Dict[str, Any] = {}

        if "name" in changes:
            fields["name"] = changes["name"]
        if "event_types" in changes:
            fields["event_types"] = [t.value for t in validate_event_types(changes["event_types"])]
        if "watch_id" in changes:
            if changes["watch_id"] is not None:
                await self.get_watch(tenant, changes["watch_id"])
            fields["watch_id"] = changes["watch_id"]
        if "filters" in changes:
            fields["filters"] = parse_filters(changes["filters"]).model_dump()
        if "channel_type" in changes or "channel_config" in changes:
            channel_type = changes.get("channel_type", sub.channel_type)
            channel_config = changes.get("channel_config", sub.channel_config)
            fields["channel_type"] = validate_channel(channel_type, channel_config)
            fields["channel_config"] = channel_config or {}

        if fields:
            fields["updated_at"] = utcnow()
            await self.store.update_subscription(sub.id, fields)
        return await self.get_subscription(tenant, subscription_id)

    async def pause_subscription(self, tenant: str, subscription_id: str) -> Subscription:
        return await self._set_subscription_status(tenant, subscription_id, SubscriptionStatus.PAUSED)

    async def resume_subscription(self, tenant: str, subscription_id: str) -> Subscription:
        return await self._set_subscription_status(tenant, subscription_id, SubscriptionStatus.ACTIVE)

    async def _set_subscription_status(
        self, tenant: str, subscription_id: str, status: SubscriptionStatus
    ) -> Subscription:
        sub = await self.get_subscription(tenant, subscription_id)
        await self.store.update_subscription(sub.id, {"status": status, "updated_at": utcnow()})
        logger.info(f"Subscription {sub.id} ({sub.name}) is now {status.value}")
        return await self.get_subscription(tenant, subscription_id)

    async def delete_subscription(self, tenant: str, subscription_id: str) -> None:
        sub = await self.get_subscription(tenant, subscription_id)
        now = utcnow()
        await self.store.update_subscription(sub.id, {"deleted_at": now, "updated_at": now})
        logger.info(f"Deleted subscription {sub.id} ({sub.name})")
