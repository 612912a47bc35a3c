"""
Tests for routing events to subscriptions.
"""

from changewatch.models import ChannelType, EventType, Subscription, SubscriptionStatus
from changewatch.store import new_id
from conftest import TENANT, add_event, price_change


async def log_subscription(admin, event_types, **kwargs) -> Subscription:
    return await admin.create_subscription(
        kwargs.pop("tenant", TENANT),
        kwargs.pop("name", "Alerts"),
        event_types,
        channel_type=ChannelType.LOG,
        **kwargs,
    )


async def test_event_type_selects_subscriptions(orch, admin, store, watch):
    changed = await log_subscription(admin, [EventType.ENTITY_CHANGED])
    await log_subscription(admin, [EventType.ENTITY_APPEARED])

    event = await add_event(store, watch, EventType.ENTITY_CHANGED, price_change(10, 8))
    pairs = await orch.matcher.match([event])

    assert [sub.id for _, sub in pairs] == [changed.id]


async def test_watch_scope(orch, admin, store, watch):
    blueprint = await admin.create_blueprint(TENANT, "Other", "ecommerce_product")
    other = await admin.create_watch(TENANT, "Other shop", "https://other.example.com", blueprint.id, "0 * * * *", ["id"])
    everywhere = await log_subscription(admin, [EventType.ENTITY_CHANGED])
    scoped = await log_subscription(admin, [EventType.ENTITY_CHANGED], watch_id=watch.id)
    await log_subscription(admin, [EventType.ENTITY_CHANGED], watch_id=other.id)

    event = await add_event(store, watch, EventType.ENTITY_CHANGED, price_change(10, 8))
    subs = await orch.matcher.candidates(event)

    assert {s.id for s in subs} == {everywhere.id, scoped.id}


async def test_tenant_isolation(orch, admin, store, watch):
    await log_subscription(admin, [EventType.ENTITY_CHANGED])
    blueprint = await admin.create_blueprint("org_other", "Products", "ecommerce_product")
    foreign_watch = await admin.create_watch(
        "org_other", "Their shop", "https://their.example.com", blueprint.id, "0 * * * *", ["id"]
    )

    event = await add_event(store, foreign_watch, EventType.ENTITY_CHANGED, price_change(10, 8))

    assert await orch.matcher.candidates(event) == []


async def test_paused_and_deleted_subscriptions_do_not_match(orch, admin, store, watch):
    paused = await log_subscription(admin, [EventType.ENTITY_CHANGED], name="Paused")
    deleted = await log_subscription(admin, [EventType.ENTITY_CHANGED], name="Deleted")
    await admin.pause_subscription(TENANT, paused.id)
    await admin.delete_subscription(TENANT, deleted.id)

    event = await add_event(store, watch, EventType.ENTITY_CHANGED, price_change(10, 8))

    assert await orch.matcher.candidates(event) == []


async def test_filters_are_applied(orch, admin, store, watch):
    drops = await log_subscription(
        admin, [EventType.ENTITY_CHANGED], filters={"conditions": [{"field": "price", "operator": "decreased"}]}
    )
    await log_subscription(
        admin, [EventType.ENTITY_CHANGED], filters={"conditions": [{"field": "price", "operator": "increased"}]}
    )

    event = await add_event(store, watch, EventType.ENTITY_CHANGED, price_change(10, 8))

    assert [s.id for s in await orch.matcher.candidates(event)] == [drops.id]


async def test_broken_filter_skips_only_that_subscription(orch, admin, store, watch):
    good = await log_subscription(admin, [EventType.ENTITY_CHANGED])
    await store.insert_subscription(Subscription(
        id=new_id(),
        tenant=TENANT,
        name="Broken",
        event_types=[EventType.ENTITY_CHANGED],
        filters={"conditions": [{"field": "price", "operator": "between"}]},
        channel_type=ChannelType.LOG,
        status=SubscriptionStatus.ACTIVE,
    ))

    event = await add_event(store, watch, EventType.ENTITY_CHANGED, price_change(10, 8))

    assert [s.id for s in await orch.matcher.candidates(event)] == [good.id]


async def test_match_marks_events_and_creates_one_delivery_per_pair(orch, admin, store, watch):
    sub = await log_subscription(admin, [EventType.ENTITY_CHANGED])
    event = await add_event(store, watch, EventType.ENTITY_CHANGED, price_change(10, 8))

    await orch.matcher.match([event])
    await orch.matcher.match([event])

    deliveries = await store.list_deliveries()
    assert len(deliveries) == 1
    assert deliveries[0].subscription_id == sub.id
    assert deliveries[0].event_id == event.id
    assert await store.count_unmatched_events() == 0


async def test_event_without_subscribers_is_still_marked(orch, store, watch):
    await add_event(store, watch, EventType.ENTITY_DISAPPEARED, {"external_id": "A", "entity": {"id": "A"}})

    assert await orch.matcher.match_pending() == []
    assert await store.count_unmatched_events() == 0
    assert await store.list_deliveries() == []


async def test_match_pending_picks_up_unmatched_events(orch, admin, store, watch):
    await log_subscription(admin, [EventType.ENTITY_CHANGED])
    await add_event(store, watch, EventType.ENTITY_CHANGED, price_change(10, 8, "A"))
    await add_event(store, watch, EventType.ENTITY_CHANGED, price_change(5, 4, "B"))

    pairs = await orch.matcher.match_pending()

    assert len(pairs) == 2
    assert await orch.matcher.match_pending() == []
