"""
Tests for watch and subscription administration and settings loading.
"""

import os
from datetime import timedelta

import pytest

from changewatch.config import load_settings
from changewatch.errors import ConfigurationError, NotFoundError
from changewatch.models import ChannelType, EventType, SubscriptionStatus, WatchStatus, utcnow
from conftest import TENANT


async def test_create_watch_validates_configuration(admin, watch):
    blueprint_id = watch.blueprint_id

    with pytest.raises(ConfigurationError):
        await admin.create_watch(TENANT, "Bad cron", "https://x.example.com", blueprint_id, "*/5 * * *")
    with pytest.raises(ConfigurationError):
        await admin.create_watch(TENANT, "No url", " ", blueprint_id, "0 * * * *")
    with pytest.raises(ConfigurationError):
        await admin.create_watch(TENANT, "No identity", "https://x.example.com", blueprint_id, "0 * * * *", [])
    with pytest.raises(ConfigurationError):
        await admin.create_watch(TENANT, "Twice", "https://x.example.com", blueprint_id, "0 * * * *", ["id", "id"])
    with pytest.raises(ConfigurationError):
        await admin.create_watch("org_other", "Foreign", "https://x.example.com", blueprint_id, "0 * * * *")


async def test_watch_is_tenant_scoped(admin, watch):
    assert (await admin.get_watch(TENANT, watch.id)).id == watch.id
    with pytest.raises(NotFoundError):
        await admin.get_watch("org_other", watch.id)
    assert await admin.list_watches("org_other") == []


async def test_schedule_change_recomputes_next_run(admin, watch):
    before = utcnow()
    updated = await admin.update_watch(TENANT, watch.id, schedule="0 3 * * *", name="Nightly")

    assert updated.name == "Nightly"
    assert updated.schedule == "0 3 * * *"
    assert before < updated.next_run_at <= before + timedelta(days=1)
    assert updated.next_run_at.hour == 3 and updated.next_run_at.minute == 0


async def test_update_rejects_run_state_fields(admin, watch):
    with pytest.raises(ConfigurationError):
        await admin.update_watch(TENANT, watch.id, status=WatchStatus.ACTIVE)
    with pytest.raises(ConfigurationError):
        await admin.update_watch(TENANT, watch.id, consecutive_failures=0)


async def test_deleted_watch_is_gone_and_never_runs(orch, admin, watch):
    await admin.delete_watch(TENANT, watch.id)

    with pytest.raises(NotFoundError):
        await admin.get_watch(TENANT, watch.id)
    assert await orch.watches.due_watches(utcnow()) == []
    assert (await orch.watches.trigger(TENANT, watch.id)).reason == "not_found"


async def test_subscription_validation(admin, watch):
    with pytest.raises(ConfigurationError):
        await admin.create_subscription(TENANT, "No types", [], channel_type=ChannelType.LOG)
    with pytest.raises(ConfigurationError):
        await admin.create_subscription(TENANT, "Bad type", ["entity_exploded"], channel_type=ChannelType.LOG)
    with pytest.raises(ConfigurationError):
        await admin.create_subscription(TENANT, "No to", [EventType.ENTITY_CHANGED], channel_type="email")
    with pytest.raises(ConfigurationError):
        await admin.create_subscription(TENANT, "No url", [EventType.ENTITY_CHANGED], channel_type="webhook")
    with pytest.raises(ConfigurationError):
        await admin.create_subscription(
            TENANT, "Two urls", [EventType.ENTITY_CHANGED], channel_type="webhook",
            channel_config={"urls": ["https://a.example.com/hook", "https://b.example.com/hook"]},
        )
    with pytest.raises(ConfigurationError):
        await admin.create_subscription(
            TENANT, "Url list", [EventType.ENTITY_CHANGED], channel_type="webhook",
            channel_config={"url": ["https://a.example.com/hook"]},
        )
    with pytest.raises(ConfigurationError):
        await admin.create_subscription(TENANT, "Pager", [EventType.ENTITY_CHANGED], channel_type="pager")
    with pytest.raises(ConfigurationError):
        await admin.create_subscription(
            TENANT, "Bad filter", [EventType.ENTITY_CHANGED], channel_type=ChannelType.LOG,
            filters={"conditions": [{"field": "price", "operator": "dropped"}]},
        )
    with pytest.raises(NotFoundError):
        await admin.create_subscription(
            "org_other", "Foreign watch", [EventType.ENTITY_CHANGED], channel_type=ChannelType.LOG,
            watch_id=watch.id,
        )


async def test_filters_are_stored_normalised(admin):
    sub = await admin.create_subscription(
        TENANT, "Drops", ["entity_changed"], channel_type="log",
        filters=[{"field": "price", "operator": "decreased"}],
    )

    stored = await admin.get_subscription(TENANT, sub.id)
    assert stored.filters == {"conditions": [{"operator": "decreased", "field": "price"}]}
    assert stored.event_types == [EventType.ENTITY_CHANGED]


async def test_presets(admin, watch):
    sub = await admin.create_subscription_from_preset(
        TENANT, "back_in_stock", channel_config={"to": ["ops@example.com"]}, watch_id=watch.id
    )

    assert sub.name == "Back in stock"
    assert sub.channel_type == ChannelType.EMAIL
    assert sub.watch_id == watch.id
    assert [c["operator"] for c in sub.filters["conditions"]] == ["changed", "eq"]

    with pytest.raises(ConfigurationError):
        await admin.create_subscription_from_preset(TENANT, "price_doubled", channel_type=ChannelType.LOG)


async def test_subscription_lifecycle(admin):
    sub = await admin.create_subscription(TENANT, "Alerts", ["entity_appeared"], channel_type="log")

    paused = await admin.pause_subscription(TENANT, sub.id)
    assert paused.status == SubscriptionStatus.PAUSED
    resumed = await admin.resume_subscription(TENANT, sub.id)
    assert resumed.status == SubscriptionStatus.ACTIVE

    updated = await admin.update_subscription(
        TENANT, sub.id, channel_type="webhook", channel_config={"url": "https://hooks.example.com"}
    )
    assert updated.channel_type == ChannelType.WEBHOOK

    await admin.delete_subscription(TENANT, sub.id)
    assert await admin.list_subscriptions(TENANT) == []
    with pytest.raises(NotFoundError):
        await admin.get_subscription(TENANT, sub.id)


def test_settings_from_yaml_and_environment(tmp_path, monkeypatch):
    config = tmp_path / "config.yaml"
    config.write_text(
        "db_path: data/watch.db\n"
        "max_consecutive_failures: 4\n"
        "delivery:\n"
        "  max_attempts: 7\n"
    )
    monkeypatch.setenv("CHANGEWATCH_SCHEDULE_POLL_SECONDS", "15")
    monkeypatch.setenv("CHANGEWATCH_DELIVERY__RETRY_BASE_SECONDS", "30")

    settings = load_settings(str(config))

    assert settings.db_path == "data/watch.db"
    assert settings.max_consecutive_failures == 4
    assert settings.schedule_poll_seconds == 15
    assert settings.delivery.max_attempts == 7
    assert settings.delivery.retry_base_seconds == 30


def test_missing_config_file_uses_defaults(tmp_path, monkeypatch):
    for key in list(os.environ):
        if key.startswith("CHANGEWATCH_"):
            monkeypatch.delenv(key)

    settings = load_settings(str(tmp_path / "absent.yaml"))

    assert settings.max_consecutive_failures == 3
    assert settings.delivery.max_attempts == 5
