"""
Shared fixtures: a throw-away SQLite database per test, a scripted
extraction worker and recording transports.
"""

import asyncio
from typing import Any, Dict, List, Optional

import pytest

from changewatch.config import DeliverySettings, Settings
from changewatch.interfaces import Extractor, Transport, TransportRequest
from changewatch.models import ChannelType, Event, EventType, ExtractionRequest, Watch, utcnow
from changewatch.orchestrator import Orchestrator
from changewatch.store import new_id

TENANT = "org_test"


class FakeExtractor(Extractor):
    """Returns whatever ``records`` holds; raises ``error`` if set."""

    def __init__(self):
        self.records: List[Dict[str, Any]] = []
        self.error: Optional[Exception] = None
        self.delay: float = 0.0
        self.requests: List[ExtractionRequest] = []

    async def extract(self, request: ExtractionRequest) -> List[Dict[str, Any]]:
        self.requests.append(request)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return [dict(r) for r in self.records]


class FakeTransport(Transport):
    """Records every request; fails the first ``fail_times`` sends."""

    def __init__(self, fail_times: int = 0):
        self.sent: List[TransportRequest] = []
        self.fail_times = fail_times
        self.calls = 0

    @property
    def name(self) -> str:
        return "FakeTransport"

    async def send(self, request: TransportRequest) -> None:
        self.calls += 1
        if self.calls <= self.fail_times:
            raise ConnectionError("channel unavailable")
        self.sent.append(request)


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        db_path=str(tmp_path / "changewatch.db"),
        max_consecutive_failures=3,
        extraction_timeout_seconds=5,
        delivery=DeliverySettings(max_attempts=5, retry_base_seconds=60, retry_max_seconds=7200),
    )


@pytest.fixture
def extractor() -> FakeExtractor:
    return FakeExtractor()


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture
async def orch(settings, extractor, transport):
    orchestrator = Orchestrator(
        settings,
        extractor=extractor,
        transports={
            ChannelType.EMAIL: transport,
            ChannelType.WEBHOOK: transport,
            ChannelType.LOG: transport,
        },
    )
    await orchestrator.db.connect()
    yield orchestrator
    await orchestrator.stop()


@pytest.fixture
def store(orch):
    return orch.store


@pytest.fixture
def admin(orch):
    return orch.admin


@pytest.fixture
async def watch(admin) -> Watch:
    blueprint = await admin.create_blueprint(TENANT, "Products", "ecommerce_product", {"item": ".product"})
    return await admin.create_watch(
        TENANT,
        "Shop",
        "https://shop.example.com/products",
        blueprint.id,
        "*/15 * * * *",
        identity_fields=["id"],
    )


async def add_event(
    store,
    watch: Watch,
    event_type: EventType = EventType.ENTITY_CHANGED,
    payload: Optional[Dict[str, Any]] = None,
) -> Event:
    """Insert an event row directly, as if a run had emitted it."""
    event = Event(
        id=new_id(),
        tenant=watch.tenant,
        event_type=event_type,
        watch_id=watch.id,
        payload=payload or {},
        occurred_at=utcnow(),
    )
    await store.insert_event(event)
    return await store.get_event(event.id)


def price_change(old: Any, new: Any, entity_id: str = "A") -> Dict[str, Any]:
    return {
        "external_id": entity_id,
        "entity": {"id": entity_id, "name": f"Product {entity_id}", "price": new},
        "previous": {"id": entity_id, "name": f"Product {entity_id}", "price": old},
        "changes": [{"field": "price", "old": old, "new": new}],
    }
