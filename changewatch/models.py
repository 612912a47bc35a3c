"""
Core data models for the change-watch pipeline.
"""

from __future__ import annotations

import json
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_db_time(dt: Optional[datetime]) -> Optional[str]:
    """Serialise a datetime so that string order equals time order."""
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


def from_db_time(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    return datetime.strptime(value, "%Y-%m-%dT%H:%M:%S.%fZ").replace(tzinfo=timezone.utc)


def _loads(value: Any, default: Any) -> Any:
    if value is None or value == "":
        return default
    if isinstance(value, (bytes, str)):
        return json.loads(value)
    return value


class WatchStatus(str, Enum):
    ACTIVE = "active"
    PAUSED = "paused"
    ERROR = "error"


class RunStatus(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class EntityStatus(str, Enum):
    ACTIVE = "active"
    REMOVED = "removed"


class EventType(str, Enum):
    ENTITY_APPEARED = "entity_appeared"
    ENTITY_CHANGED = "entity_changed"
    ENTITY_DISAPPEARED = "entity_disappeared"


class SubscriptionStatus(str, Enum):
    ACTIVE = "active"
    PAUSED = "paused"


class DeliveryStatus(str, Enum):
    PENDING = "pending"
    DELIVERED = "delivered"
    FAILED = "failed"


class ChannelType(str, Enum):
    EMAIL = "email"
    WEBHOOK = "webhook"
    LOG = "log"


class Blueprint(BaseModel):
    """Extraction rules and schema type a watch points at."""
    id: str
    tenant: str
    name: str
    schema_type: str
    extraction_rules: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)

    @classmethod
    def from_row(cls, row) -> "Blueprint":
        return cls(
            id=row["id"],
            tenant=row["tenant"],
            name=row["name"],
            schema_type=row["schema_type"],
            extraction_rules=_loads(row["extraction_rules"], {}),
            created_at=from_db_time(row["created_at"]),
        )


class Watch(BaseModel):
    """A recurring monitoring job."""
    id: str
    tenant: str
    name: str
    url: str
    blueprint_id: str
    schedule: str
    identity_fields: List[str]
    status: WatchStatus = WatchStatus.ACTIVE
    next_run_at: Optional[datetime] = None
    consecutive_failures: int = 0
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    deleted_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row) -> "Watch":
        return cls(
            id=row["id"],
            tenant=row["tenant"],
            name=row["name"],
            url=row["url"],
            blueprint_id=row["blueprint_id"],
            schedule=row["schedule"],
            identity_fields=_loads(row["identity_fields"], []),
            status=WatchStatus(row["status"]),
            next_run_at=from_db_time(row["next_run_at"]),
            consecutive_failures=row["consecutive_failures"],
            created_at=from_db_time(row["created_at"]),
            updated_at=from_db_time(row["updated_at"]),
            deleted_at=from_db_time(row["deleted_at"]),
        )


class Run(BaseModel):
    """One execution of a watch."""
    id: str
    tenant: str
    watch_id: str
    trigger: str = "schedule"
    status: RunStatus = RunStatus.RUNNING
    started_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None
    entities_found: Optional[int] = None
    entities_new: Optional[int] = None
    entities_changed: Optional[int] = None
    entities_removed: Optional[int] = None
    records_dropped: Optional[int] = None
    events_emitted: Optional[int] = None
    error_message: Optional[str] = None

    @classmethod
    def from_row(cls, row) -> "Run":
        return cls(
            id=row["id"],
            tenant=row["tenant"],
            watch_id=row["watch_id"],
            trigger=row["trigger"],
            status=RunStatus(row["status"]),
            started_at=from_db_time(row["started_at"]),
            completed_at=from_db_time(row["completed_at"]),
            entities_found=row["entities_found"],
            entities_new=row["entities_new"],
            entities_changed=row["entities_changed"],
            entities_removed=row["entities_removed"],
            records_dropped=row["records_dropped"],
            events_emitted=row["events_emitted"],
            error_message=row["error_message"],
        )


class Entity(BaseModel):
    """Latest known observation of one item discovered by a watch."""
    id: str
    tenant: str
    watch_id: str
    schema_type: str
    external_id: str
    content: Dict[str, Any]
    status: EntityStatus = EntityStatus.ACTIVE
    first_seen_at: datetime = Field(default_factory=utcnow)
    last_seen_at: datetime = Field(default_factory=utcnow)

    @classmethod
    def from_row(cls, row) -> "Entity":
        return cls(
            id=row["id"],
            tenant=row["tenant"],
            watch_id=row["watch_id"],
            schema_type=row["schema_type"],
            external_id=row["external_id"],
            content=_loads(row["content"], {}),
            status=EntityStatus(row["status"]),
            first_seen_at=from_db_time(row["first_seen_at"]),
            last_seen_at=from_db_time(row["last_seen_at"]),
        )


class FieldChange(BaseModel):
    field: str
    old: Any = None
    new: Any = None


class Event(BaseModel):
    """Immutable fact about an entity appearing, changing or disappearing."""
    id: str
    seq: Optional[int] = None
    tenant: str
    event_type: EventType
    watch_id: str
    run_id: Optional[str] = None
    entity_id: Optional[str] = None
    payload: Dict[str, Any] = Field(default_factory=dict)
    occurred_at: datetime = Field(default_factory=utcnow)

    @property
    def changes(self) -> List[FieldChange]:
        return [FieldChange(**c) for c in self.payload.get("changes", [])]

    @classmethod
    def from_row(cls, row) -> "Event":
        return cls(
            id=row["id"],
            seq=row["seq"],
            tenant=row["tenant"],
            event_type=EventType(row["event_type"]),
            watch_id=row["watch_id"],
            run_id=row["run_id"],
            entity_id=row["entity_id"],
            payload=_loads(row["payload"], {}),
            occurred_at=from_db_time(row["occurred_at"]),
        )


class Subscription(BaseModel):
    """A standing filter + channel registration."""
    id: str
    tenant: str
    name: str
    event_types: List[EventType]
    watch_id: Optional[str] = None
    filters: Dict[str, Any] = Field(default_factory=dict)
    channel_type: ChannelType = ChannelType.EMAIL
    channel_config: Dict[str, Any] = Field(default_factory=dict)
    status: SubscriptionStatus = SubscriptionStatus.ACTIVE
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    deleted_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row) -> "Subscription":
        return cls(
            id=row["id"],
            tenant=row["tenant"],
            name=row["name"],
            event_types=[EventType(t) for t in _loads(row["event_types"], [])],
            watch_id=row["watch_id"],
            filters=_loads(row["filters"], {}),
            channel_type=ChannelType(row["channel_type"]),
            channel_config=_loads(row["channel_config"], {}),
            status=SubscriptionStatus(row["status"]),
            created_at=from_db_time(row["created_at"]),
            updated_at=from_db_time(row["updated_at"]),
            deleted_at=from_db_time(row["deleted_at"]),
        )


class Delivery(BaseModel):
    """Tracked attempt to notify one subscription about one event."""
    id: str
    tenant: str
    event_id: str
    subscription_id: str
    status: DeliveryStatus = DeliveryStatus.PENDING
    attempts: int = 0
    max_attempts: int = 5
    next_retry_at: datetime = Field(default_factory=utcnow)
    last_error: Optional[str] = None
    delivered_at: Optional[datetime] = None
    claim_token: Optional[str] = None
    claim_expires_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow)

    @classmethod
    def from_row(cls, row) -> "Delivery":
        return cls(
            id=row["id"],
            tenant=row["tenant"],
            event_id=row["event_id"],
            subscription_id=row["subscription_id"],
            status=DeliveryStatus(row["status"]),
            attempts=row["attempts"],
            max_attempts=row["max_attempts"],
            next_retry_at=from_db_time(row["next_retry_at"]),
            last_error=row["last_error"],
            delivered_at=from_db_time(row["delivered_at"]),
            claim_token=row["claim_token"],
            claim_expires_at=from_db_time(row["claim_expires_at"]),
            created_at=from_db_time(row["created_at"]),
        )


class ExtractionRequest(BaseModel):
    """What the extraction worker needs to produce records for one run."""
    tenant: str
    url: str
    extraction_rules: Dict[str, Any]
    schema_type: str


class TriggerResult(BaseModel):
    accepted: bool
    run_id: Optional[str] = None
    reason: Optional[str] = None  # already_running, not_schedulable, not_found
