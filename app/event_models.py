from pydantic import BaseModel, Field, ConfigDict, field_validator
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Literal
import uuid


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class EventStatus(str, Enum):
    PROCESSED = "processed"
    REJECTED = "rejected"
    FAILED = "failed"


GroupBy = Literal["none", "client_id", "metric", "both"]
SortField = Literal["timestamp", "created_at", "amount"]


class CanonicalFields(BaseModel):
    """The four fields that define an event, plus their identity hash."""
    model_config = ConfigDict(frozen=True)

    client_id: str
    metric: str
    amount: float
    timestamp: datetime
    identity_hash: str


class CanonicalEvent(BaseModel):
    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    client_id: str
    metric: str = "unknown"
    amount: float
    timestamp: datetime
    identity_hash: str
    status: EventStatus = EventStatus.PROCESSED
    rejection_reason: str | None = None
    original_payload: Any = None
    retry_count: int = 0
    created_at: datetime = Field(default_factory=utcnow)
    processed_at: datetime = Field(default_factory=utcnow)


class IdentityRecord(BaseModel):
    identity_hash: str
    client_id: str
    event_id: str
    recorded_at: datetime = Field(default_factory=utcnow)


class EventFilter(BaseModel):
    """Equality filters plus a half-open [from_time, to_time) range."""
    client_id: str | None = None
    status: EventStatus | None = None
    metric: str | None = None
    identity_hash: str | None = None
    from_time: datetime | None = None
    to_time: datetime | None = None

    @field_validator("from_time", "to_time")
    @classmethod
    def _assume_utc(cls, value: datetime | None) -> datetime | None:
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value


class AggregateRow(BaseModel):
    group: str | dict[str, str] | None = None
    total_amount: float = 0.0
    total_count: int = 0
    average_amount: float | None = None
    min_amount: float | None = None
    max_amount: float | None = None


class IngestResult(BaseModel):
    success: bool
    event: CanonicalEvent | None = None
    is_duplicate: bool = False
    error: str | None = None
