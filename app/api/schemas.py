from pydantic import BaseModel
from typing import Dict, List
from ..event_models import AggregateRow, CanonicalEvent, EventStatus, GroupBy, IngestResult

class IngestItem(BaseModel):
    success: bool
    event_id: str | None = None
    status: EventStatus | None = None
    is_duplicate: bool
    error: str | None = None

    @classmethod
    def from_result(cls, result: IngestResult) -> "IngestItem":
        event = result.event
        return cls(
            success=result.success,
            event_id=event.id if event else None,
            status=event.status if event else None,
            is_duplicate=result.is_duplicate,
            error=result.error,
        )

class IngestResponse(BaseModel):
    success: bool = True
    processed: int
    failed: int
    results: List[IngestItem]

class EventListResponse(BaseModel):
    success: bool = True
    events: List[CanonicalEvent]
    total: int
    limit: int
    skip: int

class AggregationFilters(BaseModel):
    client_id: str
    metric: str
    start_date: str | None = None
    end_date: str | None = None
    group_by: GroupBy

class AggregationResponse(BaseModel):
    success: bool = True
    aggregation: AggregateRow | List[AggregateRow]
    statistics: Dict[str, int]
    filters: AggregationFilters
