from datetime import datetime
from fastapi import APIRouter, HTTPException, Query, Request
import orjson
from .schemas import (
    AggregationFilters,
    AggregationResponse,
    EventListResponse,
    IngestItem,
    IngestResponse,
)
from ..event_models import EventFilter, EventStatus, GroupBy, SortField
from ..services.ingestion import pipeline
from ..services.queries import queries
from ..config import get_settings

router = APIRouter(prefix="/v1")
settings = get_settings()


@router.post("/events", response_model=IngestResponse)
async def ingest_events(request: Request, simulate_failure: bool = False):
    try:
        body = orjson.loads(await request.body())
    except orjson.JSONDecodeError:
        raise HTTPException(400, detail="Request body is not valid JSON")

    # A JSON array is a batch; any other value is a single event
    raws = body if isinstance(body, list) else [body]
    if not raws:
        raise HTTPException(400, detail="No events provided")
    if len(raws) > settings.MAX_BATCH_SIZE:
        raise HTTPException(413, detail=f"Batch exceeds {settings.MAX_BATCH_SIZE} events")

    results = await pipeline.ingest_batch(raws, simulate_failure=simulate_failure)
    succeeded = sum(1 for r in results if r.success)
    return IngestResponse(
        processed=succeeded,
        failed=len(results) - succeeded,
        results=[IngestItem.from_result(r) for r in results],
    )


@router.get("/events", response_model=EventListResponse)
async def list_events(
    client_id: str | None = None,
    status: EventStatus | None = None,
    metric: str | None = None,
    start_date: datetime | None = None,
    end_date: datetime | None = None,
    sort_by: SortField = "timestamp",
    order: str = Query("desc", pattern="^(asc|desc)$"),
    limit: int = Query(settings.DEFAULT_PAGE_LIMIT, ge=0),
    skip: int = Query(0, ge=0),
):
    flt = EventFilter(
        client_id=client_id,
        status=status,
        metric=metric,
        from_time=start_date,
        to_time=end_date,
    )
    events = await queries.list_events(
        flt, sort_by=sort_by, descending=order == "desc", limit=limit, skip=skip
    )
    total = await queries.count_events(flt)
    return EventListResponse(events=events, total=total, limit=limit, skip=skip)


@router.get("/aggregation", response_model=AggregationResponse)
async def aggregation(
    client_id: str | None = None,
    metric: str | None = None,
    start_date: datetime | None = None,
    end_date: datetime | None = None,
    group_by: GroupBy = "none",
):
    flt = EventFilter(
        client_id=client_id,
        metric=metric,
        from_time=start_date,
        to_time=end_date,
    )
    return AggregationResponse(
        aggregation=await queries.aggregate(flt, group_by),
        statistics=await queries.statistics(flt),
        filters=AggregationFilters(
            client_id=client_id or "all",
            metric=metric or "all",
            start_date=start_date.isoformat() if start_date else None,
            end_date=end_date.isoformat() if end_date else None,
            group_by=group_by,
        ),
    )
