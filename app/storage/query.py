"""In-process filtering, paging and aggregation over canonical events."""
from typing import Iterable
from ..event_models import AggregateRow, CanonicalEvent, EventFilter, GroupBy, SortField


def matches(event: CanonicalEvent, flt: EventFilter) -> bool:
    if flt.client_id is not None and event.client_id != flt.client_id:
        return False
    if flt.status is not None and event.status != flt.status:
        return False
    if flt.metric is not None and event.metric != flt.metric:
        return False
    if flt.identity_hash is not None and event.identity_hash != flt.identity_hash:
        return False
    if flt.from_time is not None and event.timestamp < flt.from_time:
        return False
    if flt.to_time is not None and event.timestamp >= flt.to_time:
        return False
    return True


def select(
    events: Iterable[CanonicalEvent],
    flt: EventFilter,
    sort_by: SortField = "timestamp",
    descending: bool = True,
    limit: int | None = None,
    skip: int = 0,
) -> list[CanonicalEvent]:
    selected = [e for e in events if matches(e, flt)]
    # id as tie-breaker keeps pages stable
    selected.sort(key=lambda e: (getattr(e, sort_by), e.id), reverse=descending)
    end = None if limit is None else skip + limit
    return selected[skip:end]


def _group_key(event: CanonicalEvent, group_by: GroupBy):
    if group_by == "client_id":
        return event.client_id
    if group_by == "metric":
        return event.metric
    if group_by == "both":
        return (event.client_id, event.metric)
    return None


def aggregate(events: Iterable[CanonicalEvent], group_by: GroupBy = "none") -> list[AggregateRow]:
    """Group events and compute sum/count/mean/min/max of their amounts."""
    groups: dict = {}
    for event in events:
        key = _group_key(event, group_by)
        groups.setdefault(key, []).append(event.amount)

    rows = []
    for key, amounts in groups.items():
        if group_by == "both":
            group = {"client_id": key[0], "metric": key[1]}
        else:
            group = key
        total = sum(amounts)
        rows.append(
            AggregateRow(
                group=group,
                total_amount=total,
                total_count=len(amounts),
                average_amount=total / len(amounts),
                min_amount=min(amounts),
                max_amount=max(amounts),
            )
        )

    rows.sort(key=lambda r: r.total_amount, reverse=True)
    return rows
