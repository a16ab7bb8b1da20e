"""Read-only query surface over canonical event records."""
from .event_store import store
from ..config import get_settings
from ..event_models import AggregateRow, CanonicalEvent, EventFilter, EventStatus, GroupBy, SortField
from ..storage.base import RecordStore

settings = get_settings()


class EventQueryService:
    """Listing, counting and aggregation for the routing layer."""

    def __init__(self, records: RecordStore, default_limit: int | None = None):
        self.records = records
        self.default_limit = default_limit or settings.DEFAULT_PAGE_LIMIT

    async def list_events(
        self,
        flt: EventFilter | None = None,
        sort_by: SortField = "timestamp",
        descending: bool = True,
        limit: int | None = None,
        skip: int = 0,
    ) -> list[CanonicalEvent]:
        return await self.records.find_events(
            flt or EventFilter(),
            sort_by=sort_by,
            descending=descending,
            limit=self.default_limit if limit is None else limit,
            skip=skip,
        )

    async def count_events(self, flt: EventFilter | None = None) -> int:
        return await self.records.count_events(flt or EventFilter())

    async def aggregate(
        self, flt: EventFilter | None = None, group_by: GroupBy = "none"
    ) -> AggregateRow | list[AggregateRow]:
        """
        Aggregate amounts over processed events only.

        Any status in ``flt`` is replaced: rejected and failed records never
        contribute to totals.

        Returns:
            A single row for group_by="none", otherwise rows sorted by
            total amount descending
        """
        processed_only = (flt or EventFilter()).model_copy(
            update={"status": EventStatus.PROCESSED}
        )
        rows = await self.records.aggregate(processed_only, group_by)
        if group_by == "none":
            return rows[0] if rows else AggregateRow()
        return rows

    async def statistics(self, flt: EventFilter | None = None) -> dict[str, int]:
        """Count records per status within ``flt``."""
        base = flt or EventFilter()
        return {
            status.value: await self.records.count_events(
                base.model_copy(update={"status": status})
            )
            for status in EventStatus
        }


# Global query service over the configured storage engine
queries = EventQueryService(store)
