"""In-memory storage engine."""
import threading
from typing import Iterable
import structlog
from .base import EventStore
from . import query
from ..event_models import (
    AggregateRow,
    CanonicalEvent,
    EventFilter,
    GroupBy,
    IdentityRecord,
    SortField,
)
from ..errors import StorageFault

log = structlog.get_logger()


class InMemoryEventStore(EventStore):
    """
    Thread-safe in-memory implementation of both collections.

    Events are indexed by id and identities by hash. A secondary index maps
    each identity hash to its event ids, so filters on ``identity_hash`` (the
    write path's retry count) never scan the whole collection. Every
    operation runs under a single engine lock, so registration is atomic per
    hash and readers always see a consistent snapshot.
    """

    def __init__(self):
        self._events: dict[str, CanonicalEvent] = {}
        self._by_hash: dict[str, set[str]] = {}
        self._identities: dict[str, IdentityRecord] = {}
        self._lock = threading.RLock()

    def _candidates(self, flt: EventFilter) -> Iterable[CanonicalEvent]:
        """Events that may match ``flt``; caller holds the lock."""
        if flt.identity_hash is None:
            return self._events.values()
        ids = self._by_hash.get(flt.identity_hash, ())
        return [self._events[event_id] for event_id in ids]

    async def insert_event(self, event: CanonicalEvent) -> CanonicalEvent:
        with self._lock:
            if event.id in self._events:
                raise StorageFault(f"event {event.id} already exists")
            self._events[event.id] = event.model_copy(deep=True)
            self._by_hash.setdefault(event.identity_hash, set()).add(event.id)
        log.debug("event.stored", id=event.id, status=event.status.value, store="memory")
        return event

    async def get_event(self, event_id: str) -> CanonicalEvent | None:
        with self._lock:
            event = self._events.get(event_id)
            return event.model_copy(deep=True) if event else None

    async def delete_event(self, event_id: str) -> bool:
        with self._lock:
            event = self._events.pop(event_id, None)
            if event is None:
                return False
            ids = self._by_hash.get(event.identity_hash)
            if ids is not None:
                ids.discard(event_id)
                if not ids:
                    del self._by_hash[event.identity_hash]
            return True

    async def find_events(
        self,
        flt: EventFilter,
        sort_by: SortField = "timestamp",
        descending: bool = True,
        limit: int | None = None,
        skip: int = 0,
    ) -> list[CanonicalEvent]:
        with self._lock:
            page = query.select(self._candidates(flt), flt, sort_by, descending, limit, skip)
            return [e.model_copy(deep=True) for e in page]

    async def count_events(self, flt: EventFilter) -> int:
        with self._lock:
            return sum(1 for e in self._candidates(flt) if query.matches(e, flt))

    async def aggregate(self, flt: EventFilter, group_by: GroupBy = "none") -> list[AggregateRow]:
        with self._lock:
            selected = [e for e in self._candidates(flt) if query.matches(e, flt)]
        return query.aggregate(selected, group_by)

    async def lookup_identity(self, identity_hash: str) -> IdentityRecord | None:
        with self._lock:
            record = self._identities.get(identity_hash)
            return record.model_copy() if record else None

    async def register_identity_if_absent(
        self, identity_hash: str, client_id: str, event_id: str
    ) -> bool:
        with self._lock:
            if identity_hash in self._identities:
                return False
            self._identities[identity_hash] = IdentityRecord(
                identity_hash=identity_hash, client_id=client_id, event_id=event_id
            )
        return True

    async def health_check(self) -> bool:
        """In-memory engine is always healthy."""
        return True
