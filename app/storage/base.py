"""Storage interfaces for canonical events and identity records."""
from abc import ABC, abstractmethod
from ..event_models import (
    AggregateRow,
    CanonicalEvent,
    EventFilter,
    GroupBy,
    IdentityRecord,
    SortField,
)


class RecordStore(ABC):
    """Durable collection of canonical event records keyed by event id."""

    @abstractmethod
    async def insert_event(self, event: CanonicalEvent) -> CanonicalEvent:
        """
        Persist a new event record.

        Args:
            event: The event to store (its id must be unused)

        Returns:
            The stored event

        Raises:
            StorageFault: If the underlying medium rejects the write
        """
        pass

    @abstractmethod
    async def get_event(self, event_id: str) -> CanonicalEvent | None:
        """Fetch an event by id, or None if absent."""
        pass

    @abstractmethod
    async def delete_event(self, event_id: str) -> bool:
        """
        Delete an event by id.

        Returns:
            True if a record was removed, False if it did not exist
        """
        pass

    @abstractmethod
    async def find_events(
        self,
        flt: EventFilter,
        sort_by: SortField = "timestamp",
        descending: bool = True,
        limit: int | None = None,
        skip: int = 0,
    ) -> list[CanonicalEvent]:
        """Return one page of events matching ``flt``."""
        pass

    @abstractmethod
    async def count_events(self, flt: EventFilter) -> int:
        """Count events matching ``flt``."""
        pass

    @abstractmethod
    async def aggregate(
        self, flt: EventFilter, group_by: GroupBy = "none"
    ) -> list[AggregateRow]:
        """
        Aggregate amounts of events matching ``flt``.

        Returns:
            One row per group, sorted by total amount descending.
            Empty when nothing matches.
        """
        pass


class IdentityStore(ABC):
    """Maps identity hashes to the event currently holding that identity."""

    @abstractmethod
    async def lookup_identity(self, identity_hash: str) -> IdentityRecord | None:
        """Return the identity record for ``identity_hash``, if any."""
        pass

    @abstractmethod
    async def register_identity_if_absent(
        self, identity_hash: str, client_id: str, event_id: str
    ) -> bool:
        """
        Register ``identity_hash`` as owned by ``event_id`` unless it is taken.

        Atomic per hash: among concurrent callers exactly one receives True.
        An existing record is never overwritten.
        """
        pass


class EventStore(RecordStore, IdentityStore):
    """A storage engine holding both collections behind one write guard."""

    @abstractmethod
    async def health_check(self) -> bool:
        """Return True if the engine is reachable and usable."""
        pass

    def close(self):
        """Release engine resources."""
