"""Redis storage engine."""
import threading
import structlog
import orjson
from redis import Redis
from redis.exceptions import RedisError
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
from ..config import get_settings

log = structlog.get_logger()
settings = get_settings()


class RedisEventStore(EventStore):
    """Redis implementation of the event and identity collections.

    Events are kept in one hash keyed by event id and identities in another
    keyed by identity hash. Each identity hash also has a set of its event
    ids (``{prefix}:by_hash:{hash}``), so filters on ``identity_hash`` read
    only those documents. Identity registration uses HSETNX, which Redis
    executes atomically, so exactly one concurrent registrant wins.

    Reads are single commands and go straight to the client's connection
    pool. Writes take the engine lock, which orders the multi-command
    insert and delete against each other.
    """

    def __init__(self, redis_url: str | None = None, key_prefix: str | None = None):
        """
        Initialize Redis store.

        Args:
            redis_url: Redis connection URL (defaults to settings.REDIS_URL)
            key_prefix: Namespace for keys (defaults to settings.REDIS_KEY_PREFIX)
        """
        self.redis_url = redis_url or str(settings.REDIS_URL)
        prefix = key_prefix or settings.REDIS_KEY_PREFIX
        self._prefix = prefix
        self._events_key = f"{prefix}:events"
        self._identities_key = f"{prefix}:identities"
        self._client: Redis | None = None
        self._lock = threading.RLock()

    def _hash_key(self, identity_hash: str) -> str:
        return f"{self._prefix}:by_hash:{identity_hash}"

    def _get_client(self) -> Redis:
        """Get or create Redis client."""
        if self._client is None:
            self._client = Redis.from_url(
                self.redis_url,
                decode_responses=False,  # payloads are orjson bytes
                socket_connect_timeout=5,
                socket_timeout=5
            )
        return self._client

    def _candidate_events(self, flt: EventFilter) -> list[CanonicalEvent]:
        """Events that may match ``flt``, narrowed by the identity index when possible."""
        client = self._get_client()
        try:
            if flt.identity_hash is None:
                raw = client.hvals(self._events_key)
            else:
                ids = sorted(client.smembers(self._hash_key(flt.identity_hash)))
                raw = client.hmget(self._events_key, ids) if ids else []
        except RedisError as e:
            log.error("redis.read_failed", error=str(e))
            raise StorageFault(f"redis read failed: {e}") from e
        # index entries may briefly outlive a deleted document
        return [CanonicalEvent.model_validate(orjson.loads(doc)) for doc in raw if doc is not None]

    async def insert_event(self, event: CanonicalEvent) -> CanonicalEvent:
        doc = orjson.dumps(event.model_dump(mode="json"))
        try:
            with self._lock:
                client = self._get_client()
                if not client.hsetnx(self._events_key, event.id, doc):
                    raise StorageFault(f"event {event.id} already exists")
                client.sadd(self._hash_key(event.identity_hash), event.id)
        except RedisError as e:
            log.error("redis.insert_failed", error=str(e), event_id=event.id)
            raise StorageFault(f"redis insert failed: {e}") from e
        return event

    async def get_event(self, event_id: str) -> CanonicalEvent | None:
        try:
            doc = self._get_client().hget(self._events_key, event_id)
        except RedisError as e:
            log.error("redis.read_failed", error=str(e), event_id=event_id)
            raise StorageFault(f"redis read failed: {e}") from e
        if doc is None:
            return None
        return CanonicalEvent.model_validate(orjson.loads(doc))

    async def delete_event(self, event_id: str) -> bool:
        try:
            with self._lock:
                client = self._get_client()
                doc = client.hget(self._events_key, event_id)
                if doc is None:
                    return False
                identity_hash = orjson.loads(doc)["identity_hash"]
                removed = client.hdel(self._events_key, event_id)
                client.srem(self._hash_key(identity_hash), event_id)
        except RedisError as e:
            log.error("redis.delete_failed", error=str(e), event_id=event_id)
            raise StorageFault(f"redis delete failed: {e}") from e
        return removed > 0

    async def find_events(
        self,
        flt: EventFilter,
        sort_by: SortField = "timestamp",
        descending: bool = True,
        limit: int | None = None,
        skip: int = 0,
    ) -> list[CanonicalEvent]:
        return query.select(self._candidate_events(flt), flt, sort_by, descending, limit, skip)

    async def count_events(self, flt: EventFilter) -> int:
        return sum(1 for e in self._candidate_events(flt) if query.matches(e, flt))

    async def aggregate(self, flt: EventFilter, group_by: GroupBy = "none") -> list[AggregateRow]:
        selected = [e for e in self._candidate_events(flt) if query.matches(e, flt)]
        return query.aggregate(selected, group_by)

    async def lookup_identity(self, identity_hash: str) -> IdentityRecord | None:
        try:
            doc = self._get_client().hget(self._identities_key, identity_hash)
        except RedisError as e:
            log.error("redis.read_failed", error=str(e), identity_hash=identity_hash)
            raise StorageFault(f"redis read failed: {e}") from e
        if doc is None:
            return None
        return IdentityRecord.model_validate(orjson.loads(doc))

    async def register_identity_if_absent(
        self, identity_hash: str, client_id: str, event_id: str
    ) -> bool:
        record = IdentityRecord(
            identity_hash=identity_hash, client_id=client_id, event_id=event_id
        )
        try:
            with self._lock:
                created = self._get_client().hsetnx(
                    self._identities_key,
                    identity_hash,
                    orjson.dumps(record.model_dump(mode="json")),
                )
        except RedisError as e:
            log.error("redis.register_failed", error=str(e), identity_hash=identity_hash)
            raise StorageFault(f"redis identity registration failed: {e}") from e
        return bool(created)

    async def health_check(self) -> bool:
        """
        Check Redis connection health.

        Returns:
            True if Redis is accessible, False otherwise
        """
        try:
            client = self._get_client()
            return client.ping()
        except Exception as e:
            log.warning("redis.health_check_failed", error=str(e))
            return False

    def close(self):
        """Close Redis connection."""
        if self._client:
            self._client.close()
            self._client = None
