"""Tests for storage engines."""
import asyncio
import pytest
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock, patch
import orjson
from redis.exceptions import RedisError
from app.errors import StorageFault
from app.event_models import CanonicalEvent, EventFilter, EventStatus
from app.storage import query
from app.storage.memory import InMemoryEventStore
from app.storage.redis_store import RedisEventStore
from app.storage.sqlite import SQLiteEventStore

T0 = datetime(2024, 1, 1, tzinfo=timezone.utc)


def make_event(client_id="c", metric="m", amount=1.0, hours=0, status=EventStatus.PROCESSED, **extra):
    return CanonicalEvent(
        client_id=client_id,
        metric=metric,
        amount=amount,
        timestamp=T0 + timedelta(hours=hours),
        identity_hash=f"{client_id}-{metric}-{amount}-{hours}",
        status=status,
        **extra,
    )


@pytest.mark.asyncio
async def test_insert_get_delete(store):
    event = make_event(original_payload={"nested": [1, 2]})

    await store.insert_event(event)
    fetched = await store.get_event(event.id)

    assert fetched.model_dump() == event.model_dump()
    assert fetched.timestamp == T0
    assert await store.delete_event(event.id) is True
    assert await store.delete_event(event.id) is False
    assert await store.get_event(event.id) is None


@pytest.mark.asyncio
async def test_duplicate_event_id_is_a_storage_fault(store):
    event = make_event()
    await store.insert_event(event)

    with pytest.raises(StorageFault):
        await store.insert_event(event)


@pytest.mark.asyncio
async def test_register_identity_only_once(store):
    assert await store.register_identity_if_absent("h1", "c", "e1") is True
    assert await store.register_identity_if_absent("h1", "c", "e2") is False

    record = await store.lookup_identity("h1")
    assert record.event_id == "e1"
    assert record.client_id == "c"
    assert await store.lookup_identity("missing") is None


@pytest.mark.asyncio
async def test_filters_and_half_open_time_range(store):
    for hours in range(4):
        await store.insert_event(make_event(amount=float(hours), hours=hours))
    await store.insert_event(make_event(client_id="other", hours=1))
    await store.insert_event(make_event(status=EventStatus.REJECTED, hours=2))

    flt = EventFilter(
        client_id="c",
        status=EventStatus.PROCESSED,
        from_time=T0 + timedelta(hours=1),
        to_time=T0 + timedelta(hours=3),
    )
    events = await store.find_events(flt, sort_by="timestamp", descending=False)

    assert [e.amount for e in events] == [1.0, 2.0]
    assert await store.count_events(flt) == 2
    assert await store.count_events(EventFilter(metric="m")) == 6


@pytest.mark.asyncio
async def test_sort_and_pagination(store):
    for amount in (5.0, 1.0, 3.0, 4.0, 2.0):
        await store.insert_event(make_event(amount=amount, hours=int(amount)))

    page = await store.find_events(EventFilter(), sort_by="amount", descending=True, limit=2, skip=1)
    assert [e.amount for e in page] == [4.0, 3.0]

    everything = await store.find_events(EventFilter(), sort_by="amount", descending=False)
    assert [e.amount for e in everything] == [1.0, 2.0, 3.0, 4.0, 5.0]


@pytest.mark.asyncio
async def test_find_by_identity_hash(store):
    event = make_event()
    await store.insert_event(event)
    await store.insert_event(make_event(amount=2.0))

    found = await store.find_events(EventFilter(identity_hash=event.identity_hash))
    assert [e.id for e in found] == [event.id]


@pytest.mark.asyncio
async def test_aggregate_grouping(store):
    await store.insert_event(make_event("a", "buy", 10.0, 0))
    await store.insert_event(make_event("a", "buy", 30.0, 1))
    await store.insert_event(make_event("a", "sell", 5.0, 2))
    await store.insert_event(make_event("b", "buy", 20.0, 3))

    (total,) = await store.aggregate(EventFilter(), "none")
    assert total.group is None
    assert total.total_amount == 65.0
    assert total.total_count == 4
    assert total.average_amount == 16.25
    assert (total.min_amount, total.max_amount) == (5.0, 30.0)

    by_client = await store.aggregate(EventFilter(), "client_id")
    assert [(r.group, r.total_amount, r.total_count) for r in by_client] == [("a", 45.0, 3), ("b", 20.0, 1)]

    by_metric = await store.aggregate(EventFilter(), "metric")
    assert [r.group for r in by_metric] == ["buy", "sell"]

    both = await store.aggregate(EventFilter(client_id="a"), "both")
    assert [r.group for r in both] == [
        {"client_id": "a", "metric": "buy"},
        {"client_id": "a", "metric": "sell"},
    ]


@pytest.mark.asyncio
async def test_aggregate_empty(store):
    assert await store.aggregate(EventFilter(), "none") == []
    assert await store.aggregate(EventFilter(), "metric") == []


@pytest.mark.asyncio
async def test_health_check(store):
    assert await store.health_check() is True


@pytest.mark.asyncio
async def test_sqlite_survives_reopen(tmp_path):
    """Records and identities are durable across engine restarts."""
    path = tmp_path / "durable.db"
    engine = SQLiteEventStore(path)
    event = make_event()
    await engine.insert_event(event)
    await engine.register_identity_if_absent(event.identity_hash, event.client_id, event.id)
    engine.close()

    reopened = SQLiteEventStore(path)
    try:
        assert (await reopened.get_event(event.id)).model_dump() == event.model_dump()
        assert (await reopened.lookup_identity(event.identity_hash)).event_id == event.id
    finally:
        reopened.close()


@pytest.mark.asyncio
async def test_sqlite_closed_connection_raises_storage_fault(tmp_path):
    engine = SQLiteEventStore(tmp_path / "closed.db")
    engine.close()

    with pytest.raises(StorageFault):
        await engine.insert_event(make_event())
    assert await engine.health_check() is False


@pytest.mark.asyncio
async def test_redis_insert_and_get_with_mock():
    """Test Redis store writes with mocked Redis."""
    with patch("app.storage.redis_store.Redis") as mock_redis_class:
        mock_redis = MagicMock()
        mock_redis_class.from_url.return_value = mock_redis
        mock_redis.hsetnx.return_value = 1

        store = RedisEventStore(redis_url="redis://localhost:6379", key_prefix="test")
        event = make_event()
        await store.insert_event(event)

        key, field, doc = mock_redis.hsetnx.call_args[0]
        assert key == "test:events"
        assert field == event.id
        assert orjson.loads(doc)["client_id"] == "c"

        mock_redis.hget.return_value = doc
        assert (await store.get_event(event.id)).model_dump() == event.model_dump()


@pytest.mark.asyncio
async def test_redis_register_identity_uses_hsetnx():
    with patch("app.storage.redis_store.Redis") as mock_redis_class:
        mock_redis = MagicMock()
        mock_redis_class.from_url.return_value = mock_redis
        mock_redis.hsetnx.side_effect = [1, 0]

        store = RedisEventStore(redis_url="redis://localhost:6379", key_prefix="test")

        assert await store.register_identity_if_absent("h", "c", "e1") is True
        assert await store.register_identity_if_absent("h", "c", "e2") is False
        assert mock_redis.hsetnx.call_args[0][0] == "test:identities"


@pytest.mark.asyncio
async def test_redis_queries_scan_events():
    with patch("app.storage.redis_store.Redis") as mock_redis_class:
        mock_redis = MagicMock()
        mock_redis_class.from_url.return_value = mock_redis
        events = [make_event(amount=1.0, hours=0), make_event(client_id="d", amount=2.0, hours=1)]
        mock_redis.hvals.return_value = [orjson.dumps(e.model_dump(mode="json")) for e in events]

        store = RedisEventStore(redis_url="redis://localhost:6379")

        found = await store.find_events(EventFilter(client_id="d"))
        assert [e.id for e in found] == [events[1].id]
        assert await store.count_events(EventFilter()) == 2
        (row,) = await store.aggregate(EventFilter())
        assert row.total_amount == 3.0


@pytest.mark.asyncio
async def test_redis_errors_become_storage_faults():
    with patch("app.storage.redis_store.Redis") as mock_redis_class:
        mock_redis = MagicMock()
        mock_redis_class.from_url.return_value = mock_redis
        mock_redis.hsetnx.side_effect = RedisError("connection reset")
        mock_redis.ping.side_effect = RedisError("connection reset")

        store = RedisEventStore(redis_url="redis://localhost:6379")

        with pytest.raises(StorageFault):
            await store.insert_event(make_event())
        assert await store.health_check() is False


def test_concurrent_registration_has_one_winner(store):
    """Registrants on separate threads: exactly one insert-if-absent succeeds."""
    def register(n):
        return asyncio.run(store.register_identity_if_absent("h-race", "c", f"e{n}"))

    with ThreadPoolExecutor(max_workers=8) as pool:
        outcomes = list(pool.map(register, range(32)))

    assert outcomes.count(True) == 1
    winner = f"e{outcomes.index(True)}"
    assert asyncio.run(store.lookup_identity("h-race")).event_id == winner


@pytest.mark.asyncio
async def test_identity_index_follows_deletes(store):
    kept = make_event(status=EventStatus.FAILED)
    dropped = make_event(status=EventStatus.PROCESSED, id="dropped")
    await store.insert_event(kept)
    await store.insert_event(dropped)
    await store.insert_event(make_event(client_id="other"))

    await store.delete_event(dropped.id)

    flt = EventFilter(identity_hash=kept.identity_hash)
    assert [e.id for e in await store.find_events(flt)] == [kept.id]
    assert await store.count_events(flt) == 1
    assert await store.count_events(EventFilter(identity_hash=kept.identity_hash, status=EventStatus.FAILED)) == 1


@pytest.mark.asyncio
async def test_memory_identity_filter_reads_only_indexed_events(monkeypatch):
    engine = InMemoryEventStore()
    for hours in range(50):
        await engine.insert_event(make_event(hours=hours))
    target = make_event(client_id="target")
    await engine.insert_event(target)

    calls = []
    original = query.matches

    def counting(event, flt):
        calls.append(event.id)
        return original(event, flt)

    monkeypatch.setattr(query, "matches", counting)

    assert await engine.count_events(EventFilter(identity_hash=target.identity_hash)) == 1
    assert calls == [target.id]


@pytest.mark.asyncio
async def test_redis_maintains_identity_index():
    with patch("app.storage.redis_store.Redis") as mock_redis_class:
        mock_redis = MagicMock()
        mock_redis_class.from_url.return_value = mock_redis
        mock_redis.hsetnx.return_value = 1
        mock_redis.hdel.return_value = 1

        store = RedisEventStore(redis_url="redis://localhost:6379", key_prefix="test")
        event = make_event()
        await store.insert_event(event)

        mock_redis.sadd.assert_called_once_with(f"test:by_hash:{event.identity_hash}", event.id)

        mock_redis.hget.return_value = orjson.dumps(event.model_dump(mode="json"))
        assert await store.delete_event(event.id) is True
        mock_redis.srem.assert_called_once_with(f"test:by_hash:{event.identity_hash}", event.id)


@pytest.mark.asyncio
async def test_redis_identity_filter_skips_full_scan():
    with patch("app.storage.redis_store.Redis") as mock_redis_class:
        mock_redis = MagicMock()
        mock_redis_class.from_url.return_value = mock_redis
        event = make_event(status=EventStatus.FAILED)
        mock_redis.smembers.return_value = {event.id.encode(), b"gone"}
        mock_redis.hmget.return_value = [orjson.dumps(event.model_dump(mode="json")), None]

        store = RedisEventStore(redis_url="redis://localhost:6379", key_prefix="test")
        count = await store.count_events(
            EventFilter(identity_hash=event.identity_hash, status=EventStatus.FAILED)
        )

        assert count == 1
        mock_redis.smembers.assert_called_once_with(f"test:by_hash:{event.identity_hash}")
        mock_redis.hvals.assert_not_called()
