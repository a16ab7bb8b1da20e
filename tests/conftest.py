"""Shared fixtures for storage engines and pipelines."""
import pytest
from app.services.ingestion import IngestionPipeline
from app.services.queries import EventQueryService
from app.storage.memory import InMemoryEventStore
from app.storage.sqlite import SQLiteEventStore


@pytest.fixture(params=["memory", "sqlite"])
def store(request, tmp_path):
    """Each storage engine that runs without external services."""
    if request.param == "memory":
        engine = InMemoryEventStore()
    else:
        engine = SQLiteEventStore(tmp_path / "events.db")
    yield engine
    engine.close()


@pytest.fixture
def pipeline(store):
    return IngestionPipeline(records=store, identities=store)


@pytest.fixture
def queries(store):
    return EventQueryService(store)
