"""Tests for metrics and telemetry."""
import asyncio
import pytest
from httpx import AsyncClient, ASGITransport
from prometheus_client import CollectorRegistry
from app.main import app, metrics
from app.metrics import Metrics
from app.services.ingestion import IngestionPipeline
from tests.test_pipeline import InterleavingStore, PURCHASE


def test_outcome_counter_and_duration():
    """Test ingestion outcome recording."""
    m = Metrics(registry=CollectorRegistry())

    m.record_outcome("processed", 0.01)
    m.record_outcome("processed", 0.02)
    m.record_outcome("failed", 0.5)

    assert m.registry.get_sample_value("ingestor_events_ingested_total", {"outcome": "processed"}) == 2
    assert m.registry.get_sample_value("ingestor_events_ingested_total", {"outcome": "failed"}) == 1
    assert m.registry.get_sample_value("ingestor_ingest_duration_seconds_count") == 3


def test_app_info_and_up():
    m = Metrics(service_name="svc", version="9.9.9", registry=CollectorRegistry())

    assert m.registry.get_sample_value("app_up", {"service": "svc", "version": "9.9.9"}) == 1
    assert m.registry.get_sample_value("app_info", {"service": "svc", "version": "9.9.9"}) == 1


@pytest.mark.asyncio
async def test_race_repairs_are_counted():
    """Test that a lost registration race is recorded."""
    m = Metrics(registry=CollectorRegistry())
    store = InterleavingStore(writers=2)
    pipeline = IngestionPipeline(records=store, identities=store, metrics=m)

    await asyncio.gather(pipeline.ingest_one(PURCHASE), pipeline.ingest_one(PURCHASE))

    assert m.registry.get_sample_value("ingestor_race_repairs_total") == 1
    assert m.registry.get_sample_value("ingestor_events_ingested_total", {"outcome": "duplicate"}) == 1


@pytest.mark.asyncio
async def test_http_requests_are_counted():
    """Test that the middleware records request metrics."""
    labels = {"service": "ingestor", "method": "GET", "path": "/health", "status": "200"}
    before = metrics.registry.get_sample_value("http_requests_total", labels) or 0

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        await client.get("/health")
        await client.get("/health")

    assert metrics.registry.get_sample_value("http_requests_total", labels) == before + 2


@pytest.mark.asyncio
async def test_metrics_requests_are_not_counted():
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        response = await client.get("/metrics/")

    assert response.status_code == 200
    assert "/metrics" not in [
        s.labels.get("path")
        for family in metrics.registry.collect()
        if family.name == "http_requests"
        for s in family.samples
    ]
