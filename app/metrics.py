"""
Prometheus metrics for the event ingestor service.
"""
from prometheus_client import Counter, Histogram, Gauge, Info, CollectorRegistry


class Metrics:
    """
    Centralized metrics for the event ingestor service.
    """

    def __init__(self, service_name: str = "ingestor", version: str = "0.1.0", registry=None):
        self.service_name = service_name
        self.version = version
        self.registry = registry or CollectorRegistry()

        # HTTP Metrics
        self.http_requests_total = Counter(
            "http_requests_total",
            "Total HTTP requests",
            ["service", "method", "path", "status"],
            registry=self.registry,
        )

        self.http_request_duration = Histogram(
            "http_request_duration_seconds",
            "HTTP request duration in seconds",
            ["service", "method", "path"],
            registry=self.registry,
        )

        self.http_requests_active = Gauge(
            "http_requests_active",
            "Number of active HTTP requests",
            registry=self.registry,
        )

        # Application Info
        self.app_info = Info(
            "app",
            "Application information",
            registry=self.registry,
        )
        self.app_info.info({"service": service_name, "version": version})

        self.app_up = Gauge(
            "app_up",
            "Application up status (1=up, 0=down)",
            ["service", "version"],
            registry=self.registry,
        )
        self.app_up.labels(service=service_name, version=version).set(1)

        # Business Metrics - ingestion outcomes
        self.events_ingested_total = Counter(
            "ingestor_events_ingested_total",
            "Ingestion attempts by outcome",
            ["outcome"],
            registry=self.registry,
        )

        self.ingest_duration = Histogram(
            "ingestor_ingest_duration_seconds",
            "Time spent ingesting a single raw event",
            registry=self.registry,
        )

        self.race_repairs_total = Counter(
            "ingestor_race_repairs_total",
            "Identity registration races lost and repaired",
            registry=self.registry,
        )

    def record_outcome(self, outcome: str, duration_seconds: float):
        """Record one ingestion attempt."""
        self.events_ingested_total.labels(outcome=outcome).inc()
        self.ingest_duration.observe(duration_seconds)

    def record_race_repair(self):
        self.race_repairs_total.inc()
