"""
Event Ingestor - idempotent ingestion of heterogeneous JSON events.

Features:
- Best-effort normalization of arbitrary payload shapes
- Content-hash idempotency with race repair
- Structured logging with correlation IDs
- Prometheus metrics
- Health checks (liveness and readiness)
"""
from fastapi import FastAPI
from fastapi.responses import JSONResponse
from prometheus_client import make_asgi_app
from .config import get_settings
from .logging import setup_logging, get_logger
from .api.router import router
from .api.errors import pipeline_error_handler, unhandled_error_handler
from .errors import PipelineError
from .middleware import CorrelationIdMiddleware, MetricsMiddleware, ValidationMiddleware
from .metrics import Metrics
from .health import HealthChecker
from .services.event_store import store
from .services.ingestion import set_metrics

SERVICE_NAME = "ingestor"
VERSION = "0.1.0"

# Initialize configuration
settings = get_settings()

# Setup logging
setup_logging(json_output=settings.LOG_JSON, service_name=SERVICE_NAME)
logger = get_logger()

# Initialize metrics
metrics = Metrics(service_name=SERVICE_NAME, version=VERSION)

# Initialize health checker over the configured storage engine
health_checker = HealthChecker(store, service_name=SERVICE_NAME, version=VERSION)

# Set metrics for the ingestion pipeline
set_metrics(metrics)

# Create FastAPI app
app = FastAPI(
    title="Event Ingestor",
    version=VERSION,
    description="Idempotent event ingestion and aggregation service",
)

# Add middleware (last added runs first: correlation ID, then metrics, then validation)
app.add_middleware(ValidationMiddleware)
app.add_middleware(MetricsMiddleware, metrics=metrics)
app.add_middleware(CorrelationIdMiddleware)

# Map pipeline and unexpected errors to JSON responses
app.add_exception_handler(PipelineError, pipeline_error_handler)
app.add_exception_handler(Exception, unhandled_error_handler)

# Include API routes
app.include_router(router)

# Mount Prometheus metrics endpoint
metrics_app = make_asgi_app(registry=metrics.registry)
app.mount("/metrics", metrics_app)


@app.get("/health")
async def health():
    """
    Liveness probe - basic health check.

    Returns 200 if service is running.
    """
    logger.debug("health_check_liveness")
    return health_checker.liveness()


@app.get("/health/ready")
async def health_ready():
    """
    Readiness probe - comprehensive health check.

    Checks:
    - Storage engine reachability
    - Disk space availability
    - Memory availability

    Returns:
        200: Service is ready to accept events
        503: Service is not ready
    """
    logger.debug("health_check_readiness")
    result = await health_checker.readiness()

    # Return 503 if not ready
    status_code = 200 if result["status"] == "ready" else 503

    return JSONResponse(result, status_code=status_code)


@app.on_event("startup")
async def startup_event():
    """
    Startup event handler.

    Logs service startup and the selected storage engine.
    """
    logger.info(
        "service_starting",
        version=VERSION,
        env=settings.ENV,
        store_backend=settings.STORE_BACKEND,
    )


@app.on_event("shutdown")
async def shutdown_event():
    """
    Shutdown event handler.

    Logs service shutdown and releases the storage engine.
    """
    logger.info("service_stopping")
    # Set app_up metric to 0
    metrics.app_up.labels(service=SERVICE_NAME, version=VERSION).set(0)
    # Close database / Redis connections
    store.close()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "app.main:app",
        host="0.0.0.0",
        port=settings.SERVICE_PORT,
        reload=settings.ENV == "dev",
    )
