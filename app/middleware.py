"""
Middleware for observability and request validation.
"""
import uuid
import time
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse
import orjson
import structlog
from .config import get_settings

settings = get_settings()


class CorrelationIdMiddleware(BaseHTTPMiddleware):
    """
    Middleware to add correlation IDs to all requests.

    - Extracts correlation ID from X-Correlation-ID header if present
    - Generates new UUID if not present
    - Binds correlation ID to structlog context
    - Adds correlation ID to response headers
    """

    async def dispatch(self, request: Request, call_next):
        # Get or generate correlation ID
        correlation_id = request.headers.get("x-correlation-id") or str(uuid.uuid4())

        # Bind to structlog context
        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(
            correlation_id=correlation_id,
            http_method=request.method,
            http_path=request.url.path,
        )

        # Expose to exception handlers
        request.state.correlation_id = correlation_id

        # Process request
        response = await call_next(request)

        # Add correlation ID to response
        response.headers["x-correlation-id"] = correlation_id

        return response


class MetricsMiddleware(BaseHTTPMiddleware):
    """
    Middleware to collect HTTP metrics for Prometheus.

    - Records request count by method, path, status
    - Records request duration histogram
    - Tracks active requests
    """

    def __init__(self, app, metrics):
        super().__init__(app)
        self.metrics = metrics

    async def dispatch(self, request: Request, call_next):
        # Skip metrics endpoint to avoid recursion
        if request.url.path.startswith("/metrics"):
            return await call_next(request)

        # Track active requests
        self.metrics.http_requests_active.inc()

        # Record start time
        start_time = time.time()

        # Get logger
        logger = structlog.get_logger()

        try:
            # Process request
            response = await call_next(request)

            # Calculate duration
            duration = time.time() - start_time

            # Record metrics
            self.metrics.http_requests_total.labels(
                service=self.metrics.service_name,
                method=request.method,
                path=request.url.path,
                status=response.status_code,
            ).inc()

            self.metrics.http_request_duration.labels(
                service=self.metrics.service_name,
                method=request.method,
                path=request.url.path,
            ).observe(duration)

            # Log request
            logger.info(
                "http_request",
                http_status=response.status_code,
                duration_ms=round(duration * 1000, 2),
            )

            return response

        except Exception as e:
            # Calculate duration
            duration = time.time() - start_time

            # Record error metrics
            self.metrics.http_requests_total.labels(
                service=self.metrics.service_name,
                method=request.method,
                path=request.url.path,
                status=500,
            ).inc()

            # Log error
            logger.error(
                "http_request_error",
                error=str(e),
                error_type=type(e).__name__,
                duration_ms=round(duration * 1000, 2),
            )

            raise

        finally:
            # Decrement active requests
            self.metrics.http_requests_active.dec()


def _too_large(size: int) -> JSONResponse:
    return JSONResponse(
        status_code=413,
        content={
            "error": "PayloadTooLarge",
            "message": f"Request payload exceeds maximum size of {settings.MAX_EVENT_SIZE} bytes",
            "max_size": settings.MAX_EVENT_SIZE,
            "received_size": size,
        },
    )


class ValidationMiddleware(BaseHTTPMiddleware):
    """Rejects oversized bodies and malformed JSON before they reach a route."""

    async def dispatch(self, request: Request, call_next):
        # Only validate POST/PUT/PATCH requests
        if request.method not in ("POST", "PUT", "PATCH"):
            return await call_next(request)

        log = structlog.get_logger()

        # Check content-length header first
        content_length = request.headers.get("content-length")
        if content_length and content_length.isdigit() and int(content_length) > settings.MAX_EVENT_SIZE:
            log.warning("payload.too_large", size=int(content_length), max_size=settings.MAX_EVENT_SIZE)
            return _too_large(int(content_length))

        # Validate JSON structure if content-type is application/json
        if request.headers.get("content-type", "").startswith("application/json"):
            body = await request.body()
            if len(body) > settings.MAX_EVENT_SIZE:
                log.warning("payload.too_large", size=len(body), max_size=settings.MAX_EVENT_SIZE)
                return _too_large(len(body))
            if body:
                try:
                    orjson.loads(body)
                except orjson.JSONDecodeError as e:
                    log.warning("invalid.json", error=str(e))
                    return JSONResponse(
                        status_code=400,
                        content={
                            "error": "InvalidJSON",
                            "message": "Request body is not valid JSON",
                            "detail": str(e),
                        },
                    )

        return await call_next(request)
