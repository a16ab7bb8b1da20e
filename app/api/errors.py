"""Structured error responses for pipeline-level failures."""
from fastapi import Request
from fastapi.responses import JSONResponse
import structlog
from ..errors import PipelineError

log = structlog.get_logger()


def _correlation_id(request: Request) -> str | None:
    return getattr(request.state, "correlation_id", None)


async def pipeline_error_handler(request: Request, exc: PipelineError) -> JSONResponse:
    correlation_id = _correlation_id(request)
    log.error(
        "pipeline.exception",
        error=str(exc),
        error_type=exc.__class__.__name__,
        path=request.url.path,
        exc_info=exc,
    )
    return JSONResponse(
        status_code=500,
        content={
            "success": False,
            "error": exc.__class__.__name__,
            "message": str(exc),
            "correlation_id": correlation_id,
            "path": str(request.url.path),
        },
    )


async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    correlation_id = _correlation_id(request)
    log.error(
        "unhandled.exception",
        error=str(exc),
        error_type=exc.__class__.__name__,
        path=request.url.path,
        exc_info=exc,
    )
    return JSONResponse(
        status_code=500,
        content={
            "success": False,
            "error": "InternalServerError",
            "message": "An unexpected error occurred",
            "correlation_id": correlation_id,
            "path": str(request.url.path),
        },
    )
