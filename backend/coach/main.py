"""Coach API - Main FastAPI Application."""

import logging
import os
from contextlib import asynccontextmanager
from typing import Any

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from coach.api.routes import coach
from coach.core.exceptions import CoachException, sanitize_error
from coach.middleware.performance import RequestIDMiddleware, RequestTimingMiddleware


# Configure logging: JSON for production, text for dev
def _configure_logging() -> None:
    """Set up logging based on LOG_FORMAT env var.

    json: Structured JSON via python-json-logger (for production).
    text: Human-readable format (for local development).
    """
    log_format = os.environ.get("LOG_FORMAT", "text").lower()
    log_level = os.environ.get("LOG_LEVEL", "INFO").upper()

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, log_level, logging.INFO))

    # Remove existing handlers to avoid duplicate output
    root_logger.handlers.clear()

    handler = logging.StreamHandler()

    if log_format == "json":
        from pythonjsonlogger.json import JsonFormatter

        formatter = JsonFormatter(
            fmt="%(asctime)s %(levelname)s %(name)s %(message)s",
            rename_fields={
                "asctime": "timestamp",
                "levelname": "level",
                "name": "service",
            },
            static_fields={"app": "coach-api"},
        )
        handler.setFormatter(formatter)
    else:
        handler.setFormatter(
            logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")
        )

    root_logger.addHandler(handler)


_configure_logging()
logger = logging.getLogger(__name__)


def get_cors_origins() -> list[str]:
    """Get CORS origins from settings.

    Returns:
        List of allowed CORS origins.
    """
    from coach.core.config import settings

    return settings.cors_origins_list


@asynccontextmanager
async def lifespan(_app: FastAPI) -> Any:
    """Application lifespan handler for startup and shutdown events."""
    from coach.core.config import settings

    logger.info("Starting coach API...")
    if not settings.is_llm_configured:
        logger.warning("ANTHROPIC_API_KEY not configured - coach replies will return 503")
    yield
    logger.info("Shutting down coach API...")


app = FastAPI(
    title="Coach API",
    description="Relationship coaching sessions with a weekly free-tier quota",
    version="1.0.0",
    lifespan=lifespan,
)

CORS_ORIGINS = get_cors_origins()

app.add_middleware(RequestTimingMiddleware)
app.add_middleware(RequestIDMiddleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(coach.router, prefix="/api/v1")


@app.get("/health", tags=["system"])
async def root_health_check() -> dict[str, str]:
    """Lightweight liveness check; returns 200 if the process is running."""
    return {"status": "healthy"}


def _request_id(request: Request) -> str:
    return getattr(request.state, "request_id", None) or "unknown"


@app.exception_handler(CoachException)
async def coach_exception_handler(request: Request, exc: CoachException) -> JSONResponse:
    """Handle coach-specific exceptions.

    Args:
        request: The incoming request.
        exc: The coach exception.

    Returns:
        JSON error response with consistent format.
    """
    request_id = _request_id(request)
    log = logger.error if exc.status_code >= 500 else logger.warning
    log(
        "Coach exception occurred",
        extra={
            "code": exc.code,
            "status_code": exc.status_code,
            "request_id": request_id,
            "path": request.url.path,
            "error_message": exc.message,
        },
    )

    if exc.status_code >= 500:
        content: dict[str, Any] = {"error": sanitize_error(exc)}
    else:
        content = {**exc.details, "error": exc.message}
    content["code"] = exc.code
    content["request_id"] = request_id
    return JSONResponse(status_code=exc.status_code, content=content)


@app.exception_handler(RequestValidationError)
async def request_validation_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    """Handle request body and query parsing errors as 400s."""
    request_id = _request_id(request)
    logger.warning(
        "Request validation error",
        extra={
            "request_id": request_id,
            "path": request.url.path,
            "method": request.method,
            "error_count": len(exc.errors()),
        },
    )
    return JSONResponse(
        status_code=400,
        content={
            "error": "Invalid request",
            "code": "REQUEST_VALIDATION_ERROR",
            "request_id": request_id,
        },
    )


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Handle unhandled exceptions globally.

    Returns a JSON response with CORS headers so the browser doesn't
    mask the real error as a CORS failure.
    """
    request_id = _request_id(request)
    logger.exception(
        "Unhandled exception occurred",
        exc_info=exc,
        extra={
            "request_id": request_id,
            "path": request.url.path,
        },
    )

    origin = request.headers.get("origin", "")
    response = JSONResponse(
        status_code=500,
        content={
            "error": "Internal server error",
            "code": "INTERNAL_ERROR",
            "request_id": request_id,
        },
    )
    if origin in CORS_ORIGINS:
        response.headers["Access-Control-Allow-Origin"] = origin
        response.headers["Access-Control-Allow-Credentials"] = "true"
    return response
