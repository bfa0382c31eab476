"""API middleware for logging, metrics, client gating and error handling."""

import time
import uuid
from typing import Callable

import structlog
from fastapi import FastAPI, Request, Response
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from prometheus_client import Counter, Histogram
from starlette.exceptions import HTTPException as StarletteHTTPException

from simpledeploy.api.auth import is_ip_allowed
from simpledeploy.core.exceptions import SimpleDeployError
from simpledeploy.deploy.models import DeploymentResponse

logger = structlog.get_logger()

# Prometheus metrics
REQUEST_COUNT = Counter(
    "simpledeploy_http_requests_total",
    "Total HTTP requests",
    ["method", "endpoint", "status"],
)

REQUEST_DURATION = Histogram(
    "simpledeploy_http_request_duration_seconds",
    "HTTP request duration",
    ["method", "endpoint"],
)

# Served to anyone so a browser can confirm the agent is up
UNRESTRICTED_PATHS = {"/", "/index.html"}


def _error_response(status_code: int, message: str, **extra) -> JSONResponse:
    body = DeploymentResponse(isSuccess=False, message=message).model_dump()
    body.update(extra)
    return JSONResponse(status_code=status_code, content=jsonable_encoder(body))


def setup_error_handling(app: FastAPI) -> None:
    """Setup error handling middleware."""

    @app.exception_handler(SimpleDeployError)
    async def simpledeploy_error_handler(request: Request, exc: SimpleDeployError) -> JSONResponse:
        """Handle agent errors with the status code they carry."""
        logger.warning(
            "Request rejected",
            error=exc.__class__.__name__,
            message=str(exc),
            status_code=exc.status_code,
        )
        return _error_response(exc.status_code, str(exc), error=exc.__class__.__name__, code=exc.code)

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        """Handle validation errors."""
        return _error_response(422, "Invalid request data", error="ValidationError", details=exc.errors())

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
        """Handle HTTP exceptions."""
        return _error_response(exc.status_code, str(exc.detail), error="HTTPException")

    @app.exception_handler(Exception)
    async def general_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """Handle unexpected exceptions."""
        logger.exception("Unexpected error", exc_info=exc)
        return _error_response(500, "An unexpected error occurred", error="InternalServerError")


def setup_logging_middleware(app: FastAPI) -> None:
    """Setup request logging middleware."""

    @app.middleware("http")
    async def log_requests(request: Request, call_next: Callable) -> Response:
        """Log all requests."""
        request_id = str(uuid.uuid4())

        structlog.contextvars.bind_contextvars(
            request_id=request_id,
            method=request.method,
            path=request.url.path,
            client=request.client.host if request.client else None,
        )
        start_time = time.time()

        try:
            response = await call_next(request)

            duration = time.time() - start_time
            logger.info(
                "Request completed",
                status_code=response.status_code,
                duration_seconds=duration,
            )

            response.headers["X-Request-ID"] = request_id

            return response

        except Exception as exc:
            duration = time.time() - start_time
            logger.exception(
                "Request failed",
                duration_seconds=duration,
                exc_info=exc,
            )
            raise
        finally:
            structlog.contextvars.unbind_contextvars("request_id", "method", "path", "client")


def setup_metrics_middleware(app: FastAPI) -> None:
    """Setup metrics collection middleware."""

    @app.middleware("http")
    async def collect_metrics(request: Request, call_next: Callable) -> Response:
        """Collect request metrics."""
        start_time = time.time()

        response = await call_next(request)

        duration = time.time() - start_time
        endpoint = request.url.path

        REQUEST_COUNT.labels(
            method=request.method,
            endpoint=endpoint,
            status=response.status_code,
        ).inc()

        REQUEST_DURATION.labels(
            method=request.method,
            endpoint=endpoint,
        ).observe(duration)

        return response


def setup_ip_restriction_middleware(app: FastAPI) -> None:
    """Refuse clients outside the configured ip whitelist."""

    @app.middleware("http")
    async def restrict_ip(request: Request, call_next: Callable) -> Response:
        if request.url.path not in UNRESTRICTED_PATHS:
            host = request.client.host if request.client else None
            ranges = request.app.state.settings.ip_whitelist_list
            if not is_ip_allowed(host, ranges):
                logger.warning("Forbidden request from IP", client=host, path=request.url.path)
                return _error_response(403, "Forbidden", error="Forbidden")
        return await call_next(request)
