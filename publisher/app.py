from __future__ import annotations

import asyncio
import contextlib
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import uvicorn
from fastapi import APIRouter, FastAPI, Request
from fastapi.responses import JSONResponse, Response

from publisher.config import Settings, settings
from publisher.metrics import METRICS_CONTENT_TYPE, render_metrics
from publisher.middleware import IdempotencyMiddleware, RequestIdMiddleware
from publisher.routes import documents, verify
from publisher.schemas import ErrorDetail, ErrorResponse, HealthResponse
from publisher.services import Services, build_services
from publisher.storage import BlobNotFound
from publisher.tasks import background_cleanup_loop
from stamping.errors import (
    IdempotencyConflict,
    IdempotencyInProgress,
    IntegrityError,
    ProtocolError,
    StampingError,
    TimestampCancelled,
    TimestampUnavailable,
)

_STATUS_BY_ERROR: list[tuple[type[StampingError], int]] = [
    (IdempotencyConflict, 409),
    (IdempotencyInProgress, 409),
    (ProtocolError, 502),
    (TimestampUnavailable, 502),
    (TimestampCancelled, 503),
    (IntegrityError, 422),
]


def _status_for(exc: StampingError) -> int:
    for error_type, status_code in _STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            return status_code
    return 500


def _error_response(request: Request, status_code: int, code: str, message: str, details: dict | None) -> JSONResponse:
    body = ErrorResponse(
        error=ErrorDetail(
            code=code,
            message=message,
            request_id=getattr(request.state, "request_id", ""),
            details=details,
        )
    )
    return JSONResponse(status_code=status_code, content=body.model_dump())


def create_app(services: Services | None = None, config: Settings = settings) -> FastAPI:
    services = services or build_services(config)

    @asynccontextmanager
    async def lifespan(_app: FastAPI) -> AsyncGenerator[None, None]:
        cleanup = asyncio.create_task(
            background_cleanup_loop(services.idempotency, config.idempotency_cleanup_interval_seconds)
        )
        try:
            yield
        finally:
            cleanup.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await cleanup

    app = FastAPI(
        title="Document Publisher",
        version="0.1.0",
        description=(
            "Stamps published document versions with RFC 3161 timestamps, collects "
            "checklist attestations and assembles verifiable audit packs."
        ),
        lifespan=lifespan,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        openapi_tags=[
            {"name": "Health", "description": "Service health check and metrics"},
            {"name": "Stamping", "description": "RFC 3161 timestamping of document versions"},
            {"name": "Checklists", "description": "Checklist attestation submission"},
            {"name": "Audit packs", "description": "Audit pack generation"},
            {"name": "Verification", "description": "Document integrity verification"},
        ],
    )
    app.state.services = services

    app.add_middleware(IdempotencyMiddleware, prefixes=("/v1/documents/", "/api/v1/documents/"))
    app.add_middleware(RequestIdMiddleware)

    @app.exception_handler(StampingError)
    async def stamping_error_handler(request: Request, exc: StampingError) -> JSONResponse:
        return _error_response(request, _status_for(exc), exc.code, exc.message, exc.details)

    @app.exception_handler(BlobNotFound)
    async def blob_not_found_handler(request: Request, exc: BlobNotFound) -> JSONResponse:
        return _error_response(request, 404, "NOT_FOUND", f"Object not found: {exc.args[0]}", None)

    @app.get("/health", response_model=HealthResponse, tags=["Health"])
    def health() -> HealthResponse:
        return HealthResponse(idempotency_keys=services.idempotency.size())

    @app.get("/health/tsa", tags=["Health"])
    def tsa_health() -> dict[str, str]:
        return services.tsa.health_check()

    @app.get("/metrics", include_in_schema=False)
    def metrics() -> Response:
        return Response(content=render_metrics(services.idempotency), media_type=METRICS_CONTENT_TYPE)

    api_router = APIRouter()
    api_router.include_router(documents.router)
    api_router.include_router(verify.router)

    app.include_router(api_router, prefix="/v1")
    app.include_router(api_router, prefix="/api/v1")

    return app


if __name__ == "__main__":
    uvicorn.run(
        "publisher.app:create_app",
        factory=True,
        host=settings.host,
        port=settings.port,
        reload=False,
        log_level="info",
    )
