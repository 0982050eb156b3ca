"""
FastAPI Application — Entry Point

Metro-rail document processing service.

Architecture:
  - All routes are versioned under /api/v1/
  - create_app() builds the pipeline's service objects once (document store,
    AI gateway, file processor, queue manager, ingestion service) and parks
    them on app.state; routes reach them through docflow.api.dependencies
  - The lifespan hook starts the queue manager's worker pools and drains
    them on shutdown (active jobs finish, no new ones are claimed)
  - Structured JSON error responses on all 4xx/5xx

Middleware:
  Request ID injection + one structured log line per request with latency.
"""

from __future__ import annotations

import logging
import time
import uuid
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from docflow.api.v1.documents import router as documents_router
from docflow.api.v1.queues import router as queues_router
from docflow.core.config import Settings, get_settings
from docflow.core.exceptions import (
    DocflowError,
    DocumentNotFoundError,
    JobNotFoundError,
    QueueClosedError,
    QueueNotFoundError,
)
from docflow.core.logging import configure_logging
from docflow.db.session import check_db_health
from docflow.processing.files import FileProcessor
from docflow.schemas.documents import ErrorDetail, ErrorResponse
from docflow.services.ai_gateway import AIGateway
from docflow.services.document_store import DocumentStore, SqlDocumentStore, create_document_store
from docflow.services.indexer import SearchIndexer
from docflow.services.ingestion import IngestionService
from docflow.workers.manager import ProcessingQueueManager
from docflow.workers.queue import WorkQueue

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Application lifespan: startup / shutdown hooks
# ---------------------------------------------------------------------------

@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Run on startup: start the pipeline worker pools.
    Run on shutdown: drain the pools and release the queue and store backends.
    """
    cfg: Settings = app.state.settings
    logger.info(
        "Starting document pipeline | env=%s store=%s queue=%s",
        cfg.app_env, cfg.document_store_backend, cfg.queue_backend,
    )
    if app.state.start_workers:
        await app.state.manager.start()

    yield

    logger.info("Shutting down document pipeline")
    await app.state.manager.close_queues()
    await app.state.store.close()


# ---------------------------------------------------------------------------
# Error envelope helpers
# ---------------------------------------------------------------------------

def _error(status_code: int, body: ErrorResponse, request_id: str | None) -> JSONResponse:
    body.request_id = body.request_id or request_id
    headers = {"X-Request-ID": request_id} if request_id else None
    return JSONResponse(status_code=status_code, content=body.model_dump(mode="json"), headers=headers)


_DOCFLOW_STATUS: dict[type[DocflowError], tuple[int, str]] = {
    DocumentNotFoundError: (status.HTTP_404_NOT_FOUND,           "DOCUMENT_NOT_FOUND"),
    QueueNotFoundError:    (status.HTTP_404_NOT_FOUND,           "QUEUE_NOT_FOUND"),
    JobNotFoundError:      (status.HTTP_404_NOT_FOUND,           "JOB_NOT_FOUND"),
    QueueClosedError:      (status.HTTP_503_SERVICE_UNAVAILABLE, "QUEUE_CLOSED"),
}


# ---------------------------------------------------------------------------
# Application factory
# ---------------------------------------------------------------------------

def create_app(
    settings: Settings | None = None,
    *,
    store: DocumentStore | None = None,
    ai: AIGateway | None = None,
    queue: WorkQueue | None = None,
    indexer: SearchIndexer | None = None,
    start_workers: bool = True,
) -> FastAPI:
    settings = settings or get_settings()
    configure_logging(settings)

    app = FastAPI(
        title="Metro-rail Document Processing Pipeline",
        description=(
            "Upload ingress and job inspection for the asynchronous "
            "intake → OCR → classification → indexing pipeline."
        ),
        version="1.0.0",
        docs_url="/api/docs" if not settings.is_production else None,
        redoc_url="/api/redoc" if not settings.is_production else None,
        openapi_url="/api/openapi.json" if not settings.is_production else None,
        lifespan=lifespan,
    )

    # ----------------------------------------------------------------
    # Pipeline services (one set per process)
    # ----------------------------------------------------------------

    store = store or create_document_store(settings)
    ai = ai or AIGateway(settings)
    files = FileProcessor(settings)
    manager = ProcessingQueueManager(
        store=store,
        ai=ai,
        files=files,
        indexer=indexer,
        settings=settings,
        queue=queue,
    )

    app.state.settings = settings
    app.state.store = store
    app.state.ai = ai
    app.state.manager = manager
    app.state.ingestion = IngestionService(store, manager, files, settings)
    app.state.start_workers = start_workers

    # ----------------------------------------------------------------
    # Request ID + structured logging middleware
    # ----------------------------------------------------------------

    @app.middleware("http")
    async def request_id_and_logging(request: Request, call_next):
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        request.state.request_id = request_id
        start = time.perf_counter()

        response = await call_next(request)

        duration_ms = (time.perf_counter() - start) * 1000
        response.headers["X-Request-ID"] = request_id

        logger.info(
            "HTTP %s %s %d %.1fms",
            request.method,
            request.url.path,
            response.status_code,
            duration_ms,
        )
        return response

    # ----------------------------------------------------------------
    # Exception handlers: uniform structured error responses
    # ----------------------------------------------------------------

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException):
        """Routes raise HTTPException(detail=ErrorResponse dict); unwrap it."""
        request_id = getattr(request.state, "request_id", None)
        if isinstance(exc.detail, dict) and "error_code" in exc.detail:
            body = ErrorResponse.model_validate(exc.detail)
        else:
            body = ErrorResponse(error_code=f"HTTP_{exc.status_code}", message=str(exc.detail))
        return _error(exc.status_code, body, request_id)

    @app.exception_handler(DocflowError)
    async def docflow_exception_handler(request: Request, exc: DocflowError):
        request_id = getattr(request.state, "request_id", None)
        status_code, error_code = _DOCFLOW_STATUS.get(
            type(exc), (status.HTTP_400_BAD_REQUEST, "PIPELINE_ERROR")
        )
        return _error(status_code, ErrorResponse(error_code=error_code, message=str(exc)), request_id)

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        """Convert Pydantic/FastAPI validation errors to structured ErrorResponse."""
        details = [
            ErrorDetail(
                field=" → ".join(str(loc) for loc in err["loc"]),
                message=err["msg"],
                code="VALIDATION_ERROR",
            )
            for err in exc.errors()
        ]
        body = ErrorResponse(
            error_code="VALIDATION_ERROR",
            message="Request validation failed.",
            details=details,
        )
        return _error(status.HTTP_422_UNPROCESSABLE_ENTITY, body, getattr(request.state, "request_id", None))

    @app.exception_handler(Exception)
    async def generic_exception_handler(request: Request, exc: Exception):
        """Catch-all for unhandled exceptions — never expose stack traces."""
        request_id = getattr(request.state, "request_id", None) or str(uuid.uuid4())
        logger.exception(
            "Unhandled exception | path=%s request_id=%s",
            request.url.path, request_id,
        )
        body = ErrorResponse(
            error_code="INTERNAL_ERROR",
            message="An unexpected error occurred.",
        )
        return _error(status.HTTP_500_INTERNAL_SERVER_ERROR, body, request_id)

    # ----------------------------------------------------------------
    # Routers
    # ----------------------------------------------------------------

    app.include_router(documents_router, prefix="/api/v1")
    app.include_router(queues_router,    prefix="/api/v1")

    # ----------------------------------------------------------------
    # Health & readiness endpoints (used by load balancer)
    # ----------------------------------------------------------------

    @app.get(
        "/health",
        tags=["Operations"],
        summary="Liveness probe",
        description="Returns 200 if the process is alive. No external checks.",
    )
    async def health() -> dict:
        return {"status": "ok", "service": "docflow"}

    @app.get(
        "/ready",
        tags=["Operations"],
        summary="Readiness probe",
        description="Returns 200 only if the document store is reachable and the workers are running.",
    )
    async def readiness(request: Request) -> JSONResponse:
        if isinstance(request.app.state.store, SqlDocumentStore):
            db_status = await check_db_health()
        else:
            db_status = {"status": "ok", "detail": "in-memory store"}
        queues_running = request.app.state.manager.is_running

        ready = db_status["status"] == "ok" and (queues_running or not request.app.state.start_workers)
        return JSONResponse(
            status_code=status.HTTP_200_OK if ready else status.HTTP_503_SERVICE_UNAVAILABLE,
            content={
                "status":   "ready" if ready else "not_ready",
                "database": db_status,
                "queues":   "running" if queues_running else "stopped",
            },
        )

    return app


# ---------------------------------------------------------------------------
# Local development entry point
# ---------------------------------------------------------------------------

if __name__ == "__main__":
    import uvicorn

    _settings = get_settings()
    uvicorn.run(
        "docflow.main:create_app",
        factory=True,
        host="0.0.0.0",
        port=8080,
        reload=_settings.app_env == "development",
        log_level="debug" if _settings.debug else "info",
        access_log=True,
    )
