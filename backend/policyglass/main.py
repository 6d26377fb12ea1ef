"""ASGI entry-point for the FastAPI application.

This module
1. instantiates the :class:`fastapi.FastAPI` application;
2. builds the job pipeline services (store, notification hub, executors,
   orchestrator) once and attaches them to ``app.state``;
3. registers global exception handlers and middleware; and
4. starts the orchestrator and the keep-alive task on start-up and stops them
   on shutdown.
"""

from __future__ import annotations

import logging
from datetime import timedelta
from typing import Any

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from policyglass import __version__
from policyglass.api import api_router
from policyglass.config import settings
from policyglass.db.database import SessionLocal, create_tables, engine
from policyglass.errors import AppBaseException, PolicyJobError
from policyglass.logging_config import setup_logging
from policyglass.services.audit import PolicyAuditor
from policyglass.services.job_store import JobStore
from policyglass.services.notifications import NotificationHub
from policyglass.services.reports import ReportRepository
from policyglass.services.research import PolicyResearcher
from policyglass.workers.orchestrator import JobOrchestrator


# ---------------------------------------------------------------------------
# Logging must be configured as soon as possible so that any errors during
# import/start-up are captured.
# ---------------------------------------------------------------------------
setup_logging()
logger = logging.getLogger(__name__)

SHUTDOWN_GRACE_SECONDS = 10.0


def build_services(app: FastAPI) -> None:
    """Construct the pipeline from ``settings`` and attach it to ``app.state``."""
    reports = ReportRepository(SessionLocal)
    store = JobStore(SessionLocal, ttl=timedelta(hours=settings.JOB_TTL_HOURS))
    hub = NotificationHub(keepalive_interval=settings.KEEPALIVE_INTERVAL_SECONDS)

    orchestrator = JobOrchestrator(
        store,
        hub,
        research=PolicyResearcher(reports, settings.OLLAMA_URL, settings.OLLAMA_DEFAULT_MODEL, settings.HTTP_TIMEOUT_SECONDS),
        audit=PolicyAuditor(reports, settings.OLLAMA_URL, settings.OLLAMA_DEFAULT_MODEL, settings.HTTP_TIMEOUT_SECONDS),
        max_concurrency=settings.MAX_CONCURRENT_JOBS,
        poll_interval=settings.POLL_INTERVAL_SECONDS,
        error_backoff=settings.ERROR_BACKOFF_SECONDS,
        cleanup_interval=settings.CLEANUP_INTERVAL_SECONDS,
        pending_batch_size=settings.PENDING_BATCH_SIZE,
        phase_timeout=settings.PHASE_TIMEOUT_SECONDS,
    )

    app.state.reports = reports
    app.state.job_store = store
    app.state.hub = hub
    app.state.orchestrator = orchestrator


def create_app() -> FastAPI:  # noqa: D401 – factory nomenclature is fine
    """Wire and return the FastAPI application instance."""

    app = FastAPI(
        title="PolicyGlass API",
        version=__version__,
        docs_url="/api/docs",
    )
    build_services(app)

    # ------------------------------------------------------------------
    # Start-up / shutdown
    # ------------------------------------------------------------------

    @app.on_event("startup")
    async def _startup() -> None:  # noqa: D401
        logger.info("Running start-up tasks …")
        try:
            create_tables(engine)
        except Exception as exc:  # pragma: no cover
            logger.exception("Failed to create DB schema: %s", exc)

        app.state.orchestrator.start()
        app.state.hub.start_keepalive()
        logger.info("Start-up finished.")

    @app.on_event("shutdown")
    async def _shutdown() -> None:  # noqa: D401
        logger.info("Shutting down job pipeline …")
        await app.state.orchestrator.shutdown(timeout=SHUTDOWN_GRACE_SECONDS)
        await app.state.hub.stop_keepalive()
        await app.state.hub.close_all()

    # ------------------------------------------------------------------
    # Exception handlers
    # ------------------------------------------------------------------

    @app.exception_handler(RequestValidationError)
    async def _validation_error_handler(  # noqa: D401
        _request: Request,
        exc: RequestValidationError,
    ) -> JSONResponse:  # type: ignore[valid-type]
        logger.error("Request validation error: %s", exc.errors())
        return JSONResponse(status_code=422, content={"detail": jsonable_errors(exc)})

    @app.exception_handler(StarletteHTTPException)
    async def _http_error_handler(  # noqa: D401
        _request: Request,
        exc: StarletteHTTPException,
    ) -> JSONResponse:  # type: ignore[valid-type]
        logger.error("HTTP exception %s: %s", exc.status_code, exc.detail)
        return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail})

    @app.exception_handler(AppBaseException)
    async def _app_error_handler(  # noqa: D401
        _request: Request,
        exc: AppBaseException,
    ) -> JSONResponse:  # type: ignore[valid-type]
        logger.error("Application exception: %s", exc.detail)
        return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail})

    @app.exception_handler(PolicyJobError)
    async def _job_error_handler(  # noqa: D401
        _request: Request,
        exc: PolicyJobError,
    ) -> JSONResponse:  # type: ignore[valid-type]
        logger.error("Job %s failed in %s: %s", exc.job_id, exc.phase, exc, exc_info=True)
        return JSONResponse(
            status_code=500,
            content={"detail": str(exc), "jobId": exc.job_id, "phase": exc.phase},
        )

    @app.exception_handler(Exception)
    async def _generic_error_handler(  # noqa: D401
        _request: Request,
        exc: Exception,
    ) -> JSONResponse:  # type: ignore[valid-type]
        logger.exception("Unhandled exception: %s", exc)
        return JSONResponse(status_code=500, content={"detail": "Internal Server Error"})

    # ------------------------------------------------------------------
    # Middleware
    # ------------------------------------------------------------------

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # ------------------------------------------------------------------
    # Routers
    # ------------------------------------------------------------------

    app.include_router(api_router, prefix="/api")

    # ------------------------------------------------------------------
    # Miscellaneous endpoints
    # ------------------------------------------------------------------

    @app.get("/api/health")
    async def _health(request: Request) -> dict[str, Any]:  # noqa: D401
        stats = request.app.state.orchestrator.get_stats()
        return {"status": "ok", "processingStats": stats.model_dump(by_alias=True)}

    return app


def jsonable_errors(exc: RequestValidationError) -> list[dict[str, Any]]:
    """Validation errors without the non-serialisable ``ctx`` payloads."""
    return [{key: value for key, value in error.items() if key != "ctx"} for error in exc.errors()]


# Instantiate at import time so `uvicorn policyglass.main:app` works.
app: FastAPI = create_app()
