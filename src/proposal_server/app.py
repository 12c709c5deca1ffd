"""Application factory and CLI entry point.

``create_app()`` builds the FastAPI application with:
  - Lifespan handler that builds the state store, HTTP workers and the
    orchestrator registry once
  - CORS middleware
  - Global exception handlers (ValueError → 404/409/429/400, PipelineError → 503)
  - All API routes mounted under ``/api/v1``
  - A ``/health`` endpoint for readiness probes

The ``cli()`` function is the ``proposal-server`` console-script entry point.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy import text

from proposal_db.engine import dispose_engine, get_engine
from proposal_pipeline.config import load_settings as load_pipeline_settings
from proposal_pipeline.errors import PipelineError
from proposal_pipeline.models.records import (
    QuestionGenerationOptions,
    ReportGenerationOptions,
)
from proposal_pipeline.orchestrator import PipelineOrchestrator
from proposal_pipeline.state_store import RepositoryStateStore

from proposal_server.config import ServerSettings, load_settings
from proposal_server.errors import (
    generic_error_handler,
    pipeline_error_handler,
    value_error_handler,
)
from proposal_server.registry import OrchestratorRegistry
from proposal_server.routes import register_routes
from proposal_server.workers import (
    HttpDocumentAnalysisWorker,
    HttpQuestionGenerationWorker,
    HttpReportWorker,
    WorkerClient,
)

logger = logging.getLogger(__name__)


# ------------------------------------------------------------------
# Lifespan: runs once at startup/shutdown
# ------------------------------------------------------------------

@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Initialise shared resources at startup, tear down on shutdown.

    Startup:
      1. Build the database-backed state store and the HTTP worker client
      2. Build an ``OrchestratorRegistry`` whose factory wires both in
      3. Stash the registry on ``app.state`` for dependency injection

    Shutdown:
      1. Stop every running orchestrator
      2. Close the worker client and dispose the database engine
    """
    settings: ServerSettings = app.state.settings
    pipeline_settings = load_pipeline_settings()

    store = RepositoryStateStore()
    client = WorkerClient(settings.worker_base_url, settings.worker_timeout)
    document_worker = HttpDocumentAnalysisWorker(client)
    question_worker = HttpQuestionGenerationWorker(client)
    report_worker = HttpReportWorker(client) if settings.report_worker_enabled else None

    def build(
        session_id: str,
        project_id: str,
        question_options: QuestionGenerationOptions | None,
        report_options: ReportGenerationOptions | None,
    ) -> PipelineOrchestrator:
        return PipelineOrchestrator(
            session_id,
            project_id,
            store,
            document_worker,
            question_worker,
            report_worker,
            settings=pipeline_settings,
            question_options=question_options,
            report_options=report_options,
        )

    registry = OrchestratorRegistry(
        build,
        max_active=settings.max_active_pipelines,
        max_retained=settings.max_retained_pipelines,
    )
    app.state.registry = registry
    logger.info(
        "Orchestrator registry ready (workers at %s, reports %s)",
        settings.worker_base_url,
        "enabled" if report_worker else "disabled",
    )

    yield

    # --- Shutdown ---
    await registry.shutdown()
    await client.aclose()
    await dispose_engine()
    logger.info("Database engine disposed")


# ------------------------------------------------------------------
# Factory
# ------------------------------------------------------------------

def create_app(settings: ServerSettings | None = None) -> FastAPI:
    """Build and return the configured FastAPI application."""
    if settings is None:
        settings = load_settings()

    # --- Configure logging ---
    logging.basicConfig(
        level=getattr(logging, settings.log_level, logging.INFO),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )

    app = FastAPI(
        title="Proposal Pipeline API Server",
        description="REST API for the proposal pre-analysis pipeline orchestrator",
        version="0.1.0",
        lifespan=lifespan,
    )

    # Store settings so the lifespan handler can read them
    app.state.settings = settings

    # --- CORS ---
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # --- Exception handlers ---
    app.add_exception_handler(ValueError, value_error_handler)
    app.add_exception_handler(PipelineError, pipeline_error_handler)
    app.add_exception_handler(Exception, generic_error_handler)

    # --- Health check (outside /api/v1 prefix) ---
    @app.get("/health")
    async def health() -> dict:
        """Readiness probe — verifies DB connectivity."""
        try:
            engine = get_engine()
            async with engine.connect() as conn:
                await conn.execute(text("SELECT 1"))
            return {"status": "ok"}
        except Exception as exc:
            logger.error("Health check failed: %s", exc)
            return {"status": "error", "detail": str(exc)}

    # --- Mount all API routes ---
    register_routes(app)

    return app


# ------------------------------------------------------------------
# Module-level ASGI export (for uvicorn proposal_server.app:app)
# ------------------------------------------------------------------
app = create_app()


# ------------------------------------------------------------------
# CLI entry point
# ------------------------------------------------------------------

def cli() -> None:
    """Console-script entry point: ``proposal-server``."""
    import uvicorn

    settings = load_settings()
    uvicorn.run(
        "proposal_server.app:app",
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level.lower(),
        reload=False,
    )
