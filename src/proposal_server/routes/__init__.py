"""Route registration — mounts all routers under ``/api/v1``."""

from fastapi import FastAPI

from proposal_server.routes.pipelines import router as pipelines_router

API_PREFIX = "/api/v1"


def register_routes(app: FastAPI) -> None:
    """Include all sub-routers under the versioned API prefix."""
    app.include_router(pipelines_router, prefix=API_PREFIX)
