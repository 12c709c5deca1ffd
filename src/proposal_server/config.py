"""Server configuration — reads settings from environment variables.

All settings have sensible defaults for local development.  In production
the values are typically overridden via env vars or a ``.env`` file.
"""

import os
from dataclasses import dataclass, field

# --- Pagination defaults ---
# Module-level constants read at import time so FastAPI Query() defaults
# can reference them (Query defaults must be static at decoration time).
DEFAULT_PAGE_LIMIT = int(os.getenv("DEFAULT_PAGE_LIMIT", "20"))
MAX_PAGE_LIMIT = int(os.getenv("MAX_PAGE_LIMIT", "100"))


@dataclass(frozen=True)
class ServerSettings:
    """Immutable server configuration read from environment at startup."""

    # Network
    host: str = "0.0.0.0"
    port: int = 8080

    # CORS: comma-separated origins, or "*" for wide-open dev mode
    cors_origins: list[str] = field(default_factory=lambda: ["*"])

    # Logging
    log_level: str = "INFO"

    # External worker service that runs analysis, question and report jobs
    worker_base_url: str = "http://localhost:8090"
    worker_timeout: float = 30.0
    # When False the pipeline ends after question generation
    report_worker_enabled: bool = True

    # Orchestrators running in this process at once
    max_active_pipelines: int = 50
    # Finished orchestrators kept readable before the oldest are evicted
    max_retained_pipelines: int = 100


def load_settings() -> ServerSettings:
    """Build settings from ``SERVER_*`` / ``WORKER_*`` environment variables."""
    raw_origins = os.getenv("SERVER_CORS_ORIGINS", "*")
    origins = [o.strip() for o in raw_origins.split(",") if o.strip()]

    return ServerSettings(
        host=os.getenv("SERVER_HOST", "0.0.0.0"),
        port=int(os.getenv("SERVER_PORT", "8080")),
        cors_origins=origins,
        log_level=os.getenv("SERVER_LOG_LEVEL", "INFO").upper(),
        worker_base_url=os.getenv("WORKER_BASE_URL", "http://localhost:8090"),
        worker_timeout=float(os.getenv("WORKER_TIMEOUT", "30")),
        report_worker_enabled=os.getenv("WORKER_REPORTS_ENABLED", "true").lower()
        in ("1", "true", "yes"),
        max_active_pipelines=int(os.getenv("MAX_ACTIVE_PIPELINES", "50")),
        max_retained_pipelines=int(os.getenv("MAX_RETAINED_PIPELINES", "100")),
    )
