"""Global exception handlers — map SDK exceptions to HTTP status codes.

The SDK and the registry raise ``ValueError`` for misuse (pipeline not
found, already exists, already started, too many pipelines).  Rather than
catching these in every route, we install global handlers that inspect the
message and pick the right HTTP status code.
"""

import logging

from fastapi import Request
from fastapi.responses import JSONResponse

from proposal_pipeline.errors import PipelineError

logger = logging.getLogger(__name__)

# --- Keyword patterns in ValueError messages and their HTTP status codes ---
# Checked in order; first match wins.
_VALUE_ERROR_PATTERNS: list[tuple[str, int]] = [
    # Pipeline session already exists (in the registry or the database)
    ("already exists", 409),
    # start() on a pipeline that left setup
    ("already started", 409),
    # Registry full
    ("limit reached", 429),
    ("not found", 404),
    # Operation on a stopped pipeline
    ("has been stopped", 400),
]


# --- Client-safe messages keyed by HTTP status code ---
_SAFE_MESSAGES: dict[int, str] = {
    404: "Resource not found",
    409: "Resource already exists or is already running",
    429: "Too many active pipelines",
    503: "Pipeline backend unavailable",
    400: "Invalid request",
}


async def value_error_handler(request: Request, exc: ValueError) -> JSONResponse:
    """Map ``ValueError`` to a contextual HTTP error response.

    The raw exception message is logged server-side but never sent to the
    client; it may contain session or project identifiers.
    """
    msg = str(exc)
    status = 400
    for pattern, code in _VALUE_ERROR_PATTERNS:
        if pattern in msg.lower():
            status = code
            break

    logger.warning("ValueError [%d] at %s: %s", status, request.url, msg)
    safe_detail = _SAFE_MESSAGES.get(status, "Invalid request")
    return JSONResponse(status_code=status, content={"detail": safe_detail})


async def pipeline_error_handler(request: Request, exc: PipelineError) -> JSONResponse:
    """State store or worker unreachable: 503, safe to retry."""
    logger.error("PipelineError at %s: %s", request.url, exc)
    return JSONResponse(status_code=503, content={"detail": _SAFE_MESSAGES[503]})


async def generic_error_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all for unhandled exceptions — log full traceback, return 500."""
    logger.exception("Unhandled exception at %s", request.url)
    return JSONResponse(
        status_code=500,
        content={"detail": "Internal server error"},
    )
