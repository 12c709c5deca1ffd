"""FastAPI dependency injection — provides DB sessions and the orchestrator registry.

Each request that touches the database gets a fresh ``AsyncSession`` via
``get_db()``.  The session is committed on success and rolled back on error,
matching the repository convention of ``flush()`` without ``commit()``.
"""

from typing import AsyncGenerator

from fastapi import Request
from sqlalchemy.ext.asyncio import AsyncSession

from proposal_db.engine import get_session_factory
from proposal_server.registry import OrchestratorRegistry


# ------------------------------------------------------------------
# Database session: transaction boundary lives here
# ------------------------------------------------------------------

async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """Yield an async DB session; commit on success, rollback on error."""
    factory = get_session_factory()
    async with factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


# ------------------------------------------------------------------
# Registry: stashed on app.state during lifespan
# ------------------------------------------------------------------

def get_registry(request: Request) -> OrchestratorRegistry:
    """Return the orchestrator registry singleton from ``app.state``."""
    return request.app.state.registry
