"""Database URLs for the pipeline tables.

``DATABASE_URL`` wins when set; otherwise the URL is assembled from
``PG_HOST``, ``PG_PORT``, ``PG_USER``, ``PG_PASSWORD`` and ``PG_DATABASE``.
The same database is reached through two drivers: asyncpg for the server
and the state store, psycopg2 for Alembic.
"""

import os

_SYNC_SCHEME = "postgresql://"
_ASYNC_SCHEME = "postgresql+asyncpg://"


def _configured_url() -> str:
    url = os.getenv("DATABASE_URL")
    if url:
        return url
    host = os.getenv("PG_HOST", "localhost")
    port = os.getenv("PG_PORT", "5432")
    user = os.getenv("PG_USER", "proposal")
    password = os.getenv("PG_PASSWORD", "proposal")
    database = os.getenv("PG_DATABASE", "proposal")
    return f"{_SYNC_SCHEME}{user}:{password}@{host}:{port}/{database}"


def get_sync_url() -> str:
    """psycopg2 URL, for Alembic."""
    return _configured_url().replace(_ASYNC_SCHEME, _SYNC_SCHEME, 1)


def get_async_url() -> str:
    """asyncpg URL, for the runtime engine."""
    url = _configured_url()
    if url.startswith(_SYNC_SCHEME):
        return _ASYNC_SCHEME + url[len(_SYNC_SCHEME):]
    return url
