"""Alembic environment for the pipeline tables.

Runs on psycopg2 (``get_sync_url()``); the asyncpg engine is only used at
runtime.  ``compare_type`` is on so autogenerate notices the String
widths of the status columns.
"""

from logging.config import fileConfig

from alembic import context
from sqlalchemy import engine_from_config, pool

import proposal_db.models  # noqa: F401  (registers every table)
from proposal_db.config import get_sync_url
from proposal_db.models.base import Base

config = context.config
config.set_main_option("sqlalchemy.url", get_sync_url())
if config.config_file_name is not None:
    fileConfig(config.config_file_name)

_OPTIONS = {
    "target_metadata": Base.metadata,
    "compare_type": True,
}


def run_offline() -> None:
    """Print the migration SQL instead of executing it."""
    context.configure(
        url=config.get_main_option("sqlalchemy.url"),
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
        **_OPTIONS,
    )
    with context.begin_transaction():
        context.run_migrations()


def run_online() -> None:
    engine = engine_from_config(
        config.get_section(config.config_ini_section, {}),
        prefix="sqlalchemy.",
        poolclass=pool.NullPool,
    )
    with engine.connect() as connection:
        context.configure(connection=connection, **_OPTIONS)
        with context.begin_transaction():
            context.run_migrations()


if context.is_offline_mode():
    run_offline()
else:
    run_online()
