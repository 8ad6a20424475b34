"""Alembic environment for the ledger schema.

The database URL always comes from Settings (DATABASE_URL), never from
alembic.ini, so migrations and the application agree on the target.
Online runs reuse the application's engine factory and therefore the
same async driver; there is no separate sync driver to install.
"""

import asyncio
from logging.config import fileConfig

from alembic import context
from sqlalchemy.engine import Connection

from escrow_ledger.config import get_settings
from escrow_ledger.infrastructure.database.engine import create_engine_for_url
from escrow_ledger.infrastructure.database.orm_models import Base

VERSION_TABLE = "ledger_schema_version"

alembic_cfg = context.config
if alembic_cfg.config_file_name is not None:
    fileConfig(alembic_cfg.config_file_name)

database_url = get_settings().database_url


def _configure(**kwargs: object) -> None:
    context.configure(
        target_metadata=Base.metadata,
        version_table=VERSION_TABLE,
        compare_type=True,
        compare_server_default=True,
        **kwargs,
    )


def emit_sql() -> None:
    """Offline mode: print the DDL instead of executing it."""
    _configure(url=database_url, literal_binds=True, dialect_opts={"paramstyle": "named"})
    with context.begin_transaction():
        context.run_migrations()


def _migrate(connection: Connection) -> None:
    # SQLite cannot ALTER constraints in place.
    _configure(connection=connection, render_as_batch=connection.dialect.name == "sqlite")
    with context.begin_transaction():
        context.run_migrations()


async def apply_migrations() -> None:
    """Online mode: run every pending revision in one connection."""
    engine = create_engine_for_url(database_url)
    try:
        async with engine.connect() as connection:
            await connection.run_sync(_migrate)
            await connection.commit()
    finally:
        await engine.dispose()


if context.is_offline_mode():
    emit_sql()
else:
    asyncio.run(apply_migrations())
