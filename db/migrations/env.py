"""Alembic environment for the primary and warehouse stores.

    alembic upgrade head                   # primary store (DATABASE_URL)
    alembic -x url=warehouse upgrade head  # secondary store (WAREHOUSE_DATABASE_URL)

Autogenerate compares only the schemas that live in the targeted store.
"""
import asyncio
from logging.config import fileConfig

from alembic import context
from sqlalchemy import pool
from sqlalchemy.ext.asyncio import create_async_engine

from db.connection import _database_url
from db.models import Base

config = context.config

if config.config_file_name is not None:
    fileConfig(config.config_file_name)

target_metadata = Base.metadata

WAREHOUSE_SCHEMA = "warehouse"
ALL_SCHEMAS = {table.schema for table in target_metadata.tables.values()}

_warehouse_target = context.get_x_argument(as_dictionary=True).get("url") == "warehouse"
TARGET_SCHEMAS = {WAREHOUSE_SCHEMA} if _warehouse_target else ALL_SCHEMAS

# Raises with setup instructions when the variable is unset or not asyncpg
DATABASE_URL = _database_url("WAREHOUSE_DATABASE_URL" if _warehouse_target else "DATABASE_URL")


def include_name(name, type_, parent_names):
    if type_ == "schema":
        return name in TARGET_SCHEMAS
    return True


def _configure(**kwargs) -> None:
    context.configure(
        target_metadata=target_metadata,
        include_schemas=True,
        include_name=include_name,
        **kwargs,
    )


def run_migrations_offline() -> None:
    """Emit SQL without connecting."""
    _configure(
        url=DATABASE_URL.render_as_string(hide_password=False),
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
    )
    with context.begin_transaction():
        context.run_migrations()


def do_run_migrations(connection) -> None:
    _configure(connection=connection)
    with context.begin_transaction():
        context.run_migrations()


async def run_async_migrations() -> None:
    engine = create_async_engine(DATABASE_URL, poolclass=pool.NullPool)
    async with engine.connect() as connection:
        await connection.run_sync(do_run_migrations)
    await engine.dispose()


if context.is_offline_mode():
    run_migrations_offline()
else:
    asyncio.run(run_async_migrations())
