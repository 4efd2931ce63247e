"""Alembic environment for the resolve schema (async engine).

``alembic -x target=test upgrade head`` migrates the test database instead.
"""

import asyncio
from logging.config import fileConfig

from alembic import context
from sqlalchemy.ext.asyncio import create_async_engine

from agent_resolve.config import settings
from agent_resolve.database import Base
from agent_resolve.models import agent, dispute, escalation, transaction  # noqa: F401 - populate metadata

config = context.config
if config.config_file_name is not None:
    fileConfig(config.config_file_name)

target_metadata = Base.metadata


def _database_url() -> str:
    if context.get_x_argument(as_dictionary=True).get("target") == "test":
        return settings.test_database_url
    return settings.database_url


def _configure(**kwargs) -> None:  # type: ignore[no-untyped-def]
    context.configure(target_metadata=target_metadata, compare_type=True, **kwargs)
    with context.begin_transaction():
        context.run_migrations()


async def _migrate_online(url: str) -> None:
    engine = create_async_engine(url)
    try:
        async with engine.connect() as connection:
            await connection.run_sync(lambda sync_conn: _configure(connection=sync_conn))
    finally:
        await engine.dispose()


if context.is_offline_mode():
    # Emit SQL only
    _configure(url=_database_url(), literal_binds=True, dialect_opts={"paramstyle": "named"})
else:
    asyncio.run(_migrate_online(_database_url()))
