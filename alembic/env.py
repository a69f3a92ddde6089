"""Migrations for the kv_entries / index_entries / market_history schema.

Targets DATABASE_URL through asyncpg; alembic.ini's sqlalchemy.url is used only when
DATABASE_URL selects the in-process backend.
"""
import asyncio
import sys
from logging.config import fileConfig
from pathlib import Path

from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.pool import NullPool

from alembic import context

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from config.settings import DATABASE_URL  # noqa: E402
from storage.database import normalize_db_url  # noqa: E402
from storage.models import Base  # noqa: E402

config = context.config
if config.config_file_name is not None:
    fileConfig(config.config_file_name)


def _target_url() -> str:
    if DATABASE_URL.lower() in ("", "none", "null"):
        return config.get_main_option("sqlalchemy.url")
    return normalize_db_url(DATABASE_URL)


def _migrate(**configure_kwargs) -> None:
    context.configure(target_metadata=Base.metadata, compare_type=True, **configure_kwargs)
    with context.begin_transaction():
        context.run_migrations()


async def _migrate_online(url: str) -> None:
    engine = create_async_engine(url, poolclass=NullPool)
    async with engine.connect() as connection:
        await connection.run_sync(lambda sync_conn: _migrate(connection=sync_conn))
    await engine.dispose()


if context.is_offline_mode():
    _migrate(url=_target_url(), literal_binds=True, dialect_opts={"paramstyle": "named"})
else:
    asyncio.run(_migrate_online(_target_url()))
