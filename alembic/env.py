"""
Migration environment for the enrichment schema.

The target database defaults to settings.DATABASE_URL and can be overridden
per invocation: ``alembic -x database_url=sqlite+aiosqlite:///local.db upgrade head``
"""

import asyncio
from logging.config import fileConfig
from alembic import context

from core.config import settings
from core.database import create_engine
from models.base import Base
# Register every table on the metadata
from models.record import Record  # noqa: F401
from models.enrichment_run import EnrichmentRun  # noqa: F401
from models.quota import QuotaCounter, QuotaHistory  # noqa: F401

config = context.config

if config.config_file_name is not None:
    fileConfig(config.config_file_name)

target_metadata = Base.metadata
database_url = context.get_x_argument(as_dictionary=True).get("database_url", settings.DATABASE_URL)


def configure_options(url: str) -> dict:
    # SQLite cannot ALTER most columns in place
    return {
        "target_metadata": target_metadata,
        "compare_type": True,
        "render_as_batch": url.startswith("sqlite"),
    }


def run_migrations_offline():
    context.configure(url=database_url, literal_binds=True, **configure_options(database_url))

    with context.begin_transaction():
        context.run_migrations()


def apply_migrations(connection):
    context.configure(connection=connection, **configure_options(database_url))

    with context.begin_transaction():
        context.run_migrations()


async def run_migrations_online():
    engine = create_engine(database_url)
    try:
        async with engine.connect() as connection:
            await connection.run_sync(apply_migrations)
    finally:
        await engine.dispose()


if context.is_offline_mode():
    run_migrations_offline()
else:
    asyncio.run(run_migrations_online())
