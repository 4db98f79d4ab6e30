import asyncio

from alembic import context

from booking_service.config import BOOKING_DB
from booking_service.db import build_engine
from shared.database import Base

target_metadata = Base.metadata

# an empty sqlalchemy.url in alembic.ini falls back to BOOKING_DB
DATABASE_URL = context.config.get_main_option("sqlalchemy.url") or BOOKING_DB


def run_migrations_offline():
    context.configure(
        url=DATABASE_URL,
        target_metadata=target_metadata,
        literal_binds=True,
    )
    with context.begin_transaction():
        context.run_migrations()


def _run(connection):
    context.configure(connection=connection, target_metadata=target_metadata)
    with context.begin_transaction():
        context.run_migrations()


async def run_migrations_online():
    engine = build_engine(DATABASE_URL)
    async with engine.connect() as connection:
        await connection.run_sync(_run)
    await engine.dispose()


if context.is_offline_mode():
    run_migrations_offline()
else:
    asyncio.run(run_migrations_online())
