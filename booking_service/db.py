from shared.database import Base, get_engine, get_session

from . import models  # noqa: F401  (registers the tables on Base.metadata)
from .config import BOOKING_DB, SQL_ECHO


def build_engine(database_url: str | None = None):
    url = database_url or BOOKING_DB
    if not url:
        raise RuntimeError("BOOKING_DB environment variable is not set")
    return get_engine(url, echo=SQL_ECHO)


def build_session_factory(engine):
    return get_session(engine)


async def create_tables(engine):
    """Dev/test convenience; deployed databases are migrated with Alembic."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def drop_tables(engine):
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
