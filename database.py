"""
Database plumbing: declarative base shared by the table models and the async engine factory.
"""
from __future__ import annotations

from sqlalchemy import event
from sqlalchemy.engine import URL, make_url
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine
from sqlalchemy.orm import DeclarativeBase


class Base(DeclarativeBase):
    pass


def _enable_sqlite_foreign_keys(dbapi_connection, connection_record) -> None:
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def is_single_connection(url: URL) -> bool:
    """In-memory SQLite lives on one static connection shared by every caller."""
    return url.get_backend_name() == "sqlite" and (not url.database or url.database == ":memory:")


def create_engine_for(database_url: str, pool_size: int = 5, pool_timeout: float = 30.0, echo: bool = False) -> AsyncEngine:
    """Build an async engine whose pool never grows beyond pool_size connections."""
    url = make_url(database_url)
    kwargs = {"echo": echo, "pool_pre_ping": True}

    if not is_single_connection(url):
        kwargs.update(pool_size=pool_size, max_overflow=0, pool_timeout=pool_timeout)

    engine = create_async_engine(url, **kwargs)

    if url.get_backend_name() == "sqlite":
        event.listen(engine.sync_engine, "connect", _enable_sqlite_foreign_keys)

    return engine
