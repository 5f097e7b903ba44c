"""
Relational Store Adapter.

A narrow interface over an async SQLAlchemy engine:
- acquire()/release() hand out connections from a bounded pool (a semaphore sized to
  pool_size sits in front of the engine pool so the bound holds for every dialect)
- execute()/query() run parameterized statements; values are always bound, never
  formatted into the SQL text
- begin()/commit()/rollback() control the transaction of one connection
- transaction() combines the above and releases the connection on every exit path

The adapter knows nothing about the content schema. Every failure leaves here as
either TransientStoreError or PermanentStoreError.
"""
from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Mapping, Optional, TypeVar, Union

from sqlalchemy import text
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine
from sqlalchemy.sql import Executable

from database import create_engine_for, is_single_connection
from services.errors import StoreError, StoreUnavailableError, translate_store_error

logger = logging.getLogger("store")

T = TypeVar("T")
Statement = Union[str, Executable]


def _as_executable(statement: Statement) -> Executable:
    if isinstance(statement, str):
        return text(statement)
    return statement


class RelationalStore:
    def __init__(
        self,
        database_url: str,
        pool_size: int = 5,
        statement_timeout: float = 30.0,
        echo: bool = False,
        engine: Optional[AsyncEngine] = None,
    ):
        self.database_url = database_url
        # In-memory SQLite has exactly one connection
        self.pool_size = 1 if is_single_connection(make_url(database_url)) else pool_size
        self.statement_timeout = statement_timeout
        self._engine = engine or create_engine_for(
            database_url, pool_size=pool_size, pool_timeout=statement_timeout, echo=echo
        )
        self._slots = asyncio.Semaphore(self.pool_size)
        self._in_use = 0

    @property
    def engine(self) -> AsyncEngine:
        return self._engine

    @property
    def in_use(self) -> int:
        """Connections currently handed out."""
        return self._in_use

    async def _guard(self, operation: Callable[[], Awaitable[T]]) -> T:
        """Run one store operation under the deadline and translate its failures."""

        async def runner() -> T:
            return await operation()

        try:
            return await asyncio.wait_for(runner(), timeout=self.statement_timeout)
        except StoreError:
            raise
        except Exception as exc:
            raise translate_store_error(exc) from exc

    # ------------------------------------------------------------------
    # Connections
    # ------------------------------------------------------------------

    async def acquire(self) -> AsyncConnection:
        await self._slots.acquire()
        try:
            connection = await self._guard(lambda: self._engine.connect().start())
        except BaseException:
            self._slots.release()
            raise
        self._in_use += 1
        return connection

    async def release(self, connection: AsyncConnection) -> None:
        try:
            await connection.close()
        except Exception as exc:
            logger.warning(f"closing connection failed: {exc}", exc_info=True)
        finally:
            self._in_use -= 1
            self._slots.release()

    # ------------------------------------------------------------------
    # Statements
    # ------------------------------------------------------------------

    async def execute(
        self, connection: AsyncConnection, statement: Statement, params: Optional[Mapping[str, Any]] = None
    ) -> int:
        """Run a DML statement and return the affected row count."""
        stmt = _as_executable(statement)
        result = await self._guard(lambda: connection.execute(stmt, dict(params) if params else None))
        return result.rowcount

    async def query(
        self, connection: AsyncConnection, statement: Statement, params: Optional[Mapping[str, Any]] = None
    ) -> List[Dict[str, Any]]:
        """Run a read statement and return its rows as plain dicts."""
        stmt = _as_executable(statement)
        result = await self._guard(lambda: connection.execute(stmt, dict(params) if params else None))
        return [dict(row) for row in result.mappings().all()]

    async def run_sync(self, connection: AsyncConnection, fn: Callable[..., T], *args: Any) -> T:
        """Run a synchronous callable (DDL, inspection) against the connection."""
        return await self._guard(lambda: connection.run_sync(fn, *args))

    # ------------------------------------------------------------------
    # Transactions
    # ------------------------------------------------------------------

    async def begin(self, connection: AsyncConnection) -> None:
        if not connection.in_transaction():
            await self._guard(lambda: connection.begin().start())

    async def commit(self, connection: AsyncConnection) -> None:
        await self._guard(connection.commit)

    async def rollback(self, connection: AsyncConnection) -> None:
        await self._guard(connection.rollback)

    async def _rollback_quietly(self, connection: AsyncConnection) -> None:
        try:
            await self.rollback(connection)
        except StoreError as exc:
            # The connection is closed right after, which discards the transaction anyway
            logger.warning(f"rollback failed: {exc}")

    @asynccontextmanager
    async def transaction(self, commit: bool = True) -> AsyncIterator[AsyncConnection]:
        """Acquire a connection, open a transaction, and finish it on exit.

        commit=False always rolls back (used for dry runs). Any exception, including
        task cancellation, rolls back before the connection is released.
        """
        connection = await self.acquire()
        try:
            await self.begin(connection)
            try:
                yield connection
                if commit:
                    await self.commit(connection)
                else:
                    await self.rollback(connection)
            except BaseException:
                await self._rollback_quietly(connection)
                raise
        finally:
            await self.release(connection)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def ping(self) -> None:
        """Open one connection and run a trivial query; raise StoreUnavailableError on failure."""
        try:
            connection = await self.acquire()
            try:
                await self.query(connection, "SELECT 1")
            finally:
                await self.release(connection)
        except StoreError as exc:
            raise StoreUnavailableError(f"store unreachable: {exc}") from exc

    async def dispose(self) -> None:
        await self._engine.dispose()
