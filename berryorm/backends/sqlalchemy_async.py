from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, List, Optional, Sequence

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine

from ..errors import BackendError, ConfigurationError
from .base import Backend, WriteResult


class SQLAlchemyBackend(Backend):
    """Backend over a SQLAlchemy asyncio ``AsyncConnection`` or ``AsyncEngine``.

    Given a connection, statements run inside whatever transaction the caller
    has open on it. Given an engine, each statement runs in its own
    ``engine.begin()`` block and commits on success.

    Statements are sent with ``exec_driver_sql``: the text is already
    compiled for the connection's dialect, so no further SQL construction or
    type processing happens here.
    """

    name = 'sqlalchemy'

    def __init__(self, bind: Any, *, concurrent: Optional[bool] = None):
        if not isinstance(bind, (AsyncConnection, AsyncEngine)):
            raise ConfigurationError(f"SQLAlchemyBackend needs an AsyncConnection or AsyncEngine, got {type(bind).__name__}")
        self.bind = bind
        if concurrent is None:
            # one connection cannot run statements concurrently; SQLite serializes anyway
            concurrent = isinstance(bind, AsyncEngine) and bind.dialect.name != 'sqlite'
        self.supports_concurrency = bool(concurrent)

    @property
    def dialect(self):
        return self.bind.dialect

    @asynccontextmanager
    async def _connection(self) -> AsyncIterator[AsyncConnection]:
        if isinstance(self.bind, AsyncConnection):
            yield self.bind
        else:
            async with self.bind.begin() as conn:
                yield conn

    async def _run(self, conn: AsyncConnection, text: str, values: Sequence[Any]):
        try:
            return await conn.exec_driver_sql(text, tuple(values))
        except SQLAlchemyError as exc:
            raise BackendError(exc, text) from exc

    async def execute(self, text: str, values: Sequence[Any]) -> List[Dict[str, Any]]:
        async with self._connection() as conn:
            result = await self._run(conn, text, values)
            return [dict(row) for row in result.mappings().all()]

    async def execute_scalar(self, text: str, values: Sequence[Any]) -> Any:
        async with self._connection() as conn:
            result = await self._run(conn, text, values)
            return result.scalar()

    async def execute_write(self, text: str, values: Sequence[Any], *, returning: bool = False) -> WriteResult:
        async with self._connection() as conn:
            result = await self._run(conn, text, values)
            if returning:
                rows = result.all()
                return WriteResult(rowcount=len(rows), last_id=rows[0][0] if rows else None)
            return WriteResult(rowcount=result.rowcount, last_id=getattr(result, 'lastrowid', None))

    def __repr__(self) -> str:
        kind = 'connection' if isinstance(self.bind, AsyncConnection) else 'engine'
        return f"<SQLAlchemyBackend {self.dialect.name} {kind}>"
