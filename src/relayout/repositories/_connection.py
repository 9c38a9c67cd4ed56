"""
Connection handling for the SQLAlchemy-backed stores.

Stores accept either an ``AsyncEngine`` (they open a connection or
transaction per operation) or an ``AsyncConnection`` owned by the caller.
"""

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine


@asynccontextmanager
async def execute_with_connection(
    conn: AsyncConnection | AsyncEngine,
    transactional: bool = True,
) -> AsyncIterator[AsyncConnection]:
    """
    Yield a connection for one store operation.

    Args:
        conn: Database connection or engine
        transactional: Wrap in a transaction (begin) when given an engine;
            use a bare connection (connect) otherwise. Has no effect for
            an AsyncConnection, whose transactions the caller manages.

    Yields:
        AsyncConnection ready for execute() calls

    Example:
        >>> async with execute_with_connection(self.conn) as conn:
        ...     await conn.execute(query, params)
    """
    if isinstance(conn, AsyncEngine):
        if transactional:
            async with conn.begin() as connection:
                yield connection
        else:
            async with conn.connect() as connection:
                yield connection
    else:
        yield conn
