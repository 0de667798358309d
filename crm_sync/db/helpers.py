"""
Database helper functions for common patterns.
Reduces boilerplate in repositories; every helper takes the pool explicitly.
"""

from typing import Any

import psycopg
from psycopg import sql

from crm_sync.db.pool import DatabasePoolManager
from crm_sync.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

# SQLSTATE classes that will not succeed on retry
_NON_RECOVERABLE_CLASSES = ("22", "23", "42")

Query = str | sql.Composable


class DatabaseError(Exception):
    """Custom exception for database operations."""

    def __init__(
        self,
        message: str,
        operation: str = "unknown",
        recoverable: bool = True,
        sqlstate: str | None = None,
    ):
        super().__init__(message)
        self.operation = operation
        self.recoverable = recoverable
        self.sqlstate = sqlstate

    @property
    def is_unique_violation(self) -> bool:
        return self.sqlstate == "23505"


def _preview(query: Query) -> str:
    return (query if isinstance(query, str) else repr(query))[:100]


def _wrap_error(e: psycopg.Error, operation: str) -> DatabaseError:
    sqlstate = getattr(e, "sqlstate", None)
    recoverable = not (sqlstate and sqlstate.startswith(_NON_RECOVERABLE_CLASSES))
    return DatabaseError(
        f"Query failed: {e}", operation=operation, recoverable=recoverable, sqlstate=sqlstate
    )


async def fetch_one(
    pool: DatabasePoolManager,
    query: Query,
    params: tuple = (),
    *,
    connection: psycopg.AsyncConnection | None = None,
) -> dict[str, Any] | None:
    """
    Execute query and return single row as dict.

    Args:
        pool: Pool to borrow a connection from when none is given
        query: SQL query with %s placeholders
        params: Query parameters
        connection: Optional existing connection

    Returns:
        Dict with row data or None if no results
    """
    try:
        if connection:
            async with connection.cursor() as cur:
                await cur.execute(query, params)
                return await cur.fetchone()
        async with pool.connection() as conn:
            async with conn.cursor() as cur:
                await cur.execute(query, params)
                return await cur.fetchone()

    except psycopg.Error as e:
        logger.error("Database fetch_one error", query=_preview(query), error=str(e))
        raise _wrap_error(e, "fetch_one") from e


async def fetch_all(
    pool: DatabasePoolManager,
    query: Query,
    params: tuple = (),
    *,
    connection: psycopg.AsyncConnection | None = None,
) -> list[dict[str, Any]]:
    """Execute query and return all rows as list of dicts."""
    try:
        if connection:
            async with connection.cursor() as cur:
                await cur.execute(query, params)
                return await cur.fetchall()
        async with pool.connection() as conn:
            async with conn.cursor() as cur:
                await cur.execute(query, params)
                return await cur.fetchall()

    except psycopg.Error as e:
        logger.error("Database fetch_all error", query=_preview(query), error=str(e))
        raise _wrap_error(e, "fetch_all") from e


async def fetch_val(
    pool: DatabasePoolManager,
    query: Query,
    params: tuple = (),
    *,
    connection: psycopg.AsyncConnection | None = None,
) -> Any:
    """Execute query and return the first column of the first row."""
    row = await fetch_one(pool, query, params, connection=connection)
    return list(row.values())[0] if row else None


async def execute_query(
    pool: DatabasePoolManager,
    query: Query,
    params: tuple = (),
    *,
    connection: psycopg.AsyncConnection | None = None,
) -> int:
    """
    Execute query and return number of affected rows.
    """
    try:
        if connection:
            cursor = await connection.execute(query, params)
            return cursor.rowcount
        async with pool.connection() as conn:
            cursor = await conn.execute(query, params)
            return cursor.rowcount

    except psycopg.Error as e:
        logger.error("Database execute error", query=_preview(query), error=str(e))
        raise _wrap_error(e, "execute") from e


async def execute_transaction(pool: DatabasePoolManager, queries_and_params: list[tuple]) -> bool:
    """
    Execute multiple queries in a single transaction.

    Example:
        await execute_transaction(pool, [
            ("UPDATE email_sync_logs SET status = 'completed' WHERE id = %s", (run_id,)),
            ("UPDATE gmail_sync_tokens SET last_sync_message_id = %s WHERE user_id = %s", (cursor, user_id)),
        ])
    """
    try:
        async with pool.transaction() as conn:
            for query, params in queries_and_params:
                await conn.execute(query, params)

        logger.debug("Transaction completed successfully", query_count=len(queries_and_params))
        return True

    except psycopg.Error as e:
        logger.error("Transaction failed", query_count=len(queries_and_params), error=str(e))
        raise _wrap_error(e, "transaction") from e
