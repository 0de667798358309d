"""
Remote store that queued mutations are replayed against.

PostgresRemoteStore applies generic CREATE/UPDATE/DELETE statements to the
entity tables and maps database failures onto the sync error taxonomy:
unique violations and missing rows are conflicts, connection-level faults
are transient, data and constraint errors are validation failures.
"""

from typing import Any, Protocol

from psycopg import sql

from crm_sync.db.helpers import DatabaseError, fetch_one
from crm_sync.db.pool import DatabasePoolManager
from crm_sync.features.offline_sync.errors import (
    ConflictSyncError,
    PayloadValidationError,
    TransientSyncError,
)
from crm_sync.features.offline_sync.payloads import EntityType, is_temp_id
from crm_sync.features.offline_sync.queue import QueueOperation
from crm_sync.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

ENTITY_TABLES: dict[EntityType, str] = {
    EntityType.REQUIREMENT: "requirements",
    EntityType.CONSULTANT: "consultants",
    EntityType.INTERVIEW: "interviews",
    EntityType.DOCUMENT: "documents",
    EntityType.EMAIL: "emails",
}


class RemoteStore(Protocol):
    async def fetch(self, entity_type: EntityType, entity_id: str) -> dict[str, Any] | None: ...

    async def apply(
        self,
        operation: QueueOperation,
        entity_type: EntityType,
        entity_id: str,
        row: dict[str, Any],
        *,
        force: bool = False,
    ) -> dict[str, Any] | None: ...


class PostgresRemoteStore:
    def __init__(self, pool: DatabasePoolManager, tables: dict[EntityType, str] | None = None):
        self.pool = pool
        self.tables = dict(tables or ENTITY_TABLES)

    def _table(self, entity_type: EntityType) -> sql.Identifier:
        try:
            return sql.Identifier(self.tables[EntityType(entity_type)])
        except (KeyError, ValueError) as e:
            raise PayloadValidationError(f"Unknown entity type: {entity_type}") from e

    @staticmethod
    def _classify(error: DatabaseError, operation: str) -> Exception:
        if error.is_unique_violation:
            return ConflictSyncError(str(error), operation=operation)
        if error.recoverable:
            return TransientSyncError(str(error), operation=operation)
        return PayloadValidationError(str(error), operation=operation)

    async def _one(self, query: sql.Composable, params: tuple, operation: str) -> dict[str, Any] | None:
        try:
            return await fetch_one(self.pool, query, params)
        except DatabaseError as e:
            raise self._classify(e, operation) from e
        except RuntimeError as e:
            # Pool not initialized or already closed
            raise TransientSyncError(str(e), operation=operation) from e

    async def fetch(self, entity_type: EntityType, entity_id: str) -> dict[str, Any] | None:
        if is_temp_id(entity_id):
            return None
        query = sql.SQL("SELECT * FROM {} WHERE id = %s").format(self._table(entity_type))
        return await self._one(query, (entity_id,), "fetch")

    async def apply(
        self,
        operation: QueueOperation,
        entity_type: EntityType,
        entity_id: str,
        row: dict[str, Any],
        *,
        force: bool = False,
    ) -> dict[str, Any] | None:
        """
        Apply one mutation and return the resulting row (None for DELETE).

        With force=True, CREATE and UPDATE become an upsert on id so the
        local version replaces whatever the remote holds.
        """
        operation = QueueOperation(operation)
        table = self._table(entity_type)
        values = {k: v for k, v in row.items() if k != "id"}

        if operation == QueueOperation.DELETE:
            query = sql.SQL("DELETE FROM {} WHERE id = %s RETURNING id").format(table)
            await self._one(query, (entity_id,), "delete")
            return None

        if force:
            return await self._upsert(table, entity_id, values)

        if operation == QueueOperation.CREATE:
            return await self._insert(table, entity_id, values)

        if not values:
            raise PayloadValidationError("UPDATE with no fields", operation="update")
        assignments = sql.SQL(", ").join(
            sql.SQL("{} = %s").format(sql.Identifier(column)) for column in values
        )
        query = sql.SQL("UPDATE {} SET {} WHERE id = %s RETURNING *").format(table, assignments)
        updated = await self._one(query, (*values.values(), entity_id), "update")
        if updated is None:
            raise ConflictSyncError(f"{entity_type} {entity_id} no longer exists", operation="update")
        return updated

    async def _insert(self, table: sql.Identifier, entity_id: str, values: dict[str, Any]) -> dict[str, Any]:
        # Temporary client ids are never sent; the database assigns the real id
        if not is_temp_id(entity_id):
            values = {"id": entity_id, **values}
        if not values:
            query = sql.SQL("INSERT INTO {} DEFAULT VALUES RETURNING *").format(table)
            return await self._one(query, (), "create")

        columns = sql.SQL(", ").join(sql.Identifier(column) for column in values)
        placeholders = sql.SQL(", ").join(sql.Placeholder() for _ in values)
        query = sql.SQL("INSERT INTO {} ({}) VALUES ({}) RETURNING *").format(table, columns, placeholders)
        return await self._one(query, tuple(values.values()), "create")

    async def _upsert(self, table: sql.Identifier, entity_id: str, values: dict[str, Any]) -> dict[str, Any]:
        if is_temp_id(entity_id):
            return await self._insert(table, entity_id, values)

        row = {"id": entity_id, **values}
        columns = sql.SQL(", ").join(sql.Identifier(column) for column in row)
        placeholders = sql.SQL(", ").join(sql.Placeholder() for _ in row)
        if values:
            conflict_action = sql.SQL("DO UPDATE SET {}").format(
                sql.SQL(", ").join(
                    sql.SQL("{0} = EXCLUDED.{0}").format(sql.Identifier(column)) for column in values
                )
            )
        else:
            conflict_action = sql.SQL("DO NOTHING")
        query = sql.SQL("INSERT INTO {} ({}) VALUES ({}) ON CONFLICT (id) {} RETURNING *").format(
            table, columns, placeholders, conflict_action
        )
        result = await self._one(query, tuple(row.values()), "force_apply")
        if result is None:
            # DO NOTHING on an existing row returns nothing
            result = await self._fetch_row(table, entity_id)
        logger.info("Local version forced onto remote", entity_id=entity_id)
        return result

    async def _fetch_row(self, table: sql.Identifier, entity_id: str) -> dict[str, Any] | None:
        query = sql.SQL("SELECT * FROM {} WHERE id = %s").format(table)
        return await self._one(query, (entity_id,), "fetch")
