"""
Local SQLite table store.

Implements the partitioned table contract on a SQLite file so a dataset can
be kept offline or shared through a synced folder. Blocking sqlite calls run
in a worker thread.
"""

import asyncio
import json
import sqlite3
from typing import Any, List, Mapping, Optional, Sequence, Union

from ai_usage_sync.core.constants import DEFAULT_TABLE_NAME, MAX_BATCH_SIZE
from ai_usage_sync.core.errors import StoreError, ValidationError

from .db import DEFAULT_DB_PATH, get_connection, initialize_schema
from .models import UsageAggregateRow
from .table_store import (
    Entity,
    TableFilter,
    TableStore,
    UpsertMode,
    as_entity,
    group_by_partition,
    partition_upper_bound,
)

_KEY_FIELDS = ("PartitionKey", "RowKey")


class SqliteTableStore(TableStore):
    """Table store backed by a local SQLite database.

    Each upsert batch (one partition, at most 100 entities) is written in a
    single transaction.
    """

    def __init__(self, db_path: str = DEFAULT_DB_PATH, table_name: str = DEFAULT_TABLE_NAME):
        """Initialize the store.

        Args:
            db_path: Path to SQLite database file
            table_name: Logical table the entities belong to
        """
        if not table_name:
            raise ValidationError("Table name is required")
        self.db_path = db_path
        self.table_name = table_name
        self.description = f"sqlite:{table_name}"
        self._schema_ready = False

    def _connect(self) -> sqlite3.Connection:
        if not self._schema_ready:
            initialize_schema(self.db_path)
            self._schema_ready = True
        return get_connection(self.db_path)

    async def _run(self, func, *args):
        try:
            return await asyncio.to_thread(func, *args)
        except sqlite3.Error as exc:
            raise StoreError(f"SQLite store error: {exc}") from exc

    def _create_table_sync(self) -> bool:
        conn = self._connect()
        try:
            cursor = conn.execute(
                "INSERT OR IGNORE INTO table_registry (table_name) VALUES (?)",
                (self.table_name,),
            )
            conn.commit()
            return cursor.rowcount > 0
        finally:
            conn.close()

    async def create_table(self) -> bool:
        return await self._run(self._create_table_sync)

    def _upsert_sync(self, entities: List[Entity], mode: UpsertMode) -> int:
        written = 0
        conn = self._connect()
        try:
            for partition_key, group in group_by_partition(entities).items():
                for start in range(0, len(group), MAX_BATCH_SIZE):
                    chunk = group[start:start + MAX_BATCH_SIZE]
                    with conn:
                        for entity in chunk:
                            self._write_entity(conn, partition_key, entity, mode)
                    written += len(chunk)
        finally:
            conn.close()
        return written

    def _write_entity(self, conn: sqlite3.Connection, partition_key: str, entity: Entity, mode: UpsertMode) -> None:
        row_key = str(entity["RowKey"])
        properties = {k: v for k, v in entity.items() if k not in _KEY_FIELDS}
        if mode is UpsertMode.MERGE:
            existing = conn.execute(
                "SELECT properties FROM table_entity WHERE table_name = ? AND partition_key = ? AND row_key = ?",
                (self.table_name, partition_key, row_key),
            ).fetchone()
            if existing is not None:
                merged = json.loads(existing[0])
                merged.update(properties)
                properties = merged
        conn.execute(
            """
            INSERT INTO table_entity (table_name, partition_key, row_key, properties)
            VALUES (?, ?, ?, ?)
            ON CONFLICT (table_name, partition_key, row_key)
            DO UPDATE SET properties = excluded.properties
            """,
            (self.table_name, partition_key, row_key, json.dumps(properties, sort_keys=True)),
        )

    async def upsert(
        self,
        rows: Sequence[Union[UsageAggregateRow, Mapping[str, Any]]],
        mode: UpsertMode = UpsertMode.MERGE,
    ) -> int:
        entities = [as_entity(row) for row in rows]
        if not entities:
            return 0
        for entity in entities:
            if not entity.get("PartitionKey") or not entity.get("RowKey"):
                raise ValidationError("Entities require PartitionKey and RowKey")
        return await self._run(self._upsert_sync, entities, mode)

    def _query_sync(self, partition_prefix: str) -> List[Entity]:
        conn = self._connect()
        try:
            cursor = conn.execute(
                """
                SELECT partition_key, row_key, properties FROM table_entity
                WHERE table_name = ? AND partition_key >= ? AND partition_key < ?
                ORDER BY partition_key, row_key
                """,
                (self.table_name, partition_prefix, partition_upper_bound(partition_prefix)),
            )
            entities = []
            for row in cursor.fetchall():
                entity: Entity = {"PartitionKey": row[0], "RowKey": row[1]}
                entity.update(json.loads(row[2]))
                entities.append(entity)
            return entities
        finally:
            conn.close()

    async def query_by_partition(
        self,
        partition_prefix: str,
        table_filter: Optional[TableFilter] = None,
    ) -> List[Entity]:
        entities = await self._run(self._query_sync, partition_prefix)
        if table_filter is None:
            return entities
        return [entity for entity in entities if table_filter.matches(entity)]

    def _delete_sync(self, partition_key: str, row_key: str) -> bool:
        conn = self._connect()
        try:
            cursor = conn.execute(
                "DELETE FROM table_entity WHERE table_name = ? AND partition_key = ? AND row_key = ?",
                (self.table_name, partition_key, row_key),
            )
            conn.commit()
            return cursor.rowcount > 0
        finally:
            conn.close()

    async def delete_entity(self, partition_key: str, row_key: str) -> bool:
        return await self._run(self._delete_sync, partition_key, row_key)
