"""
PostgreSQL document store adapter — JSONB collections on one table.

Adapter layer — implements the DocumentStore port using psycopg (v3)
async connections with parameterized queries.

Table layout:

    CREATE TABLE documents (
        collection  TEXT        NOT NULL,
        id          TEXT        NOT NULL,
        data        JSONB       NOT NULL,
        created_at  TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at  TIMESTAMPTZ NOT NULL DEFAULT now(),
        PRIMARY KEY (collection, id)
    );

Equality filters are pushed down as JSONB containment (``data @> filters``),
so a GIN index on ``data`` serves every query shape.

No ORM — raw parameterized SQL for maximum control and transparency.
"""

from __future__ import annotations

import uuid
from collections.abc import Mapping
from typing import Any

import psycopg
import structlog
from psycopg import sql
from psycopg.types.json import Jsonb
from railway import ErrorCode, FailureDescription
from railway.result import Result

log = structlog.get_logger()

DDL = """
CREATE TABLE IF NOT EXISTS {table} (
    collection  TEXT        NOT NULL,
    id          TEXT        NOT NULL,
    data        JSONB       NOT NULL,
    created_at  TIMESTAMPTZ NOT NULL DEFAULT now(),
    updated_at  TIMESTAMPTZ NOT NULL DEFAULT now(),
    PRIMARY KEY (collection, id)
)
"""


class DocumentNotFoundError(LookupError):
    pass


def _missing_document(error: FailureDescription) -> FailureDescription:
    if isinstance(error.exception, DocumentNotFoundError):
        return FailureDescription.create(ErrorCode.NOT_FOUND, str(error.exception), error.exception)
    return error


class PsycopgDocumentStore:
    """
    Persist schemaless documents to PostgreSQL.

    Implements the DocumentStore port.
    All exceptions are caught at this adapter boundary via
    Result.from_computation_async().
    """

    def __init__(self, dsn: str, table: str = "documents") -> None:
        self._dsn = dsn
        self._table_name = table
        self._table = sql.Identifier(table)

    async def ensure_schema(self) -> Result[str]:
        """Create the documents table when it does not exist yet."""
        return await Result.from_computation_async(
            self._create_table,
            ErrorCode.DATABASE_ERROR,
            "Failed to create the documents table",
        )

    async def get_documents(
        self, collection: str, filters: Mapping[str, Any]
    ) -> Result[list[dict[str, Any]]]:
        return await Result.from_computation_async(
            lambda: self._select(collection, filters),
            ErrorCode.DATABASE_ERROR,
            f"Failed to query {collection}",
        )

    async def add_document(
        self,
        collection: str,
        record: Mapping[str, Any],
        document_id: str | None = None,
    ) -> Result[str]:
        return await Result.from_computation_async(
            lambda: self._insert(collection, record, document_id or uuid.uuid4().hex),
            ErrorCode.DATABASE_ERROR,
            f"Failed to add document to {collection}",
        )

    async def update_document(
        self, collection: str, document_id: str, patch: Mapping[str, Any]
    ) -> Result[str]:
        result = await Result.from_computation_async(
            lambda: self._update(collection, document_id, patch),
            ErrorCode.DATABASE_ERROR,
            f"Failed to update document {document_id} in {collection}",
        )
        return result.map_failure(_missing_document)

    async def _create_table(self) -> str:
        async with await psycopg.AsyncConnection.connect(self._dsn) as conn:
            await conn.execute(sql.SQL(DDL).format(table=self._table))
        log.info("document_store.schema_ready", table=self._table_name)
        return self._table_name

    async def _select(
        self, collection: str, filters: Mapping[str, Any]
    ) -> list[dict[str, Any]]:
        query = sql.SQL(
            "SELECT id, data FROM {table} WHERE collection = %s AND data @> %s "
            "ORDER BY created_at"
        ).format(table=self._table)
        async with await psycopg.AsyncConnection.connect(self._dsn) as conn:
            cursor = await conn.execute(query, (collection, Jsonb(dict(filters))))
            rows = await cursor.fetchall()
        documents = [{**data, "id": doc_id} for doc_id, data in rows]
        log.debug("document_store.queried", collection=collection, count=len(documents))
        return documents

    async def _insert(self, collection: str, record: Mapping[str, Any], document_id: str) -> str:
        query = sql.SQL(
            "INSERT INTO {table} (collection, id, data) VALUES (%s, %s, %s)"
        ).format(table=self._table)
        async with await psycopg.AsyncConnection.connect(self._dsn) as conn:
            async with conn.transaction():
                await conn.execute(query, (collection, document_id, Jsonb(dict(record))))
        log.info("document_store.added", collection=collection, document_id=document_id)
        return document_id

    async def _update(self, collection: str, document_id: str, patch: Mapping[str, Any]) -> str:
        query = sql.SQL(
            "UPDATE {table} SET data = data || %s, updated_at = now() "
            "WHERE collection = %s AND id = %s"
        ).format(table=self._table)
        async with await psycopg.AsyncConnection.connect(self._dsn) as conn:
            async with conn.transaction():
                cursor = await conn.execute(query, (Jsonb(dict(patch)), collection, document_id))
                if cursor.rowcount == 0:
                    raise DocumentNotFoundError(
                        f"Document {document_id} not found in {collection}"
                    )
        log.info("document_store.updated", collection=collection, document_id=document_id)
        return document_id
