"""
PostgreSQL Object Store - asyncpg implementation of the store client.

Every object lives in a single ``objects`` table keyed by
(kind, namespace, name) and stored as JSONB. Updates are compare-and-swap
on ``resource_version``.
"""

import json
import logging
from typing import Any, Dict, Optional

import asyncpg

from models import StoredObject
from store import ConflictError, NotFoundError, ObjectStore

logger = logging.getLogger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS objects (
    kind VARCHAR(63) NOT NULL,
    namespace VARCHAR(63) NOT NULL,
    name VARCHAR(253) NOT NULL,
    resource_version BIGINT NOT NULL DEFAULT 1,
    labels JSONB NOT NULL DEFAULT '{}'::jsonb,
    body JSONB NOT NULL,
    created_at TIMESTAMP NOT NULL DEFAULT NOW(),
    updated_at TIMESTAMP NOT NULL DEFAULT NOW(),
    PRIMARY KEY (kind, namespace, name)
);
CREATE INDEX IF NOT EXISTS idx_objects_labels ON objects USING GIN (labels);
"""


class PostgresObjectStore(ObjectStore):
    """
    Object store backed by PostgreSQL.

    Watchers only see writes made through this instance; changes written by
    other clients are picked up by the controller's periodic resync.
    """

    def __init__(
        self,
        host: str,
        port: int,
        database: str,
        user: str,
        password: str,
        min_pool_size: int = 5,
        max_pool_size: int = 20,
    ):
        super().__init__()
        self.host = host
        self.port = port
        self.database = database
        self.user = user
        self.password = password
        self.min_pool_size = min_pool_size
        self.max_pool_size = max_pool_size
        self.pool: Optional[asyncpg.Pool] = None

    async def connect(self):
        """Establish connection pool to PostgreSQL."""
        self.pool = await asyncpg.create_pool(
            host=self.host,
            port=self.port,
            database=self.database,
            user=self.user,
            password=self.password,
            min_size=self.min_pool_size,
            max_size=self.max_pool_size,
            command_timeout=60,  # Query timeout
        )
        logger.info(
            f"Connected to PostgreSQL (pool: {self.min_pool_size}-{self.max_pool_size})"
        )

    async def close(self):
        """Close the connection pool."""
        if self.pool:
            await self.pool.close()
            logger.info("Closed PostgreSQL connection")

    def _ensure_connected(self) -> None:
        """Ensure the database connection pool is established."""
        if self.pool is None:
            raise RuntimeError(
                "Database not connected. Call connect() before performing operations."
            )

    async def initialize_schema(self) -> None:
        """Create the objects table if it does not exist."""
        self._ensure_connected()
        async with self.pool.acquire() as conn:
            await conn.execute(SCHEMA)
        logger.info("Database schema initialized")

    # ==================== Row conversion ====================

    @staticmethod
    def _dump(obj: StoredObject) -> Dict[str, Any]:
        """Serialize an object body; identity and version live in columns."""
        body = obj.model_dump(mode="json")
        body["metadata"].pop("resource_version", None)
        return body

    @staticmethod
    def _parse_row(model, row) -> StoredObject:
        body = row["body"]
        if isinstance(body, str):
            body = json.loads(body)
        body["metadata"]["resource_version"] = str(row["resource_version"])
        return model.model_validate(body)

    # ==================== ObjectStore ====================

    async def list(self, model, namespace=None, labels=None):
        self._ensure_connected()
        query = "SELECT * FROM objects WHERE kind = $1"
        params = [model.kind]
        param_count = 1

        if namespace is not None:
            param_count += 1
            query += f" AND namespace = ${param_count}"
            params.append(namespace)

        if labels:
            param_count += 1
            query += f" AND labels @> ${param_count}::jsonb"
            params.append(json.dumps(labels))

        query += " ORDER BY namespace, name"

        async with self.pool.acquire() as conn:
            rows = await conn.fetch(query, *params)
            return [self._parse_row(model, row) for row in rows]

    async def get(self, model, namespace, name):
        self._ensure_connected()
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                "SELECT * FROM objects WHERE kind = $1 AND namespace = $2 AND name = $3",
                model.kind,
                namespace,
                name,
            )
            if not row:
                raise NotFoundError(model.kind, namespace, name)
            return self._parse_row(model, row)

    async def create(self, obj):
        self._ensure_connected()
        async with self.pool.acquire() as conn:
            try:
                row = await conn.fetchrow(
                    """
                    INSERT INTO objects (kind, namespace, name, labels, body)
                    VALUES ($1, $2, $3, $4, $5)
                    RETURNING *
                    """,
                    obj.kind,
                    obj.namespace,
                    obj.name,
                    json.dumps(obj.metadata.labels),
                    json.dumps(self._dump(obj)),
                )
            except asyncpg.UniqueViolationError:
                raise ConflictError(obj.kind, obj.namespace, obj.name, "already exists")

            logger.debug(f"Created {obj.kind} {obj.key}")
            created = self._parse_row(type(obj), row)

        await self._notify(created)
        return created

    async def update(self, obj):
        self._ensure_connected()
        body = self._dump(obj)
        expected = obj.metadata.resource_version

        async with self.pool.acquire() as conn:
            async with conn.transaction():
                current = await conn.fetchrow(
                    """
                    SELECT * FROM objects
                    WHERE kind = $1 AND namespace = $2 AND name = $3
                    FOR UPDATE
                    """,
                    obj.kind,
                    obj.namespace,
                    obj.name,
                )
                if not current:
                    raise NotFoundError(obj.kind, obj.namespace, obj.name)
                if expected and int(expected) != current["resource_version"]:
                    raise ConflictError(
                        obj.kind, obj.namespace, obj.name, "resource version is stale"
                    )

                # Status is only written through update_status
                current_body = current["body"]
                if isinstance(current_body, str):
                    current_body = json.loads(current_body)
                if "status" in current_body:
                    body["status"] = current_body["status"]

                row = await conn.fetchrow(
                    """
                    UPDATE objects
                    SET labels = $4, body = $5,
                        resource_version = resource_version + 1,
                        updated_at = NOW()
                    WHERE kind = $1 AND namespace = $2 AND name = $3
                    RETURNING *
                    """,
                    obj.kind,
                    obj.namespace,
                    obj.name,
                    json.dumps(obj.metadata.labels),
                    json.dumps(body),
                )

        updated = self._parse_row(type(obj), row)
        await self._notify(updated)
        return updated

    async def delete(self, obj):
        self._ensure_connected()
        async with self.pool.acquire() as conn:
            result = await conn.fetchval(
                """
                DELETE FROM objects
                WHERE kind = $1 AND namespace = $2 AND name = $3
                RETURNING name
                """,
                obj.kind,
                obj.namespace,
                obj.name,
            )
            if result is None:
                raise NotFoundError(obj.kind, obj.namespace, obj.name)
            logger.debug(f"Deleted {obj.kind} {obj.key}")

        await self._notify(obj)

    async def update_status(self, obj):
        self._ensure_connected()
        status = obj.status.model_dump(mode="json")
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                """
                UPDATE objects
                SET body = jsonb_set(body, '{status}', $4::jsonb),
                    resource_version = resource_version + 1,
                    updated_at = NOW()
                WHERE kind = $1 AND namespace = $2 AND name = $3
                RETURNING *
                """,
                obj.kind,
                obj.namespace,
                obj.name,
                json.dumps(status),
            )
            if not row:
                raise NotFoundError(obj.kind, obj.namespace, obj.name)
            return self._parse_row(type(obj), row)
