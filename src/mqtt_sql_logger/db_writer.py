"""Database writer for PostgreSQL operations."""

import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, Optional

import asyncpg

from .config.settings import SqlConfig
from .exceptions import SchemaError, StorageError
from .models import StoredRow


logger = logging.getLogger(__name__)

ConnectFactory = Callable[..., Awaitable[Any]]


class DatabaseWriter:
    """
    Writes message rows to PostgreSQL.

    Every call opens its own connection and closes it on every exit path, so
    a stuck connection cannot block later inserts. Nothing is retried here.
    """

    def __init__(self, config: SqlConfig, connect: Optional[ConnectFactory] = None):
        self.config = config
        self._connect = connect or asyncpg.connect

        self.qualified_table = f"{config.schema_name}.{config.table_name}"
        self.index_names = (
            f"ix_{config.table_name}_received_at",
            f"ix_{config.table_name}_topic_received_at",
        )

        self._insert_sql = f"""
            INSERT INTO {self.qualified_table}
                (received_at, topic, qos, retained, client_id,
                 payload_text, payload_bytes, user_properties_json)
            VALUES ($1, $2, $3, $4, $5, $6, $7, $8)
        """

        self.stats: Dict[str, Any] = {
            "rows_written": 0,
            "write_errors": 0,
            "last_write_time": None,
        }

    @asynccontextmanager
    async def _session(self) -> AsyncIterator[Any]:
        """Open a connection that is closed however the block exits."""
        conn = await self._connect(
            dsn=self.config.connection_string,
            timeout=self.config.connect_timeout_seconds,
            command_timeout=self.config.command_timeout_seconds,
        )
        try:
            yield conn
        finally:
            await conn.close()

    async def provision_schema(self) -> bool:
        """
        Ensure the table and its two indexes exist.

        Existence is checked by schema and name before anything is created,
        so running this against a provisioned database changes nothing.

        Returns:
            True if the table or an index was created

        Raises:
            SchemaError: If the checks or the DDL could not run
        """
        created = False
        try:
            async with self._session() as conn:
                async with conn.transaction():
                    table_exists = await conn.fetchval("""
                        SELECT EXISTS (
                            SELECT 1 FROM information_schema.tables
                            WHERE table_schema = $1 AND table_name = $2
                        )
                    """, self.config.schema_name, self.config.table_name)

                    if not table_exists:
                        await conn.execute(self._create_table_sql())
                        logger.info(f"Created table {self.qualified_table}")
                        created = True

                    for index_name, ddl in zip(self.index_names, self._create_index_sql()):
                        index_exists = await conn.fetchval("""
                            SELECT EXISTS (
                                SELECT 1 FROM pg_indexes
                                WHERE schemaname = $1 AND indexname = $2
                            )
                        """, self.config.schema_name, index_name)

                        if not index_exists:
                            await conn.execute(ddl)
                            logger.info(f"Created index {index_name}")
                            created = True

        except Exception as e:
            raise SchemaError(f"Failed to provision {self.qualified_table}: {e}") from e

        logger.info(f"Ensured table {self.qualified_table} exists")
        return created

    async def insert_row(self, row: StoredRow) -> None:
        """
        Insert one message row.

        Raises:
            StorageError: On any connection, command or constraint failure
        """
        try:
            async with self._session() as conn:
                await conn.execute(
                    self._insert_sql,
                    row.received_at,
                    row.topic,
                    row.qos,
                    row.retained,
                    row.client_id,
                    row.payload_text,
                    row.payload_bytes,
                    row.user_properties_json,
                )
        except Exception as e:
            self.stats["write_errors"] += 1
            raise StorageError(f"Insert into {self.qualified_table} failed: {e}", cause=e) from e

        self.stats["rows_written"] += 1
        self.stats["last_write_time"] = row.received_at

    def _create_table_sql(self) -> str:
        return f"""
            CREATE TABLE {self.qualified_table} (
                id BIGINT GENERATED ALWAYS AS IDENTITY PRIMARY KEY,
                received_at TIMESTAMPTZ(3) NOT NULL DEFAULT now(),
                topic VARCHAR(256) NOT NULL,
                qos SMALLINT NOT NULL CHECK (qos BETWEEN 0 AND 2),
                retained BOOLEAN NOT NULL,
                client_id VARCHAR(128) NULL,
                payload_text TEXT NULL,
                payload_bytes BYTEA NULL,
                user_properties_json TEXT NOT NULL DEFAULT '{{}}'
            )
        """

    def _create_index_sql(self):
        received_at_ix, topic_ix = self.index_names
        return (
            f"CREATE INDEX {received_at_ix} ON {self.qualified_table} "
            f"(received_at DESC) INCLUDE (topic)",
            f"CREATE INDEX {topic_ix} ON {self.qualified_table} "
            f"(topic, received_at DESC)",
        )

    async def health_check(self) -> Dict[str, Any]:
        """Report writer statistics; more than 5% failed writes is degraded."""
        status = "healthy"
        total = self.stats["rows_written"] + self.stats["write_errors"]
        if total and self.stats["write_errors"] / total > 0.05:
            status = "degraded"
        return {
            "status": status,
            "table": self.qualified_table,
            "stats": self.stats.copy(),
        }
