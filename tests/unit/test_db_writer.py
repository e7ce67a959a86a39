"""Tests for the PostgreSQL writer."""

from contextlib import asynccontextmanager
from datetime import datetime, timezone
from unittest.mock import AsyncMock

import pytest

from mqtt_sql_logger.config.settings import SqlConfig
from mqtt_sql_logger.db_writer import DatabaseWriter
from mqtt_sql_logger.exceptions import SchemaError, StorageError
from mqtt_sql_logger.models import StoredRow

pytestmark = pytest.mark.unit


class FakeDatabase:
    """Tracks which tables and indexes exist across fake connections."""

    def __init__(self):
        self.tables = set()
        self.indexes = set()
        self.executed = []
        self.connections = []
        self.fail_connect = False
        self.fail_execute = None

    async def connect(self, **kwargs):
        if self.fail_connect:
            raise ConnectionRefusedError("connection refused")
        conn = FakeConnection(self, kwargs)
        self.connections.append(conn)
        return conn


class FakeConnection:
    def __init__(self, db: FakeDatabase, kwargs):
        self.db = db
        self.kwargs = kwargs
        self.closed = False
        self.close = AsyncMock(side_effect=self._close)

    async def _close(self):
        self.closed = True

    @asynccontextmanager
    async def transaction(self):
        yield

    async def fetchval(self, query, schema, name):
        if "information_schema.tables" in query:
            return (schema, name) in self.db.tables
        return (schema, name) in self.db.indexes

    async def execute(self, query, *args):
        if self.db.fail_execute:
            raise self.db.fail_execute
        self.db.executed.append((" ".join(query.split()), args))
        words = query.split()
        # PostgreSQL folds unquoted identifiers to lower case
        if words[:2] == ["CREATE", "TABLE"]:
            schema, table = words[2].lower().split(".")
            if (schema, table) in self.db.tables:
                raise RuntimeError(f"relation \"{table}\" already exists")
            self.db.tables.add((schema, table))
        elif words[:2] == ["CREATE", "INDEX"]:
            index, schema = words[2].lower(), words[4].lower().split(".")[0]
            if (schema, index) in self.db.indexes:
                raise RuntimeError(f"relation \"{index}\" already exists")
            self.db.indexes.add((schema, index))
        return "OK"


@pytest.fixture
def fake_db():
    return FakeDatabase()


@pytest.fixture
def writer(fake_db):
    config = SqlConfig(connection_string="postgresql://test@localhost/test")
    return DatabaseWriter(config, connect=fake_db.connect)


@pytest.fixture
def sample_row():
    return StoredRow(
        received_at=datetime(2024, 5, 1, 12, 0, 0, 123000, tzinfo=timezone.utc),
        topic="sensors/temp",
        qos=1,
        retained=False,
        client_id="test-logger",
        payload_text='{"v":22.5}',
        payload_bytes=b'{"v":22.5}',
        user_properties_json="{}",
    )


class TestProvisionSchema:
    """Schema provisioning."""

    @pytest.mark.asyncio
    async def test_creates_table_and_indexes(self, writer, fake_db):
        assert await writer.provision_schema() is True

        assert ("public", "mqtt_message_log") in fake_db.tables
        assert fake_db.indexes == {
            ("public", "ix_mqtt_message_log_received_at"),
            ("public", "ix_mqtt_message_log_topic_received_at"),
        }
        statements = [sql for sql, _ in fake_db.executed]
        assert any("(received_at DESC) INCLUDE (topic)" in s for s in statements)
        assert any("(topic, received_at DESC)" in s for s in statements)

    @pytest.mark.asyncio
    async def test_idempotent(self, writer, fake_db):
        await writer.provision_schema()
        executed_before = len(fake_db.executed)

        assert await writer.provision_schema() is False

        assert len(fake_db.executed) == executed_before
        assert len(fake_db.tables) == 1
        assert len(fake_db.indexes) == 2

    @pytest.mark.asyncio
    async def test_missing_index_recreated(self, writer, fake_db):
        await writer.provision_schema()
        fake_db.indexes.discard(("public", "ix_mqtt_message_log_topic_received_at"))

        assert await writer.provision_schema() is True
        assert len(fake_db.indexes) == 2

    @pytest.mark.asyncio
    async def test_failure_raises_schema_error(self, writer, fake_db):
        fake_db.fail_execute = PermissionError("permission denied for schema public")

        with pytest.raises(SchemaError, match="permission denied"):
            await writer.provision_schema()

        assert all(conn.closed for conn in fake_db.connections)

    @pytest.mark.asyncio
    async def test_connect_failure_raises_schema_error(self, writer, fake_db):
        fake_db.fail_connect = True

        with pytest.raises(SchemaError):
            await writer.provision_schema()


class TestInsertRow:
    """Single-row inserts."""

    @pytest.mark.asyncio
    async def test_insert_uses_parameters(self, writer, fake_db, sample_row):
        await writer.insert_row(sample_row)

        assert len(fake_db.executed) == 1
        sql, args = fake_db.executed[0]
        assert sql.startswith("INSERT INTO public.mqtt_message_log")
        assert "$8" in sql
        assert args == (
            sample_row.received_at,
            "sensors/temp",
            1,
            False,
            "test-logger",
            '{"v":22.5}',
            b'{"v":22.5}',
            "{}",
        )
        assert writer.stats["rows_written"] == 1

    @pytest.mark.asyncio
    async def test_fresh_connection_per_call(self, writer, fake_db, sample_row):
        await writer.insert_row(sample_row)
        await writer.insert_row(sample_row)

        assert len(fake_db.connections) == 2
        assert all(conn.closed for conn in fake_db.connections)
        assert fake_db.connections[0].kwargs["dsn"] == "postgresql://test@localhost/test"

    @pytest.mark.asyncio
    async def test_connection_closed_on_failure(self, writer, fake_db, sample_row):
        error = ValueError("value too long for type character varying(256)")
        fake_db.fail_execute = error

        with pytest.raises(StorageError) as exc_info:
            await writer.insert_row(sample_row)

        assert exc_info.value.cause is error
        assert fake_db.connections[0].close.await_count == 1
        assert writer.stats["write_errors"] == 1

    @pytest.mark.asyncio
    async def test_connect_failure_raises_storage_error(self, writer, fake_db, sample_row):
        fake_db.fail_connect = True

        with pytest.raises(StorageError, match="connection refused"):
            await writer.insert_row(sample_row)

    @pytest.mark.asyncio
    async def test_health_check(self, writer, sample_row):
        await writer.insert_row(sample_row)

        health = await writer.health_check()
        assert health["status"] == "healthy"
        assert health["table"] == "public.mqtt_message_log"


class TestSqlConfig:
    """Identifier validation for interpolated names."""

    def test_rejects_unsafe_table_name(self):
        with pytest.raises(ValueError):
            SqlConfig(table_name="logs; DROP TABLE users")

    def test_custom_names(self, fake_db):
        writer = DatabaseWriter(SqlConfig(schema_name="iot", table_name="msgs"), connect=fake_db.connect)
        assert writer.qualified_table == "iot.msgs"
        assert writer.index_names == ("ix_msgs_received_at", "ix_msgs_topic_received_at")

    def test_mixed_case_names_folded(self):
        config = SqlConfig(schema_name="IoT", table_name="tblMqttMessageLog")
        assert config.schema_name == "iot"
        assert config.table_name == "tblmqttmessagelog"

    def test_table_name_leaves_room_for_index_names(self, fake_db):
        longest = "t" * 42
        writer = DatabaseWriter(SqlConfig(table_name=longest), connect=fake_db.connect)
        assert all(len(name) <= 63 for name in writer.index_names)

        with pytest.raises(ValueError):
            SqlConfig(table_name="t" * 43)

    @pytest.mark.asyncio
    async def test_mixed_case_table_provisioned_twice(self, fake_db):
        writer = DatabaseWriter(SqlConfig(table_name="tblMqttMessageLog"), connect=fake_db.connect)

        assert await writer.provision_schema() is True
        assert await writer.provision_schema() is False

        assert fake_db.tables == {("public", "tblmqttmessagelog")}
        assert len(fake_db.indexes) == 2
