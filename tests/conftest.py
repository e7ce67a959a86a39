"""Pytest configuration and shared fixtures."""

import asyncio
import random
from typing import List, Optional, Tuple
from unittest.mock import AsyncMock

import pytest

from mqtt_sql_logger.config.settings import (
    BridgeSettings,
    IngestionConfig,
    MqttConfig,
    RetryConfig,
    SqlConfig,
    StartupConfig,
)
from mqtt_sql_logger.exceptions import ConnectError
from mqtt_sql_logger.models import DisconnectReason, InboundMessage


class FakeTransport:
    """In-memory stand-in for MQTTTransport."""

    def __init__(self):
        self.connected = False
        self.connect_failures = 0
        self.fail_subscribe_on: Optional[str] = None
        self.connect_delay = 0.0

        self.connect_calls = 0
        self.disconnect_calls = 0
        self.subscriptions: List[Tuple[str, int]] = []
        self.active_connects = 0
        self.max_active_connects = 0

        self.on_message_callback = None
        self.on_disconnect_callback = None

        self.stats = {
            "messages_received": 0,
            "sessions_established": 0,
            "sessions_lost": 0,
        }

    @property
    def is_connected(self) -> bool:
        return self.connected

    async def connect(self):
        self.connect_calls += 1
        self.active_connects += 1
        self.max_active_connects = max(self.max_active_connects, self.active_connects)
        try:
            if self.connect_delay:
                await asyncio.sleep(self.connect_delay)
            if self.connect_failures > 0:
                self.connect_failures -= 1
                raise ConnectError("Connection refused")
            self.connected = True
        finally:
            self.active_connects -= 1

    async def subscribe(self, topic: str, qos: int):
        if topic == self.fail_subscribe_on:
            raise ConnectError(f"Broker rejected subscription to {topic}")
        self.subscriptions.append((topic, qos))

    async def disconnect(self):
        self.disconnect_calls += 1
        self.connected = False

    async def drop(self, reason: DisconnectReason = DisconnectReason.NORMAL):
        """Simulate the broker dropping the session."""
        self.connected = False
        if self.on_disconnect_callback:
            await self.on_disconnect_callback(reason)


@pytest.fixture
def fast_retry() -> RetryConfig:
    """Millisecond-scale backoff with no jitter."""
    return RetryConfig(initial_backoff_ms=1, backoff_multiplier=2.0, max_backoff_ms=4, max_jitter_ms=0)


@pytest.fixture
def mqtt_config() -> MqttConfig:
    return MqttConfig(
        broker_host="broker.test",
        broker_port=1883,
        client_id="test-logger",
        topics="tele/#,stat/#,tele/#",
        qos=1,
    )


@pytest.fixture
def test_settings(mqtt_config, fast_retry) -> BridgeSettings:
    """Create test configuration."""
    return BridgeSettings(
        service_name="test-logger",
        mqtt=mqtt_config,
        sql=SqlConfig(connection_string="postgresql://test@localhost/test"),
        startup=StartupConfig(delay_ms=0),
        retry=fast_retry,
        ingestion=IngestionConfig(max_concurrency=10, summary_interval=100),
    )


@pytest.fixture
def fake_transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture
def mock_writer():
    """Writer whose inserts succeed."""
    writer = AsyncMock()
    writer.insert_row = AsyncMock(return_value=None)
    writer.provision_schema = AsyncMock(return_value=True)
    writer.health_check = AsyncMock(return_value={"status": "healthy", "stats": {}})
    return writer


@pytest.fixture
def rng() -> random.Random:
    return random.Random(42)


@pytest.fixture
def sample_message() -> InboundMessage:
    """Sample temperature reading."""
    return InboundMessage(
        topic="sensors/temp",
        qos=1,
        retained=False,
        client_id="test-logger",
        payload=bytes.fromhex("7B 22 76 22 3A 32 32 2E 35 7D"),
    )
