"""Broker session lifecycle: connect, subscribe, detect loss, reconnect with backoff."""

import asyncio
import logging
import random
from typing import Any, Dict, Optional

from .clients.mqtt_client import MQTTTransport
from .config.settings import MqttConfig, RetryConfig
from .exceptions import ConnectError
from .models import ConnectionState, DisconnectReason
from .utils.retry import compute_backoff_ms, disconnect_delay_ms


logger = logging.getLogger(__name__)

_ALLOWED_TRANSITIONS = {
    ConnectionState.DISCONNECTED: {ConnectionState.CONNECTING, ConnectionState.SHUTTING_DOWN},
    ConnectionState.CONNECTING: {
        ConnectionState.CONNECTED,
        ConnectionState.RECONNECT_PENDING,
        ConnectionState.SHUTTING_DOWN,
    },
    ConnectionState.CONNECTED: {ConnectionState.RECONNECT_PENDING, ConnectionState.SHUTTING_DOWN},
    ConnectionState.RECONNECT_PENDING: {ConnectionState.CONNECTING, ConnectionState.SHUTTING_DOWN},
    ConnectionState.SHUTTING_DOWN: set(),
}


class ConnectionManager:
    """
    Owns the broker session and its state machine.

    States move DISCONNECTED -> CONNECTING -> CONNECTED, and on a broker
    disconnect CONNECTED -> RECONNECT_PENDING -> CONNECTING again. A failed
    attempt goes back to RECONNECT_PENDING. SHUTTING_DOWN is terminal.

    Only one reconnect episode runs at a time: both the initial retry loop
    and the disconnect handler hold ``_reconnect_lock`` for the whole
    episode, and a disconnect that finds it held is skipped.
    """

    def __init__(
        self,
        settings: MqttConfig,
        retry_config: RetryConfig,
        transport: MQTTTransport,
        shutdown_event: asyncio.Event,
        rng: Optional[random.Random] = None,
    ):
        self.settings = settings
        self.retry_config = retry_config
        self.transport = transport
        self._shutdown_event = shutdown_event
        self._rng = rng or random.Random()

        self.state = ConnectionState.DISCONNECTED
        self.retry_count = 0
        self._reconnect_lock = asyncio.Lock()

        self.stats = {
            "connect_attempts": 0,
            "successful_connects": 0,
            "disconnects": 0,
            "skipped_reconnects": 0,
        }

        self.transport.on_disconnect_callback = self.handle_disconnect

    @property
    def reconnect_in_progress(self) -> bool:
        return self._reconnect_lock.locked()

    def _transition(self, new_state: ConnectionState) -> bool:
        """Move to new_state. Returns False if shutdown already made the move moot."""
        if self.state is ConnectionState.SHUTTING_DOWN:
            logger.debug(f"Ignoring transition to {new_state.value} during shutdown")
            return False
        if new_state not in _ALLOWED_TRANSITIONS[self.state]:
            raise RuntimeError(f"Illegal connection state transition {self.state.value} -> {new_state.value}")
        logger.debug(f"Connection state {self.state.value} -> {new_state.value}")
        self.state = new_state
        return True

    async def connect_and_subscribe(self) -> None:
        """
        Open the broker session and subscribe to every configured topic, in order.

        Does nothing if the session is already up.

        Raises:
            ConnectError: If the connect or any subscribe fails
        """
        if self.state is ConnectionState.CONNECTED and self.transport.is_connected:
            logger.debug("MQTT client is already connected, skipping connection attempt")
            return
        if self.state is ConnectionState.SHUTTING_DOWN:
            return
        if self.state is ConnectionState.CONNECTED:
            # Session died but the disconnect notification has not landed yet
            self._transition(ConnectionState.RECONNECT_PENDING)

        self._transition(ConnectionState.CONNECTING)
        self.stats["connect_attempts"] += 1

        try:
            logger.info(
                f"Connecting to MQTT {self.settings.broker_host}:{self.settings.broker_port} "
                f"as {self.settings.client_id}..."
            )
            await self.transport.connect()
            logger.info(f"Connected. Subscribing to {len(self.settings.topics)} topic(s)...")

            for topic in self.settings.topics:
                await self.transport.subscribe(topic, self.settings.qos)
                logger.info(f"Subscribed to {topic} (QoS {self.settings.qos})")

            if not self.transport.is_connected:
                raise ConnectError("Connection lost while subscribing")

        except Exception as e:
            await self._close_transport()
            if self.state is ConnectionState.CONNECTING:
                self._transition(ConnectionState.RECONNECT_PENDING)
            if isinstance(e, ConnectError):
                raise
            raise ConnectError(str(e)) from e

        if not self._transition(ConnectionState.CONNECTED):
            await self._close_transport()
            return
        self.stats["successful_connects"] += 1

    async def run_retry_loop(self) -> None:
        """Connect, retrying with backoff until connected or shut down."""
        async with self._reconnect_lock:
            await self._retry_until_connected()

    async def _retry_until_connected(self) -> None:
        # Caller holds _reconnect_lock
        while not self._shutdown_event.is_set() and self.state is not ConnectionState.SHUTTING_DOWN:
            try:
                await self.connect_and_subscribe()
            except ConnectError as e:
                self.retry_count += 1
                level = logging.INFO if self.retry_count == 1 else logging.WARNING
                logger.log(level, f"MQTT connection attempt {self.retry_count} failed. {e}. Will retry...")

                delay_ms = compute_backoff_ms(self.retry_count, self.retry_config, self._rng)
                logger.info(f"Waiting {delay_ms} ms before retry attempt {self.retry_count + 1}...")

                if await self._sleep(delay_ms):
                    return
                continue

            if self.state is ConnectionState.CONNECTED:
                self.retry_count = 0
                return

    async def handle_disconnect(self, reason: DisconnectReason) -> None:
        """React to the broker dropping an established session."""
        if self._shutdown_event.is_set() or self.state is ConnectionState.SHUTTING_DOWN:
            return

        self.stats["disconnects"] += 1
        if self.state is ConnectionState.CONNECTED:
            self._transition(ConnectionState.RECONNECT_PENDING)

        if self._reconnect_lock.locked():
            self.stats["skipped_reconnects"] += 1
            logger.debug("Another reconnection attempt is already in progress, skipping")
            return

        async with self._reconnect_lock:
            delay_ms = disconnect_delay_ms(reason, self.retry_config, self._rng)
            logger.warning(f"MQTT disconnected: {reason.value}. Reconnecting in {delay_ms} ms...")
            if await self._sleep(delay_ms):
                return
            await self._retry_until_connected()

    async def shutdown(self) -> None:
        """Enter SHUTTING_DOWN and close the session; no reconnects after this."""
        if self.state is ConnectionState.SHUTTING_DOWN:
            return
        self._transition(ConnectionState.SHUTTING_DOWN)
        # Wakes any backoff sleep so a running retry loop exits
        self._shutdown_event.set()
        await self._close_transport()

    async def _close_transport(self) -> None:
        try:
            await self.transport.disconnect()
        except Exception as e:
            logger.warning(f"Failed to disconnect MQTT client cleanly: {e}")

    async def _sleep(self, delay_ms: int) -> bool:
        """Sleep unless shutdown is requested first. Returns True if it was."""
        try:
            await asyncio.wait_for(self._shutdown_event.wait(), timeout=delay_ms / 1000)
            return True
        except asyncio.TimeoutError:
            return False

    def get_stats(self) -> Dict[str, Any]:
        stats = self.stats.copy()
        stats.update({
            "state": self.state.value,
            "retry_count": self.retry_count,
            "reconnect_in_progress": self.reconnect_in_progress,
        })
        return stats
