"""Paho MQTT client bridged onto asyncio."""

import asyncio
import concurrent.futures
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

import paho.mqtt.client as mqtt

from ..config.settings import MqttConfig
from ..exceptions import ConnectError
from ..models import DisconnectReason, InboundMessage

logger = logging.getLogger(__name__)

MessageCallback = Callable[[InboundMessage], Awaitable[Any]]
DisconnectCallback = Callable[[DisconnectReason], Awaitable[Any]]

# How often a blocked network thread checks whether its session was closed
_ADMIT_POLL_SECONDS = 0.5

# MQTT v5 reason codes for DISCONNECT
_REASON_CODES = {
    0: DisconnectReason.NORMAL,
    128: DisconnectReason.UNSPECIFIED_ERROR,
    130: DisconnectReason.PROTOCOL_ERROR,
    137: DisconnectReason.SERVER_BUSY,
    152: DisconnectReason.ADMINISTRATIVE_ACTION,
}


def classify_disconnect(reason_code: Any) -> DisconnectReason:
    """Map a paho ReasonCode (or plain int) to a DisconnectReason."""
    value = getattr(reason_code, "value", reason_code)
    try:
        return _REASON_CODES.get(int(value), DisconnectReason.OTHER)
    except (TypeError, ValueError):
        return DisconnectReason.OTHER


def to_inbound_message(msg: mqtt.MQTTMessage, client_id: str) -> InboundMessage:
    """Copy a paho message into an immutable InboundMessage."""
    properties = getattr(msg, "properties", None)
    user_properties = getattr(properties, "UserProperty", None) or []

    return InboundMessage(
        topic=msg.topic,
        qos=msg.qos,
        retained=bool(msg.retain),
        client_id=client_id,
        payload=bytes(msg.payload or b""),
        user_properties=tuple((str(k), str(v)) for k, v in user_properties),
    )


def _is_failure(reason_code: Any) -> bool:
    failure = getattr(reason_code, "is_failure", None)
    if failure is not None:
        return bool(failure)
    return int(reason_code) >= 0x80


class MQTTTransport:
    """
    One broker session at a time on top of paho's network thread.

    paho callbacks run on that thread and only hand work to the event loop.
    Message delivery waits until on_message_callback returns, which the
    ingestion pipeline delays while it has no free slot. Automatic reconnect is disabled: after a lost session the owner calls
    connect() again, which builds a fresh client.
    """

    def __init__(self, config: MqttConfig):
        self.config = config

        self.client: Optional[mqtt.Client] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._established = False

        self._connack: Optional[asyncio.Future] = None
        self._pending_subacks: Dict[int, asyncio.Future] = {}
        self._tasks: Set[asyncio.Task] = set()
        self._admissions: Set[asyncio.Task] = set()

        # Callbacks
        self.on_message_callback: Optional[MessageCallback] = None
        self.on_disconnect_callback: Optional[DisconnectCallback] = None

        self.stats = {
            "messages_received": 0,
            "sessions_established": 0,
            "sessions_lost": 0,
        }

    @property
    def is_connected(self) -> bool:
        return self._established and self.client is not None and self.client.is_connected()

    def _build_client(self) -> mqtt.Client:
        if self.config.protocol_version == "5":
            client = mqtt.Client(
                mqtt.CallbackAPIVersion.VERSION2,
                client_id=self.config.client_id,
                protocol=mqtt.MQTTv5,
                reconnect_on_failure=False,
            )
        else:
            client = mqtt.Client(
                mqtt.CallbackAPIVersion.VERSION2,
                client_id=self.config.client_id,
                clean_session=True,
                protocol=mqtt.MQTTv311,
                reconnect_on_failure=False,
            )

        client.on_connect = self._on_connect
        client.on_disconnect = self._on_disconnect
        client.on_message = self._on_message
        client.on_subscribe = self._on_subscribe
        client.connect_timeout = self.config.connect_timeout_seconds

        if self.config.username:
            client.username_pw_set(self.config.username, self.config.password or '')
            logger.info(f"MQTT authentication configured (user: {self.config.username})")

        return client

    async def connect(self) -> None:
        """
        Open a session and wait for the broker's CONNACK.

        Raises:
            ConnectError: On socket errors, refusal or timeout
        """
        if self.client is not None:
            await self.disconnect()

        self._loop = asyncio.get_running_loop()
        self._connack = self._loop.create_future()
        client = self._build_client()
        self.client = client

        kwargs = {}
        if self.config.protocol_version == "5":
            kwargs["clean_start"] = True

        try:
            await asyncio.to_thread(
                client.connect,
                self.config.broker_host,
                self.config.broker_port,
                self.config.keepalive_seconds,
                **kwargs,
            )
            if self.client is not client:
                # disconnect() ran while the socket was opening
                client.disconnect()
                raise ConnectError("Connection attempt abandoned")
            client.loop_start()
            reason_code = await asyncio.wait_for(self._connack, timeout=self.config.operation_timeout_seconds)
        except asyncio.TimeoutError:
            await self._teardown()
            raise ConnectError(
                f"No CONNACK from {self.config.broker_host}:{self.config.broker_port} "
                f"within {self.config.operation_timeout_seconds}s"
            ) from None
        except ConnectError:
            await self._teardown()
            raise
        except (OSError, ValueError) as e:
            await self._teardown()
            raise ConnectError(f"Failed to connect to {self.config.broker_host}:{self.config.broker_port}: {e}") from e

        if _is_failure(reason_code):
            await self._teardown()
            raise ConnectError(f"Broker refused connection: {reason_code}")

        self._established = True
        self.stats["sessions_established"] += 1
        logger.debug(f"MQTT session established with {self.config.broker_host}:{self.config.broker_port}")

    async def subscribe(self, topic: str, qos: int) -> None:
        """
        Subscribe to one topic filter and wait for the SUBACK.

        Raises:
            ConnectError: If the subscribe cannot be sent, is rejected or times out
        """
        if not self.is_connected:
            raise ConnectError(f"Cannot subscribe to {topic}: not connected")

        result, mid = self.client.subscribe(topic, qos=qos)
        if result != mqtt.MQTT_ERR_SUCCESS:
            raise ConnectError(f"Subscribe to {topic} failed: {mqtt.error_string(result)}")

        # Registered before the next await, so the SUBACK cannot be missed
        future = self._loop.create_future()
        self._pending_subacks[mid] = future
        try:
            reason_codes = await asyncio.wait_for(future, timeout=self.config.operation_timeout_seconds)
        except asyncio.TimeoutError:
            raise ConnectError(f"No SUBACK for {topic} within {self.config.operation_timeout_seconds}s") from None
        finally:
            self._pending_subacks.pop(mid, None)

        for rc in reason_codes:
            if _is_failure(rc):
                raise ConnectError(f"Broker rejected subscription to {topic}: {rc}")

    async def disconnect(self) -> None:
        """Best-effort DISCONNECT and network thread shutdown."""
        if self.client is None:
            return
        self._established = False
        try:
            self.client.disconnect()
        except Exception as e:
            logger.debug(f"MQTT disconnect raised: {e}")
        await self._teardown()
        logger.info("Disconnected from MQTT broker")

    async def _teardown(self) -> None:
        client, self.client = self.client, None
        self._established = False
        self._fail_pending(ConnectError("MQTT session closed"))
        # Releases a network thread blocked in _hand_over so loop_stop can join it
        for task in list(self._admissions):
            task.cancel()
        if client is not None:
            await asyncio.to_thread(client.loop_stop)

    def _fail_pending(self, error: Exception) -> None:
        if self._connack is not None and not self._connack.done():
            self._connack.set_exception(error)
        for future in list(self._pending_subacks.values()):
            if not future.done():
                future.set_exception(error)

    # -- paho callbacks (network thread) --

    def _call_in_loop(self, func: Callable, *args) -> None:
        if self._loop is None:
            return
        try:
            self._loop.call_soon_threadsafe(func, *args)
        except RuntimeError:
            # Event loop already closed during shutdown
            logger.debug("Dropping MQTT callback, event loop is closed")

    def _on_connect(self, client, userdata, flags, reason_code, properties=None):
        self._call_in_loop(self._resolve_connack, reason_code)

    def _on_subscribe(self, client, userdata, mid, reason_code_list, properties=None):
        self._call_in_loop(self._resolve_suback, mid, list(reason_code_list))

    def _on_disconnect(self, client, userdata, disconnect_flags, reason_code, properties=None):
        self._call_in_loop(self._handle_disconnect, client, reason_code)

    def _on_message(self, client, userdata, msg):
        try:
            inbound = to_inbound_message(msg, self.config.client_id)
        except Exception as e:
            # An exception here would stop paho's network thread
            logger.error(f"Discarding malformed MQTT message: {e}")
            return
        self._hand_over(client, inbound)

    def _hand_over(self, client, message: InboundMessage) -> None:
        """
        Block the network thread until the event loop has admitted the message.

        While this blocks paho neither reads the socket nor sends the PUBACK,
        so a full pipeline pushes back on the broker over TCP instead of
        queuing deliveries in memory.
        """
        loop = self._loop
        if loop is None or loop.is_closed() or client is not self.client:
            return
        try:
            admission = asyncio.run_coroutine_threadsafe(self._admit(message), loop)
        except RuntimeError:
            logger.debug("Dropping MQTT message, event loop is closed")
            return

        while True:
            try:
                admission.result(timeout=_ADMIT_POLL_SECONDS)
                return
            except concurrent.futures.TimeoutError:
                if client is not self.client or loop.is_closed():
                    admission.cancel()
                    return
            except concurrent.futures.CancelledError:
                return
            except Exception as e:
                logger.error(f"MQTT message handler failed: {e}")
                return

    # -- event loop side --

    def _resolve_connack(self, reason_code) -> None:
        if self._connack is not None and not self._connack.done():
            self._connack.set_result(reason_code)

    def _resolve_suback(self, mid: int, reason_codes: List[Any]) -> None:
        future = self._pending_subacks.get(mid)
        if future is not None and not future.done():
            future.set_result(reason_codes)

    def _handle_disconnect(self, client, reason_code) -> None:
        if client is not self.client:
            return
        self._fail_pending(ConnectError(f"Connection lost: {reason_code}"))
        if not self._established:
            return

        self._established = False
        self.stats["sessions_lost"] += 1
        reason = classify_disconnect(reason_code)
        logger.debug(f"MQTT session lost ({reason_code}), classified as {reason.value}")

        if self.on_disconnect_callback:
            self._spawn(self.on_disconnect_callback(reason))

    async def _admit(self, message: InboundMessage) -> None:
        task = asyncio.current_task()
        self._admissions.add(task)
        try:
            self.stats["messages_received"] += 1
            if self.on_message_callback:
                await self.on_message_callback(message)
        finally:
            self._admissions.discard(task)

    def _spawn(self, coro: Awaitable[Any]) -> None:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"MQTT callback failed: {task.exception()}", exc_info=task.exception())
