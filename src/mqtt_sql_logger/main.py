"""MQTT SQL Logger Service - records every MQTT message into PostgreSQL."""

import asyncio
import logging
import os
import signal
import sys
from datetime import datetime, timezone
from typing import Optional

from .clients.mqtt_client import MQTTTransport
from .config.settings import BridgeSettings, load_settings
from .connection_manager import ConnectionManager
from .db_writer import DatabaseWriter
from .exceptions import SchemaError
from .message_pipeline import IngestionPipeline
from .models import ConnectionState
from .utils.logging import setup_logging


logger = logging.getLogger(__name__)


class MqttSqlLoggerService:
    """Wires the transport, lifecycle manager, pipeline and writer together."""

    def __init__(
        self,
        settings: BridgeSettings,
        transport: Optional[MQTTTransport] = None,
        writer: Optional[DatabaseWriter] = None,
    ):
        self.settings = settings
        self._shutdown_event = asyncio.Event()

        self.writer = writer or DatabaseWriter(settings.sql)
        self.transport = transport or MQTTTransport(settings.mqtt)
        self.pipeline = IngestionPipeline(self.writer, settings.ingestion)
        self.connection_manager = ConnectionManager(
            settings.mqtt,
            settings.retry,
            self.transport,
            self._shutdown_event,
        )
        self.transport.on_message_callback = self.pipeline.submit

        logger.info("MQTT SQL Logger Service initialized")

    @property
    def shutdown_requested(self) -> bool:
        return self._shutdown_event.is_set()

    def request_shutdown(self) -> None:
        self._shutdown_event.set()

    async def start(self, install_signal_handlers: bool = True):
        """Run until shutdown is requested."""
        logger.info("Starting MQTT SQL Logger Service")

        if install_signal_handlers:
            self._setup_signal_handlers()

        try:
            delay_ms = self.settings.startup.delay_ms
            if delay_ms > 0:
                logger.info(f"Waiting {delay_ms} ms for dependent services to start...")
                if await self._wait_for_shutdown(delay_ms / 1000):
                    return

            if self.settings.sql.create_table:
                try:
                    await self.writer.provision_schema()
                except SchemaError as e:
                    logger.error(f"Failed to ensure SQL table: {e}")

            await self.connection_manager.run_retry_loop()

            await self._shutdown_event.wait()
        finally:
            await self.stop()

    async def stop(self):
        """Stop reconnecting and close the broker session. In-flight writes are not drained."""
        if self.connection_manager.state is ConnectionState.SHUTTING_DOWN:
            return
        logger.info("Shutting down MQTT SQL Logger Service")
        self._shutdown_event.set()
        await self.connection_manager.shutdown()
        logger.info(
            f"MQTT SQL Logger Service stopped "
            f"({self.pipeline.delivered_count} messages inserted)"
        )

    async def _wait_for_shutdown(self, timeout: float) -> bool:
        try:
            await asyncio.wait_for(self._shutdown_event.wait(), timeout=timeout)
            return True
        except asyncio.TimeoutError:
            return False

    def _setup_signal_handlers(self):
        """Setup signal handlers for graceful shutdown."""
        loop = asyncio.get_running_loop()

        def signal_handler(signum):
            logger.info(f"Received signal {signum}, initiating shutdown")
            self.request_shutdown()

        for signum in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(signum, signal_handler, signum)
            except NotImplementedError:
                # Windows event loops have no add_signal_handler
                signal.signal(signum, lambda s, frame: loop.call_soon_threadsafe(signal_handler, s))

    async def health_check(self) -> dict:
        """Perform health check."""
        connection = self.connection_manager.get_stats()
        health_status = {
            "service": self.settings.service_name,
            "status": "healthy",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "components": {
                "connection": connection,
                "pipeline": self.pipeline.get_stats(),
                "writer": await self.writer.health_check(),
                "transport": dict(self.transport.stats),
            }
        }

        if connection["state"] == ConnectionState.SHUTTING_DOWN.value:
            health_status["status"] = "stopped"
        elif connection["state"] != ConnectionState.CONNECTED.value:
            health_status["status"] = "degraded"
        elif health_status["components"]["writer"]["status"] != "healthy":
            health_status["status"] = "degraded"

        return health_status


async def main():
    """Main entry point."""
    try:
        settings = load_settings(os.getenv("CONFIG_FILE"))
    except Exception as e:
        logging.basicConfig(level=logging.INFO)
        logger.error(f"Invalid configuration: {e}")
        sys.exit(1)

    setup_logging(settings.log, settings.service_name)
    service = MqttSqlLoggerService(settings)

    try:
        await service.start()
    except Exception as e:
        logger.error(f"Service failed: {e}", exc_info=True)
        sys.exit(1)


def run():
    asyncio.run(main())


if __name__ == "__main__":
    run()
