"""Per-message ingestion: decode, serialize, bound, write."""

import asyncio
import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, Optional, Set, Tuple

from .config.settings import IngestionConfig
from .db_writer import DatabaseWriter
from .models import InboundMessage, StoredRow, decode_payload


logger = logging.getLogger(__name__)


def user_properties_to_json(properties: Optional[Iterable[Tuple[str, str]]]) -> str:
    """
    Serialize user properties as a flat JSON object of strings.

    Order and repeated names are preserved, as MQTT allows both.
    """
    if not properties:
        return "{}"
    pairs = (
        f"{json.dumps(str(name or ''), ensure_ascii=False)}:"
        f"{json.dumps(str(value or ''), ensure_ascii=False)}"
        for name, value in properties
    )
    return "{" + ",".join(pairs) + "}"


def utc_now_ms() -> datetime:
    """Current UTC time truncated to milliseconds."""
    now = datetime.now(timezone.utc)
    return now.replace(microsecond=now.microsecond // 1000 * 1000)


class IngestionPipeline:
    """Stores each inbound message as one row, with a bound on concurrent writes."""

    def __init__(self, writer: DatabaseWriter, config: Optional[IngestionConfig] = None):
        self.writer = writer
        self.config = config or IngestionConfig()
        self._slots = asyncio.Semaphore(self.config.max_concurrency)
        self._tasks: Set[asyncio.Task] = set()

        self.stats: Dict[str, Any] = {
            "messages_delivered": 0,
            "messages_failed": 0,
            "undecodable_payloads": 0,
            "in_flight": 0,
            "peak_in_flight": 0,
            "last_message_time": None,
        }

        logger.info(f"IngestionPipeline initialized (max_concurrency={self.config.max_concurrency})")

    @property
    def delivered_count(self) -> int:
        return self.stats["messages_delivered"]

    def build_row(self, message: InboundMessage) -> StoredRow:
        """Turn a delivery into the row that will be written."""
        received_at = utc_now_ms()

        text = decode_payload(message.payload)
        if text is None:
            self.stats["undecodable_payloads"] += 1
            logger.debug(f"Payload on {message.topic} is not valid UTF-8, storing bytes only")
        elif "\x00" in text:
            # PostgreSQL text columns cannot hold NUL
            logger.debug(f"Payload on {message.topic} contains NUL, storing bytes only")
            text = None

        return StoredRow(
            received_at=received_at,
            topic=message.topic,
            qos=message.qos,
            retained=message.retained,
            client_id=message.client_id,
            payload_text=text,
            payload_bytes=bytes(message.payload),
            user_properties_json=user_properties_to_json(message.user_properties),
        )

    async def handle_message(self, message: InboundMessage) -> bool:
        """
        Write one message. Never raises for a storage failure.

        Waits for a free slot when max_concurrency writes are already in
        flight, so an outage backs deliveries up instead of piling on writes.

        Returns:
            True if the row was written
        """
        await self._slots.acquire()
        return await self._write(message)

    async def submit(self, message: InboundMessage) -> None:
        """
        Wait for a free slot, then write the message in the background.

        Returns as soon as the write has started. The caller is held back
        while all slots are taken, so at most max_concurrency messages are
        ever held here.
        """
        await self._slots.acquire()
        task = asyncio.create_task(self._write(message))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    @property
    def pending_writes(self) -> int:
        return len(self._tasks)

    async def _write(self, message: InboundMessage) -> bool:
        # Caller holds one slot; it is released here on every exit path
        self.stats["in_flight"] += 1
        self.stats["peak_in_flight"] = max(self.stats["peak_in_flight"], self.stats["in_flight"])
        try:
            row = self.build_row(message)
            await self.writer.insert_row(row)
        except Exception as e:
            self.stats["messages_failed"] += 1
            logger.error(f"Insert failed for topic {message.topic}: {e}")
            return False
        finally:
            self.stats["in_flight"] -= 1
            self._slots.release()

        self.stats["messages_delivered"] += 1
        self.stats["last_message_time"] = row.received_at

        count = self.stats["messages_delivered"]
        if count % self.config.summary_interval == 0:
            logger.info(f"Inserted {count} messages (latest topic: {message.topic})")

        return True

    def get_stats(self) -> Dict[str, Any]:
        stats = self.stats.copy()
        stats["pending_writes"] = self.pending_writes
        return stats
