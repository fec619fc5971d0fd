"""
Kafka consumer loop with commit-after-handle semantics
"""

import json
import logging
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Optional, Union

from aiokafka import AIOKafkaConsumer

from config.settings import settings
from .producer import EmailEventProducer
from .schemas import DeadLetter

logger = logging.getLogger(__name__)

Handler = Callable[[Dict[str, Any]], Awaitable[None]]


def _deserialize_value(raw: bytes) -> Any:
    return json.loads(raw.decode("utf-8"))


def _printable(value: Any) -> Any:
    if isinstance(value, (bytes, bytearray)):
        return bytes(value).decode("utf-8", errors="replace")
    return value


class EmailConsumer:
    """
    Consume one topic and hand every record to ``handler``.

    Offsets are committed only after the handler returns, which gives
    at-least-once processing. Values are decoded here rather than in the
    client so that a record that is not JSON, or whose handler raises, is
    parked on the dead-letter topic and then committed like any other; one bad
    record cannot stall the partition.
    """

    def __init__(self, topic: str, handler: Handler, producer: EmailEventProducer,
                 group_id: Optional[str] = None, bootstrap_servers: Optional[str] = None):
        self.topic = topic
        self.handler = handler
        self.producer = producer
        self.group_id = group_id or settings.KAFKA_CONSUMER_GROUP
        self.bootstrap_servers = bootstrap_servers or settings.KAFKA_BOOTSTRAP_SERVERS
        self.is_running = False
        self.stats = {
            "processed": 0,
            "failed": 0,
            "last_record_at": None,
        }

    async def process(self, value: Union[bytes, Dict[str, Any]]) -> bool:
        """Decode one record value and run the handler on it; True when it succeeded"""
        self.stats["last_record_at"] = datetime.now(timezone.utc)
        payload = value
        try:
            if isinstance(value, (bytes, bytearray)):
                payload = _deserialize_value(value)
            await self.handler(payload)
            self.stats["processed"] += 1
            return True
        except Exception as e:
            self.stats["failed"] += 1
            logger.error(f"Handler for {self.topic} failed: {e}", exc_info=True)
            await self.producer.publish(
                settings.KAFKA_DEAD_LETTER_TOPIC,
                DeadLetter(
                    topic=self.topic,
                    payload=payload if isinstance(payload, dict) else {"value": _printable(payload)},
                    error=str(e),
                    email_id=payload.get("email_id") if isinstance(payload, dict) else None,
                ),
            )
            return False

    async def run(self) -> None:
        consumer = AIOKafkaConsumer(
            self.topic,
            bootstrap_servers=self.bootstrap_servers,
            group_id=self.group_id,
            client_id=f"{settings.KAFKA_CLIENT_ID}-{self.topic}",
            enable_auto_commit=False,
            auto_offset_reset="earliest",
            max_partition_fetch_bytes=settings.KAFKA_MAX_REQUEST_SIZE,
        )
        await consumer.start()
        self.is_running = True
        logger.info(f"Consuming {self.topic} as group {self.group_id}")
        try:
            async for record in consumer:
                logger.debug(f"{record.topic}[{record.partition}]@{record.offset}")
                await self.process(record.value)
                await consumer.commit()
                if not self.is_running:
                    break
        finally:
            self.is_running = False
            await consumer.stop()
            logger.info(f"Consumer for {self.topic} stopped")

    def stop(self) -> None:
        self.is_running = False

    def get_status(self) -> Dict[str, Any]:
        return {"topic": self.topic, "is_running": self.is_running, "stats": self.stats.copy()}
