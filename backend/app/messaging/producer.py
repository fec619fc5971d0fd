"""
Kafka producer shared by the API, the workers and the SMTP receiver
"""

import asyncio
import json
import logging
from typing import Any, Dict, Optional

from aiokafka import AIOKafkaProducer
from pydantic import BaseModel

from config.settings import settings

logger = logging.getLogger(__name__)


def _serialize_value(value: Any) -> bytes:
    if isinstance(value, BaseModel):
        return value.model_dump_json().encode("utf-8")
    return json.dumps(value, default=str).encode("utf-8")


class EmailEventProducer:
    """
    Thin wrapper around AIOKafkaProducer.

    The underlying producer starts on first publish, so importing the API
    never needs a reachable broker.
    """

    def __init__(self, bootstrap_servers: Optional[str] = None, client_id: Optional[str] = None):
        self.bootstrap_servers = bootstrap_servers or settings.KAFKA_BOOTSTRAP_SERVERS
        self.client_id = client_id or settings.KAFKA_CLIENT_ID
        self._producer: Optional[AIOKafkaProducer] = None
        self._lock = asyncio.Lock()

    @property
    def is_started(self) -> bool:
        return self._producer is not None

    async def _ensure_started(self) -> AIOKafkaProducer:
        async with self._lock:
            if self._producer is None:
                producer = AIOKafkaProducer(
                    bootstrap_servers=self.bootstrap_servers,
                    client_id=self.client_id,
                    acks="all",
                    enable_idempotence=True,
                    max_request_size=settings.KAFKA_MAX_REQUEST_SIZE,
                    value_serializer=_serialize_value,
                    key_serializer=lambda key: key.encode("utf-8") if key is not None else None,
                )
                await producer.start()
                self._producer = producer
                logger.info(f"Kafka producer connected to {self.bootstrap_servers}")
        return self._producer

    async def publish(self, topic: str, payload: Any, key: Optional[str] = None) -> None:
        """Publish and wait for the broker acknowledgement"""
        producer = await self._ensure_started()
        await producer.send_and_wait(topic, value=payload, key=key)
        logger.debug(f"Published to {topic} key={key}")

    async def stop(self) -> None:
        async with self._lock:
            if self._producer is not None:
                await self._producer.stop()
                self._producer = None
                logger.info("Kafka producer stopped")


# Global instance
event_producer = EmailEventProducer()


def get_producer() -> EmailEventProducer:
    """FastAPI dependency returning the process-wide producer"""
    return event_producer
