from __future__ import annotations

import asyncio
import json
import logging
from collections import defaultdict
from typing import Any, Awaitable, Callable

try:
    from aiokafka import AIOKafkaConsumer, AIOKafkaProducer
except ModuleNotFoundError:  # pragma: no cover
    AIOKafkaConsumer = None
    AIOKafkaProducer = None

logger = logging.getLogger(__name__)

LOAN_APPLICATION_EVENTS_TOPIC = "loan_application_events"
OFFER_EVENTS_TOPIC = "offer_events"
SWEEP_TRIGGERS_TOPIC = "expiration_sweep_triggers"


class KafkaBus:
    """Publishes origination events; keeps them in process queues when Kafka is down."""

    def __init__(self, bootstrap_servers: str, client_id: str, fallback_queue_size: int = 10_000) -> None:
        if fallback_queue_size <= 0:
            raise ValueError("fallback_queue_size must be positive")
        self.bootstrap_servers = bootstrap_servers
        self.client_id = client_id
        self.fallback_queue_size = fallback_queue_size
        self._producer: AIOKafkaProducer | None = None
        self._queues: dict[str, asyncio.Queue[dict[str, Any]]] = defaultdict(
            lambda: asyncio.Queue(maxsize=self.fallback_queue_size)
        )

    async def connect(self) -> None:
        if AIOKafkaProducer is None:
            return
        producer = AIOKafkaProducer(
            bootstrap_servers=self.bootstrap_servers,
            client_id=self.client_id,
            value_serializer=lambda v: json.dumps(v, default=str).encode("utf-8"),
        )
        try:
            await asyncio.wait_for(producer.start(), timeout=1.0)
            self._producer = producer
        except Exception:
            logger.warning("Kafka unreachable at %s; events stay in process", self.bootstrap_servers)
            self._producer = None
            try:
                await producer.stop()
            except Exception:
                pass

    async def close(self) -> None:
        if self._producer is not None:
            await self._producer.stop()

    async def ping(self) -> bool:
        if self._producer is None:
            return False
        try:
            partitions = await self._producer.partitions_for(OFFER_EVENTS_TOPIC)
            return partitions is not None
        except Exception:
            return False

    async def publish(self, topic: str, value: dict[str, Any], key: str | None = None) -> None:
        if self._producer is not None:
            try:
                encoded_key = None if key is None else key.encode("utf-8")
                await self._producer.send_and_wait(topic, value=value, key=encoded_key)
                return
            except Exception:
                logger.warning("Kafka publish to %s failed; queued in process", topic, exc_info=True)
        queue = self._queues[topic]
        if queue.full():
            # bounded: the oldest event gives way
            queue.get_nowait()
            logger.warning("In-process queue for %s is full; dropped the oldest event", topic)
        queue.put_nowait(value)

    def pending(self, topic: str) -> list[dict[str, Any]]:
        """Drain events that were queued in process for ``topic``."""
        queue = self._queues[topic]
        events: list[dict[str, Any]] = []
        while not queue.empty():
            events.append(queue.get_nowait())
        return events

    async def consume_forever(
        self,
        topic: str,
        handler: Callable[[dict[str, Any]], Awaitable[None]],
        stop_event: asyncio.Event,
    ) -> None:
        if AIOKafkaConsumer is not None and self._producer is not None:
            consumer = AIOKafkaConsumer(
                topic,
                bootstrap_servers=self.bootstrap_servers,
                group_id=f"{self.client_id}-{topic}",
                value_deserializer=lambda v: json.loads(v.decode("utf-8")),
            )
            try:
                await asyncio.wait_for(consumer.start(), timeout=1.0)
                while not stop_event.is_set():
                    msg = await consumer.getone()
                    await handler(msg.value)
                return
            except Exception:
                logger.warning("Kafka consumer for %s stopped; reading in-process queue", topic, exc_info=True)
            finally:
                try:
                    await consumer.stop()
                except Exception:
                    pass

        queue = self._queues[topic]
        while not stop_event.is_set():
            try:
                event = await asyncio.wait_for(queue.get(), timeout=0.5)
            except asyncio.TimeoutError:
                continue
            await handler(event)
