# =============================================================================
# File: sms_bridge/infra/event_bus/dead_letter.py
# Description: Publishes queue events whose relay unit failed terminally to a
#              dead-letter topic so operators can replay them
# =============================================================================

from __future__ import annotations

import asyncio
import json
import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

from aiokafka import AIOKafkaProducer

from sms_bridge.config.reliability_config import RetryConfig, ReliabilityConfigs
from sms_bridge.infra.reliability.retry import retry_async

log = logging.getLogger("sms_bridge.dead_letter")


def dead_letter_record(event: Any, attempt: Any) -> Dict[str, Any]:
    """Envelope around the original payload with its failure context."""
    value = event.value
    if isinstance(value, bytes):
        value = value.decode("utf-8", errors="replace")
    return {
        "original_topic": event.topic,
        "original_partition": event.partition,
        "original_offset": event.offset,
        "payload": value,
        "source_id": attempt.source_id,
        "room_id": attempt.room_id,
        "attempts": attempt.attempts,
        "error": str(attempt.error) if attempt.error else None,
        "error_type": type(attempt.error).__name__ if attempt.error else None,
        "failed_at": datetime.now(timezone.utc).isoformat(),
    }


class KafkaDeadLetterPublisher:

    def __init__(
            self,
            bootstrap_servers: list,
            topic: str,
            retry_config: Optional[RetryConfig] = None,
            producer_factory: Optional[Callable[..., Any]] = None,
    ):
        self.topic = topic
        self._bootstrap_servers = bootstrap_servers
        self._retry_config = retry_config or ReliabilityConfigs.kafka_retry()
        self._producer_factory = producer_factory or AIOKafkaProducer
        self._producer = None
        self._lock = asyncio.Lock()

    async def _ensure_producer(self):
        async with self._lock:
            if self._producer is None:
                producer = self._producer_factory(bootstrap_servers=",".join(self._bootstrap_servers))
                await retry_async(
                    producer.start,
                    retry_config=self._retry_config,
                    context="Starting dead-letter producer",
                )
                self._producer = producer
                log.info(f"Dead-letter producer started for topic '{self.topic}'")
        return self._producer

    async def publish(self, event: Any, attempt: Any) -> None:
        producer = await self._ensure_producer()
        payload = json.dumps(dead_letter_record(event, attempt)).encode("utf-8")
        key = attempt.source_id.encode("utf-8") if attempt.source_id else event.key
        await producer.send_and_wait(self.topic, value=payload, key=key)
        log.warning(
            f"Dead-lettered {event.topic}[{event.partition}]@{event.offset} to '{self.topic}'"
        )

    async def close(self) -> None:
        if self._producer is None:
            return
        try:
            await asyncio.wait_for(self._producer.stop(), timeout=5.0)
        except asyncio.TimeoutError:
            log.warning("Dead-letter producer stop timed out after 5s")
        self._producer = None
