# =============================================================================
# File: sms_bridge/infra/event_bus/kafka_consumer.py
# Description: Inbound topic consumer. Polls with getmany, hands each record
#              to the relay handler as a task and commits per batch
#              (ack-then-process)
# =============================================================================

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, Set

from aiokafka import AIOKafkaConsumer
from aiokafka.errors import KafkaConnectionError

from sms_bridge.config.reliability_config import RetryConfig, ReliabilityConfigs
from sms_bridge.infra.reliability.retry import retry_async

log = logging.getLogger("sms_bridge.kafka_consumer")

# Poll backoff when the topic is idle
EMPTY_POLL_INITIAL_BACKOFF = 0.05
EMPTY_POLL_MAX_BACKOFF = 1.0
EMPTY_POLL_BACKOFF_MULTIPLIER = 1.5
MAX_CONSECUTIVE_ERRORS = 5


@dataclass(frozen=True)
class QueueEvent:
    """One record as delivered by the consumer."""
    topic: str
    partition: int
    offset: int
    value: Optional[bytes]
    key: Optional[bytes] = None

    @classmethod
    def from_record(cls, record: Any) -> "QueueEvent":
        return cls(
            topic=record.topic,
            partition=record.partition,
            offset=record.offset,
            value=record.value,
            key=record.key,
        )


Handler = Callable[[QueueEvent], Awaitable[Any]]


class KafkaInboundConsumer:
    """
    Single-topic consumer feeding the relay pipeline.

    Records are scheduled as independent tasks without awaiting them; a
    semaphore bounds how many are in flight. Offsets are committed once a
    batch has been dispatched, regardless of relay outcome.
    """

    def __init__(
            self,
            topic: str,
            group_id: str,
            bootstrap_servers: list,
            handler: Handler,
            auto_offset_reset: str = "earliest",
            max_in_flight: int = 100,
            shutdown_timeout_seconds: float = 30.0,
            poll_timeout_ms: int = 1000,
            max_poll_records: int = 500,
            retry_config: Optional[RetryConfig] = None,
            consumer_factory: Optional[Callable[..., Any]] = None,
    ):
        self.topic = topic
        self.group_id = group_id
        self._bootstrap_servers = bootstrap_servers
        self._handler = handler
        self._auto_offset_reset = auto_offset_reset
        self._max_in_flight = max_in_flight
        self._shutdown_timeout = shutdown_timeout_seconds
        self._poll_timeout_ms = poll_timeout_ms
        self._max_poll_records = max_poll_records
        self._retry_config = retry_config or ReliabilityConfigs.kafka_retry()
        self._consumer_factory = consumer_factory or AIOKafkaConsumer

        self._consumer = None
        self._semaphore = asyncio.Semaphore(max_in_flight)
        self._tasks: Set[asyncio.Task] = set()
        self._stop_event = asyncio.Event()
        self._has_uncommitted = False

        self.messages_dispatched = 0
        self.handler_errors = 0

    @property
    def in_flight(self) -> int:
        return len(self._tasks)

    async def start(self) -> None:
        """Create and start the underlying consumer (retried)."""

        async def create_and_start_consumer():
            consumer = self._consumer_factory(
                self.topic,
                bootstrap_servers=",".join(self._bootstrap_servers),
                group_id=self.group_id,
                enable_auto_commit=False,
                auto_offset_reset=self._auto_offset_reset,
            )
            try:
                await consumer.start()
            except Exception:
                try:
                    await asyncio.wait_for(consumer.stop(), timeout=5.0)
                except Exception as stop_error:
                    log.debug(f"Cleanup after failed start raised: {stop_error}")
                raise
            return consumer

        self._consumer = await retry_async(
            create_and_start_consumer,
            retry_config=self._retry_config,
            context=f"Starting consumer for topic '{self.topic}'",
        )
        log.info(f"Consumer started for topic '{self.topic}' with group '{self.group_id}'")

    async def run(self) -> None:
        """Poll until stop() is requested."""
        if self._consumer is None:
            raise RuntimeError("Consumer not started")

        consumer = self._consumer
        empty_polls = 0
        consecutive_errors = 0

        try:
            while not self._stop_event.is_set():
                try:
                    records = await consumer.getmany(
                        timeout_ms=self._poll_timeout_ms,
                        max_records=self._max_poll_records,
                    )

                    if not records:
                        empty_polls += 1
                        backoff = min(
                            EMPTY_POLL_INITIAL_BACKOFF * (EMPTY_POLL_BACKOFF_MULTIPLIER ** (empty_polls - 1)),
                            EMPTY_POLL_MAX_BACKOFF,
                        )
                        await asyncio.sleep(backoff)
                        continue

                    empty_polls = 0
                    if consecutive_errors:
                        log.info(f"Consumer recovered after {consecutive_errors} errors")
                        consecutive_errors = 0

                    for messages in records.values():
                        for record in messages:
                            await self._dispatch(QueueEvent.from_record(record))

                    await self._commit()

                except asyncio.CancelledError:
                    raise

                except (KafkaConnectionError, ConnectionError, OSError) as e:
                    consecutive_errors += 1
                    log.error(
                        f"Kafka connection error on '{self.topic}': {e}. "
                        f"Consecutive errors: {consecutive_errors}/{MAX_CONSECUTIVE_ERRORS}"
                    )
                    await asyncio.sleep(min(2 ** consecutive_errors, 60))

                except Exception as e:
                    consecutive_errors += 1
                    log.error(f"Unexpected error in consumer loop for '{self.topic}': {e}", exc_info=True)
                    if consecutive_errors >= MAX_CONSECUTIVE_ERRORS:
                        log.error(f"Too many errors, stopping consumer for '{self.topic}'")
                        raise
                    await asyncio.sleep(min(2 ** consecutive_errors, 30))
        finally:
            await self._commit()
            log.info(f"Consumer loop ended for '{self.topic}'")

    async def _dispatch(self, event: QueueEvent) -> None:
        """Schedule the handler; waits only while max_in_flight units are running."""
        await self._semaphore.acquire()
        task = asyncio.create_task(
            self._run_handler(event),
            name=f"relay-{event.topic}-{event.partition}-{event.offset}",
        )
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        self.messages_dispatched += 1
        self._has_uncommitted = True

    async def _run_handler(self, event: QueueEvent) -> None:
        try:
            await self._handler(event)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self.handler_errors += 1
            log.error(
                f"Handler error for {event.topic}[{event.partition}]@{event.offset}: {e}",
                exc_info=True,
            )
        finally:
            self._semaphore.release()

    async def _commit(self) -> None:
        if not self._has_uncommitted or self._consumer is None:
            return
        try:
            await self._consumer.commit()
            self._has_uncommitted = False
            log.debug(f"Committed offsets for '{self.topic}'")
        except Exception as e:
            log.error(f"Failed to commit offsets for '{self.topic}': {e}")

    def request_stop(self) -> None:
        self._stop_event.set()

    async def stop(self) -> None:
        """
        Stop polling, wait for in-flight relay units up to the shutdown
        timeout, cancel the rest, then stop the consumer.
        """
        self.request_stop()

        pending = set(self._tasks)
        if pending:
            log.info(f"Waiting for {len(pending)} in-flight relay units")
            done, still_running = await asyncio.wait(pending, timeout=self._shutdown_timeout)
            if still_running:
                log.warning(f"Cancelling {len(still_running)} relay units after {self._shutdown_timeout}s")
                for task in still_running:
                    task.cancel()
                await asyncio.gather(*still_running, return_exceptions=True)

        if self._consumer is not None:
            await self._commit()
            try:
                # aiokafka stop() can hang on a dead broker
                await asyncio.wait_for(self._consumer.stop(), timeout=5.0)
                log.info(f"Stopped consumer for '{self.topic}'")
            except asyncio.TimeoutError:
                log.warning(f"Consumer stop timed out after 5s for '{self.topic}'")
            except Exception as e:
                log.error(f"Error stopping consumer for '{self.topic}': {e}")
            self._consumer = None
