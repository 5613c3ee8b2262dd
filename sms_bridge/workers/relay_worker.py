# sms_bridge/workers/relay_worker.py
"""
Relay Worker

Wires the bridge together and runs it until a signal arrives:
- Loads the application service registration
- Opens the Room Index (PostgreSQL) and the Matrix client
- Builds resolver → ensurer → dispatcher → pipeline
- Consumes the inbound topic and hands each record to the pipeline

Shutdown order: stop polling, drain in-flight relay units (bounded by
shutdown_timeout_seconds), stop the consumer, close the dead-letter
producer, the Matrix client and the pool.
"""

import asyncio
import logging
import os
import signal
import time
from typing import Optional

from sms_bridge.config.bridge_config import BridgeConfig
from sms_bridge.config.logging_config import log_section
from sms_bridge.config.reliability_config import ReliabilityConfigs
from sms_bridge.infra.event_bus.dead_letter import KafkaDeadLetterPublisher
from sms_bridge.infra.event_bus.kafka_consumer import KafkaInboundConsumer
from sms_bridge.infra.matrix.client import MatrixClient
from sms_bridge.infra.matrix.registration import Registration, load_registration
from sms_bridge.infra.metrics.relay_metrics import start_metrics_server
from sms_bridge.infra.persistence.pg_client import PgClient
from sms_bridge.infra.read_repos.room_index_repo import RoomIndexRepo
from sms_bridge.infra.reliability.keyed_lock import KeyedLock
from sms_bridge.relay.dispatcher import MessageDispatcher
from sms_bridge.relay.membership import MembershipEnsurer
from sms_bridge.relay.pipeline import RelayPipeline
from sms_bridge.relay.ports import ChatClientPort, RoomIndexPort, DeadLetterPort
from sms_bridge.relay.room_resolver import RoomResolver

log = logging.getLogger("sms_bridge.worker")


def build_resolver(config: BridgeConfig, chat_client: ChatClientPort, room_index: RoomIndexPort) -> RoomResolver:
    return RoomResolver(
        chat_client=chat_client,
        room_index=room_index,
        domain=config.domain,
        prefix=config.prefix,
        trust_local_index=config.trust_local_index,
        locks=KeyedLock("room_resolution"),
    )


def build_pipeline(
        config: BridgeConfig,
        chat_client: ChatClientPort,
        room_index: RoomIndexPort,
        dead_letter: Optional[DeadLetterPort] = None,
) -> RelayPipeline:
    """Relay components over the given adapters, configured from `config`."""
    return RelayPipeline(
        resolver=build_resolver(config, chat_client, room_index),
        ensurer=MembershipEnsurer(chat_client),
        dispatcher=MessageDispatcher(chat_client),
        target_user_id=config.target_user_id,
        retry_config=ReliabilityConfigs.relay_retry(config),
        dead_letter=dead_letter,
    )


def build_matrix_client(config: BridgeConfig, registration: Registration) -> MatrixClient:
    return MatrixClient(
        homeserver_url=config.homeserver_url,
        as_token=registration.as_token,
        bot_user_id=registration.bot_user_id(config.domain),
        timeout_seconds=config.http_timeout_seconds,
    )


def build_pg_client(config: BridgeConfig) -> PgClient:
    return PgClient(
        dsn=config.database_dsn.get_secret_value(),
        min_size=config.database_pool_min_size,
        max_size=config.database_pool_max_size,
    )


class RelayWorker:
    """Owns every long-lived resource of a running bridge."""

    def __init__(self, config: BridgeConfig):
        self.config = config
        self.matrix: Optional[MatrixClient] = None
        self.pg: Optional[PgClient] = None
        self.dead_letter: Optional[KafkaDeadLetterPublisher] = None
        self.pipeline: Optional[RelayPipeline] = None
        self.consumer: Optional[KafkaInboundConsumer] = None

        self._consumer_task: Optional[asyncio.Task] = None
        self._shutdown_event = asyncio.Event()
        self._signal_count = 0
        self._start_time = time.time()

    async def initialize(self) -> None:
        config = self.config
        log_section(log, "SMS bridge starting")
        log.debug(f"Configuration: {config!r}")

        registration = load_registration(config.registration_path)
        self.matrix = build_matrix_client(config, registration)

        self.pg = build_pg_client(config)
        await self.pg.init_pool()
        await self.pg.run_schema()

        if config.dead_letter_topic:
            self.dead_letter = KafkaDeadLetterPublisher(config.bootstrap_servers, config.dead_letter_topic)

        self.pipeline = build_pipeline(config, self.matrix, RoomIndexRepo(self.pg), self.dead_letter)

        self.consumer = KafkaInboundConsumer(
            topic=config.kafka_topic,
            group_id=config.kafka_group_id,
            bootstrap_servers=config.bootstrap_servers,
            handler=self.pipeline.handle,
            auto_offset_reset=config.kafka_auto_offset_reset,
            max_in_flight=config.max_in_flight,
            shutdown_timeout_seconds=config.shutdown_timeout_seconds,
        )

        start_metrics_server(config.metrics_port)

        try:
            bot = await self.matrix.whoami()
            log.info(f"Homeserver accepted application service token as {bot}")
        except Exception as e:
            log.warning(f"Homeserver token check failed, continuing: {e}")

        log.info(
            f"Bridge configured: domain={config.domain} prefix={config.prefix} "
            f"target={config.target_user_id} topic={config.kafka_topic} "
            f"trust_local_index={config.trust_local_index}"
        )

    async def start(self) -> None:
        if self.consumer is None:
            raise RuntimeError("Worker must be initialized before starting")
        await self.consumer.start()
        self._consumer_task = asyncio.create_task(self.consumer.run(), name="sms-bridge-consumer")
        log.info("Relay worker started")

    async def wait_for_shutdown(self) -> None:
        """Return on a shutdown signal; re-raise if the consumer loop dies."""
        stop_waiter = asyncio.create_task(self._shutdown_event.wait())
        waiting = {stop_waiter}
        if self._consumer_task is not None:
            waiting.add(self._consumer_task)

        done, _ = await asyncio.wait(waiting, return_when=asyncio.FIRST_COMPLETED)
        if not stop_waiter.done():
            stop_waiter.cancel()

        if self._consumer_task in done and not self._consumer_task.cancelled():
            error = self._consumer_task.exception()
            if error is not None:
                raise error

    async def stop(self) -> None:
        log.info("Stopping relay worker")

        if self.consumer is not None:
            self.consumer.request_stop()
            if self._consumer_task is not None and not self._consumer_task.done():
                # The loop notices the stop request after its current poll
                _, pending = await asyncio.wait({self._consumer_task}, timeout=5.0)
                for task in pending:
                    task.cancel()
                await asyncio.gather(self._consumer_task, return_exceptions=True)
            await self.consumer.stop()

        if self.dead_letter is not None:
            await self.dead_letter.close()
        if self.matrix is not None:
            await self.matrix.close()
        if self.pg is not None:
            await self.pg.close()

        uptime = int(time.time() - self._start_time)
        dispatched = self.consumer.messages_dispatched if self.consumer else 0
        log.info(f"Relay worker stopped. Uptime: {uptime}s, messages dispatched: {dispatched}")

    def handle_signal(self, sig, frame):
        """
        1st signal: graceful shutdown
        2nd+ signal: force exit
        """
        self._signal_count += 1
        log.warning(f"Received signal {signal.Signals(sig).name} (count: {self._signal_count})")

        if self._signal_count == 1:
            log.warning("Initiating graceful shutdown...")
            self._shutdown_event.set()
        else:
            log.error("Multiple signals received - forcing immediate exit")
            os._exit(1)


async def run_worker(config: BridgeConfig) -> None:
    """Run the bridge until SIGINT/SIGTERM. Errors propagate to the caller."""
    worker = RelayWorker(config)
    try:
        await worker.initialize()
        await worker.start()

        signal.signal(signal.SIGINT, worker.handle_signal)
        signal.signal(signal.SIGTERM, worker.handle_signal)

        await worker.wait_for_shutdown()
    finally:
        try:
            await asyncio.wait_for(worker.stop(), timeout=config.shutdown_timeout_seconds + 10.0)
        except asyncio.TimeoutError:
            log.error("Graceful shutdown timed out")
        log.info("Worker shutdown complete")


async def resolve_source(config: BridgeConfig, source_id: str) -> str:
    """Resolve one source against the homeserver and overwrite its index entry."""
    registration = load_registration(config.registration_path)
    matrix = build_matrix_client(config, registration)
    pg = build_pg_client(config)
    try:
        await pg.init_pool()
        await pg.run_schema()
        resolver = build_resolver(config, matrix, RoomIndexRepo(pg))
        return await resolver.resolve_or_create_room(source_id, revalidate=True)
    finally:
        await matrix.close()
        await pg.close()
