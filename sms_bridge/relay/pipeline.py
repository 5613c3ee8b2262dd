# =============================================================================
# File: sms_bridge/relay/pipeline.py
# Description: Relay pipeline: parse a queue event, then resolve room,
#              ensure membership and send as one retryable unit
# =============================================================================

from __future__ import annotations

import logging
import time
from typing import Optional, TYPE_CHECKING

from sms_bridge.common.exceptions import MalformedInputError
from sms_bridge.config.reliability_config import RetryConfig
from sms_bridge.infra.metrics import relay_metrics
from sms_bridge.infra.reliability.retry import retry_async, RetryExhaustedError
from sms_bridge.relay.dispatcher import MessageDispatcher
from sms_bridge.relay.membership import MembershipEnsurer
from sms_bridge.relay.models import InboundMessage, RelayAttempt, RelayState
from sms_bridge.relay.ports import DeadLetterPort
from sms_bridge.relay.room_resolver import RoomResolver

if TYPE_CHECKING:
    from sms_bridge.infra.event_bus.kafka_consumer import QueueEvent

log = logging.getLogger("sms_bridge.relay.pipeline")


class RelayPipeline:
    """
    Drives one queue event through
    RECEIVED -> RESOLVING_ROOM -> ENSURING_MEMBERSHIP -> SENDING -> DONE.

    A failure in any stage re-runs the whole unit from RESOLVING_ROOM under
    the configured RetryConfig. Terminal outcomes are DONE, FAILED (retries
    exhausted) and DROPPED (malformed payload). handle() only raises on
    cancellation.
    """

    def __init__(
            self,
            resolver: RoomResolver,
            ensurer: MembershipEnsurer,
            dispatcher: MessageDispatcher,
            target_user_id: str,
            retry_config: Optional[RetryConfig] = None,
            dead_letter: Optional[DeadLetterPort] = None,
    ):
        self._resolver = resolver
        self._ensurer = ensurer
        self._dispatcher = dispatcher
        self._target_user_id = target_user_id
        self._retry_config = retry_config or RetryConfig()
        self._dead_letter = dead_letter

    async def handle(self, event: "QueueEvent") -> RelayAttempt:
        attempt = RelayAttempt(topic=event.topic, partition=event.partition, offset=event.offset)
        started = time.monotonic()
        relay_metrics.messages_received_total.labels(topic=event.topic).inc()

        try:
            attempt.message = InboundMessage.parse(event.value)
        except MalformedInputError as e:
            attempt.error = e
            attempt.transition(RelayState.DROPPED)
            relay_metrics.messages_dropped_total.labels(reason="malformed").inc()
            relay_metrics.relay_completed_total.labels(outcome=attempt.state.value).inc()
            log.warning(
                f"Dropping malformed message at {event.topic}[{event.partition}]@{event.offset}: {e}",
                extra=attempt.log_context(),
            )
            return attempt

        try:
            await retry_async(
                self._relay_unit,
                attempt,
                retry_config=self._retry_config,
                context=f"relay of {attempt.source_id}",
            )
        except Exception as e:
            attempt.error = e.last_error if isinstance(e, RetryExhaustedError) else e
            attempt.transition(RelayState.FAILED)
            log.error(
                f"Relay failed for {attempt.source_id} "
                f"({event.topic}[{event.partition}]@{event.offset}) "
                f"after {attempt.attempts} attempts: {attempt.error}",
                extra=attempt.log_context(),
            )
            await self._publish_dead_letter(event, attempt)
        else:
            attempt.transition(RelayState.DONE)
            log.info(
                f"Relayed message from {attempt.source_id} to {attempt.room_id} ({attempt.event_id})",
                extra=attempt.log_context(),
            )

        relay_metrics.relay_completed_total.labels(outcome=attempt.state.value).inc()
        relay_metrics.relay_duration_seconds.observe(time.monotonic() - started)
        return attempt

    async def _relay_unit(self, attempt: RelayAttempt) -> None:
        attempt.attempts += 1
        relay_metrics.relay_attempts_total.inc()

        attempt.transition(RelayState.RESOLVING_ROOM)
        attempt.room_id = await self._resolver.resolve_or_create_room(attempt.source_id)

        attempt.transition(RelayState.ENSURING_MEMBERSHIP)
        await self._ensurer.ensure_member(attempt.room_id, self._target_user_id)

        attempt.transition(RelayState.SENDING)
        attempt.event_id = await self._dispatcher.send(attempt.room_id, attempt.message.body, txn_id=attempt.txn_id)

    async def _publish_dead_letter(self, event: "QueueEvent", attempt: RelayAttempt) -> None:
        if self._dead_letter is None:
            return
        try:
            await self._dead_letter.publish(event, attempt)
        except Exception as e:
            log.error(
                f"Dead-letter publish failed for {event.topic}[{event.partition}]@{event.offset}: {e}",
                extra=attempt.log_context(),
            )
