# =============================================================================
# File: sms_bridge/relay/dispatcher.py
# Description: Sends relayed text into a room
# =============================================================================

from __future__ import annotations

import logging
from typing import Optional

from sms_bridge.common.exceptions import DeliveryError
from sms_bridge.relay.ports import ChatClientPort

log = logging.getLogger("sms_bridge.relay.dispatcher")


class MessageDispatcher:
    """One send per call. Retries belong to the relay unit."""

    def __init__(self, chat_client: ChatClientPort):
        self._chat = chat_client

    async def send(self, room_id: str, text: str, txn_id: Optional[str] = None) -> str:
        """Reusing txn_id for a retried send lets the homeserver drop the duplicate."""
        content = {"msgtype": "m.text", "body": text}
        try:
            event_id = await self._chat.send_message(room_id, content, txn_id=txn_id)
        except Exception as e:
            raise DeliveryError(f"Could not send message to {room_id}: {e}", room_id=room_id) from e

        log.debug(f"Message delivered to {room_id} as {event_id}")
        return event_id
