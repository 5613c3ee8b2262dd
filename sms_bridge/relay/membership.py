# =============================================================================
# File: sms_bridge/relay/membership.py
# Description: Makes sure the target account is joined or invited to a room
# =============================================================================

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from sms_bridge.common.exceptions import MembershipError
from sms_bridge.infra.matrix.exceptions import is_already_member
from sms_bridge.infra.metrics import relay_metrics
from sms_bridge.relay.ports import ChatClientPort

log = logging.getLogger("sms_bridge.relay.membership")

MEMBER_EVENT = "m.room.member"


def current_membership(state: List[Dict[str, Any]], account_id: str) -> Optional[str]:
    """
    Membership of account_id according to a room state snapshot.

    The last matching m.room.member event in snapshot order wins.
    None means the account has no membership event at all.
    """
    membership = None
    for event in state:
        if event.get("type") != MEMBER_EVENT or event.get("state_key") != account_id:
            continue
        membership = (event.get("content") or {}).get("membership")
    return membership


class MembershipEnsurer:

    def __init__(self, chat_client: ChatClientPort):
        self._chat = chat_client

    async def ensure_member(self, room_id: str, account_id: str) -> None:
        """
        Invite account_id unless it already holds "join" in room_id.

        Raises:
            MembershipError: state query or invite rejected by the homeserver
        """
        try:
            state = await self._chat.get_room_state(room_id)
        except Exception as e:
            raise MembershipError(
                f"Could not read state of {room_id}: {e}",
                room_id=room_id,
                account_id=account_id,
            ) from e

        membership = current_membership(state, account_id)
        if membership == "join":
            log.debug(f"{account_id} already joined {room_id}")
            return

        try:
            await self._chat.invite(room_id, account_id)
        except Exception as e:
            if is_already_member(e):
                log.debug(f"{account_id} already invited to {room_id}: {e}")
                return
            raise MembershipError(
                f"Could not invite {account_id} to {room_id}: {e}",
                room_id=room_id,
                account_id=account_id,
            ) from e

        relay_metrics.invites_sent_total.inc()
        log.info(f"Invited {account_id} to {room_id} (membership was {membership or 'none'})")
