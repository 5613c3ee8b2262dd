# =============================================================================
# File: sms_bridge/relay/room_resolver.py
# Description: Maps a source id to a Matrix room: Room Index first, then the
#              homeserver alias directory, then room creation
# =============================================================================

from __future__ import annotations

import logging
from typing import Optional

from sms_bridge.common.exceptions import RoomResolutionError
from sms_bridge.infra.matrix.exceptions import is_room_in_use
from sms_bridge.infra.metrics import relay_metrics
from sms_bridge.infra.reliability.keyed_lock import KeyedLock
from sms_bridge.relay.aliases import alias_localpart, full_alias, room_name
from sms_bridge.relay.models import RoomIndexEntry
from sms_bridge.relay.ports import ChatClientPort, RoomIndexPort

log = logging.getLogger("sms_bridge.relay.room_resolver")


class RoomResolver:
    """
    Resolve-or-create for the room of one external sender.

    Index policy: when trust_local_index is set (the default), an indexed
    room id is returned without asking the homeserver. Callers can force a
    remote lookup with revalidate=True; the fresh result overwrites the
    index entry.

    Resolution for one source_id is serialized by a KeyedLock so that two
    messages from a new sender cannot create two rooms.
    """

    def __init__(
            self,
            chat_client: ChatClientPort,
            room_index: RoomIndexPort,
            domain: str,
            prefix: str,
            trust_local_index: bool = True,
            locks: Optional[KeyedLock] = None,
    ):
        self._chat = chat_client
        self._index = room_index
        self._domain = domain
        self._prefix = prefix
        self._trust_local_index = trust_local_index
        self._locks = locks or KeyedLock("room_resolution")

    def alias_for(self, source_id: str) -> str:
        return full_alias(alias_localpart(self._prefix, source_id), self._domain)

    async def resolve_or_create_room(self, source_id: str, revalidate: bool = False) -> str:
        """
        Return the room id for source_id, creating the room if needed.

        Raises:
            RoomResolutionError: index, alias directory and creation all failed,
                                 or the resulting mapping could not be stored
        """
        localpart = alias_localpart(self._prefix, source_id)
        alias = full_alias(localpart, self._domain)

        async with self._locks.lock_context(source_id):
            if self._trust_local_index and not revalidate:
                room_id = await self._lookup_index(source_id, alias)
                if room_id:
                    log.debug(f"Room index hit for {source_id}: {room_id}")
                    await self._store(source_id, room_id, alias)
                    return room_id

            room_id = await self._resolve_alias(alias)
            if room_id:
                log.info(f"Alias {alias} resolved remotely to {room_id}")
            else:
                room_id = await self._create(source_id, localpart, alias)

            await self._store(source_id, room_id, alias)
            return room_id

    async def _lookup_index(self, source_id: str, alias: str) -> Optional[str]:
        try:
            entry = await self._index.select_one({"source_id": source_id})
            if entry is None:
                # Entries written before the index was keyed by source
                entry = await self._index.select_one({"alias": alias})
        except Exception as e:
            log.warning(f"Room index lookup failed for {source_id}, treating as miss: {e}")
            return None
        return entry.room_id if entry else None

    async def _resolve_alias(self, alias: str) -> Optional[str]:
        try:
            return await self._chat.resolve_room_by_alias(alias)
        except Exception as e:
            log.warning(f"Alias resolution failed for {alias}, falling back to creation: {e}")
            return None

    async def _create(self, source_id: str, localpart: str, alias: str) -> str:
        try:
            room_id = await self._chat.create_room(localpart, room_name(source_id))
        except Exception as e:
            if not is_room_in_use(e):
                raise RoomResolutionError(
                    f"Could not resolve or create a room for {source_id}: {e}",
                    source_id=source_id,
                ) from e

            # Alias taken between our lookup and createRoom (another bridge instance)
            log.info(f"Alias {alias} already in use, resolving it again")
            try:
                room_id = await self._chat.resolve_room_by_alias(alias)
            except Exception as resolve_error:
                raise RoomResolutionError(
                    f"Alias {alias} is in use but could not be resolved: {resolve_error}",
                    source_id=source_id,
                ) from resolve_error
            if not room_id:
                raise RoomResolutionError(
                    f"Alias {alias} is in use but resolves to no room",
                    source_id=source_id,
                ) from e
            return room_id

        relay_metrics.rooms_created_total.inc()
        log.info(f"Created room {room_id} for {source_id} ({alias})")
        return room_id

    async def _store(self, source_id: str, room_id: str, alias: str) -> None:
        try:
            await self._index.upsert(RoomIndexEntry(source_id=source_id, room_id=room_id, alias=alias))
        except Exception as e:
            raise RoomResolutionError(
                f"Room {room_id} found for {source_id} but the index update failed: {e}",
                source_id=source_id,
            ) from e
