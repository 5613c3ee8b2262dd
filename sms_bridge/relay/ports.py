# =============================================================================
# File: sms_bridge/relay/ports.py
# Description: Port interfaces consumed by the relay components
# Pattern: Hexagonal Architecture / Ports & Adapters
# =============================================================================

from __future__ import annotations

from typing import Protocol, Optional, List, Dict, Any, runtime_checkable

from sms_bridge.relay.models import RoomIndexEntry


@runtime_checkable
class ChatClientPort(Protocol):
    """
    Port: Matrix client-server operations used by the relay.

    Implemented by: MatrixClient (sms_bridge/infra/matrix/client.py)
    Test double: FakeMatrixClient (tests/fakes/fake_matrix_client.py)

    Errors are raised as MatrixError subclasses
    (sms_bridge/infra/matrix/exceptions.py).
    """

    async def resolve_room_by_alias(self, alias: str) -> Optional[str]:
        """Return the room id an alias points to, or None when the alias is unknown."""
        ...

    async def create_room(self, alias_localpart: str, name: str) -> str:
        """Create a private room published under #alias_localpart:domain and return its id."""
        ...

    async def get_room_state(self, room_id: str) -> List[Dict[str, Any]]:
        """Return the room's current state events in homeserver order."""
        ...

    async def invite(self, room_id: str, user_id: str) -> None:
        ...

    async def send_message(self, room_id: str, content: Dict[str, Any], txn_id: Optional[str] = None) -> str:
        """Send an m.room.message event and return its event id; a repeated txn_id is not posted twice."""
        ...


@runtime_checkable
class RoomIndexPort(Protocol):
    """
    Port: Room Index store.

    Implemented by: RoomIndexRepo (sms_bridge/infra/read_repos/room_index_repo.py)
    Test double: InMemoryRoomIndex (tests/fakes/fake_room_index.py)

    Filters are equality matches over source_id, alias and room_id.
    """

    async def select_one(self, filter: Dict[str, str]) -> Optional[RoomIndexEntry]:
        ...

    async def select(self, filter: Dict[str, str]) -> List[RoomIndexEntry]:
        ...

    async def upsert(self, entry: RoomIndexEntry) -> None:
        """Insert or replace the entry for entry.source_id."""
        ...


@runtime_checkable
class DeadLetterPort(Protocol):
    """
    Port: sink for queue events whose relay unit exhausted its retries.

    Implemented by: KafkaDeadLetterPublisher (sms_bridge/infra/event_bus/dead_letter.py)
    """

    async def publish(self, event: Any, attempt: Any) -> None:
        ...
