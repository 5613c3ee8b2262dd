# =============================================================================
# File: sms_bridge/relay/models.py
# Description: Room index entries, inbound messages and relay attempt state
# =============================================================================

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from sms_bridge.common.exceptions import MalformedInputError


def normalize_source_id(raw: str) -> str:
    """Canonical sender id: surrounding whitespace and a leading '+' removed."""
    value = raw.strip()
    if value.startswith("+"):
        value = value[1:]
    return value


@dataclass(frozen=True)
class RoomIndexEntry:
    """One source → room mapping held in the Room Index."""
    source_id: str
    room_id: str
    alias: str
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class InboundMessage(BaseModel):
    """Payload of one queue record: {"timestamp": ..., "from": ..., "body": ...}"""

    model_config = ConfigDict(frozen=True)

    timestamp: Optional[float] = None
    from_: str = Field(alias="from")
    body: str

    @property
    def source_id(self) -> str:
        return normalize_source_id(self.from_)

    @classmethod
    def parse(cls, raw: Union[bytes, str, None]) -> "InboundMessage":
        """
        Decode a raw queue value.

        Raises:
            MalformedInputError: not UTF-8, not a JSON object, or missing/invalid fields
        """
        if raw is None:
            raise MalformedInputError("Empty queue value")

        try:
            text = raw.decode("utf-8") if isinstance(raw, bytes) else raw
            data = json.loads(text)
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise MalformedInputError(f"Undecodable payload: {e}") from e

        if not isinstance(data, dict):
            raise MalformedInputError(f"Expected a JSON object, got {type(data).__name__}")

        try:
            message = cls.model_validate(data)
        except ValidationError as e:
            fields = ", ".join(".".join(str(p) for p in err["loc"]) for err in e.errors())
            raise MalformedInputError(f"Invalid payload fields: {fields}") from e

        if not message.source_id:
            raise MalformedInputError("Empty 'from' field")

        return message


class RelayState(str, Enum):
    RECEIVED = "received"
    RESOLVING_ROOM = "resolving_room"
    ENSURING_MEMBERSHIP = "ensuring_membership"
    SENDING = "sending"
    DONE = "done"
    FAILED = "failed"
    DROPPED = "dropped"

    @property
    def is_terminal(self) -> bool:
        return self in (RelayState.DONE, RelayState.FAILED, RelayState.DROPPED)


@dataclass
class RelayAttempt:
    """In-memory record of one queue event moving through the relay unit."""
    topic: str
    partition: int
    offset: int
    message: Optional[InboundMessage] = None
    state: RelayState = RelayState.RECEIVED
    attempts: int = 0
    room_id: Optional[str] = None
    event_id: Optional[str] = None
    error: Optional[BaseException] = None
    history: list = field(default_factory=list)

    @property
    def source_id(self) -> Optional[str]:
        return self.message.source_id if self.message else None

    @property
    def txn_id(self) -> str:
        """Transaction id for the send; stable across retries of the same record."""
        return f"{self.topic}.{self.partition}.{self.offset}"

    def transition(self, state: RelayState) -> None:
        self.history.append(state)
        self.state = state

    def log_context(self) -> dict:
        return {
            "source_id": self.source_id,
            "room_id": self.room_id,
            "topic": self.topic,
            "partition": self.partition,
            "offset": self.offset,
            "attempt": self.attempts,
            "state": self.state.value,
        }
