# =============================================================================
# File: sms_bridge/infra/read_repos/room_index_repo.py
# Description: PostgreSQL Room Index (source id -> room id)
# =============================================================================

from __future__ import annotations

import logging
from typing import Optional, List, Dict, Tuple, Any

from sms_bridge.infra.persistence.pg_client import PgClient
from sms_bridge.relay.models import RoomIndexEntry

log = logging.getLogger("sms_bridge.room_index.repo")

FILTER_COLUMNS = ("source_id", "alias", "room_id")

_SELECT = "SELECT source_id, room_id, alias, created_at, updated_at FROM room_index"

# Rows keyed by the current schema (source_id set) win over legacy alias-only rows
_ORDER = "ORDER BY (source_id IS NULL), updated_at DESC"

_ADOPT_LEGACY = """
    UPDATE room_index
    SET source_id = $1, room_id = $2, updated_at = NOW()
    WHERE id = (
        SELECT id FROM room_index
        WHERE alias = $3 AND source_id IS NULL
        ORDER BY updated_at DESC
        LIMIT 1
    )
    AND NOT EXISTS (SELECT 1 FROM room_index WHERE source_id = $1)
"""

_UPSERT = """
    INSERT INTO room_index (source_id, room_id, alias, created_at, updated_at)
    VALUES ($1, $2, $3, NOW(), NOW())
    ON CONFLICT (source_id) DO UPDATE SET
        room_id = EXCLUDED.room_id,
        alias = EXCLUDED.alias,
        updated_at = NOW()
"""


def build_where(filter: Dict[str, str]) -> Tuple[str, List[Any]]:
    """
    Translate an equality filter into a WHERE clause.

    Raises:
        ValueError: empty filter or unknown column
    """
    if not filter:
        raise ValueError("Room index filter must not be empty")

    clauses = []
    args: List[Any] = []
    for column, value in filter.items():
        if column not in FILTER_COLUMNS:
            raise ValueError(f"Unknown room index column: {column}")
        args.append(value)
        clauses.append(f"{column} = ${len(args)}")
    return "WHERE " + " AND ".join(clauses), args


def row_to_entry(row) -> RoomIndexEntry:
    return RoomIndexEntry(
        source_id=row["source_id"] or "",
        room_id=row["room_id"],
        alias=row["alias"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


class RoomIndexRepo:
    """
    Room Index backed by the room_index table.

    Upserts are keyed by source_id. A legacy alias-only row is adopted by
    the first upsert for its alias, so at most one row exists per source.
    """

    def __init__(self, pg: PgClient):
        self._pg = pg

    async def select_one(self, filter: Dict[str, str]) -> Optional[RoomIndexEntry]:
        where, args = build_where(filter)
        row = await self._pg.fetchrow(f"{_SELECT} {where} {_ORDER} LIMIT 1", *args)
        return row_to_entry(row) if row else None

    async def select(self, filter: Dict[str, str]) -> List[RoomIndexEntry]:
        where, args = build_where(filter)
        rows = await self._pg.fetch(f"{_SELECT} {where} {_ORDER}", *args)
        return [row_to_entry(row) for row in rows]

    async def upsert(self, entry: RoomIndexEntry) -> None:
        if not entry.source_id:
            raise ValueError("Room index entries require a source_id")

        await self._pg.execute_in_transaction([
            (_ADOPT_LEGACY, entry.source_id, entry.room_id, entry.alias),
            (_UPSERT, entry.source_id, entry.room_id, entry.alias),
        ])
        log.debug(f"Room index upserted: {entry.source_id} -> {entry.room_id}")
