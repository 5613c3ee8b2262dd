from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest

from sms_bridge.infra.read_repos.room_index_repo import RoomIndexRepo, build_where
from sms_bridge.relay.models import RoomIndexEntry

NOW = datetime(2024, 1, 1, tzinfo=timezone.utc)


def row(source_id="15550001111", room_id="!r:example.org", alias="#sms_15550001111:example.org"):
    return {"source_id": source_id, "room_id": room_id, "alias": alias, "created_at": NOW, "updated_at": NOW}


@pytest.fixture
def pg():
    client = MagicMock()
    client.fetchrow = AsyncMock(return_value=None)
    client.fetch = AsyncMock(return_value=[])
    client.execute_in_transaction = AsyncMock()
    return client


def test_build_where_numbers_placeholders():
    where, args = build_where({"source_id": "1", "alias": "#a:b"})

    assert where == "WHERE source_id = $1 AND alias = $2"
    assert args == ["1", "#a:b"]


@pytest.mark.parametrize("bad", [{}, {"body": "x"}])
def test_build_where_rejects_bad_filters(bad):
    with pytest.raises(ValueError):
        build_where(bad)


@pytest.mark.asyncio
async def test_select_one_maps_row(pg):
    pg.fetchrow.return_value = row()

    entry = await RoomIndexRepo(pg).select_one({"source_id": "15550001111"})

    assert (entry.source_id, entry.room_id, entry.alias) == ("15550001111", "!r:example.org", "#sms_15550001111:example.org")
    assert entry.created_at == NOW
    query, arg = pg.fetchrow.await_args.args
    assert "WHERE source_id = $1" in query
    assert query.endswith("LIMIT 1")
    assert arg == "15550001111"


@pytest.mark.asyncio
async def test_select_one_miss(pg):
    assert await RoomIndexRepo(pg).select_one({"alias": "#nope:example.org"}) is None


@pytest.mark.asyncio
async def test_legacy_row_maps_to_empty_source(pg):
    pg.fetch.return_value = [row(source_id=None)]

    entries = await RoomIndexRepo(pg).select({"alias": "#sms_15550001111:example.org"})

    assert entries[0].source_id == ""


@pytest.mark.asyncio
async def test_upsert_adopts_legacy_then_upserts_in_one_transaction(pg):
    entry = RoomIndexEntry("15550001111", "!r:example.org", "#sms_15550001111:example.org")

    await RoomIndexRepo(pg).upsert(entry)

    (statements,) = pg.execute_in_transaction.await_args.args
    assert len(statements) == 2
    adopt, upsert = statements
    assert adopt[0].strip().startswith("UPDATE room_index")
    assert "ON CONFLICT (source_id)" in upsert[0]
    assert adopt[1:] == upsert[1:] == ("15550001111", "!r:example.org", "#sms_15550001111:example.org")


@pytest.mark.asyncio
async def test_upsert_requires_source(pg):
    with pytest.raises(ValueError):
        await RoomIndexRepo(pg).upsert(RoomIndexEntry("", "!r:example.org", "#a:b"))

    pg.execute_in_transaction.assert_not_awaited()


# =============================================================================
# Round trip through the in-memory index used by the relay tests
# =============================================================================

SOURCE = "15550001111"
ALIAS = "#sms_15550001111:example.org"


@pytest.mark.asyncio
async def test_upserted_entry_found_by_source_and_alias(room_index):
    await room_index.upsert(RoomIndexEntry(SOURCE, "!r:example.org", ALIAS))

    by_source = await room_index.select_one({"source_id": SOURCE})
    by_alias = await room_index.select_one({"alias": ALIAS})

    assert by_source == by_alias
    assert (by_source.source_id, by_source.room_id, by_source.alias) == (SOURCE, "!r:example.org", ALIAS)


@pytest.mark.asyncio
async def test_repeated_upsert_keeps_room_id(room_index):
    entry = RoomIndexEntry(SOURCE, "!r:example.org", ALIAS)

    await room_index.upsert(entry)
    await room_index.upsert(entry)

    assert await room_index.select({"source_id": SOURCE}) == [entry]
    assert (await room_index.select_one({"alias": ALIAS})).room_id == "!r:example.org"


@pytest.mark.asyncio
async def test_legacy_row_adopted_then_read_by_alias(room_index):
    room_index.add_legacy_entry(ALIAS, "!legacy:example.org")

    legacy = await room_index.select_one({"alias": ALIAS})
    assert legacy.source_id == ""

    await room_index.upsert(RoomIndexEntry(SOURCE, legacy.room_id, ALIAS))

    entries = await room_index.select({"alias": ALIAS})
    assert [(e.source_id, e.room_id) for e in entries] == [(SOURCE, "!legacy:example.org")]
    assert (await room_index.select_one({"source_id": SOURCE})).room_id == "!legacy:example.org"
