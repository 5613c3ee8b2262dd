import asyncio

import httpx
import pytest

from sms_bridge.common.exceptions import DeliveryError, MembershipError
from sms_bridge.config.reliability_config import RetryConfig
from sms_bridge.infra.matrix.client import MatrixClient
from sms_bridge.relay.dispatcher import MessageDispatcher
from sms_bridge.relay.membership import MembershipEnsurer
from sms_bridge.relay.models import RelayState
from sms_bridge.relay.pipeline import RelayPipeline
from tests.conftest import TARGET_USER, make_event

ALIAS = "#sms_15550001111:example.org"


class RecordingDeadLetter:
    def __init__(self, fail: bool = False):
        self.published = []
        self._fail = fail

    async def publish(self, event, attempt):
        if self._fail:
            raise ConnectionError("broker down")
        self.published.append((event, attempt))


@pytest.mark.asyncio
async def test_first_message_creates_room_invites_and_sends(pipeline, fake_client, room_index):
    attempt = await pipeline.handle(make_event({"from": "+15550001111", "body": "hello"}))

    assert attempt.state is RelayState.DONE
    assert attempt.attempts == 1
    assert attempt.history == [
        RelayState.RESOLVING_ROOM, RelayState.ENSURING_MEMBERSHIP, RelayState.SENDING, RelayState.DONE,
    ]

    assert fake_client.get_call_count("resolve_room_by_alias") == 1
    assert fake_client.get_calls("create_room")[0].args[0] == "sms_15550001111"
    assert len(room_index.entries) == 1
    room_id = room_index.entries[0].room_id
    assert fake_client.aliases[ALIAS] == room_id
    assert [c.args for c in fake_client.get_calls("invite")] == [(room_id, TARGET_USER)]
    assert fake_client.rooms[room_id].messages == [{"msgtype": "m.text", "body": "hello"}]
    assert attempt.room_id == room_id
    assert attempt.event_id


@pytest.mark.asyncio
async def test_second_message_uses_indexed_room(pipeline, fake_client, room_index):
    first = await pipeline.handle(make_event({"from": "+15550001111", "body": "hello"}, offset=0))
    fake_client.set_membership(first.room_id, TARGET_USER, "join")

    second = await pipeline.handle(make_event({"from": "+15550001111", "body": "again"}, offset=1))

    assert second.state is RelayState.DONE
    assert second.room_id == first.room_id
    assert fake_client.get_call_count("resolve_room_by_alias") == 1
    assert fake_client.get_call_count("create_room") == 1
    assert fake_client.get_call_count("invite") == 1
    assert [m["body"] for m in fake_client.rooms[first.room_id].messages] == ["hello", "again"]


@pytest.mark.asyncio
async def test_malformed_message_dropped_without_remote_calls(pipeline, fake_client, room_index):
    attempt = await pipeline.handle(make_event({"from": "x"}))

    assert attempt.state is RelayState.DROPPED
    assert attempt.attempts == 0
    assert fake_client.get_all_calls() == []
    assert room_index.select_count == 0


@pytest.mark.asyncio
async def test_undecodable_message_dropped(pipeline, fake_client):
    attempt = await pipeline.handle(make_event(b"\xff\xfe not json"))

    assert attempt.state is RelayState.DROPPED
    assert fake_client.get_all_calls() == []


@pytest.mark.asyncio
@pytest.mark.parametrize("failures", [1, 2])
async def test_transient_failures_rerun_whole_unit(pipeline, fake_client, room_index, failures):
    fake_client.configure_failure("send_message", "temporarily unavailable", times=failures)

    attempt = await pipeline.handle(make_event({"from": "+15550001111", "body": "hello"}))

    assert attempt.state is RelayState.DONE
    assert attempt.attempts == failures + 1
    # Every stage ran once per attempt
    assert room_index.upsert_count == failures + 1
    assert fake_client.get_call_count("get_room_state") == failures + 1
    assert fake_client.get_call_count("send_message") == failures + 1
    # Room is created once; later attempts hit the index
    assert fake_client.get_call_count("create_room") == 1
    # Re-inviting an invited account is tolerated
    assert fake_client.membership_of(attempt.room_id, TARGET_USER) == "invite"


@pytest.mark.asyncio
async def test_exhausted_retries_mark_failed_without_raising(pipeline, fake_client):
    fake_client.configure_failure("send_message", "down", times=3)

    attempt = await pipeline.handle(make_event({"from": "+15550001111", "body": "hello"}))

    assert attempt.state is RelayState.FAILED
    assert attempt.attempts == 3
    assert isinstance(attempt.error, DeliveryError)
    assert fake_client.get_call_count("send_message") == 3


@pytest.mark.asyncio
async def test_failure_in_membership_stage_is_retried(pipeline, fake_client):
    fake_client.configure_failure("get_room_state", "flaky", times=1)

    attempt = await pipeline.handle(make_event({"from": "+15550001111", "body": "hello"}))

    assert attempt.state is RelayState.DONE
    assert attempt.attempts == 2


@pytest.mark.asyncio
async def test_terminal_failure_is_dead_lettered(fake_client, resolver):
    dead_letter = RecordingDeadLetter()
    pipeline = RelayPipeline(
        resolver=resolver,
        ensurer=MembershipEnsurer(fake_client),
        dispatcher=MessageDispatcher(fake_client),
        target_user_id=TARGET_USER,
        retry_config=RetryConfig(max_attempts=2, initial_delay_ms=0, jitter=False),
        dead_letter=dead_letter,
    )
    fake_client.configure_failure("get_room_state", "down")

    event = make_event({"from": "+15550001111", "body": "hello"}, offset=7)
    attempt = await pipeline.handle(event)

    assert attempt.state is RelayState.FAILED
    assert isinstance(attempt.error, MembershipError)
    assert dead_letter.published == [(event, attempt)]


@pytest.mark.asyncio
async def test_dead_letter_failure_does_not_raise(fake_client, resolver):
    pipeline = RelayPipeline(
        resolver=resolver,
        ensurer=MembershipEnsurer(fake_client),
        dispatcher=MessageDispatcher(fake_client),
        target_user_id=TARGET_USER,
        retry_config=RetryConfig(max_attempts=1, jitter=False),
        dead_letter=RecordingDeadLetter(fail=True),
    )
    fake_client.configure_failure("create_room", "down")

    attempt = await pipeline.handle(make_event({"from": "+15550001111", "body": "hello"}))

    assert attempt.state is RelayState.FAILED


@pytest.mark.asyncio
async def test_concurrent_messages_from_new_source_share_one_room(pipeline, fake_client):
    events = [make_event({"from": "+15550001111", "body": f"m{i}"}, offset=i) for i in range(5)]

    attempts = await asyncio.gather(*(pipeline.handle(e) for e in events))

    assert all(a.state is RelayState.DONE for a in attempts)
    assert len({a.room_id for a in attempts}) == 1
    assert fake_client.get_call_count("create_room") == 1


@pytest.mark.asyncio
async def test_lost_send_response_is_not_posted_twice(pipeline, fake_client):
    fake_client.lose_send_responses(times=1)

    attempt = await pipeline.handle(make_event({"from": "+15550001111", "body": "hello"}, offset=42))

    assert attempt.state is RelayState.DONE
    assert attempt.attempts == 2
    assert fake_client.rooms[attempt.room_id].messages == [{"msgtype": "m.text", "body": "hello"}]
    txn_ids = [c.kwargs["txn_id"] for c in fake_client.get_calls("send_message")]
    assert txn_ids == ["sms.inbound.0.42", "sms.inbound.0.42"]


@pytest.mark.asyncio
async def test_distinct_records_use_distinct_transaction_ids(pipeline, fake_client):
    first = await pipeline.handle(make_event({"from": "+15550001111", "body": "same"}, offset=1))
    second = await pipeline.handle(make_event({"from": "+15550001111", "body": "same"}, offset=2))

    assert first.event_id != second.event_id
    assert [m["body"] for m in fake_client.rooms[first.room_id].messages] == ["same", "same"]


@pytest.mark.asyncio
async def test_retried_send_reuses_transaction_path_over_http(fake_client, resolver, fast_retry):
    requests = []

    def homeserver(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        if len(requests) == 1:
            raise httpx.ReadTimeout("timed out", request=request)
        return httpx.Response(200, json={"event_id": "$stored"})

    http = httpx.AsyncClient(base_url="http://hs.test", transport=httpx.MockTransport(homeserver))
    matrix = MatrixClient("http://hs.test", as_token="as-secret", bot_user_id="@sms:example.org", http_client=http)
    pipeline = RelayPipeline(
        resolver=resolver,
        ensurer=MembershipEnsurer(fake_client),
        dispatcher=MessageDispatcher(matrix),
        target_user_id=TARGET_USER,
        retry_config=fast_retry,
    )

    attempt = await pipeline.handle(make_event({"from": "+15550001111", "body": "hello"}, offset=5))
    await http.aclose()

    assert attempt.state is RelayState.DONE
    assert attempt.event_id == "$stored"
    first, second = (r.url.path for r in requests)
    assert first == second
    assert first.endswith("/send/m.room.message/sms.inbound.0.5")
