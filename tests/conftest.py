"""
Shared pytest fixtures for the bridge test suite.

- In-memory homeserver and Room Index
- Relay components wired over them
- A fully populated BridgeConfig
"""

import json

import pytest

from sms_bridge.config.bridge_config import BridgeConfig
from sms_bridge.config.reliability_config import RetryConfig
from sms_bridge.infra.event_bus.kafka_consumer import QueueEvent
from sms_bridge.relay.dispatcher import MessageDispatcher
from sms_bridge.relay.membership import MembershipEnsurer
from sms_bridge.relay.pipeline import RelayPipeline
from sms_bridge.relay.room_resolver import RoomResolver
from tests.fakes.fake_matrix_client import FakeMatrixClient
from tests.fakes.fake_room_index import InMemoryRoomIndex

DOMAIN = "example.org"
PREFIX = "sms"
TARGET_USER = "@alice:example.org"

BRIDGE_ENV = (
    "BRIDGE_DOMAIN", "BRIDGE_PREFIX", "BRIDGE_HOMESERVER_URL", "BRIDGE_REGISTRATION_PATH",
    "BRIDGE_TARGET_USER_ID", "BRIDGE_KAFKA_BOOTSTRAP_SERVERS", "BRIDGE_KAFKA_GROUP_ID",
    "BRIDGE_KAFKA_TOPIC", "BRIDGE_DEAD_LETTER_TOPIC", "BRIDGE_TRUST_LOCAL_INDEX",
    "BRIDGE_RELAY_MAX_ATTEMPTS", "BRIDGE_RELAY_JITTER_TYPE",
)


def make_event(payload, offset: int = 0, topic: str = "sms.inbound", partition: int = 0) -> QueueEvent:
    """QueueEvent carrying `payload` (dicts are JSON-encoded)."""
    if isinstance(payload, dict):
        payload = json.dumps(payload).encode("utf-8")
    return QueueEvent(topic=topic, partition=partition, offset=offset, value=payload)


@pytest.fixture(autouse=True)
def clean_bridge_env(monkeypatch, tmp_path):
    """Isolate tests from BRIDGE_* variables and any .env in the working directory."""
    for name in BRIDGE_ENV:
        monkeypatch.delenv(name, raising=False)
    monkeypatch.chdir(tmp_path)


@pytest.fixture
def fake_client() -> FakeMatrixClient:
    return FakeMatrixClient(domain=DOMAIN)


@pytest.fixture
def room_index() -> InMemoryRoomIndex:
    return InMemoryRoomIndex()


@pytest.fixture
def fast_retry() -> RetryConfig:
    """Three attempts, no backoff."""
    return RetryConfig(max_attempts=3, initial_delay_ms=0, max_delay_ms=0, jitter=False)


@pytest.fixture
def resolver(fake_client, room_index) -> RoomResolver:
    return RoomResolver(fake_client, room_index, domain=DOMAIN, prefix=PREFIX)


@pytest.fixture
def pipeline(fake_client, room_index, resolver, fast_retry) -> RelayPipeline:
    return RelayPipeline(
        resolver=resolver,
        ensurer=MembershipEnsurer(fake_client),
        dispatcher=MessageDispatcher(fake_client),
        target_user_id=TARGET_USER,
        retry_config=fast_retry,
    )


@pytest.fixture
def bridge_config(tmp_path) -> BridgeConfig:
    return BridgeConfig(
        domain=DOMAIN,
        prefix=PREFIX,
        homeserver_url="http://localhost:8008",
        registration_path=str(tmp_path / "registration.yaml"),
        target_user_id=TARGET_USER,
        kafka_bootstrap_servers="localhost:9092",
        kafka_group_id="sms-bridge",
        kafka_topic="sms.inbound",
    )
