import pytest
import yaml

from sms_bridge.common.exceptions import ConfigurationError
from sms_bridge.infra.matrix.registration import generate_registration, load_registration


def test_generated_registration_claims_prefix_namespaces():
    registration = generate_registration(prefix="sms", url="http://bridge:8090")

    assert registration.sender_localpart == "sms"
    assert registration.bot_user_id("example.org") == "@sms:example.org"
    assert registration.namespaces["users"] == [{"exclusive": True, "regex": "@sms_.*"}]
    assert registration.namespaces["aliases"] == [{"exclusive": True, "regex": "#sms_.*"}]
    assert registration.rate_limited is False
    assert len({registration.id, registration.as_token, registration.hs_token}) == 3
    assert len(registration.as_token) == 64


def test_save_and_load(tmp_path):
    path = tmp_path / "conf" / "registration.yaml"
    original = generate_registration(prefix="sms", url="http://bridge:8090", sender_localpart="smsbot")

    original.save(str(path))
    loaded = load_registration(str(path))

    assert loaded == original
    assert yaml.safe_load(path.read_text())["url"] == "http://bridge:8090"


def test_missing_file(tmp_path):
    with pytest.raises(ConfigurationError, match="not found"):
        load_registration(str(tmp_path / "absent.yaml"))


def test_missing_keys_reported(tmp_path):
    path = tmp_path / "registration.yaml"
    path.write_text(yaml.safe_dump({"id": "x", "as_token": "t"}))

    with pytest.raises(ConfigurationError) as exc_info:
        load_registration(str(path))

    assert exc_info.value.missing == ("hs_token", "sender_localpart")


def test_non_mapping_rejected(tmp_path):
    path = tmp_path / "registration.yaml"
    path.write_text("- just\n- a list\n")

    with pytest.raises(ConfigurationError):
        load_registration(str(path))
