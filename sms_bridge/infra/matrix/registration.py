# =============================================================================
# File: sms_bridge/infra/matrix/registration.py
# Description: Application service registration file (generate / load)
# =============================================================================

from __future__ import annotations

import logging
import os
import secrets
from dataclasses import dataclass, field
from typing import Dict, Any, List

import yaml

from sms_bridge.common.exceptions import ConfigurationError

log = logging.getLogger("sms_bridge.matrix.registration")

REQUIRED_KEYS = ("id", "as_token", "hs_token", "sender_localpart")


def generate_token() -> str:
    return secrets.token_hex(32)


@dataclass
class Registration:
    """
    Contents of the registration YAML handed to the homeserver.

    The homeserver authenticates the bridge by as_token; the bridge
    authenticates homeserver pushes by hs_token.
    """
    id: str
    as_token: str
    hs_token: str
    sender_localpart: str
    url: str = ""
    namespaces: Dict[str, List[Dict[str, Any]]] = field(default_factory=dict)
    rate_limited: bool = False

    def bot_user_id(self, domain: str) -> str:
        return f"@{self.sender_localpart}:{domain}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "url": self.url,
            "as_token": self.as_token,
            "hs_token": self.hs_token,
            "sender_localpart": self.sender_localpart,
            "rate_limited": self.rate_limited,
            "namespaces": self.namespaces,
        }

    def save(self, path: str) -> None:
        directory = os.path.dirname(path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        with open(path, "w", encoding="utf-8") as f:
            yaml.safe_dump(self.to_dict(), f, default_flow_style=False, sort_keys=False)
        log.info(f"Registration written to {path}")


def generate_registration(
        prefix: str,
        url: str = "",
        sender_localpart: str = "",
) -> Registration:
    """
    Build a registration with fresh tokens.

    The bridge exclusively owns @{prefix}_* users and #{prefix}_* aliases.
    The bot user defaults to @{prefix}:domain.
    """
    return Registration(
        id=generate_token(),
        as_token=generate_token(),
        hs_token=generate_token(),
        sender_localpart=sender_localpart or prefix,
        url=url,
        namespaces={
            "users": [{"exclusive": True, "regex": f"@{prefix}_.*"}],
            "aliases": [{"exclusive": True, "regex": f"#{prefix}_.*"}],
            "rooms": [],
        },
    )


def load_registration(path: str) -> Registration:
    """
    Read a registration file.

    Raises:
        ConfigurationError: file missing, unreadable, or lacking a required key
    """
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except FileNotFoundError as e:
        raise ConfigurationError(f"Registration file not found: {path}") from e
    except (OSError, yaml.YAMLError) as e:
        raise ConfigurationError(f"Cannot read registration file {path}: {e}") from e

    if not isinstance(data, dict):
        raise ConfigurationError(f"Registration file {path} is not a mapping")

    missing = [key for key in REQUIRED_KEYS if not data.get(key)]
    if missing:
        raise ConfigurationError(
            f"Registration file {path} is missing: {', '.join(missing)}",
            missing=tuple(missing),
        )

    return Registration(
        id=str(data["id"]),
        as_token=str(data["as_token"]),
        hs_token=str(data["hs_token"]),
        sender_localpart=str(data["sender_localpart"]),
        url=str(data.get("url") or ""),
        namespaces=data.get("namespaces") or {},
        rate_limited=bool(data.get("rate_limited", False)),
    )
