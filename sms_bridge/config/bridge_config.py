# =============================================================================
# File: sms_bridge/config/bridge_config.py
# Description: Bridge settings (domain, homeserver, Kafka, relay policy)
#              built once at startup and passed to every component
# =============================================================================

import re
from typing import Optional, List, Dict, Any

from pydantic import Field, SecretStr, ValidationError, field_validator
from pydantic_settings import SettingsConfigDict

from sms_bridge.common.base.base_config import BASE_CONFIG_DICT, BaseConfig
from sms_bridge.common.exceptions import ConfigurationError

# Settings without which the bridge cannot start
MANDATORY_SETTINGS = (
    "domain",
    "prefix",
    "homeserver_url",
    "registration_path",
    "target_user_id",
    "kafka_bootstrap_servers",
    "kafka_group_id",
    "kafka_topic",
)

_PREFIX_PATTERN = re.compile(r"^[a-z0-9._=\-]+$")
_USER_ID_PATTERN = re.compile(r"^@[^:\s]+:\S+$")


class BridgeConfig(BaseConfig):
    """
    Bridge configuration loaded from environment (BRIDGE_*) and .env.

    Mandatory values default to empty strings so that every missing setting
    can be reported at once by validate_required().
    """

    model_config = SettingsConfigDict(
        **BASE_CONFIG_DICT,
        env_prefix="BRIDGE_",
    )

    # Matrix
    domain: str = Field(default="", description="Homeserver domain (server name)")
    prefix: str = Field(default="", description="Room alias / ghost user prefix")
    homeserver_url: str = Field(default="", description="Client-server API base URL")
    registration_path: str = Field(default="", description="Application service registration YAML")
    target_user_id: str = Field(default="", description="Matrix account receiving every SMS room")

    # Kafka
    kafka_bootstrap_servers: str = Field(default="", description="Comma-separated broker list")
    kafka_group_id: str = Field(default="")
    kafka_topic: str = Field(default="")
    kafka_auto_offset_reset: str = Field(default="earliest")
    dead_letter_topic: Optional[str] = Field(
        default=None,
        description="Topic receiving terminally failed relays (disabled when unset)"
    )

    # Room index
    database_dsn: SecretStr = Field(default=SecretStr("postgresql://localhost:5432/sms_bridge"))
    database_pool_min_size: int = Field(default=1, ge=1)
    database_pool_max_size: int = Field(default=10, ge=1)
    trust_local_index: bool = Field(
        default=True,
        description="Return indexed room ids without revalidating against the homeserver"
    )

    # Relay retry policy
    relay_max_attempts: int = Field(default=5, ge=1)
    relay_initial_delay_ms: int = Field(default=500, ge=0)
    relay_max_delay_ms: int = Field(default=30000, ge=0)
    relay_backoff_factor: float = Field(default=2.0, ge=1.0)
    relay_jitter_type: str = Field(default="full")

    # Runtime
    max_in_flight: int = Field(default=100, ge=1)
    shutdown_timeout_seconds: float = Field(default=30.0, gt=0)
    http_timeout_seconds: float = Field(default=30.0, gt=0)
    metrics_port: Optional[int] = Field(default=None)

    @field_validator(
        "domain", "prefix", "homeserver_url", "registration_path", "target_user_id",
        "kafka_bootstrap_servers", "kafka_group_id", "kafka_topic",
    )
    @classmethod
    def _strip(cls, value: str) -> str:
        return value.strip() if isinstance(value, str) else value

    @field_validator("homeserver_url")
    @classmethod
    def _strip_trailing_slash(cls, value: str) -> str:
        return value.rstrip("/")

    @field_validator("relay_jitter_type")
    @classmethod
    def _known_jitter(cls, value: str) -> str:
        if value not in ("full", "equal", "none"):
            raise ValueError(f"unknown jitter type '{value}' (expected full, equal or none)")
        return value

    @property
    def bootstrap_servers(self) -> List[str]:
        return [s.strip() for s in self.kafka_bootstrap_servers.split(",") if s.strip()]

    def missing_settings(self) -> List[str]:
        return [name for name in MANDATORY_SETTINGS if not getattr(self, name)]

    def validate_required(self) -> "BridgeConfig":
        """Raise ConfigurationError listing every absent or malformed mandatory value."""
        missing = self.missing_settings()
        if missing:
            env_names = ", ".join(f"BRIDGE_{name.upper()}" for name in missing)
            raise ConfigurationError(
                f"Missing mandatory settings: {env_names}",
                missing=tuple(missing),
            )

        if not _PREFIX_PATTERN.match(self.prefix):
            raise ConfigurationError(
                f"Invalid prefix '{self.prefix}': only lowercase letters, digits and ._=- are allowed"
            )

        if not _USER_ID_PATTERN.match(self.target_user_id):
            raise ConfigurationError(
                f"Invalid target user id '{self.target_user_id}': expected @localpart:server"
            )

        if not self.homeserver_url.startswith(("http://", "https://")):
            raise ConfigurationError(
                f"Invalid homeserver URL '{self.homeserver_url}': expected http(s)://"
            )

        return self


def load_bridge_config(
        overrides: Optional[Dict[str, Any]] = None,
        require_all: bool = True,
) -> BridgeConfig:
    """
    Build and validate the bridge configuration.

    Args:
        overrides: Values taking precedence over the environment (CLI flags).
                   None values are ignored.
        require_all: Check mandatory settings (off for registration generation)

    Raises:
        ConfigurationError: a mandatory value is missing or a value is invalid
    """
    values = {k: v for k, v in (overrides or {}).items() if v is not None}
    try:
        config = BridgeConfig(**values)
    except ValidationError as e:
        raise ConfigurationError(f"Invalid bridge configuration: {e}") from e
    return config.validate_required() if require_all else config
