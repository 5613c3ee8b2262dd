# =============================================================================
# File: sms_bridge/common/base/base_config.py
# Description: Shared settings behaviour for bridge configuration classes
# =============================================================================

from pydantic import SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict

# Spread into each subclass' SettingsConfigDict next to its env_prefix
BASE_CONFIG_DICT = dict(
    env_file=".env",
    env_file_encoding="utf-8",
    case_sensitive=False,
    extra="ignore",
    env_nested_delimiter="__",
)


class BaseConfig(BaseSettings):
    """Settings base whose repr is safe to log (SecretStr fields stay masked)."""

    model_config = SettingsConfigDict(**BASE_CONFIG_DICT)

    def __repr__(self) -> str:
        fields = []
        for field_name in type(self).model_fields:
            value = getattr(self, field_name)
            if isinstance(value, SecretStr):
                value = "**********"
            fields.append(f"{field_name}={value!r}")
        return f"{type(self).__name__}({', '.join(fields)})"
