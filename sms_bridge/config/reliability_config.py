# =============================================================================
# File: sms_bridge/config/reliability_config.py
# Description: Retry configuration for the relay unit and infrastructure
#              start-up (Kafka consumer, PostgreSQL pool)
# =============================================================================

from typing import Optional, Callable, TYPE_CHECKING

from pydantic import BaseModel, ConfigDict

if TYPE_CHECKING:
    from sms_bridge.config.bridge_config import BridgeConfig


class RetryConfig(BaseModel):
    """Retry configuration."""
    model_config = ConfigDict(arbitrary_types_allowed=True)

    max_attempts: int = 3
    initial_delay_ms: int = 100
    max_delay_ms: int = 10000
    backoff_factor: float = 2.0
    jitter: bool = True
    jitter_type: str = "full"
    retry_condition: Optional[Callable[[Exception], bool]] = None


class ReliabilityConfigs:
    """Pre-configured retry settings for the bridge components"""

    @staticmethod
    def relay_retry(config: "BridgeConfig") -> RetryConfig:
        """Retry policy for one relay unit (resolve → ensure → send)."""
        return RetryConfig(
            max_attempts=config.relay_max_attempts,
            initial_delay_ms=config.relay_initial_delay_ms,
            max_delay_ms=config.relay_max_delay_ms,
            backoff_factor=config.relay_backoff_factor,
            jitter=config.relay_jitter_type != "none",
            jitter_type=config.relay_jitter_type,
        )

    @staticmethod
    def kafka_retry() -> RetryConfig:
        return RetryConfig(
            max_attempts=5,
            initial_delay_ms=500,
            max_delay_ms=10000,
            backoff_factor=2.0,
            jitter=True,
        )

    @staticmethod
    def postgres_retry() -> RetryConfig:
        return RetryConfig(
            max_attempts=3,
            initial_delay_ms=200,
            max_delay_ms=5000,
            backoff_factor=2.0,
            jitter=True,
        )
