# =============================================================================
# File: sms_bridge/infra/reliability/retry.py
# Description: Retry mechanism with bounded exponential backoff and jitter
# =============================================================================

import asyncio
import random
from typing import TypeVar, Callable, Optional, Awaitable
from abc import ABC, abstractmethod
import logging

from sms_bridge.config.reliability_config import RetryConfig

logger = logging.getLogger("sms_bridge.retry")

T = TypeVar('T')


# Jitter strategies
class JitterStrategy(ABC):
    """Base class for jitter strategies."""

    @abstractmethod
    def apply(self, base_delay: float) -> float:
        """Apply jitter to base delay."""
        pass


class FullJitter(JitterStrategy):
    """Full jitter: delay = random(0, base_delay)."""

    def apply(self, base_delay: float) -> float:
        return random.uniform(0, base_delay)


class EqualJitter(JitterStrategy):
    """Equal jitter: delay = base_delay/2 + random(0, base_delay/2)."""

    def apply(self, base_delay: float) -> float:
        half = base_delay / 2
        return half + random.uniform(0, half)


def get_jitter_strategy(jitter_type: str) -> JitterStrategy:
    """Get jitter strategy by name."""
    strategies = {
        'full': FullJitter(),
        'equal': EqualJitter(),
    }
    return strategies.get(jitter_type, FullJitter())


class RetryExhaustedError(Exception):
    """Raised when every attempt failed; wraps the last error."""

    def __init__(self, context: str, attempts: int, last_error: BaseException):
        super().__init__(f"{context} failed after {attempts} attempts: {last_error}")
        self.context = context
        self.attempts = attempts
        self.last_error = last_error


def compute_delay_ms(retry_config: RetryConfig, attempt: int) -> float:
    """Backoff before the attempt following `attempt` (1-based), capped at max_delay_ms."""
    return min(
        retry_config.initial_delay_ms * (retry_config.backoff_factor ** (attempt - 1)),
        retry_config.max_delay_ms
    )


async def retry_async(
        func: Callable[..., Awaitable[T]],
        *args,
        retry_config: Optional[RetryConfig] = None,
        context: str = "operation",
        **kwargs
) -> T:
    """
    Execute async function with retry logic.

    Raises:
        RetryExhaustedError: every attempt failed (the last error is chained)
        Exception: the original error when retry_condition rejects it
    """
    if retry_config is None:
        retry_config = RetryConfig()

    if retry_config.max_attempts < 1:
        raise ValueError("max_attempts must be at least 1")

    jitter_strategy = get_jitter_strategy(retry_config.jitter_type) if retry_config.jitter else None

    for attempt in range(1, retry_config.max_attempts + 1):
        try:
            return await func(*args, **kwargs)

        except Exception as e:
            if retry_config.retry_condition and not retry_config.retry_condition(e):
                logger.warning(
                    f"Retry condition not met for {context} after attempt {attempt}. Error: {e}"
                )
                raise

            if attempt >= retry_config.max_attempts:
                logger.warning(
                    f"Retry exhausted for {context} after {attempt} attempts. Last error: {e}"
                )
                raise RetryExhaustedError(context, attempt, e) from e

            base_delay_ms = compute_delay_ms(retry_config, attempt)

            if jitter_strategy:
                actual_delay_ms = jitter_strategy.apply(base_delay_ms)
            else:
                actual_delay_ms = base_delay_ms

            delay_seconds = actual_delay_ms / 1000

            logger.info(
                f"Retry attempt {attempt}/{retry_config.max_attempts} for {context} "
                f"after error: {e}. Waiting {delay_seconds:.2f}s before retry."
            )

            await asyncio.sleep(delay_seconds)

    raise RuntimeError("Unexpected retry failure")
