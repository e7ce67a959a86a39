"""Reconnect delay computation with exponential backoff and jitter."""

import random
from typing import Dict, Optional

from ..config.settings import RetryConfig
from ..models import DisconnectReason

# Initial wait after a broker-initiated disconnect, before the retry loop starts
DISCONNECT_BASE_DELAYS_MS: Dict[DisconnectReason, int] = {
    DisconnectReason.NORMAL: 2000,
    DisconnectReason.SERVER_BUSY: 1500,
    DisconnectReason.PROTOCOL_ERROR: 4000,
    DisconnectReason.ADMINISTRATIVE_ACTION: 4000,
    DisconnectReason.UNSPECIFIED_ERROR: 5000,
    DisconnectReason.OTHER: 5000,
}

# Exponent cap; the delay has long since hit max_backoff_ms by then
_MAX_EXPONENT = 16


def base_backoff_ms(retry_count: int, config: RetryConfig) -> int:
    """
    Base delay (no jitter) after the given number of consecutive failures.

    With the defaults this is min(1000 * 2^(retry_count - 1), 30000).
    """
    exponent = min(max(retry_count - 1, 0), _MAX_EXPONENT)
    delay = config.initial_backoff_ms * (config.backoff_multiplier ** exponent)
    return int(min(delay, config.max_backoff_ms))


def jitter_ms(config: RetryConfig, rng: Optional[random.Random] = None) -> int:
    if config.max_jitter_ms <= 0:
        return 0
    rng = rng or random
    return int(rng.uniform(0, config.max_jitter_ms))


def compute_backoff_ms(
    retry_count: int,
    config: RetryConfig,
    rng: Optional[random.Random] = None
) -> int:
    """Delay before the next connection attempt, jitter included."""
    return base_backoff_ms(retry_count, config) + jitter_ms(config, rng)


def disconnect_delay_ms(
    reason: DisconnectReason,
    config: RetryConfig,
    rng: Optional[random.Random] = None
) -> int:
    """Delay before reconnecting after the broker dropped the session."""
    base = DISCONNECT_BASE_DELAYS_MS.get(reason, DISCONNECT_BASE_DELAYS_MS[DisconnectReason.OTHER])
    return base + jitter_ms(config, rng)
