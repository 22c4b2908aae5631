"""Timing constants and tolerances, grouped so the CLI can override them."""

from dataclasses import dataclass


@dataclass(frozen=True)
class SyncSettings:
    # Resync
    resync_debounce: float = 0.75
    soft_resync_max_delay: float = 3.0
    message_limit: int = 200
    hydration_limit: int = 50

    # Staleness
    bootstrap_stale_after: float = 25.0
    stream_stale_after: float = 45.0
    watchdog_interval: float = 10.0

    # Stall detection
    stall_timeout: float = 2.0
    stall_recovery_cooldown: float = 15.0

    # Status inference
    idle_confirm_grace: float = 1.2

    # Metadata refresh
    metadata_refresh_interval: float = 3.0
    metadata_refresh_delay: float = 0.1

    # Anti-regression
    text_shrink_tolerance: int = 50

    # Reconnect
    reconnect_jitter: float = 0.25
    start_delay: float = 0.1


DEFAULT_SETTINGS = SyncSettings()


def backoff_delay(attempt: int) -> float:
    """Base reconnect delay in seconds for the given 1-based attempt.

    Two tiers: a quick ramp for the first three attempts, then a slower ramp
    that starts over at 2s.
    """
    if attempt <= 3:
        return min(1.0 * 2 ** (attempt - 1), 8.0)
    return min(2.0 * 2 ** (attempt - 4), 32.0)
