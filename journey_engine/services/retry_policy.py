import random
from dataclasses import dataclass

from journey_engine.core.config import settings
from journey_engine.schemas.node_config import ActionConfig


JITTER_RATIO = 0.15


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int
    base_delay_ms: float
    max_delay_ms: float
    strategy: str


def next_retry_delay(
    attempt: int,
    strategy: str,
    base_ms: float,
    max_ms: float,
    *,
    rng: random.Random | None = None,
) -> int:
    """Delay in milliseconds before retry number ``attempt`` (1-based).

    Exponential doubles from ``base_ms``; linear grows by ``base_ms`` per
    attempt. Up to 15% jitter is added and the result never exceeds ``max_ms``.
    """
    safe_attempt = max(1, int(attempt))
    if strategy == "linear":
        delay = base_ms * safe_attempt
    else:
        delay = base_ms * (2 ** (safe_attempt - 1))
    delay = min(delay, max_ms)
    jitter = (rng or random).random() * JITTER_RATIO * delay
    return int(min(delay + jitter, max_ms))


def policy_for(config: ActionConfig) -> RetryPolicy:
    max_attempts = config.retry_max_attempts
    if not max_attempts or max_attempts <= 0:
        max_attempts = settings.journey_retry_max_attempts

    base_delay_ms: float = 0
    if config.retry_delay_ms and config.retry_delay_ms > 0:
        base_delay_ms = config.retry_delay_ms
    elif config.retry_delay_minutes and config.retry_delay_minutes > 0:
        base_delay_ms = config.retry_delay_minutes * 60_000
    if base_delay_ms <= 0:
        base_delay_ms = settings.journey_retry_base_delay_ms

    if config.retry_max_delay_ms and config.retry_max_delay_ms > 0:
        max_delay_ms = config.retry_max_delay_ms
    else:
        max_delay_ms = base_delay_ms * 32

    return RetryPolicy(
        max_attempts=max_attempts,
        base_delay_ms=base_delay_ms,
        max_delay_ms=max_delay_ms,
        strategy=config.retry_strategy,
    )
