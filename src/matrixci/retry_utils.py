from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Callable, Iterator, Tuple, Type, TypeVar

T = TypeVar("T")

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RetryConfig:
    """Backoff policy for infrastructure operations (never for steps).

    Delays grow geometrically from base_delay_s, capped at max_delay_s, with
    no jitter so a re-run waits exactly as long as the previous one did.
    """

    max_attempts: int = 3
    base_delay_s: float = 0.2
    max_delay_s: float = 5.0
    multiplier: float = 2.0


def backoff_delays(cfg: RetryConfig) -> Iterator[float]:
    """Yield the sleep before each retry (max_attempts - 1 values)."""

    if cfg.max_attempts < 1:
        raise ValueError("max_attempts must be >= 1")
    for failed_attempt in range(1, cfg.max_attempts):
        yield min(cfg.max_delay_s, cfg.base_delay_s * (cfg.multiplier ** (failed_attempt - 1)))


def retry_call(
    fn: Callable[[], T],
    *,
    cfg: RetryConfig,
    retry_on: Tuple[Type[BaseException], ...],
    what: str,
) -> T:
    """Call `fn`, retrying exceptions of the `retry_on` types.

    Anything else propagates immediately; the last retryable error is
    re-raised once attempts are exhausted.
    """

    delays = backoff_delays(cfg)
    attempt = 0
    while True:
        attempt += 1
        try:
            return fn()
        except retry_on as exc:
            delay_s = next(delays, None)
            if delay_s is None:
                logger.error(f"{what}: giving up after {attempt} attempt(s): {exc}")
                raise
            logger.warning(f"{what}: attempt {attempt} failed ({exc}); retrying in {delay_s:.2f}s")
            time.sleep(delay_s)
