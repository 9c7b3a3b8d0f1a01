"""Bounded retry with exponential backoff.

One policy object is shared by pool discovery (rate-limited ledger pages)
and the JSON-RPC ledger client (transport failures / reconnects).

Usage::

    policy = RetryPolicy(RetryPolicyConfig(max_attempts=5, base_delay=1.0))
    result = await policy.run(lambda: ledger.ledger_data(marker=marker))

``run`` re-raises the last error once attempts are exhausted; callers that
degrade gracefully catch it and keep what they already collected.
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from dataclasses import dataclass
from typing import Awaitable, Callable, Deque, Optional, TypeVar

from amm_bot.errors import RateLimitedError

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")

DELAY_HISTORY = 64


# ---------------------------------------------------------------------------
# Config
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class RetryPolicyConfig:
    """Configuration for a retry policy.

    Parameters
    ----------
    max_attempts:
        Total attempts including the first one. Default 5.
    base_delay:
        Delay before the first retry (seconds). Default 1.0.
    multiplier:
        Growth factor per retry. Default 2.0 (doubling).
    max_delay:
        Ceiling for a single delay. 0 = uncapped. Default 0.
    """

    max_attempts: int = 5
    base_delay: float = 1.0
    multiplier: float = 2.0
    max_delay: float = 0.0


def is_rate_limited(exc: BaseException) -> bool:
    return isinstance(exc, RateLimitedError)


# ---------------------------------------------------------------------------
# Policy
# ---------------------------------------------------------------------------


class RetryPolicy:
    """Retries an async operation while the classifier says the error is
    transient.

    Parameters
    ----------
    config:
        Attempt bound and backoff shape.
    retryable:
        Classifier; errors it rejects propagate on the first occurrence.
    sleep:
        Injectable sleep coroutine for tests.
    """

    def __init__(
        self,
        config: RetryPolicyConfig | None = None,
        retryable: Callable[[BaseException], bool] = is_rate_limited,
        sleep: Callable[[float], Awaitable[None]] | None = None,
    ) -> None:
        self._config = config or RetryPolicyConfig()
        if self._config.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        self._retryable = retryable
        self._sleep = sleep or asyncio.sleep
        # most recent backoff delays across runs, newest last
        self.delays: Deque[float] = deque(maxlen=DELAY_HISTORY)

    @property
    def config(self) -> RetryPolicyConfig:
        return self._config

    def backoff(self, retry_index: int) -> float:
        """Delay before retry number ``retry_index`` (0-based)."""
        cfg = self._config
        delay = cfg.base_delay * (cfg.multiplier ** retry_index)
        if cfg.max_delay > 0:
            delay = min(delay, cfg.max_delay)
        return delay

    def is_retryable(self, exc: BaseException) -> bool:
        return self._retryable(exc)

    async def run(
        self,
        operation: Callable[[], Awaitable[T]],
        on_retry: Optional[Callable[[int, BaseException, float], None]] = None,
    ) -> T:
        last_exc: BaseException | None = None
        for attempt in range(self._config.max_attempts):
            try:
                return await operation()
            except Exception as exc:
                if not self._retryable(exc):
                    raise
                last_exc = exc
                if attempt + 1 >= self._config.max_attempts:
                    break
                delay = self.backoff(attempt)
                self.delays.append(delay)
                if on_retry is not None:
                    on_retry(attempt + 1, exc, delay)
                else:
                    LOGGER.debug("retry %d/%d in %.2fs: %s", attempt + 1, self._config.max_attempts, delay, exc)
                await self._sleep(delay)
        assert last_exc is not None
        LOGGER.warning("giving up after %d attempts: %s", self._config.max_attempts, last_exc)
        raise last_exc
