"""Exponential-backoff retry wrapper around provider calls."""

import asyncio
import random
from collections.abc import Awaitable, Callable
from typing import TypeVar

from keelson.exceptions import TransportError
from keelson.logging import get_logger

log = get_logger(__name__)

T = TypeVar("T")


class RetryingTransport:
    """Retry timeouts, connect failures and 5xx responses with jittered backoff.

    With the defaults a call gets three attempts; the waits before the second and
    third attempts are ``1s * (1 + U(0, 0.3))`` and ``2s * (1 + U(0, 0.3))``.
    """

    def __init__(
        self,
        max_retries: int = 2,
        initial_delay: float = 1.0,
        jitter: float = 0.3,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        rng: random.Random | None = None,
    ):
        self.max_retries = max(0, int(max_retries))
        self.initial_delay = max(0.0, float(initial_delay))
        self.jitter = max(0.0, float(jitter))
        self._sleep = sleep
        self._rng = rng or random.Random()

    @classmethod
    def from_config(cls, config) -> "RetryingTransport":
        return cls(
            max_retries=config.retry.max_retries,
            initial_delay=config.retry.initial_delay,
            jitter=config.retry.jitter,
        )

    def compute_delay(self, retry_index: int) -> float:
        """Delay before retry ``retry_index`` (0-based)."""
        base = self.initial_delay * (2 ** retry_index)
        return base * (1.0 + self._rng.uniform(0.0, self.jitter))

    async def call(self, attempt: Callable[[], Awaitable[T]]) -> T:
        """Run ``attempt`` until it succeeds, fails permanently, or retries run out.

        Raises:
            TransportError: the last error, with ``attempts`` set to the number of tries
        """
        max_attempts = self.max_retries + 1
        attempts = 0
        while True:
            attempts += 1
            try:
                return await attempt()
            except TransportError as e:
                e.attempts = attempts
                if not e.retryable:
                    log.warning("Provider call failed", error=e.message, kind=e.kind, attempts=attempts)
                    raise
                if attempts >= max_attempts:
                    log.error("Provider call exhausted retries", error=e.message, kind=e.kind, attempts=attempts)
                    raise

                delay = self.compute_delay(attempts - 1)
                log.warning(
                    "Retrying provider call",
                    cause=e.message,
                    kind=e.kind,
                    status_code=e.status_code,
                    delay=round(delay, 3),
                    retry=f"{attempts}/{self.max_retries}",
                )
                await self._sleep(delay)
