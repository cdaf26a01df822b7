# app/core/retry.py
from __future__ import annotations

import asyncio
import random
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, TypeVar

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """
    Declarative retry/backoff for one kind of external call.

    max_attempts counts the first call, so 1 means "never retry".
    """

    max_attempts: int = 3
    backoff_mode: str = "exp"  # exp | fixed | none
    base_delay_s: float = 1.0
    max_delay_s: float = 30.0
    jitter: float = 0.25

    @classmethod
    def no_retry(cls) -> "RetryPolicy":
        return cls(max_attempts=1, backoff_mode="none", base_delay_s=0.0, jitter=0.0)

    def compute_backoff_s(self, attempt: int) -> float:
        """
        attempt: 1..N (the attempt that just failed)
        """
        if self.backoff_mode == "none":
            return 0.0
        if self.backoff_mode == "fixed":
            delay = self.base_delay_s
        else:
            delay = self.base_delay_s * (2 ** max(0, attempt - 1))

        delay = min(delay, self.max_delay_s)
        if self.jitter > 0:
            delay = delay * (1.0 + (random.random() * 2 - 1) * self.jitter)
        return max(0.0, delay)

    async def run(
        self,
        op: Callable[[], Awaitable[T]],
        *,
        retry_if: Callable[[BaseException], bool],
        on_retry: Optional[Callable[[int, BaseException, float], None]] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> T:
        """
        Await `op()` until it succeeds, raises a non-retryable error, or the
        attempt budget is spent. The last error is re-raised unchanged.
        """
        attempts = max(1, self.max_attempts)
        attempt = 0
        while True:
            attempt += 1
            try:
                return await op()
            except Exception as exc:
                if attempt >= attempts or not retry_if(exc):
                    raise
                delay = self.compute_backoff_s(attempt)
                if on_retry is not None:
                    on_retry(attempt, exc, delay)
                if delay > 0:
                    await sleep(delay)
