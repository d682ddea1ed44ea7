"""
Rate limiting and retry around a single provider call.

The controller knows nothing about message content.  It provides two
guarantees for the adapter instance it is attached to:

  - consecutive requests are spaced by at least ``min_interval`` seconds
    (callers arriving early are delayed, never dropped);
  - ``RateLimitError`` is retried with exponential backoff
    (``base_delay * 2**(attempt - 1)``, capped at ``max_delay``, raised to the
    server's ``Retry-After`` hint when one was given) for at most
    ``max_attempts`` total attempts.  Every other error propagates at once.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator, Awaitable, Callable
from typing import TypeVar

from assistcore.llm.errors import RateLimitError, RetryExhaustedError
from assistcore.llm.types import StreamChunk

logger = logging.getLogger(__name__)

T = TypeVar("T")


class RetryController:
    """
    Spacing gate plus throttling retry for one provider adapter.

    *sleep* and *clock* are injectable so tests can run without waiting.
    """

    def __init__(
        self,
        max_attempts: int = 3,
        base_delay: float = 1.0,
        max_delay: float = 30.0,
        min_interval: float = 0.5,
        *,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.min_interval = min_interval
        self._sleep = sleep
        self._clock = clock
        self._gate = asyncio.Lock()
        self._last_request: float | None = None

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def call(self, factory: Callable[[], Awaitable[T]]) -> T:
        """Run a one-shot request (e.g. the context probe) under the policy."""
        attempt = 0
        while True:
            await self._wait_turn()
            try:
                return await factory()
            except RateLimitError as exc:
                attempt += 1
                await self._backoff(attempt, exc)

    async def stream(
        self, factory: Callable[[], AsyncIterator[StreamChunk]]
    ) -> AsyncIterator[StreamChunk]:
        """
        Run a streaming request under the policy.

        A throttling error is only retried while nothing has been yielded
        yet; once a chunk has reached the caller a retry would duplicate
        output, so the error propagates.
        """
        attempt = 0
        while True:
            await self._wait_turn()
            upstream = factory()
            started = False
            try:
                async for chunk in upstream:
                    started = True
                    yield chunk
                return
            except RateLimitError as exc:
                if started:
                    raise
                attempt += 1
                await self._backoff(attempt, exc)
            finally:
                aclose = getattr(upstream, "aclose", None)
                if aclose is not None:
                    await aclose()

    def backoff_delay(self, attempt: int, retry_after: float | None = None) -> float:
        """Wait before attempt number ``attempt + 1`` (``attempt`` >= 1)."""
        wait = self.base_delay * (2 ** (attempt - 1))
        if retry_after is not None:
            wait = max(wait, retry_after)
        return min(wait, self.max_delay)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _backoff(self, attempt: int, exc: RateLimitError) -> None:
        if attempt >= self.max_attempts:
            raise RetryExhaustedError(
                f"Rate limited {attempt} time(s), giving up: {exc}",
                attempts=attempt,
                last_error=exc,
            ) from exc
        wait = self.backoff_delay(attempt, exc.retry_after)
        logger.warning(
            "Rate limited (attempt %d/%d), waiting %.1fs: %s",
            attempt,
            self.max_attempts,
            wait,
            exc,
        )
        await self._sleep(wait)

    async def _wait_turn(self) -> None:
        async with self._gate:
            if self._last_request is not None and self.min_interval > 0:
                elapsed = self._clock() - self._last_request
                if elapsed < self.min_interval:
                    await self._sleep(self.min_interval - elapsed)
            self._last_request = self._clock()
