"""Retry of transient infrastructure failures and the per-invocation time budget."""

from __future__ import annotations

import asyncio
import sqlite3
import time
from collections.abc import Awaitable, Callable
from typing import Literal, TypeVar

import httpx
import structlog

log = structlog.get_logger(__name__)

T = TypeVar("T")

_TRANSIENT_SQLITE_MESSAGES = ("database is locked", "database table is locked", "database is busy")


class RetryableStatusError(Exception):
    """An HTTP response whose status code is worth retrying (429 or 5xx)."""

    def __init__(self, status_code: int, body: str = "") -> None:
        super().__init__(f"HTTP {status_code}: {body[:200]}")
        self.status_code = status_code


def is_transient(exc: BaseException) -> bool:
    """Return True for failures that are expected to clear up on retry."""
    if isinstance(exc, RetryableStatusError | httpx.TimeoutException | httpx.TransportError):
        return True
    if isinstance(exc, sqlite3.OperationalError):
        text = str(exc).lower()
        return any(m in text for m in _TRANSIENT_SQLITE_MESSAGES)
    return isinstance(exc, TimeoutError | ConnectionError)


class RetryPolicy:
    """Run one unit of work, retrying transient failures with a fixed or growing delay."""

    def __init__(
        self,
        max_retries: int = 3,
        delay_seconds: float = 1.0,
        *,
        backoff: Literal["fixed", "exponential"] = "fixed",
        classifier: Callable[[BaseException], bool] = is_transient,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        if max_retries < 0:
            msg = f"max_retries must be >= 0, got {max_retries}"
            raise ValueError(msg)
        self.max_retries = max_retries
        self.delay_seconds = delay_seconds
        self.backoff = backoff
        self._classifier = classifier
        self._sleep = sleep

    def delay_for(self, attempt: int) -> float:
        if self.backoff == "exponential":
            return self.delay_seconds * 2**attempt
        return self.delay_seconds

    async def run(
        self,
        fn: Callable[..., Awaitable[T]],
        *args: object,
        operation: str = "",
        **kwargs: object,
    ) -> T:
        """Await ``fn(*args, **kwargs)``; re-raise the last error once retries run out."""
        attempt = 0
        while True:
            try:
                return await fn(*args, **kwargs)
            except Exception as exc:
                if attempt >= self.max_retries or not self._classifier(exc):
                    raise
                wait = self.delay_for(attempt)
                attempt += 1
                log.warning(
                    "transient_failure_retrying",
                    operation=operation or getattr(fn, "__name__", "call"),
                    error=str(exc),
                    retry_in=wait,
                    attempt=attempt,
                )
                await self._sleep(wait)


class Deadline:
    """Wall-clock budget of one invocation."""

    def __init__(self, budget_seconds: float, *, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._expires_at = clock() + budget_seconds

    def remaining(self) -> float:
        return max(0.0, self._expires_at - self._clock())

    def has_time(self, cutoff: float) -> bool:
        """True while more than *cutoff* seconds remain."""
        return self.remaining() > cutoff
