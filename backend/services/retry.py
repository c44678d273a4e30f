"""Bounded retry with exponential backoff for upstream calls."""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

from config import settings

logger = logging.getLogger(__name__)

MAX_DELAY_SECONDS = 30
BACKOFF_MULTIPLIER = 2


class UpstreamError(Exception):
    """Raised by the price and weather clients on transport or HTTP failures."""
    def __init__(self, message: str, status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(message)


class _FetchFailed:
    """Sentinel returned when every attempt has failed."""

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __bool__(self):
        return False

    def __repr__(self):
        return "FETCH_FAILED"


FETCH_FAILED = _FetchFailed()


def _always(_exc: BaseException) -> bool:
    return True


def is_transient_upstream_error(exc: BaseException) -> bool:
    """Retry transport failures, timeouts, rate limits and 5xx; not other 4xx."""
    if not isinstance(exc, UpstreamError) or exc.status_code is None:
        return True
    return exc.status_code in (408, 429) or exc.status_code >= 500


@dataclass
class RetryPolicy:
    """Retry an async call up to ``max_attempts`` times.

    The delay before attempt ``n`` (zero based, n >= 1) is
    ``base_delay * BACKOFF_MULTIPLIER ** (n - 1)`` seconds, capped at
    ``MAX_DELAY_SECONDS``. Each attempt is bounded by ``attempt_timeout``.
    A result for which ``is_retryable_result`` returns True counts as a
    failed attempt, as does any exception accepted by ``is_retryable_error``.
    Other exceptions end the run immediately.
    """
    max_attempts: int = 3
    base_delay: float = 1.0
    attempt_timeout: Optional[float] = None
    is_retryable_result: Optional[Callable[[Any], bool]] = None
    is_retryable_error: Callable[[BaseException], bool] = _always
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep

    @classmethod
    def from_settings(cls, **overrides) -> "RetryPolicy":
        kwargs = {
            "max_attempts": settings.retry_max_attempts,
            "base_delay": settings.retry_delay_ms / 1000,
            "attempt_timeout": settings.foxess_request_timeout_seconds,
        }
        kwargs.update(overrides)
        return cls(**kwargs)

    def delay_for(self, attempt: int) -> float:
        return min(self.base_delay * (BACKOFF_MULTIPLIER ** attempt), MAX_DELAY_SECONDS)

    async def run(self, fn: Callable[[], Awaitable[Any]], name: str = "upstream") -> Any:
        """Run ``fn`` and return its result, or ``FETCH_FAILED`` when exhausted."""
        attempts = max(1, self.max_attempts)
        for attempt in range(attempts):
            if attempt > 0:
                delay = self.delay_for(attempt - 1)
                logger.warning("%s: retry %d/%d in %.1fs", name, attempt + 1, attempts, delay)
                await self.sleep(delay)

            try:
                if self.attempt_timeout:
                    result = await asyncio.wait_for(fn(), timeout=self.attempt_timeout)
                else:
                    result = await fn()
            except asyncio.TimeoutError:
                logger.warning("%s: attempt %d timed out after %.1fs", name, attempt + 1, self.attempt_timeout)
                continue
            except asyncio.CancelledError:
                raise
            except Exception as e:
                if not self.is_retryable_error(e):
                    logger.error("%s: non-retryable failure: %s", name, e)
                    return FETCH_FAILED
                logger.warning("%s: attempt %d failed: %s", name, attempt + 1, e)
                continue

            if self.is_retryable_result and self.is_retryable_result(result):
                logger.warning("%s: attempt %d returned a retryable result", name, attempt + 1)
                continue
            return result

        logger.error("%s: giving up after %d attempts", name, attempts)
        return FETCH_FAILED
