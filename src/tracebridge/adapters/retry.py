from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from email.utils import parsedate_to_datetime
from typing import TypeVar

import httpx

T = TypeVar("T")

logger = logging.getLogger(__name__)

RETRYABLE_STATUS_CODES = frozenset({429, 502, 503, 504})


@dataclass(frozen=True)
class RetryDecision:
    retry: bool
    delay_seconds: float = 0.0


@dataclass(frozen=True)
class BackoffPolicy:
    max_attempts: int = 3
    base_delay_ms: int = 250
    max_delay_ms: int = 4000

    def delay_seconds(
        self, attempt: int, *, retry_after: str | None = None, rng: random.Random | None = None
    ) -> float:
        hinted = parse_retry_after_seconds(retry_after)
        cap = self.max_delay_ms / 1000
        if hinted is not None:
            return min(cap, hinted)
        exp_delay = min(cap, (self.base_delay_ms / 1000) * (2 ** (max(1, attempt) - 1)))
        jitter = (rng or random).random()
        return exp_delay * (0.8 + 0.4 * jitter)


def parse_retry_after_seconds(value: str | None) -> float | None:
    if value is None or not value.strip():
        return None
    candidate = value.strip()
    try:
        seconds = float(candidate)
    except ValueError:
        try:
            parsed = parsedate_to_datetime(candidate)
        except (TypeError, ValueError):
            return None
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=UTC)
        return max(0.0, (parsed - datetime.now(UTC)).total_seconds())
    return seconds if seconds >= 0 else None


def http_retry_classifier(policy: BackoffPolicy) -> Callable[[Exception, int], RetryDecision]:
    """Retry transport failures and throttling/unavailable responses; nothing else."""

    def classify(exc: Exception, attempt: int) -> RetryDecision:
        if isinstance(exc, httpx.TransportError):
            return RetryDecision(True, policy.delay_seconds(attempt))
        if isinstance(exc, httpx.HTTPStatusError):
            status = exc.response.status_code
            if status in RETRYABLE_STATUS_CODES:
                retry_after = exc.response.headers.get("Retry-After")
                return RetryDecision(True, policy.delay_seconds(attempt, retry_after=retry_after))
        return RetryDecision(False)

    return classify


async def async_retry(  # noqa: UP047
    fn: Callable[[], Awaitable[T]],
    *,
    max_attempts: int,
    classify: Callable[[Exception, int], RetryDecision],
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    if max_attempts < 1:
        raise ValueError("max_attempts must be >= 1")

    for attempt in range(1, max_attempts + 1):
        try:
            return await fn()
        except Exception as exc:
            decision = classify(exc, attempt)
            if not decision.retry or attempt >= max_attempts:
                raise
            logger.info(
                "http_retry_scheduled",
                extra={
                    "extra": {
                        "attempt": attempt,
                        "delay_seconds": round(decision.delay_seconds, 3),
                        "error_type": type(exc).__name__,
                    }
                },
            )
            await sleep(max(0.0, decision.delay_seconds))

    raise RuntimeError("Retry loop exhausted unexpectedly")
