"""Rate-limit aware retry combinator for platform calls."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, TypeVar

from config import settings
from services.errors import RateLimitError

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    max_retries: int = 3
    base_delay: float = 1.0

    @classmethod
    def from_settings(cls) -> "RetryPolicy":
        return cls(
            max_retries=max(int(settings.RETRY_MAX_RETRIES), 0),
            base_delay=max(float(settings.RETRY_BASE_DELAY_SECONDS), 0.0),
        )

    def delay_for(self, attempt: int, error: RateLimitError) -> float:
        """Seconds to wait after failed attempt number ``attempt`` (0-based)."""
        if error.retry_after is not None and error.retry_after > 0:
            return float(error.retry_after)
        return self.base_delay * (2 ** attempt)


async def with_retry(
    operation: Callable[[], Awaitable[T]],
    policy: Optional[RetryPolicy] = None,
    *,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    label: str = "platform call",
) -> T:
    """
    Run ``operation`` and retry it only when it raises RateLimitError.

    At most ``policy.max_retries + 1`` attempts are made. Any other exception
    propagates on the first attempt. When retries are exhausted the last
    RateLimitError is re-raised.
    """
    policy = policy or RetryPolicy.from_settings()
    attempt = 0

    while True:
        try:
            return await operation()
        except RateLimitError as exc:
            if attempt >= policy.max_retries:
                raise
            delay = policy.delay_for(attempt, exc)
            logger.warning(
                "Rate limited on %s (attempt %s/%s); retrying in %.2fs",
                label,
                attempt + 1,
                policy.max_retries + 1,
                delay,
            )
            await sleep(delay)
            attempt += 1
