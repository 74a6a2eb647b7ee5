"""
Rate limiting for the Exact Online API.

Exact allows a fixed number of calls per minute per company and reports the
remaining budget in X-RateLimit-Minutely-* response headers. The limiter
combines a client-side sliding window with those headers.
"""

import logging
import time
from collections import deque

from requests import Response

logger = logging.getLogger(__name__)


class RateLimitInfo:
    """Container for rate limit information from API response headers."""

    def __init__(
        self,
        limit: int | None = None,
        remaining: int | None = None,
        reset_time: float | None = None,
        retry_after: float | None = None,
    ):
        self.limit = limit
        self.remaining = remaining
        self.reset_time = reset_time  # epoch seconds
        self.retry_after = retry_after

    @property
    def usage_ratio(self) -> float | None:
        """Calculate current usage as ratio (0.0 to 1.0)."""
        if self.limit is None or self.remaining is None:
            return None
        if self.limit == 0:
            return 1.0
        return (self.limit - self.remaining) / self.limit

    def is_near_limit(self, threshold: float = 0.9) -> bool:
        ratio = self.usage_ratio
        return ratio is not None and ratio >= threshold

    def __repr__(self) -> str:
        return f"RateLimitInfo(limit={self.limit}, remaining={self.remaining})"


def _header_number(response: Response, name: str) -> float | None:
    headers = getattr(response, "headers", None) or {}
    value = headers.get(name) if hasattr(headers, "get") else None
    if value is None:
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        logger.warning(f"Ignoring malformed {name} header: {value!r}")
        return None


def parse_exact_rate_limit(response: Response) -> RateLimitInfo:
    """
    Parse Exact Online minutely rate limit headers.

    Headers:
    - X-RateLimit-Minutely-Limit
    - X-RateLimit-Minutely-Remaining
    - X-RateLimit-Minutely-Reset (epoch milliseconds)
    - Retry-After (seconds, on 429)
    """
    limit = _header_number(response, "X-RateLimit-Minutely-Limit")
    remaining = _header_number(response, "X-RateLimit-Minutely-Remaining")
    reset_ms = _header_number(response, "X-RateLimit-Minutely-Reset")

    return RateLimitInfo(
        limit=int(limit) if limit is not None else None,
        remaining=int(remaining) if remaining is not None else None,
        reset_time=reset_ms / 1000 if reset_ms is not None else None,
        retry_after=_header_number(response, "Retry-After"),
    )


def calculate_sleep_time(
    info: RateLimitInfo, buffer_ratio: float = 0.9, max_sleep: float = 60.0
) -> float:
    """
    How long to wait before the next call given the last response's headers.

    Once usage passes buffer_ratio the remaining calls are spread evenly over
    the time left until the minute resets; with no calls left that is the
    whole wait.
    """
    if info.retry_after:
        return min(info.retry_after, max_sleep)

    if info.is_near_limit(buffer_ratio):
        if info.reset_time:
            until_reset = info.reset_time - time.time()
            if until_reset <= 0:
                return 0.0
            return min(until_reset / max(info.remaining or 0, 1), max_sleep)
        return min(5.0, max_sleep)

    return 0.0


class RateLimiter:
    """Sliding one-minute window limiter, tightened by server-reported budgets."""

    def __init__(self, name: str, calls_per_minute: int = 60, max_delay: float = 60.0):
        self.name = name
        self.calls_per_minute = calls_per_minute
        self.max_delay = max_delay
        self._calls: deque[float] = deque()
        self.last_rate_limit_info: RateLimitInfo | None = None

    def process_response(self, response: Response) -> None:
        """Remember the rate limit headers of a response."""
        self.last_rate_limit_info = parse_exact_rate_limit(response)
        logger.debug(f"{self.name} rate limit info: {self.last_rate_limit_info}")

    def get_delay(self, now: float | None = None) -> float:
        now = time.time() if now is None else now

        while self._calls and now - self._calls[0] >= 60:
            self._calls.popleft()

        delays = [0.0]
        if len(self._calls) >= self.calls_per_minute:
            delays.append(60 - (now - self._calls[0]))
        if self.last_rate_limit_info:
            delays.append(calculate_sleep_time(self.last_rate_limit_info, max_sleep=self.max_delay))

        return min(max(delays), self.max_delay)

    def wait_if_needed(self) -> None:
        """Wait if rate limiting is needed, then record the call."""
        delay = self.get_delay()
        if delay > 0:
            logger.info(f"{self.name} rate limiting: waiting {delay:.2f}s")
            time.sleep(delay)
        self._calls.append(time.time())
