from __future__ import annotations

import logging
import re
import threading
import time
from email.utils import parsedate_to_datetime
from typing import Callable

logger = logging.getLogger(__name__)

DEFAULT_BACKOFF_SECONDS = 25.0
MIN_BACKOFF_SECONDS = 5.0
MAX_BACKOFF_SECONDS = 90.0

_RATE_LIMIT_MESSAGE = re.compile(
    r"429|rate limit|too many requests|quota|resource[_ ]exhausted",
    re.IGNORECASE,
)
_SECONDS_HEADERS = ("retry-after", "x-retry-after")
_MILLIS_HEADERS = ("retry-after-ms", "x-retry-after-ms")


def _status_of(error: BaseException) -> int | None:
    candidates = [
        getattr(error, "status_code", None),
        getattr(error, "code", None),
        getattr(error, "status", None),
    ]
    response = getattr(error, "response", None)
    if response is not None:
        candidates.append(getattr(response, "status_code", None))
    for value in candidates:
        if isinstance(value, int) and not isinstance(value, bool):
            return value
        if isinstance(value, str) and value.isdigit():
            return int(value)
    return None


def _headers_of(error: BaseException) -> dict[str, str]:
    raw = getattr(error, "headers", None)
    if raw is None:
        response = getattr(error, "response", None)
        raw = getattr(response, "headers", None) if response is not None else None
    if not raw:
        return {}
    try:
        return {str(k).lower(): str(v) for k, v in dict(raw).items()}
    except (TypeError, ValueError):
        return {}


def _parse_seconds(value: object) -> float | None:
    if value is None:
        return None
    text = str(value).strip()
    if not text:
        return None
    try:
        return float(text)
    except ValueError:
        pass
    try:
        when = parsedate_to_datetime(text)
    except (TypeError, ValueError, IndexError):
        return None
    if when is None:
        return None
    return when.timestamp() - time.time()


def retry_after_hint(error: BaseException) -> float | None:
    """Seconds the upstream asked us to wait, if it said so."""
    headers = _headers_of(error)
    for key in _MILLIS_HEADERS:
        millis = _parse_seconds(headers.get(key))
        if millis is not None:
            return millis / 1000.0
    for key in _SECONDS_HEADERS:
        seconds = _parse_seconds(headers.get(key))
        if seconds is not None:
            return seconds

    millis = _parse_seconds(getattr(error, "retry_after_ms", None))
    if millis is not None:
        return millis / 1000.0
    return _parse_seconds(getattr(error, "retry_after", None))


class RateLimitGuard:
    """Process-wide cooldown shared by every LLM call site.

    ``limited_until`` only ever moves forward, so a short retry hint that
    arrives after a long one never shortens the cooldown.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._limited_until = 0.0
        self._lock = threading.Lock()

    def is_limited(self) -> bool:
        return self._clock() < self._limited_until

    def remaining_seconds(self) -> float:
        return max(0.0, self._limited_until - self._clock())

    @staticmethod
    def is_rate_limit_error(error: BaseException) -> bool:
        if _status_of(error) == 429:
            return True
        return bool(_RATE_LIMIT_MESSAGE.search(str(error)))

    @staticmethod
    def backoff_seconds(error: BaseException) -> float:
        hint = retry_after_hint(error)
        if hint is None:
            return DEFAULT_BACKOFF_SECONDS
        return max(MIN_BACKOFF_SECONDS, min(MAX_BACKOFF_SECONDS, hint))

    def record_limit(self, error: BaseException) -> bool:
        if not self.is_rate_limit_error(error):
            return False
        backoff = self.backoff_seconds(error)
        with self._lock:
            self._limited_until = max(self._limited_until, self._clock() + backoff)
        logger.warning("LLM rate limited; backing off for %.1fs", self.remaining_seconds())
        return True

    def reset(self) -> None:
        with self._lock:
            self._limited_until = 0.0


rate_limit_guard = RateLimitGuard()
