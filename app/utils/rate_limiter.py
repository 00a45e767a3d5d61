"""
In-memory token bucket rate limiter for the public access endpoints.
For production with multiple Cloud Run instances, consider Redis/Memorystore.
"""
import time
import threading
from typing import Dict, Optional, Tuple
from dataclasses import dataclass

from app.config import get_settings


@dataclass
class TokenBucket:
    """Token bucket for rate limiting."""
    tokens: float
    last_update: float
    max_tokens: int
    refill_rate: float  # tokens per second


class RateLimiter:
    """
    In-memory token bucket rate limiter.
    Thread-safe implementation for single-instance deployment.

    Keys are built by the caller, e.g. ``"<document_id>:<client_ip>"`` for
    code requests so that one visitor cannot spray codes across documents.
    """

    def __init__(self, max_requests: int = 5, window_seconds: int = 300):
        self.max_tokens = max_requests
        self.refill_rate = max_requests / window_seconds
        self._buckets: Dict[str, TokenBucket] = {}
        self._lock = threading.Lock()
        self._cleanup_interval = 3600
        self._last_cleanup = time.time()

    def _get_bucket(self, key: str) -> TokenBucket:
        if key not in self._buckets:
            self._buckets[key] = TokenBucket(
                tokens=float(self.max_tokens),
                last_update=time.time(),
                max_tokens=self.max_tokens,
                refill_rate=self.refill_rate
            )
        return self._buckets[key]

    def _refill_bucket(self, bucket: TokenBucket) -> None:
        now = time.time()
        elapsed = now - bucket.last_update
        bucket.tokens = min(
            bucket.max_tokens,
            bucket.tokens + elapsed * bucket.refill_rate
        )
        bucket.last_update = now

    def _cleanup_old_buckets(self) -> None:
        """Remove buckets that haven't been used for an hour."""
        now = time.time()
        if now - self._last_cleanup < self._cleanup_interval:
            return

        cutoff = now - self._cleanup_interval
        stale = [key for key, bucket in self._buckets.items() if bucket.last_update < cutoff]
        for key in stale:
            del self._buckets[key]

        self._last_cleanup = now

    def is_allowed(self, key: str) -> Tuple[bool, int]:
        """
        Consume one token for the key.

        Returns:
            Tuple of (allowed, retry_after_seconds)
        """
        with self._lock:
            self._cleanup_old_buckets()
            bucket = self._get_bucket(key)
            self._refill_bucket(bucket)

            if bucket.tokens >= 1:
                bucket.tokens -= 1
                return True, 0
            retry_after = int((1 - bucket.tokens) / bucket.refill_rate) + 1
            return False, retry_after

    def get_remaining(self, key: str) -> int:
        with self._lock:
            bucket = self._get_bucket(key)
            self._refill_bucket(bucket)
            return int(bucket.tokens)

    def reset(self, key: str) -> None:
        """Reset the bucket for a given key (e.g., after successful verification)."""
        with self._lock:
            self._buckets.pop(key, None)


_code_request_limiter: Optional[RateLimiter] = None
_code_verify_limiter: Optional[RateLimiter] = None


def get_code_request_limiter() -> RateLimiter:
    """Limiter for access code requests (default 5 per 5 minutes)."""
    global _code_request_limiter
    if _code_request_limiter is None:
        settings = get_settings()
        _code_request_limiter = RateLimiter(
            max_requests=settings.code_request_rate_limit_requests,
            window_seconds=settings.code_request_rate_limit_window_seconds,
        )
    return _code_request_limiter


def get_code_verify_limiter() -> RateLimiter:
    """Limiter for code verification attempts (default 10 per minute)."""
    global _code_verify_limiter
    if _code_verify_limiter is None:
        settings = get_settings()
        _code_verify_limiter = RateLimiter(
            max_requests=settings.code_verify_rate_limit_requests,
            window_seconds=settings.code_verify_rate_limit_window_seconds,
        )
    return _code_verify_limiter
