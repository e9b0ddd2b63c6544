"""Rate limiting using token bucket algorithm."""

import asyncio
import math
from dataclasses import dataclass
from datetime import timedelta
from threading import Lock
from typing import Any

from .clock import Clock, SystemClock
from .exceptions import RateLimitError
from .types import RateLimitConfig, RateLimitInfo

BucketKey = tuple[str, str]


@dataclass
class TokenBucket:
    """Token bucket for rate limiting."""

    max_tokens: float
    refill_rate: float  # tokens per second
    tokens: float
    last_refill: float

    def consume(self, now: float, tokens: float = 1.0) -> bool:
        """
        Try to consume tokens from the bucket.

        Args:
            now: Current monotonic time
            tokens: Number of tokens to consume

        Returns:
            True if tokens were consumed, False otherwise
        """
        self._refill(now)

        if self.tokens >= tokens:
            self.tokens -= tokens
            return True

        return False

    def _refill(self, now: float) -> None:
        """Refill tokens based on elapsed time."""
        elapsed = max(0.0, now - self.last_refill)

        new_tokens = elapsed * self.refill_rate
        self.tokens = min(self.max_tokens, self.tokens + new_tokens)
        self.last_refill = now

    def time_until_available(self, now: float, tokens: float = 1.0) -> float:
        """
        Calculate seconds until enough tokens are available.

        Returns:
            Seconds to wait, or 0 if tokens are available now
        """
        self._refill(now)

        if self.tokens >= tokens:
            return 0.0

        tokens_needed = tokens - self.tokens
        return tokens_needed / self.refill_rate


class RateLimiter:
    """
    Process-wide rate limiter keyed by (provider, operation key).

    Check-and-consume on a bucket happens under one lock so two concurrent
    callers can never both see the last token. Queued acquisitions for the
    same key additionally wait on a per-key asyncio lock, which keeps them
    FIFO.
    """

    def __init__(
        self,
        default_config: RateLimitConfig | None = None,
        clock: Clock | None = None,
    ) -> None:
        self.default_config = default_config
        self.clock = clock or SystemClock()
        self.buckets: dict[BucketKey, TokenBucket] = {}
        self.configs: dict[BucketKey, RateLimitConfig] = {}
        self.provider_configs: dict[str, RateLimitConfig] = {}
        self._lock = Lock()
        self._waiters: dict[BucketKey, asyncio.Lock] = {}

    def configure(
        self,
        provider: str,
        config: RateLimitConfig,
        operation_key: str | None = None,
    ) -> None:
        """
        Configure rate limiting for a provider, or for one of its operation keys.

        A provider-level config applies to every operation key of that
        provider that has no config of its own. Re-applying the current config
        leaves live buckets untouched.
        """
        with self._lock:
            if operation_key is None:
                if self.provider_configs.get(provider) == config:
                    return
                self.provider_configs[provider] = config
                # rebuild buckets that inherited the old provider config
                for key in [k for k in self.buckets if k[0] == provider and k not in self.configs]:
                    del self.buckets[key]
            else:
                key = (provider, operation_key)
                if self.configs.get(key) == config:
                    return
                self.configs[key] = config
                self.buckets[key] = self._new_bucket(config)

    def _config_for(self, key: BucketKey) -> RateLimitConfig | None:
        return self.configs.get(key) or self.provider_configs.get(key[0]) or self.default_config

    def _new_bucket(self, config: RateLimitConfig) -> TokenBucket:
        refill_rate = config.max_requests / config.time_window
        max_tokens = config.max_burst or config.max_requests

        return TokenBucket(
            max_tokens=float(max_tokens),
            refill_rate=refill_rate,
            tokens=float(max_tokens),
            last_refill=self.clock.monotonic(),
        )

    def _bucket(self, key: BucketKey) -> TokenBucket | None:
        bucket = self.buckets.get(key)
        if bucket is None:
            config = self._config_for(key)
            if config is None:
                return None
            bucket = self._new_bucket(config)
            self.buckets[key] = bucket
        return bucket

    def try_acquire(self, provider: str, operation_key: str, tokens: float = 1.0) -> float:
        """
        Consume tokens if available.

        Returns:
            0.0 if consumed, otherwise the seconds until enough tokens exist
        """
        key = (provider, operation_key)
        with self._lock:
            bucket = self._bucket(key)
            if bucket is None:
                # No rate limit configured - allow all requests
                return 0.0

            now = self.clock.monotonic()
            if bucket.consume(now, tokens):
                return 0.0
            return bucket.time_until_available(now, tokens)

    def check_limit(self, provider: str, operation_key: str, tokens: float = 1.0) -> None:
        """
        Fail-fast acquisition.

        Raises:
            RateLimitError: If the bucket for this key is exhausted
        """
        wait = self.try_acquire(provider, operation_key, tokens)
        if wait > 0:
            raise RateLimitError(
                f"Rate limit exceeded for {provider}:{operation_key}",
                provider=provider,
                retry_after=max(1, math.ceil(wait)),
            )

    async def acquire(
        self,
        provider: str,
        operation_key: str,
        tokens: float = 1.0,
        max_wait: float = 5.0,
    ) -> float:
        """
        Queued acquisition: wait for capacity up to `max_wait` seconds.

        Returns:
            Seconds spent waiting

        Raises:
            RateLimitError: If capacity would not be available within max_wait
        """
        key = (provider, operation_key)
        with self._lock:
            waiter = self._waiters.setdefault(key, asyncio.Lock())

        waited = 0.0
        async with waiter:
            while True:
                wait = self.try_acquire(provider, operation_key, tokens)
                if wait <= 0:
                    return waited
                if waited + wait > max_wait:
                    raise RateLimitError(
                        f"Rate limit exceeded for {provider}:{operation_key} "
                        f"(queue wait would exceed {max_wait:g}s)",
                        provider=provider,
                        retry_after=max(1, math.ceil(wait)),
                    )
                await self.clock.sleep(wait)
                waited += wait

    def get_remaining(self, provider: str, operation_key: str) -> dict[str, Any]:
        """
        Get remaining tokens for one key.

        Returns:
            Dictionary with remaining and max token counts (empty if unlimited)
        """
        key = (provider, operation_key)
        with self._lock:
            bucket = self._bucket(key)
            if bucket is None:
                return {}
            bucket._refill(self.clock.monotonic())
            return {
                "remaining": int(bucket.tokens),
                "max": int(bucket.max_tokens),
            }

    def get_info(self, provider: str, operation_key: str) -> RateLimitInfo | None:
        """Rate limit snapshot in the ConnectionStatus format."""
        key = (provider, operation_key)
        with self._lock:
            bucket = self._bucket(key)
            if bucket is None:
                return None
            now = self.clock.monotonic()
            bucket._refill(now)
            to_full = (bucket.max_tokens - bucket.tokens) / bucket.refill_rate
            return RateLimitInfo(
                limit=int(bucket.max_tokens),
                remaining=int(bucket.tokens),
                reset_time=self.clock.now() + timedelta(seconds=to_full),
            )

    def reset(self, provider: str | None = None, operation_key: str | None = None) -> None:
        """
        Reset rate limit buckets.

        Args:
            provider: Optional provider to reset (all if None)
            operation_key: Optional operation key to reset (all of provider if None)
        """
        now = self.clock.monotonic()
        with self._lock:
            for key, bucket in self.buckets.items():
                if provider and key[0] != provider:
                    continue
                if operation_key and key[1] != operation_key:
                    continue
                bucket.tokens = bucket.max_tokens
                bucket.last_refill = now
