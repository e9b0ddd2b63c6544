"""Resilience governor wrapping every outbound provider call."""

import logging
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

from .circuit_breaker import CircuitBreaker
from .clock import Clock, SystemClock
from .exceptions import AuthenticationError, CircuitOpenError, RateLimitError
from .metrics import CIRCUIT_OPEN, ERROR, RATE_LIMITED, SUCCESS, UNAUTHENTICATED, IntegrationMetrics
from .rate_limit import RateLimiter
from .types import AcquireMode, CircuitBreakerConfig, RateLimitConfig

logger = logging.getLogger(__name__)

T = TypeVar("T")

SYNC_PREFIX = "sync."


class ResilienceGovernor:
    """
    Applies rate limiting and circuit breaking per (provider, operation key).

    The governor never retries; retry policy belongs to the caller. Every call
    is logged with its operation key, latency and outcome, and counted in
    `metrics`.

    Usage:
        governor = ResilienceGovernor()
        contacts = await governor.call("hubspot", "sync.contacts", client.get, "/contacts")
    """

    def __init__(
        self,
        rate_limiter: RateLimiter | None = None,
        circuit_breaker: CircuitBreaker | None = None,
        clock: Clock | None = None,
        max_queue_wait: float = 5.0,
        neutral_exceptions: tuple[type[BaseException], ...] = (AuthenticationError,),
        metrics: IntegrationMetrics | None = None,
    ):
        self.clock = clock or SystemClock()
        self.rate_limiter = rate_limiter or RateLimiter(clock=self.clock)
        self.circuit_breaker = circuit_breaker or CircuitBreaker(clock=self.clock)
        self.max_queue_wait = max_queue_wait
        # errors that say nothing about provider health
        self.neutral_exceptions = neutral_exceptions
        self.metrics = metrics or IntegrationMetrics()

    def configure(
        self,
        provider: str,
        rate_limit: RateLimitConfig | None = None,
        circuit: CircuitBreakerConfig | None = None,
        operation_key: str | None = None,
    ) -> None:
        """Configure limits for a provider, or for one of its operation keys."""
        if rate_limit:
            self.rate_limiter.configure(provider, rate_limit, operation_key)
        if circuit:
            self.circuit_breaker.configure(provider, circuit, operation_key)

    @staticmethod
    def mode_for(operation_key: str) -> AcquireMode:
        """Sync reads fail fast to bound pass latency; single-item writes queue."""
        if operation_key.startswith(SYNC_PREFIX):
            return AcquireMode.FAIL_FAST
        return AcquireMode.QUEUE

    async def call(
        self,
        provider: str,
        operation_key: str,
        fn: Callable[..., Awaitable[T]],
        *args: Any,
        mode: AcquireMode | None = None,
        **kwargs: Any,
    ) -> T:
        """
        Run `fn(*args, **kwargs)` under the key's circuit and rate limit.

        Raises:
            CircuitOpenError: Circuit open; `fn` was not called
            RateLimitError: No capacity (immediately, or after the queue bound)
            Exception: Whatever `fn` raised, unchanged
        """
        mode = mode or self.mode_for(operation_key)
        start = self.clock.monotonic()

        try:
            self.circuit_breaker.before_call(provider, operation_key)
        except CircuitOpenError:
            self.metrics.track_api_call(provider, operation_key, CIRCUIT_OPEN)
            logger.warning("%s:%s rejected: circuit open", provider, operation_key)
            raise

        try:
            if mode == AcquireMode.FAIL_FAST:
                self.rate_limiter.check_limit(provider, operation_key)
            else:
                await self.rate_limiter.acquire(
                    provider, operation_key, max_wait=self.max_queue_wait
                )
        except BaseException as e:
            self.circuit_breaker.release_trial(provider, operation_key)
            if isinstance(e, RateLimitError):
                self.metrics.track_rate_limit(provider, operation_key)
                self.metrics.track_api_call(provider, operation_key, RATE_LIMITED)
                logger.warning(
                    "%s:%s rejected: rate limited (retry after %ss)",
                    provider,
                    operation_key,
                    e.retry_after,
                )
            raise

        try:
            result = await fn(*args, **kwargs)
        except self.neutral_exceptions as e:
            self.circuit_breaker.release_trial(provider, operation_key)
            self.metrics.track_api_call(provider, operation_key, UNAUTHENTICATED, self._elapsed(start))
            logger.warning(
                "%s:%s failed in %.1fms: %s",
                provider,
                operation_key,
                self._elapsed_ms(start),
                type(e).__name__,
            )
            raise
        except Exception as e:
            self.circuit_breaker.record_failure(provider, operation_key, e)
            if isinstance(e, RateLimitError):
                self.metrics.track_rate_limit(provider, operation_key)
                self.metrics.track_api_call(provider, operation_key, RATE_LIMITED, self._elapsed(start))
            else:
                self.metrics.track_api_call(provider, operation_key, ERROR, self._elapsed(start))
            logger.warning(
                "%s:%s failed in %.1fms: %s: %s",
                provider,
                operation_key,
                self._elapsed_ms(start),
                type(e).__name__,
                e,
            )
            raise
        except BaseException:
            # cancelled: no verdict on provider health
            self.circuit_breaker.release_trial(provider, operation_key)
            raise

        self.circuit_breaker.record_success(provider, operation_key)
        self.metrics.track_api_call(provider, operation_key, SUCCESS, self._elapsed(start))
        logger.debug("%s:%s ok in %.1fms", provider, operation_key, self._elapsed_ms(start))
        return result

    def _elapsed(self, start: float) -> float:
        return self.clock.monotonic() - start

    def _elapsed_ms(self, start: float) -> float:
        return self._elapsed(start) * 1000

    def status(self, provider: str | None = None) -> dict[str, dict[str, Any]]:
        """Circuit stats plus remaining rate-limit tokens for each known key."""
        report = self.circuit_breaker.report(provider)
        for name, stats in report.items():
            key_provider, operation_key = name.split(":", 1)
            stats["rate_limit"] = self.rate_limiter.get_remaining(key_provider, operation_key)
        return report

    def reset(self, provider: str | None = None, operation_key: str | None = None) -> None:
        self.circuit_breaker.reset(provider, operation_key)
        self.rate_limiter.reset(provider, operation_key)


_default_governor: ResilienceGovernor | None = None


def get_governor() -> ResilienceGovernor:
    """Process-wide governor shared by every connector in this process."""
    global _default_governor
    if _default_governor is None:
        _default_governor = ResilienceGovernor()
    return _default_governor


def set_governor(governor: ResilienceGovernor | None) -> None:
    """Replace (or with None, drop) the process-wide governor."""
    global _default_governor
    _default_governor = governor
