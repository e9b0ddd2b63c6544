"""Circuit breaking per (provider, operation key)."""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from threading import Lock
from typing import Any

from .clock import Clock, SystemClock
from .exceptions import CircuitOpenError
from .types import CircuitBreakerConfig, CircuitState

logger = logging.getLogger(__name__)

CircuitKey = tuple[str, str]


@dataclass
class Circuit:
    """Breaker state for one key."""

    state: CircuitState = CircuitState.CLOSED
    consecutive_failures: int = 0
    opened_at: float | None = None
    trial_in_flight: bool = False
    total_requests: int = 0
    total_failures: int = 0
    total_successes: int = 0
    total_rejected: int = 0
    last_failure_at: datetime | None = None
    last_success_at: datetime | None = None
    last_error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "state": self.state.value,
            "consecutive_failures": self.consecutive_failures,
            "total_requests": self.total_requests,
            "total_failures": self.total_failures,
            "total_successes": self.total_successes,
            "total_rejected": self.total_rejected,
            "last_failure_at": self.last_failure_at.isoformat() if self.last_failure_at else None,
            "last_success_at": self.last_success_at.isoformat() if self.last_success_at else None,
            "last_error": self.last_error,
        }


class CircuitBreaker:
    """
    Consecutive-failure circuit breaker.

    CLOSED: calls pass, failures are counted; `failure_threshold` consecutive
    failures open the circuit.
    OPEN: calls are rejected with CircuitOpenError until `cooldown_seconds`
    have passed.
    HALF_OPEN: exactly one trial call is admitted; its success closes the
    circuit, its failure reopens it with a fresh cooldown. Other calls are
    rejected while the trial is in flight.
    """

    def __init__(
        self,
        default_config: CircuitBreakerConfig | None = None,
        clock: Clock | None = None,
    ) -> None:
        self.default_config = default_config or CircuitBreakerConfig()
        self.clock = clock or SystemClock()
        self.circuits: dict[CircuitKey, Circuit] = {}
        self.configs: dict[CircuitKey, CircuitBreakerConfig] = {}
        self.provider_configs: dict[str, CircuitBreakerConfig] = {}
        self._lock = Lock()

    def configure(
        self,
        provider: str,
        config: CircuitBreakerConfig,
        operation_key: str | None = None,
    ) -> None:
        """Configure thresholds for a provider or for one of its operation keys."""
        with self._lock:
            if operation_key is None:
                self.provider_configs[provider] = config
            else:
                self.configs[(provider, operation_key)] = config

    def _config_for(self, key: CircuitKey) -> CircuitBreakerConfig:
        return self.configs.get(key) or self.provider_configs.get(key[0]) or self.default_config

    def _circuit(self, key: CircuitKey) -> Circuit:
        circuit = self.circuits.get(key)
        if circuit is None:
            circuit = Circuit()
            self.circuits[key] = circuit
        return circuit

    def _retry_at(self, circuit: Circuit, config: CircuitBreakerConfig) -> datetime | None:
        if circuit.opened_at is None:
            return None
        remaining = max(0.0, circuit.opened_at + config.cooldown_seconds - self.clock.monotonic())
        return self.clock.now() + timedelta(seconds=remaining)

    def before_call(self, provider: str, operation_key: str) -> None:
        """
        Admit or reject a call.

        Raises:
            CircuitOpenError: If the circuit is open, or half-open with a trial
                already in flight
        """
        key = (provider, operation_key)
        with self._lock:
            circuit = self._circuit(key)
            config = self._config_for(key)

            if circuit.state == CircuitState.OPEN:
                elapsed = self.clock.monotonic() - (circuit.opened_at or 0.0)
                if elapsed >= config.cooldown_seconds:
                    circuit.state = CircuitState.HALF_OPEN
                    circuit.trial_in_flight = False
                    logger.info("Circuit half-open for %s:%s", provider, operation_key)

            if circuit.state == CircuitState.OPEN or (
                circuit.state == CircuitState.HALF_OPEN and circuit.trial_in_flight
            ):
                circuit.total_rejected += 1
                retry_at = self._retry_at(circuit, config)
                raise CircuitOpenError(
                    f"Circuit breaker is {circuit.state.value} for {provider}:{operation_key}",
                    provider=provider,
                    operation_key=operation_key,
                    retry_at=retry_at,
                )

            if circuit.state == CircuitState.HALF_OPEN:
                circuit.trial_in_flight = True

            circuit.total_requests += 1

    def record_success(self, provider: str, operation_key: str) -> None:
        """Record a successful call; closes a half-open circuit."""
        key = (provider, operation_key)
        with self._lock:
            circuit = self._circuit(key)
            circuit.total_successes += 1
            circuit.consecutive_failures = 0
            circuit.last_success_at = self.clock.now()
            if circuit.state != CircuitState.CLOSED:
                logger.info("Circuit closed for %s:%s", provider, operation_key)
            circuit.state = CircuitState.CLOSED
            circuit.opened_at = None
            circuit.trial_in_flight = False

    def record_failure(self, provider: str, operation_key: str, error: BaseException | None = None) -> None:
        """Record a failed call; may open or reopen the circuit."""
        key = (provider, operation_key)
        with self._lock:
            circuit = self._circuit(key)
            config = self._config_for(key)
            circuit.total_failures += 1
            circuit.consecutive_failures += 1
            circuit.last_failure_at = self.clock.now()
            circuit.last_error = str(error) if error else None

            if circuit.state == CircuitState.HALF_OPEN or (
                circuit.state == CircuitState.CLOSED
                and circuit.consecutive_failures >= config.failure_threshold
            ):
                circuit.state = CircuitState.OPEN
                circuit.opened_at = self.clock.monotonic()
                circuit.trial_in_flight = False
                logger.warning(
                    "Circuit opened for %s:%s after %d consecutive failures",
                    provider,
                    operation_key,
                    circuit.consecutive_failures,
                )

    def release_trial(self, provider: str, operation_key: str) -> None:
        """Give back a half-open trial slot without recording an outcome."""
        key = (provider, operation_key)
        with self._lock:
            circuit = self.circuits.get(key)
            if circuit and circuit.state == CircuitState.HALF_OPEN:
                circuit.trial_in_flight = False

    def get_state(self, provider: str, operation_key: str) -> CircuitState:
        """Current state, promoting OPEN to HALF_OPEN once cooldown elapsed."""
        key = (provider, operation_key)
        with self._lock:
            circuit = self.circuits.get(key)
            if circuit is None:
                return CircuitState.CLOSED
            if circuit.state == CircuitState.OPEN:
                config = self._config_for(key)
                if self.clock.monotonic() - (circuit.opened_at or 0.0) >= config.cooldown_seconds:
                    return CircuitState.HALF_OPEN
            return circuit.state

    def get_stats(self, provider: str, operation_key: str) -> dict[str, Any]:
        key = (provider, operation_key)
        with self._lock:
            circuit = self.circuits.get(key)
            if circuit is None:
                return Circuit().to_dict()
            stats = circuit.to_dict()
            retry_at = self._retry_at(circuit, self._config_for(key))
            stats["retry_at"] = retry_at.isoformat() if retry_at else None
            return stats

    def report(self, provider: str | None = None) -> dict[str, dict[str, Any]]:
        """Stats for every known circuit, keyed "provider:operation_key"."""
        with self._lock:
            keys = [k for k in self.circuits if provider is None or k[0] == provider]
        return {f"{p}:{op}": self.get_stats(p, op) for p, op in sorted(keys)}

    def reset(self, provider: str | None = None, operation_key: str | None = None) -> None:
        """Manually close circuits (all of them when no provider is given)."""
        with self._lock:
            for key in list(self.circuits):
                if provider and key[0] != provider:
                    continue
                if operation_key and key[1] != operation_key:
                    continue
                del self.circuits[key]
