"""
Toolgate Circuit Breaker

Protects tool execution against a failing backing service. State lives in
the shared key-value store so every worker sees the same circuit.

States:
- CLOSED: Normal operation, calls pass through
- OPEN: Service is failing, calls are rejected immediately (or served by a fallback)
- HALF_OPEN: Testing recovery; exactly one trial call at a time

Transitions:
- CLOSED → OPEN: failures within the failure window reach the threshold
- OPEN → HALF_OPEN: reset timeout elapsed since the circuit opened
- HALF_OPEN → CLOSED: trial call succeeds
- HALF_OPEN → OPEN: trial call fails

Store keys (per service):
    circuit_breaker:{service}:state        CircuitState value, 24h TTL
    circuit_breaker:{service}:failures     failure counter, failure-window TTL
    circuit_breaker:{service}:successes    success counter
    circuit_breaker:{service}:last_failure {message, class, time}
    circuit_breaker:{service}:opened_at    epoch seconds the circuit opened
    circuit_breaker:{service}:trial_lock   held by the single half-open trial
"""

from __future__ import annotations

import logging
import re
import time
from collections.abc import Callable
from typing import TypeVar

from toolgate.core.models import CircuitState, CircuitStats
from toolgate.exceptions import CircuitOpenError
from toolgate.observability.metrics import record_circuit_transition
from toolgate.settings import CircuitBreakerSettings, StoreSettings
from toolgate.storage.kv import KeyValueStore

logger = logging.getLogger(__name__)

T = TypeVar("T")

KEY_PREFIX = "circuit_breaker"

# Messages that indicate an infrastructure problem rather than a caller error.
_RECOVERABLE_PATTERNS = re.compile(
    r"SQLSTATE"
    r"|Connection refused"
    r"|Table .* doesn't exist"
    r"|Base table or view not found"
    r"|Connection timed out"
    r"|Too many connections",
    re.IGNORECASE,
)


def is_recoverable_error(error: BaseException) -> bool:
    """Default predicate: may a fallback stand in for this failure?

    Connection and timeout errors, and database/infrastructure messages,
    are recoverable. Everything else (validation, logic errors) is re-raised.
    """
    if isinstance(error, (ConnectionError, TimeoutError)):
        return True
    return bool(_RECOVERABLE_PATTERNS.search(str(error)))


class CircuitBreaker:
    """Per-service circuit breaker backed by a shared store.

    Args:
        store: Shared key-value store for circuit state.
        settings: Thresholds, timeouts and TTLs (per-service overrides allowed).
        store_settings: Lock TTL and wait bound for counter updates.
        clock: Epoch-seconds clock; injectable for tests.
    """

    def __init__(
        self,
        store: KeyValueStore,
        settings: CircuitBreakerSettings | None = None,
        store_settings: StoreSettings | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self._store = store
        self._settings = settings or CircuitBreakerSettings()
        self._store_settings = store_settings or StoreSettings()
        self._clock = clock

    @staticmethod
    def _key(service: str, suffix: str) -> str:
        return f"{KEY_PREFIX}:{service}:{suffix}"

    def _locked(self, service: str, suffix: str):
        return self._store.lock(
            self._key(service, suffix) + ":lock",
            ttl=self._store_settings.lock_ttl,
            wait=self._store_settings.lock_wait,
        )

    # ─── State ───────────────────────────────────────────

    def get_state(self, service: str) -> CircuitState:
        """Current state, promoting OPEN to HALF_OPEN once the reset timeout elapsed."""
        raw = self._store.get(self._key(service, "state"))
        state = CircuitState(raw) if raw else CircuitState.CLOSED

        if state == CircuitState.OPEN:
            opened_at = self._store.get(self._key(service, "opened_at"))
            reset_timeout = self._settings.reset_timeout_for(service)
            if opened_at is None or self._clock() - float(opened_at) >= reset_timeout:
                self._set_state(service, CircuitState.HALF_OPEN, previous=state)
                logger.info(
                    "Circuit half-open, allowing a trial call",
                    extra={"service": service, "state": CircuitState.HALF_OPEN.value},
                )
                return CircuitState.HALF_OPEN

        return state

    def _set_state(self, service: str, state: CircuitState, previous: CircuitState | None = None) -> None:
        self._store.put(self._key(service, "state"), state.value, ttl=self._settings.state_ttl)
        if previous is not None and previous != state:
            record_circuit_transition(service=service, from_state=previous.value, to_state=state.value)

    def is_available(self, service: str) -> bool:
        """True unless the circuit is OPEN."""
        return self.get_state(service) != CircuitState.OPEN

    # ─── Execution ───────────────────────────────────────

    def call(
        self,
        service: str,
        operation: Callable[[], T],
        fallback: Callable[[], T] | None = None,
        is_recoverable: Callable[[BaseException], bool] | None = None,
    ) -> T:
        """Run ``operation`` under circuit protection.

        Raises:
            CircuitOpenError: Circuit open (or trial in flight) and no fallback given.
            Exception: Whatever ``operation`` raised, when no fallback applies.
        """
        recoverable = is_recoverable or is_recoverable_error
        state = self.get_state(service)

        if state == CircuitState.OPEN:
            logger.debug("Circuit open, rejecting call", extra={"service": service, "state": state.value})
            if fallback is not None:
                return fallback()
            raise CircuitOpenError(service)

        has_trial_lock = False
        if state == CircuitState.HALF_OPEN:
            has_trial_lock = self._store.add(
                self._key(service, "trial_lock"), True, ttl=self._settings.trial_lock_ttl
            )
            if not has_trial_lock:
                logger.debug(
                    "Trial call already in flight", extra={"service": service, "state": state.value}
                )
                if fallback is not None:
                    return fallback()
                raise CircuitOpenError(
                    service,
                    f"Service '{service}' is being tested for recovery. Please try again shortly.",
                )

        # The trial lock is held until the outcome has moved the state.
        try:
            try:
                result = operation()
            except Exception as error:
                self.record_failure(service, error)
                if fallback is None or not recoverable(error):
                    raise
                failure = error
            else:
                self.record_success(service)
                return result
        finally:
            if has_trial_lock:
                self._store.forget(self._key(service, "trial_lock"))

        logger.warning(
            "Operation failed, using fallback: %s",
            failure,
            extra={"service": service},
        )
        return fallback()

    # ─── Recording ───────────────────────────────────────

    def record_success(self, service: str) -> None:
        with self._locked(service, "successes"):
            self._store.increment(self._key(service, "successes"), ttl=self._settings.counter_ttl)

        state = self.get_state(service)
        if state == CircuitState.HALF_OPEN:
            self._close(service, previous=state)
            logger.info("Circuit closed after successful trial", extra={"service": service, "state": "CLOSED"})
            return

        with self._locked(service, "failures"):
            failures = int(self._store.get(self._key(service, "failures"), 0))
            if failures > 0:
                self._store.put(
                    self._key(service, "failures"),
                    failures - 1,
                    ttl=self._settings.failure_window_for(service),
                )

    def record_failure(self, service: str, error: BaseException) -> None:
        window = self._settings.failure_window_for(service)
        with self._locked(service, "failures"):
            failures = self._store.increment(self._key(service, "failures"), ttl=window)

        self._store.put(
            self._key(service, "last_failure"),
            {"message": str(error), "class": type(error).__name__, "time": self._clock()},
            ttl=self._settings.state_ttl,
        )

        threshold = self._settings.threshold_for(service)
        logger.warning(
            "Failure recorded (%d/%d): %s",
            failures,
            threshold,
            error,
            extra={"service": service},
        )

        state = self.get_state(service)
        if state == CircuitState.HALF_OPEN or (state == CircuitState.CLOSED and failures >= threshold):
            self._trip(service, previous=state, failures=failures)

    def _trip(self, service: str, previous: CircuitState, failures: int) -> None:
        self._set_state(service, CircuitState.OPEN, previous=previous)
        self._store.put(self._key(service, "opened_at"), self._clock(), ttl=self._settings.state_ttl)
        logger.error(
            "Circuit opened after %d failures",
            failures,
            extra={"service": service, "state": CircuitState.OPEN.value},
        )

    def _close(self, service: str, previous: CircuitState) -> None:
        self._set_state(service, CircuitState.CLOSED, previous=previous)
        self._store.forget(self._key(service, "failures"))
        self._store.forget(self._key(service, "opened_at"))
        self._store.forget(self._key(service, "last_failure"))

    # ─── Admin ───────────────────────────────────────────

    def reset(self, service: str) -> None:
        """Manually force the circuit back to CLOSED with zeroed counters."""
        for suffix in ("state", "failures", "successes", "last_failure", "opened_at", "trial_lock"):
            self._store.forget(self._key(service, suffix))
        logger.info("Circuit manually reset", extra={"service": service, "state": "CLOSED"})

    def get_stats(self, service: str) -> CircuitStats:
        opened_at = self._store.get(self._key(service, "opened_at"))
        return CircuitStats(
            service=service,
            state=self.get_state(service),
            failures=int(self._store.get(self._key(service, "failures"), 0)),
            successes=int(self._store.get(self._key(service, "successes"), 0)),
            last_failure=self._store.get(self._key(service, "last_failure")),
            opened_at=float(opened_at) if opened_at is not None else None,
            threshold=self._settings.threshold_for(service),
            reset_timeout=self._settings.reset_timeout_for(service),
        )
