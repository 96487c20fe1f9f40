from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, TypeVar

from notifyrelay.core.config import DELIVERY_PROVIDER_CIRCUIT, get_settings
from notifyrelay.core.errors import CircuitOpenError, CircuitTimeoutError
from notifyrelay.services.telemetry import increment_counter, set_gauge


logger = logging.getLogger(__name__)

T = TypeVar("T")

STATE_CLOSED = "CLOSED"
STATE_OPEN = "OPEN"
STATE_HALF_OPEN = "HALF_OPEN"

_STATE_GAUGE = {STATE_CLOSED: 0.0, STATE_HALF_OPEN: 0.5, STATE_OPEN: 1.0}


@dataclass(frozen=True)
class CircuitBreakerConfig:
    # Store thresholds in settings so operators can tune without code changes.
    failure_threshold: int
    timeout_s: float
    reset_timeout_s: float
    # Concurrent trial calls admitted while HALF_OPEN; further callers are rejected.
    half_open_trials: int = 1


def default_breaker_config() -> CircuitBreakerConfig:
    settings = get_settings()
    return CircuitBreakerConfig(
        failure_threshold=settings.cb_failure_threshold,
        timeout_s=settings.cb_timeout_s,
        reset_timeout_s=settings.cb_reset_timeout_s,
        half_open_trials=settings.cb_half_open_trials,
    )


def delivery_breaker_config() -> CircuitBreakerConfig:
    settings = get_settings()
    return CircuitBreakerConfig(
        failure_threshold=settings.cb_delivery_failure_threshold,
        timeout_s=settings.cb_delivery_timeout_s,
        reset_timeout_s=settings.cb_delivery_reset_timeout_s,
        half_open_trials=settings.cb_half_open_trials,
    )


@dataclass
class CircuitState:
    # Process-local breaker state; next_attempt only matters while OPEN.
    state: str = STATE_CLOSED
    failure_count: int = 0
    last_failure_time: float | None = None
    next_attempt: float | None = None


class _CircuitEntry:
    def __init__(self) -> None:
        self.state = CircuitState()
        self.lock = asyncio.Lock()
        self.trials_in_flight = 0


class CircuitBreakerRegistry:
    """Named circuit breakers guarding downstream calls.

    Entries are created lazily in the CLOSED state. Each entry has its own
    ``asyncio.Lock`` so admission and outcome bookkeeping are serialized per
    target while the guarded operations themselves run concurrently. The
    breaker never retries; callers decide what to do with a rejection.
    """

    def __init__(
        self,
        *,
        default_config: CircuitBreakerConfig | None = None,
        time_source: Callable[[], float] | None = None,
    ) -> None:
        self._default_config = default_config or default_breaker_config()
        self._time = time_source or time.time
        self._entries: dict[str, _CircuitEntry] = {}

    def _entry(self, name: str) -> _CircuitEntry:
        entry = self._entries.get(name)
        if entry is None:
            entry = _CircuitEntry()
            self._entries[name] = entry
        return entry

    def _transition(self, name: str, circuit: CircuitState, target: str) -> None:
        # Emit logs and counters on state transitions for operator visibility.
        if circuit.state == target:
            return
        log = logger.warning if target == STATE_OPEN else logger.info
        log("circuit_breaker_transition name=%s from=%s to=%s", name, circuit.state, target)
        increment_counter(f"circuit_breaker_transition_total.{name}.{target}")
        if target == STATE_OPEN:
            increment_counter("circuit_breaker_open_total")
        set_gauge(f"circuit_breaker_state.{name}", _STATE_GAUGE[target])
        circuit.state = target

    def _maybe_half_open(self, name: str, circuit: CircuitState) -> None:
        if circuit.state == STATE_OPEN and circuit.next_attempt is not None and self._time() >= circuit.next_attempt:
            self._transition(name, circuit, STATE_HALF_OPEN)

    async def execute(
        self,
        name: str,
        operation: Callable[[], Awaitable[T]],
        config: CircuitBreakerConfig | None = None,
    ) -> T:
        # Admit, run with a timeout, then record the outcome under the entry lock.
        cfg = config or self._default_config
        entry = self._entry(name)
        async with entry.lock:
            circuit = entry.state
            if circuit.state == STATE_OPEN:
                if circuit.next_attempt is not None and self._time() < circuit.next_attempt:
                    increment_counter(f"circuit_breaker_rejected_total.{name}")
                    raise CircuitOpenError(name)
                self._transition(name, circuit, STATE_HALF_OPEN)
            trial = circuit.state == STATE_HALF_OPEN
            if trial:
                if entry.trials_in_flight >= max(1, cfg.half_open_trials):
                    increment_counter(f"circuit_breaker_rejected_total.{name}")
                    raise CircuitOpenError(name)
                entry.trials_in_flight += 1

        try:
            try:
                result = await asyncio.wait_for(operation(), timeout=cfg.timeout_s)
            except asyncio.TimeoutError as exc:
                raise CircuitTimeoutError(name, cfg.timeout_s) from exc
        except Exception:
            async with entry.lock:
                self._release_trial(entry, trial)
                self._record_failure(name, entry.state, cfg)
            raise
        async with entry.lock:
            self._release_trial(entry, trial)
            self._record_success(name, entry.state)
        return result

    @staticmethod
    def _release_trial(entry: _CircuitEntry, trial: bool) -> None:
        if trial:
            entry.trials_in_flight = max(0, entry.trials_in_flight - 1)

    def _record_success(self, name: str, circuit: CircuitState) -> None:
        circuit.failure_count = 0
        circuit.next_attempt = None
        self._transition(name, circuit, STATE_CLOSED)

    def _record_failure(self, name: str, circuit: CircuitState, cfg: CircuitBreakerConfig) -> None:
        now = self._time()
        previous = circuit.state
        circuit.failure_count += 1
        circuit.last_failure_time = now
        if previous == STATE_HALF_OPEN or circuit.failure_count >= cfg.failure_threshold:
            circuit.next_attempt = now + cfg.reset_timeout_s
            self._transition(name, circuit, STATE_OPEN)

    async def execute_with_delivery_config(self, operation: Callable[[], Awaitable[T]]) -> T:
        return await self.execute(DELIVERY_PROVIDER_CIRCUIT, operation, delivery_breaker_config())

    def get_state(self, name: str) -> str:
        entry = self._entries.get(name)
        return entry.state.state if entry is not None else STATE_CLOSED

    def is_open(self, name: str) -> bool:
        # Reading moves OPEN to HALF_OPEN once the reset window has elapsed.
        entry = self._entries.get(name)
        if entry is None:
            return False
        self._maybe_half_open(name, entry.state)
        return entry.state.state == STATE_OPEN

    def get_metrics(self, name: str) -> dict[str, Any] | None:
        entry = self._entries.get(name)
        if entry is None:
            return None
        is_open = self.is_open(name)
        circuit = entry.state
        return {
            "state": circuit.state,
            "failure_count": circuit.failure_count,
            "last_failure_time": circuit.last_failure_time,
            "next_attempt": circuit.next_attempt,
            "is_open": is_open,
            "trials_in_flight": entry.trials_in_flight,
        }

    def all_metrics(self) -> dict[str, dict[str, Any]]:
        return {name: self.get_metrics(name) for name in list(self._entries)}  # type: ignore[misc]

    def reset(self, name: str) -> None:
        entry = self._entries.get(name)
        if entry is None:
            return
        circuit = entry.state
        self._transition(name, circuit, STATE_CLOSED)
        circuit.failure_count = 0
        circuit.last_failure_time = None
        circuit.next_attempt = None
        logger.info("circuit_breaker_reset name=%s", name)

    def force_half_open(self, name: str) -> None:
        entry = self._entries.get(name)
        if entry is None:
            return
        circuit = entry.state
        self._transition(name, circuit, STATE_HALF_OPEN)
        circuit.next_attempt = None
        logger.info("circuit_breaker_forced_half_open name=%s", name)
