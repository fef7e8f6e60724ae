"""Toolhost · Circuit Breaker.

Schützt fragile Downstream-Aufrufe:

  closed     Aufrufe laufen durch. Fehler zählen hoch; der Zähler verfällt,
             wenn seit dem letzten Fehler monitoring_period_ms vergangen sind.
  open       Ab failure_threshold Fehlern. Aufrufe werden sofort mit
             CircuitOpenError abgewiesen, fn wird nicht aufgerufen.
  half-open  Nach reset_timeout_ms seit dem letzten Fehler wird der nächste
             Aufruf versucht. half_open_successes Erfolge in Folge schließen
             den Breaker, jeder Fehler öffnet ihn wieder.

Usage:
    breaker = CircuitBreaker(fetch_quotes, failure_threshold=3)
    quotes = await breaker("EURUSD")

    @circuit_breaker(failure_threshold=3)
    async def fetch_quotes(symbol): ...
"""

from __future__ import annotations

import functools
import inspect
from enum import Enum
from typing import Any, Callable

from toolhost.core.errors import CircuitOpenError
from toolhost.telemetry.types import now_ms
from toolhost.utils.logging import get_logger

log = get_logger(__name__)


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half-open"


class CircuitBreaker:
    """Umhüllt eine (a)synchrone Funktion mit Fehler-Schwellwert."""

    def __init__(
        self,
        fn: Callable[..., Any],
        *,
        failure_threshold: int = 5,
        reset_timeout_ms: int = 60_000,
        monitoring_period_ms: int = 10_000,
        half_open_successes: int = 3,
        name: str = "",
        clock: Callable[[], int] | None = None,
    ) -> None:
        if failure_threshold < 1:
            raise ValueError("failure_threshold must be >= 1")
        self._fn = fn
        self._failure_threshold = failure_threshold
        self._reset_timeout_ms = reset_timeout_ms
        self._monitoring_period_ms = monitoring_period_ms
        self._half_open_successes = half_open_successes
        self._name = name or getattr(fn, "__qualname__", "circuit")
        self._clock = clock or now_ms

        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._success_count = 0
        self._last_failure_time = 0

    @property
    def state(self) -> CircuitState:
        return self._state

    @property
    def failure_count(self) -> int:
        return self._failure_count

    @property
    def last_failure_time(self) -> int:
        return self._last_failure_time

    async def __call__(self, *args: Any, **kwargs: Any) -> Any:
        now = self._clock()

        if (
            self._state is CircuitState.CLOSED
            and self._failure_count
            and now - self._last_failure_time > self._monitoring_period_ms
        ):
            self._failure_count = 0

        if self._state is CircuitState.OPEN:
            if now - self._last_failure_time > self._reset_timeout_ms:
                self._transition(CircuitState.HALF_OPEN)
                self._success_count = 0
            else:
                raise CircuitOpenError(
                    f"Circuit breaker '{self._name}' is open",
                    details={"name": self._name, "failures": self._failure_count},
                )

        try:
            result = self._fn(*args, **kwargs)
            if inspect.isawaitable(result):
                result = await result
        except Exception:
            self._on_failure()
            raise

        self._on_success()
        return result

    def reset(self) -> None:
        """Setzt den Breaker manuell auf closed zurück."""
        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._success_count = 0
        self._last_failure_time = 0

    def _on_success(self) -> None:
        if self._state is CircuitState.HALF_OPEN:
            self._success_count += 1
            if self._success_count >= self._half_open_successes:
                self._transition(CircuitState.CLOSED)
                self._failure_count = 0

    def _on_failure(self) -> None:
        self._failure_count += 1
        self._last_failure_time = self._clock()
        if (
            self._state is CircuitState.HALF_OPEN
            or self._failure_count >= self._failure_threshold
        ):
            self._transition(CircuitState.OPEN)

    def _transition(self, state: CircuitState) -> None:
        if state is self._state:
            return
        log.info(
            "circuit_state_changed",
            circuit=self._name,
            previous=self._state.value,
            current=state.value,
            failures=self._failure_count,
        )
        self._state = state

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self._name,
            "state": self._state.value,
            "failure_count": self._failure_count,
            "last_failure_time": self._last_failure_time,
        }


def circuit_breaker(**options: Any) -> Callable[[Callable[..., Any]], CircuitBreaker]:
    """Decorator-Variante. Der Breaker ist über das Ergebnis selbst erreichbar."""
    def decorator(fn: Callable[..., Any]) -> CircuitBreaker:
        breaker = CircuitBreaker(fn, **options)
        functools.update_wrapper(breaker, fn)
        return breaker

    return decorator
