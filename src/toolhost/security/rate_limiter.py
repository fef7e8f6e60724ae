"""Toolhost · Rate-Limiter.

Fixed-Window-Zähler pro Client und Route. Das Fenster ist an der Uhr
ausgerichtet: reset_time = floor(now / window) * window + window.
"""
from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Callable

from toolhost.core.errors import RateLimitError
from toolhost.telemetry.types import now_ms
from toolhost.utils.logging import get_logger

log = get_logger(__name__)


@dataclass
class RateLimitBucket:
    """Zähler eines Clients für das aktuelle Fenster."""
    count: int
    reset_time: int  # ms


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    limit: int
    remaining: int
    reset_time: int
    retry_after: int  # Sekunden, 0 wenn erlaubt


class RateLimiter:
    """In-Memory Rate-Limiter mit Buckets je "client:route"."""

    def __init__(
        self,
        max_requests: int = 1000,
        window_ms: int = 60_000,
        *,
        message: str = "Too many requests, please try again later.",
        clock: Callable[[], int] | None = None,
    ) -> None:
        if max_requests < 1 or window_ms < 1:
            raise ValueError("max_requests and window_ms must be positive")
        self._max_requests = max_requests
        self._window_ms = window_ms
        self._message = message
        self._clock = clock or now_ms
        self._buckets: dict[str, RateLimitBucket] = {}

    @property
    def max_requests(self) -> int:
        return self._max_requests

    @property
    def window_ms(self) -> int:
        return self._window_ms

    @staticmethod
    def key(client_id: str, route: str) -> str:
        return f"{client_id}:{route}"

    def hit(self, client_id: str, route: str = "") -> RateLimitDecision:
        """Zählt einen Request und entscheidet, ob er erlaubt ist."""
        now = self._clock()
        key = self.key(client_id, route)
        window_start = (now // self._window_ms) * self._window_ms

        bucket = self._buckets.get(key)
        if bucket is None or now >= bucket.reset_time:
            bucket = RateLimitBucket(count=1, reset_time=window_start + self._window_ms)
            self._buckets[key] = bucket
            return self._decision(bucket, allowed=True, now=now)

        if bucket.count >= self._max_requests:
            return self._decision(bucket, allowed=False, now=now)

        bucket.count += 1
        return self._decision(bucket, allowed=True, now=now)

    def check(self, client_id: str, route: str = "") -> RateLimitDecision:
        """Wie hit(), wirft aber RateLimitError bei Überschreitung."""
        decision = self.hit(client_id, route)
        if not decision.allowed:
            log.warning(
                "rate_limit_exceeded",
                client=client_id, route=route, retry_after=decision.retry_after,
            )
            raise RateLimitError(
                self._message,
                retry_after=decision.retry_after,
                details={"limit": decision.limit, "reset_time": decision.reset_time},
            )
        return decision

    def _decision(self, bucket: RateLimitBucket, *, allowed: bool, now: int) -> RateLimitDecision:
        retry_after = 0 if allowed else max(1, math.ceil((bucket.reset_time - now) / 1000))
        return RateLimitDecision(
            allowed=allowed,
            limit=self._max_requests,
            remaining=max(0, self._max_requests - bucket.count),
            reset_time=bucket.reset_time,
            retry_after=retry_after,
        )

    def prune(self) -> int:
        """Entfernt abgelaufene Buckets. Gibt die Anzahl zurück."""
        now = self._clock()
        stale = [k for k, v in self._buckets.items() if now >= v.reset_time]
        for k in stale:
            del self._buckets[k]
        return len(stale)

    def reset(self, client_id: str | None = None, route: str = "") -> None:
        if client_id is None:
            self._buckets.clear()
        else:
            self._buckets.pop(self.key(client_id, route), None)

    def __len__(self) -> int:
        return len(self._buckets)
