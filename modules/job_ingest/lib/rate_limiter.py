"""
Request/token rate limiter shared by every model call in a run.

Windows are reset-on-expiry: a window starts at the first event after the previous
one expired and its counters clear once `window_seconds` have elapsed from that
start (not on wall-clock minute boundaries). Admissions that have not yet been
recorded are held as in-flight reservations, so concurrent callers cannot all pass
the same check before any of them records.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass

log = logging.getLogger(__name__)

MINUTE = 60.0
DAY = 86400.0


@dataclass
class Reservation:
    estimated_tokens: int
    settled: bool = False


class _Window:
    """Request and token counters over one reset-on-expiry window."""

    def __init__(self, seconds: float, max_requests: int | None, max_tokens: int | None) -> None:
        self.seconds = seconds
        self.max_requests = max_requests
        self.max_tokens = max_tokens
        self.start: float | None = None
        self.requests = 0
        self.tokens = 0

    def roll(self, now: float) -> None:
        if self.start is not None and now - self.start >= self.seconds:
            self.start = None
            self.requests = 0
            self.tokens = 0

    def add(self, now: float, tokens: int) -> None:
        if self.start is None:
            self.start = now
        self.requests += 1
        self.tokens += tokens

    def wait_for(self, now: float, pending_requests: int, pending_tokens: int, estimated: int) -> float:
        """Seconds until this window admits a request of `estimated` tokens (0 if now)."""
        requests = self.requests + pending_requests
        tokens = self.tokens + pending_tokens
        blocked = False
        if self.max_requests is not None and requests >= self.max_requests:
            blocked = True
        # Admit only while the request count, and the token count plus the estimate, are below the ceilings.
        if self.max_tokens is not None and tokens + estimated >= self.max_tokens:
            # An oversized request is let through an otherwise empty window.
            if requests > 0 or tokens > 0:
                blocked = True
        if not blocked:
            return 0.0
        if self.start is None:
            # Only in-flight work is holding the window; it clears when recorded/released.
            return float("inf")
        return max(0.0, self.start + self.seconds - now)


class RateLimiter:
    def __init__(
        self,
        *,
        requests_per_minute: int | None = 30,
        tokens_per_minute: int | None = 60000,
        min_interval_seconds: float = 0.0,
        requests_per_day: int | None = None,
        tokens_per_day: int | None = None,
        poll_interval: float = 0.25,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.min_interval = float(min_interval_seconds or 0.0)
        self.poll_interval = float(poll_interval)
        self._clock = clock
        self._sleep = sleep
        self._lock = threading.Lock()
        self._windows = [_Window(MINUTE, requests_per_minute, tokens_per_minute)]
        if requests_per_day is not None or tokens_per_day is not None:
            self._windows.append(_Window(DAY, requests_per_day, tokens_per_day))
        self._last_request: float | None = None
        self._last_admit: float | None = None
        self._pending_requests = 0
        self._pending_tokens = 0

    # ---- Public API ----------------------------------------------------------

    def await_turn(self, estimated_tokens: int) -> Reservation:
        """
        Block until a request of `estimated_tokens` may be sent, then hold a
        reservation for it. Pass the reservation to record() or release().
        """
        estimated = max(0, int(estimated_tokens))
        waited = 0.0
        while True:
            with self._lock:
                now = self._clock()
                delay = self._delay_locked(now, estimated)
                if delay <= 0:
                    self._pending_requests += 1
                    self._pending_tokens += estimated
                    self._last_admit = now
                    if waited:
                        log.debug("RateLimiter admitted after %.2fs (est=%d tokens)", waited, estimated)
                    return Reservation(estimated_tokens=estimated)
            pause = min(delay, self.poll_interval)
            self._sleep(pause)
            waited += pause

    def record(self, actual_tokens: int, reservation: Reservation | None = None) -> None:
        """Count a request that was actually sent."""
        with self._lock:
            self._settle_locked(reservation)
            now = self._clock()
            for w in self._windows:
                w.roll(now)
                w.add(now, max(0, int(actual_tokens)))
            if self._last_request is None or now > self._last_request:
                self._last_request = now

    def release(self, reservation: Reservation) -> None:
        """Drop an admission that never reached the provider."""
        with self._lock:
            self._settle_locked(reservation)

    def snapshot(self) -> dict[str, int]:
        with self._lock:
            now = self._clock()
            minute = self._windows[0]
            minute.roll(now)
            return {
                "minute_requests": minute.requests,
                "minute_tokens": minute.tokens,
                "pending_requests": self._pending_requests,
            }

    # ---- Internals -----------------------------------------------------------

    def _settle_locked(self, reservation: Reservation | None) -> None:
        if reservation is None or reservation.settled:
            return
        reservation.settled = True
        self._pending_requests = max(0, self._pending_requests - 1)
        self._pending_tokens = max(0, self._pending_tokens - reservation.estimated_tokens)

    def _delay_locked(self, now: float, estimated: int) -> float:
        delay = 0.0
        marks = [t for t in (self._last_request, self._last_admit) if t is not None]
        if self.min_interval and marks:
            delay = max(delay, max(marks) + self.min_interval - now)
        for w in self._windows:
            w.roll(now)
            delay = max(delay, w.wait_for(now, self._pending_requests, self._pending_tokens, estimated))
        return delay
