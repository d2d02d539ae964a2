"""
auth/throttle.py -- Server-side login throttling: sliding-window rate limiter
and burst detector.

Both components count attempts per key in a sliding window (a deque of
timestamps pruned on every touch), not a fixed bucket: an attempt counts for
exactly `window` seconds after it happened, whenever that was.

Concurrency:
  State is per key and so is locking. Each key owns a re-entrant lock plus a
  reference count of threads currently using it; the shared dict is guarded
  by a short-lived global lock that is held only to look an entry up, never
  while counting. Two attempts for the same key serialize; attempts for
  different keys never wait on each other. An entry with no users and no
  history is dropped, so a spray of one-off emails does not grow memory.

  allow() followed by record() is a check-then-act sequence. Callers that
  need both atomically either use try_acquire() or wrap the sequence in
  hold(key) -- the login orchestrator does the latter because it also
  consults the burst detector between the two calls.

Keys are trimmed and lower-cased so "Alice@X.com " and "alice@x.com" share a
budget.

Layer rule: no imports from api/ or core/. The clock is injectable so tests
can move time without sleeping.
"""

from __future__ import annotations

import threading
import time
from collections import deque
from collections.abc import Callable, Iterator
from contextlib import contextmanager


def normalize_key(key: str) -> str:
    return key.strip().lower()


class _KeyState:
    __slots__ = ("lock", "users", "history")

    def __init__(self) -> None:
        self.lock = threading.RLock()
        self.users = 0
        self.history: deque[float] = deque()


class SlidingWindowCounter:
    """Per-key sliding-window event counter with per-key locking."""

    def __init__(self, window_seconds: float, clock: Callable[[], float] = time.monotonic) -> None:
        if window_seconds <= 0:
            raise ValueError("window_seconds must be positive")
        self.window_seconds = window_seconds
        self._clock = clock
        self._states: dict[str, _KeyState] = {}
        self._guard = threading.Lock()

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        """Hold the lock for `key` across several calls. Re-entrant."""
        with self._entry(normalize_key(key)):
            yield

    @contextmanager
    def _entry(self, key: str) -> Iterator[_KeyState]:
        with self._guard:
            state = self._states.get(key)
            if state is None:
                state = self._states[key] = _KeyState()
            state.users += 1
        try:
            with state.lock:
                yield state
        finally:
            with self._guard:
                state.users -= 1
                if state.users == 0 and not state.history:
                    self._states.pop(key, None)

    def _prune(self, state: _KeyState, now: float) -> None:
        cutoff = now - self.window_seconds
        history = state.history
        while history and history[0] <= cutoff:
            history.popleft()

    def count(self, key: str) -> int:
        with self._entry(normalize_key(key)) as state:
            self._prune(state, self._clock())
            return len(state.history)

    def add(self, key: str) -> None:
        with self._entry(normalize_key(key)) as state:
            now = self._clock()
            self._prune(state, now)
            state.history.append(now)

    def clear(self, key: str) -> None:
        with self._entry(normalize_key(key)) as state:
            state.history.clear()

    def purge_expired(self) -> int:
        """Drop idle keys whose whole history has left the window. Returns keys removed."""
        now = self._clock()
        removed = 0
        with self._guard:
            for key in list(self._states):
                state = self._states[key]
                # users == 0 means nobody holds or is waiting on state.lock, and
                # nobody can start to without first taking self._guard.
                if state.users:
                    continue
                self._prune(state, now)
                if not state.history:
                    del self._states[key]
                    removed += 1
        return removed

    def tracked_keys(self) -> int:
        with self._guard:
            return len(self._states)


class RateLimiter(SlidingWindowCounter):
    """At most `max_attempts` counted attempts per key per `window_minutes`.

    Usage:
        limiter = RateLimiter(max_attempts=5, window_minutes=15)
        if limiter.allow(email):
            limiter.record(email)
            ...
        limiter.reset(email)   # after a successful login
    """

    def __init__(
        self,
        max_attempts: int = 5,
        window_minutes: float = 15,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if max_attempts <= 0:
            raise ValueError("max_attempts must be positive")
        super().__init__(window_seconds=window_minutes * 60, clock=clock)
        self.max_attempts = max_attempts

    def allow(self, key: str) -> bool:
        return self.count(key) < self.max_attempts

    def record(self, key: str) -> None:
        self.add(key)

    def reset(self, key: str) -> None:
        self.clear(key)

    def try_acquire(self, key: str) -> bool:
        """Atomically check allow() and, if allowed, record the attempt."""
        with self.hold(key):
            if not self.allow(key):
                return False
            self.record(key)
            return True

    def retry_after(self, key: str) -> float:
        """Seconds until the key drops back under its budget (0.0 if it already is)."""
        with self._entry(normalize_key(key)) as state:
            now = self._clock()
            self._prune(state, now)
            excess = len(state.history) - self.max_attempts
            if excess < 0:
                return 0.0
            # The window must shed excess + 1 attempts; the oldest of those decides.
            return max(0.0, state.history[excess] + self.window_seconds - now)


class SuspiciousActivityDetector(SlidingWindowCounter):
    """Flags a key once more than `threshold` attempts land inside `window_minutes`.

    A heuristic: a positive answer asks the caller for more proof (a
    challenge); it is not a block.
    """

    def __init__(
        self,
        threshold: int = 3,
        window_minutes: float = 5,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if threshold <= 0:
            raise ValueError("threshold must be positive")
        super().__init__(window_seconds=window_minutes * 60, clock=clock)
        self.threshold = threshold

    def observe(self, key: str) -> None:
        self.add(key)

    def is_suspicious(self, key: str) -> bool:
        return self.count(key) > self.threshold
