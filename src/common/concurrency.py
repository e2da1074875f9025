"""Per-key synchronization primitives.

``KeyedLocks`` hands out one lock per key so unrelated keys never contend.
``SingleFlight`` collapses concurrent calls for the same key into one
execution whose result (or exception) every waiter receives.
"""
from __future__ import annotations

import threading
from typing import Callable, Dict, Generic, Hashable, Optional, TypeVar

T = TypeVar("T")


class KeyedLocks:
    """Lazily created ``threading.Lock`` per key."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: Dict[Hashable, threading.Lock] = {}

    def get(self, key: Hashable) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.Lock()
                self._locks[key] = lock
            return lock

    def __call__(self, key: Hashable) -> threading.Lock:
        return self.get(key)


class _Call(Generic[T]):
    def __init__(self) -> None:
        self.done = threading.Event()
        self.value: Optional[T] = None
        self.error: Optional[BaseException] = None


class SingleFlight(Generic[T]):
    """Memoizing call collapser.

    The first caller for a key runs ``fn``; concurrent callers block until it
    finishes and share the outcome. Completed results are remembered for the
    lifetime of the instance, so each key is computed at most once. Failures
    are remembered too: a key that failed keeps failing with the same error.
    """

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._calls: Dict[Hashable, _Call[T]] = {}

    def do(self, key: Hashable, fn: Callable[[], T]) -> T:
        with self._guard:
            call = self._calls.get(key)
            leader = call is None
            if leader:
                call = _Call()
                self._calls[key] = call
        assert call is not None
        if leader:
            try:
                call.value = fn()
            except BaseException as exc:  # pylint: disable=broad-exception-caught
                call.error = exc
            finally:
                call.done.set()
        else:
            call.done.wait()
        if call.error is not None:
            raise call.error
        return call.value  # type: ignore[return-value]

    def peek(self, key: Hashable) -> Optional[T]:
        """Return a completed, successful result without triggering work."""
        with self._guard:
            call = self._calls.get(key)
        if call is None or not call.done.is_set() or call.error is not None:
            return None
        return call.value

    def __contains__(self, key: Hashable) -> bool:
        with self._guard:
            return key in self._calls

    def clear(self) -> None:
        with self._guard:
            self._calls.clear()
