from __future__ import annotations

import threading
from typing import Callable, Generic, TypeVar

T = TypeVar("T")


class _Call(Generic[T]):
    def __init__(self) -> None:
        self.done = threading.Event()
        self.result: T | None = None
        self.error: Exception | None = None


class SingleFlight(Generic[T]):
    """Run at most one call at a time; overlapping callers share its outcome.

    The first caller executes `fn`. Callers arriving while it runs block until it
    finishes and receive the same return value, or the same exception.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._call: _Call[T] | None = None

    @property
    def in_flight(self) -> bool:
        with self._lock:
            return self._call is not None

    def do(self, fn: Callable[[], T]) -> T:
        with self._lock:
            call = self._call
            leader = call is None
            if call is None:
                call = _Call()
                self._call = call

        if not leader:
            call.done.wait()
            if call.error is not None:
                raise call.error
            return call.result  # type: ignore[return-value]

        try:
            call.result = fn()
        except Exception as exc:
            call.error = exc
            raise
        finally:
            with self._lock:
                self._call = None
            call.done.set()
        return call.result


__all__ = ["SingleFlight"]
