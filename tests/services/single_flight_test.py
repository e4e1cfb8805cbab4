from __future__ import annotations

import threading
import time

import pytest

from services.single_flight import SingleFlight


def _wait_until(predicate, timeout: float = 5) -> None:
    deadline = time.monotonic() + timeout
    while not predicate() and time.monotonic() < deadline:
        time.sleep(0.01)


def test_sequential_calls_each_run() -> None:
    flight: SingleFlight[int] = SingleFlight()
    calls = []

    def fn() -> int:
        calls.append(1)
        return len(calls)

    assert flight.do(fn) == 1
    assert flight.do(fn) == 2
    assert not flight.in_flight


def test_overlapping_callers_share_result() -> None:
    flight: SingleFlight[object] = SingleFlight()
    release = threading.Event()
    calls = []
    results = []

    def fn() -> object:
        calls.append(1)
        release.wait(timeout=5)
        return object()

    def run() -> None:
        results.append(flight.do(fn))

    threads = [threading.Thread(target=run) for _ in range(5)]
    threads[0].start()
    _wait_until(lambda: flight.in_flight)
    for thread in threads[1:]:
        thread.start()
    time.sleep(0.2)
    release.set()
    for thread in threads:
        thread.join(timeout=5)

    assert len(calls) == 1
    assert len(results) == 5
    assert all(result is results[0] for result in results)


def test_overlapping_callers_share_error() -> None:
    flight: SingleFlight[int] = SingleFlight()
    release = threading.Event()
    errors = []

    def fn() -> int:
        release.wait(timeout=5)
        raise RuntimeError("provider down")

    def run() -> None:
        try:
            flight.do(fn)
        except RuntimeError as exc:
            errors.append(exc)

    threads = [threading.Thread(target=run) for _ in range(3)]
    threads[0].start()
    _wait_until(lambda: flight.in_flight)
    for thread in threads[1:]:
        thread.start()
    time.sleep(0.2)
    release.set()
    for thread in threads:
        thread.join(timeout=5)

    assert len(errors) == 3
    assert not flight.in_flight


def test_error_clears_flight() -> None:
    flight: SingleFlight[int] = SingleFlight()

    with pytest.raises(ValueError):
        flight.do(lambda: int("x"))

    assert flight.do(lambda: 7) == 7
