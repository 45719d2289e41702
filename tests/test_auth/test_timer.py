"""Tests for the periodic retry timer."""

from __future__ import annotations

import threading
import time

import pytest

from voiceprov.auth.timer import PeriodicTimer


def _wait_for(predicate, timeout: float = 2.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.005)
    return predicate()


class TestPeriodicTimer:
    def test_first_tick_is_immediate(self) -> None:
        fired = threading.Event()
        timer = PeriodicTimer(60, fired.set)
        timer.start()
        try:
            assert fired.wait(1)
        finally:
            timer.cancel()
            timer.join(1)

    def test_ticks_repeat(self) -> None:
        timer = PeriodicTimer(0.02, lambda: None)
        timer.start()
        try:
            assert _wait_for(lambda: timer.ticks >= 3)
        finally:
            timer.cancel()
            timer.join(1)

    def test_first_delay(self) -> None:
        fired = threading.Event()
        timer = PeriodicTimer(60, fired.set, first_delay=60)
        timer.start()
        try:
            assert not fired.wait(0.1)
        finally:
            timer.cancel()
            timer.join(1)
        assert timer.ticks == 0

    def test_cancel_stops_ticks(self) -> None:
        timer = PeriodicTimer(0.01, lambda: None)
        timer.start()
        assert _wait_for(lambda: timer.ticks >= 1)

        assert timer.cancel() is True
        timer.join(1)
        ticks = timer.ticks
        time.sleep(0.05)

        assert timer.ticks == ticks
        assert timer.is_cancelled

    def test_cancel_only_first_call_counts(self) -> None:
        timer = PeriodicTimer(1, lambda: None)

        assert timer.cancel() is True
        assert timer.cancel() is False

    def test_cancel_from_inside_tick(self) -> None:
        holder: dict[str, PeriodicTimer] = {}
        results: list[bool] = []

        def _tick() -> None:
            results.append(holder["timer"].cancel())

        timer = PeriodicTimer(0.01, _tick)
        holder["timer"] = timer
        timer.start()
        timer.join(1)

        assert results == [True]
        assert timer.ticks == 1

    def test_exception_does_not_stop_timer(self) -> None:
        calls: list[int] = []

        def _flaky() -> None:
            calls.append(1)
            if len(calls) == 1:
                raise RuntimeError("boom")

        timer = PeriodicTimer(0.01, _flaky)
        timer.start()
        try:
            assert _wait_for(lambda: len(calls) >= 2)
        finally:
            timer.cancel()
            timer.join(1)

    def test_slow_tick_does_not_cause_burst(self) -> None:
        starts: list[float] = []

        def _slow() -> None:
            starts.append(time.monotonic())
            time.sleep(0.05)

        timer = PeriodicTimer(0.01, _slow)
        timer.start()
        try:
            assert _wait_for(lambda: len(starts) >= 3)
        finally:
            timer.cancel()
            timer.join(1)

        gaps = [b - a for a, b in zip(starts, starts[1:])]
        assert all(gap >= 0.045 for gap in gaps)

    def test_rejects_non_positive_interval(self) -> None:
        with pytest.raises(ValueError):
            PeriodicTimer(0, lambda: None)
