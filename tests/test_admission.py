from __future__ import annotations

import threading
from collections import Counter

from collab_hub.admission import (
    AdmissionControl,
    KeyedRollingWindowLimiter,
    RollingWindowLimiter,
)


class FakeClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


def test_rolling_window_rejects_over_limit_and_recovers() -> None:
    clock = FakeClock()
    limiter = RollingWindowLimiter(5, clock=clock)

    assert [limiter.allow() for _ in range(6)] == [True] * 5 + [False]

    clock.now += 30
    assert limiter.allow() is False

    clock.now += 31
    assert limiter.allow() is True
    assert limiter.is_idle() is False


def test_rejected_attempts_do_not_extend_the_window() -> None:
    clock = FakeClock()
    limiter = RollingWindowLimiter(1, clock=clock)
    assert limiter.allow() is True

    for _ in range(10):
        clock.now += 5
        assert limiter.allow() is False

    clock.now += 11
    assert limiter.allow() is True


def test_keyed_limiter_tracks_sources_independently_and_forgets_idle_keys() -> None:
    clock = FakeClock()
    limiter = KeyedRollingWindowLimiter(2, clock=clock)

    assert limiter.allow("10.0.0.1")
    assert limiter.allow("10.0.0.1")
    assert not limiter.allow("10.0.0.1")
    assert limiter.allow("10.0.0.2")
    assert limiter.tracked_keys() == 2

    clock.now += 61
    assert limiter.allow("10.0.0.3")
    assert limiter.tracked_keys() == 1


def test_admission_control_defaults() -> None:
    admission = AdmissionControl()

    assert [admission.allow_session_create() for _ in range(6)] == [True] * 5 + [False]
    assert all(admission.allow_connection("10.0.0.1") for _ in range(20))
    assert admission.allow_connection("10.0.0.1") is False
    assert admission.allow_connection("") is True


def test_keyed_limiter_admits_each_fresh_key_once_under_contention() -> None:
    limiter = KeyedRollingWindowLimiter(1)
    keys = [f"10.0.{n // 256}.{n % 256}" for n in range(300)]
    allowed: Counter[str] = Counter()
    counter_lock = threading.Lock()

    def hammer() -> None:
        for key in keys:
            if limiter.allow(key):
                with counter_lock:
                    allowed[key] += 1

    workers = [threading.Thread(target=hammer) for _ in range(4)]
    for worker in workers:
        worker.start()
    for worker in workers:
        worker.join()

    assert set(allowed.values()) == {1}
    assert len(allowed) == len(keys)
    assert limiter.tracked_keys() == len(keys)
