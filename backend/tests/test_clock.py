from __future__ import annotations

from datetime import datetime, timedelta, timezone

from assessment_runtime.runtime.clock import Clock


T0 = datetime(2026, 3, 1, 10, 0, 0, tzinfo=timezone.utc)


def test_countdown_is_recomputed_from_deadline():
    clock = Clock(T0, T0 + timedelta(seconds=60))
    assert clock.tick(T0).remaining_seconds == 60
    # A late tick jumps straight to the right value
    assert clock.tick(T0 + timedelta(seconds=45)).remaining_seconds == 15
    assert clock.tick(T0 + timedelta(seconds=59, milliseconds=400)).remaining_seconds == 1


def test_elapsed_mode_without_deadline_never_expires():
    fired = []
    clock = Clock(T0, None, on_expire=fired.append)
    reading = clock.tick(T0 + timedelta(hours=5))
    assert reading.remaining_seconds is None
    assert reading.elapsed_seconds == 5 * 3600
    assert reading.expired is False
    assert fired == []


def test_expiry_fires_exactly_once():
    fired = []
    clock = Clock(T0, T0 + timedelta(seconds=60), on_expire=fired.append)

    clock.tick(T0 + timedelta(seconds=59))
    assert fired == []

    clock.tick(T0 + timedelta(seconds=61))
    clock.tick(T0 + timedelta(seconds=62))
    clock.tick(T0 + timedelta(seconds=120))

    assert len(fired) == 1
    assert fired[0].remaining_seconds == 0
    assert clock.expiry_fired is True
    assert clock.stopped is True


def test_reentrant_tick_from_callback_does_not_fire_again():
    fired = []
    clock = None

    def on_expire(reading):
        fired.append(reading)
        clock.tick(reading.now + timedelta(seconds=1))

    clock = Clock(T0, T0 + timedelta(seconds=10), on_expire=on_expire)
    clock.tick(T0 + timedelta(seconds=10))

    assert len(fired) == 1


def test_stopped_clock_does_not_fire():
    fired = []
    clock = Clock(T0, T0 + timedelta(seconds=10), on_expire=fired.append)
    clock.stop()
    clock.tick(T0 + timedelta(seconds=30))
    assert fired == []


def test_elapsed_never_negative():
    clock = Clock(T0)
    assert clock.elapsed(T0 - timedelta(seconds=5)) == 0
