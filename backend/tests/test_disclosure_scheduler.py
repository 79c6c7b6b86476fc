from __future__ import annotations

from datetime import datetime, timedelta, timezone

from assessment_runtime.runtime.contracts import NEVER, Hint, HintKind
from assessment_runtime.runtime.disclosure import DisclosureScheduler


ANCHOR = datetime(2026, 3, 1, 10, 0, 0, tzinfo=timezone.utc)


def _hints(n: int):
    return [Hint(ordinal=i, kind=HintKind.TEXT, content=f"hint {i}") for i in range(n)]


def test_hint_n_unlocks_at_anchor_plus_n_plus_one_intervals():
    sched = DisclosureScheduler(ANCHOR)
    h0, h1, h2 = _hints(3)

    assert sched.hint_unlock_time(h0) == ANCHOR + timedelta(minutes=5)
    assert sched.hint_unlock_time(h2) == ANCHOR + timedelta(minutes=15)

    at_4_59 = ANCHOR + timedelta(minutes=4, seconds=59)
    assert sched.status(h0, at_4_59).locked is True
    assert sched.status(h0, at_4_59).seconds_until_unlock(at_4_59) == 1

    at_5 = ANCHOR + timedelta(minutes=5)
    assert sched.status(h0, at_5).locked is False
    assert sched.status(h1, at_5).locked is True


def test_ai_gate_opens_after_seven_minutes():
    sched = DisclosureScheduler(ANCHOR)
    assert sched.ai_status(ANCHOR + timedelta(minutes=6, seconds=59)).locked is True
    status = sched.ai_status(ANCHOR + timedelta(minutes=7))
    assert status.locked is False
    assert status.seconds_until_unlock(ANCHOR + timedelta(minutes=7)) == 0


def test_everything_locked_until_the_session_starts():
    sched = DisclosureScheduler(None)
    far_future = ANCHOR + timedelta(days=365)
    h0 = _hints(1)[0]

    assert sched.status(h0, far_future).locked is True
    assert sched.status(h0, far_future).unlocks_at == NEVER
    assert sched.status(h0, far_future).seconds_until_unlock(far_future) is None
    assert sched.ai_status(far_future).locked is True
    assert sched.next_unlock([h0], far_future) is None


def test_schedule_depends_only_on_anchor():
    now = ANCHOR + timedelta(minutes=11)
    a = DisclosureScheduler(ANCHOR).statuses(_hints(3), now)
    # A fresh scheduler (page reload) with the same anchor agrees
    b = DisclosureScheduler(ANCHOR).statuses(_hints(3), now)
    assert a == b
    assert [s.locked for s in a] == [False, False, True]


def test_next_unlock_picks_earliest_pending_reveal():
    sched = DisclosureScheduler(ANCHOR)
    now = ANCHOR + timedelta(minutes=6)
    # hint 1 at 10 min, AI at 7 min
    assert sched.next_unlock(_hints(2), now) == ANCHOR + timedelta(minutes=7)


def test_custom_intervals():
    sched = DisclosureScheduler(ANCHOR, hint_interval=timedelta(seconds=10), ai_assist_delay=timedelta(seconds=30))
    h0 = _hints(1)[0]
    assert sched.status(h0, ANCHOR + timedelta(seconds=10)).locked is False
    assert sched.ai_status(ANCHOR + timedelta(seconds=29)).locked is True


def test_each_hint_unlocks_once_and_stays_unlocked():
    sched = DisclosureScheduler(ANCHOR)
    hints = _hints(3)
    for hint in hints:
        flips = 0
        prev = True
        for second in range(0, 20 * 60, 15):
            locked = sched.status(hint, ANCHOR + timedelta(seconds=second)).locked
            if prev and not locked:
                flips += 1
            assert not (not prev and locked)
            prev = locked
        assert flips == 1
