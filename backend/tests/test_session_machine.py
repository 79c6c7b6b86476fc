from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from typing import List

from assessment_runtime.runtime.contracts import (
    ExecutionResult,
    FinalizeResult,
    Hint,
    HintKind,
    ProblemSpec,
    SessionMode,
    SessionState,
    TestCase,
)
from assessment_runtime.runtime.session_machine import (
    FINALIZE_INTERRUPTED,
    FINALIZED,
    FINISHED,
    STARTED,
    SessionStateMachine,
)


T0 = datetime(2026, 3, 1, 10, 0, 0, tzinfo=timezone.utc)


class _FakeNow:
    def __init__(self, start: datetime = T0):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now = self.now + timedelta(seconds=seconds)


class _FakeCoordinator:
    def __init__(self, results: List[FinalizeResult] | None = None):
        self.calls = []
        self.results = list(results or [])

    async def finalize(self, session_id, outcome, duration_seconds, language, *, user_id=None):
        self.calls.append(
            {"session_id": session_id, "outcome": outcome, "duration": duration_seconds, "language": language}
        )
        await asyncio.sleep(0)
        if self.results:
            return self.results.pop(0)
        return FinalizeResult(accepted=True)


class _EchoSumExecutor:
    async def execute(self, language, source, stdin=""):
        nums = [int(x) for x in (stdin or "").replace(",", " ").split()]
        return ExecutionResult(stdout=str(sum(nums)))


def _problems():
    return [
        ProblemSpec(
            id="p1",
            prompt="Add",
            test_cases=[TestCase(id="1", input="1 2", expected_output="3")],
            hints=[Hint(ordinal=0, kind=HintKind.TEXT, content="read ints")],
        ),
        ProblemSpec(id="p2", prompt="Add again", test_cases=[TestCase(id="1", input="4 4", expected_output="8")]),
    ]


def _machine(mode=SessionMode.CONTEST, *, limit=60, coordinator=None, clock=None, tick_interval=None):
    return SessionStateMachine(
        "s-1",
        mode,
        coordinator=coordinator or _FakeCoordinator(),
        executor=_EchoSumExecutor(),
        problems=_problems(),
        time_limit=timedelta(seconds=limit) if limit else None,
        tick_interval=tick_interval,
        now_fn=clock or _FakeNow(),
        user_id=7,
        language="python",
    )


def test_start_stamps_anchor_and_deadline_once():
    clock = _FakeNow()
    m = _machine(clock=clock)

    assert m.start() is True
    assert m.state is SessionState.ACTIVE
    assert m.anchor_time == T0
    assert m.deadline == T0 + timedelta(seconds=60)

    clock.advance(30)
    assert m.start() is False
    assert m.anchor_time == T0


def test_untimed_modes_have_no_deadline():
    m = _machine(SessionMode.PRACTICE)
    m.start()
    assert m.deadline is None
    assert m.reading().remaining_seconds is None


def test_finish_before_start_is_a_noop():
    coordinator = _FakeCoordinator()
    m = _machine(coordinator=coordinator)
    assert asyncio.run(m.finish()) is None
    assert m.state is SessionState.NOT_STARTED
    assert coordinator.calls == []


def test_contest_expires_once_and_finalizes_once():
    clock = _FakeNow()
    coordinator = _FakeCoordinator()
    m = _machine(coordinator=coordinator, clock=clock)

    async def scenario():
        m.start()
        clock.advance(59)
        m.tick()
        assert m.state is SessionState.ACTIVE

        clock.advance(2)
        m.tick()
        assert m.state is SessionState.FINISHED
        m.tick()
        result = await m.wait_finalized(timeout=1)
        m.tick()
        return result

    result = asyncio.run(scenario())

    assert result.accepted is True
    assert m.forced is True
    assert len(coordinator.calls) == 1
    # Time spent is capped at the limit
    assert coordinator.calls[0]["duration"] == 60
    # Nothing was tested: the forced submission is a failure
    assert coordinator.calls[0]["outcome"] is False


def test_double_submit_finalizes_once():
    coordinator = _FakeCoordinator()
    m = _machine(coordinator=coordinator)

    async def scenario():
        m.start()
        return await asyncio.gather(m.finish(), m.finish())

    first, second = asyncio.run(scenario())

    assert [r is None for r in (first, second)].count(True) == 1
    assert len(coordinator.calls) == 1
    assert m.forced is False


def test_submit_racing_expiry_is_a_noop():
    clock = _FakeNow()
    coordinator = _FakeCoordinator()
    m = _machine(coordinator=coordinator, clock=clock)

    async def scenario():
        m.start()
        clock.advance(61)
        m.tick()
        late = await m.finish(forced=False, outcome=True)
        final = await m.wait_finalized(timeout=1)
        return late, final

    late, final = asyncio.run(scenario())

    assert late is None
    assert final.accepted is True
    assert m.forced is True
    assert len(coordinator.calls) == 1


def test_tick_loop_drives_expiry():
    clock = _FakeNow()
    coordinator = _FakeCoordinator()
    m = _machine(coordinator=coordinator, clock=clock, tick_interval=0.01)

    async def scenario():
        m.start()
        clock.advance(120)
        for _ in range(200):
            if m.state is SessionState.FINISHED:
                break
            await asyncio.sleep(0.01)
        return await m.wait_finalized(timeout=2)

    result = asyncio.run(scenario())
    assert result.accepted is True
    assert m.forced is True
    assert len(coordinator.calls) == 1


def test_outcome_is_and_over_latest_run_tests_per_problem():
    coordinator = _FakeCoordinator()
    m = _machine(coordinator=coordinator)

    async def scenario():
        m.start()
        v1 = await m.run_tests("p1", "python", "...")
        assert v1.passed_all is True
        assert m.session_outcome() is False  # p2 untested
        await m.run_tests("p2", "python", "...")
        assert m.session_outcome() is True
        await m.finish()

    asyncio.run(scenario())
    assert coordinator.calls[0]["outcome"] is True


def test_explicit_outcome_overrides_verdicts():
    coordinator = _FakeCoordinator()
    m = _machine(coordinator=coordinator)

    async def scenario():
        m.start()
        await m.finish(outcome=True, language="cpp")

    asyncio.run(scenario())
    assert coordinator.calls[0]["outcome"] is True
    assert coordinator.calls[0]["language"] == "cpp"


def test_failed_finalize_stays_finished_and_can_be_retried_once_accepted():
    coordinator = _FakeCoordinator([FinalizeResult(accepted=False, reason="Failed to submit: ConnectError")])
    m = _machine(coordinator=coordinator)

    async def scenario():
        m.start()
        first = await m.finish()
        assert first.accepted is False
        assert m.state is SessionState.FINISHED

        # Actions are gated off after FINISHED
        assert await m.run("python", "print(1)", "") is None
        assert await m.run_tests("p1", "python", "...") is None

        retried = await m.retry_finalize()
        again = await m.retry_finalize()
        return retried, again

    retried, again = asyncio.run(scenario())

    assert retried.accepted is True
    assert again is None
    assert len(coordinator.calls) == 2
    assert m.state is SessionState.FINISHED


def test_retry_not_offered_after_accepted_finalize():
    m = _machine()

    async def scenario():
        m.start()
        await m.finish()
        return await m.retry_finalize()

    assert asyncio.run(scenario()) is None


class _HangingCoordinator(_FakeCoordinator):
    async def finalize(self, session_id, outcome, duration_seconds, language, *, user_id=None):
        if not self.calls:
            self.calls.append(session_id)
            await asyncio.sleep(10)
        return await super().finalize(session_id, outcome, duration_seconds, language, user_id=user_id)


def test_cancelled_finalize_is_recorded_and_retryable():
    coordinator = _HangingCoordinator()
    m = _machine(coordinator=coordinator)

    async def scenario():
        m.start()
        task = asyncio.create_task(m.finish())
        await asyncio.sleep(0.01)
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        interrupted = await m.wait_finalized(timeout=0.2)
        retried = await m.retry_finalize()
        return interrupted, retried

    interrupted, retried = asyncio.run(scenario())

    assert interrupted.accepted is False
    assert interrupted.reason == FINALIZE_INTERRUPTED
    assert retried.accepted is True
    assert m.state is SessionState.FINISHED
    assert m.finalize_result.accepted is True


def test_async_listener_scheduled_by_start_is_flushed():
    saved = []
    m = _machine()

    async def listener(machine, event):
        await asyncio.sleep(0)
        saved.append(event)

    m.listeners.append(listener)

    async def scenario():
        m.start()
        assert len(m._listener_tasks) == 1
        await m.flush_listeners()

    asyncio.run(scenario())
    assert saved == [STARTED]
    assert not m._listener_tasks


def test_release_hooks_run_on_finish_even_when_finalize_fails():
    released = []
    m = _machine(coordinator=_FakeCoordinator([FinalizeResult(accepted=False, reason="down")]))
    m.release_hooks.append(lambda: released.append(True))

    async def scenario():
        m.start()
        await m.finish()

    asyncio.run(scenario())
    assert released == [True]


def test_listeners_see_lifecycle_events_in_order():
    events = []
    m = _machine()
    m.listeners.append(lambda machine, event: events.append((event, machine.state)))

    async def scenario():
        m.start()
        await m.finish()

    asyncio.run(scenario())
    assert [e for e, _ in events] == [STARTED, FINISHED, FINALIZED]
    assert events[1][1] is SessionState.FINISHED


def test_resume_keeps_stored_anchor_and_lock_schedule():
    clock = _FakeNow(T0 + timedelta(minutes=6))
    m = _machine(SessionMode.PRACTICE, limit=0, clock=clock)

    assert m.resume(T0) is True
    assert m.state is SessionState.ACTIVE
    assert m.hint_statuses("p1")[0].locked is False
    assert m.ai_status().locked is True
    assert m.reading().elapsed_seconds == 360


def test_run_after_start_returns_program_output():
    m = _machine()

    async def scenario():
        m.start()
        return await m.run("python", "...", "2,3")

    assert asyncio.run(scenario()).stdout == "5"
