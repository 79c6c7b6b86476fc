from __future__ import annotations

import asyncio
import inspect
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Union

from assessment_runtime.runtime.clock import Clock
from assessment_runtime.runtime.contracts import (
    ClockReading,
    DisclosureStatus,
    ExecutionResult,
    FinalizeResult,
    ProblemSpec,
    SessionMode,
    SessionState,
    SessionVerdict,
)
from assessment_runtime.runtime.disclosure import (
    DEFAULT_AI_ASSIST_DELAY,
    DEFAULT_HINT_INTERVAL,
    DisclosureScheduler,
)
from assessment_runtime.runtime.execution_client import parse_error_line
from assessment_runtime.runtime.submission_coordinator import SubmissionCoordinator
from assessment_runtime.runtime.test_harness import Executor, TestHarness, VerdictCallback


logger = logging.getLogger(__name__)

# Events passed to listeners
STARTED = "started"
FINISHED = "finished"
FINALIZED = "finalized"
VERDICT = "verdict"

FINALIZE_INTERRUPTED = "Finalize was interrupted"

Listener = Callable[["SessionStateMachine", str], Optional[Awaitable[None]]]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SessionStateMachine:
    """Lifecycle of one attempt: NOT_STARTED -> ACTIVE -> FINISHED.

    The machine owns the session's only scheduling loop (one task, `tick_interval`
    seconds apart) which drives the Clock; hint and AI-assist lock state is derived
    from the anchor on demand and never cached between ticks.

    `finish()` has two triggers, the learner's submit and the Clock's expiry. The
    guard check and the state write happen in one synchronous step with no `await`
    in between, so on the event loop exactly one caller leaves ACTIVE and the other
    sees FINISHED and does nothing. Only the winner calls the SubmissionCoordinator.

    Invariant violations (start twice, finish before start, actions after finish)
    are no-ops returning a falsy value.
    """

    def __init__(
        self,
        session_id: str,
        mode: Union[SessionMode, str],
        *,
        coordinator: SubmissionCoordinator,
        executor: Executor,
        problems: Optional[List[ProblemSpec]] = None,
        time_limit: Optional[timedelta] = None,
        hint_interval: timedelta = DEFAULT_HINT_INTERVAL,
        ai_assist_delay: timedelta = DEFAULT_AI_ASSIST_DELAY,
        tick_interval: Optional[float] = 1.0,
        now_fn: Callable[[], datetime] = utcnow,
        user_id: Optional[int] = None,
        language: Optional[str] = None,
    ):
        self.session_id = str(session_id)
        self.mode = mode if isinstance(mode, SessionMode) else SessionMode.parse(mode)
        self.coordinator = coordinator
        self.executor = executor
        self.harness = TestHarness(executor)
        self.problems: Dict[str, ProblemSpec] = {p.id: p for p in (problems or [])}
        self.time_limit = time_limit
        self.hint_interval = hint_interval
        self.ai_assist_delay = ai_assist_delay
        self.tick_interval = tick_interval
        self.now_fn = now_fn
        self.user_id = user_id
        self.language = language

        self._state = SessionState.NOT_STARTED
        self.anchor_time: Optional[datetime] = None
        self.deadline: Optional[datetime] = None
        self.clock: Optional[Clock] = None
        self.scheduler = DisclosureScheduler(None, hint_interval=hint_interval, ai_assist_delay=ai_assist_delay)

        self.forced = False
        self.finished_at: Optional[datetime] = None
        self.finalize_result: Optional[FinalizeResult] = None
        self.problem_verdicts: Dict[str, bool] = {}
        self._pending_outcome: Union[SessionVerdict, bool, None] = None

        self.listeners: List[Listener] = []
        # Environment-level exclusivity (focus mode etc.), released on FINISHED
        self.release_hooks: List[Callable[[], None]] = []

        self._loop_task: Optional[asyncio.Task] = None
        self._finalize_task: Optional[asyncio.Task] = None
        self._finalizing = False
        self._finalized = asyncio.Event()
        # Async listener calls scheduled from sync code, kept alive until done
        self._listener_tasks: Set[asyncio.Task] = set()

    # ------------------------------------------------------------------ state

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def is_active(self) -> bool:
        return self._state is SessionState.ACTIVE

    def start(self, now: Optional[datetime] = None) -> bool:
        """NOT_STARTED -> ACTIVE. Stamps the anchor (and the deadline for timed modes)."""
        if self._state is not SessionState.NOT_STARTED:
            return False
        anchor = now or self.now_fn()
        deadline = None
        if self.mode.is_timed and self.time_limit is not None:
            deadline = anchor + self.time_limit
        self._activate(anchor, deadline)
        logger.info(
            "session %s started mode=%s anchor=%s deadline=%s",
            self.session_id,
            self.mode.value,
            anchor.isoformat(),
            deadline.isoformat() if deadline else None,
        )
        self._notify(STARTED)
        return True

    def resume(self, anchor_time: datetime, deadline: Optional[datetime] = None) -> bool:
        """Rebuild an ACTIVE session from a stored anchor (page reload, process restart)."""
        if self._state is not SessionState.NOT_STARTED:
            return False
        self._activate(anchor_time, deadline)
        return True

    def restore_finished(
        self,
        anchor_time: Optional[datetime],
        deadline: Optional[datetime],
        *,
        finished_at: Optional[datetime],
        forced: bool,
        finalize_result: Optional[FinalizeResult],
    ) -> None:
        self._state = SessionState.FINISHED
        self.anchor_time = anchor_time
        self.deadline = deadline
        self.scheduler = DisclosureScheduler(
            anchor_time, hint_interval=self.hint_interval, ai_assist_delay=self.ai_assist_delay
        )
        self.finished_at = finished_at
        self.forced = bool(forced)
        self.finalize_result = finalize_result
        if finalize_result is not None:
            self._finalized.set()

    def _activate(self, anchor: datetime, deadline: Optional[datetime]) -> None:
        self.anchor_time = anchor
        self.deadline = deadline
        self.clock = Clock(anchor, deadline, on_expire=self._on_clock_expired)
        self.scheduler = DisclosureScheduler(
            anchor, hint_interval=self.hint_interval, ai_assist_delay=self.ai_assist_delay
        )
        self._state = SessionState.ACTIVE
        self._spawn_loop()

    # ------------------------------------------------------------ tick loop

    def _spawn_loop(self) -> None:
        if not self.tick_interval:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # No event loop (sync caller): ticks are driven manually
            return
        self._loop_task = loop.create_task(self._run_loop(), name=f"session-tick-{self.session_id}")

    async def _run_loop(self) -> None:
        while self._state is SessionState.ACTIVE:
            self.tick()
            if self._state is not SessionState.ACTIVE:
                break
            await asyncio.sleep(float(self.tick_interval or 1.0))

    def _stop_loop(self) -> None:
        task = self._loop_task
        self._loop_task = None
        if task is None or task.done():
            return
        try:
            current = asyncio.current_task()
        except RuntimeError:
            current = None
        if task is not current:
            task.cancel()

    def tick(self, now: Optional[datetime] = None) -> Optional[ClockReading]:
        if self._state is not SessionState.ACTIVE or self.clock is None:
            return None
        return self.clock.tick(now or self.now_fn())

    def _on_clock_expired(self, reading: ClockReading) -> None:
        if not self._claim_finish(forced=True, now=reading.now):
            return
        logger.info("session %s deadline reached, finishing", self.session_id)
        completion = self._complete_finish(outcome=None, language=None)
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            asyncio.run(completion)
            return
        self._finalize_task = loop.create_task(completion, name=f"session-finalize-{self.session_id}")

    # ---------------------------------------------------------------- finish

    def _claim_finish(self, forced: bool, now: Optional[datetime]) -> bool:
        # Guard + write, no await in between
        if self._state is not SessionState.ACTIVE:
            return False
        self._state = SessionState.FINISHED
        self.forced = bool(forced)
        self.finished_at = now or self.now_fn()
        self._finalizing = True
        return True

    async def finish(
        self,
        forced: bool = False,
        *,
        outcome: Union[SessionVerdict, bool, None] = None,
        language: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Optional[FinalizeResult]:
        """ACTIVE -> FINISHED. Returns None when another trigger already finished the session."""
        if not self._claim_finish(forced, now):
            return None
        return await self._complete_finish(outcome=outcome, language=language)

    async def _complete_finish(
        self,
        *,
        outcome: Union[SessionVerdict, bool, None],
        language: Optional[str],
    ) -> FinalizeResult:
        if self.clock is not None:
            self.clock.stop()
        self._stop_loop()
        if language:
            self.language = language
        logger.info(
            "session %s finished forced=%s duration=%ss",
            self.session_id,
            self.forced,
            self.duration_seconds(),
        )
        self._pending_outcome = outcome
        try:
            await self._notify_async(FINISHED)
        except asyncio.CancelledError:
            self._finalizing = False
            self._record_interrupted()
            raise
        finally:
            # Before finalizing: exclusivity never depends on the finalize outcome
            self._release()

        return await self._call_coordinator(outcome)

    async def _call_coordinator(self, outcome: Union[SessionVerdict, bool, None]) -> FinalizeResult:
        self._finalizing = True
        self._finalized.clear()
        try:
            resolved = self.session_outcome() if outcome is None else outcome
            result = await self.coordinator.finalize(
                self.session_id,
                resolved,
                self.duration_seconds(),
                self.language or "unknown",
                user_id=self.user_id,
            )
        except asyncio.CancelledError:
            self._record_interrupted()
            raise
        finally:
            self._finalizing = False
        self.finalize_result = result
        self._finalized.set()
        await self._notify_async(FINALIZED)
        return result

    def _record_interrupted(self) -> None:
        # Cancelled mid-finalize (shutdown, dropped request): same as a failed call, retry stays open
        logger.warning("session %s finalize interrupted", self.session_id)
        self.finalize_result = FinalizeResult(accepted=False, reason=FINALIZE_INTERRUPTED)
        self._finalized.set()

    def _release(self) -> None:
        hooks, self.release_hooks = self.release_hooks, []
        for hook in hooks:
            try:
                hook()
            except Exception:
                logger.exception("session %s release hook failed", self.session_id)

    async def retry_finalize(self) -> Optional[FinalizeResult]:
        """Re-issue a failed finalize. Never re-enters ACTIVE; never repeats an accepted one."""
        if self._state is not SessionState.FINISHED or self._finalizing:
            return None
        if self.finalize_result is None or self.finalize_result.accepted:
            return None
        return await self._call_coordinator(self._pending_outcome)

    async def wait_finalized(self, timeout: Optional[float] = None) -> Optional[FinalizeResult]:
        if self._state is not SessionState.FINISHED:
            return None
        try:
            await asyncio.wait_for(self._finalized.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            return None
        return self.finalize_result

    async def close(self) -> None:
        """Stop background work without finishing (process shutdown)."""
        self._stop_loop()
        task = self._finalize_task
        if task is not None and not task.done():
            await asyncio.wait({task}, timeout=5)
        await self.flush_listeners()

    async def flush_listeners(self) -> None:
        """Wait for listener calls scheduled by sync transitions (start)."""
        pending = [t for t in self._listener_tasks if not t.done()]
        if pending:
            await asyncio.gather(*pending)

    # --------------------------------------------------------- derived values

    def duration_seconds(self, now: Optional[datetime] = None) -> int:
        if self.anchor_time is None:
            return 0
        end = now or self.finished_at or self.now_fn()
        spent = max(0, int((end - self.anchor_time).total_seconds()))
        if self.deadline is not None:
            spent = min(spent, max(0, int((self.deadline - self.anchor_time).total_seconds())))
        return spent

    def session_outcome(self) -> bool:
        """AND over the latest run-tests verdict of every problem; untested counts as failed."""
        return all(self.problem_verdicts.get(pid, False) for pid in self.problems)

    def reading(self, now: Optional[datetime] = None) -> Optional[ClockReading]:
        if self.clock is None:
            return None
        return self.clock.read(now or self.now_fn())

    def hint_statuses(self, problem_id: str, now: Optional[datetime] = None) -> List[DisclosureStatus]:
        problem = self.problems.get(str(problem_id))
        if problem is None or not problem.hints:
            return []
        return self.scheduler.statuses(problem.hints, now or self.now_fn())

    def ai_status(self, now: Optional[datetime] = None) -> DisclosureStatus:
        return self.scheduler.ai_status(now or self.now_fn())

    # ------------------------------------------------------- gated operations

    async def run(self, language: str, source: str, stdin: str | None = "") -> Optional[ExecutionResult]:
        """Free-form run against custom stdin."""
        if self._state is not SessionState.ACTIVE:
            return None
        result = await self.executor.execute(language, source, stdin)
        if result.error_message and result.error_line is None:
            result.error_line = parse_error_line(result.error_message, language)
        return result

    async def run_tests(
        self,
        problem_id: str,
        language: str,
        source: str,
        *,
        on_verdict: VerdictCallback | None = None,
    ) -> Optional[SessionVerdict]:
        if self._state is not SessionState.ACTIVE:
            return None
        problem = self.problems.get(str(problem_id))
        if problem is None:
            return None
        verdict = await self.harness.run(problem, language, source, on_verdict=on_verdict)
        # The session may have finished while the cases were running
        if self._state is SessionState.ACTIVE:
            self.problem_verdicts[problem.id] = verdict.passed_all
            self.language = language
            await self._notify_async(VERDICT)
        return verdict

    # ------------------------------------------------------------- listeners

    def _notify(self, event: str) -> None:
        for listener in list(self.listeners):
            try:
                maybe = listener(self, event)
            except Exception:
                logger.exception("session %s listener failed on %s", self.session_id, event)
                continue
            if inspect.isawaitable(maybe):
                try:
                    loop = asyncio.get_running_loop()
                except RuntimeError:
                    asyncio.run(_swallow(maybe, self.session_id, event))
                    continue
                task = loop.create_task(_swallow(maybe, self.session_id, event))
                self._listener_tasks.add(task)
                task.add_done_callback(self._listener_tasks.discard)

    async def _notify_async(self, event: str) -> None:
        for listener in list(self.listeners):
            try:
                maybe = listener(self, event)
                if inspect.isawaitable(maybe):
                    await maybe
            except Exception:
                logger.exception("session %s listener failed on %s", self.session_id, event)


async def _swallow(awaitable: Awaitable[Any], session_id: str, event: str) -> None:
    try:
        await awaitable
    except Exception:
        logger.exception("session %s listener failed on %s", session_id, event)
