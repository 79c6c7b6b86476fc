from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy.orm import Session

from assessment_runtime.core.config import settings
from assessment_runtime.models.session import RuntimeSession
from assessment_runtime.runtime.contracts import FinalizeResult, ProblemSpec, SessionMode, SessionState
from assessment_runtime.runtime.execution_client import ExecutionClient
from assessment_runtime.runtime.session_machine import (
    FINALIZE_INTERRUPTED,
    FINALIZED,
    FINISHED,
    STARTED,
    VERDICT,
    SessionStateMachine,
)
from assessment_runtime.runtime.submission_coordinator import (
    DatabaseSubmissionSink,
    HttpSubmissionSink,
    SubmissionCoordinator,
)
from assessment_runtime.runtime.test_harness import Executor
from assessment_runtime.services.content_service import get_problem_set, load_problems


logger = logging.getLogger(__name__)


class SessionNotFound(Exception):
    pass


class FocusLocked(Exception):
    """The user already has another TEST/CONTEST session in focus mode."""

    def __init__(self, holder_session_id: str):
        super().__init__("Another timed session is already active for this user")
        self.holder_session_id = holder_session_id


def _as_utc(dt: Optional[datetime]) -> Optional[datetime]:
    # SQLite drops tzinfo on the way back
    if dt is None:
        return None
    return dt if dt.tzinfo is not None else dt.replace(tzinfo=timezone.utc)


@dataclass
class StoredSession:
    """Plain copy of a `runtime_sessions` row plus its problem set, safe to hand across threads."""

    id: str
    user_id: Optional[int]
    mode: str
    state: str
    language: Optional[str] = None
    anchor_time: Optional[datetime] = None
    deadline: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    forced: bool = False
    verdicts: Dict[str, bool] = field(default_factory=dict)
    finalize_status: Optional[str] = None
    finalize_error: Optional[str] = None
    problems: List[ProblemSpec] = field(default_factory=list)
    time_limit: Optional[timedelta] = None


def build_coordinator(session_factory: Callable[[], Session]) -> SubmissionCoordinator:
    if settings.SUBMISSION_SINK == "http" and settings.GRADING_SERVICE_URL:
        sink = HttpSubmissionSink(settings.GRADING_SERVICE_URL, timeout_sec=settings.GRADING_HTTP_TIMEOUT_SEC)
    else:
        sink = DatabaseSubmissionSink(session_factory)
    return SubmissionCoordinator(sink)


def build_executor() -> ExecutionClient:
    return ExecutionClient(
        settings.EXECUTION_API_URL,
        api_key=settings.EXECUTION_API_KEY,
        timeout_sec=settings.EXECUTION_HTTP_TIMEOUT_SEC,
        tokenize_python_stdin=settings.EXECUTION_TOKENIZE_PYTHON_STDIN,
    )


class SessionRegistry:
    """Live session machines, keyed by session id.

    Machines are rebuilt from their `runtime_sessions` row on first access, so a reload
    (or a process restart) keeps the same anchor, deadline and lock schedule. Every
    state change is written back to the row through a machine listener, in a worker
    thread so the event loop (and every session's tick) never waits on the database.
    A machine whose finalize was accepted is dropped once its row is saved.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        *,
        executor: Executor | None = None,
        coordinator: SubmissionCoordinator | None = None,
        now_fn: Callable[[], datetime] | None = None,
        tick_interval: float | None = None,
    ):
        self.session_factory = session_factory
        self.executor = executor or build_executor()
        self.coordinator = coordinator or build_coordinator(session_factory)
        self.now_fn = now_fn or (lambda: datetime.now(timezone.utc))
        self.tick_interval = settings.TICK_INTERVAL_SEC if tick_interval is None else tick_interval
        self._machines: Dict[str, SessionStateMachine] = {}
        # user_id -> session id holding focus mode
        self._focus: Dict[int, str] = {}

    # ---------------------------------------------------------------- create

    def create_session(self, db: Session, *, user_id: int, problem_set_id: int) -> SessionStateMachine:
        return self._build(self._insert(db, user_id=user_id, problem_set_id=problem_set_id))

    async def acreate_session(self, db: Session, *, user_id: int, problem_set_id: int) -> SessionStateMachine:
        stored = await asyncio.to_thread(self._insert, db, user_id=user_id, problem_set_id=problem_set_id)
        return self._build(stored)

    def _insert(self, db: Session, *, user_id: int, problem_set_id: int) -> StoredSession:
        ps = get_problem_set(db, problem_set_id)
        if ps is None:
            raise SessionNotFound(f"Problem set {problem_set_id} not found")

        row = RuntimeSession(
            id=str(uuid.uuid4()),
            user_id=int(user_id),
            problem_set_id=int(ps.id),
            mode=SessionMode.parse(ps.mode).value,
            state=SessionState.NOT_STARTED.value,
            verdicts_json={},
        )
        db.add(row)
        db.commit()
        logger.info("session %s created user=%s problem_set=%s mode=%s", row.id, user_id, ps.id, row.mode)
        return self._snapshot(db, row)

    # ----------------------------------------------------------------- access

    def get(self, db: Session, session_id: str) -> SessionStateMachine:
        machine = self._machines.get(str(session_id))
        if machine is not None:
            return machine
        return self._build(self._fetch(db, session_id))

    async def aget(self, db: Session, session_id: str) -> SessionStateMachine:
        """`get` for the event loop: the row and its problems are read in a worker thread."""
        machine = self._machines.get(str(session_id))
        if machine is not None:
            return machine
        stored = await asyncio.to_thread(self._fetch, db, session_id)
        # Another request may have built it while this one was reading
        machine = self._machines.get(stored.id)
        if machine is not None:
            return machine
        return self._build(stored)

    def _fetch(self, db: Session, session_id: str) -> StoredSession:
        row = db.query(RuntimeSession).filter(RuntimeSession.id == str(session_id)).first()
        if row is None:
            raise SessionNotFound(f"Session {session_id} not found")
        return self._snapshot(db, row)

    def _time_limit(self, db: Session, row: RuntimeSession) -> Optional[timedelta]:
        if not SessionMode.parse(row.mode).is_timed:
            return None
        ps = get_problem_set(db, row.problem_set_id)
        seconds = int(getattr(ps, "time_limit_seconds", 0) or 0) or int(settings.DEFAULT_TIME_LIMIT_SEC)
        return timedelta(seconds=seconds)

    def _snapshot(self, db: Session, row: RuntimeSession) -> StoredSession:
        return StoredSession(
            id=str(row.id),
            user_id=row.user_id,
            mode=row.mode,
            state=row.state,
            language=row.language,
            anchor_time=_as_utc(row.anchor_time),
            deadline=_as_utc(row.deadline),
            finished_at=_as_utc(row.finished_at),
            forced=bool(row.forced),
            verdicts={str(k): bool(v) for k, v in (row.verdicts_json or {}).items()},
            finalize_status=row.finalize_status,
            finalize_error=row.finalize_error,
            problems=load_problems(db, row.problem_set_id),
            time_limit=self._time_limit(db, row),
        )

    def _build(self, stored: StoredSession) -> SessionStateMachine:
        machine = SessionStateMachine(
            stored.id,
            stored.mode,
            coordinator=self.coordinator,
            executor=self.executor,
            problems=stored.problems,
            time_limit=stored.time_limit,
            hint_interval=timedelta(seconds=int(settings.HINT_UNLOCK_INTERVAL_SEC)),
            ai_assist_delay=timedelta(seconds=int(settings.AI_ASSIST_DELAY_SEC)),
            tick_interval=self.tick_interval,
            now_fn=self.now_fn,
            user_id=stored.user_id,
            language=stored.language,
        )
        machine.problem_verdicts = dict(stored.verdicts)

        known = stored.state in SessionState._value2member_map_
        state = SessionState(stored.state) if known else SessionState.NOT_STARTED
        if state is SessionState.ACTIVE and stored.anchor_time is not None:
            self._acquire_focus(machine, strict=False)
            machine.resume(stored.anchor_time, stored.deadline)
        elif state is SessionState.FINISHED:
            machine.restore_finished(
                stored.anchor_time,
                stored.deadline,
                finished_at=stored.finished_at,
                forced=stored.forced,
                finalize_result=self._stored_finalize_result(stored),
            )

        machine.listeners.append(self._persist)
        self._machines[machine.session_id] = machine
        return machine

    @staticmethod
    def _stored_finalize_result(stored: StoredSession) -> FinalizeResult:
        if stored.finalize_status == "accepted":
            return FinalizeResult(accepted=True)
        if stored.finalize_status == "failed":
            return FinalizeResult(accepted=False, reason=stored.finalize_error)
        # Process stopped while the finalize call was in flight; allow a retry
        return FinalizeResult(accepted=False, reason=FINALIZE_INTERRUPTED)

    # ------------------------------------------------------------------ start

    def start(self, machine: SessionStateMachine) -> bool:
        """Start the session, taking the focus-mode lock for timed modes."""
        if machine.state is not SessionState.NOT_STARTED:
            return False
        self._acquire_focus(machine)
        started = machine.start()
        if not started:
            self._release_focus(machine)
        return started

    def _acquire_focus(self, machine: SessionStateMachine, *, strict: bool = True) -> None:
        if not machine.mode.is_timed or machine.user_id is None:
            return
        uid = int(machine.user_id)
        holder = self._focus.get(uid)
        if holder and holder != machine.session_id:
            other = self._machines.get(holder)
            if other is not None and other.is_active:
                if strict:
                    raise FocusLocked(holder)
                # Restored alongside another live timed session: keep the current holder
                return
        self._focus[uid] = machine.session_id
        machine.release_hooks.append(lambda: self._release_focus(machine))

    def _release_focus(self, machine: SessionStateMachine) -> None:
        if machine.user_id is None:
            return
        if self._focus.get(int(machine.user_id)) == machine.session_id:
            self._focus.pop(int(machine.user_id), None)
            logger.info("focus released user=%s session=%s", machine.user_id, machine.session_id)

    def focus_holder(self, user_id: int) -> Optional[str]:
        return self._focus.get(int(user_id))

    # ------------------------------------------------------------ persistence

    async def _persist(self, machine: SessionStateMachine, event: str) -> None:
        if event not in {STARTED, FINISHED, FINALIZED, VERDICT}:
            return
        # Read on the loop, write in a worker thread
        values: Dict[str, Any] = {
            "state": machine.state.value,
            "anchor_time": machine.anchor_time,
            "deadline": machine.deadline,
            "finished_at": machine.finished_at,
            "forced": bool(machine.forced),
            "language": machine.language,
            "verdicts_json": dict(machine.problem_verdicts),
        }
        if event == FINISHED:
            values["finalize_status"] = "pending"
            values["finalize_error"] = None
        elif event == FINALIZED and machine.finalize_result is not None:
            values["finalize_status"] = "accepted" if machine.finalize_result.accepted else "failed"
            values["finalize_error"] = machine.finalize_result.reason
        await asyncio.to_thread(self._save, machine.session_id, event, values)

        if event == FINALIZED and machine.finalize_result is not None and machine.finalize_result.accepted:
            self._evict(machine)

    def _save(self, session_id: str, event: str, values: Dict[str, Any]) -> None:
        db = self.session_factory()
        try:
            row = db.query(RuntimeSession).filter(RuntimeSession.id == session_id).first()
            if row is None:
                logger.warning("session %s: row disappeared, state not saved", session_id)
                return
            for key, value in values.items():
                setattr(row, key, value)
            db.commit()
        except Exception:
            db.rollback()
            logger.exception("session %s: failed to save state on %s", session_id, event)
        finally:
            db.close()

    def _evict(self, machine: SessionStateMachine) -> None:
        # Accepted and saved: nothing left to do in memory, get() rebuilds it from the row
        if self._machines.get(machine.session_id) is machine:
            self._machines.pop(machine.session_id, None)
            logger.info("session %s finalized, dropped from memory", machine.session_id)

    def is_loaded(self, session_id: str) -> bool:
        return str(session_id) in self._machines

    # --------------------------------------------------------------- shutdown

    async def shutdown(self) -> None:
        for machine in list(self._machines.values()):
            await machine.close()
        self._machines.clear()


_registry: SessionRegistry | None = None


def get_registry() -> SessionRegistry:
    global _registry
    if _registry is None:
        from assessment_runtime.db.session import SessionLocal

        _registry = SessionRegistry(SessionLocal)
    return _registry


async def shutdown_registry() -> None:
    global _registry
    if _registry is not None:
        await _registry.shutdown()
        _registry = None
