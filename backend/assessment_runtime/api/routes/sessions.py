from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from sqlalchemy.orm import Session

from assessment_runtime.api.deps import require_user
from assessment_runtime.core.config import settings
from assessment_runtime.db.session import get_db
from assessment_runtime.models.user import User
from assessment_runtime.runtime.contracts import NEVER, SessionState, SessionVerdict
from assessment_runtime.runtime.session_machine import SessionStateMachine
from assessment_runtime.schemas.common import (
    AI_ASSIST_LOCKED,
    AI_ASSIST_UNAVAILABLE,
    FOCUS_LOCKED,
    NOTHING_TO_RETRY,
    SESSION_NOT_ACTIVE,
    envelope,
)
from assessment_runtime.schemas.runtime import (
    AiAssistRequest,
    RunRequest,
    RunTestsRequest,
    SessionCreateRequest,
    SubmitRequest,
)
from assessment_runtime.services import ai_assist_service
from assessment_runtime.services.content_service import learner_view
from assessment_runtime.services.session_registry import (
    FocusLocked,
    SessionNotFound,
    SessionRegistry,
    get_registry,
)


router = APIRouter(tags=["sessions"])


def _iso(dt: Optional[datetime]) -> Optional[str]:
    # NEVER ("not computable yet") is reported as null
    if dt is None or dt == NEVER:
        return None
    return dt.isoformat()


def _not_active(machine: SessionStateMachine) -> HTTPException:
    return HTTPException(
        status_code=409,
        detail={
            "code": SESSION_NOT_ACTIVE,
            "message": f"Session is {machine.state.value}",
            "state": machine.state.value,
        },
    )


async def _load_owned(db: Session, registry: SessionRegistry, session_id: str, user: User) -> SessionStateMachine:
    try:
        machine = await registry.aget(db, session_id)
    except SessionNotFound:
        raise HTTPException(status_code=404, detail="Session not found")
    if machine.user_id is not None and int(machine.user_id) != int(user.id):
        raise HTTPException(status_code=404, detail="Session not found")
    # A request after the deadline sees the expiry even between loop ticks
    machine.tick()
    return machine


def _hints_out(machine: SessionStateMachine, problem_id: str, now: datetime) -> List[Dict[str, Any]]:
    problem = machine.problems.get(problem_id)
    if problem is None:
        return []
    out = []
    for hint, status in zip(problem.hints, machine.hint_statuses(problem_id, now)):
        out.append(
            {
                "ordinal": hint.ordinal,
                "kind": hint.kind.value,
                "locked": status.locked,
                "unlocks_at": _iso(status.unlocks_at),
                "seconds_until_unlock": status.seconds_until_unlock(now),
                # Locked content never leaves the server
                "content": None if status.locked else hint.content,
            }
        )
    return out


def session_out(machine: SessionStateMachine, now: Optional[datetime] = None) -> Dict[str, Any]:
    now = now or machine.now_fn()
    reading = machine.reading(now)
    ai = machine.ai_status(now)
    all_hints = [h for p in machine.problems.values() for h in p.hints]
    next_unlock = machine.scheduler.next_unlock(all_hints, now) if machine.is_active else None
    finalize = machine.finalize_result
    return {
        "session_id": machine.session_id,
        "mode": machine.mode.value,
        "state": machine.state.value,
        "anchor_time": _iso(machine.anchor_time),
        "deadline": _iso(machine.deadline),
        "remaining_seconds": reading.remaining_seconds if reading else None,
        "elapsed_seconds": reading.elapsed_seconds if reading else 0,
        "finished_at": _iso(machine.finished_at),
        "forced": machine.forced,
        "duration_seconds": machine.duration_seconds(now) if machine.anchor_time else None,
        "language": machine.language,
        "finalize": None if finalize is None else {"accepted": finalize.accepted, "reason": finalize.reason},
        "ai_assist": {
            "locked": ai.locked,
            "unlocks_at": _iso(ai.unlocks_at),
            "seconds_until_unlock": ai.seconds_until_unlock(now),
        },
        "next_unlock_at": _iso(next_unlock),
        "problems": [
            {
                "id": p.id,
                "title": p.title,
                "passed": machine.problem_verdicts.get(p.id),
                "hints": _hints_out(machine, p.id, now),
            }
            for p in machine.problems.values()
        ],
    }


def verdict_out(verdict: SessionVerdict) -> Dict[str, Any]:
    return {
        "passed_all": verdict.passed_all,
        "results": [
            {
                "test_case_id": v.test_case_id,
                "passed": v.passed,
                "is_hidden": v.is_hidden,
                "actual_output": None if v.is_hidden else v.actual_output,
                "expected_output": None if v.is_hidden else v.expected_output,
            }
            for v in verdict.verdicts
        ],
    }


@router.post("/sessions")
async def create_session(
    request: Request,
    payload: SessionCreateRequest,
    db: Session = Depends(get_db),
    user: User = Depends(require_user),
    registry: SessionRegistry = Depends(get_registry),
):
    try:
        machine = await registry.acreate_session(db, user_id=int(user.id), problem_set_id=payload.problem_set_id)
    except SessionNotFound:
        raise HTTPException(status_code=404, detail="Problem set not found")
    return envelope(request.state.request_id, session_out(machine))


@router.get("/sessions/{session_id}")
async def get_session(
    request: Request,
    session_id: str,
    db: Session = Depends(get_db),
    user: User = Depends(require_user),
    registry: SessionRegistry = Depends(get_registry),
):
    machine = await _load_owned(db, registry, session_id, user)
    return envelope(request.state.request_id, session_out(machine))


@router.get("/sessions/{session_id}/problems/{problem_id}")
async def get_problem(
    request: Request,
    session_id: str,
    problem_id: str,
    language: str = Query("python"),
    db: Session = Depends(get_db),
    user: User = Depends(require_user),
    registry: SessionRegistry = Depends(get_registry),
):
    machine = await _load_owned(db, registry, session_id, user)
    problem = machine.problems.get(problem_id)
    if problem is None:
        raise HTTPException(status_code=404, detail="Problem not found")
    data = learner_view(problem, language)
    data["hints"] = _hints_out(machine, problem.id, machine.now_fn())
    return envelope(request.state.request_id, data)


@router.post("/sessions/{session_id}/start")
async def start_session(
    request: Request,
    session_id: str,
    db: Session = Depends(get_db),
    user: User = Depends(require_user),
    registry: SessionRegistry = Depends(get_registry),
):
    machine = await _load_owned(db, registry, session_id, user)
    try:
        # Already started: no-op, the stored anchor is returned unchanged
        registry.start(machine)
        # Anchor is on the row before the response leaves
        await machine.flush_listeners()
    except FocusLocked as e:
        raise HTTPException(
            status_code=409,
            detail={"code": FOCUS_LOCKED, "message": str(e), "session_id": e.holder_session_id},
        )
    return envelope(request.state.request_id, session_out(machine))


@router.post("/sessions/{session_id}/run")
async def run_code(
    request: Request,
    session_id: str,
    payload: RunRequest,
    db: Session = Depends(get_db),
    user: User = Depends(require_user),
    registry: SessionRegistry = Depends(get_registry),
):
    machine = await _load_owned(db, registry, session_id, user)
    result = await machine.run(payload.language, payload.source, payload.stdin)
    if result is None:
        raise _not_active(machine)
    data = {"stdout": result.stdout, "error_message": result.error_message, "error_line": result.error_line}
    return envelope(request.state.request_id, data)


@router.post("/sessions/{session_id}/run-tests")
async def run_tests(
    request: Request,
    session_id: str,
    payload: RunTestsRequest,
    db: Session = Depends(get_db),
    user: User = Depends(require_user),
    registry: SessionRegistry = Depends(get_registry),
):
    machine = await _load_owned(db, registry, session_id, user)
    if payload.problem_id not in machine.problems:
        raise HTTPException(status_code=404, detail="Problem not found")
    verdict = await machine.run_tests(payload.problem_id, payload.language, payload.source)
    if verdict is None:
        raise _not_active(machine)
    return envelope(request.state.request_id, verdict_out(verdict))


@router.post("/sessions/{session_id}/ai-assist")
async def ai_assist(
    request: Request,
    session_id: str,
    payload: AiAssistRequest,
    db: Session = Depends(get_db),
    user: User = Depends(require_user),
    registry: SessionRegistry = Depends(get_registry),
):
    machine = await _load_owned(db, registry, session_id, user)
    try:
        text = await ai_assist_service.ask(machine, payload.problem_id, payload.mode, payload.source)
    except ValueError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except ai_assist_service.AssistLocked as e:
        raise HTTPException(
            status_code=403,
            detail={"code": AI_ASSIST_LOCKED, "message": str(e), "seconds_left": e.seconds_left},
        )
    except ai_assist_service.AssistUnavailable as e:
        raise HTTPException(status_code=503, detail={"code": AI_ASSIST_UNAVAILABLE, "message": str(e)})
    return envelope(request.state.request_id, {"mode": payload.mode, "response": text})


@router.post("/sessions/{session_id}/submit")
async def submit_session(
    request: Request,
    session_id: str,
    payload: SubmitRequest,
    db: Session = Depends(get_db),
    user: User = Depends(require_user),
    registry: SessionRegistry = Depends(get_registry),
):
    machine = await _load_owned(db, registry, session_id, user)
    if machine.state is SessionState.NOT_STARTED:
        raise _not_active(machine)

    result = await machine.finish(forced=False, outcome=payload.passed, language=payload.language)
    if result is None:
        # Lost the race against expiry (or a double click): report the winner's outcome
        await machine.wait_finalized(timeout=float(settings.GRADING_HTTP_TIMEOUT_SEC))
    return envelope(request.state.request_id, session_out(machine))


@router.post("/sessions/{session_id}/retry-finalize")
async def retry_finalize(
    request: Request,
    session_id: str,
    db: Session = Depends(get_db),
    user: User = Depends(require_user),
    registry: SessionRegistry = Depends(get_registry),
):
    machine = await _load_owned(db, registry, session_id, user)
    result = await machine.retry_finalize()
    if result is None:
        raise HTTPException(
            status_code=409,
            detail={"code": NOTHING_TO_RETRY, "message": "Session has no failed finalize to retry"},
        )
    return envelope(request.state.request_id, session_out(machine))
