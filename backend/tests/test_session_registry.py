from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from assessment_runtime.db.base import Base
from assessment_runtime.models.problem import Problem, ProblemSet
from assessment_runtime.models.session import RuntimeSession
from assessment_runtime.models.user import User
from assessment_runtime.runtime.contracts import ExecutionResult, FinalizeResult, SessionState
from assessment_runtime.services.session_registry import SessionRegistry


T0 = datetime(2026, 3, 1, 10, 0, 0, tzinfo=timezone.utc)


class _Exec:
    async def execute(self, language, source, stdin=""):
        return ExecutionResult(stdout="")


class _Coordinator:
    def __init__(self):
        self.calls = 0

    async def finalize(self, *args, **kwargs):
        self.calls += 1
        return FinalizeResult(accepted=True)


def _factory():
    engine = create_engine("sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool)
    Base.metadata.create_all(bind=engine)
    factory = sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False)
    db = factory()
    db.add(User(id=5, email="student5@demo.local", role="student"))
    db.add(ProblemSet(id=1, title="Test", mode="TEST", time_limit_seconds=600))
    db.add(
        Problem(
            id=1,
            problem_set_id=1,
            order_no=1,
            title="P",
            prompt="p",
            test_cases_json=[{"input": "", "expectedOutput": ""}],
            hints_json=["first"],
        )
    )
    db.commit()
    db.close()
    return factory


def _registry(factory, now, coordinator=None):
    return SessionRegistry(
        factory,
        executor=_Exec(),
        coordinator=coordinator or _Coordinator(),
        now_fn=lambda: now["t"],
        tick_interval=0,
    )


def test_reload_restores_anchor_and_deadline():
    factory = _factory()
    now = {"t": T0}

    first = _registry(factory, now)
    db = factory()
    machine = first.create_session(db, user_id=5, problem_set_id=1)
    first.start(machine)
    db.close()

    now["t"] = T0 + timedelta(minutes=6)
    second = _registry(factory, now)
    db = factory()
    restored = second.get(db, machine.session_id)
    db.close()

    assert restored is not machine
    assert restored.state is SessionState.ACTIVE
    assert restored.anchor_time == T0
    assert restored.deadline == T0 + timedelta(minutes=10)
    assert restored.reading().remaining_seconds == 240
    assert restored.hint_statuses("1")[0].locked is False
    # focus lock is held again by the restored session
    assert second.focus_holder(5) == machine.session_id


def test_finish_is_persisted_on_the_row():
    factory = _factory()
    now = {"t": T0}
    registry = _registry(factory, now)

    db = factory()
    machine = registry.create_session(db, user_id=5, problem_set_id=1)
    db.close()
    registry.start(machine)
    now["t"] = T0 + timedelta(seconds=90)
    asyncio.run(machine.finish(language="python"))

    db = factory()
    row = db.query(RuntimeSession).filter(RuntimeSession.id == machine.session_id).first()
    db.close()
    assert row.state == "FINISHED"
    assert row.finalize_status == "accepted"
    assert row.forced is False
    assert row.language == "python"
    assert registry.focus_holder(5) is None


def test_interrupted_finalize_is_retryable_after_restart():
    factory = _factory()
    now = {"t": T0}
    registry = _registry(factory, now)

    db = factory()
    machine = registry.create_session(db, user_id=5, problem_set_id=1)
    row = db.query(RuntimeSession).filter(RuntimeSession.id == machine.session_id).first()
    row.state = "FINISHED"
    row.anchor_time = T0
    row.finished_at = T0 + timedelta(seconds=30)
    row.finalize_status = "pending"
    db.commit()
    db.close()

    coordinator = _Coordinator()
    fresh = _registry(factory, now, coordinator=coordinator)
    db = factory()
    restored = fresh.get(db, machine.session_id)
    db.close()

    assert restored.state is SessionState.FINISHED
    assert restored.finalize_result.accepted is False
    result = asyncio.run(restored.retry_finalize())
    assert result.accepted is True
    assert coordinator.calls == 1


def test_expired_session_is_forced_on_reload():
    factory = _factory()
    now = {"t": T0}
    coordinator = _Coordinator()
    registry = _registry(factory, now)

    db = factory()
    machine = registry.create_session(db, user_id=5, problem_set_id=1)
    db.close()
    registry.start(machine)

    now["t"] = T0 + timedelta(hours=1)
    fresh = _registry(factory, now, coordinator=coordinator)

    async def scenario():
        db = factory()
        restored = fresh.get(db, machine.session_id)
        db.close()
        restored.tick()
        return restored, await restored.wait_finalized(timeout=1)

    restored, result = asyncio.run(scenario())
    assert restored.forced is True
    assert result.accepted is True
    assert restored.duration_seconds() == 600
    assert coordinator.calls == 1


def test_accepted_session_is_dropped_from_memory_and_rebuilt_from_row():
    factory = _factory()
    now = {"t": T0}
    registry = _registry(factory, now)

    db = factory()
    machine = registry.create_session(db, user_id=5, problem_set_id=1)
    db.close()
    registry.start(machine)
    now["t"] = T0 + timedelta(seconds=45)
    result = asyncio.run(machine.finish(language="python"))

    assert result.accepted is True
    assert registry.is_loaded(machine.session_id) is False

    db = factory()
    rebuilt = registry.get(db, machine.session_id)
    db.close()
    assert rebuilt is not machine
    assert rebuilt.state is SessionState.FINISHED
    assert rebuilt.finalize_result.accepted is True
    assert rebuilt.duration_seconds() == 45
    assert asyncio.run(rebuilt.retry_finalize()) is None


def test_failed_finalize_stays_in_memory():
    class _Down(_Coordinator):
        async def finalize(self, *args, **kwargs):
            self.calls += 1
            return FinalizeResult(accepted=False, reason="down")

    factory = _factory()
    now = {"t": T0}
    registry = _registry(factory, now, coordinator=_Down())

    db = factory()
    machine = registry.create_session(db, user_id=5, problem_set_id=1)
    db.close()
    registry.start(machine)
    asyncio.run(machine.finish())

    assert registry.is_loaded(machine.session_id) is True
    db = factory()
    row = db.query(RuntimeSession).filter(RuntimeSession.id == machine.session_id).first()
    db.close()
    assert row.finalize_status == "failed"
    assert row.finalize_error == "down"


def test_async_loaders_read_rows_off_the_loop():
    factory = _factory()
    now = {"t": T0}
    registry = _registry(factory, now)

    async def scenario():
        db = factory()
        try:
            created = await registry.acreate_session(db, user_id=5, problem_set_id=1)
            registry.start(created)
            await created.flush_listeners()
            again = await registry.aget(db, created.session_id)
        finally:
            db.close()
        return created, again

    created, again = asyncio.run(scenario())
    assert again is created

    db = factory()
    row = db.query(RuntimeSession).filter(RuntimeSession.id == created.session_id).first()
    db.close()
    assert row.state == "ACTIVE"

    fresh = _registry(factory, now)

    async def reload():
        db = factory()
        try:
            return await fresh.aget(db, created.session_id)
        finally:
            db.close()

    restored = asyncio.run(reload())
    assert restored.state is SessionState.ACTIVE
    assert restored.anchor_time == T0
    assert list(restored.problems) == ["1"]
