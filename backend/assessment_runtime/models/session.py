from __future__ import annotations

from datetime import datetime

from sqlalchemy import Boolean, DateTime, ForeignKey, String, Text, func, text
from sqlalchemy.orm import Mapped, mapped_column

from assessment_runtime.db.base_class import Base
from assessment_runtime.db.types import JSONType


class RuntimeSession(Base):
    __tablename__ = "runtime_sessions"

    # uuid4 hex, handed to the client
    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), index=True, nullable=False)
    problem_set_id: Mapped[int] = mapped_column(ForeignKey("problem_sets.id"), index=True, nullable=False)
    mode: Mapped[str] = mapped_column(String(20), nullable=False)
    state: Mapped[str] = mapped_column(String(20), nullable=False, default="NOT_STARTED", server_default=text("'NOT_STARTED'"))

    # Written once, on start. Every countdown is derived from these two columns.
    anchor_time: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    deadline: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    finished_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    forced: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default="false")
    language: Mapped[str | None] = mapped_column(String(32), nullable=True)

    # pending | accepted | failed (null until FINISHED)
    finalize_status: Mapped[str | None] = mapped_column(String(16), nullable=True)
    finalize_error: Mapped[str | None] = mapped_column(Text, nullable=True)

    # {problem_id: bool} latest run-tests outcome per problem
    verdicts_json: Mapped[dict] = mapped_column(JSONType, nullable=False, default=dict)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
