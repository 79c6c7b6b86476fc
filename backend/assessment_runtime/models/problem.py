from __future__ import annotations

from sqlalchemy import ForeignKey, Integer, String, Text, text
from sqlalchemy.orm import Mapped, mapped_column

from assessment_runtime.db.base_class import Base
from assessment_runtime.db.types import JSONType


class ProblemSet(Base):
    """Read-only content: one practice item, assignment, test or contest."""

    __tablename__ = "problem_sets"

    id: Mapped[int] = mapped_column(primary_key=True)
    title: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    # PRACTICE | ASSIGNMENT | TEST | CONTEST
    mode: Mapped[str] = mapped_column(String(20), nullable=False, default="PRACTICE", server_default=text("'PRACTICE'"))
    # 0 -> use DEFAULT_TIME_LIMIT_SEC for TEST/CONTEST; ignored for PRACTICE/ASSIGNMENT
    time_limit_seconds: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default=text("0"))


class Problem(Base):
    __tablename__ = "problems"

    id: Mapped[int] = mapped_column(primary_key=True)
    problem_set_id: Mapped[int] = mapped_column(ForeignKey("problem_sets.id"), index=True, nullable=False)
    order_no: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    title: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    prompt: Mapped[str] = mapped_column(Text, nullable=False, default="")

    # Authored payloads are stored as-is and parsed leniently on load:
    #   default_code_json: {"python": "...", "cpp": "..."} (or a JSON string of it)
    #   test_cases_json:   [{"id", "input", "expectedOutput", "isHidden"}]
    #   hints_json:        ["text", ...] or [{"type": "text"|"video", "content"}]
    default_code_json: Mapped[dict | str | None] = mapped_column(JSONType, nullable=True, default=dict)
    test_cases_json: Mapped[list | str | None] = mapped_column(JSONType, nullable=True, default=list)
    hints_json: Mapped[list | str | None] = mapped_column(JSONType, nullable=True, default=list)
