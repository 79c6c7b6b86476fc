from __future__ import annotations

import json
import logging
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from assessment_runtime.models.problem import Problem, ProblemSet
from assessment_runtime.runtime.contracts import Hint, HintKind, ProblemSpec, TestCase


logger = logging.getLogger(__name__)

DEFAULT_SOURCE = "// Write your code here"
PYTHON_DEFAULT_SOURCE = "# Write your code here"


def _maybe_json(value: Any, *, field: str, problem_id: Any) -> Any:
    """Authored payloads are sometimes stored as JSON text instead of JSON."""
    if not isinstance(value, str):
        return value
    s = value.strip()
    if not s:
        return None
    try:
        return json.loads(s)
    except Exception:
        logger.warning("problem %s: %s is not valid JSON, ignoring", problem_id, field)
        return None


def parse_default_code(raw: Any, *, problem_id: Any = None) -> Dict[str, str]:
    data = _maybe_json(raw, field="default_code", problem_id=problem_id)
    if data is None:
        return {}
    if not isinstance(data, dict):
        logger.warning("problem %s: default_code is %s, expected an object", problem_id, type(data).__name__)
        return {}
    out: Dict[str, str] = {}
    for lang, code in data.items():
        if isinstance(code, str):
            out[str(lang).strip().lower()] = code
    return out


def parse_test_cases(raw: Any, *, problem_id: Any = None) -> List[TestCase]:
    data = _maybe_json(raw, field="test_cases", problem_id=problem_id)
    if data is None:
        return []
    if not isinstance(data, list):
        logger.warning("problem %s: test_cases is %s, expected a list", problem_id, type(data).__name__)
        return []

    cases: List[TestCase] = []
    for idx, item in enumerate(data):
        if not isinstance(item, dict):
            logger.warning("problem %s: skipping malformed test case #%s", problem_id, idx)
            continue
        expected = item.get("expectedOutput", item.get("expected_output"))
        if expected is None:
            logger.warning("problem %s: test case #%s has no expected output, skipping", problem_id, idx)
            continue
        cases.append(
            TestCase(
                id=str(item.get("id") or idx + 1),
                input=str(item.get("input") or ""),
                expected_output=str(expected),
                is_hidden=bool(item.get("isHidden", item.get("is_hidden", False))),
            )
        )
    return cases


def parse_hints(raw: Any, *, problem_id: Any = None) -> List[Hint]:
    data = _maybe_json(raw, field="hints", problem_id=problem_id)
    if data is None:
        return []
    if not isinstance(data, list):
        logger.warning("problem %s: hints is %s, expected a list", problem_id, type(data).__name__)
        return []

    hints: List[Hint] = []
    for item in data:
        if isinstance(item, str):
            if item.strip():
                hints.append(Hint(ordinal=len(hints), kind=HintKind.TEXT, content=item))
            continue
        if isinstance(item, dict):
            content = item.get("content") or item.get("text") or item.get("url")
            if not isinstance(content, str) or not content.strip():
                continue
            kind = HintKind.VIDEO if str(item.get("type") or "").strip().lower() == "video" else HintKind.TEXT
            hints.append(Hint(ordinal=len(hints), kind=kind, content=content))
    return hints


def to_problem_spec(row: Problem) -> ProblemSpec:
    return ProblemSpec(
        id=str(row.id),
        prompt=str(row.prompt or ""),
        title=str(row.title or ""),
        default_source_by_language=parse_default_code(row.default_code_json, problem_id=row.id),
        test_cases=parse_test_cases(row.test_cases_json, problem_id=row.id),
        hints=parse_hints(row.hints_json, problem_id=row.id),
    )


def get_problem_set(db: Session, problem_set_id: int) -> Optional[ProblemSet]:
    return db.query(ProblemSet).filter(ProblemSet.id == int(problem_set_id)).first()


def load_problems(db: Session, problem_set_id: int) -> List[ProblemSpec]:
    rows = (
        db.query(Problem)
        .filter(Problem.problem_set_id == int(problem_set_id))
        .order_by(Problem.order_no.asc(), Problem.id.asc())
        .all()
    )
    return [to_problem_spec(r) for r in rows]


def default_source(problem: ProblemSpec, language: str | None) -> str:
    lang = str(language or "").strip().lower()
    code = problem.default_source_by_language.get(lang)
    if code:
        return code
    return PYTHON_DEFAULT_SOURCE if lang == "python" else DEFAULT_SOURCE


def learner_view(problem: ProblemSpec, language: str | None = None) -> Dict[str, Any]:
    """What the editor shows. Hidden cases are counted, never disclosed."""
    visible = [c for c in problem.test_cases if not c.is_hidden]
    return {
        "id": problem.id,
        "title": problem.title,
        "prompt": problem.prompt,
        "language": language,
        "default_source": default_source(problem, language),
        "test_cases": [
            {"id": c.id, "input": c.input, "expected_output": c.expected_output} for c in visible
        ],
        "hidden_test_count": len(problem.test_cases) - len(visible),
        "hint_count": len(problem.hints),
    }
