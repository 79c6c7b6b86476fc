from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Optional


# "+infinity" for unlock times that cannot be computed yet (session not started).
NEVER = datetime.max.replace(tzinfo=timezone.utc)


class SessionMode(str, Enum):
    PRACTICE = "PRACTICE"
    ASSIGNMENT = "ASSIGNMENT"
    TEST = "TEST"
    CONTEST = "CONTEST"

    @property
    def is_timed(self) -> bool:
        return self in (SessionMode.TEST, SessionMode.CONTEST)

    @classmethod
    def parse(cls, value: str | None) -> "SessionMode":
        try:
            return cls(str(value or "").strip().upper())
        except ValueError:
            return cls.PRACTICE


class SessionState(str, Enum):
    NOT_STARTED = "NOT_STARTED"
    ACTIVE = "ACTIVE"
    FINISHED = "FINISHED"


class HintKind(str, Enum):
    TEXT = "TEXT"
    VIDEO = "VIDEO"


@dataclass(frozen=True)
class TestCase:
    __test__ = False  # not a pytest class

    id: str
    input: str
    expected_output: str
    is_hidden: bool = False


@dataclass(frozen=True)
class Hint:
    ordinal: int
    kind: HintKind
    content: str


@dataclass(frozen=True)
class ProblemSpec:
    """Immutable description of one problem, as supplied by the content store."""

    id: str
    prompt: str
    title: str = ""
    default_source_by_language: Dict[str, str] = field(default_factory=dict)
    test_cases: List[TestCase] = field(default_factory=list)
    hints: List[Hint] = field(default_factory=list)


@dataclass
class ExecutionResult:
    """One round trip to the execution service.

    `error_message` present means "failed to run" (compile error, runtime error,
    service/network failure); absent means the program ran and `stdout` is its output.
    `error_line` is advisory (editor highlighting) and never used for scoring.
    """

    stdout: str = ""
    error_message: Optional[str] = None
    error_line: Optional[int] = None

    @property
    def failed(self) -> bool:
        return bool(self.error_message)


@dataclass
class TestVerdict:
    __test__ = False

    test_case_id: str
    passed: bool
    actual_output: str
    expected_output: str
    is_hidden: bool = False


@dataclass
class SessionVerdict:
    verdicts: List[TestVerdict] = field(default_factory=list)

    @property
    def passed_all(self) -> bool:
        # all() of an empty list is True: no test cases passes vacuously
        return all(v.passed for v in self.verdicts)


@dataclass(frozen=True)
class SubmissionPayload:
    """The durable side effect of a finished session (one per session)."""

    session_id: str
    passed: bool
    duration_seconds: int
    language: str
    user_id: Optional[int] = None


@dataclass(frozen=True)
class FinalizeResult:
    accepted: bool
    reason: Optional[str] = None


@dataclass(frozen=True)
class ClockReading:
    now: datetime
    # Countdown when a deadline exists, otherwise None
    remaining_seconds: Optional[int]
    elapsed_seconds: int
    expired: bool


@dataclass(frozen=True)
class DisclosureStatus:
    locked: bool
    unlocks_at: datetime

    def seconds_until_unlock(self, now: datetime) -> Optional[int]:
        """Countdown for display; None when the unlock time is unknown."""
        if not self.locked:
            return 0
        if self.unlocks_at == NEVER:
            return None
        return max(0, int((self.unlocks_at - now).total_seconds()))
