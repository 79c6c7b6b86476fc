from __future__ import annotations

from typing import Literal, Optional

from pydantic import BaseModel, Field


AssistMode = Literal["guide", "solution"]


class SessionCreateRequest(BaseModel):
    problem_set_id: int = Field(..., ge=1)


class RunRequest(BaseModel):
    language: str = "python"
    source: str
    stdin: str = ""


class RunTestsRequest(BaseModel):
    problem_id: str
    language: str = "python"
    source: str


class AiAssistRequest(BaseModel):
    problem_id: str
    mode: AssistMode = "guide"
    source: str = ""


class SubmitRequest(BaseModel):
    language: str = "python"
    # Explicit outcome from the caller; default is the AND of the latest run-tests per problem
    passed: Optional[bool] = None
