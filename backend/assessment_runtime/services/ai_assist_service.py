from __future__ import annotations

import asyncio
import logging
from typing import Dict, List

from assessment_runtime.core.config import settings
from assessment_runtime.runtime.session_machine import SessionStateMachine
from assessment_runtime.services.llm_service import chat_text, llm_available


logger = logging.getLogger(__name__)

MODES = ("guide", "solution")

GUIDE_SYSTEM_PROMPT = (
    "You are a helpful coding tutor. The student is working on a programming problem. "
    "Analyze their code and the problem description. Provide a helpful hint or guidance on what "
    "might be wrong or missing. DO NOT give the full solution code. Keep it brief, encouraging, "
    "and guide them to find the answer themselves."
)
SOLUTION_SYSTEM_PROMPT = (
    "You are a helpful coding tutor. The student is stuck and has requested the solution. "
    "Provide the full correct solution code for the problem, along with a brief explanation of "
    "how it works and why it solves the problem."
)


class AssistLocked(Exception):
    def __init__(self, seconds_left: int | None):
        super().__init__("Ask AI is not available yet")
        self.seconds_left = seconds_left


class AssistUnavailable(Exception):
    pass


def build_messages(mode: str, problem_prompt: str, student_code: str) -> List[Dict[str, str]]:
    m = str(mode or "").strip().lower()
    if m not in MODES:
        raise ValueError(f"Invalid mode: {mode}")
    system = GUIDE_SYSTEM_PROMPT if m == "guide" else SOLUTION_SYSTEM_PROMPT
    return [
        {"role": "system", "content": system},
        {"role": "user", "content": f"Problem Description:\n{problem_prompt}\n\nStudent Code:\n{student_code}"},
    ]


async def ask(machine: SessionStateMachine, problem_id: str, mode: str, student_code: str) -> str:
    """Ask the tutor model about the learner's code, once the AI gate has opened.

    Raises:
      ValueError: unknown mode or problem
      AssistLocked: gate still closed (or session not active)
      AssistUnavailable: no LLM configured, or the call failed
    """
    problem = machine.problems.get(str(problem_id))
    if problem is None:
        raise ValueError(f"Unknown problem: {problem_id}")
    messages = build_messages(mode, problem.prompt, student_code or "")

    now = machine.now_fn()
    status = machine.ai_status(now)
    if not machine.is_active or status.locked:
        raise AssistLocked(status.seconds_until_unlock(now) if machine.is_active else None)

    if not llm_available():
        raise AssistUnavailable("LLM is not configured")

    try:
        # The OpenAI SDK client is synchronous; keep the event loop (and the tick loop) free
        text = await asyncio.to_thread(chat_text, messages=messages, model=settings.OPENAI_CHAT_MODEL)
    except Exception as e:
        logger.warning("ask-ai failed session=%s: %s", machine.session_id, type(e).__name__)
        raise AssistUnavailable("Failed to get AI response") from e

    logger.info("ask-ai session=%s problem=%s mode=%s", machine.session_id, problem.id, mode)
    return text
