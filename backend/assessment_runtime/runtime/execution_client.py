from __future__ import annotations

import logging
import re
from typing import Any, Dict, Optional

import httpx

from assessment_runtime.runtime.contracts import ExecutionResult


logger = logging.getLogger(__name__)

# Judge0 language ids
LANGUAGE_IDS: Dict[str, int] = {
    "python": 71,  # Python (3.8.1)
    "cpp": 54,  # C++ (GCC 9.2.0)
    "c": 50,  # C (GCC 9.2.0)
    "java": 62,  # Java (OpenJDK 13.0.1)
    "javascript": 63,  # JavaScript (Node.js 12.14.0)
    "typescript": 74,  # TypeScript (3.7.4)
    "go": 60,  # Go (1.13.5)
    "rust": 73,  # Rust (1.40.0)
}
FALLBACK_LANGUAGE = "python"

# Interpreters whose tracebacks say "line <n>"
TRACEBACK_LANGUAGES = {"python"}
# Compilers reporting "file:<line>:<col>: error:"
COMPILER_LANGUAGES = {"cpp", "c"}

# Judge0 status ids 1..3 are In Queue / Processing / Accepted
_LAST_OK_STATUS_ID = 3

_TRACEBACK_LINE_RE = re.compile(r"line (\d+)", re.IGNORECASE)
_COMPILER_LINE_RE = re.compile(r":(\d+):\d+: error:", re.IGNORECASE)
_COMPILER_LINE_LOOSE_RE = re.compile(r":(\d+):.*error:", re.IGNORECASE)

FAILED_TO_EXECUTE = "Failed to compile/execute code"


def normalize_language(language: str | None) -> str:
    lang = str(language or "").strip().lower()
    return lang if lang in LANGUAGE_IDS else FALLBACK_LANGUAGE


def parse_error_line(error_message: str | None, language: str | None) -> Optional[int]:
    """Best-effort editor line for a diagnostic. Advisory only.

    - traceback languages: last "line <n>" (innermost frame)
    - compiler languages: first ":<line>:<col>: error:", else the looser ":<line>:...error:"
    """
    if not error_message:
        return None
    lang = str(language or "").strip().lower()
    if lang in TRACEBACK_LANGUAGES:
        matches = _TRACEBACK_LINE_RE.findall(error_message)
        return int(matches[-1]) if matches else None
    if lang in COMPILER_LANGUAGES:
        m = _COMPILER_LINE_RE.search(error_message) or _COMPILER_LINE_LOOSE_RE.search(error_message)
        return int(m.group(1)) if m else None
    return None


def tokenize_stdin(stdin: str | None) -> str:
    """One token per line, so successive input() calls read "3 4" like cin would."""
    return "\n".join((stdin or "").replace(",", " ").split())


class ExecutionClient:
    """Single request/response against the remote execution service.

    No retry policy. Every failure (transport error, non-2xx, unparsable body) comes
    back as an ExecutionResult with `error_message` set, so callers can tell
    "ran and printed the wrong thing" from "failed to run" without try/except.
    """

    def __init__(
        self,
        base_url: str,
        *,
        api_key: str | None = None,
        timeout_sec: float = 30.0,
        tokenize_python_stdin: bool = True,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout_sec = float(timeout_sec)
        self.tokenize_python_stdin = bool(tokenize_python_stdin)
        self._transport = transport

    def build_payload(self, language: str, source: str, stdin: str | None) -> Dict[str, Any]:
        lang = normalize_language(language)
        body_stdin = stdin or ""
        if lang == "python" and self.tokenize_python_stdin:
            body_stdin = tokenize_stdin(body_stdin)
        return {
            "source_code": source or "",
            "language_id": LANGUAGE_IDS[lang],
            "stdin": body_stdin,
        }

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["X-Auth-Token"] = self.api_key
        return headers

    @staticmethod
    def parse_response(data: Dict[str, Any], language: str | None = None) -> ExecutionResult:
        stdout = str(data.get("stdout") or "")
        error = data.get("compile_output") or data.get("stderr") or data.get("message") or ""

        # TLE / runtime errors sometimes carry no stderr, only a status
        if not error:
            status = data.get("status") or {}
            if not isinstance(status, dict):
                # Not the {id, description} shape: nothing says the run succeeded
                return ExecutionResult(stdout=stdout, error_message=f"{FAILED_TO_EXECUTE}: invalid response")
            try:
                status_id = int(status.get("id") or 0)
            except (TypeError, ValueError):
                status_id = 0
            if status_id > _LAST_OK_STATUS_ID:
                error = str(status.get("description") or "Execution failed")

        error = str(error) if error else None
        return ExecutionResult(
            stdout=stdout,
            error_message=error,
            error_line=parse_error_line(error, language) if error else None,
        )

    async def execute(self, language: str, source: str, stdin: str | None = "") -> ExecutionResult:
        payload = self.build_payload(language, source, stdin)
        url = f"{self.base_url}/submissions"
        try:
            async with httpx.AsyncClient(timeout=self.timeout_sec, transport=self._transport) as client:
                response = await client.post(
                    url,
                    params={"base64_encoded": "false", "wait": "true"},
                    json=payload,
                    headers=self._headers(),
                )
            if response.status_code >= 400:
                logger.warning("execution service returned HTTP %s", response.status_code)
                return ExecutionResult(error_message=f"{FAILED_TO_EXECUTE} (HTTP {response.status_code})")
            data = response.json()
        except httpx.HTTPError as e:
            logger.warning("execution service unreachable: %s", type(e).__name__)
            return ExecutionResult(error_message=f"{FAILED_TO_EXECUTE}: {type(e).__name__}")
        except ValueError:
            logger.warning("execution service returned a non-JSON body")
            return ExecutionResult(error_message=f"{FAILED_TO_EXECUTE}: invalid response")

        if not isinstance(data, dict):
            return ExecutionResult(error_message=f"{FAILED_TO_EXECUTE}: invalid response")
        return self.parse_response(data, normalize_language(language))
