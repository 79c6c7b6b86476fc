import json

from pathlib import Path

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


# Resolve backend root (…/backend/) regardless of current working directory
BASE_DIR = Path(__file__).resolve().parents[2]
ENV_FILE = BASE_DIR / ".env"


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=str(ENV_FILE),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    APP_NAME: str = "Timed Assessment Runtime"
    ENV: str = "dev"
    LOG_LEVEL: str = "INFO"
    # One origin or several, comma separated.
    # Example: "http://localhost:3000,https://example.com"
    BACKEND_CORS_ORIGINS: list[str] = ["http://localhost:3000"]

    DATABASE_URL: str = "sqlite:///./assessment_runtime.db"

    # ===== Session clock / disclosure schedule =====
    # One scheduling loop per live session drives both the clock and the hint countdowns.
    TICK_INTERVAL_SEC: float = 1.0
    # Hint N (0-based) unlocks at anchor + (N + 1) * interval.
    HINT_UNLOCK_INTERVAL_SEC: int = 300
    # "Ask AI" unlocks at anchor + delay.
    AI_ASSIST_DELAY_SEC: int = 420
    # TEST / CONTEST sessions whose problem set has no explicit limit.
    DEFAULT_TIME_LIMIT_SEC: int = 3600

    # ===== Remote execution service (Judge0-compatible) =====
    EXECUTION_API_URL: str = "https://ce.judge0.com"
    EXECUTION_API_KEY: str | None = None
    EXECUTION_HTTP_TIMEOUT_SEC: float = 30.0
    # Python programs read tokens with input(); feed them one token per line so
    # "3 4" and "3,4" behave like C++ cin.
    EXECUTION_TOKENIZE_PYTHON_STDIN: bool = True

    # ===== Finalize (SubmissionRecord) =====
    # db   -> write the record to submission_records
    # http -> POST the record to GRADING_SERVICE_URL
    SUBMISSION_SINK: str = "db"
    GRADING_SERVICE_URL: str | None = None
    GRADING_HTTP_TIMEOUT_SEC: float = 15.0

    # ===== LLM settings (Ask AI) =====
    # OPENAI_API_KEY:
    # - OpenAI API: set the real key.
    # - Local OpenAI-compatible server (Ollama/LM Studio): leave empty and set OPENAI_BASE_URL.
    OPENAI_API_KEY: str | None = None
    OPENAI_BASE_URL: str | None = None
    OPENAI_CHAT_MODEL: str = "gpt-4o"
    OPENAI_HTTP_TIMEOUT_SEC: int = 60
    OPENAI_MAX_RETRIES: int = 1

    @field_validator("BACKEND_CORS_ORIGINS", mode="before")
    @classmethod
    def _parse_cors_origins(cls, v):
        if v is None or v == "":
            return []

        if isinstance(v, list):
            return v

        # Prefer a JSON list, fall back to comma separated
        if isinstance(v, str):
            s = v.strip()
            if s.startswith("["):
                try:
                    return json.loads(s)
                except Exception:
                    pass
            return [item.strip() for item in s.split(",") if item.strip()]

        return v

    @field_validator("SUBMISSION_SINK", mode="before")
    @classmethod
    def _normalize_sink(cls, v):
        s = str(v or "db").strip().lower()
        return s if s in {"db", "http"} else "db"


settings = Settings()
