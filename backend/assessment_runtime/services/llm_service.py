from __future__ import annotations

from typing import Any, Dict, List, Optional

from assessment_runtime.core.config import settings


_client = None


PLACEHOLDER_KEY_MARKERS = [
    'your_api_key',
    'your api key',
    'your-api-key',
    'replace_me',
    'replace-me',
    'changeme',
    'change_me',
    'sk-xxxxxxxx',
    # common env placeholders
    'your_openai_api_key',
    'openai_api_key',
]


def _looks_like_placeholder_key(k: str | None) -> bool:
    if not k:
        return False
    ks = (k or '').strip().lower()
    if not ks:
        return False
    if any(m in ks for m in PLACEHOLDER_KEY_MARKERS):
        return True
    # Real keys start with "sk-"; placeholders usually say your/demo/example + key
    if not ks.startswith("sk-") and "key" in ks:
        if any(tok in ks for tok in ("your", "demo", "sample", "example", "replace")):
            return True
    if 'xxxx' in ks:
        return True
    return False


def llm_available() -> bool:
    """Return True if we can call an LLM from this backend.

    Supported providers:
    - OpenAI API: set OPENAI_API_KEY
    - OpenAI-compatible local servers (Ollama/LM Studio): set OPENAI_BASE_URL (key can be blank)
    """
    has_llm_cfg = bool(settings.OPENAI_API_KEY) or bool(settings.OPENAI_BASE_URL)
    if not has_llm_cfg:
        return False

    base_url = (settings.OPENAI_BASE_URL or '').strip()
    # OpenAI cloud with a placeholder key always fails auth
    if not base_url and _looks_like_placeholder_key(settings.OPENAI_API_KEY):
        return False
    try:
        from openai import OpenAI  # type: ignore
        _ = OpenAI
        return True
    except Exception:
        return False


def _get_client():
    global _client
    if _client is not None:
        return _client

    base_url = (settings.OPENAI_BASE_URL or "").strip() or None
    api_key = (settings.OPENAI_API_KEY or '').strip() or None

    if _looks_like_placeholder_key(api_key):
        raise RuntimeError(
            'API key looks like a placeholder. Please replace OPENAI_API_KEY in backend/.env with your real key.'
        )

    # Local OpenAI-compatible servers accept any key
    if not api_key and base_url:
        api_key = "ollama"

    if not api_key:
        raise RuntimeError(
            "LLM is not configured. Set OPENAI_API_KEY (OpenAI) or OPENAI_BASE_URL (Ollama/LM Studio) in backend/.env"
        )

    try:
        from openai import OpenAI  # type: ignore
    except Exception as e:
        raise RuntimeError("openai package is not installed. Install backend requirements to enable Ask AI.") from e

    timeout = float(settings.OPENAI_HTTP_TIMEOUT_SEC)
    max_retries = int(settings.OPENAI_MAX_RETRIES)
    if base_url:
        _client = OpenAI(api_key=api_key, base_url=base_url, timeout=timeout, max_retries=max_retries)
    else:
        _client = OpenAI(api_key=api_key, timeout=timeout, max_retries=max_retries)
    return _client


def _extract_chat_completion_text(res: Any) -> str:
    """Assistant text from a Chat Completions response (string or content-part list)."""
    try:
        msg = res.choices[0].message
    except Exception:
        return ""
    content = getattr(msg, "content", None)
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        out = []
        for p in content:
            text = p.get("text") if isinstance(p, dict) else getattr(p, "text", None)
            if isinstance(text, str) and text.strip():
                out.append(text.strip())
        return "\n".join(out)
    return ""


def chat_text(
    *,
    messages: List[Dict[str, str]],
    model: Optional[str] = None,
    temperature: float = 0.3,
    max_tokens: int = 1400,
    timeout_sec: float | None = None,
) -> str:
    """Call an LLM and return plain text (Chat Completions)."""

    client = _get_client()
    kwargs: Dict[str, Any] = {
        "model": model or settings.OPENAI_CHAT_MODEL,
        "messages": messages or [],
        "temperature": float(temperature),
        "max_tokens": int(max_tokens),
    }
    if timeout_sec is not None:
        kwargs["timeout"] = float(timeout_sec)
    res = client.chat.completions.create(**kwargs)
    return (_extract_chat_completion_text(res) or "").strip()
