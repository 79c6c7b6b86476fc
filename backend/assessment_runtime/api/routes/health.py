from fastapi import APIRouter

from assessment_runtime.core.config import settings
from assessment_runtime.services.llm_service import llm_available


router = APIRouter(tags=["health"])


@router.get("/health")
def health():
    return {
        "status": "ok",
        "execution_api": settings.EXECUTION_API_URL,
        "submission_sink": settings.SUBMISSION_SINK,
        "ai_assist": {"enabled": bool(llm_available())},
    }
