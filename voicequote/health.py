# voicequote/health.py
from fastapi import APIRouter

from voicequote.config import get_settings

router = APIRouter()


@router.get("/health")
def health():
    settings = get_settings()
    return {
        "ok": True,
        "parser": settings.parser_backend if settings.llm_enabled else "keyword",
        "extractor": settings.extractor_backend if settings.llm_enabled else "keyword",
    }
