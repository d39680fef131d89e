from __future__ import annotations

import logging
from functools import lru_cache

from fastapi import Depends

from voicequote.clients.gemini import GeminiClient
from voicequote.clients.media import MediaDownloadClient
from voicequote.config import Settings, get_settings
from voicequote.services import (
    DocumentRegenerator,
    ExtractionPipeline,
    QuoteService,
    ReviewSessionService,
)
from voicequote.services.edit_parser import (
    EditCommandParser,
    GeminiEditCommandParser,
    KeywordEditCommandParser,
)
from voicequote.services.extraction import GeminiQuoteExtractor, KeywordQuoteExtractor, QuoteExtractor
from voicequote.services.store import QuoteDataStore, get_store
from voicequote.services.transcription import GeminiTranscriber, Transcriber

logger = logging.getLogger(__name__)


@lru_cache(maxsize=1)
def get_gemini_client_cached() -> GeminiClient:
    settings = get_settings()
    return GeminiClient(
        api_key=settings.google_api_key,
        model=settings.llm_model,
        temperature=settings.llm_temperature,
        timeout=settings.llm_timeout,
    )


@lru_cache(maxsize=1)
def get_media_client_cached() -> MediaDownloadClient:
    settings = get_settings()
    return MediaDownloadClient(
        timeout=settings.transcription_timeout,
        username=settings.media_auth_username,
        password=settings.media_auth_password,
    )


def get_gemini_client(settings: Settings = Depends(get_settings)) -> GeminiClient:
    return get_gemini_client_cached()


def get_data_store() -> QuoteDataStore:
    return get_store()


def get_edit_parser(
    settings: Settings = Depends(get_settings),
    client: GeminiClient = Depends(get_gemini_client),
) -> EditCommandParser:
    if settings.parser_backend == "llm" and settings.llm_enabled:
        return GeminiEditCommandParser(client)
    logger.debug("Using keyword edit parser (backend=%s)", settings.parser_backend)
    return KeywordEditCommandParser()


def get_quote_extractor(
    settings: Settings = Depends(get_settings),
    client: GeminiClient = Depends(get_gemini_client),
) -> QuoteExtractor:
    if settings.extractor_backend == "llm" and settings.llm_enabled:
        return GeminiQuoteExtractor(client)
    logger.debug("Using keyword quote extractor (backend=%s)", settings.extractor_backend)
    return KeywordQuoteExtractor()


def get_transcriber(
    settings: Settings = Depends(get_settings),
    client: GeminiClient = Depends(get_gemini_client),
) -> Transcriber | None:
    if not settings.llm_enabled:
        return None
    return GeminiTranscriber(
        client, get_media_client_cached(), timeout=settings.transcription_timeout
    )


def get_document_regenerator(
    settings: Settings = Depends(get_settings),
    store: QuoteDataStore = Depends(get_data_store),
) -> DocumentRegenerator:
    return DocumentRegenerator(
        store.quotes, store.items, store.artifacts, base_url=settings.artifact_base_url()
    )


def get_quote_service(
    settings: Settings = Depends(get_settings),
    store: QuoteDataStore = Depends(get_data_store),
    regenerator: DocumentRegenerator = Depends(get_document_regenerator),
    extractor: QuoteExtractor = Depends(get_quote_extractor),
) -> QuoteService:
    pipeline = ExtractionPipeline(extractor, min_confidence=settings.extraction_min_confidence)
    return QuoteService(store, regenerator, pipeline, validity_days=settings.quote_validity_days)


def get_review_session_service(
    store: QuoteDataStore = Depends(get_data_store),
    parser: EditCommandParser = Depends(get_edit_parser),
    regenerator: DocumentRegenerator = Depends(get_document_regenerator),
    quotes: QuoteService = Depends(get_quote_service),
    transcriber: Transcriber | None = Depends(get_transcriber),
) -> ReviewSessionService:
    return ReviewSessionService(store, parser, regenerator, quotes, transcriber=transcriber)
