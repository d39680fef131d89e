from fastapi import APIRouter, Depends, HTTPException, Response

from voicequote.dependencies.services import get_quote_service, get_review_session_service
from voicequote.schemas.quote import (
    QuoteCreatedResponse,
    QuoteDetailResponse,
    QuoteEditListResponse,
    QuoteExtractRequest,
    QuoteGenerateRequest,
    RegenerateResponse,
)
from voicequote.schemas.session import EditRequest, EditResponse
from voicequote.services import QuoteService, ReviewSessionService
from voicequote.services.exceptions import (
    ContractorNotFound,
    ExtractionFailure,
    InvalidTransition,
    QuoteNotFound,
    ServiceError,
    SessionNotFound,
    VersionConflict,
)

router = APIRouter()


def _http_error(exc: ServiceError) -> HTTPException:
    if isinstance(exc, (QuoteNotFound, ContractorNotFound, SessionNotFound)):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, (InvalidTransition, VersionConflict)):
        return HTTPException(status_code=409, detail=str(exc))
    if isinstance(exc, ExtractionFailure):
        return HTTPException(status_code=422, detail=str(exc))
    return HTTPException(status_code=502, detail=str(exc))


@router.post("/generate", response_model=QuoteCreatedResponse)
async def generate_quote(
    req: QuoteGenerateRequest,
    service: QuoteService = Depends(get_quote_service),
):
    try:
        return await service.generate(req)
    except ServiceError as exc:
        raise _http_error(exc) from exc


@router.post("/extract", response_model=QuoteCreatedResponse)
async def extract_quote(
    req: QuoteExtractRequest,
    service: QuoteService = Depends(get_quote_service),
):
    try:
        contractor = await service.require_contractor(req.contractor_id)
        return await service.create_from_transcript(
            contractor, req.transcript, thread_id=req.whatsapp_thread_id
        )
    except ServiceError as exc:
        raise _http_error(exc) from exc


@router.get("/{quote_id}", response_model=QuoteDetailResponse)
async def get_quote(
    quote_id: str,
    service: QuoteService = Depends(get_quote_service),
):
    try:
        return await service.get_detail(quote_id)
    except ServiceError as exc:
        raise _http_error(exc) from exc


@router.get("/{quote_id}/edits", response_model=QuoteEditListResponse)
async def list_quote_edits(
    quote_id: str,
    service: QuoteService = Depends(get_quote_service),
):
    try:
        return await service.list_edits(quote_id)
    except ServiceError as exc:
        raise _http_error(exc) from exc


@router.post("/{quote_id}/regenerate", response_model=RegenerateResponse)
async def regenerate_quote(
    quote_id: str,
    service: QuoteService = Depends(get_quote_service),
):
    try:
        return await service.regenerate(quote_id)
    except ServiceError as exc:
        raise _http_error(exc) from exc


@router.get("/{quote_id}/versions/{version}/pdf")
async def download_quote_pdf(
    quote_id: str,
    version: int,
    service: QuoteService = Depends(get_quote_service),
):
    try:
        content = await service.artifact(quote_id, version)
    except ServiceError as exc:
        raise _http_error(exc) from exc
    if content is None:
        raise HTTPException(status_code=404, detail=f"No document for {quote_id} v{version}")
    return Response(
        content=content,
        media_type="application/pdf",
        headers={"Content-Disposition": f'inline; filename="{quote_id}-v{version}.pdf"'},
    )


@router.post("/{quote_id}/edit", response_model=EditResponse)
async def edit_quote(
    quote_id: str,
    req: EditRequest,
    service: ReviewSessionService = Depends(get_review_session_service),
):
    try:
        return await service.edit_via_api(quote_id, req)
    except ServiceError as exc:
        raise _http_error(exc) from exc
