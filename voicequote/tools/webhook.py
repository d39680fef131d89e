from fastapi import APIRouter, Depends

from voicequote.dependencies.services import get_review_session_service
from voicequote.schemas.session import InboundMessage, OutboundReply
from voicequote.services import ReviewSessionService

router = APIRouter()


@router.post("/message", response_model=OutboundReply, response_model_by_alias=True)
async def receive_message(
    message: InboundMessage,
    service: ReviewSessionService = Depends(get_review_session_service),
):
    return await service.handle_message(message)
