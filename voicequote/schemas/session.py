from __future__ import annotations

from enum import Enum
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from voicequote.schemas.commands import EditCommand


class SessionState(str, Enum):
    REVIEWING_QUOTE = "REVIEWING_QUOTE"
    CONFIRMING_CHANGES = "CONFIRMING_CHANGES"
    FINALIZED = "FINALIZED"


class ReviewSession(BaseModel):
    """Live state of one quote under contractor review on a messaging thread."""

    id: str
    quote_id: str
    contractor_id: str
    whatsapp_thread_id: str
    state: SessionState = SessionState.REVIEWING_QUOTE
    pending_changes: Optional[List[EditCommand]] = None
    pending_transcript: Optional[str] = None
    current_version: int = Field(default=1, ge=1)
    started_at: str
    last_activity: str
    finalized_at: Optional[str] = None

    @model_validator(mode="after")
    def _pending_only_while_confirming(self) -> "ReviewSession":
        if self.pending_changes is not None and self.state is not SessionState.CONFIRMING_CHANGES:
            raise ValueError("pending_changes may only be set while CONFIRMING_CHANGES")
        return self


class InboundMessage(BaseModel):
    """Message received from the messaging transport (text or voice note)."""

    model_config = ConfigDict(populate_by_name=True)

    thread_id: str = Field(..., alias="threadId")
    sender_phone: str = Field(..., alias="senderPhone")
    text: Optional[str] = None
    audio_url: Optional[str] = Field(default=None, alias="audioUrl")
    audio_content_type: Optional[str] = Field(default=None, alias="audioContentType")

    @model_validator(mode="after")
    def _require_content(self) -> "InboundMessage":
        if not (self.text and self.text.strip()) and not self.audio_url:
            raise ValueError("Either text or audio_url must be provided")
        return self

    @property
    def is_voice(self) -> bool:
        return bool(self.audio_url)


class OutboundReply(BaseModel):
    """Reply handed back to the transport dispatcher."""

    model_config = ConfigDict(populate_by_name=True)

    thread_id: str = Field(..., alias="threadId")
    text: str
    attachment_url: Optional[str] = Field(default=None, alias="attachmentUrl")


class EditRequest(BaseModel):
    session_id: Optional[str] = None
    transcript: Optional[str] = None
    action: Literal["process", "confirm", "cancel", "finalize"] = "process"

    @model_validator(mode="after")
    def _transcript_for_process(self) -> "EditRequest":
        if self.action == "process" and not (self.transcript and self.transcript.strip()):
            raise ValueError("transcript is required when action is 'process'")
        return self


class EditResponse(BaseModel):
    message: str
    state: SessionState
    changes: List[EditCommand] = Field(default_factory=list)
    requires_confirmation: bool = False
    new_version: Optional[int] = None
    pdf_url: Optional[str] = None
