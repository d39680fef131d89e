from __future__ import annotations

from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from voicequote.schemas.commands import MAX_AMOUNT, MAX_QUANTITY, EditCommand
from voicequote.schemas.contractor import QuoteTemplate


class QuoteStatus(str, Enum):
    DRAFT = "draft"
    REVIEW = "review"
    SENT = "sent"
    ACCEPTED = "accepted"
    REJECTED = "rejected"


class QuoteItem(BaseModel):
    """One billable line of a quote version. Instances are never mutated in place."""

    model_config = ConfigDict(frozen=True)

    item_code: Optional[str] = None
    description: str = Field(..., min_length=1)
    quantity: float = Field(default=1.0, gt=0.0, allow_inf_nan=False)
    unit: str = "each"
    unit_price: float = Field(default=0.0, ge=0.0, allow_inf_nan=False)
    total_price: float = Field(default=0.0, ge=0.0, allow_inf_nan=False)
    category: str = "other"
    display_order: int = Field(default=0, ge=0)
    confidence_score: float = Field(default=0.9, ge=0.0, le=1.0)
    notes: Optional[str] = None


class Quote(BaseModel):
    id: str
    contractor_id: str
    customer_name: str
    customer_phone: Optional[str] = None
    customer_address: Optional[str] = None
    customer_email: Optional[str] = None
    project_description: Optional[str] = None
    status: QuoteStatus = QuoteStatus.DRAFT
    version: int = Field(default=1, ge=1)
    total_amount: float = 0.0
    pdf_url: Optional[str] = None
    valid_until: str
    created_at: str
    updated_at: str
    sent_at: Optional[str] = None
    consultation_transcript: Optional[str] = None
    whatsapp_thread_id: Optional[str] = None


class QuoteEdit(BaseModel):
    """Append-only audit record for one confirmed edit batch."""

    model_config = ConfigDict(frozen=True)

    id: str
    quote_id: str
    version_from: int = Field(..., ge=1)
    version_to: int
    edit_type: str
    raw_commands: List[EditCommand]
    transcript: Optional[str] = None
    confidence_score: float = Field(default=0.0, ge=0.0, le=1.0)
    created_at: str

    @model_validator(mode="after")
    def _check_versions(self) -> "QuoteEdit":
        if self.version_to != self.version_from + 1:
            raise ValueError("version_to must be exactly version_from + 1")
        return self


class QuoteItemInput(BaseModel):
    item_code: Optional[str] = None
    description: str = Field(..., min_length=1)
    quantity: float = Field(default=1.0, gt=0.0, le=MAX_QUANTITY, allow_inf_nan=False)
    unit: str = "each"
    unit_price: float = Field(..., ge=0.0, le=MAX_AMOUNT, allow_inf_nan=False)
    category: str = "other"
    confidence: float = Field(default=0.9, ge=0.0, le=1.0)
    notes: Optional[str] = None


class QuoteGenerateRequest(BaseModel):
    contractor_id: str
    customer_name: str
    customer_phone: Optional[str] = None
    customer_address: Optional[str] = None
    customer_email: Optional[str] = None
    project_description: Optional[str] = None
    items: List[QuoteItemInput] = Field(..., min_length=1)
    consultation_transcript: Optional[str] = None
    whatsapp_thread_id: Optional[str] = None


class QuoteExtractRequest(BaseModel):
    contractor_id: str
    transcript: str = Field(..., min_length=1)
    whatsapp_thread_id: Optional[str] = None


class QuoteCreatedResponse(BaseModel):
    quote: Quote
    items: List[QuoteItem]
    session_id: Optional[str] = None
    message: str


class QuoteDetailResponse(BaseModel):
    quote: Quote
    items: List[QuoteItem]
    template: Optional[QuoteTemplate] = None


class QuoteEditListResponse(BaseModel):
    total: int
    items: List[QuoteEdit]


class RegenerateResponse(BaseModel):
    quote_id: str
    version: int
    pdf_url: str
