from typing import List, Optional

from pydantic import BaseModel, Field

from voicequote.schemas.quote import QuoteItem


class QuoteMetadata(BaseModel):
    customer_name: Optional[str] = None
    customer_phone: Optional[str] = None
    customer_address: Optional[str] = None
    customer_email: Optional[str] = None
    project_description: Optional[str] = None


class ExtractionResult(BaseModel):
    """First-draft quote content recovered from a consultation transcript."""

    items: List[QuoteItem] = Field(default_factory=list)
    metadata: QuoteMetadata = Field(default_factory=QuoteMetadata)
    confidence_score: float = Field(default=0.0, ge=0.0, le=1.0)
