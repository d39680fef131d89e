"""First-draft extraction: consultation transcript to quote items and metadata."""

from __future__ import annotations

import json
import logging
import math
import re
from typing import Any, Dict, List, Optional, Protocol

from pydantic import ValidationError

from voicequote.clients.gemini import GeminiClient
from voicequote.schemas.contractor import Contractor
from voicequote.schemas.commands import MAX_AMOUNT, MAX_QUANTITY
from voicequote.schemas.extraction import ExtractionResult, QuoteMetadata
from voicequote.schemas.quote import QuoteItem
from voicequote.services.catalog import find_entries
from voicequote.services.edit_parser import strip_code_fences
from voicequote.services.exceptions import DownstreamServiceError, ExtractionFailure
from voicequote.services.ledger import line_total, renumber, round2

logger = logging.getLogger(__name__)

EXTRACTION_FAILED_MESSAGE = (
    "I couldn't find billable items in that. Please be more specific, for example "
    "'replace the kitchen faucet for 225 and install a new toilet for 450'."
)


class QuoteExtractor(Protocol):
    async def extract(self, transcript: str, contractor: Contractor) -> ExtractionResult:
        ...


EXTRACTION_SYSTEM_PROMPT = """You are an expert plumbing estimator. A contractor has described a job out loud.
Turn the description into structured quote data.

Rules:
- Identify each distinct work item and give it a professional, customer-facing description.
- Parse prices in any spoken format ("$350", "three fifty", "350 dollars"). For ranges use the midpoint.
- Handle corrections ("300, no wait, 350" means 350) and ignore filler words.
- Use units each, hour, sqft, lf or job.
- Use categories fixtures, repairs, water_heaters, drain, emergency, inspection, labor, material or other.
- Capture customer name, phone, email and address and a one-line project description when mentioned.

Return ONLY JSON in this format:
{
  "items": [
    {"description": "...", "quantity": 1, "unit": "each", "unit_price": 350.0, "category": "fixtures",
     "item_code": null, "notes": null, "confidence": 0.9}
  ],
  "metadata": {"customer_name": null, "customer_phone": null, "customer_address": null,
               "customer_email": null, "project_description": null},
  "confidence_score": 0.9
}
If nothing billable is mentioned, return {"items": [], "metadata": {}, "confidence_score": 0}.
"""


def build_extraction_prompt(transcript: str, contractor: Contractor) -> str:
    return (
        f"Contractor: {contractor.business_name} ({contractor.trade})\n\n"
        f"Consultation transcript:\n\"{transcript}\"\n\n"
        "Return the quote JSON."
    )


def _as_float(value: Any) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        number = float(value)
    else:
        try:
            number = float(str(value).replace("$", "").replace(",", "").strip())
        except (ValueError, OverflowError):
            return None
    return number if math.isfinite(number) else None


def _coerce_item(raw: Any, index: int) -> Optional[QuoteItem]:
    if not isinstance(raw, dict):
        return None
    quantity = _as_float(raw.get("quantity")) or 1.0
    unit_price = _as_float(raw.get("unit_price"))
    if unit_price is None:
        # Older responses price items as labor + material (+ total).
        total = _as_float(raw.get("total"))
        if total is None:
            labor = _as_float(raw.get("labor_cost")) or 0.0
            material = _as_float(raw.get("material_cost")) or 0.0
            total = labor + material if (labor or material) else None
        if total is not None:
            unit_price = total / quantity
    if unit_price is None or not math.isfinite(unit_price):
        return None
    if unit_price > MAX_AMOUNT or quantity > MAX_QUANTITY:
        return None
    unit_price = round2(unit_price)

    confidence = _as_float(raw.get("confidence"))
    if confidence is None:
        confidence = 0.5 if raw.get("price_unclear") else 0.9
    try:
        return QuoteItem(
            item_code=raw.get("item_code") or None,
            description=str(raw.get("description") or "").strip(),
            quantity=quantity,
            unit=str(raw.get("unit") or "each"),
            unit_price=unit_price,
            total_price=line_total(quantity, unit_price),
            category=str(raw.get("category") or "other").strip().lower(),
            display_order=index,
            confidence_score=max(0.0, min(confidence, 1.0)),
            notes=raw.get("notes") or None,
        )
    except ValidationError as exc:
        logger.debug("Dropping malformed extracted item %s: %s", raw, exc.errors())
        return None


def parse_llm_extraction(raw: str) -> ExtractionResult:
    """Decode an extraction response; malformed output yields an empty result."""

    try:
        payload = json.loads(strip_code_fences(raw))
    except (json.JSONDecodeError, TypeError) as exc:
        logger.warning("LLM extraction response was not valid JSON: %s", exc)
        return ExtractionResult()
    if isinstance(payload, list):
        payload = {"items": payload}
    if not isinstance(payload, dict):
        return ExtractionResult()

    raw_items = payload.get("items")
    if raw_items is None:
        raw_items = payload.get("quote_items", [])
    items: List[QuoteItem] = []
    for entry in raw_items if isinstance(raw_items, list) else []:
        item = _coerce_item(entry, len(items))
        if item is not None:
            items.append(item)

    metadata_raw = payload.get("metadata") or {}
    try:
        metadata = QuoteMetadata.model_validate(
            {key: value for key, value in metadata_raw.items() if value not in (None, "")}
            if isinstance(metadata_raw, dict)
            else {}
        )
    except ValidationError:
        metadata = QuoteMetadata()

    confidence = _as_float(payload.get("confidence_score"))
    if confidence is None:
        confidence = min((item.confidence_score for item in items), default=0.0)
    return ExtractionResult(
        items=items,
        metadata=metadata,
        confidence_score=max(0.0, min(confidence, 1.0)),
    )


_PRICE_RE = re.compile(
    r"(?:\$\s*|\b(?:for|at|is|costs?|runs?|about|around)\s+\$?\s*)(\d{1,3}(?:,\d{3})+|\d+)(?:\.(\d{1,2}))?",
    re.IGNORECASE,
)
_QUANTITY_WORDS = {"a": 1, "an": 1, "one": 1, "two": 2, "three": 3, "four": 4, "five": 5, "six": 6}
_QUANTITY_RE = re.compile(r"\b(\d+|a|an|one|two|three|four|five|six)\s+(?:new\s+)?$", re.IGNORECASE)
_NAME_RE = re.compile(
    r"\b(?:customer(?:'s)? name is|customer is|for customer|name is)\s+([A-Z][a-z]+(?:\s+[A-Z][a-z]+)?)"
)
_PHONE_RE = re.compile(r"\b(\(?\d{3}\)?[\s.-]?\d{3}[\s.-]?\d{4})\b")
_EMAIL_RE = re.compile(r"\b([\w.+-]+@[\w-]+\.[\w.]+)\b")
_ADDRESS_RE = re.compile(
    r"\b(\d{2,6}\s+(?:[A-Z][a-z]+\s+){1,3}(?:Street|St|Avenue|Ave|Road|Rd|Drive|Dr|Lane|Ln|Way|Court|Ct|Boulevard|Blvd))\b"
)


def _keyword_metadata(transcript: str) -> QuoteMetadata:
    def first(pattern: re.Pattern[str]) -> Optional[str]:
        hit = pattern.search(transcript)
        return hit.group(1).strip() if hit else None

    return QuoteMetadata(
        customer_name=first(_NAME_RE),
        customer_phone=first(_PHONE_RE),
        customer_email=first(_EMAIL_RE),
        customer_address=first(_ADDRESS_RE),
    )


class KeywordQuoteExtractor:
    """Deterministic extractor that recognizes standard catalog items."""

    async def extract(self, transcript: str, contractor: Contractor) -> ExtractionResult:
        entries = find_entries(transcript)
        items: List[QuoteItem] = []
        for position, (entry, start, end) in enumerate(entries):
            next_start = entries[position + 1][1] if position + 1 < len(entries) else len(transcript)
            price_hit = _PRICE_RE.search(transcript, end, next_start)
            quantity = 1.0
            quantity_hit = _QUANTITY_RE.search(transcript[max(0, start - 20):start])
            if quantity_hit:
                word = quantity_hit.group(1).lower()
                quantity = float(_QUANTITY_WORDS.get(word, word))
            if price_hit:
                unit_price = float(price_hit.group(1).replace(",", ""))
                if price_hit.group(2):
                    unit_price += float(f"0.{price_hit.group(2)}")
                confidence = 0.85
            else:
                unit_price = entry.price
                confidence = 0.7
            if unit_price > MAX_AMOUNT or quantity > MAX_QUANTITY:
                logger.debug("Skipping out-of-range amount for %s", entry.description)
                continue
            items.append(
                QuoteItem(
                    item_code=entry.code,
                    description=entry.description,
                    quantity=quantity,
                    unit=entry.unit,
                    unit_price=round2(unit_price),
                    total_price=line_total(quantity, unit_price),
                    category=entry.category,
                    display_order=len(items),
                    confidence_score=confidence,
                )
            )

        metadata = _keyword_metadata(transcript)
        if items:
            metadata = metadata.model_copy(
                update={"project_description": ", ".join(item.description for item in items)}
            )
        confidence = min((item.confidence_score for item in items), default=0.0)
        logger.debug("Keyword extractor found %d item(s)", len(items))
        return ExtractionResult(items=items, metadata=metadata, confidence_score=confidence)


class GeminiQuoteExtractor:
    """LLM-backed extractor; uses the keyword extractor when the call fails."""

    def __init__(self, client: GeminiClient, *, fallback: Optional[QuoteExtractor] = None) -> None:
        self._client = client
        self._fallback = fallback or KeywordQuoteExtractor()

    async def extract(self, transcript: str, contractor: Contractor) -> ExtractionResult:
        try:
            raw = await self._client.generate(
                build_extraction_prompt(transcript, contractor),
                system_instruction=EXTRACTION_SYSTEM_PROMPT,
                json_output=True,
            )
        except DownstreamServiceError as exc:
            logger.warning("LLM extraction failed, using keyword fallback: %s", exc)
            return await self._fallback.extract(transcript, contractor)
        return parse_llm_extraction(raw)


class ExtractionPipeline:
    """Runs an extractor and refuses to hand back an empty or low-confidence draft."""

    def __init__(self, extractor: QuoteExtractor, *, min_confidence: float = 0.3) -> None:
        self._extractor = extractor
        self._min_confidence = min_confidence

    async def extract(self, transcript: str, contractor: Contractor) -> ExtractionResult:
        if not transcript or not transcript.strip():
            raise ExtractionFailure(EXTRACTION_FAILED_MESSAGE)
        result = await self._extractor.extract(transcript, contractor)
        if not result.items or result.confidence_score < self._min_confidence:
            logger.info(
                "Extraction rejected for contractor %s: %d item(s), confidence %.2f",
                contractor.id,
                len(result.items),
                result.confidence_score,
            )
            raise ExtractionFailure(EXTRACTION_FAILED_MESSAGE)
        items = renumber(result.items)
        logger.info("Extracted %d item(s) for contractor %s", len(items), contractor.id)
        return result.model_copy(update={"items": items})
