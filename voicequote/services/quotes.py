from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import List, Optional, Sequence, Tuple

from voicequote.schemas.contractor import Contractor, QuoteTemplate
from voicequote.schemas.extraction import QuoteMetadata
from voicequote.schemas.quote import (
    Quote,
    QuoteCreatedResponse,
    QuoteDetailResponse,
    QuoteEditListResponse,
    QuoteGenerateRequest,
    QuoteItem,
    QuoteItemInput,
    QuoteStatus,
    RegenerateResponse,
)
from voicequote.schemas.session import ReviewSession
from voicequote.services.catalog import DEFAULT_TERMS, DEFAULT_WARRANTY
from voicequote.services.confirmation import money
from voicequote.services.document import DocumentRegenerator, RegeneratedDocument
from voicequote.services.exceptions import ContractorNotFound, InvalidTransition, RegenerationFailure
from voicequote.services.extraction import ExtractionPipeline
from voicequote.services.ledger import line_total, renumber, round2
from voicequote.services.store import QuoteDataStore, utc_now_iso

logger = logging.getLogger(__name__)

REVIEW_INSTRUCTIONS = (
    "Reply with changes by voice or text (e.g. 'change the toilet install to 650', "
    "'add a shut-off valve for 85'), or say 'looks good' to send it."
)


def default_template(contractor: Contractor) -> QuoteTemplate:
    return QuoteTemplate(
        business_name=contractor.business_name or "Professional Plumbing Services",
        business_phone=contractor.phone,
        business_email=contractor.email or "",
        terms_and_conditions=DEFAULT_TERMS,
        payment_terms="Payment due upon completion",
        warranty_info=DEFAULT_WARRANTY,
    )


def items_from_input(entries: Sequence[QuoteItemInput]) -> List[QuoteItem]:
    return renumber(
        [
            QuoteItem(
                item_code=entry.item_code,
                description=entry.description,
                quantity=entry.quantity,
                unit=entry.unit,
                unit_price=round2(entry.unit_price),
                total_price=line_total(entry.quantity, entry.unit_price),
                category=entry.category,
                confidence_score=entry.confidence,
                notes=entry.notes,
            )
            for entry in entries
        ]
    )


class QuoteService:
    """Creates quotes, serves their current state and retries document regeneration."""

    def __init__(
        self,
        store: QuoteDataStore,
        regenerator: DocumentRegenerator,
        extraction: ExtractionPipeline,
        *,
        validity_days: int = 30,
    ) -> None:
        self._store = store
        self._regenerator = regenerator
        self._extraction = extraction
        self._validity_days = validity_days

    async def require_contractor(self, contractor_id: str) -> Contractor:
        contractor = await self._store.contractors.get(contractor_id)
        if contractor is None:
            raise ContractorNotFound(f"Contractor {contractor_id} is not registered")
        return contractor

    async def template_for(self, contractor: Contractor) -> QuoteTemplate:
        template = await self._store.templates.get(contractor.id)
        if template is None:
            logger.info("Creating default template for contractor %s", contractor.id)
            template = await self._store.templates.save(contractor.id, default_template(contractor))
        return template

    async def ensure_thread_free(self, contractor: Contractor, thread_id: str) -> None:
        """Raise ``InvalidTransition`` if the thread already has an open review."""

        active = await self._store.sessions.find_active(thread_id=thread_id, contractor_id=contractor.id)
        if active is not None:
            raise InvalidTransition(
                f"Thread {thread_id} already has an open review for quote {active.quote_id}. "
                "Finalize it before starting a new quote."
            )

    async def create_quote(
        self,
        contractor: Contractor,
        items: Sequence[QuoteItem],
        metadata: QuoteMetadata,
        *,
        transcript: Optional[str] = None,
        thread_id: Optional[str] = None,
    ) -> Tuple[Quote, List[QuoteItem], Optional[ReviewSession], Optional[RegeneratedDocument]]:
        """Persist version 1 of a quote, render its first document and open a session.

        A rendering failure is logged and leaves ``pdf_url`` empty; the quote
        can be regenerated later.
        """

        if thread_id:
            await self.ensure_thread_free(contractor, thread_id)
        now = datetime.now(timezone.utc)
        ledger = renumber(items)
        quote = await self._store.quotes.create(
            Quote(
                id=self._store.quotes.next_id(),
                contractor_id=contractor.id,
                customer_name=metadata.customer_name or "Customer",
                customer_phone=metadata.customer_phone,
                customer_address=metadata.customer_address,
                customer_email=metadata.customer_email,
                project_description=metadata.project_description,
                status=QuoteStatus.DRAFT,
                version=1,
                valid_until=(now + timedelta(days=self._validity_days)).isoformat(),
                created_at=now.isoformat(),
                updated_at=now.isoformat(),
                consultation_transcript=transcript,
                whatsapp_thread_id=thread_id,
            ),
            ledger,
        )

        document: Optional[RegeneratedDocument] = None
        try:
            document = await self._regenerator.regenerate(quote, ledger, await self.template_for(contractor))
        except RegenerationFailure as exc:
            logger.warning("Initial document for quote %s failed: %s", quote.id, exc)
        quote = await self._store.quotes.require(quote.id)

        session: Optional[ReviewSession] = None
        if thread_id:
            session = await self._store.sessions.open(
                quote_id=quote.id,
                contractor_id=contractor.id,
                thread_id=thread_id,
                version=quote.version,
            )
        return quote, ledger, session, document

    async def generate(self, request: QuoteGenerateRequest) -> QuoteCreatedResponse:
        contractor = await self.require_contractor(request.contractor_id)
        metadata = QuoteMetadata(
            customer_name=request.customer_name,
            customer_phone=request.customer_phone,
            customer_address=request.customer_address,
            customer_email=request.customer_email,
            project_description=request.project_description,
        )
        quote, items, session, _ = await self.create_quote(
            contractor,
            items_from_input(request.items),
            metadata,
            transcript=request.consultation_transcript,
            thread_id=request.whatsapp_thread_id,
        )
        return QuoteCreatedResponse(
            quote=quote,
            items=items,
            session_id=session.id if session else None,
            message=created_message(quote, items),
        )

    async def create_from_transcript(
        self,
        contractor: Contractor,
        transcript: str,
        *,
        thread_id: Optional[str] = None,
    ) -> QuoteCreatedResponse:
        """Run extraction on a consultation transcript and create the quote.

        Raises ``ExtractionFailure`` when no billable items were found.
        """

        if thread_id:
            await self.ensure_thread_free(contractor, thread_id)
        extracted = await self._extraction.extract(transcript, contractor)
        quote, items, session, _ = await self.create_quote(
            contractor,
            extracted.items,
            extracted.metadata,
            transcript=transcript,
            thread_id=thread_id,
        )
        return QuoteCreatedResponse(
            quote=quote,
            items=items,
            session_id=session.id if session else None,
            message=created_message(quote, items),
        )

    async def get_detail(self, quote_id: str) -> QuoteDetailResponse:
        quote = await self._store.quotes.require(quote_id)
        items = await self._store.items.list(quote.id, quote.version)
        template = await self._store.templates.get(quote.contractor_id)
        return QuoteDetailResponse(quote=quote, items=items, template=template)

    async def list_edits(self, quote_id: str) -> QuoteEditListResponse:
        await self._store.quotes.require(quote_id)
        edits = await self._store.edits.list(quote_id)
        return QuoteEditListResponse(total=len(edits), items=edits)

    async def regenerate(self, quote_id: str) -> RegenerateResponse:
        quote = await self._store.quotes.require(quote_id)
        contractor = await self.require_contractor(quote.contractor_id)
        document = await self._regenerator.regenerate_current(quote.id, await self.template_for(contractor))
        return RegenerateResponse(quote_id=quote.id, version=document.version, pdf_url=document.pdf_url)

    async def artifact(self, quote_id: str, version: int) -> Optional[bytes]:
        await self._store.quotes.require(quote_id)
        return await self._regenerator.fetch(quote_id, version)

    async def mark_sent(self, quote_id: str) -> Quote:
        now = utc_now_iso()
        quote = await self._store.quotes.update(quote_id, status=QuoteStatus.SENT, sent_at=now)
        logger.info("Quote %s marked as sent at v%d", quote.id, quote.version)
        return quote


def created_message(quote: Quote, items: Sequence[QuoteItem]) -> str:
    lines = [f"📋 Quote {quote.id} for {quote.customer_name} is ready ({len(items)} items)."]
    lines.extend(
        f"• {item.description}: {money(item.total_price)}" for item in items
    )
    lines.append(f"Total: {money(quote.total_amount)}")
    if quote.pdf_url:
        lines.append(f"PDF: {quote.pdf_url}")
    lines.append("")
    lines.append(REVIEW_INSTRUCTIONS)
    return "\n".join(lines)
