"""Quote document rendering and versioned regeneration."""

from __future__ import annotations

import asyncio
import io
import logging
from dataclasses import dataclass
from typing import Iterable, List, Optional, Sequence

from reportlab.lib.pagesizes import LETTER
from reportlab.pdfbase.pdfmetrics import stringWidth
from reportlab.pdfgen import canvas

from voicequote.schemas.contractor import QuoteTemplate
from voicequote.schemas.quote import Quote, QuoteItem
from voicequote.services.catalog import category_title
from voicequote.services.confirmation import money, quantity_text
from voicequote.services.exceptions import RegenerationFailure
from voicequote.services.ledger import category_totals, ledger_total, ordered

logger = logging.getLogger(__name__)

PAGE_WIDTH, PAGE_HEIGHT = LETTER
MARGIN = 50
LINE_HEIGHT = 14
BOTTOM_LIMIT = MARGIN + 40
QTY_X = 385
UNIT_X = 390
PRICE_X = 475


def _wrap(text: str, width: float, font: str, size: int) -> List[str]:
    lines: List[str] = []
    for paragraph in text.splitlines() or [""]:
        words = paragraph.split()
        if not words:
            lines.append("")
            continue
        current = words[0]
        for word in words[1:]:
            candidate = f"{current} {word}"
            if stringWidth(candidate, font, size) <= width:
                current = candidate
            else:
                lines.append(current)
                current = word
        lines.append(current)
    return lines


class _QuotePdf:
    """Stateful page writer that tracks the cursor and breaks pages."""

    def __init__(self, quote: Quote, template: QuoteTemplate) -> None:
        self.quote = quote
        self.template = template
        self.buffer = io.BytesIO()
        self.canvas = canvas.Canvas(self.buffer, pagesize=LETTER)
        self.canvas.setTitle(f"Quote {quote.id} v{quote.version}")
        self.canvas.setAuthor(template.business_name)
        self.page = 1
        self.y = PAGE_HEIGHT - MARGIN

    def text(self, x: float, value: str, *, font: str = "Helvetica", size: int = 10) -> None:
        self.canvas.setFont(font, size)
        self.canvas.drawString(x, self.y, value)

    def right(self, x: float, value: str, *, font: str = "Helvetica", size: int = 10) -> None:
        self.canvas.setFont(font, size)
        self.canvas.drawRightString(x, self.y, value)

    def advance(self, lines: float = 1) -> None:
        self.y -= LINE_HEIGHT * lines

    def ensure_room(self, lines: float = 1, *, table: bool = False) -> None:
        if self.y - LINE_HEIGHT * lines >= BOTTOM_LIMIT:
            return
        self.footer()
        self.canvas.showPage()
        self.page += 1
        self.y = PAGE_HEIGHT - MARGIN
        self.text(MARGIN, f"{self.template.business_name} - Quote {self.quote.id} (continued)",
                  font="Helvetica-Oblique", size=9)
        self.advance(2)
        if table:
            self.table_header()

    def footer(self) -> None:
        self.canvas.setFont("Helvetica", 8)
        self.canvas.drawCentredString(
            PAGE_WIDTH / 2, MARGIN / 2, f"Quote {self.quote.id} v{self.quote.version} - Page {self.page}"
        )

    def rule(self) -> None:
        self.canvas.line(MARGIN, self.y + 4, PAGE_WIDTH - MARGIN, self.y + 4)

    def paragraph(self, value: str, *, font: str = "Helvetica", size: int = 9) -> None:
        for line in _wrap(value, PAGE_WIDTH - 2 * MARGIN, font, size):
            self.ensure_room()
            self.text(MARGIN, line, font=font, size=size)
            self.advance()

    def table_header(self) -> None:
        self.text(MARGIN, "Description", font="Helvetica-Bold")
        self.right(QTY_X, "Qty", font="Helvetica-Bold")
        self.text(UNIT_X, "Unit", font="Helvetica-Bold")
        self.right(PRICE_X, "Unit Price", font="Helvetica-Bold")
        self.right(PAGE_WIDTH - MARGIN, "Total", font="Helvetica-Bold")
        self.advance()
        self.rule()
        self.advance(0.5)

    def finish(self) -> bytes:
        self.footer()
        self.canvas.showPage()
        self.canvas.save()
        return self.buffer.getvalue()


def _draw_header(pdf: _QuotePdf) -> None:
    template = pdf.template
    quote = pdf.quote
    pdf.text(MARGIN, template.business_name, font="Helvetica-Bold", size=16)
    pdf.right(PAGE_WIDTH - MARGIN, "QUOTE", font="Helvetica-Bold", size=16)
    pdf.advance(1.5)
    contact = [template.business_phone, template.business_email, template.business_address]
    for line in (value for value in contact if value):
        pdf.text(MARGIN, line, size=9)
        pdf.advance()
    if template.license_number:
        pdf.text(MARGIN, f"License #{template.license_number}", size=9)
        pdf.advance()

    pdf.y = PAGE_HEIGHT - MARGIN - LINE_HEIGHT * 1.5
    details = (
        f"Quote #: {quote.id}",
        f"Version: {quote.version}",
        f"Date: {quote.created_at[:10]}",
        f"Valid until: {quote.valid_until[:10]}",
    )
    for line in details:
        pdf.right(PAGE_WIDTH - MARGIN, line, size=9)
        pdf.advance()
    pdf.y = min(pdf.y, PAGE_HEIGHT - MARGIN - LINE_HEIGHT * 6)
    pdf.advance()


def _draw_customer(pdf: _QuotePdf) -> None:
    quote = pdf.quote
    pdf.text(MARGIN, "Prepared for", font="Helvetica-Bold", size=11)
    pdf.advance()
    for line in (quote.customer_name, quote.customer_address, quote.customer_phone, quote.customer_email):
        if line:
            pdf.text(MARGIN, line)
            pdf.advance()
    if quote.project_description:
        pdf.advance(0.5)
        pdf.text(MARGIN, "Project", font="Helvetica-Bold", size=11)
        pdf.advance()
        pdf.paragraph(quote.project_description, size=10)
    pdf.advance()


def _draw_items(pdf: _QuotePdf, items: Sequence[QuoteItem]) -> None:
    pdf.ensure_room(3)
    pdf.table_header()
    for item in items:
        description = _wrap(item.description, 280, "Helvetica", 10)
        pdf.ensure_room(len(description), table=True)
        pdf.text(MARGIN, description[0])
        pdf.right(QTY_X, quantity_text(item.quantity))
        pdf.text(UNIT_X, item.unit)
        pdf.right(PRICE_X, money(item.unit_price))
        pdf.right(PAGE_WIDTH - MARGIN, money(item.total_price))
        pdf.advance()
        for continuation in description[1:]:
            pdf.text(MARGIN + 10, continuation)
            pdf.advance()
        if item.notes:
            pdf.ensure_room(table=True)
            pdf.text(MARGIN + 10, item.notes[:90], font="Helvetica-Oblique", size=8)
            pdf.advance()


def _draw_summary(pdf: _QuotePdf, items: Iterable[QuoteItem], total: float) -> None:
    subtotals = category_totals(items)
    pdf.ensure_room(len(subtotals) + 3)
    pdf.rule()
    pdf.advance(0.5)
    if len(subtotals) > 1:
        for category, amount in subtotals:
            pdf.text(330, category_title(category), size=9)
            pdf.right(PAGE_WIDTH - MARGIN, money(amount), size=9)
            pdf.advance()
    pdf.text(330, "TOTAL", font="Helvetica-Bold", size=12)
    pdf.right(PAGE_WIDTH - MARGIN, money(total), font="Helvetica-Bold", size=12)
    pdf.advance(2)


def _draw_terms(pdf: _QuotePdf) -> None:
    template = pdf.template
    sections = (
        ("Payment Terms", template.payment_terms),
        ("Warranty", template.warranty_info),
        ("Insurance", template.insurance_info),
        (None, template.terms_and_conditions),
    )
    for title, body in sections:
        if not body:
            continue
        pdf.ensure_room(3)
        if title:
            pdf.text(MARGIN, title, font="Helvetica-Bold", size=10)
            pdf.advance()
        pdf.paragraph(body, size=8)
        pdf.advance(0.5)

    pdf.ensure_room(4)
    pdf.advance()
    pdf.text(MARGIN, "Customer acceptance: ______________________________    Date: ____________")
    pdf.advance()


def render_quote_pdf(quote: Quote, items: Sequence[QuoteItem], template: QuoteTemplate) -> bytes:
    """Render the full quote document from the complete item list."""

    ledger = ordered(items)
    pdf = _QuotePdf(quote, template)
    _draw_header(pdf)
    _draw_customer(pdf)
    _draw_items(pdf, ledger)
    _draw_summary(pdf, ledger, ledger_total(ledger))
    _draw_terms(pdf)
    return pdf.finish()


@dataclass(frozen=True)
class RegeneratedDocument:
    pdf_bytes: bytes
    version: int
    pdf_url: str


class DocumentRegenerator:
    """Renders the current ledger of a quote and stores it as that version's artifact."""

    def __init__(self, quotes, items, artifacts, *, base_url: str) -> None:
        self._quotes = quotes
        self._items = items
        self._artifacts = artifacts
        self._base_url = base_url.rstrip("/")

    def artifact_url(self, quote_id: str, version: int) -> str:
        return f"{self._base_url}/quotes/{quote_id}/versions/{version}/pdf"

    async def regenerate(
        self,
        quote: Quote,
        items: Sequence[QuoteItem],
        template: QuoteTemplate,
    ) -> RegeneratedDocument:
        """Render and store the document for ``quote.version``.

        Raises ``RegenerationFailure``; item and version state is never touched.
        """

        try:
            pdf_bytes = await asyncio.to_thread(render_quote_pdf, quote, items, template)
            await self._artifacts.put(quote.id, quote.version, pdf_bytes)
        except RegenerationFailure:
            raise
        except Exception as exc:
            logger.exception("Failed to render quote %s v%d", quote.id, quote.version)
            raise RegenerationFailure(
                f"Could not build the document for quote {quote.id} v{quote.version}", cause=exc
            ) from exc

        pdf_url = self.artifact_url(quote.id, quote.version)
        await self._quotes.set_pdf_url(quote.id, quote.version, pdf_url)
        logger.info("Regenerated quote %s v%d (%d bytes)", quote.id, quote.version, len(pdf_bytes))
        return RegeneratedDocument(pdf_bytes=pdf_bytes, version=quote.version, pdf_url=pdf_url)

    async def regenerate_current(self, quote_id: str, template: QuoteTemplate) -> RegeneratedDocument:
        """Rebuild the artifact for the stored version from persisted items."""

        quote = await self._quotes.require(quote_id)
        items = await self._items.list(quote.id, quote.version)
        return await self.regenerate(quote, items, template)

    async def fetch(self, quote_id: str, version: int) -> Optional[bytes]:
        return await self._artifacts.get(quote_id, version)
