import asyncio
import os
import sys

import pytest

sys.path.append(os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

from voicequote.schemas.commands import ChangePrice
from voicequote.schemas.extraction import QuoteMetadata
from voicequote.schemas.quote import QuoteItem, QuoteStatus
from voicequote.schemas.session import EditRequest, InboundMessage, SessionState
from voicequote.services import document
from voicequote.services.confirmation import NO_CHANGES_MESSAGE
from voicequote.services.document import DocumentRegenerator
from voicequote.services.edit_parser import GeminiEditCommandParser, KeywordEditCommandParser
from voicequote.services.exceptions import InvalidTransition, SessionNotFound, TranscriptionError
from voicequote.services.extraction import ExtractionPipeline, KeywordQuoteExtractor
from voicequote.services.quotes import QuoteService
from voicequote.services.review_session import (
    HELP_MESSAGE,
    REGISTER_MESSAGE,
    STALE_MESSAGE,
    TECHNICAL_ERROR_MESSAGE,
    TRANSCRIPTION_FAILED_MESSAGE,
    ReviewSessionService,
    is_finalize,
)
from voicequote.services.store import get_store, reset_store

BASE_URL = "http://quotes.test"
PHONE = "whatsapp:+14155550100"
THREAD = "thread-1"


@pytest.fixture(autouse=True)
def _reset_store() -> None:
    reset_store()
    yield
    reset_store()


def _build(parser=None, transcriber=None):
    store = get_store()
    regenerator = DocumentRegenerator(store.quotes, store.items, store.artifacts, base_url=BASE_URL)
    quotes = QuoteService(store, regenerator, ExtractionPipeline(KeywordQuoteExtractor()))
    sessions = ReviewSessionService(
        store,
        parser or KeywordEditCommandParser(),
        regenerator,
        quotes,
        transcriber=transcriber,
    )
    return store, quotes, sessions


def _send(service: ReviewSessionService, text: str, *, phone: str = PHONE, thread: str = THREAD):
    return asyncio.run(
        service.handle_message(InboundMessage(thread_id=thread, sender_phone=phone, text=text))
    )


def _seed_quote(quotes: QuoteService, store):
    contractor = asyncio.run(store.contractors.get("CTR-00001"))
    items = [
        QuoteItem(description="Toilet Install", unit_price=450, total_price=450, category="fixtures"),
        QuoteItem(
            description="Kitchen Faucet Replacement",
            unit_price=225,
            total_price=225,
            category="fixtures",
            display_order=1,
        ),
    ]
    quote, _, session, _ = asyncio.run(
        quotes.create_quote(contractor, items, QuoteMetadata(customer_name="Dana"), thread_id=THREAD)
    )
    return quote, session


def test_unregistered_sender_is_asked_to_register() -> None:
    store, _, service = _build()

    reply = _send(service, "replace the kitchen faucet for 225", phone="+15550001111")

    assert reply.text == REGISTER_MESSAGE
    assert asyncio.run(store.quotes.get("QTE-00001")) is None


def test_help_without_session() -> None:
    _, _, service = _build()

    assert _send(service, "Help").text == HELP_MESSAGE


def test_first_message_creates_quote_and_session() -> None:
    store, _, service = _build()

    reply = _send(
        service, "Replace the kitchen faucet for 225 and install a comfort height toilet for 450"
    )

    assert "QTE-00001" in reply.text
    assert "Total: $675.00" in reply.text
    assert reply.attachment_url == "http://quotes.test/quotes/QTE-00001/versions/1/pdf"
    quote = asyncio.run(store.quotes.get("QTE-00001"))
    assert quote.version == 1
    assert quote.status is QuoteStatus.DRAFT
    session = asyncio.run(store.sessions.find_active(thread_id=THREAD))
    assert session.state is SessionState.REVIEWING_QUOTE
    assert session.current_version == 1


def test_unbillable_first_message_creates_nothing() -> None:
    store, _, service = _build()

    reply = _send(service, "the customer was very friendly")

    assert "couldn't find billable items" in reply.text
    assert asyncio.run(store.sessions.find_active(thread_id=THREAD)) is None


def test_edit_confirm_finalize_flow() -> None:
    store, quotes, service = _build()
    quote, session = _seed_quote(quotes, store)

    pending = _send(service, "change the toilet to 650")
    assert "Toilet Install: $450.00 → $650.00" in pending.text
    session = asyncio.run(store.sessions.get(session.id))
    assert session.state is SessionState.CONFIRMING_CHANGES
    assert session.pending_changes == [ChangePrice(target="toilet", new_price=650, confidence=0.9)]

    confirmed = _send(service, "Yes!")
    assert "version 2" in confirmed.text
    assert confirmed.attachment_url == "http://quotes.test/quotes/QTE-00001/versions/2/pdf"
    session = asyncio.run(store.sessions.get(session.id))
    assert session.state is SessionState.REVIEWING_QUOTE
    assert session.pending_changes is None
    assert session.current_version == 2
    quote = asyncio.run(store.quotes.get(quote.id))
    assert quote.version == 2
    assert quote.total_amount == 875
    edits = asyncio.run(store.edits.list(quote.id))
    assert len(edits) == 1
    assert edits[0].version_from == 1 and edits[0].version_to == 2 == quote.version
    assert edits[0].edit_type == "price_change"
    assert edits[0].transcript == "change the toilet to 650"

    finalized = _send(service, "Looks good, send it")
    assert "marked as sent" in finalized.text
    session = asyncio.run(store.sessions.get(session.id))
    assert session.state is SessionState.FINALIZED
    quote = asyncio.run(store.quotes.get(quote.id))
    assert quote.status is QuoteStatus.SENT
    assert quote.sent_at is not None

    assert asyncio.run(store.sessions.find_active(thread_id=THREAD)) is None
    with pytest.raises(SessionNotFound):
        asyncio.run(
            service.edit_via_api(
                quote.id, EditRequest(session_id=session.id, transcript="change the toilet to 700")
            )
        )
    assert asyncio.run(store.quotes.get(quote.id)).version == 2


def test_new_transcript_reparses_against_persisted_items() -> None:
    store, quotes, service = _build()
    quote, session = _seed_quote(quotes, store)

    _send(service, "change the toilet to 650")
    replaced = _send(service, "actually change the toilet to 500")

    assert "Toilet Install: $450.00 → $500.00" in replaced.text
    session = asyncio.run(store.sessions.get(session.id))
    assert session.state is SessionState.CONFIRMING_CHANGES
    assert [command.new_price for command in session.pending_changes] == [500]
    assert asyncio.run(store.quotes.get(quote.id)).version == 1


def test_cancel_discards_pending_changes() -> None:
    store, quotes, service = _build()
    quote, session = _seed_quote(quotes, store)

    _send(service, "remove the kitchen faucet")
    reply = _send(service, "no")

    assert "discarded" in reply.text
    session = asyncio.run(store.sessions.get(session.id))
    assert session.state is SessionState.REVIEWING_QUOTE
    assert session.pending_changes is None
    assert len(asyncio.run(store.items.list(quote.id, 1))) == 2


def test_finalize_while_confirming_asks_to_confirm_first() -> None:
    store, quotes, service = _build()
    _, session = _seed_quote(quotes, store)

    _send(service, "change the toilet to 650")
    reply = _send(service, "perfect")

    assert "before sending" in reply.text
    assert asyncio.run(store.sessions.get(session.id)).state is SessionState.CONFIRMING_CHANGES


def test_unrecognized_message_keeps_state() -> None:
    store, quotes, service = _build()
    _, session = _seed_quote(quotes, store)

    reply = _send(service, "I'll call you tomorrow")

    assert reply.text == NO_CHANGES_MESSAGE
    assert asyncio.run(store.sessions.get(session.id)).state is SessionState.REVIEWING_QUOTE


def test_yes_without_pending_changes_is_rejected_politely() -> None:
    store, quotes, service = _build()
    _, session = _seed_quote(quotes, store)

    reply = _send(service, "yes")

    assert "no pending changes" in reply.text
    with pytest.raises(InvalidTransition):
        asyncio.run(service.confirm(asyncio.run(store.sessions.get(session.id))))


def test_malformed_llm_output_leaves_session_reviewing() -> None:
    class GarbageClient:
        async def generate(self, contents, **kwargs):
            return "{not json"

    store, quotes, service = _build(parser=GeminiEditCommandParser(GarbageClient()))
    _, session = _seed_quote(quotes, store)

    reply = _send(service, "change the toilet to 650")

    assert reply.text == NO_CHANGES_MESSAGE
    session = asyncio.run(store.sessions.get(session.id))
    assert session.state is SessionState.REVIEWING_QUOTE
    assert session.pending_changes is None


def test_non_finite_llm_price_is_dropped() -> None:
    class OverflowClient:
        async def generate(self, contents, **kwargs):
            return '[{"type": "change_price", "target": "toilet", "new_price": 1e999}]'

    store, quotes, service = _build(parser=GeminiEditCommandParser(OverflowClient()))
    quote, session = _seed_quote(quotes, store)

    reply = _send(service, "change the toilet to a zillion")

    assert reply.text == NO_CHANGES_MESSAGE
    session = asyncio.run(store.sessions.get(session.id))
    assert session.state is SessionState.REVIEWING_QUOTE
    assert asyncio.run(store.quotes.get(quote.id)).total_amount == 675


def test_finalize_phrases_match_whole_words() -> None:
    assert is_finalize("Perfect!")
    assert is_finalize("looks good, send it")
    assert is_finalize("please send to customer")
    assert not is_finalize("imperfect")
    assert not is_finalize("the floor is perfectly level, add 10 percent")
    assert not is_finalize("send items list")


def test_perfectly_in_an_edit_does_not_finalize() -> None:
    store, quotes, service = _build()
    _, session = _seed_quote(quotes, store)

    _send(service, "perfectly fine, add 10 percent to everything")

    session = asyncio.run(store.sessions.get(session.id))
    assert session.state is SessionState.CONFIRMING_CHANGES
    assert session.pending_changes


def test_ambiguous_target_asks_clarifying_question() -> None:
    class ValveParser:
        async def parse(self, transcript, current_items):
            return [ChangePrice(target="valve", new_price=95)]

    store, quotes, service = _build(parser=ValveParser())
    contractor = asyncio.run(store.contractors.get("CTR-00001"))
    items = [
        QuoteItem(description="Shut-off Valve Replacement", unit_price=85, total_price=85),
        QuoteItem(description="Pressure Valve Install", unit_price=140, total_price=140, display_order=1),
    ]
    _, _, session, _ = asyncio.run(
        quotes.create_quote(contractor, items, QuoteMetadata(customer_name="Dana"), thread_id=THREAD)
    )
    reply = _send(service, "change the valve to 95")

    assert "matches more than one item" in reply.text
    assert "Shut-off Valve Replacement" in reply.text
    assert "Pressure Valve Install" in reply.text
    assert asyncio.run(store.sessions.get(session.id)).state is SessionState.REVIEWING_QUOTE


def test_version_conflict_resets_session() -> None:
    store, quotes, service = _build()
    quote, session = _seed_quote(quotes, store)

    _send(service, "change the toilet to 650")
    stale = asyncio.run(store.sessions.get(session.id))

    # Another writer commits first, e.g. a duplicate webhook delivery.
    asyncio.run(service.confirm(stale))
    reply = asyncio.run(service.confirm(stale))

    assert reply.message == STALE_MESSAGE
    session = asyncio.run(store.sessions.get(session.id))
    assert session.state is SessionState.REVIEWING_QUOTE
    assert session.current_version == 2
    assert len(asyncio.run(store.edits.list(quote.id))) == 1


def test_regeneration_failure_keeps_committed_version(monkeypatch) -> None:
    store, quotes, service = _build()
    quote, session = _seed_quote(quotes, store)
    _send(service, "change the toilet to 650")

    def broken_render(*args, **kwargs):
        raise OSError("disk full")

    monkeypatch.setattr(document, "render_quote_pdf", broken_render)
    reply = _send(service, "yes")

    assert "couldn't be generated" in reply.text
    assert reply.attachment_url is None
    quote = asyncio.run(store.quotes.get(quote.id))
    assert quote.version == 2
    assert quote.pdf_url is None
    assert asyncio.run(store.items.list(quote.id, 2))[0].unit_price == 650

    monkeypatch.undo()
    retried = asyncio.run(quotes.regenerate(quote.id))
    assert retried.version == 2
    assert asyncio.run(store.quotes.get(quote.id)).pdf_url == retried.pdf_url


def test_voice_note_is_transcribed() -> None:
    class FakeTranscriber:
        async def transcribe(self, audio_url, content_type=None):
            assert audio_url == "https://media.test/voice.ogg"
            return "change the toilet to 600"

    store, quotes, service = _build(transcriber=FakeTranscriber())
    _, session = _seed_quote(quotes, store)

    reply = asyncio.run(
        service.handle_message(
            InboundMessage(threadId=THREAD, senderPhone=PHONE, audioUrl="https://media.test/voice.ogg")
        )
    )

    assert "$450.00 → $600.00" in reply.text
    assert asyncio.run(store.sessions.get(session.id)).state is SessionState.CONFIRMING_CHANGES


def test_failed_transcription_is_reported() -> None:
    class BrokenTranscriber:
        async def transcribe(self, audio_url, content_type=None):
            raise TranscriptionError("Unable to download voice note", 404)

    _, _, service = _build(transcriber=BrokenTranscriber())

    reply = asyncio.run(
        service.handle_message(
            InboundMessage(thread_id=THREAD, sender_phone=PHONE, audio_url="https://media.test/x.ogg")
        )
    )

    assert reply.text == TRANSCRIPTION_FAILED_MESSAGE


def test_unexpected_error_becomes_technical_reply() -> None:
    class ExplodingParser:
        async def parse(self, transcript, current_items):
            raise RuntimeError("boom")

    store, quotes, service = _build(parser=ExplodingParser())
    _seed_quote(quotes, store)

    reply = _send(service, "change the toilet to 650")

    assert reply.text == TECHNICAL_ERROR_MESSAGE
    assert reply.thread_id == THREAD


def test_edit_via_api_actions() -> None:
    store, quotes, service = _build()
    quote, session = _seed_quote(quotes, store)

    processed = asyncio.run(
        service.edit_via_api(quote.id, EditRequest(transcript="add a wax ring", action="process"))
    )
    assert processed.requires_confirmation is True
    assert processed.state is SessionState.CONFIRMING_CHANGES
    assert processed.changes[0].description == "Wax Ring Replacement"

    confirmed = asyncio.run(
        service.edit_via_api(quote.id, EditRequest(session_id=session.id, action="confirm"))
    )
    assert confirmed.new_version == 2
    assert confirmed.pdf_url.endswith("/quotes/QTE-00001/versions/2/pdf")

    with pytest.raises(InvalidTransition):
        asyncio.run(service.edit_via_api(quote.id, EditRequest(action="cancel")))

    finalized = asyncio.run(service.edit_via_api(quote.id, EditRequest(action="finalize")))
    assert finalized.state is SessionState.FINALIZED
