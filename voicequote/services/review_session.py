"""Review session state machine driving contractor edits over a messaging thread.

States::

    REVIEWING_QUOTE --edit parsed--> CONFIRMING_CHANGES
    CONFIRMING_CHANGES --yes--> REVIEWING_QUOTE   (items committed as version + 1)
    CONFIRMING_CHANGES --no--> REVIEWING_QUOTE    (pending changes discarded)
    CONFIRMING_CHANGES --new edit--> CONFIRMING_CHANGES (pending replaced)
    REVIEWING_QUOTE --finalize--> FINALIZED        (quote marked sent)
"""

from __future__ import annotations

import logging
import re
from typing import List, Optional, Sequence, Tuple

from voicequote.schemas.commands import (
    EditCommand,
    batch_confidence,
    edit_type_for,
)
from voicequote.schemas.quote import QuoteEdit, QuoteItem
from voicequote.schemas.session import (
    EditRequest,
    EditResponse,
    InboundMessage,
    OutboundReply,
    ReviewSession,
    SessionState,
)
from voicequote.services.confirmation import NO_CHANGES_MESSAGE, format_confirmation, money
from voicequote.services.document import DocumentRegenerator
from voicequote.services.edit_applier import apply_command, apply_edits
from voicequote.services.edit_parser import EditCommandParser
from voicequote.services.exceptions import (
    ExtractionFailure,
    InvalidTransition,
    RegenerationFailure,
    SessionNotFound,
    TranscriptionError,
    VersionConflict,
)
from voicequote.services.ledger import AmbiguousMatch, NoMatch, match_target
from voicequote.services.quotes import QuoteService
from voicequote.services.store import QuoteDataStore, utc_now_iso
from voicequote.services.transcription import Transcriber

logger = logging.getLogger(__name__)

REGISTER_MESSAGE = (
    "👋 This number isn't registered yet. Please sign up as a contractor first, "
    "then send your job description here to get a quote."
)
HELP_MESSAGE = (
    "Send a voice note or text describing the job and your prices, for example "
    "'replace the kitchen faucet for 225 and install a comfort height toilet for 450'. "
    "I'll build the quote and send you the PDF. Then reply with changes, or say "
    "'looks good' to send it."
)
TECHNICAL_ERROR_MESSAGE = (
    "Sorry, we're having a technical moment. Please try again shortly or call us if it's urgent."
)
TRANSCRIPTION_FAILED_MESSAGE = (
    "🎤 Sorry, I couldn't hear that voice note. Please try again or type your changes."
)
NOTHING_PENDING_MESSAGE = "There are no pending changes to confirm. Send the changes you'd like to make."
CONFIRM_FIRST_MESSAGE = (
    "You have changes waiting. Reply 'yes' to apply them or 'no' to cancel before sending the quote."
)
CANCELLED_MESSAGE = "👍 Changes discarded. The quote is unchanged. Send new changes or say 'looks good' to send it."
STALE_MESSAGE = (
    "The quote changed while these edits were waiting, so I didn't apply them. "
    "Please send your changes again."
)

_AFFIRMATIVE = {"yes", "y", "yep", "yeah", "yup", "confirm", "ok", "okay", "sure", "👍"}
_NEGATIVE = {"no", "n", "nope", "cancel", "discard", "👎"}
_FINALIZE_RE = re.compile(r"\b(?:looks good|send it|perfect|send to customer)\b")
_PUNCTUATION_RE = re.compile(r"[.!?,]+")


def _normalize_reply(text: str) -> str:
    return " ".join(_PUNCTUATION_RE.sub(" ", text.strip().lower()).split())


def is_affirmative(text: str) -> bool:
    return _normalize_reply(text) in _AFFIRMATIVE


def is_negative(text: str) -> bool:
    return _normalize_reply(text) in _NEGATIVE


def is_finalize(text: str) -> bool:
    normalized = _normalize_reply(text)
    return _FINALIZE_RE.search(normalized) is not None


def clarifying_question(match: AmbiguousMatch) -> str:
    options = "\n".join(
        f"{number}. {item.description} ({money(item.total_price)})"
        for number, (_, item) in enumerate(match.candidates, start=1)
    )
    return (
        f"🤔 '{match.target}' matches more than one item:\n{options}\n\n"
        "Which one did you mean? Please send the change again using the item's full name."
    )


def screen_commands(
    commands: Sequence[EditCommand], items: Sequence[QuoteItem]
) -> Tuple[List[EditCommand], Optional[AmbiguousMatch]]:
    """Drop commands whose target matches nothing and stop at the first ambiguous one."""

    working = list(items)
    kept: List[EditCommand] = []
    for command in commands:
        target = getattr(command, "target", None)
        if target is not None:
            match = match_target(working, target)
            if isinstance(match, AmbiguousMatch):
                return kept, match
            if isinstance(match, NoMatch):
                logger.debug("Dropping %s command, no item matches %r", command.type, target)
                continue
        kept.append(command)
        working = apply_command(working, command)
    return kept, None


class ReviewSessionService:
    def __init__(
        self,
        store: QuoteDataStore,
        parser: EditCommandParser,
        regenerator: DocumentRegenerator,
        quotes: QuoteService,
        *,
        transcriber: Optional[Transcriber] = None,
    ) -> None:
        self._store = store
        self._parser = parser
        self._regenerator = regenerator
        self._quotes = quotes
        self._transcriber = transcriber

    async def handle_message(self, message: InboundMessage) -> OutboundReply:
        """Answer one inbound message. Never raises."""

        try:
            text, attachment = await self._dispatch(message)
        except Exception:
            logger.exception("Unhandled error for thread %s", message.thread_id)
            text, attachment = TECHNICAL_ERROR_MESSAGE, None
        return OutboundReply(thread_id=message.thread_id, text=text, attachment_url=attachment)

    async def _dispatch(self, message: InboundMessage) -> Tuple[str, Optional[str]]:
        contractor = await self._store.contractors.find_by_phone(message.sender_phone)
        if contractor is None:
            logger.info("Message from unregistered number on thread %s", message.thread_id)
            return REGISTER_MESSAGE, None

        if message.is_voice:
            if self._transcriber is None:
                return TRANSCRIPTION_FAILED_MESSAGE, None
            try:
                transcript = await self._transcriber.transcribe(
                    message.audio_url, message.audio_content_type
                )
            except TranscriptionError as exc:
                logger.warning("Transcription failed for thread %s: %s", message.thread_id, exc)
                return TRANSCRIPTION_FAILED_MESSAGE, None
        else:
            transcript = (message.text or "").strip()

        session = await self._store.sessions.find_active(
            thread_id=message.thread_id, contractor_id=contractor.id
        )
        if session is None:
            if _normalize_reply(transcript) == "help":
                return HELP_MESSAGE, None
            try:
                created = await self._quotes.create_from_transcript(
                    contractor, transcript, thread_id=message.thread_id
                )
            except ExtractionFailure as exc:
                return str(exc), None
            return created.message, created.quote.pdf_url

        response = await self.respond(session, transcript)
        return response.message, response.pdf_url

    async def respond(self, session: ReviewSession, transcript: str) -> EditResponse:
        """Route a contractor reply according to the session's state."""

        try:
            if session.state is SessionState.CONFIRMING_CHANGES:
                if is_affirmative(transcript):
                    return await self.confirm(session)
                if is_negative(transcript):
                    return await self.cancel(session)
                if is_finalize(transcript):
                    return EditResponse(message=CONFIRM_FIRST_MESSAGE, state=session.state)
                return await self.process_edit(session, transcript)

            if is_finalize(transcript):
                return await self.finalize(session)
            if is_affirmative(transcript):
                return await self.confirm(session)
            return await self.process_edit(session, transcript)
        except InvalidTransition as exc:
            return EditResponse(message=str(exc), state=session.state)

    async def process_edit(self, session: ReviewSession, transcript: str) -> EditResponse:
        """Parse an edit against the persisted ledger and hold it for confirmation.

        A new edit while confirming replaces the pending batch. Nothing is
        stored when no command applies or a target is ambiguous.
        """

        self._require_open(session)
        quote = await self._store.quotes.require(session.quote_id)
        items = await self._store.items.list(quote.id, quote.version)
        commands = await self._parser.parse(transcript, items)
        kept, ambiguous = screen_commands(commands, items)
        if ambiguous is not None:
            logger.info("Session %s: ambiguous target %r", session.id, ambiguous.target)
            return EditResponse(message=clarifying_question(ambiguous), state=session.state)
        if not kept:
            logger.info("Session %s: no applicable changes in %r", session.id, transcript)
            return EditResponse(message=NO_CHANGES_MESSAGE, state=session.state)

        updated = session.model_copy(
            update={
                "state": SessionState.CONFIRMING_CHANGES,
                "pending_changes": kept,
                "pending_transcript": transcript,
                "current_version": quote.version,
                "last_activity": utc_now_iso(),
            }
        )
        await self._store.sessions.save(updated)
        logger.info("Session %s: %d change(s) pending at v%d", session.id, len(kept), quote.version)
        return EditResponse(
            message=format_confirmation(kept, items),
            state=updated.state,
            changes=kept,
            requires_confirmation=True,
        )

    async def confirm(self, session: ReviewSession) -> EditResponse:
        """Apply pending changes to the persisted ledger and regenerate the document.

        Items and the audit row are committed first; a rendering failure is
        reported without undoing the new version.
        """

        self._require_open(session)
        if session.state is not SessionState.CONFIRMING_CHANGES or not session.pending_changes:
            raise InvalidTransition(NOTHING_PENDING_MESSAGE)

        commands = list(session.pending_changes)
        expected = session.current_version
        items = await self._store.items.list(session.quote_id, expected)
        new_items = apply_edits(items, commands)
        edit = QuoteEdit(
            id=self._store.edits.next_id(),
            quote_id=session.quote_id,
            version_from=expected,
            version_to=expected + 1,
            edit_type=edit_type_for(commands),
            raw_commands=commands,
            transcript=session.pending_transcript,
            confidence_score=batch_confidence(commands),
            created_at=utc_now_iso(),
        )

        try:
            quote = await self._store.quotes.commit_version(session.quote_id, expected, new_items, edit)
        except VersionConflict as exc:
            logger.warning("Session %s: %s", session.id, exc)
            reset = session.model_copy(
                update={
                    "state": SessionState.REVIEWING_QUOTE,
                    "pending_changes": None,
                    "pending_transcript": None,
                    "current_version": exc.actual,
                    "last_activity": utc_now_iso(),
                }
            )
            await self._store.sessions.save(reset)
            return EditResponse(message=STALE_MESSAGE, state=reset.state)

        updated = session.model_copy(
            update={
                "state": SessionState.REVIEWING_QUOTE,
                "pending_changes": None,
                "pending_transcript": None,
                "current_version": quote.version,
                "last_activity": utc_now_iso(),
            }
        )
        await self._store.sessions.save(updated)

        pdf_url: Optional[str] = None
        contractor = await self._quotes.require_contractor(quote.contractor_id)
        try:
            document = await self._regenerator.regenerate(
                quote, new_items, await self._quotes.template_for(contractor)
            )
            pdf_url = document.pdf_url
        except RegenerationFailure as exc:
            logger.warning("Quote %s v%d saved but document failed: %s", quote.id, quote.version, exc)

        lines = [
            f"✅ Quote updated to version {quote.version}.",
            f"New total: {money(quote.total_amount)}",
        ]
        if pdf_url:
            lines.append(f"Updated PDF: {pdf_url}")
        else:
            lines.append("Your changes are saved, but the PDF couldn't be generated. It will be retried.")
        lines.append("Send more changes or say 'looks good' to send it.")
        return EditResponse(
            message="\n".join(lines),
            state=updated.state,
            changes=commands,
            new_version=quote.version,
            pdf_url=pdf_url,
        )

    async def cancel(self, session: ReviewSession) -> EditResponse:
        self._require_open(session)
        if session.state is not SessionState.CONFIRMING_CHANGES:
            raise InvalidTransition(NOTHING_PENDING_MESSAGE)
        updated = session.model_copy(
            update={
                "state": SessionState.REVIEWING_QUOTE,
                "pending_changes": None,
                "pending_transcript": None,
                "last_activity": utc_now_iso(),
            }
        )
        await self._store.sessions.save(updated)
        logger.info("Session %s: pending changes discarded", session.id)
        return EditResponse(message=CANCELLED_MESSAGE, state=updated.state)

    async def finalize(self, session: ReviewSession) -> EditResponse:
        self._require_open(session)
        if session.state is SessionState.CONFIRMING_CHANGES:
            raise InvalidTransition(CONFIRM_FIRST_MESSAGE)
        quote = await self._quotes.mark_sent(session.quote_id)
        now = utc_now_iso()
        updated = session.model_copy(
            update={"state": SessionState.FINALIZED, "finalized_at": now, "last_activity": now}
        )
        await self._store.sessions.save(updated)
        logger.info("Session %s finalized, quote %s sent at v%d", session.id, quote.id, quote.version)
        message = (
            f"🎉 Quote {quote.id} for {quote.customer_name} is final and marked as sent. "
            f"Total: {money(quote.total_amount)}"
        )
        return EditResponse(message=message, state=updated.state, pdf_url=quote.pdf_url)

    async def edit_via_api(self, quote_id: str, request: EditRequest) -> EditResponse:
        """Drive the session for ``quote_id`` directly; raises on invalid transitions."""

        session = await self._active_session(quote_id, request.session_id)
        if request.action == "confirm":
            return await self.confirm(session)
        if request.action == "cancel":
            return await self.cancel(session)
        if request.action == "finalize":
            return await self.finalize(session)
        return await self.process_edit(session, request.transcript or "")

    async def _active_session(self, quote_id: str, session_id: Optional[str]) -> ReviewSession:
        if session_id:
            session = await self._store.sessions.get(session_id)
            if session is None or session.quote_id != quote_id or session.state is SessionState.FINALIZED:
                raise SessionNotFound(f"No active review session {session_id} for quote {quote_id}")
            return session
        session = await self._store.sessions.find_active(quote_id=quote_id)
        if session is None:
            raise SessionNotFound(f"No active review session for quote {quote_id}")
        return session

    @staticmethod
    def _require_open(session: ReviewSession) -> None:
        if session.state is SessionState.FINALIZED:
            raise SessionNotFound(f"Review session {session.id} is finalized")
