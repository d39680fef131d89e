"""In-memory persistence for contractors, quotes, item ledgers, audit rows and sessions."""

from __future__ import annotations

import itertools
import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Dict, List, Optional, Sequence, Tuple

from voicequote.schemas.contractor import Contractor, QuoteTemplate
from voicequote.schemas.quote import Quote, QuoteEdit, QuoteItem
from voicequote.schemas.session import ReviewSession, SessionState
from voicequote.services.exceptions import PersistenceFailure, QuoteNotFound, VersionConflict
from voicequote.services.ledger import ledger_total, ordered

logger = logging.getLogger(__name__)


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def normalize_phone(phone: str) -> str:
    """Strip the channel prefix, punctuation and leading ``+`` from a phone number."""

    cleaned = phone.strip()
    if cleaned.lower().startswith("whatsapp:"):
        cleaned = cleaned[len("whatsapp:"):]
    return "".join(ch for ch in cleaned if ch.isdigit())


class _BaseRepository:
    def __init__(self, prefix: str) -> None:
        self._prefix = prefix
        self._counter = itertools.count(1)
        self._lock = threading.Lock()

    def _next_id(self) -> str:
        return f"{self._prefix}-{next(self._counter):05d}"


class ContractorRepository(_BaseRepository):
    def __init__(self) -> None:
        super().__init__("CTR")
        self._contractors: Dict[str, Contractor] = {}
        self._seed_defaults()

    def _seed_defaults(self) -> None:
        self._add(
            phone="14155550100",
            business_name="Bay Area Plumbing Co.",
            email="office@bayareaplumbing.example",
        )

    def _add(self, *, phone: str, business_name: str, email: Optional[str] = None) -> Contractor:
        contractor = Contractor(
            id=self._next_id(),
            phone=normalize_phone(phone),
            business_name=business_name,
            email=email,
        )
        self._contractors[contractor.id] = contractor
        return contractor

    async def register(self, *, phone: str, business_name: str, email: Optional[str] = None) -> Contractor:
        with self._lock:
            return self._add(phone=phone, business_name=business_name, email=email)

    async def get(self, contractor_id: str) -> Optional[Contractor]:
        return self._contractors.get(contractor_id)

    async def find_by_phone(self, phone: str) -> Optional[Contractor]:
        wanted = normalize_phone(phone)
        if not wanted:
            return None
        return next(
            (contractor for contractor in self._contractors.values() if contractor.phone == wanted),
            None,
        )


class TemplateRepository:
    def __init__(self) -> None:
        self._templates: Dict[str, QuoteTemplate] = {}

    async def get(self, contractor_id: str) -> Optional[QuoteTemplate]:
        return self._templates.get(contractor_id)

    async def save(self, contractor_id: str, template: QuoteTemplate) -> QuoteTemplate:
        self._templates[contractor_id] = template
        return template


class QuoteItemRepository:
    """Item ledgers keyed by ``(quote_id, version)``; each write replaces the whole list."""

    def __init__(self) -> None:
        self._items: Dict[Tuple[str, int], List[QuoteItem]] = {}

    def put(self, quote_id: str, version: int, items: Sequence[QuoteItem]) -> List[QuoteItem]:
        stored = ordered(items)
        self._items[(quote_id, version)] = stored
        return list(stored)

    async def replace(self, quote_id: str, version: int, items: Sequence[QuoteItem]) -> List[QuoteItem]:
        return self.put(quote_id, version, items)

    async def list(self, quote_id: str, version: int) -> List[QuoteItem]:
        return list(self._items.get((quote_id, version), []))


class QuoteEditRepository(_BaseRepository):
    def __init__(self) -> None:
        super().__init__("EDT")
        self._edits: List[QuoteEdit] = []

    def next_id(self) -> str:
        with self._lock:
            return self._next_id()

    def record(self, edit: QuoteEdit) -> QuoteEdit:
        self._edits.append(edit)
        return edit

    async def append(self, edit: QuoteEdit) -> QuoteEdit:
        return self.record(edit)

    async def list(self, quote_id: str) -> List[QuoteEdit]:
        return [edit for edit in self._edits if edit.quote_id == quote_id]


class QuoteRepository(_BaseRepository):
    def __init__(self, items: QuoteItemRepository, edits: QuoteEditRepository) -> None:
        super().__init__("QTE")
        self._quotes: Dict[str, Quote] = {}
        self._items = items
        self._edits = edits

    def next_id(self) -> str:
        with self._lock:
            return self._next_id()

    async def create(self, quote: Quote, items: Sequence[QuoteItem]) -> Quote:
        with self._lock:
            if quote.id in self._quotes:
                raise PersistenceFailure(f"Quote {quote.id} already exists")
            stored = quote.model_copy(update={"total_amount": ledger_total(items)})
            self._items.put(stored.id, stored.version, items)
            self._quotes[stored.id] = stored
        logger.info("Created quote %s v%d with %d item(s)", stored.id, stored.version, len(items))
        return stored

    async def get(self, quote_id: str) -> Optional[Quote]:
        return self._quotes.get(quote_id)

    def _lookup(self, quote_id: str) -> Quote:
        quote = self._quotes.get(quote_id)
        if quote is None:
            raise QuoteNotFound(f"Quote {quote_id} not found")
        return quote

    async def require(self, quote_id: str) -> Quote:
        return self._lookup(quote_id)

    async def update(self, quote_id: str, **changes: object) -> Quote:
        with self._lock:
            quote = self._lookup(quote_id)
            updated = quote.model_copy(update={**changes, "updated_at": utc_now_iso()})
            self._quotes[quote_id] = updated
        return updated

    async def set_pdf_url(self, quote_id: str, version: int, pdf_url: str) -> Quote:
        """Record the artifact link, unless the quote moved past ``version`` meanwhile."""

        with self._lock:
            quote = self._lookup(quote_id)
            if quote.version != version:
                logger.info(
                    "Skipping pdf_url for %s v%d, quote is at v%d", quote_id, version, quote.version
                )
                return quote
            updated = quote.model_copy(update={"pdf_url": pdf_url, "updated_at": utc_now_iso()})
            self._quotes[quote_id] = updated
        return updated

    async def commit_version(
        self,
        quote_id: str,
        expected_version: int,
        items: Sequence[QuoteItem],
        edit: QuoteEdit,
    ) -> Quote:
        """Persist a new item ledger as ``expected_version + 1``.

        Items and the audit row are written before the quote row is bumped, all
        under the repository lock. Raises ``VersionConflict`` when the stored
        version is not ``expected_version``.
        """

        with self._lock:
            quote = self._lookup(quote_id)
            if quote.version != expected_version:
                raise VersionConflict(quote_id, expected_version, quote.version)
            if edit.version_from != expected_version:
                raise PersistenceFailure(
                    f"Audit row for {quote_id} starts at v{edit.version_from}, expected v{expected_version}"
                )
            new_version = expected_version + 1
            stored_items = self._items.put(quote_id, new_version, items)
            self._edits.record(edit)
            updated = quote.model_copy(
                update={
                    "version": new_version,
                    "total_amount": ledger_total(stored_items),
                    "pdf_url": None,
                    "updated_at": utc_now_iso(),
                }
            )
            self._quotes[quote_id] = updated
        logger.info(
            "Committed quote %s v%d -> v%d (%s)", quote_id, expected_version, new_version, edit.edit_type
        )
        return updated


class ReviewSessionRepository(_BaseRepository):
    def __init__(self) -> None:
        super().__init__("SES")
        self._sessions: Dict[str, ReviewSession] = {}

    async def open(
        self,
        *,
        quote_id: str,
        contractor_id: str,
        thread_id: str,
        version: int,
    ) -> ReviewSession:
        now = utc_now_iso()
        with self._lock:
            session = ReviewSession(
                id=self._next_id(),
                quote_id=quote_id,
                contractor_id=contractor_id,
                whatsapp_thread_id=thread_id,
                current_version=version,
                started_at=now,
                last_activity=now,
            )
            self._sessions[session.id] = session
        logger.info("Opened review session %s for quote %s", session.id, quote_id)
        return session

    async def get(self, session_id: str) -> Optional[ReviewSession]:
        return self._sessions.get(session_id)

    async def save(self, session: ReviewSession) -> ReviewSession:
        with self._lock:
            if session.id not in self._sessions:
                raise PersistenceFailure(f"Session {session.id} does not exist")
            self._sessions[session.id] = session
        return session

    async def find_active(
        self,
        *,
        thread_id: Optional[str] = None,
        contractor_id: Optional[str] = None,
        quote_id: Optional[str] = None,
    ) -> Optional[ReviewSession]:
        """Return the newest non-finalized session matching every given filter."""

        candidates = [
            session
            for session in self._sessions.values()
            if session.state is not SessionState.FINALIZED
            and (thread_id is None or session.whatsapp_thread_id == thread_id)
            and (contractor_id is None or session.contractor_id == contractor_id)
            and (quote_id is None or session.quote_id == quote_id)
        ]
        if not candidates:
            return None
        return max(candidates, key=lambda session: (session.started_at, session.id))


class ArtifactRepository:
    """Rendered documents keyed by ``(quote_id, version)``."""

    def __init__(self) -> None:
        self._artifacts: Dict[Tuple[str, int], bytes] = {}

    async def put(self, quote_id: str, version: int, content: bytes) -> None:
        self._artifacts[(quote_id, version)] = content

    async def get(self, quote_id: str, version: int) -> Optional[bytes]:
        return self._artifacts.get((quote_id, version))


@dataclass
class QuoteDataStore:
    contractors: ContractorRepository
    templates: TemplateRepository
    quotes: QuoteRepository
    items: QuoteItemRepository
    edits: QuoteEditRepository
    sessions: ReviewSessionRepository
    artifacts: ArtifactRepository


_store: Optional[QuoteDataStore] = None


def get_store() -> QuoteDataStore:
    global _store
    if _store is None:
        items = QuoteItemRepository()
        edits = QuoteEditRepository()
        _store = QuoteDataStore(
            contractors=ContractorRepository(),
            templates=TemplateRepository(),
            quotes=QuoteRepository(items, edits),
            items=items,
            edits=edits,
            sessions=ReviewSessionRepository(),
            artifacts=ArtifactRepository(),
        )
    return _store


def reset_store() -> None:
    global _store
    _store = None
