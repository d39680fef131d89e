import asyncio
import os
import sys

import pytest

sys.path.append(os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

from voicequote.schemas.commands import ChangePrice
from voicequote.schemas.quote import Quote, QuoteEdit, QuoteItem
from voicequote.schemas.session import SessionState
from voicequote.services.exceptions import VersionConflict
from voicequote.services.store import get_store, normalize_phone, reset_store


@pytest.fixture(autouse=True)
def _reset_store() -> None:
    reset_store()
    yield
    reset_store()


def _quote() -> Quote:
    return Quote(
        id=get_store().quotes.next_id(),
        contractor_id="CTR-00001",
        customer_name="Dana",
        valid_until="2026-11-18T00:00:00+00:00",
        created_at="2026-10-19T00:00:00+00:00",
        updated_at="2026-10-19T00:00:00+00:00",
        pdf_url="http://quotes.test/quotes/QTE-00001/versions/1/pdf",
    )


def _edit(version_from: int) -> QuoteEdit:
    return QuoteEdit(
        id=get_store().edits.next_id(),
        quote_id="QTE-00001",
        version_from=version_from,
        version_to=version_from + 1,
        edit_type="price_change",
        raw_commands=[ChangePrice(target="toilet", new_price=650)],
        created_at="2026-10-19T00:00:00+00:00",
    )


ITEMS = [QuoteItem(description="Toilet Install", unit_price=450, total_price=450)]
NEW_ITEMS = [QuoteItem(description="Toilet Install", unit_price=650, total_price=650)]


def test_normalize_phone_strips_channel_prefix() -> None:
    assert normalize_phone("whatsapp:+1 (415) 555-0100") == "14155550100"
    assert normalize_phone("+14155550100") == "14155550100"


def test_seeded_contractor_is_found_by_phone() -> None:
    store = get_store()

    contractor = asyncio.run(store.contractors.find_by_phone("whatsapp:+14155550100"))

    assert contractor is not None
    assert contractor.id == "CTR-00001"
    assert asyncio.run(store.contractors.find_by_phone("+19995550000")) is None


def test_commit_version_bumps_and_keeps_history() -> None:
    store = get_store()
    quote = asyncio.run(store.quotes.create(_quote(), ITEMS))
    assert quote.id == "QTE-00001"

    updated = asyncio.run(store.quotes.commit_version(quote.id, 1, NEW_ITEMS, _edit(1)))

    assert updated.version == 2
    assert updated.total_amount == 650
    assert updated.pdf_url is None
    assert asyncio.run(store.items.list(quote.id, 1))[0].unit_price == 450
    assert asyncio.run(store.items.list(quote.id, 2))[0].unit_price == 650
    edits = asyncio.run(store.edits.list(quote.id))
    assert [(edit.version_from, edit.version_to) for edit in edits] == [(1, 2)]


def test_commit_version_rejects_stale_writer() -> None:
    store = get_store()
    quote = asyncio.run(store.quotes.create(_quote(), ITEMS))
    asyncio.run(store.quotes.commit_version(quote.id, 1, NEW_ITEMS, _edit(1)))

    with pytest.raises(VersionConflict) as excinfo:
        asyncio.run(store.quotes.commit_version(quote.id, 1, ITEMS, _edit(1)))

    assert excinfo.value.expected == 1
    assert excinfo.value.actual == 2
    assert len(asyncio.run(store.edits.list(quote.id))) == 1
    assert asyncio.run(store.quotes.get(quote.id)).version == 2


def test_concurrent_commits_on_one_version_admit_a_single_writer() -> None:
    store = get_store()
    quote = asyncio.run(store.quotes.create(_quote(), ITEMS))

    async def race():
        return await asyncio.gather(
            store.quotes.commit_version(quote.id, 1, NEW_ITEMS, _edit(1)),
            store.quotes.commit_version(quote.id, 1, ITEMS, _edit(1)),
            store.quotes.update(quote.id, customer_name="Dana W."),
            return_exceptions=True,
        )

    first, second, renamed = asyncio.run(race())

    assert first.version == 2
    assert isinstance(second, VersionConflict)
    assert renamed.customer_name == "Dana W."
    assert renamed.version == 2
    assert len(asyncio.run(store.edits.list(quote.id))) == 1
    assert asyncio.run(store.items.list(quote.id, 2))[0].unit_price == 650


def test_set_pdf_url_ignores_superseded_version() -> None:
    store = get_store()
    quote = asyncio.run(store.quotes.create(_quote(), ITEMS))
    asyncio.run(store.quotes.commit_version(quote.id, 1, NEW_ITEMS, _edit(1)))

    stale = asyncio.run(store.quotes.set_pdf_url(quote.id, 1, "http://quotes.test/v1.pdf"))

    assert stale.pdf_url is None


def test_find_active_session_skips_finalized() -> None:
    store = get_store()
    first = asyncio.run(
        store.sessions.open(quote_id="QTE-00001", contractor_id="CTR-00001", thread_id="t-1", version=1)
    )
    second = asyncio.run(
        store.sessions.open(quote_id="QTE-00002", contractor_id="CTR-00001", thread_id="t-1", version=1)
    )

    assert asyncio.run(store.sessions.find_active(thread_id="t-1")).id == second.id

    asyncio.run(
        store.sessions.save(
            second.model_copy(update={"state": SessionState.FINALIZED, "finalized_at": "2026-10-19"})
        )
    )

    assert asyncio.run(store.sessions.find_active(thread_id="t-1")).id == first.id
    assert asyncio.run(store.sessions.find_active(quote_id="QTE-00002")) is None
