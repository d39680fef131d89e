"""Item ledger helpers: currency rounding, ordering and target matching."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal, localcontext
from typing import Iterable, List, Sequence, Tuple, Union

from voicequote.schemas.quote import QuoteItem

_CENT = Decimal("0.01")
_WORD_RE = re.compile(r"[a-z0-9]+")


def round2(value: float) -> float:
    """Round a currency amount to cents, half-up."""

    with localcontext() as ctx:
        # Wide enough to quantize any finite float to cents.
        ctx.prec = 400
        return float(Decimal(str(value)).quantize(_CENT, rounding=ROUND_HALF_UP))


def line_total(quantity: float, unit_price: float) -> float:
    return round2(quantity * unit_price)


def ledger_total(items: Iterable[QuoteItem]) -> float:
    return round2(sum(item.total_price for item in items))


def renumber(items: Sequence[QuoteItem]) -> List[QuoteItem]:
    """Return the items with ``display_order`` densely numbered from zero."""

    return [
        item if item.display_order == index else item.model_copy(update={"display_order": index})
        for index, item in enumerate(items)
    ]


def ordered(items: Iterable[QuoteItem]) -> List[QuoteItem]:
    return sorted(items, key=lambda item: item.display_order)


def category_totals(items: Iterable[QuoteItem]) -> List[Tuple[str, float]]:
    totals: dict[str, float] = {}
    for item in items:
        totals[item.category] = totals.get(item.category, 0.0) + item.total_price
    return [(category, round2(amount)) for category, amount in totals.items()]


@dataclass(frozen=True)
class NoMatch:
    target: str


@dataclass(frozen=True)
class UniqueMatch:
    target: str
    index: int
    item: QuoteItem


@dataclass(frozen=True)
class AmbiguousMatch:
    target: str
    candidates: List[Tuple[int, QuoteItem]] = field(default_factory=list)


MatchResult = Union[NoMatch, UniqueMatch, AmbiguousMatch]


def _words(text: str) -> List[str]:
    return _WORD_RE.findall(text.lower())


def match_target(items: Sequence[QuoteItem], target: str) -> MatchResult:
    """Resolve a spoken target against item descriptions.

    Matching is a case-insensitive substring test. When nothing contains the
    whole phrase, an item containing every word of the phrase matches. An
    exact description match wins over partial matches.
    """

    needle = target.strip().lower()
    if not needle:
        return NoMatch(target)

    candidates = [
        (index, item) for index, item in enumerate(items) if needle in item.description.lower()
    ]
    if not candidates:
        words = _words(needle)
        if words:
            candidates = [
                (index, item)
                for index, item in enumerate(items)
                if all(word in _words(item.description) for word in words)
            ]

    if not candidates:
        return NoMatch(target)
    if len(candidates) > 1:
        exact = [pair for pair in candidates if pair[1].description.strip().lower() == needle]
        if len(exact) == 1:
            candidates = exact
    if len(candidates) == 1:
        index, item = candidates[0]
        return UniqueMatch(target, index, item)
    return AmbiguousMatch(target, candidates)
