"""Deterministic application of edit commands to an item ledger."""

from __future__ import annotations

import logging
from typing import List, Sequence

from voicequote.schemas.commands import (
    AddItem,
    BulkChange,
    BulkOperation,
    ChangePrice,
    ChangeQuantity,
    EditCommand,
    RemoveItem,
)
from voicequote.schemas.quote import QuoteItem
from voicequote.services.ledger import (
    UniqueMatch,
    line_total,
    match_target,
    ordered,
    renumber,
    round2,
)

logger = logging.getLogger(__name__)


def _repriced(item: QuoteItem, unit_price: float) -> QuoteItem:
    unit_price = max(round2(unit_price), 0.0)
    return item.model_copy(
        update={"unit_price": unit_price, "total_price": line_total(item.quantity, unit_price)}
    )


def _resolve(items: List[QuoteItem], target: str, command: EditCommand) -> UniqueMatch | None:
    result = match_target(items, target)
    if isinstance(result, UniqueMatch):
        return result
    logger.debug("Skipping %s: target %r resolved to %s", command.type, target, type(result).__name__)
    return None


def _apply_bulk(items: List[QuoteItem], command: BulkChange) -> List[QuoteItem]:
    in_scope = [command.applies_to(item.category) for item in items]
    if not any(in_scope):
        logger.debug("Skipping bulk change: no items in scope %r", command.scope)
        return items

    if command.operation is BulkOperation.SET_TOTAL:
        scoped_total = sum(item.total_price for item, hit in zip(items, in_scope) if hit)
        fixed_total = sum(item.total_price for item, hit in zip(items, in_scope) if not hit)
        if scoped_total <= 0 or command.value < fixed_total:
            logger.debug("Skipping set_total %.2f: scoped total is %.2f", command.value, scoped_total)
            return items
        ratio = (command.value - fixed_total) / scoped_total

    updated: List[QuoteItem] = []
    for item, hit in zip(items, in_scope):
        if not hit:
            updated.append(item)
            continue
        if command.operation is BulkOperation.ADD_PERCENTAGE:
            price = item.unit_price * (1 + command.value / 100)
        elif command.operation is BulkOperation.SUBTRACT_PERCENTAGE:
            price = item.unit_price * (1 - command.value / 100)
        elif command.operation is BulkOperation.SET_FLAT:
            price = command.value
        else:
            price = item.unit_price * ratio
        updated.append(_repriced(item, price))
    return updated


def apply_command(items: Sequence[QuoteItem], command: EditCommand) -> List[QuoteItem]:
    """Apply one command and return a new list; unmatched targets are no-ops."""

    working = list(items)

    if isinstance(command, ChangePrice):
        match = _resolve(working, command.target, command)
        if match is not None:
            working[match.index] = _repriced(match.item, command.new_price)
    elif isinstance(command, ChangeQuantity):
        match = _resolve(working, command.target, command)
        if match is not None:
            working[match.index] = match.item.model_copy(
                update={
                    "quantity": command.quantity,
                    "total_price": line_total(command.quantity, match.item.unit_price),
                }
            )
    elif isinstance(command, RemoveItem):
        match = _resolve(working, command.target, command)
        if match is not None:
            del working[match.index]
    elif isinstance(command, AddItem):
        unit_price = round2(command.unit_price)
        working.append(
            QuoteItem(
                item_code=command.item_code,
                description=command.description,
                quantity=command.quantity,
                unit=command.unit,
                unit_price=unit_price,
                total_price=line_total(command.quantity, unit_price),
                category=command.category,
                display_order=len(working),
                confidence_score=command.confidence,
            )
        )
    elif isinstance(command, BulkChange):
        working = _apply_bulk(working, command)
    else:  # pragma: no cover - the union is closed
        raise TypeError(f"Unsupported edit command: {command!r}")

    return working


def apply_edits(items: Sequence[QuoteItem], commands: Sequence[EditCommand]) -> List[QuoteItem]:
    """Apply ``commands`` in order and return a freshly numbered item list.

    The input list is never modified. Commands whose target does not resolve
    to exactly one item leave the ledger unchanged.
    """

    working = ordered(items)
    for command in commands:
        working = apply_command(working, command)
    return renumber(working)
