"""Human-readable summaries of pending edit commands."""

from __future__ import annotations

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
from voicequote.services.edit_applier import apply_command
from voicequote.services.ledger import UniqueMatch, ledger_total, match_target, ordered

NO_CHANGES_MESSAGE = (
    "No changes found in that message. Try naming the item and the amount, "
    "for example 'change the toilet install to 650'."
)
CONFIRM_PROMPT = "Reply 'yes' or 👍 to confirm, 'no' to cancel, or send another message to adjust."


def money(amount: float) -> str:
    return f"${amount:,.2f}"


def quantity_text(quantity: float) -> str:
    if float(quantity).is_integer():
        return str(int(quantity))
    return f"{quantity:g}"


def _describe_bulk(command: BulkChange) -> str:
    scope = "all items" if command.scope == "all" else f"{command.scope} items"
    if command.operation is BulkOperation.ADD_PERCENTAGE:
        return f"📈 Add {command.value:g}% to {scope}"
    if command.operation is BulkOperation.SUBTRACT_PERCENTAGE:
        return f"📉 Take {command.value:g}% off {scope}"
    if command.operation is BulkOperation.SET_FLAT:
        return f"🏷️ Set {scope} to {money(command.value)} each"
    return f"💰 Adjust {scope} so the total is {money(command.value)}"


def _describe(command: EditCommand, items: List[QuoteItem]) -> str | None:
    if isinstance(command, AddItem):
        qty = f"{quantity_text(command.quantity)} × " if command.quantity != 1 else ""
        return f"➕ Add {command.description}: {qty}{money(command.unit_price)}"
    if isinstance(command, BulkChange):
        return _describe_bulk(command)

    match = match_target(items, command.target)
    if not isinstance(match, UniqueMatch):
        return None
    item = match.item
    if isinstance(command, ChangePrice):
        return f"✏️ {item.description}: {money(item.unit_price)} → {money(command.new_price)}"
    if isinstance(command, ChangeQuantity):
        return (
            f"📦 {item.description}: {quantity_text(item.quantity)} → "
            f"{quantity_text(command.quantity)} {item.unit}"
        )
    if isinstance(command, RemoveItem):
        return f"❌ Remove {item.description}: -{money(item.total_price)}"
    return None


def format_confirmation(commands: Sequence[EditCommand], items: Sequence[QuoteItem]) -> str:
    """Summarize ``commands`` against ``items`` for the contractor to approve.

    Commands are described against the ledger as it stands after the
    preceding commands, so the lines read in the order they will be applied.
    Commands whose target matches nothing are left out.
    """

    if not commands:
        return NO_CHANGES_MESSAGE

    working = ordered(items)
    lines: List[str] = []
    for command in commands:
        line = _describe(command, working)
        if line:
            lines.append(line)
        working = apply_command(working, command)

    if not lines:
        return NO_CHANGES_MESSAGE

    count = len(lines)
    header = f"I'll make {'this change' if count == 1 else f'these {count} changes'}:"
    return (
        f"{header}\n\n"
        + "\n".join(lines)
        + f"\n\nNew total will be: {money(ledger_total(working))}\n\n"
        + CONFIRM_PROMPT
    )
