"""Turn a transcribed contractor instruction into typed edit commands."""

from __future__ import annotations

import json
import logging
import re
from typing import Any, Dict, List, Optional, Protocol, Sequence

from pydantic import ValidationError

from voicequote.clients.gemini import GeminiClient
from voicequote.schemas.commands import (
    AddItem,
    BulkChange,
    BulkOperation,
    ChangePrice,
    EditCommand,
    RemoveItem,
    edit_command_adapter,
)
from voicequote.schemas.quote import QuoteItem
from voicequote.services.catalog import find_entries
from voicequote.services.confirmation import money, quantity_text
from voicequote.services.exceptions import DownstreamServiceError
from voicequote.services.ledger import ledger_total

logger = logging.getLogger(__name__)


class EditCommandParser(Protocol):
    async def parse(self, transcript: str, current_items: Sequence[QuoteItem]) -> List[EditCommand]:
        """Return the edit commands found in ``transcript``; never raises."""


EDIT_SYSTEM_PROMPT = """You are a quote editing assistant for contractors.
You understand natural language commands to modify quotes and translate them into structured edits.

Current quote items will be provided. Parse the contractor's command and return specific changes.

Return ONLY a JSON array. Each element is one of:
- {"type": "change_price", "target": "<item keyword>", "new_price": <number>, "confidence": <0-1>}
- {"type": "change_quantity", "target": "<item keyword>", "quantity": <number>, "confidence": <0-1>}
- {"type": "add_item", "description": "<professional description>", "unit_price": <number>, "quantity": <number>, "unit": "each|hour|sqft|lf|job", "category": "<category>", "confidence": <0-1>}
- {"type": "remove_item", "target": "<item keyword>", "confidence": <0-1>}
- {"type": "bulk_change", "operation": "add_percentage|subtract_percentage|set_flat|set_total", "value": <number>, "scope": "all|<category>", "confidence": <0-1>}

Examples:
"Change the toilet install to 650" -> change_price with target "toilet"
"Add a wax ring for 25 dollars" -> add_item "Wax Ring Replacement" at 25
"Remove the second bathroom" -> remove_item with target "second bathroom"
"Add 10 percent to everything" -> bulk_change add_percentage 10 scope all
"Make the total 5000" -> bulk_change set_total 5000 scope all

A target must be a word or phrase that appears in exactly one current item description.
If the command contains no edits, return [].
"""


def build_edit_prompt(transcript: str, current_items: Sequence[QuoteItem]) -> str:
    item_lines = "\n".join(
        f"{index}. {item.description} [{item.category}] - Qty: {quantity_text(item.quantity)} {item.unit}"
        f" - {money(item.unit_price)} each - Total: {money(item.total_price)}"
        for index, item in enumerate(current_items, start=1)
    )
    return (
        f"Current quote items:\n{item_lines or '(no items)'}\n\n"
        f"Current total: {money(ledger_total(current_items))}\n\n"
        f"Contractor's command:\n\"{transcript}\"\n\n"
        "Return the JSON array of edit commands."
    )


_FENCE_RE = re.compile(r"```(?:json)?\s*|```", re.IGNORECASE)

_LEGACY_VALUE_FIELDS = {
    "change_price": "new_price",
    "change_quantity": "quantity",
    "add_item": "unit_price",
}


def strip_code_fences(raw: str) -> str:
    return _FENCE_RE.sub("", raw).strip()


def _coerce_command(raw: Any) -> Optional[Dict[str, Any]]:
    """Normalize one LLM command object, accepting the legacy ``value`` shape."""

    if not isinstance(raw, dict):
        return None
    data = {key: value for key, value in raw.items() if value is not None}
    kind = str(data.get("type", "")).strip().lower()
    if not kind:
        return None
    data["type"] = kind
    field = _LEGACY_VALUE_FIELDS.get(kind)
    if field and field not in data:
        if "value" in data:
            data[field] = data.pop("value")
        elif kind == "add_item" and "price" in data:
            data[field] = data.pop("price")
    return data


def parse_llm_commands(raw: str) -> List[EditCommand]:
    """Decode an LLM response into commands, dropping anything malformed."""

    try:
        payload = json.loads(strip_code_fences(raw))
    except (json.JSONDecodeError, TypeError) as exc:
        logger.warning("LLM edit response was not valid JSON: %s", exc)
        return []

    if isinstance(payload, dict):
        payload = payload.get("commands", payload.get("edits"))
    if not isinstance(payload, list):
        logger.warning("LLM edit response was not a JSON array")
        return []

    commands: List[EditCommand] = []
    for entry in payload:
        data = _coerce_command(entry)
        if data is None:
            continue
        try:
            commands.append(edit_command_adapter.validate_python(data))
        except ValidationError as exc:
            logger.debug("Dropping malformed edit command %s: %s", entry, exc.errors())
    return commands


_CLAUSE_SPLIT_RE = re.compile(
    r"\s*(?:;|,(?!\d{3}\b)|\.(?=\s|$)|\band then\b|\bthen\b|\band\b|\balso\b|\bplus\b)\s*",
    re.IGNORECASE,
)
_NUMBER_RE = re.compile(r"\$?\s*(\d{1,3}(?:,\d{3})+|\d+)(?:\.(\d{1,2}))?(?![\d%])(?!\s*(?:%|percent|per cent))")
_TO_NUMBER_RE = re.compile(r"\b(?:to|at|for)\s+\$?\s*(\d{1,3}(?:,\d{3})+|\d+)(?:\.(\d{1,2}))?", re.IGNORECASE)
_PERCENT_RE = re.compile(r"(\d+(?:\.\d+)?)\s*(?:%|percent\b|per cent\b)", re.IGNORECASE)
_SUBTRACT_RE = re.compile(r"\b(subtract|discount|reduce|lower|minus|take|knock|cut|less)\b", re.IGNORECASE)
_REMOVE_RE = re.compile(r"\b(remove|delete|drop|get rid of|take out|scratch)\b", re.IGNORECASE)
_ADD_RE = re.compile(r"\b(add|include|throw in|put in)\b", re.IGNORECASE)
_CHANGE_RE = re.compile(r"\b(change|set|make|update|bump|raise|price)\b", re.IGNORECASE)
_WORD_RE = re.compile(r"[a-z0-9]+")

_SCOPE_WORDS = {
    "labor": "labor",
    "labour": "labor",
    "material": "material",
    "materials": "material",
    "fixture": "fixtures",
    "fixtures": "fixtures",
    "repair": "repairs",
    "repairs": "repairs",
}
_GENERIC_WORDS = {
    "installation", "install", "replacement", "replace", "repair", "service", "services",
    "standard", "section", "per", "and", "the", "with", "new", "each", "job",
}
_REMOVE_PATTERNS = ("second bathroom", "vanity", "disposal")


def _to_amount(whole: str, cents: Optional[str]) -> float:
    value = float(whole.replace(",", ""))
    if cents:
        value += float(f"0.{cents}")
    return value


def _spoken_amount(clause: str) -> Optional[float]:
    preferred = _TO_NUMBER_RE.search(clause)
    if preferred:
        return _to_amount(preferred.group(1), preferred.group(2))
    first = _NUMBER_RE.search(clause)
    if first:
        return _to_amount(first.group(1), first.group(2))
    return None


def _item_target(clause: str, items: Sequence[QuoteItem]) -> Optional[str]:
    """Pick the description words of the item the clause talks about most."""

    spoken = set(_WORD_RE.findall(clause.lower()))
    best: Optional[List[str]] = None
    for item in items:
        words = [
            word
            for word in _WORD_RE.findall(item.description.lower())
            if len(word) > 2 and word not in _GENERIC_WORDS
        ]
        hits = [word for word in dict.fromkeys(words) if word in spoken]
        if hits and (best is None or len(hits) > len(best)):
            best = hits
    if best is None:
        return None
    return " ".join(best)


class KeywordEditCommandParser:
    """Deterministic, low-recall parser driven by keyword heuristics."""

    async def parse(self, transcript: str, current_items: Sequence[QuoteItem]) -> List[EditCommand]:
        return self.parse_sync(transcript, current_items)

    def parse_sync(self, transcript: str, current_items: Sequence[QuoteItem]) -> List[EditCommand]:
        commands: List[EditCommand] = []
        for clause in _CLAUSE_SPLIT_RE.split(transcript or ""):
            clause = clause.strip()
            if clause:
                try:
                    command = self._parse_clause(clause, current_items)
                except ValidationError as exc:
                    logger.debug("Skipping out-of-range clause %r: %s", clause, exc.errors())
                    continue
                if command is not None:
                    commands.append(command)
        logger.debug("Keyword parser found %d command(s) in %r", len(commands), transcript)
        return commands

    def _parse_clause(self, clause: str, items: Sequence[QuoteItem]) -> Optional[EditCommand]:
        lowered = clause.lower()

        percent = _PERCENT_RE.search(clause)
        if percent:
            operation = (
                BulkOperation.SUBTRACT_PERCENTAGE
                if _SUBTRACT_RE.search(clause)
                else BulkOperation.ADD_PERCENTAGE
            )
            scope = next(
                (_SCOPE_WORDS[word] for word in _WORD_RE.findall(lowered) if word in _SCOPE_WORDS),
                "all",
            )
            return BulkChange(
                operation=operation,
                value=float(percent.group(1)),
                scope=scope,
                confidence=0.85,
            )

        if _REMOVE_RE.search(clause):
            target = _item_target(clause, items) or next(
                (pattern for pattern in _REMOVE_PATTERNS if pattern in lowered), None
            )
            if target:
                return RemoveItem(target=target, confidence=0.8)
            return None

        if _ADD_RE.search(clause):
            entries = find_entries(clause)
            if not entries:
                return None
            entry = entries[0][0]
            amount = _spoken_amount(clause)
            return AddItem(
                item_code=entry.code,
                description=entry.description,
                unit_price=amount if amount is not None else entry.price,
                unit=entry.unit,
                category=entry.category,
                confidence=0.9 if amount is not None else 0.75,
            )

        if _CHANGE_RE.search(clause):
            amount = _spoken_amount(clause)
            if amount is None:
                return None
            target = _item_target(clause, items)
            if target:
                return ChangePrice(target=target, new_price=amount, confidence=0.9)
            if "total" in lowered:
                return BulkChange(
                    operation=BulkOperation.SET_TOTAL, value=amount, scope="all", confidence=0.8
                )
        return None


class GeminiEditCommandParser:
    """LLM-backed parser; falls back to keyword heuristics when the call fails."""

    def __init__(
        self,
        client: GeminiClient,
        *,
        fallback: Optional[EditCommandParser] = None,
    ) -> None:
        self._client = client
        self._fallback = fallback or KeywordEditCommandParser()

    async def parse(self, transcript: str, current_items: Sequence[QuoteItem]) -> List[EditCommand]:
        prompt = build_edit_prompt(transcript, current_items)
        try:
            raw = await self._client.generate(
                prompt, system_instruction=EDIT_SYSTEM_PROMPT, json_output=True
            )
        except DownstreamServiceError as exc:
            logger.warning("LLM edit parsing failed, using keyword fallback: %s", exc)
            return await self._fallback.parse(transcript, current_items)

        commands = parse_llm_commands(raw)
        logger.info("LLM parsed %d edit command(s)", len(commands))
        return commands
