"""Standard plumbing catalog used for keyword parsing, extraction and PDF grouping."""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple


@dataclass(frozen=True)
class CatalogEntry:
    code: str
    description: str
    unit: str
    category: str
    price: float
    keywords: Tuple[str, ...]


CATEGORY_TITLES: Dict[str, str] = {
    "fixtures": "Fixture Installation & Replacement",
    "repairs": "Repairs & Maintenance",
    "water_heaters": "Water Heaters",
    "drain": "Drain Services",
    "emergency": "Emergency Services",
    "inspection": "Inspection & Testing",
    "labor": "Labor",
    "material": "Materials",
    "other": "Additional Services",
}

STANDARD_ITEMS: Tuple[CatalogEntry, ...] = (
    CatalogEntry("TOILET_COMFORT", "Toilet Installation (Comfort Height)", "each", "fixtures", 450.0,
                 ("comfort height toilet", "comfort height")),
    CatalogEntry("TOILET_INSTALL", "Toilet Installation (Standard)", "each", "fixtures", 350.0,
                 ("toilet install", "new toilet", "toilet")),
    CatalogEntry("FAUCET_KITCHEN", "Kitchen Faucet Replacement", "each", "fixtures", 225.0,
                 ("kitchen faucet",)),
    CatalogEntry("FAUCET_BATH", "Bathroom Faucet Replacement", "each", "fixtures", 125.0,
                 ("bathroom faucet", "bath faucet", "faucet")),
    CatalogEntry("SINK_INSTALL", "Sink Installation", "each", "fixtures", 300.0,
                 ("sink",)),
    CatalogEntry("DISPOSAL_INSTALL", "Garbage Disposal Installation", "each", "fixtures", 275.0,
                 ("garbage disposal", "disposal")),
    CatalogEntry("SHUTOFF_VALVE", "Shut-off Valve Replacement", "each", "repairs", 85.0,
                 ("shut-off valve", "shutoff valve", "shut off valve")),
    CatalogEntry("WAX_RING", "Wax Ring Replacement", "each", "repairs", 25.0,
                 ("wax ring",)),
    CatalogEntry("DRAIN_CLEAR", "Drain Clearing", "job", "drain", 175.0,
                 ("drain clearing", "clear the drain", "clogged drain", "drain")),
    CatalogEntry("PIPE_REPAIR", "Pipe Repair (per section)", "each", "repairs", 150.0,
                 ("pipe repair", "leaking pipe", "leaky pipe", "pipe")),
    CatalogEntry("WATER_HEATER_40", "40 Gallon Water Heater Installation", "each", "water_heaters", 1200.0,
                 ("40 gallon", "forty gallon")),
    CatalogEntry("WATER_HEATER_50", "50 Gallon Water Heater Installation", "each", "water_heaters", 1400.0,
                 ("50 gallon", "fifty gallon", "water heater")),
    CatalogEntry("LEAK_DETECTION", "Leak Detection Service", "hour", "inspection", 125.0,
                 ("leak detection",)),
    CatalogEntry("EMERGENCY_CALL", "Emergency Service Call", "job", "emergency", 195.0,
                 ("emergency call", "emergency")),
)

DEFAULT_TERMS = """TERMS AND CONDITIONS

1. PAYMENT TERMS: Payment is due upon completion unless otherwise arranged. We accept cash, check, and major credit cards.

2. WARRANTY: All labor is warranted for 1 year from date of service. Parts warranties vary by manufacturer.

3. PERMITS: Customer is responsible for obtaining necessary permits unless otherwise specified in quote.

4. CHANGE ORDERS: Any changes to the scope of work may result in additional charges.

5. UNFORESEEN CONDITIONS: Quote is based on visible conditions. Hidden issues may require additional work and charges.

6. CANCELLATION: Customer may cancel with 24 hours notice without penalty."""

DEFAULT_WARRANTY = "1 Year Labor Warranty. Manufacturer Parts Warranty. 24/7 Emergency Service Available."


def category_title(category: str) -> str:
    return CATEGORY_TITLES.get(category, category.replace("_", " ").title())


def get_entry(code: str) -> Optional[CatalogEntry]:
    return next((entry for entry in STANDARD_ITEMS if entry.code == code), None)


def _keyword_pattern(keyword: str) -> re.Pattern[str]:
    return re.compile(rf"(?<![\w-]){re.escape(keyword)}s?(?![\w-])", re.IGNORECASE)


_KEYWORDS: List[Tuple[str, CatalogEntry, re.Pattern[str]]] = sorted(
    (
        (keyword, entry, _keyword_pattern(keyword))
        for entry in STANDARD_ITEMS
        for keyword in entry.keywords
    ),
    key=lambda row: len(row[0]),
    reverse=True,
)


def find_entries(text: str) -> List[Tuple[CatalogEntry, int, int]]:
    """Return catalog entries mentioned in ``text`` with their spans, in spoken order.

    Longer keywords win over shorter ones that overlap them, and each entry
    is reported once.
    """

    taken: List[Tuple[int, int]] = []
    seen: set[str] = set()
    found: List[Tuple[CatalogEntry, int, int]] = []
    for _keyword, entry, pattern in _KEYWORDS:
        for hit in pattern.finditer(text):
            start, end = hit.span()
            if any(start < other_end and end > other_start for other_start, other_end in taken):
                continue
            taken.append((start, end))
            if entry.code not in seen:
                seen.add(entry.code)
                found.append((entry, start, end))
    found.sort(key=lambda row: row[1])
    return found
