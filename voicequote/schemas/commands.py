"""Typed edit commands produced from contractor voice/text instructions."""

from __future__ import annotations

from enum import Enum
from typing import Annotated, List, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, field_validator


MAX_AMOUNT = 10_000_000.0
MAX_QUANTITY = 100_000.0


class BulkOperation(str, Enum):
    ADD_PERCENTAGE = "add_percentage"
    SUBTRACT_PERCENTAGE = "subtract_percentage"
    SET_FLAT = "set_flat"
    SET_TOTAL = "set_total"


class _EditCommandBase(BaseModel):
    model_config = ConfigDict(frozen=True)

    confidence: float = Field(default=0.8, ge=0.0, le=1.0)


class ChangePrice(_EditCommandBase):
    type: Literal["change_price"] = "change_price"
    target: str = Field(..., min_length=1, description="Keyword matched against item descriptions")
    new_price: float = Field(..., ge=0.0, le=MAX_AMOUNT, allow_inf_nan=False)


class AddItem(_EditCommandBase):
    type: Literal["add_item"] = "add_item"
    description: str = Field(..., min_length=1)
    unit_price: float = Field(..., ge=0.0, le=MAX_AMOUNT, allow_inf_nan=False)
    quantity: float = Field(default=1.0, gt=0.0, le=MAX_QUANTITY, allow_inf_nan=False)
    unit: str = "each"
    category: str = "other"
    item_code: str | None = None


class RemoveItem(_EditCommandBase):
    type: Literal["remove_item"] = "remove_item"
    target: str = Field(..., min_length=1)


class ChangeQuantity(_EditCommandBase):
    type: Literal["change_quantity"] = "change_quantity"
    target: str = Field(..., min_length=1)
    quantity: float = Field(..., gt=0.0, le=MAX_QUANTITY, allow_inf_nan=False)


class BulkChange(_EditCommandBase):
    type: Literal["bulk_change"] = "bulk_change"
    operation: BulkOperation
    value: float = Field(..., ge=-MAX_AMOUNT, le=MAX_AMOUNT, allow_inf_nan=False)
    scope: str = Field(
        default="all",
        description="'all' or the name of a single item category",
    )

    @field_validator("scope", mode="before")
    @classmethod
    def _normalize_scope(cls, value):
        if value is None:
            return "all"
        if isinstance(value, str):
            cleaned = value.strip().lower()
            if cleaned.startswith("category(") and cleaned.endswith(")"):
                cleaned = cleaned[len("category("):-1].strip()
            if cleaned in ("", "everything", "all items"):
                return "all"
            return cleaned
        return value

    def applies_to(self, category: str) -> bool:
        return self.scope == "all" or category.strip().lower() == self.scope


EditCommand = Annotated[
    Union[ChangePrice, AddItem, RemoveItem, ChangeQuantity, BulkChange],
    Field(discriminator="type"),
]

edit_command_adapter: TypeAdapter[EditCommand] = TypeAdapter(EditCommand)
edit_command_list_adapter: TypeAdapter[List[EditCommand]] = TypeAdapter(List[EditCommand])


_EDIT_TYPE_NAMES = {
    "change_price": "price_change",
    "add_item": "add_item",
    "remove_item": "remove_item",
    "change_quantity": "quantity_change",
    "bulk_change": "bulk_change",
}


def edit_type_for(commands: List[EditCommand]) -> str:
    """Return the audit ``edit_type`` label describing a command batch."""

    kinds = {_EDIT_TYPE_NAMES[command.type] for command in commands}
    if len(kinds) == 1:
        return kinds.pop()
    return "multiple"


def batch_confidence(commands: List[EditCommand]) -> float:
    if not commands:
        return 0.0
    return round(min(command.confidence for command in commands), 2)
