from __future__ import annotations

from datetime import date
from decimal import Decimal
from typing import Literal

from pydantic import BaseModel, Field, model_validator


class DeliveryLineInput(BaseModel):
    po_line_id: int | None = None
    item_id: int | None = None
    quantity: Decimal = Field(gt=0)
    unit_price: Decimal = Field(ge=0)

    @model_validator(mode="after")
    def _needs_a_po_line_reference(self):
        if self.po_line_id is None and self.item_id is None:
            raise ValueError("po_line_id or item_id is required")
        return self


class DeliveryCreate(BaseModel):
    po_id: int
    # par défaut : location du PO
    location_id: int | None = None
    supplier_id: int | None = None
    invoice_no: str | None = Field(default=None, max_length=100)
    delivery_note: str | None = Field(default=None, max_length=200)
    delivery_date: date = Field(default_factory=date.today)
    lines: list[DeliveryLineInput] = Field(min_length=1)
    status: Literal["DRAFT", "POSTED"] = "DRAFT"
    send_for_approval: bool = False


class DeliveryUpdate(BaseModel):
    invoice_no: str | None = Field(default=None, max_length=100)
    delivery_note: str | None = Field(default=None, max_length=200)
    delivery_date: date | None = None
    lines: list[DeliveryLineInput] | None = Field(default=None, min_length=1)


class SendForApproval(BaseModel):
    invoice_no: str | None = Field(default=None, max_length=100)


class OverDeliveryApprove(BaseModel):
    # None = toutes les lignes en sur-livraison
    line_ids: list[int] | None = None


class OverDeliveryReject(BaseModel):
    reason: str | None = Field(default=None, max_length=1000)
