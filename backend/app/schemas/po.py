from __future__ import annotations

from decimal import Decimal

from pydantic import BaseModel, Field


class POLineInput(BaseModel):
    item_id: int | None = None
    item_description: str = Field(min_length=1, max_length=500)
    unit: str = Field(default="EA", max_length=32)
    quantity: Decimal = Field(gt=0)
    unit_price: Decimal = Field(ge=0)
    discount_percent: Decimal = Field(default=Decimal("0"), ge=0, le=100)
    vat_percent: Decimal = Field(default=Decimal("15"), ge=0, le=100)


class POCreate(BaseModel):
    prf_id: int | None = None
    supplier_id: int
    # obligatoire pour un PO sans PRF (sinon : location du PRF)
    location_id: int | None = None
    payment_terms: str | None = Field(default=None, max_length=200)
    delivery_terms: str | None = Field(default=None, max_length=200)
    notes: str | None = None
    lines: list[POLineInput] = Field(min_length=1)


class POUpdate(BaseModel):
    supplier_id: int | None = None
    payment_terms: str | None = Field(default=None, max_length=200)
    delivery_terms: str | None = Field(default=None, max_length=200)
    notes: str | None = None
    lines: list[POLineInput] | None = Field(default=None, min_length=1)


class POClose(BaseModel):
    closure_reason: str | None = Field(default=None, max_length=1000)
    notes: str | None = Field(default=None, max_length=1000)
