from __future__ import annotations

from decimal import Decimal

from pydantic import BaseModel, Field


class PRFLineInput(BaseModel):
    item_id: int | None = None
    description: str = Field(min_length=1, max_length=500)
    unit: str = Field(default="EA", max_length=32)
    quantity: Decimal = Field(gt=0)
    estimated_price: Decimal = Field(ge=0)


class PRFCreate(BaseModel):
    location_id: int
    period_id: int
    project_name: str | None = Field(default=None, max_length=200)
    notes: str | None = None
    lines: list[PRFLineInput] = Field(min_length=1)


class PRFUpdate(BaseModel):
    project_name: str | None = Field(default=None, max_length=200)
    notes: str | None = None
    lines: list[PRFLineInput] | None = Field(default=None, min_length=1)


class PRFReject(BaseModel):
    # Obligatoire, mais contrôlé côté service (RequiredFieldMissing)
    reason: str | None = Field(default=None, max_length=1000)
