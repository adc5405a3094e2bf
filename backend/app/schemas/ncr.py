from __future__ import annotations

from decimal import Decimal

from pydantic import BaseModel, Field

from backend.app.db.models.core_types import FinancialImpact, NCRStatus


class NCRCreate(BaseModel):
    location_id: int
    delivery_id: int | None = None
    delivery_line_id: int | None = None
    item_id: int | None = None
    reason: str = Field(min_length=1)
    quantity: Decimal | None = Field(default=None, gt=0)
    value: Decimal = Field(ge=0)


class NCRTransition(BaseModel):
    status: NCRStatus
    resolution_type: str | None = Field(default=None, max_length=100)
    financial_impact: FinancialImpact | None = None
    resolution_notes: str | None = None
