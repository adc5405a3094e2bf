"""
Écarts de prix et NCR (Non-Conformance Records).

Au post d'une livraison, chaque ligne est comparée au prix de la période :
    price_variance = unit_price - period_price
Tout écart non nul (pas de seuil) crée une NCR PRICE_VARIANCE, OPEN,
value = |price_variance| * quantity.

Cycle NCR : OPEN -> SENT -> CREDITED | REJECTED | RESOLVED
            OPEN -> RESOLVED
RESOLVED exige resolution_type ET financial_impact.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal, ROUND_HALF_UP
from typing import Protocol

from sqlalchemy import select
from sqlalchemy.orm import Session

from backend.app.db.models.models_v1 import (
    Delivery,
    DeliveryLine,
    ItemPrice,
    Location,
    NCR,
)
from backend.app.db.models.core_types import DeliveryStatus, NCRStatus, NCRType
from backend.app.schemas.ncr import NCRCreate, NCRTransition
from backend.services import ledger
from backend.services.access import Actor, Permissions, require
from backend.services.errors import (
    EntityNotFound,
    InvalidStateTransition,
    RequiredFieldMissing,
    ValidationError,
)
from backend.services.numbering import next_ncr_number

logger = logging.getLogger(__name__)

ZERO = Decimal("0")

NCR_TRANSITIONS = {
    NCRStatus.open: {NCRStatus.sent, NCRStatus.resolved},
    NCRStatus.sent: {NCRStatus.credited, NCRStatus.rejected, NCRStatus.resolved},
    NCRStatus.credited: set(),
    NCRStatus.rejected: set(),
    NCRStatus.resolved: set(),
}
TERMINAL_STATUSES = {NCRStatus.credited, NCRStatus.rejected, NCRStatus.resolved}


class PeriodPriceLookup(Protocol):
    def get_period_price(self, item_id: int, period_id: int) -> Decimal | None: ...


class DbPeriodPriceLookup:
    """Lecture seule de la table item_prices."""

    def __init__(self, db: Session):
        self.db = db

    def get_period_price(self, item_id: int, period_id: int) -> Decimal | None:
        return (
            self.db.execute(
                select(ItemPrice.price).where(ItemPrice.item_id == item_id).where(ItemPrice.period_id == period_id)
            )
            .scalars()
            .first()
        )


@dataclass
class PriceVariance:
    unit_price: Decimal
    period_price: Decimal
    quantity: Decimal

    @property
    def variance(self) -> Decimal:
        return self.unit_price - self.period_price

    @property
    def has_variance(self) -> bool:
        return self.variance != 0

    @property
    def variance_percent(self) -> Decimal:
        if self.period_price > 0:
            pct = self.variance / self.period_price * 100
        else:
            pct = Decimal("100") if self.unit_price > 0 else ZERO
        return pct.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)

    @property
    def impact(self) -> Decimal:
        return (abs(self.variance) * self.quantity).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)


def check_price_variance(unit_price: Decimal, period_price: Decimal, quantity: Decimal) -> PriceVariance:
    if unit_price < 0:
        raise ValueError("unit_price cannot be negative")
    if period_price < 0:
        raise ValueError("period_price cannot be negative")
    if quantity <= 0:
        raise ValueError("quantity must be greater than zero")
    return PriceVariance(Decimal(unit_price), Decimal(period_price), Decimal(quantity))


def create_price_variance_ncr(
    db: Session,
    actor: Actor,
    delivery: Delivery,
    line: DeliveryLine,
    result: PriceVariance,
) -> NCR:
    direction = "increase" if result.variance > 0 else "decrease"
    ncr = NCR(
        ncr_no=next_ncr_number(db),
        location_id=delivery.location_id,
        type=NCRType.price_variance,
        auto_generated=True,
        delivery_id=delivery.id,
        delivery_line_id=line.id,
        item_id=line.item_id,
        reason=(
            f"Price variance detected: Expected {result.period_price:.2f}, "
            f"Actual {result.unit_price:.2f} ({result.variance_percent:.1f}% {direction})"
        ),
        quantity=result.quantity,
        value=result.impact,
        status=NCRStatus.open,
        created_by=actor.id,
    )
    db.add(ncr)
    db.flush()
    logger.info("NCR %s created for delivery %s (value=%s)", ncr.ncr_no, delivery.delivery_no, ncr.value)
    return ncr


def raise_variance_ncrs(
    db: Session,
    actor: Actor,
    delivery: Delivery,
    variances: list[tuple[DeliveryLine, PriceVariance]],
) -> list[NCR]:
    """
    Crée les NCR d'écart de prix, chacune dans son propre SAVEPOINT.

    Best effort : un échec de création est loggé et n'annule PAS le post
    de la livraison.
    """
    created = []
    for line, result in variances:
        if not result.has_variance:
            continue
        try:
            with db.begin_nested():
                created.append(create_price_variance_ncr(db, actor, delivery, line, result))
        except Exception:
            logger.exception(
                "NCR creation failed for delivery %s line %s (variance=%s)",
                delivery.delivery_no,
                line.id,
                result.variance,
            )
    return created


# ---------- NCR lifecycle ----------
def get_ncr(db: Session, ncr_id: int, *, lock: bool = False) -> NCR:
    query = select(NCR).where(NCR.id == ncr_id)
    if lock:
        query = query.with_for_update()
    ncr = db.execute(query).scalar_one_or_none()
    if not ncr:
        raise EntityNotFound("ncr", ncr_id, "NCR not found")
    return ncr


def create_manual_ncr(db: Session, actor: Actor, perms: Permissions, payload: NCRCreate) -> NCR:
    require(perms.can_post_deliveries(payload.location_id), actor, "raise NCRs for this location")
    if not db.get(Location, payload.location_id):
        raise ValidationError("Invalid location_id", {"location_id": payload.location_id})

    if payload.delivery_id is not None:
        delivery = db.get(Delivery, payload.delivery_id)
        if not delivery:
            raise ValidationError("Invalid delivery_id", {"delivery_id": payload.delivery_id})
        if delivery.status != DeliveryStatus.posted:
            raise ValidationError("NCRs can only reference posted deliveries", {"delivery_id": delivery.id})
    if payload.delivery_line_id is not None:
        line = db.get(DeliveryLine, payload.delivery_line_id)
        if not line or line.delivery_id != payload.delivery_id:
            raise ValidationError("delivery_line_id does not belong to delivery_id")

    ncr = NCR(
        ncr_no=next_ncr_number(db),
        location_id=payload.location_id,
        type=NCRType.manual,
        auto_generated=False,
        delivery_id=payload.delivery_id,
        delivery_line_id=payload.delivery_line_id,
        item_id=payload.item_id,
        reason=payload.reason,
        quantity=payload.quantity,
        value=payload.value,
        status=NCRStatus.open,
        created_by=actor.id,
    )
    db.add(ncr)
    ledger.flush_or_conflict(db, f"NCR {ncr.ncr_no}")
    logger.info("Manual NCR %s created by %s", ncr.ncr_no, actor.username)
    return ncr


def transition_ncr(db: Session, actor: Actor, perms: Permissions, ncr_id: int, payload: NCRTransition) -> NCR:
    ncr = get_ncr(db, ncr_id, lock=True)
    require(perms.can_post_deliveries(ncr.location_id), actor, "manage NCRs for this location")
    target = payload.status

    if target not in NCR_TRANSITIONS[ncr.status]:
        raise InvalidStateTransition("ncr", ncr.status, target)

    if target == NCRStatus.resolved:
        resolution_type = (payload.resolution_type or "").strip()
        if not resolution_type:
            raise RequiredFieldMissing("resolution_type", "resolution_type is required to resolve an NCR")
        if payload.financial_impact is None:
            raise RequiredFieldMissing("financial_impact", "financial_impact is required to resolve an NCR")
        ncr.resolution_type = resolution_type
        ncr.financial_impact = payload.financial_impact

    if payload.resolution_notes is not None:
        ncr.resolution_notes = payload.resolution_notes

    ncr.status = target
    if target in TERMINAL_STATUSES:
        ncr.resolved_at = datetime.now(timezone.utc)
        ncr.resolved_by = actor.id

    db.flush()
    logger.info("NCR %s moved to %s by %s", ncr.ncr_no, target.value, actor.username)
    return ncr
