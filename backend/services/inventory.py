from __future__ import annotations

from decimal import Decimal, ROUND_HALF_UP

from sqlalchemy import select
from sqlalchemy.orm import Session

from backend.app.db.models.models_v1 import LocationStock

WAC_PLACES = Decimal("0.0001")


def calculate_wac(
    current_qty: Decimal,
    current_wac: Decimal,
    received_qty: Decimal,
    receipt_price: Decimal,
) -> Decimal:
    """
    Coût moyen pondéré après réception.

        new_wac = (qty * wac + received * price) / (qty + received)
    """
    if current_qty < 0:
        raise ValueError("current_qty cannot be negative")
    if current_wac < 0:
        raise ValueError("current_wac cannot be negative")
    if received_qty <= 0:
        raise ValueError("received_qty must be greater than zero")
    if receipt_price < 0:
        raise ValueError("receipt_price cannot be negative")

    new_qty = current_qty + received_qty
    value = current_qty * current_wac + received_qty * receipt_price
    return (value / new_qty).quantize(WAC_PLACES, rounding=ROUND_HALF_UP)


def _get_or_create_stock(db: Session, location_id: int, item_id: int) -> LocationStock:
    stock = (
        db.execute(
            select(LocationStock)
            .where(LocationStock.location_id == location_id)
            .where(LocationStock.item_id == item_id)
            .with_for_update()
        )
        .scalar_one_or_none()
    )
    if stock:
        return stock

    stock = LocationStock(location_id=location_id, item_id=item_id, on_hand=Decimal("0"), wac=Decimal("0"))
    db.add(stock)
    db.flush()
    return stock


def receive_into_stock(
    db: Session,
    *,
    location_id: int,
    item_id: int,
    quantity: Decimal,
    unit_price: Decimal,
) -> tuple[Decimal, Decimal]:
    """
    Entrée en stock d'une ligne postée : on_hand += qty, WAC recalculé.
    Retourne (wac_avant, wac_après).
    """
    stock = _get_or_create_stock(db, location_id, item_id)
    before = Decimal(stock.wac)

    stock.wac = calculate_wac(Decimal(stock.on_hand), before, Decimal(quantity), Decimal(unit_price))
    stock.on_hand = Decimal(stock.on_hand) + Decimal(quantity)
    return before, Decimal(stock.wac)
