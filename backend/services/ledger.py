"""
Quantity ledger.

Seule source de vérité pour "combien de cette ligne de PO est arrivé".

Règles :
    remaining_qty = quantity - delivered_qty   (dérivé, jamais stocké)
    delivered_qty n'augmente QUE via apply_delivery(), dans la transaction du post

Verrouillage :
    - lecture des lignes de PO en SELECT ... FOR UPDATE (Postgres)
    - écriture conditionnée par la version lue (UPDATE ... WHERE version = :lu)
      -> un écrivain qui a décidé sur une valeur périmée échoue en
         ConcurrentModification au lieu d'appliquer une décision fausse.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Iterable

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from backend.app.db.models.models_v1 import (
    PurchaseOrder,
    PurchaseOrderLine,
    Delivery,
)
from backend.app.db.models.core_types import DeliveryStatus
from backend.services.errors import (
    AlreadyPosted,
    ConcurrentModification,
    DuplicateInvoice,
    EntityNotFound,
    LineNotFound,
)

logger = logging.getLogger(__name__)

ZERO = Decimal("0")


@dataclass
class LineDemand:
    """Quantité demandée sur une ligne de PO, comparée au restant courant."""

    po_line: PurchaseOrderLine
    requested: Decimal
    remaining: Decimal

    @property
    def is_over_delivery(self) -> bool:
        return self.requested > self.remaining

    @property
    def excess(self) -> Decimal:
        return max(ZERO, self.requested - self.remaining)


def flush_or_conflict(db: Session, what: str) -> None:
    """
    Flush en traduisant les conflits entre transactions en erreurs métier.

    StaleDataError : version périmée. IntegrityError : une contrainte unique
    (numéro de document, facture) a été prise par une transaction concurrente.
    """
    try:
        db.flush()
    except IntegrityError as e:
        if "invoice_no" in str(e.orig):
            raise DuplicateInvoice(
                "Invoice number already exists for another delivery",
                {"entity": what},
            ) from e
        logger.warning("Unique constraint conflict on %s: %s", what, e.orig)
        raise ConcurrentModification(
            f"{what} conflicts with a concurrent write. Please retry.",
            {"entity": what},
        ) from e
    except StaleDataError as e:
        logger.warning("Concurrent modification detected on %s", what)
        raise ConcurrentModification(
            f"{what} was modified by another transaction. Please reload and retry.",
            {"entity": what},
        ) from e


def lock_purchase_order(db: Session, po_id: int) -> PurchaseOrder:
    po = (
        db.execute(
            select(PurchaseOrder)
            .where(PurchaseOrder.id == po_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        .scalar_one_or_none()
    )
    if not po:
        raise EntityNotFound("purchase_order", po_id, "PO not found")
    return po


def lock_po_lines(db: Session, po_id: int) -> list[PurchaseOrderLine]:
    """Lignes du PO relues depuis la base (dernier état commité) et verrouillées."""
    return list(
        db.execute(
            select(PurchaseOrderLine)
            .where(PurchaseOrderLine.po_id == po_id)
            .order_by(PurchaseOrderLine.id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        .scalars()
        .all()
    )


def resolve_po_line(
    po_id: int,
    po_lines: Iterable[PurchaseOrderLine],
    po_line_id: int | None,
    item_id: int | None,
) -> PurchaseOrderLine:
    """
    Résolution en deux étapes :
    1) po_line_id explicite -> doit appartenir au PO
    2) sinon, première ligne du PO portant le même item_id
    """
    po_lines = list(po_lines)

    if po_line_id is not None:
        for line in po_lines:
            if line.id == po_line_id:
                return line
        raise LineNotFound(po_id, po_line_id, item_id)

    if item_id is not None:
        for line in po_lines:
            if line.item_id == item_id:
                return line

    raise LineNotFound(po_id, po_line_id, item_id)


def compute_demands(
    po_id: int,
    po_lines: list[PurchaseOrderLine],
    requests: Iterable[tuple[int | None, int | None, Decimal]],
) -> list[LineDemand]:
    """
    Agrège les quantités demandées par ligne de PO.

    requests: (po_line_id, item_id, quantity) ; plusieurs lignes de livraison
    peuvent viser la même ligne de PO, c'est le cumul qui compte.
    """
    demands: dict[int, LineDemand] = {}
    for po_line_id, item_id, qty in requests:
        line = resolve_po_line(po_id, po_lines, po_line_id, item_id)
        demand = demands.get(line.id)
        if demand is None:
            demand = LineDemand(po_line=line, requested=ZERO, remaining=line.remaining_qty)
            demands[line.id] = demand
        demand.requested += Decimal(qty)
    return list(demands.values())


def apply_delivery(
    db: Session,
    delivery: Delivery,
    po_lines: list[PurchaseOrderLine],
) -> dict[int, Decimal]:
    """
    Incrémente delivered_qty pour chaque ligne de la livraison.

    `po_lines` doit être l'instantané verrouillé sur lequel la décision
    (gate sur-livraison) a été prise : l'écriture échoue si la base a bougé
    depuis. Retourne {po_line_id: remaining_qty} après mise à jour.
    """
    if delivery.status != DeliveryStatus.draft or delivery.over_delivery_rejected:
        raise AlreadyPosted(delivery.delivery_no, delivery.status)

    for dl in delivery.lines:
        line = resolve_po_line(delivery.po_id, po_lines, dl.po_line_id, dl.item_id)
        dl.po_line_id = line.id
        line.delivered_qty = Decimal(line.delivered_qty) + Decimal(dl.quantity)

    flush_or_conflict(db, f"purchase order {delivery.po_id}")

    remaining = {int(line.id): line.remaining_qty for line in po_lines}
    logger.info(
        "Delivery %s applied to PO %s, remaining=%s",
        delivery.delivery_no,
        delivery.po_id,
        {k: str(v) for k, v in remaining.items()},
    )
    return remaining


def is_fully_delivered(po_lines: Iterable[PurchaseOrderLine]) -> bool:
    po_lines = list(po_lines)
    return bool(po_lines) and all(Decimal(l.delivered_qty) >= Decimal(l.quantity) for l in po_lines)
