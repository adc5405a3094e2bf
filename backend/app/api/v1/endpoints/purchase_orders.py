from __future__ import annotations

from fastapi import APIRouter, Depends
from sqlalchemy import select
from sqlalchemy.orm import Session

from backend.app.api.deps import get_actor, get_db, get_notifier, get_permissions
from backend.app.db.models.models_v1 import PurchaseOrder
from backend.app.db.models.core_types import POStatus
from backend.app.schemas.po import POClose, POCreate, POUpdate
from backend.services import procurement
from backend.services.access import Actor, Permissions
from backend.services.notifications import Notifier, notification_meta, publish

router = APIRouter(prefix="/purchase-orders")


def _po_out(po: PurchaseOrder) -> dict:
    return {
        "id": po.id,
        "po_no": po.po_no,
        "prf_id": po.prf_id,
        "supplier_id": po.supplier_id,
        "location_id": po.location_id,
        "status": po.status,
        "total_before_discount": po.total_before_discount,
        "total_discount": po.total_discount,
        "total_after_discount": po.total_after_discount,
        "total_vat": po.total_vat,
        "total_amount": po.total_amount,
        "payment_terms": po.payment_terms,
        "delivery_terms": po.delivery_terms,
        "notes": po.notes,
        "created_by": po.created_by,
        "created_at": po.created_at,
        "closed_at": po.closed_at,
        "closed_by": po.closed_by,
        "lines": [
            {
                "id": l.id,
                "line_no": l.line_no,
                "item_id": l.item_id,
                "item_description": l.item_description,
                "unit": l.unit,
                "quantity": l.quantity,
                "delivered_qty": l.delivered_qty,
                "remaining_qty": l.remaining_qty,
                "unit_price": l.unit_price,
                "discount_percent": l.discount_percent,
                "total_before_vat": l.total_before_vat,
                "vat_percent": l.vat_percent,
                "vat_amount": l.vat_amount,
                "total_after_vat": l.total_after_vat,
            }
            for l in po.lines
        ],
    }


@router.get("")
def list_pos(
    location_id: int | None = None,
    status: POStatus | None = None,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor),
):
    if status == POStatus.open:
        return [_po_out(po) for po in procurement.list_open_pos(db, location_id)]

    query = select(PurchaseOrder).order_by(PurchaseOrder.id.desc())
    if location_id is not None:
        query = query.where(PurchaseOrder.location_id == location_id)
    if status is not None:
        query = query.where(PurchaseOrder.status == status)
    return [_po_out(po) for po in db.execute(query).scalars().all()]


@router.get("/{po_id}")
def get_po(po_id: int, db: Session = Depends(get_db), actor: Actor = Depends(get_actor)):
    po = procurement.get_purchase_order(db, po_id)
    return {"data": _po_out(po), "fulfillment_summary": procurement.fulfillment_summary(po.lines)}


@router.post("", status_code=201)
def create_po(
    payload: POCreate,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor),
    perms: Permissions = Depends(get_permissions),
):
    po = procurement.create_po(db, actor, perms, payload)
    db.commit()
    return {"data": _po_out(po), "message": "PO created successfully"}


@router.patch("/{po_id}")
def update_po(
    po_id: int,
    payload: POUpdate,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor),
    perms: Permissions = Depends(get_permissions),
):
    po = procurement.update_po(db, actor, perms, po_id, payload)
    db.commit()
    return {"data": _po_out(po), "message": "PO updated successfully"}


@router.post("/{po_id}/close")
def close_po(
    po_id: int,
    payload: POClose,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor),
    perms: Permissions = Depends(get_permissions),
    notifier: Notifier = Depends(get_notifier),
):
    outcome = procurement.close_po(db, actor, perms, po_id, payload)
    db.commit()
    result = publish(notifier, outcome.notices)

    summary = outcome.fulfillment_summary
    return {
        "data": _po_out(outcome.po),
        "message": "PO closed successfully",
        "prf_closed": outcome.prf_closed,
        "fulfillment_summary": {
            "total_ordered": summary["total_ordered"],
            "total_delivered": summary["total_delivered"],
            "fulfillment_percent": summary["fulfillment_percent"],
            "has_unfulfilled_items": summary["has_unfulfilled_items"],
        }
        if summary
        else None,
        **notification_meta(result),
    }
