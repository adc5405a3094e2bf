from __future__ import annotations

from fastapi import APIRouter, Depends
from sqlalchemy import select
from sqlalchemy.orm import Session

from backend.app.api.deps import (
    get_actor,
    get_db,
    get_notifier,
    get_permissions,
    get_price_lookup,
)
from backend.app.db.models.models_v1 import Delivery
from backend.app.db.models.core_types import DeliveryStatus
from backend.app.schemas.delivery import (
    DeliveryCreate,
    DeliveryUpdate,
    OverDeliveryApprove,
    OverDeliveryReject,
    SendForApproval,
)
from backend.services import deliveries
from backend.services.access import Actor, Permissions
from backend.services.notifications import Notifier, notification_meta, publish
from backend.services.variance import PeriodPriceLookup

router = APIRouter(prefix="/deliveries")


def _delivery_out(d: Delivery) -> dict:
    return {
        "id": d.id,
        "delivery_no": d.delivery_no,
        "location_id": d.location_id,
        "po_id": d.po_id,
        "supplier_id": d.supplier_id,
        "period_id": d.period_id,
        "invoice_no": d.invoice_no,
        "delivery_note": d.delivery_note,
        "delivery_date": d.delivery_date,
        "status": d.status,
        "pending_approval": d.pending_approval,
        "over_delivery_rejected": d.over_delivery_rejected,
        "has_variance": d.has_variance,
        "total_amount": d.total_amount,
        "notes": d.notes,
        "created_by": d.created_by,
        "created_at": d.created_at,
        "posted_at": d.posted_at,
        "posted_by": d.posted_by,
        "lines": [
            {
                "id": l.id,
                "po_line_id": l.po_line_id,
                "item_id": l.item_id,
                "quantity": l.quantity,
                "unit_price": l.unit_price,
                "period_price": l.period_price,
                "price_variance": l.price_variance,
                "line_value": l.line_value,
                "is_over_delivery": l.is_over_delivery,
                "over_delivery_approved": l.over_delivery_approved,
                "approved_by": l.approved_by,
            }
            for l in d.lines
        ],
    }


def _outcome_response(db: Session, notifier: Notifier, outcome: deliveries.DeliveryOutcome) -> dict:
    db.commit()
    result = publish(notifier, outcome.notices)
    return {
        "data": _delivery_out(outcome.delivery),
        "message": outcome.message,
        "po_auto_closed": outcome.po_auto_closed,
        "prf_closed": outcome.prf_closed,
        "ncrs": [{"id": n.id, "ncr_no": n.ncr_no, "value": n.value} for n in outcome.ncrs],
        "over_delivery": [
            {
                "po_line_id": d.po_line.id,
                "requested_qty": d.requested,
                "remaining_qty": d.remaining,
                "excess": d.excess,
            }
            for d in outcome.over_delivery
        ],
        **notification_meta(result),
    }


@router.get("")
def list_deliveries(
    location_id: int | None = None,
    po_id: int | None = None,
    status: DeliveryStatus | None = None,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor),
):
    query = select(Delivery).order_by(Delivery.id.desc())
    if location_id is not None:
        query = query.where(Delivery.location_id == location_id)
    if po_id is not None:
        query = query.where(Delivery.po_id == po_id)
    if status is not None:
        query = query.where(Delivery.status == status)
    return [_delivery_out(d) for d in db.execute(query).scalars().all()]


@router.get("/{delivery_id}")
def get_delivery(delivery_id: int, db: Session = Depends(get_db), actor: Actor = Depends(get_actor)):
    return {"data": _delivery_out(deliveries.get_delivery(db, delivery_id))}


@router.post("", status_code=201)
def create_delivery(
    payload: DeliveryCreate,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor),
    perms: Permissions = Depends(get_permissions),
    notifier: Notifier = Depends(get_notifier),
    price_lookup: PeriodPriceLookup = Depends(get_price_lookup),
):
    outcome = deliveries.create_delivery(db, actor, perms, payload, price_lookup)
    return _outcome_response(db, notifier, outcome)


@router.patch("/{delivery_id}")
def update_delivery(
    delivery_id: int,
    payload: DeliveryUpdate,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor),
    perms: Permissions = Depends(get_permissions),
    notifier: Notifier = Depends(get_notifier),
):
    outcome = deliveries.update_delivery(db, actor, perms, delivery_id, payload)
    return _outcome_response(db, notifier, outcome)


@router.delete("/{delivery_id}")
def delete_delivery(
    delivery_id: int,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor),
    perms: Permissions = Depends(get_permissions),
):
    deliveries.delete_delivery(db, actor, perms, delivery_id)
    db.commit()
    return {"message": "Delivery deleted successfully"}


@router.post("/{delivery_id}/send-for-approval")
def send_for_approval(
    delivery_id: int,
    payload: SendForApproval,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor),
    perms: Permissions = Depends(get_permissions),
    notifier: Notifier = Depends(get_notifier),
):
    outcome = deliveries.send_for_approval(db, actor, perms, delivery_id, payload)
    return _outcome_response(db, notifier, outcome)


@router.post("/{delivery_id}/approve-over-delivery")
def approve_over_delivery(
    delivery_id: int,
    payload: OverDeliveryApprove,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor),
    perms: Permissions = Depends(get_permissions),
    notifier: Notifier = Depends(get_notifier),
):
    outcome = deliveries.approve_over_delivery(db, actor, perms, delivery_id, payload)
    return _outcome_response(db, notifier, outcome)


@router.post("/{delivery_id}/reject-over-delivery")
def reject_over_delivery(
    delivery_id: int,
    payload: OverDeliveryReject,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor),
    perms: Permissions = Depends(get_permissions),
    notifier: Notifier = Depends(get_notifier),
):
    outcome = deliveries.reject_over_delivery(db, actor, perms, delivery_id, payload)
    return _outcome_response(db, notifier, outcome)


@router.post("/{delivery_id}/post")
def post_delivery(
    delivery_id: int,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor),
    perms: Permissions = Depends(get_permissions),
    notifier: Notifier = Depends(get_notifier),
    price_lookup: PeriodPriceLookup = Depends(get_price_lookup),
):
    outcome = deliveries.post_delivery(db, actor, perms, delivery_id, price_lookup)
    return _outcome_response(db, notifier, outcome)
