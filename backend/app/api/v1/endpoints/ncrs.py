from __future__ import annotations

from fastapi import APIRouter, Depends
from sqlalchemy import select
from sqlalchemy.orm import Session

from backend.app.api.deps import get_actor, get_db, get_permissions
from backend.app.db.models.models_v1 import NCR
from backend.app.db.models.core_types import NCRStatus, NCRType
from backend.app.schemas.ncr import NCRCreate, NCRTransition
from backend.services import variance
from backend.services.access import Actor, Permissions

router = APIRouter(prefix="/ncrs")


def _ncr_out(n: NCR) -> dict:
    return {
        "id": n.id,
        "ncr_no": n.ncr_no,
        "location_id": n.location_id,
        "type": n.type,
        "auto_generated": n.auto_generated,
        "delivery_id": n.delivery_id,
        "delivery_line_id": n.delivery_line_id,
        "item_id": n.item_id,
        "reason": n.reason,
        "quantity": n.quantity,
        "value": n.value,
        "status": n.status,
        "resolution_type": n.resolution_type,
        "financial_impact": n.financial_impact,
        "resolution_notes": n.resolution_notes,
        "resolved_at": n.resolved_at,
        "resolved_by": n.resolved_by,
        "created_by": n.created_by,
        "created_at": n.created_at,
    }


@router.get("")
def list_ncrs(
    location_id: int | None = None,
    delivery_id: int | None = None,
    status: NCRStatus | None = None,
    type: NCRType | None = None,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor),
):
    query = select(NCR).order_by(NCR.id.desc())
    if location_id is not None:
        query = query.where(NCR.location_id == location_id)
    if delivery_id is not None:
        query = query.where(NCR.delivery_id == delivery_id)
    if status is not None:
        query = query.where(NCR.status == status)
    if type is not None:
        query = query.where(NCR.type == type)
    return [_ncr_out(n) for n in db.execute(query).scalars().all()]


@router.get("/{ncr_id}")
def get_ncr(ncr_id: int, db: Session = Depends(get_db), actor: Actor = Depends(get_actor)):
    return {"data": _ncr_out(variance.get_ncr(db, ncr_id))}


@router.post("", status_code=201)
def create_ncr(
    payload: NCRCreate,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor),
    perms: Permissions = Depends(get_permissions),
):
    ncr = variance.create_manual_ncr(db, actor, perms, payload)
    db.commit()
    return {"data": _ncr_out(ncr), "message": "NCR created successfully"}


@router.patch("/{ncr_id}/status")
def transition_ncr(
    ncr_id: int,
    payload: NCRTransition,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor),
    perms: Permissions = Depends(get_permissions),
):
    ncr = variance.transition_ncr(db, actor, perms, ncr_id, payload)
    db.commit()
    return {"data": _ncr_out(ncr), "message": f"NCR moved to {ncr.status.value}"}
