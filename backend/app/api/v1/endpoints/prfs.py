from __future__ import annotations

from fastapi import APIRouter, Depends
from sqlalchemy import select
from sqlalchemy.orm import Session

from backend.app.api.deps import get_actor, get_db, get_notifier, get_permissions
from backend.app.db.models.models_v1 import PRF
from backend.app.db.models.core_types import PRFStatus
from backend.app.schemas.prf import PRFCreate, PRFReject, PRFUpdate
from backend.services import procurement
from backend.services.access import Actor, Permissions
from backend.services.errors import EntityNotFound
from backend.services.notifications import Notifier, notification_meta, publish

router = APIRouter(prefix="/prfs")


def _prf_out(prf: PRF) -> dict:
    return {
        "id": prf.id,
        "prf_no": prf.prf_no,
        "location_id": prf.location_id,
        "period_id": prf.period_id,
        "requested_by": prf.requested_by,
        "status": prf.status,
        "project_name": prf.project_name,
        "notes": prf.notes,
        "total_value": prf.total_value,
        "submitted_at": prf.submitted_at,
        "approved_at": prf.approved_at,
        "approved_by": prf.approved_by,
        "rejected_at": prf.rejected_at,
        "rejected_by": prf.rejected_by,
        "rejection_reason": prf.rejection_reason,
        "cloned_from_id": prf.cloned_from_id,
        "created_at": prf.created_at,
        "lines": [
            {
                "id": l.id,
                "line_no": l.line_no,
                "item_id": l.item_id,
                "description": l.description,
                "unit": l.unit,
                "quantity": l.quantity,
                "estimated_price": l.estimated_price,
                "line_value": l.line_value,
            }
            for l in prf.lines
        ],
    }


def _transition_response(db: Session, notifier: Notifier, outcome: procurement.PRFOutcome) -> dict:
    db.commit()
    result = publish(notifier, outcome.notices)
    return {"data": _prf_out(outcome.prf), "message": outcome.message, **notification_meta(result)}


@router.get("")
def list_prfs(
    location_id: int | None = None,
    status: PRFStatus | None = None,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor),
):
    query = select(PRF).order_by(PRF.id.desc())
    if location_id is not None:
        query = query.where(PRF.location_id == location_id)
    if status is not None:
        query = query.where(PRF.status == status)
    return [_prf_out(p) for p in db.execute(query).scalars().all()]


@router.get("/{prf_id}")
def get_prf(prf_id: int, db: Session = Depends(get_db), actor: Actor = Depends(get_actor)):
    prf = db.get(PRF, prf_id)
    if not prf:
        raise EntityNotFound("prf", prf_id, "PRF not found")
    return {"data": _prf_out(prf)}


@router.post("", status_code=201)
def create_prf(
    payload: PRFCreate,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor),
    perms: Permissions = Depends(get_permissions),
):
    prf = procurement.create_prf(db, actor, perms, payload)
    db.commit()
    return {"data": _prf_out(prf), "message": "PRF created successfully"}


@router.patch("/{prf_id}")
def update_prf(
    prf_id: int,
    payload: PRFUpdate,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor),
):
    prf = procurement.update_prf(db, actor, prf_id, payload)
    db.commit()
    return {"data": _prf_out(prf), "message": "PRF updated successfully"}


@router.delete("/{prf_id}")
def delete_prf(prf_id: int, db: Session = Depends(get_db), actor: Actor = Depends(get_actor)):
    procurement.delete_prf(db, actor, prf_id)
    db.commit()
    return {"message": "PRF deleted successfully"}


@router.post("/{prf_id}/submit")
def submit_prf(
    prf_id: int,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor),
    notifier: Notifier = Depends(get_notifier),
):
    return _transition_response(db, notifier, procurement.submit_prf(db, actor, prf_id))


@router.post("/{prf_id}/approve")
def approve_prf(
    prf_id: int,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor),
    perms: Permissions = Depends(get_permissions),
    notifier: Notifier = Depends(get_notifier),
):
    return _transition_response(db, notifier, procurement.approve_prf(db, actor, perms, prf_id))


@router.post("/{prf_id}/reject")
def reject_prf(
    prf_id: int,
    payload: PRFReject,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor),
    perms: Permissions = Depends(get_permissions),
    notifier: Notifier = Depends(get_notifier),
):
    return _transition_response(db, notifier, procurement.reject_prf(db, actor, perms, prf_id, payload))


@router.post("/{prf_id}/clone", status_code=201)
def clone_prf(
    prf_id: int,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor),
    perms: Permissions = Depends(get_permissions),
):
    prf = procurement.clone_prf(db, actor, perms, prf_id)
    db.commit()
    return {"data": _prf_out(prf), "message": f"PRF cloned as {prf.prf_no}"}
