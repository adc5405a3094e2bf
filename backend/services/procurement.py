"""
Procurement service : cycle de vie PRF et PO.

PRF : DRAFT -> PENDING -> APPROVED | REJECTED ; APPROVED -> CLOSED (quand son PO ferme)
PO  : OPEN -> CLOSED (auto quand tout est livré, ou manuel par superviseur/admin)

Les fonctions ne committent pas : l'appelant committe, puis publie les
notifications renvoyées (backend.services.notifications.publish).
Toute la logique de quantité livrée est dans backend.services.ledger.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal, ROUND_HALF_UP
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from backend.app.db.models.models_v1 import (
    Delivery,
    Item,
    Location,
    Period,
    PRF,
    PRFLine,
    PurchaseOrder,
    PurchaseOrderLine,
    Supplier,
)
from backend.app.db.models.core_types import PeriodStatus, POStatus, PRFStatus
from backend.app.schemas.po import POClose, POCreate, POLineInput, POUpdate
from backend.app.schemas.prf import PRFCreate, PRFLineInput, PRFReject, PRFUpdate
from backend.services import ledger
from backend.services.access import Actor, Permissions, require
from backend.services.errors import (
    EntityNotFound,
    InvalidStateTransition,
    PermissionDenied,
    RequiredFieldMissing,
    ValidationError,
)
from backend.services.notifications import (
    EventType,
    Notice,
    approver_emails,
    document_url,
    user_email,
)
from backend.services.numbering import next_document_number

logger = logging.getLogger(__name__)

CENTS = Decimal("0.01")
ZERO = Decimal("0")


@dataclass
class PRFOutcome:
    prf: PRF
    message: str
    notices: list[Notice] = field(default_factory=list)


@dataclass
class POCloseOutcome:
    po: PurchaseOrder
    prf_closed: bool
    fulfillment_summary: dict[str, Any] | None
    notices: list[Notice] = field(default_factory=list)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _money(value: Decimal) -> Decimal:
    return Decimal(value).quantize(CENTS, rounding=ROUND_HALF_UP)


def _stamp(actor: Actor, when: datetime) -> str:
    return f"{actor.username} on {when.strftime('%d %b %Y')} at {when.strftime('%H:%M')}"


def _append_note(existing: str | None, note: str) -> str:
    return f"{existing}\n\n{note}" if existing else note


# ---------- LOADERS ----------
def _get_prf(db: Session, prf_id: int, *, lock: bool = False) -> PRF:
    query = select(PRF).where(PRF.id == prf_id)
    if lock:
        query = query.with_for_update().execution_options(populate_existing=True)
    prf = db.execute(query).scalar_one_or_none()
    if not prf:
        raise EntityNotFound("prf", prf_id, "PRF not found")
    return prf


def get_purchase_order(db: Session, po_id: int) -> PurchaseOrder:
    po = db.get(PurchaseOrder, po_id)
    if not po:
        raise EntityNotFound("purchase_order", po_id, "PO not found")
    return po


def _check_items(db: Session, item_ids: list[int | None]) -> None:
    for item_id in {i for i in item_ids if i is not None}:
        if not db.get(Item, item_id):
            raise ValidationError(f"Invalid item_id {item_id}", {"item_id": item_id})


def _open_period(db: Session, period_id: int | None = None) -> Period:
    if period_id is not None:
        period = db.get(Period, period_id)
        if not period:
            raise ValidationError("Invalid period_id", {"period_id": period_id})
        if period.status != PeriodStatus.open:
            raise ValidationError("Cannot use a period that is not open", {"period_id": period_id})
        return period

    period = (
        db.execute(select(Period).where(Period.status == PeriodStatus.open).order_by(Period.start_date.desc()))
        .scalars()
        .first()
    )
    if not period:
        raise ValidationError("No open period available")
    return period


# ---------- PRF ----------
def _build_prf_lines(lines: list[PRFLineInput]) -> tuple[list[PRFLine], Decimal]:
    built = []
    total = ZERO
    for n, ln in enumerate(lines, start=1):
        value = _money(ln.quantity * ln.estimated_price)
        total += value
        built.append(
            PRFLine(
                line_no=n,
                item_id=ln.item_id,
                description=ln.description,
                unit=ln.unit,
                quantity=ln.quantity,
                estimated_price=ln.estimated_price,
                line_value=value,
            )
        )
    return built, total


def create_prf(db: Session, actor: Actor, perms: Permissions, payload: PRFCreate) -> PRF:
    require(perms.can_create_prf(), actor, "create PRFs")

    if not db.get(Location, payload.location_id):
        raise ValidationError("Invalid location_id", {"location_id": payload.location_id})
    period = _open_period(db, payload.period_id)
    _check_items(db, [ln.item_id for ln in payload.lines])

    lines, total = _build_prf_lines(payload.lines)
    prf = PRF(
        prf_no=next_document_number(db, "PRF", payload.location_id),
        location_id=payload.location_id,
        period_id=period.id,
        requested_by=actor.id,
        status=PRFStatus.draft,
        project_name=payload.project_name,
        notes=payload.notes,
        total_value=total,
        lines=lines,
    )
    db.add(prf)
    ledger.flush_or_conflict(db, f"PRF {prf.prf_no}")
    logger.info("PRF %s created by %s", prf.prf_no, actor.username)
    return prf


def _editable_prf(db: Session, actor: Actor, prf_id: int) -> PRF:
    prf = _get_prf(db, prf_id, lock=True)
    if prf.requested_by != actor.id:
        raise PermissionDenied("Only the requester can modify this PRF", {"prf_id": prf_id})
    if prf.status != PRFStatus.draft:
        raise InvalidStateTransition("prf", prf.status, PRFStatus.draft, "Only DRAFT PRFs can be modified")
    return prf


def update_prf(db: Session, actor: Actor, prf_id: int, payload: PRFUpdate) -> PRF:
    prf = _editable_prf(db, actor, prf_id)

    fields = payload.model_dump(exclude_unset=True, exclude={"lines"})
    for name, value in fields.items():
        setattr(prf, name, value)

    if payload.lines is not None:
        _check_items(db, [ln.item_id for ln in payload.lines])
        lines, total = _build_prf_lines(payload.lines)
        # remplacement complet des lignes
        prf.lines.clear()
        db.flush()
        prf.lines.extend(lines)
        prf.total_value = total

    db.flush()
    return prf


def delete_prf(db: Session, actor: Actor, prf_id: int) -> None:
    prf = _editable_prf(db, actor, prf_id)
    db.delete(prf)
    db.flush()
    logger.info("PRF %s deleted by %s", prf.prf_no, actor.username)


def submit_prf(db: Session, actor: Actor, prf_id: int) -> PRFOutcome:
    prf = _get_prf(db, prf_id, lock=True)
    if prf.requested_by != actor.id:
        raise PermissionDenied("Only the requester can submit this PRF", {"prf_id": prf_id})
    if prf.status != PRFStatus.draft:
        raise InvalidStateTransition("prf", prf.status, PRFStatus.pending)
    if not prf.lines:
        raise ValidationError("A PRF needs at least one line to be submitted", {"prf_id": prf_id})

    prf.status = PRFStatus.pending
    prf.submitted_at = _now()
    db.flush()
    logger.info("PRF %s submitted by %s", prf.prf_no, actor.username)

    notice = Notice(
        EventType.prf_submitted,
        approver_emails(db),
        {
            "document_no": prf.prf_no,
            "requester": actor.username,
            "total_value": str(prf.total_value),
            "url": document_url(f"orders/prfs/{prf.id}"),
        },
    )
    return PRFOutcome(prf, "PRF submitted for approval", [notice])


def approve_prf(db: Session, actor: Actor, perms: Permissions, prf_id: int) -> PRFOutcome:
    require(perms.can_approve_prf(), actor, "approve PRFs")

    prf = _get_prf(db, prf_id, lock=True)
    if prf.status != PRFStatus.pending:
        raise InvalidStateTransition("prf", prf.status, PRFStatus.approved)

    prf.status = PRFStatus.approved
    prf.approved_by = actor.id
    prf.approved_at = _now()
    db.flush()
    logger.info("PRF %s approved by %s", prf.prf_no, actor.username)

    notice = Notice(
        EventType.prf_approved,
        user_email(db, prf.requested_by),
        {
            "document_no": prf.prf_no,
            "approver": actor.username,
            "url": document_url(f"orders/prfs/{prf.id}"),
        },
    )
    return PRFOutcome(prf, "PRF approved successfully", [notice])


def reject_prf(db: Session, actor: Actor, perms: Permissions, prf_id: int, payload: PRFReject) -> PRFOutcome:
    require(perms.can_approve_prf(), actor, "reject PRFs")

    reason = (payload.reason or "").strip()
    if not reason:
        raise RequiredFieldMissing("reason", "A rejection reason is required")

    prf = _get_prf(db, prf_id, lock=True)
    if prf.status != PRFStatus.pending:
        raise InvalidStateTransition("prf", prf.status, PRFStatus.rejected)

    prf.status = PRFStatus.rejected
    prf.rejected_by = actor.id
    prf.rejected_at = _now()
    prf.rejection_reason = reason
    db.flush()
    logger.info("PRF %s rejected by %s", prf.prf_no, actor.username)

    notice = Notice(
        EventType.prf_rejected,
        user_email(db, prf.requested_by),
        {
            "document_no": prf.prf_no,
            "rejected_by": actor.username,
            "reason": reason,
            "url": document_url(f"orders/prfs/{prf.id}"),
        },
    )
    return PRFOutcome(prf, "PRF rejected", [notice])


def clone_prf(db: Session, actor: Actor, perms: Permissions, prf_id: int) -> PRF:
    """Copie (pas une transition) : nouveau PRF DRAFT appartenant à l'acteur."""
    require(perms.can_create_prf(), actor, "clone PRFs")

    source = _get_prf(db, prf_id)
    if source.period.status == PeriodStatus.open:
        period = source.period
    else:
        period = _open_period(db)

    lines, total = _build_prf_lines(
        [
            PRFLineInput(
                item_id=ln.item_id,
                description=ln.description,
                unit=ln.unit,
                quantity=ln.quantity,
                estimated_price=ln.estimated_price,
            )
            for ln in source.lines
        ]
    )
    clone = PRF(
        prf_no=next_document_number(db, "PRF", source.location_id),
        location_id=source.location_id,
        period_id=period.id,
        requested_by=actor.id,
        status=PRFStatus.draft,
        project_name=source.project_name,
        notes=source.notes,
        total_value=total,
        cloned_from_id=source.id,
        lines=lines,
    )
    db.add(clone)
    ledger.flush_or_conflict(db, f"PRF {clone.prf_no}")
    logger.info("PRF %s cloned from %s by %s", clone.prf_no, source.prf_no, actor.username)
    return clone


# ---------- PO ----------
def compute_line_amounts(line: POLineInput) -> dict[str, Decimal]:
    gross = line.quantity * line.unit_price
    discount = gross * line.discount_percent / 100
    before_vat = gross - discount
    vat = before_vat * line.vat_percent / 100
    return {
        "gross": _money(gross),
        "discount": _money(discount),
        "total_before_vat": _money(before_vat),
        "vat_amount": _money(vat),
        "total_after_vat": _money(before_vat + vat),
    }


def _build_po_lines(lines: list[POLineInput]) -> tuple[list[PurchaseOrderLine], dict[str, Decimal]]:
    built = []
    totals = {
        "total_before_discount": ZERO,
        "total_discount": ZERO,
        "total_after_discount": ZERO,
        "total_vat": ZERO,
        "total_amount": ZERO,
    }
    for n, ln in enumerate(lines, start=1):
        amounts = compute_line_amounts(ln)
        totals["total_before_discount"] += amounts["gross"]
        totals["total_discount"] += amounts["discount"]
        totals["total_after_discount"] += amounts["total_before_vat"]
        totals["total_vat"] += amounts["vat_amount"]
        totals["total_amount"] += amounts["total_after_vat"]
        built.append(
            PurchaseOrderLine(
                line_no=n,
                item_id=ln.item_id,
                item_description=ln.item_description,
                unit=ln.unit,
                quantity=ln.quantity,
                delivered_qty=ZERO,
                unit_price=ln.unit_price,
                discount_percent=ln.discount_percent,
                total_before_vat=amounts["total_before_vat"],
                vat_percent=ln.vat_percent,
                vat_amount=amounts["vat_amount"],
                total_after_vat=amounts["total_after_vat"],
            )
        )
    return built, {k: _money(v) for k, v in totals.items()}


def create_po(db: Session, actor: Actor, perms: Permissions, payload: POCreate) -> PurchaseOrder:
    require(perms.can_create_po(), actor, "create purchase orders")

    if not db.get(Supplier, payload.supplier_id):
        raise ValidationError("Invalid supplier_id", {"supplier_id": payload.supplier_id})
    _check_items(db, [ln.item_id for ln in payload.lines])

    prf = None
    if payload.prf_id is not None:
        prf = _get_prf(db, payload.prf_id, lock=True)
        if prf.status != PRFStatus.approved:
            raise InvalidStateTransition(
                "prf", prf.status, "ORDERED", "A PO can only be created from an APPROVED PRF"
            )
        if db.execute(select(PurchaseOrder.id).where(PurchaseOrder.prf_id == prf.id)).first():
            raise InvalidStateTransition(
                "prf", prf.status, "ORDERED", f"PRF {prf.prf_no} already has a purchase order"
            )
        location_id = prf.location_id
    else:
        if payload.location_id is None:
            raise RequiredFieldMissing("location_id", "location_id is required for a PO without PRF")
        if not db.get(Location, payload.location_id):
            raise ValidationError("Invalid location_id", {"location_id": payload.location_id})
        location_id = payload.location_id

    lines, totals = _build_po_lines(payload.lines)
    po = PurchaseOrder(
        po_no=next_document_number(db, "PO", location_id),
        prf_id=prf.id if prf else None,
        supplier_id=payload.supplier_id,
        location_id=location_id,
        status=POStatus.open,
        payment_terms=payload.payment_terms,
        delivery_terms=payload.delivery_terms,
        notes=payload.notes,
        created_by=actor.id,
        lines=lines,
        **totals,
    )
    db.add(po)
    ledger.flush_or_conflict(db, f"purchase order {po.po_no}")
    logger.info("PO %s created by %s (prf=%s)", po.po_no, actor.username, prf.prf_no if prf else None)
    return po


def update_po(db: Session, actor: Actor, perms: Permissions, po_id: int, payload: POUpdate) -> PurchaseOrder:
    require(perms.can_create_po(), actor, "update purchase orders")

    po = ledger.lock_purchase_order(db, po_id)
    if po.status != POStatus.open:
        raise InvalidStateTransition("purchase_order", po.status, POStatus.open, "Cannot update a closed PO")

    if payload.supplier_id is not None and not db.get(Supplier, payload.supplier_id):
        raise ValidationError("Invalid supplier_id", {"supplier_id": payload.supplier_id})

    fields = payload.model_dump(exclude_unset=True, exclude={"lines"})
    for name, value in fields.items():
        if name == "supplier_id" and value is None:
            continue
        setattr(po, name, value)

    if payload.lines is not None:
        has_deliveries = db.execute(select(Delivery.id).where(Delivery.po_id == po.id).limit(1)).first()
        if has_deliveries:
            raise ValidationError(
                "Lines cannot be replaced once deliveries exist for this PO",
                {"po_id": po.id},
            )
        _check_items(db, [ln.item_id for ln in payload.lines])
        lines, totals = _build_po_lines(payload.lines)
        po.lines.clear()
        db.flush()
        po.lines.extend(lines)
        for name, value in totals.items():
            setattr(po, name, value)

    ledger.flush_or_conflict(db, f"purchase order {po.po_no}")
    return po


def fulfillment_summary(po_lines: list[PurchaseOrderLine]) -> dict[str, Any]:
    lines = []
    total_ordered = ZERO
    total_delivered = ZERO
    for line in po_lines:
        ordered = Decimal(line.quantity)
        delivered = Decimal(line.delivered_qty or 0)
        total_ordered += ordered
        total_delivered += delivered
        lines.append(
            {
                "po_line_id": line.id,
                "item_description": line.item_description,
                "unit": line.unit,
                "ordered_qty": ordered,
                "delivered_qty": delivered,
                "remaining_qty": line.remaining_qty,
                "is_fulfilled": line.remaining_qty == 0,
            }
        )

    percent = 0
    if total_ordered > 0:
        percent = int((total_delivered / total_ordered * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))

    return {
        "total_ordered": total_ordered,
        "total_delivered": total_delivered,
        "fulfillment_percent": percent,
        "has_unfulfilled_items": any(not l["is_fulfilled"] for l in lines),
        "lines": lines,
    }


def _close_linked_prf(po: PurchaseOrder) -> bool:
    # PRF APPROVED -> CLOSED dans la même transaction que le PO
    prf = po.prf
    if prf is not None and prf.status == PRFStatus.approved:
        prf.status = PRFStatus.closed
        logger.info("PRF %s closed with PO %s", prf.prf_no, po.po_no)
        return True
    return False


def _po_closed_notice(db: Session, po: PurchaseOrder, actor: Actor, summary: dict[str, Any], reason: str | None) -> Notice:
    recipients = user_email(db, po.prf.requested_by) if po.prf else []
    return Notice(
        EventType.po_closed,
        recipients,
        {
            "document_no": po.po_no,
            "prf_no": po.prf.prf_no if po.prf else None,
            "closed_by": actor.username,
            "fulfillment_percent": summary["fulfillment_percent"],
            "closure_reason": reason,
            "url": document_url(f"orders/pos/{po.id}"),
        },
    )


def close_po(db: Session, actor: Actor, perms: Permissions, po_id: int, payload: POClose) -> POCloseOutcome:
    """
    Clôture manuelle.

    Une raison est obligatoire dès qu'il reste du non-livré (y compris
    un PO sans aucune livraison). La note de clôture est ajoutée aux notes
    du PO avec l'acteur et l'horodatage.
    """
    require(perms.can_close_po(), actor, "close purchase orders")

    po = ledger.lock_purchase_order(db, po_id)
    if po.status != POStatus.open:
        raise InvalidStateTransition("purchase_order", po.status, POStatus.closed, "This PO is already closed")

    po_lines = ledger.lock_po_lines(db, po.id)
    summary = fulfillment_summary(po_lines)

    reason = (payload.closure_reason or "").strip()
    if summary["has_unfulfilled_items"] and not reason:
        raise RequiredFieldMissing(
            "closure_reason",
            "A closure reason is required when closing a PO with unfulfilled quantities",
            {
                "fulfillment_percent": summary["fulfillment_percent"],
                "unfulfilled_items": [
                    {
                        "po_line_id": l["po_line_id"],
                        "item_description": l["item_description"],
                        "remaining_qty": str(l["remaining_qty"]),
                    }
                    for l in summary["lines"]
                    if not l["is_fulfilled"]
                ],
            },
        )

    now = _now()
    if reason:
        note = f"[EARLY CLOSURE - {summary['fulfillment_percent']}% fulfilled]\nClosed by {_stamp(actor, now)}\nReason: {reason}"
    else:
        note = f"[CLOSED - 100% fulfilled]\nClosed by {_stamp(actor, now)}"
    if payload.notes and payload.notes.strip():
        note += f"\nAdditional notes: {payload.notes.strip()}"

    po.notes = _append_note(po.notes, note)
    po.status = POStatus.closed
    po.closed_at = now
    po.closed_by = actor.id
    prf_closed = _close_linked_prf(po)

    ledger.flush_or_conflict(db, f"purchase order {po.po_no}")
    logger.info("PO %s closed manually by %s (%s%%)", po.po_no, actor.username, summary["fulfillment_percent"])

    return POCloseOutcome(
        po=po,
        prf_closed=prf_closed,
        fulfillment_summary=summary,
        notices=[_po_closed_notice(db, po, actor, summary, reason or None)],
    )


def auto_close_if_fulfilled(
    db: Session,
    actor: Actor,
    po: PurchaseOrder,
    po_lines: list[PurchaseOrderLine],
) -> tuple[bool, bool, list[Notice]]:
    """
    Évalué juste après ledger.apply_delivery(), dans la même transaction.
    Retourne (po_auto_closed, prf_closed, notices).
    """
    if po.status != POStatus.open or not ledger.is_fully_delivered(po_lines):
        return False, False, []

    now = _now()
    po.notes = _append_note(po.notes, f"[AUTO-CLOSED - 100% fulfilled]\nClosed on delivery posted by {_stamp(actor, now)}")
    po.status = POStatus.closed
    po.closed_at = now
    po.closed_by = actor.id
    prf_closed = _close_linked_prf(po)
    logger.info("PO %s auto-closed (all lines delivered)", po.po_no)

    summary = fulfillment_summary(po_lines)
    return True, prf_closed, [_po_closed_notice(db, po, actor, summary, None)]


def list_open_pos(db: Session, location_id: int | None = None) -> list[PurchaseOrder]:
    """PO encore ouverts : seuls candidats pour une nouvelle livraison."""
    query = select(PurchaseOrder).where(PurchaseOrder.status == POStatus.open)
    if location_id is not None:
        query = query.where(PurchaseOrder.location_id == location_id)
    return list(db.execute(query.order_by(PurchaseOrder.id.desc())).scalars().all())
