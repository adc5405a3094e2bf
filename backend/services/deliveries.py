"""
Deliveries : cycle de vie + workflow de sur-livraison + post.

    DRAFT ──post──────────────────────────────> POSTED
      │  └─send_for_approval (pending_approval)
      │        ├─approve_over_delivery ──> DRAFT (lignes approuvées)
      │        └─reject_over_delivery ───> REJECTED  (verrouillé, définitif)

Une livraison rejetée ne peut plus JAMAIS être modifiée (DeliveryLocked),
même par un admin : il faut en créer une nouvelle.

post_delivery() est un script transactionnel unique, sous-effets dans l'ordre :
    1. verrous + re-validation (verrou, statut, facture, période, PO ouvert,
       sur-livraisons approuvées, sur le ledger courant)
    2. ledger.apply_delivery           (delivered_qty)
    3. inventory.receive_into_stock    (on_hand, WAC)
    4. statut POSTED
    5. auto-clôture PO -> PRF
    6. NCR d'écart de prix              (SAVEPOINT, best effort)
Les notifications sont renvoyées à l'appelant, envoyées après commit.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal, ROUND_HALF_UP

from sqlalchemy import select
from sqlalchemy.orm import Session

from backend.app.db.models.models_v1 import (
    Delivery,
    DeliveryLine,
    NCR,
    Location,
    Period,
    PurchaseOrderLine,
)
from backend.app.db.models.core_types import DeliveryStatus, PeriodStatus, POStatus
from backend.app.schemas.delivery import (
    DeliveryCreate,
    DeliveryLineInput,
    DeliveryUpdate,
    OverDeliveryApprove,
    OverDeliveryReject,
    SendForApproval,
)
from backend.services import inventory, ledger
from backend.services.access import Actor, Permissions, require
from backend.services.errors import (
    AlreadyPosted,
    DeliveryLocked,
    DuplicateInvoice,
    EntityNotFound,
    InvalidStateTransition,
    OverDeliveryNotApproved,
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
from backend.services.procurement import auto_close_if_fulfilled
from backend.services.variance import (
    PeriodPriceLookup,
    PriceVariance,
    check_price_variance,
    raise_variance_ncrs,
)

logger = logging.getLogger(__name__)

CENTS = Decimal("0.01")


@dataclass
class DeliveryOutcome:
    delivery: Delivery
    message: str
    po_auto_closed: bool = False
    prf_closed: bool = False
    ncrs: list[NCR] = field(default_factory=list)
    over_delivery: list[ledger.LineDemand] = field(default_factory=list)
    notices: list[Notice] = field(default_factory=list)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _clean(value: str | None) -> str | None:
    value = (value or "").strip()
    return value or None


# ---------- LOADERS / GUARDS ----------
def get_delivery(db: Session, delivery_id: int, *, lock: bool = False) -> Delivery:
    query = select(Delivery).where(Delivery.id == delivery_id)
    if lock:
        query = query.with_for_update().execution_options(populate_existing=True)
    delivery = db.execute(query).scalar_one_or_none()
    if not delivery:
        raise EntityNotFound("delivery", delivery_id, "Delivery not found")
    return delivery


def _ensure_mutable(delivery: Delivery) -> None:
    # Le verrou de rejet passe avant tout, y compris les droits
    if delivery.over_delivery_rejected or delivery.status == DeliveryStatus.rejected:
        raise DeliveryLocked(delivery.delivery_no)
    if delivery.status != DeliveryStatus.draft:
        raise InvalidStateTransition(
            "delivery", delivery.status, DeliveryStatus.draft, "Posted deliveries cannot be modified"
        )


def _ensure_editor(actor: Actor, perms: Permissions, delivery: Delivery) -> None:
    require(perms.can_post_deliveries(delivery.location_id), actor, "manage deliveries for this location")
    if delivery.created_by != actor.id and not perms.can_approve_over_delivery():
        raise PermissionDenied("You can only edit drafts you created", {"delivery_id": delivery.id})


def _check_invoice(db: Session, invoice_no: str | None, exclude_id: int | None = None) -> None:
    if not invoice_no:
        return
    query = select(Delivery.id).where(Delivery.invoice_no == invoice_no)
    if exclude_id is not None:
        query = query.where(Delivery.id != exclude_id)
    if db.execute(query).first():
        raise DuplicateInvoice(
            "Invoice number already exists for another delivery",
            {"invoice_no": invoice_no},
        )


def _open_po_with_lines(db: Session, po_id: int, action: str):
    po = ledger.lock_purchase_order(db, po_id)
    if po.status != POStatus.open:
        raise InvalidStateTransition(
            "purchase_order",
            po.status,
            POStatus.open,
            f"Cannot {action} a delivery for a {po.status.value} purchase order",
        )
    return po, ledger.lock_po_lines(db, po.id)


# ---------- LINES ----------
def _line_value(quantity: Decimal, unit_price: Decimal) -> Decimal:
    return (Decimal(quantity) * Decimal(unit_price)).quantize(CENTS, rounding=ROUND_HALF_UP)


def _build_lines(
    po_id: int,
    po_lines: list[PurchaseOrderLine],
    inputs: list[DeliveryLineInput],
    previous: list[DeliveryLine] | None = None,
) -> list[DeliveryLine]:
    """
    Résout chaque ligne vers sa ligne de PO (LineNotFound sinon).
    Une approbation existante ne survit que si la ligne de PO et la quantité
    sont inchangées.
    """
    kept = {
        (pl.po_line_id, Decimal(pl.quantity)): pl.approved_by
        for pl in previous or []
        if pl.over_delivery_approved
    }

    lines = []
    for ln in inputs:
        po_line = ledger.resolve_po_line(po_id, po_lines, ln.po_line_id, ln.item_id)
        approved_by = kept.get((po_line.id, Decimal(ln.quantity)))
        lines.append(
            DeliveryLine(
                po_line_id=po_line.id,
                item_id=ln.item_id if ln.item_id is not None else po_line.item_id,
                quantity=ln.quantity,
                unit_price=ln.unit_price,
                price_variance=Decimal("0"),
                line_value=_line_value(ln.quantity, ln.unit_price),
                over_delivery_approved=approved_by is not None,
                approved_by=approved_by,
            )
        )
    return lines


def _evaluate_over_delivery(
    po_id: int,
    po_lines: list[PurchaseOrderLine],
    lines: list[DeliveryLine],
) -> list[ledger.LineDemand]:
    """Marque is_over_delivery sur chaque ligne, d'après le delivered_qty COURANT."""
    demands = ledger.compute_demands(
        po_id,
        po_lines,
        [(l.po_line_id, l.item_id, Decimal(l.quantity)) for l in lines],
    )
    over_ids = {d.po_line.id for d in demands if d.is_over_delivery}
    for l in lines:
        l.is_over_delivery = l.po_line_id in over_ids
    return [d for d in demands if d.is_over_delivery]


def _unapproved(lines: list[DeliveryLine]) -> list[DeliveryLine]:
    return [l for l in lines if l.is_over_delivery and not l.over_delivery_approved]


def _over_delivery_details(demands: list[ledger.LineDemand]) -> list[dict]:
    return [
        {
            "po_line_id": d.po_line.id,
            "item_description": d.po_line.item_description,
            "requested_qty": str(d.requested),
            "remaining_qty": str(d.remaining),
            "excess": str(d.excess),
        }
        for d in demands
    ]


def _refresh_totals(delivery: Delivery) -> None:
    delivery.total_amount = sum((Decimal(l.line_value) for l in delivery.lines), Decimal("0"))


# ---------- CREATE / UPDATE / DELETE ----------
def create_delivery(
    db: Session,
    actor: Actor,
    perms: Permissions,
    payload: DeliveryCreate,
    price_lookup: PeriodPriceLookup,
) -> DeliveryOutcome:
    po, po_lines = _open_po_with_lines(db, payload.po_id, "create")

    location_id = payload.location_id if payload.location_id is not None else po.location_id
    require(perms.can_post_deliveries(location_id), actor, "create deliveries for this location")
    if not db.get(Location, location_id):
        raise ValidationError("Invalid location_id", {"location_id": location_id})

    invoice_no = _clean(payload.invoice_no)
    _check_invoice(db, invoice_no)

    if payload.supplier_id is not None and payload.supplier_id != po.supplier_id:
        raise ValidationError("supplier_id does not match the purchase order supplier")

    lines = _build_lines(po.id, po_lines, payload.lines)
    over = _evaluate_over_delivery(po.id, po_lines, lines)

    delivery = Delivery(
        # date de création, pas delivery_date (qui peut être antidatée)
        delivery_no=next_document_number(db, "DLV", location_id),
        location_id=location_id,
        po_id=po.id,
        supplier_id=po.supplier_id,
        invoice_no=invoice_no,
        delivery_note=payload.delivery_note,
        delivery_date=payload.delivery_date,
        status=DeliveryStatus.draft,
        created_by=actor.id,
        lines=lines,
    )
    _refresh_totals(delivery)
    db.add(delivery)
    ledger.flush_or_conflict(db, f"delivery {delivery.delivery_no}")
    logger.info("Delivery %s created by %s against PO %s", delivery.delivery_no, actor.username, po.po_no)

    if payload.status == DeliveryStatus.posted.value:
        return post_delivery(db, actor, perms, delivery.id, price_lookup)

    outcome = DeliveryOutcome(delivery, "Delivery saved as draft", over_delivery=over)
    if payload.send_for_approval:
        outcome.notices.extend(_request_approval(db, actor, delivery, over))
        outcome.message = "Delivery sent for over-delivery approval"
    return outcome


def update_delivery(
    db: Session,
    actor: Actor,
    perms: Permissions,
    delivery_id: int,
    payload: DeliveryUpdate,
) -> DeliveryOutcome:
    delivery = get_delivery(db, delivery_id, lock=True)
    _ensure_mutable(delivery)
    _ensure_editor(actor, perms, delivery)

    if "invoice_no" in payload.model_fields_set:
        invoice_no = _clean(payload.invoice_no)
        _check_invoice(db, invoice_no, exclude_id=delivery.id)
        delivery.invoice_no = invoice_no
    if "delivery_note" in payload.model_fields_set:
        delivery.delivery_note = payload.delivery_note
    if payload.delivery_date is not None:
        delivery.delivery_date = payload.delivery_date

    po, po_lines = _open_po_with_lines(db, delivery.po_id, "update")

    if payload.lines is not None:
        lines = _build_lines(po.id, po_lines, payload.lines, previous=list(delivery.lines))
        delivery.lines.clear()
        db.flush()
        delivery.lines.extend(lines)
        _refresh_totals(delivery)

    over = _evaluate_over_delivery(po.id, po_lines, delivery.lines)
    if delivery.pending_approval and not _unapproved(delivery.lines):
        delivery.pending_approval = False

    ledger.flush_or_conflict(db, f"delivery {delivery.delivery_no}")
    return DeliveryOutcome(delivery, "Delivery updated", over_delivery=over)


def delete_delivery(db: Session, actor: Actor, perms: Permissions, delivery_id: int) -> None:
    delivery = get_delivery(db, delivery_id, lock=True)
    _ensure_mutable(delivery)
    _ensure_editor(actor, perms, delivery)

    db.delete(delivery)
    ledger.flush_or_conflict(db, f"delivery {delivery.delivery_no}")
    logger.info("Delivery %s deleted by %s", delivery.delivery_no, actor.username)


# ---------- OVER-DELIVERY WORKFLOW ----------
def _request_approval(
    db: Session,
    actor: Actor,
    delivery: Delivery,
    over: list[ledger.LineDemand],
) -> list[Notice]:
    if not delivery.invoice_no:
        raise RequiredFieldMissing("invoice_no", "Invoice number is required when sending for approval")
    if not _unapproved(delivery.lines):
        raise ValidationError(
            "Delivery has no over-delivery lines awaiting approval",
            {"delivery_no": delivery.delivery_no},
        )
    if delivery.pending_approval:
        raise InvalidStateTransition(
            "delivery", "PENDING_APPROVAL", "PENDING_APPROVAL", "Delivery is already awaiting approval"
        )

    delivery.pending_approval = True
    ledger.flush_or_conflict(db, f"delivery {delivery.delivery_no}")
    logger.info("Delivery %s sent for over-delivery approval by %s", delivery.delivery_no, actor.username)

    return [
        Notice(
            EventType.over_delivery_pending,
            approver_emails(db),
            {
                "document_no": delivery.delivery_no,
                "requested_by": actor.username,
                "lines": _over_delivery_details(over),
                "url": document_url(f"deliveries/{delivery.id}"),
            },
        )
    ]


def send_for_approval(
    db: Session,
    actor: Actor,
    perms: Permissions,
    delivery_id: int,
    payload: SendForApproval,
) -> DeliveryOutcome:
    delivery = get_delivery(db, delivery_id, lock=True)
    _ensure_mutable(delivery)
    _ensure_editor(actor, perms, delivery)

    invoice_no = _clean(payload.invoice_no)
    if invoice_no and invoice_no != delivery.invoice_no:
        _check_invoice(db, invoice_no, exclude_id=delivery.id)
        delivery.invoice_no = invoice_no

    po, po_lines = _open_po_with_lines(db, delivery.po_id, "approve")
    over = _evaluate_over_delivery(po.id, po_lines, delivery.lines)
    notices = _request_approval(db, actor, delivery, over)
    return DeliveryOutcome(delivery, "Delivery sent for over-delivery approval", over_delivery=over, notices=notices)


def approve_over_delivery(
    db: Session,
    actor: Actor,
    perms: Permissions,
    delivery_id: int,
    payload: OverDeliveryApprove,
) -> DeliveryOutcome:
    delivery = get_delivery(db, delivery_id, lock=True)
    _ensure_mutable(delivery)
    require(perms.can_approve_over_delivery(), actor, "approve over-deliveries")

    po, po_lines = _open_po_with_lines(db, delivery.po_id, "approve")
    over = _evaluate_over_delivery(po.id, po_lines, delivery.lines)

    pending = _unapproved(delivery.lines)
    if not pending:
        raise InvalidStateTransition(
            "delivery", delivery.status, "OVER_DELIVERY_APPROVED", "No over-delivery lines awaiting approval"
        )

    if payload.line_ids is None:
        to_approve = pending
    else:
        by_id = {l.id: l for l in pending}
        missing = [i for i in payload.line_ids if i not in by_id]
        if missing:
            raise EntityNotFound(
                "delivery_line",
                missing,
                "Some lines are not over-delivery lines awaiting approval",
            )
        to_approve = [by_id[i] for i in payload.line_ids]

    for line in to_approve:
        line.over_delivery_approved = True
        line.approved_by = actor.id

    # tant qu'une ligne reste non approuvée, la demande reste en attente
    delivery.pending_approval = bool(_unapproved(delivery.lines))
    ledger.flush_or_conflict(db, f"delivery {delivery.delivery_no}")
    logger.info(
        "Over-delivery approved by %s on %s (%d line(s))",
        actor.username,
        delivery.delivery_no,
        len(to_approve),
    )

    notice = Notice(
        EventType.over_delivery_approved,
        user_email(db, delivery.created_by),
        {
            "document_no": delivery.delivery_no,
            "approver": actor.username,
            "lines": _over_delivery_details(over),
            "url": document_url(f"deliveries/{delivery.id}"),
        },
    )
    return DeliveryOutcome(delivery, "Over-delivery approved", over_delivery=over, notices=[notice])


def reject_over_delivery(
    db: Session,
    actor: Actor,
    perms: Permissions,
    delivery_id: int,
    payload: OverDeliveryReject,
) -> DeliveryOutcome:
    """Rejet définitif : la livraison est verrouillée pour toujours."""
    delivery = get_delivery(db, delivery_id, lock=True)
    _ensure_mutable(delivery)
    require(perms.can_approve_over_delivery(), actor, "reject over-deliveries")

    reason = _clean(payload.reason)
    if not reason:
        raise RequiredFieldMissing("reason", "A rejection reason is required")

    if not any(l.is_over_delivery for l in delivery.lines):
        raise InvalidStateTransition(
            "delivery", delivery.status, DeliveryStatus.rejected, "Delivery has no over-delivery lines to reject"
        )

    note = f"[OVER-DELIVERY REJECTED] by {actor.username} on {_now().isoformat(timespec='seconds')}: {reason}"
    delivery.notes = f"{delivery.notes}\n{note}" if delivery.notes else note
    delivery.over_delivery_rejected = True
    delivery.pending_approval = False
    delivery.status = DeliveryStatus.rejected

    ledger.flush_or_conflict(db, f"delivery {delivery.delivery_no}")
    logger.info("Over-delivery rejected by %s on %s", actor.username, delivery.delivery_no)

    notice = Notice(
        EventType.over_delivery_rejected,
        user_email(db, delivery.created_by),
        {
            "document_no": delivery.delivery_no,
            "rejected_by": actor.username,
            "reason": reason,
            "url": document_url(f"deliveries/{delivery.id}"),
        },
    )
    return DeliveryOutcome(delivery, "Over-delivery rejected, delivery is now locked", notices=[notice])


# ---------- POST ----------
def _current_period(db: Session) -> Period:
    period = (
        db.execute(select(Period).where(Period.status == PeriodStatus.open).order_by(Period.start_date.desc()))
        .scalars()
        .first()
    )
    if not period:
        raise ValidationError("No open accounting period. Please open a period before posting deliveries.")
    return period


def post_delivery(
    db: Session,
    actor: Actor,
    perms: Permissions,
    delivery_id: int,
    price_lookup: PeriodPriceLookup,
) -> DeliveryOutcome:
    # 1. verrous + re-validation, tout dans la transaction du post
    delivery = get_delivery(db, delivery_id, lock=True)
    if delivery.over_delivery_rejected or delivery.status == DeliveryStatus.rejected:
        raise DeliveryLocked(delivery.delivery_no)
    if delivery.status != DeliveryStatus.draft:
        raise AlreadyPosted(delivery.delivery_no, delivery.status)
    _ensure_editor(actor, perms, delivery)

    if not delivery.invoice_no:
        raise RequiredFieldMissing("invoice_no", "Invoice number is required when posting a delivery")

    period = _current_period(db)
    po, po_lines = _open_po_with_lines(db, delivery.po_id, "post")

    over = _evaluate_over_delivery(po.id, po_lines, delivery.lines)
    unapproved = _unapproved(delivery.lines)
    if unapproved:
        blocked = [d for d in over if d.po_line.id in {l.po_line_id for l in unapproved}]
        raise OverDeliveryNotApproved(
            "Over-delivery detected. Supervisor or Admin approval is required before posting.",
            {"lines": _over_delivery_details(blocked)},
        )

    # 2. quantités livrées
    ledger.apply_delivery(db, delivery, po_lines)

    # 3. stock + écarts de prix
    po_lines_by_id = {l.id: l for l in po_lines}
    variances: list[tuple[DeliveryLine, PriceVariance]] = []
    for line in delivery.lines:
        item_id = line.item_id or po_lines_by_id[line.po_line_id].item_id
        if item_id is None:
            continue
        inventory.receive_into_stock(
            db,
            location_id=delivery.location_id,
            item_id=item_id,
            quantity=Decimal(line.quantity),
            unit_price=Decimal(line.unit_price),
        )

        period_price = price_lookup.get_period_price(item_id, period.id)
        if period_price is None:
            line.period_price = line.unit_price
            line.price_variance = Decimal("0")
            continue
        result = check_price_variance(Decimal(line.unit_price), Decimal(period_price), Decimal(line.quantity))
        line.period_price = result.period_price
        line.price_variance = result.variance
        variances.append((line, result))

    # 4. statut
    delivery.has_variance = any(r.has_variance for _, r in variances)
    delivery.status = DeliveryStatus.posted
    delivery.pending_approval = False
    delivery.period_id = period.id
    delivery.posted_at = _now()
    delivery.posted_by = actor.id
    _refresh_totals(delivery)
    ledger.flush_or_conflict(db, f"delivery {delivery.delivery_no}")

    # 5. auto-clôture PO -> PRF
    po_auto_closed, prf_closed, notices = auto_close_if_fulfilled(db, actor, po, po_lines)
    ledger.flush_or_conflict(db, f"purchase order {po.po_no}")

    # 6. NCR (best effort, n'annule pas le post)
    ncrs = raise_variance_ncrs(db, actor, delivery, variances)

    logger.info(
        "Delivery %s posted by %s (po_auto_closed=%s, ncrs=%d)",
        delivery.delivery_no,
        actor.username,
        po_auto_closed,
        len(ncrs),
    )
    return DeliveryOutcome(
        delivery,
        "Delivery posted successfully",
        po_auto_closed=po_auto_closed,
        prf_closed=prf_closed,
        ncrs=ncrs,
        over_delivery=over,
        notices=notices,
    )
