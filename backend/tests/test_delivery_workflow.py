from datetime import date, timedelta
from decimal import Decimal

import pytest
from sqlalchemy import select

from backend.app.db.models.models_v1 import Delivery, LocationStock
from backend.app.db.models.core_types import DeliveryStatus, PeriodStatus, POStatus, PRFStatus
from backend.app.schemas.delivery import (
    DeliveryCreate,
    DeliveryLineInput,
    DeliveryUpdate,
    OverDeliveryApprove,
    OverDeliveryReject,
    SendForApproval,
)
from backend.services import deliveries
from backend.services.errors import (
    AlreadyPosted,
    ConcurrentModification,
    DeliveryLocked,
    DuplicateInvoice,
    InvalidStateTransition,
    LineNotFound,
    OverDeliveryNotApproved,
    PermissionDenied,
    RequiredFieldMissing,
    ValidationError,
)
from backend.services.notifications import EventType
from backend.services.numbering import format_document_date
from backend.services.variance import DbPeriodPriceLookup
from backend.tests.support import as_user


# ---------- create / post ----------
def test_create_delivery_defaults_from_po(ref, make_po, make_delivery):
    po = make_po([(ref.rice, "10", "10.00")])

    delivery = make_delivery(po, [(po.lines[0], "4", "10.00")])

    assert delivery.delivery_no.startswith("DLV-MAIN-KITCHEN-")
    assert delivery.delivery_no.endswith("-01")
    assert delivery.status == DeliveryStatus.draft
    assert delivery.supplier_id == ref.supplier.id
    assert delivery.location_id == po.location_id
    assert delivery.total_amount == Decimal("40.00")
    assert delivery.lines[0].is_over_delivery is False
    assert po.lines[0].delivered_qty == 0


def test_delivery_number_uses_creation_day_not_delivery_date(ref, make_po, make_delivery):
    po = make_po([(ref.rice, "10", "10.00")])
    today = date.today()

    delivery = make_delivery(po, [(po.lines[0], "4", "10.00")], delivery_date=today - timedelta(days=5))

    assert delivery.delivery_date == today - timedelta(days=5)
    assert delivery.delivery_no == f"DLV-MAIN-KITCHEN-{format_document_date(today)}-01"


def test_post_auto_closes_po_and_prf(db_session, ref, make_approved_prf, make_po, make_delivery, post):
    prf = make_approved_prf()
    po = make_po([(ref.rice, "10", "10.00"), (ref.oil, "5", "4.50")], prf=prf)
    first, second = po.lines

    outcome = post(make_delivery(po, [(first, "10", "10.00"), (second, "5", "4.50")]))

    assert outcome.po_auto_closed is True
    assert outcome.prf_closed is True
    assert outcome.delivery.status == DeliveryStatus.posted
    assert outcome.delivery.posted_by == ref.operator.id
    assert outcome.delivery.period_id == ref.period.id
    assert po.status == POStatus.closed
    assert "[AUTO-CLOSED - 100% fulfilled]" in po.notes
    assert prf.status == PRFStatus.closed
    assert first.delivered_qty == Decimal("10")
    assert second.delivered_qty == Decimal("5")
    assert [n.event_type for n in outcome.notices] == [EventType.po_closed]


def test_partial_post_keeps_po_open(ref, make_po, make_delivery, post):
    po = make_po([(ref.rice, "10", "10.00"), (ref.oil, "5", "4.50")])

    outcome = post(make_delivery(po, [(po.lines[0], "10", "10.00")]))

    assert outcome.po_auto_closed is False
    assert po.status == POStatus.open


def test_create_with_posted_status_posts_immediately(db_session, ref, make_po):
    po = make_po([(ref.rice, "10", "10.00")])
    actor, perms = as_user(ref.operator)

    outcome = deliveries.create_delivery(
        db_session,
        actor,
        perms,
        DeliveryCreate(
            po_id=po.id,
            invoice_no="INV-DIRECT",
            status="POSTED",
            lines=[DeliveryLineInput(item_id=ref.rice.id, quantity="10", unit_price="10.00")],
        ),
        DbPeriodPriceLookup(db_session),
    )

    assert outcome.delivery.status == DeliveryStatus.posted
    assert outcome.delivery.lines[0].po_line_id == po.lines[0].id
    assert outcome.po_auto_closed is True


def test_post_twice_is_refused(ref, make_po, make_delivery, post):
    po = make_po([(ref.rice, "10", "10.00")])
    delivery = make_delivery(po, [(po.lines[0], "3", "10.00")])
    post(delivery)

    with pytest.raises(AlreadyPosted):
        post(delivery)

    assert po.lines[0].delivered_qty == Decimal("3")


def test_post_requires_invoice_and_open_period(db_session, ref, make_po, make_delivery, post):
    po = make_po([(ref.rice, "10", "10.00")])
    no_invoice = make_delivery(po, [(po.lines[0], "1", "10.00")], invoice_no=None)

    with pytest.raises(RequiredFieldMissing):
        post(no_invoice)

    delivery = make_delivery(po, [(po.lines[0], "1", "10.00")])
    ref.period.status = PeriodStatus.closed
    db_session.commit()
    with pytest.raises(ValidationError):
        post(delivery)

    db_session.rollback()
    assert delivery.status == DeliveryStatus.draft
    assert po.lines[0].delivered_qty == 0


def test_cannot_deliver_against_closed_po(db_session, ref, make_po, make_delivery, post):
    po = make_po([(ref.rice, "2", "10.00")])
    post(make_delivery(po, [(po.lines[0], "2", "10.00")]))
    assert po.status == POStatus.closed

    with pytest.raises(InvalidStateTransition):
        make_delivery(po, [(po.lines[0], "1", "10.00")])


def test_duplicate_invoice_is_refused(db_session, ref, make_po, make_delivery):
    po = make_po([(ref.rice, "10", "10.00")])
    make_delivery(po, [(po.lines[0], "1", "10.00")], invoice_no="INV-DUP")

    with pytest.raises(DuplicateInvoice):
        make_delivery(po, [(po.lines[0], "1", "10.00")], invoice_no="INV-DUP")


def test_concurrent_invoice_insert_is_duplicate_invoice(db_session, ref, make_po, make_delivery, monkeypatch):
    po = make_po([(ref.rice, "10", "10.00")])
    make_delivery(po, [(po.lines[0], "1", "10.00")], invoice_no="INV-RACE")

    # l'autre transaction a inséré la facture après notre contrôle
    monkeypatch.setattr(deliveries, "_check_invoice", lambda *args, **kwargs: None)
    with pytest.raises(DuplicateInvoice):
        make_delivery(po, [(po.lines[0], "1", "10.00")], invoice_no="INV-RACE")
    db_session.rollback()

    assert len(db_session.execute(select(Delivery)).scalars().all()) == 1


def test_concurrent_number_insert_is_a_conflict(db_session, ref, make_po, make_delivery, monkeypatch):
    po = make_po([(ref.rice, "10", "10.00")])
    first = make_delivery(po, [(po.lines[0], "1", "10.00")])

    # même numéro calculé par deux créations simultanées
    monkeypatch.setattr(deliveries, "next_document_number", lambda *args, **kwargs: first.delivery_no)
    with pytest.raises(ConcurrentModification):
        make_delivery(po, [(po.lines[0], "1", "10.00")])
    db_session.rollback()

    assert db_session.execute(select(Delivery.delivery_no)).scalars().all() == [first.delivery_no]


def test_operator_limited_to_assigned_location(db_session, ref, make_po, make_delivery):
    po = make_po([(ref.rice, "10", "10.00")])

    with pytest.raises(PermissionDenied):
        make_delivery(po, [(po.lines[0], "1", "10.00")], user=ref.bar_operator)

    bar_po = make_po([(ref.rice, "10", "10.00")], location=ref.bar)
    delivery = make_delivery(bar_po, [(bar_po.lines[0], "1", "10.00")], user=ref.bar_operator)
    assert delivery.location_id == ref.bar.id


def test_line_from_another_po_is_refused(ref, make_po, make_delivery):
    po = make_po([(ref.rice, "10", "10.00")])
    other = make_po([(ref.rice, "10", "10.00")])

    with pytest.raises(LineNotFound):
        make_delivery(po, [(other.lines[0], "1", "10.00")])


def test_stock_valuation_uses_weighted_average(db_session, ref, make_po, make_delivery, post):
    po = make_po([(ref.rice, "30", "10.00")])
    post(make_delivery(po, [(po.lines[0], "10", "10.00")]))
    post(make_delivery(po, [(po.lines[0], "10", "12.00")]))

    stock = db_session.execute(
        select(LocationStock).where(LocationStock.location_id == ref.location.id, LocationStock.item_id == ref.rice.id)
    ).scalar_one()
    assert stock.on_hand == Decimal("20")
    assert stock.wac == Decimal("11.0000")


# ---------- over-delivery ----------
def test_operator_cannot_post_unapproved_over_delivery(db_session, ref, make_po, make_delivery, post):
    po = make_po([(ref.rice, "5", "10.00")])
    delivery = make_delivery(po, [(po.lines[0], "8", "10.00")])
    assert delivery.lines[0].is_over_delivery is True

    with pytest.raises(OverDeliveryNotApproved) as exc:
        post(delivery)

    db_session.rollback()
    assert Decimal(exc.value.details["lines"][0]["excess"]) == 3
    assert delivery.status == DeliveryStatus.draft
    assert po.lines[0].delivered_qty == 0


def test_supervisor_cannot_post_unapproved_over_delivery_either(db_session, ref, make_po, make_delivery, post):
    po = make_po([(ref.rice, "5", "10.00")])
    delivery = make_delivery(po, [(po.lines[0], "8", "10.00")], user=ref.supervisor)

    with pytest.raises(OverDeliveryNotApproved):
        post(delivery, user=ref.supervisor)


def test_send_for_approval_needs_invoice(db_session, ref, make_po, make_delivery):
    po = make_po([(ref.rice, "5", "10.00")])
    delivery = make_delivery(po, [(po.lines[0], "8", "10.00")], invoice_no=None)
    actor, perms = as_user(ref.operator)

    with pytest.raises(RequiredFieldMissing) as exc:
        deliveries.send_for_approval(db_session, actor, perms, delivery.id, SendForApproval())
    assert exc.value.details["field"] == "invoice_no"

    outcome = deliveries.send_for_approval(db_session, actor, perms, delivery.id, SendForApproval(invoice_no="INV-OVER"))
    assert delivery.pending_approval is True
    assert delivery.invoice_no == "INV-OVER"
    assert outcome.notices[0].event_type == EventType.over_delivery_pending
    assert set(outcome.notices[0].recipients) == {"admin@example.com", "supervisor@example.com"}


def test_send_for_approval_without_over_delivery_is_refused(db_session, ref, make_po, make_delivery):
    po = make_po([(ref.rice, "5", "10.00")])
    delivery = make_delivery(po, [(po.lines[0], "5", "10.00")])
    actor, perms = as_user(ref.operator)

    with pytest.raises(ValidationError):
        deliveries.send_for_approval(db_session, actor, perms, delivery.id, SendForApproval())


def test_approved_over_delivery_can_be_posted(db_session, ref, make_po, make_delivery, post):
    po = make_po([(ref.rice, "5", "10.00")])
    delivery = make_delivery(po, [(po.lines[0], "8", "10.00")], send_for_approval=True)
    assert delivery.pending_approval is True

    operator, operator_perms = as_user(ref.operator)
    with pytest.raises(PermissionDenied):
        deliveries.approve_over_delivery(db_session, operator, operator_perms, delivery.id, OverDeliveryApprove())

    supervisor, perms = as_user(ref.supervisor)
    outcome = deliveries.approve_over_delivery(db_session, supervisor, perms, delivery.id, OverDeliveryApprove())
    db_session.commit()

    line = delivery.lines[0]
    assert line.over_delivery_approved is True
    assert line.approved_by == ref.supervisor.id
    assert delivery.pending_approval is False
    assert outcome.notices[0].recipients == ["operator@example.com"]

    posted = post(delivery)
    assert posted.delivery.status == DeliveryStatus.posted
    assert po.lines[0].delivered_qty == Decimal("8")
    assert po.lines[0].remaining_qty == 0
    assert posted.po_auto_closed is True


def test_approval_is_dropped_when_quantity_changes(db_session, ref, make_po, make_delivery, post):
    po = make_po([(ref.rice, "5", "10.00")])
    delivery = make_delivery(po, [(po.lines[0], "8", "10.00")])
    supervisor, perms = as_user(ref.supervisor)
    deliveries.approve_over_delivery(db_session, supervisor, perms, delivery.id, OverDeliveryApprove())
    db_session.commit()

    operator, operator_perms = as_user(ref.operator)
    deliveries.update_delivery(
        db_session,
        operator,
        operator_perms,
        delivery.id,
        DeliveryUpdate(lines=[DeliveryLineInput(po_line_id=po.lines[0].id, quantity="9", unit_price="10.00")]),
    )
    db_session.commit()

    assert delivery.lines[0].is_over_delivery is True
    assert delivery.lines[0].over_delivery_approved is False
    with pytest.raises(OverDeliveryNotApproved):
        post(delivery)


def test_reject_locks_delivery_for_everyone(db_session, ref, make_po, make_delivery, post):
    po = make_po([(ref.rice, "5", "10.00")])
    delivery = make_delivery(po, [(po.lines[0], "8", "10.00")], send_for_approval=True)
    supervisor, perms = as_user(ref.supervisor)

    with pytest.raises(RequiredFieldMissing):
        deliveries.reject_over_delivery(db_session, supervisor, perms, delivery.id, OverDeliveryReject(reason=""))

    outcome = deliveries.reject_over_delivery(
        db_session, supervisor, perms, delivery.id, OverDeliveryReject(reason="Only 5 ordered")
    )
    db_session.commit()

    assert delivery.status == DeliveryStatus.rejected
    assert delivery.over_delivery_rejected is True
    assert delivery.pending_approval is False
    assert "[OVER-DELIVERY REJECTED] by supervisor on " in delivery.notes
    assert delivery.notes.endswith(": Only 5 ordered")
    assert outcome.notices[0].event_type == EventType.over_delivery_rejected

    admin, admin_perms = as_user(ref.admin)
    lookup = DbPeriodPriceLookup(db_session)
    attempts = [
        lambda: deliveries.update_delivery(db_session, admin, admin_perms, delivery.id, DeliveryUpdate(delivery_note="x")),
        lambda: deliveries.delete_delivery(db_session, admin, admin_perms, delivery.id),
        lambda: deliveries.send_for_approval(db_session, admin, admin_perms, delivery.id, SendForApproval()),
        lambda: deliveries.approve_over_delivery(db_session, admin, admin_perms, delivery.id, OverDeliveryApprove()),
        lambda: deliveries.reject_over_delivery(
            db_session, admin, admin_perms, delivery.id, OverDeliveryReject(reason="again")
        ),
        lambda: deliveries.post_delivery(db_session, admin, admin_perms, delivery.id, lookup),
    ]
    for attempt in attempts:
        with pytest.raises(DeliveryLocked):
            attempt()
        db_session.rollback()

    assert po.lines[0].delivered_qty == 0


def test_only_creator_or_approver_edits_draft(db_session, ref, make_po, make_delivery):
    po = make_po([(ref.rice, "10", "10.00")])
    delivery = make_delivery(po, [(po.lines[0], "1", "10.00")], user=ref.supervisor)
    operator, perms = as_user(ref.operator)

    with pytest.raises(PermissionDenied):
        deliveries.update_delivery(db_session, operator, perms, delivery.id, DeliveryUpdate(delivery_note="x"))

    admin, admin_perms = as_user(ref.admin)
    deliveries.delete_delivery(db_session, admin, admin_perms, delivery.id)
    db_session.commit()
    assert db_session.get(Delivery, delivery.id) is None
