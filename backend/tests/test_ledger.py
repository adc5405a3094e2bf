from decimal import Decimal

import pytest

from backend.app.db.models.core_types import DeliveryStatus
from backend.services import ledger
from backend.services.errors import AlreadyPosted, LineNotFound


def test_resolve_po_line_by_explicit_id(ref, make_po):
    po = make_po([(ref.rice, "10", "10.00"), (ref.oil, "5", "4.50")])
    lines = po.lines

    assert ledger.resolve_po_line(po.id, lines, lines[1].id, None) is lines[1]


def test_resolve_po_line_falls_back_to_item_only_without_id(ref, make_po):
    po = make_po([(ref.rice, "10", "10.00"), (ref.oil, "5", "4.50")])

    line = ledger.resolve_po_line(po.id, po.lines, None, ref.oil.id)

    assert line.item_id == ref.oil.id


def test_resolve_po_line_foreign_id_is_not_rescued_by_item(ref, make_po):
    """Un po_line_id d'un autre PO échoue, même si l'item existe sur ce PO."""
    po = make_po([(ref.rice, "10", "10.00")])
    other = make_po([(ref.rice, "3", "10.00")])

    with pytest.raises(LineNotFound) as exc:
        ledger.resolve_po_line(po.id, po.lines, other.lines[0].id, ref.rice.id)

    assert exc.value.details["po_id"] == po.id


def test_resolve_po_line_unknown_item(ref, make_po):
    po = make_po([(ref.rice, "10", "10.00")])

    with pytest.raises(LineNotFound):
        ledger.resolve_po_line(po.id, po.lines, None, ref.salt.id)


def test_compute_demands_aggregates_lines_on_same_po_line(ref, make_po):
    po = make_po([(ref.rice, "10", "10.00")])
    line = po.lines[0]

    demands = ledger.compute_demands(
        po.id,
        po.lines,
        [(line.id, None, Decimal("6")), (None, ref.rice.id, Decimal("5"))],
    )

    assert len(demands) == 1
    assert demands[0].requested == Decimal("11")
    assert demands[0].remaining == Decimal("10")
    assert demands[0].is_over_delivery
    assert demands[0].excess == Decimal("1")


def test_remaining_qty_is_derived_and_never_negative(ref, make_po):
    po = make_po([(ref.rice, "5", "10.00")])
    line = po.lines[0]

    line.delivered_qty = Decimal("8")

    assert line.remaining_qty == Decimal("0")


def test_delivered_qty_is_sum_of_posted_lines(db_session, ref, make_po, make_delivery, post):
    po = make_po([(ref.rice, "10", "10.00"), (ref.oil, "20", "4.50")])
    rice_line, oil_line = po.lines

    post(make_delivery(po, [(rice_line, "3", "10.00"), (oil_line, "5", "4.50")]))
    post(make_delivery(po, [(rice_line, "4", "10.00")]))

    db_session.refresh(rice_line)
    db_session.refresh(oil_line)
    assert rice_line.delivered_qty == Decimal("7")
    assert oil_line.delivered_qty == Decimal("5")
    assert rice_line.remaining_qty == Decimal("3")


def test_apply_delivery_refuses_non_draft(db_session, ref, make_po, make_delivery, post):
    po = make_po([(ref.rice, "10", "10.00")])
    delivery = make_delivery(po, [(po.lines[0], "2", "10.00")])
    post(delivery)

    with pytest.raises(AlreadyPosted):
        ledger.apply_delivery(db_session, delivery, ledger.lock_po_lines(db_session, po.id))

    assert delivery.status == DeliveryStatus.posted
    assert po.lines[0].delivered_qty == Decimal("2")


def test_is_fully_delivered(ref, make_po):
    po = make_po([(ref.rice, "10", "10.00"), (ref.oil, "5", "4.50")])
    assert not ledger.is_fully_delivered(po.lines)

    po.lines[0].delivered_qty = Decimal("10")
    po.lines[1].delivered_qty = Decimal("5")
    assert ledger.is_fully_delivered(po.lines)
    assert not ledger.is_fully_delivered([])
