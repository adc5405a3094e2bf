"""
Deux postes concurrents sur les 5 dernières unités d'une ligne de PO.

Base SQLite fichier + deux sessions indépendantes : la session A prend sa
décision sur un instantané, la session B poste et committe entre-temps.
"""

from decimal import Decimal

import pytest
from sqlalchemy.orm import sessionmaker

from backend.app.db.base import Base
from backend.app.db.models.models_v1 import Delivery, PurchaseOrderLine
from backend.app.db.models.core_types import DeliveryStatus
from backend.app.schemas.delivery import DeliveryCreate, DeliveryLineInput
from backend.app.schemas.po import POCreate, POLineInput
from backend.services import deliveries, ledger, procurement
from backend.services.errors import ConcurrentModification, OverDeliveryNotApproved
from backend.services.variance import DbPeriodPriceLookup
from backend.tests.support import as_user, make_engine, seed_reference_data


@pytest.fixture
def race(tmp_path):
    eng = make_engine(f"sqlite+pysqlite:///{tmp_path / 'race.db'}")
    Base.metadata.create_all(bind=eng)
    factory = sessionmaker(bind=eng, autoflush=False, autocommit=False, expire_on_commit=False)

    setup = factory()
    ref = seed_reference_data(setup)
    admin, admin_perms = as_user(ref.admin)
    operator, operator_perms = as_user(ref.operator)

    po = procurement.create_po(
        setup,
        admin,
        admin_perms,
        POCreate(
            supplier_id=ref.supplier.id,
            location_id=ref.location.id,
            # la 2e ligne garde le PO ouvert après le premier post
            lines=[
                POLineInput(item_id=ref.rice.id, item_description="Rice", quantity="5", unit_price="10.00"),
                POLineInput(item_id=ref.oil.id, item_description="Oil", quantity="5", unit_price="4.50"),
            ],
        ),
    )
    setup.commit()

    # deux brouillons valides au moment de leur création : 5 restants chacun
    drafts = []
    for invoice_no in ("INV-A", "INV-B"):
        outcome = deliveries.create_delivery(
            setup,
            operator,
            operator_perms,
            DeliveryCreate(
                po_id=po.id,
                invoice_no=invoice_no,
                lines=[DeliveryLineInput(po_line_id=po.lines[0].id, quantity="5", unit_price="10.00")],
            ),
            DbPeriodPriceLookup(setup),
        )
        setup.commit()
        drafts.append(outcome.delivery.id)
    line_id = po.lines[0].id
    setup.close()

    try:
        yield factory, po.id, line_id, drafts, (operator, operator_perms)
    finally:
        eng.dispose()


def test_stale_snapshot_fails_instead_of_over_delivering(race):
    factory, po_id, line_id, (first_id, second_id), (operator, perms) = race
    session_a = factory()
    session_b = factory()

    # A : lit l'état et décide qu'il n'y a pas de sur-livraison
    snapshot = ledger.lock_po_lines(session_a, po_id)
    demand = ledger.compute_demands(po_id, snapshot, [(line_id, None, Decimal("5"))])[0]
    assert not demand.is_over_delivery

    # B : poste les mêmes 5 unités et committe
    outcome = deliveries.post_delivery(session_b, operator, perms, second_id, DbPeriodPriceLookup(session_b))
    session_b.commit()
    assert outcome.delivery.status == DeliveryStatus.posted

    # A : applique sa décision périmée
    first = deliveries.get_delivery(session_a, first_id)
    with pytest.raises(ConcurrentModification):
        ledger.apply_delivery(session_a, first, snapshot)
    session_a.rollback()

    check = factory()
    assert check.get(PurchaseOrderLine, line_id).delivered_qty == Decimal("5")
    assert check.get(Delivery, first_id).status == DeliveryStatus.draft
    for s in (session_a, session_b, check):
        s.close()


def test_second_post_is_gated_on_fresh_ledger(race):
    factory, po_id, line_id, (first_id, second_id), (operator, perms) = race
    session_a = factory()
    session_b = factory()

    deliveries.post_delivery(session_b, operator, perms, second_id, DbPeriodPriceLookup(session_b))
    session_b.commit()

    # le post relit le ledger dans sa propre transaction : 0 restant
    with pytest.raises(OverDeliveryNotApproved):
        deliveries.post_delivery(session_a, operator, perms, first_id, DbPeriodPriceLookup(session_a))
    session_a.rollback()

    check = factory()
    line = check.get(PurchaseOrderLine, line_id)
    assert line.delivered_qty == Decimal("5")
    assert line.remaining_qty == 0
    assert check.get(Delivery, first_id).status == DeliveryStatus.draft
    for s in (session_a, session_b, check):
        s.close()
