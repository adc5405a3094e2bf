import itertools

import pytest
from sqlalchemy.orm import Session, sessionmaker

from backend.app.db.base import Base
from backend.app.schemas.delivery import DeliveryCreate, DeliveryLineInput
from backend.app.schemas.po import POCreate, POLineInput
from backend.app.schemas.prf import PRFCreate, PRFLineInput
from backend.services import deliveries, procurement
from backend.services.variance import DbPeriodPriceLookup
from backend.tests.support import RecordingNotifier, as_user, make_engine, seed_reference_data


@pytest.fixture(scope="function")
def engine():
    eng = make_engine()
    Base.metadata.create_all(bind=eng)
    try:
        yield eng
    finally:
        Base.metadata.drop_all(bind=eng)
        eng.dispose()


@pytest.fixture(scope="function")
def session_factory(engine):
    # mêmes options que backend.app.db.session.SessionLocal
    return sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False)


@pytest.fixture(scope="function")
def db_session(session_factory) -> Session:
    """
    Session DB isolée par test.

    Base neuve à chaque test (schéma créé depuis les modèles) :
    les services peuvent committer et ouvrir des SAVEPOINT librement.
    """
    session = session_factory()
    try:
        yield session
    finally:
        session.rollback()
        session.close()


@pytest.fixture
def ref(db_session):
    return seed_reference_data(db_session)


@pytest.fixture
def notifier():
    return RecordingNotifier()


# ---------- FACTORIES ----------
@pytest.fixture
def make_approved_prf(db_session, ref):
    def _make(lines=None):
        requester, requester_perms = as_user(ref.operator)
        approver, approver_perms = as_user(ref.supervisor)
        lines = lines or [(ref.rice, "10", "10.00")]
        prf = procurement.create_prf(
            db_session,
            requester,
            requester_perms,
            PRFCreate(
                location_id=ref.location.id,
                period_id=ref.period.id,
                project_name="Weekly restock",
                lines=[
                    PRFLineInput(item_id=item.id, description=item.name, unit=item.unit, quantity=q, estimated_price=p)
                    for item, q, p in lines
                ],
            ),
        )
        procurement.submit_prf(db_session, requester, prf.id)
        procurement.approve_prf(db_session, approver, approver_perms, prf.id)
        db_session.commit()
        return prf

    return _make


@pytest.fixture
def make_po(db_session, ref):
    def _make(lines, prf=None, location=None):
        actor, perms = as_user(ref.admin)
        po = procurement.create_po(
            db_session,
            actor,
            perms,
            POCreate(
                prf_id=prf.id if prf else None,
                supplier_id=ref.supplier.id,
                location_id=None if prf else (location or ref.location).id,
                lines=[
                    POLineInput(item_id=item.id, item_description=item.name, unit=item.unit, quantity=q, unit_price=p)
                    for item, q, p in lines
                ],
            ),
        )
        db_session.commit()
        return po

    return _make


_invoices = itertools.count(1)


@pytest.fixture
def make_delivery(db_session, ref):
    def _make(po, lines, user=None, invoice_no="auto", **extra):
        actor, perms = as_user(user or ref.operator)
        if invoice_no == "auto":
            invoice_no = f"INV-{next(_invoices):05d}"
        outcome = deliveries.create_delivery(
            db_session,
            actor,
            perms,
            DeliveryCreate(
                po_id=po.id,
                invoice_no=invoice_no,
                lines=[DeliveryLineInput(po_line_id=po_line.id, quantity=q, unit_price=p) for po_line, q, p in lines],
                **extra,
            ),
            DbPeriodPriceLookup(db_session),
        )
        db_session.commit()
        return outcome.delivery

    return _make


@pytest.fixture
def post(db_session, ref):
    def _post(delivery, user=None):
        actor, perms = as_user(user or ref.operator)
        outcome = deliveries.post_delivery(db_session, actor, perms, delivery.id, DbPeriodPriceLookup(db_session))
        db_session.commit()
        return outcome

    return _post
