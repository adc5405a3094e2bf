"""Helpers partagés par les tests (engine, données de référence, fakes)."""

import os
from datetime import date
from decimal import Decimal
from types import SimpleNamespace

from sqlalchemy import create_engine
from sqlalchemy.orm import Session
from sqlalchemy.pool import StaticPool

from backend.app.db.models.models_v1 import (
    Item,
    ItemPrice,
    Location,
    Period,
    Supplier,
    User,
    UserLocation,
)
from backend.app.db.models.core_types import PeriodStatus, Role
from backend.services.access import Actor, RolePermissions
from backend.services.notifications import NotificationResult

TEST_DATABASE_URL = os.getenv("TEST_DATABASE_URL", "sqlite+pysqlite:///:memory:")


def make_engine(url: str = TEST_DATABASE_URL):
    if url.startswith("sqlite") and ":memory:" in url:
        # une seule connexion partagée : la base survit entre sessions/threads
        return create_engine(url, connect_args={"check_same_thread": False}, poolclass=StaticPool)
    if url.startswith("sqlite"):
        return create_engine(url, connect_args={"check_same_thread": False})
    return create_engine(url)


def seed_reference_data(db: Session) -> SimpleNamespace:
    main = Location(code="MAIN", name="Main Kitchen")
    bar = Location(code="BAR", name="Pool Bar")
    period = Period(
        name="2026-10",
        start_date=date(2026, 10, 1),
        end_date=date(2026, 10, 31),
        status=PeriodStatus.open,
    )
    rice = Item(code="RICE", name="Rice 25kg", unit="BAG")
    oil = Item(code="OIL", name="Cooking oil", unit="L")
    salt = Item(code="SALT", name="Salt", unit="KG")
    supplier = Supplier(code="SUP-001", name="Island Foods", email="orders@islandfoods.example")
    db.add_all([main, bar, period, rice, oil, salt, supplier])
    db.flush()

    # pas de prix de période pour SALT
    db.add_all(
        [
            ItemPrice(period_id=period.id, item_id=rice.id, price=Decimal("10.00")),
            ItemPrice(period_id=period.id, item_id=oil.id, price=Decimal("4.50")),
        ]
    )

    admin = User(username="admin", email="admin@example.com", role=Role.admin)
    supervisor = User(username="supervisor", email="supervisor@example.com", role=Role.supervisor)
    operator = User(username="operator", email="operator@example.com", role=Role.operator)
    bar_operator = User(username="bar_operator", email="bar@example.com", role=Role.operator)
    buyer = User(username="buyer", email="buyer@example.com", role=Role.procurement_specialist)
    operator.locations.append(UserLocation(location_id=main.id))
    bar_operator.locations.append(UserLocation(location_id=bar.id))
    db.add_all([admin, supervisor, operator, bar_operator, buyer])
    db.commit()

    return SimpleNamespace(
        location=main,
        bar=bar,
        period=period,
        rice=rice,
        oil=oil,
        salt=salt,
        supplier=supplier,
        admin=admin,
        supervisor=supervisor,
        operator=operator,
        bar_operator=bar_operator,
        buyer=buyer,
    )


def as_user(user: User) -> tuple[Actor, RolePermissions]:
    actor = Actor.from_user(user)
    return actor, RolePermissions(actor)


class RecordingNotifier:
    """Notifier de test : enregistre les envois, peut simuler une panne du transport."""

    def __init__(self, fail: bool = False):
        self.fail = fail
        self.calls = []

    def notify(self, event_type, recipients, payload):
        self.calls.append((event_type, list(recipients), payload))
        if self.fail:
            raise ConnectionError("SMTP server unavailable")
        return NotificationResult(sent=True, recipient_count=len(recipients))
