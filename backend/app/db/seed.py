from __future__ import annotations

import logging
from datetime import date
from decimal import Decimal

from sqlalchemy import select

from backend.app.db.session import SessionLocal
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

logger = logging.getLogger(__name__)


def run_seed():
    db = SessionLocal()
    try:
        # 1) Location principale
        location = db.scalar(select(Location).where(Location.code == "MAIN"))
        if not location:
            location = Location(code="MAIN", name="Main Kitchen", is_active=True)
            db.add(location)
            db.flush()

        # 2) Période ouverte (mois courant)
        today = date.today()
        period_name = today.strftime("%Y-%m")
        period = db.scalar(select(Period).where(Period.name == period_name))
        if not period:
            next_month = date(today.year + (today.month == 12), today.month % 12 + 1, 1)
            period = Period(
                name=period_name,
                start_date=today.replace(day=1),
                end_date=date.fromordinal(next_month.toordinal() - 1),
                status=PeriodStatus.open,
            )
            db.add(period)
            db.flush()

        # 3) Un item avec son prix de période, un fournisseur
        item = db.scalar(select(Item).where(Item.code == "RICE-25"))
        if not item:
            item = Item(code="RICE-25", name="Rice 25kg", unit="BAG", is_active=True)
            db.add(item)
            db.flush()
            db.add(ItemPrice(period_id=period.id, item_id=item.id, price=Decimal("10.00")))

        if not db.scalar(select(Supplier).where(Supplier.code == "SUP-001")):
            db.add(Supplier(code="SUP-001", name="Default Supplier", email="orders@supplier.example"))

        # 4) Un utilisateur par rôle
        for username, role in (
            ("admin", Role.admin),
            ("supervisor", Role.supervisor),
            ("operator", Role.operator),
            ("procurement", Role.procurement_specialist),
        ):
            if db.scalar(select(User).where(User.username == username)):
                continue
            user = User(username=username, email=f"{username}@fulfilment.example", role=role, is_active=True)
            if role == Role.operator:
                user.locations.append(UserLocation(location_id=location.id))
            db.add(user)

        db.commit()
        logger.info("SEED OK: location=%s, period=%s", location.code, period.name)
    finally:
        db.close()


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    run_seed()
