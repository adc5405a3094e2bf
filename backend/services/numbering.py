"""
Numérotation des documents.

Format persistant (visible à l'extérieur, ne pas changer) :
    {Prefix}-{LOCATION}-{DD}-{Mon}-{YYYY}-{NN}
    ex: PRF-KITCHEN-27-Jan-2026-01

La séquence NN repart à 01 chaque jour, par location.
Les NCR suivent NCR-{YYYY}-{NNN}, séquence annuelle.
"""

from __future__ import annotations

import re
from datetime import date

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from backend.app.db.models.models_v1 import (
    Location,
    PRF,
    PurchaseOrder,
    Delivery,
    NCR,
)
from backend.services.errors import EntityNotFound

MONTHS = ["Jan", "Feb", "Mar", "Apr", "May", "Jun", "Jul", "Aug", "Sep", "Oct", "Nov", "Dec"]

# préfixe -> (modèle, colonne numéro)
DOCUMENT_TYPES = {
    "PRF": (PRF, PRF.prf_no),
    "PO": (PurchaseOrder, PurchaseOrder.po_no),
    "DLV": (Delivery, Delivery.delivery_no),
}


def sanitize_location_name(name: str) -> str:
    name = re.sub(r"\s+", "-", name.strip().upper())
    return re.sub(r"[^A-Z0-9-]", "", name)[:20]


def format_document_date(day: date | None = None) -> str:
    day = day or date.today()
    return f"{day.day:02d}-{MONTHS[day.month - 1]}-{day.year}"


def lock_sequence(db: Session, key: str) -> None:
    """
    Sérialise "lire le dernier numéro puis insérer" pour une même séquence.

    Postgres : verrou consultatif de transaction, relâché au commit/rollback.
    SQLite n'a qu'un écrivain à la fois, rien à faire.
    """
    if db.get_bind().dialect.name == "postgresql":
        db.execute(select(func.pg_advisory_xact_lock(func.hashtext(key))))


def _next_sequence(existing: list[str]) -> int:
    last = 0
    for number in existing:
        tail = number.rsplit("-", 1)[-1]
        if tail.isdigit():
            last = max(last, int(tail))
    return last + 1


def next_document_number(db: Session, prefix: str, location_id: int, day: date | None = None) -> str:
    model, column = DOCUMENT_TYPES[prefix]

    location = db.get(Location, location_id)
    if not location:
        raise EntityNotFound("location", location_id, "Location not found")

    base = f"{prefix}-{sanitize_location_name(location.name)}-{format_document_date(day)}-"
    lock_sequence(db, base)
    existing = db.execute(select(column).where(column.startswith(base, autoescape=True))).scalars().all()

    return f"{base}{_next_sequence(list(existing)):02d}"


def next_ncr_number(db: Session, year: int | None = None) -> str:
    year = year or date.today().year
    base = f"NCR-{year}-"
    lock_sequence(db, base)
    existing = db.execute(select(NCR.ncr_no).where(NCR.ncr_no.startswith(base))).scalars().all()
    return f"{base}{_next_sequence(list(existing)):03d}"
