from __future__ import annotations

from typing import Generator

from fastapi import Depends, Header
from sqlalchemy.orm import Session

from backend.app.db.session import SessionLocal
from backend.app.db.models.models_v1 import User
from backend.services.access import Actor, Permissions, RolePermissions
from backend.services.errors import PermissionDenied
from backend.services.notifications import Notifier, notifier_from_env
from backend.services.variance import DbPeriodPriceLookup, PeriodPriceLookup

_notifier = notifier_from_env()


def get_db() -> Generator:
    db = SessionLocal()
    try:
        yield db
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


def get_actor(
    x_user_id: int | None = Header(default=None),
    db: Session = Depends(get_db),
) -> Actor:
    # Authentification externe : on ne fait que résoudre l'utilisateur
    if x_user_id is None:
        raise PermissionDenied("Missing X-User-Id header")
    user = db.get(User, x_user_id)
    if not user or not user.is_active:
        raise PermissionDenied("Unknown or inactive user", {"user_id": x_user_id})
    return Actor.from_user(user)


def get_permissions(actor: Actor = Depends(get_actor)) -> Permissions:
    return RolePermissions(actor)


def get_notifier() -> Notifier:
    return _notifier


def get_price_lookup(db: Session = Depends(get_db)) -> PeriodPriceLookup:
    return DbPeriodPriceLookup(db)
