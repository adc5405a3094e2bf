"""
Dispatch des notifications (fire-and-forget).

Le transport réel (email, etc.) est externe. Ici on garantit seulement :
- dispatch() ne lève jamais
- l'échec est loggé et renvoyé comme métadonnée (email_sent=False)
"""

from __future__ import annotations

import enum
import logging
import os
from dataclasses import dataclass
from typing import Any, Protocol

import requests
from sqlalchemy import select
from sqlalchemy.orm import Session

from backend.app.db.models.core_types import Role
from backend.app.db.models.models_v1 import User

logger = logging.getLogger(__name__)

SITE_URL = os.getenv("SITE_URL", "http://localhost:3000")


class EventType(str, enum.Enum):
    prf_submitted = "PRF_SUBMITTED"
    prf_approved = "PRF_APPROVED"
    prf_rejected = "PRF_REJECTED"
    over_delivery_pending = "OVER_DELIVERY_PENDING"
    over_delivery_approved = "OVER_DELIVERY_APPROVED"
    over_delivery_rejected = "OVER_DELIVERY_REJECTED"
    po_closed = "PO_CLOSED"
    ncr_created = "NCR_CREATED"


@dataclass
class NotificationResult:
    sent: bool
    recipient_count: int | None = None
    error: str | None = None


class Notifier(Protocol):
    def notify(self, event_type: EventType, recipients: list[str], payload: dict[str, Any]) -> NotificationResult: ...


class LoggingNotifier:
    """Transport par défaut : trace l'envoi dans les logs."""

    def notify(self, event_type: EventType, recipients: list[str], payload: dict[str, Any]) -> NotificationResult:
        for recipient in recipients:
            logger.info("[EMAIL] To %s | %s | %s", recipient, event_type.value, payload.get("document_no"))
        return NotificationResult(sent=True, recipient_count=len(recipients))


class WebhookNotifier:
    """Transport HTTP : poste l'événement vers un relais email (NOTIFY_WEBHOOK_URL)."""

    def __init__(self, url: str, timeout: float = 5):
        self.url = url
        self.timeout = timeout

    def notify(self, event_type: EventType, recipients: list[str], payload: dict[str, Any]) -> NotificationResult:
        response = requests.post(
            self.url,
            json={"event": event_type.value, "to": recipients, "data": payload},
            timeout=self.timeout,
        )
        if response.status_code >= 400:
            return NotificationResult(sent=False, error=f"Relay answered HTTP {response.status_code}")
        return NotificationResult(sent=True, recipient_count=len(recipients))


def notifier_from_env() -> Notifier:
    url = os.getenv("NOTIFY_WEBHOOK_URL")
    if url:
        return WebhookNotifier(url, timeout=float(os.getenv("NOTIFY_TIMEOUT_S", "5")))
    return LoggingNotifier()


def dispatch(
    notifier: Notifier,
    event_type: EventType,
    recipients: list[str],
    payload: dict[str, Any],
) -> NotificationResult:
    recipients = sorted({r for r in recipients if r})
    if not recipients:
        return NotificationResult(sent=False, recipient_count=0, error="No recipients with an email address")

    try:
        result = notifier.notify(event_type, recipients, payload)
    except Exception as e:  # transport externe : l'échec reste consultatif
        logger.error("Notification %s failed: %s", event_type.value, e)
        return NotificationResult(sent=False, error=str(e))

    if result.sent:
        logger.info("Notification %s sent to %s recipient(s)", event_type.value, result.recipient_count)
    else:
        logger.error("Notification %s not sent: %s", event_type.value, result.error)
    return result


def document_url(path: str) -> str:
    return f"{SITE_URL.rstrip('/')}/{path.lstrip('/')}"


def approver_emails(db: Session) -> list[str]:
    """Emails de tous les superviseurs/admins actifs."""
    query = (
        select(User.email)
        .where(User.is_active.is_(True))
        .where(User.email.is_not(None))
        .where(User.role.in_([Role.admin, Role.supervisor]))
    )
    return list(db.execute(query).scalars().all())


def user_email(db: Session, user_id: int | None) -> list[str]:
    if user_id is None:
        return []
    user = db.get(User, user_id)
    return [user.email] if user and user.email else []


@dataclass
class Notice:
    """Notification décidée pendant la transaction, envoyée après le commit."""

    event_type: EventType
    recipients: list[str]
    payload: dict[str, Any]


def publish(notifier: Notifier, notices: list[Notice]) -> NotificationResult | None:
    """À appeler APRÈS db.commit() : un échec d'envoi ne doit jamais annuler l'opération."""
    if not notices:
        return None

    results = [dispatch(notifier, n.event_type, n.recipients, n.payload) for n in notices]
    errors = [r.error for r in results if r.error]
    return NotificationResult(
        sent=all(r.sent for r in results),
        recipient_count=sum(r.recipient_count or 0 for r in results),
        error="; ".join(errors) if errors else None,
    )


def notification_meta(result: NotificationResult | None) -> dict[str, Any]:
    """Métadonnées renvoyées avec la réponse : email_sent / email_recipients."""
    if result is None:
        return {"email_sent": False, "email_recipients": 0}
    meta: dict[str, Any] = {"email_sent": result.sent, "email_recipients": result.recipient_count or 0}
    if result.error:
        meta["email_error"] = result.error
    return meta
