"""
Erreurs métier du moteur de fulfillment.

Chaque erreur porte un `code` stable, renvoyé tel quel à l'appelant
(voir backend.app.main). Aucune n'est avalée dans les services : elles
remontent jusqu'à la frontière de l'opération.
"""

from __future__ import annotations

from typing import Any


class FulfillmentError(Exception):
    code = "FULFILLMENT_ERROR"
    status_code = 400

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        return {"code": self.code, "message": self.message, "details": self.details}


class ValidationError(FulfillmentError):
    code = "VALIDATION_ERROR"
    status_code = 400


class RequiredFieldMissing(FulfillmentError):
    code = "REQUIRED_FIELD_MISSING"
    status_code = 400

    def __init__(self, field: str, message: str | None = None, details: dict[str, Any] | None = None):
        super().__init__(message or f"{field} is required", {"field": field, **(details or {})})
        self.field = field


class InvalidStateTransition(FulfillmentError):
    code = "INVALID_STATE_TRANSITION"
    status_code = 409

    def __init__(self, entity: str, current: Any, target: Any, message: str | None = None):
        current_value = getattr(current, "value", current)
        target_value = getattr(target, "value", target)
        super().__init__(
            message or f"Cannot move {entity} from {current_value} to {target_value}",
            {"entity": entity, "current": current_value, "target": target_value},
        )


class AlreadyPosted(InvalidStateTransition):
    code = "ALREADY_POSTED"

    def __init__(self, delivery_no: str, current: Any):
        super().__init__(
            "delivery",
            current,
            "POSTED",
            message=f"Delivery {delivery_no} is not in a postable state",
        )


class PermissionDenied(FulfillmentError):
    code = "PERMISSION_DENIED"
    status_code = 403


class EntityNotFound(FulfillmentError):
    code = "NOT_FOUND"
    status_code = 404

    def __init__(self, entity: str, entity_id: Any, message: str | None = None):
        super().__init__(message or f"{entity} not found", {"entity": entity, "id": entity_id})


class LineNotFound(EntityNotFound):
    code = "LINE_NOT_FOUND"

    def __init__(self, po_id: int, po_line_id: int | None, item_id: int | None):
        super().__init__(
            "po_line",
            po_line_id,
            message=f"No line of PO {po_id} matches po_line_id={po_line_id} item_id={item_id}",
        )
        self.details.update({"po_id": po_id, "item_id": item_id})


class DeliveryLocked(FulfillmentError):
    code = "DELIVERY_LOCKED"
    status_code = 423

    def __init__(self, delivery_no: str):
        super().__init__(
            f"Delivery {delivery_no} was rejected for over-delivery and is locked. "
            "Create a new delivery with the correct quantities.",
            {"delivery_no": delivery_no},
        )


class OverDeliveryNotApproved(FulfillmentError):
    code = "OVER_DELIVERY_NOT_APPROVED"
    status_code = 409


class ConcurrentModification(FulfillmentError):
    code = "CONCURRENT_MODIFICATION"
    status_code = 409


class DuplicateInvoice(FulfillmentError):
    code = "DUPLICATE_INVOICE"
    status_code = 409
