"""Error taxonomy for the fulfillment saga."""
from typing import Any, Dict, Optional


class FulfillmentError(Exception):
    """Base class for errors surfaced to callers as ``{kind, message}``."""

    kind = "FulfillmentError"
    http_status = 500

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"kind": self.kind, "message": self.message}
        if self.details:
            body["details"] = self.details
        return body


class NotFound(FulfillmentError):
    kind = "NotFound"
    http_status = 404


class ValidationError(FulfillmentError):
    kind = "ValidationError"
    http_status = 422


class InsufficientStock(FulfillmentError):
    """Raised when a SKU cannot cover the requested quantity."""

    kind = "InsufficientStock"
    http_status = 409

    def __init__(self, sku_id: str, requested: int, sellable: int):
        super().__init__(
            f"Insufficient stock for {sku_id}: requested {requested}, sellable {sellable}",
            details={"sku_id": sku_id, "requested": requested, "sellable": sellable},
        )
        self.sku_id = sku_id
        self.requested = requested
        self.sellable = sellable


class InvalidState(FulfillmentError):
    """Raised when a transition is attempted from a state that does not allow it."""

    kind = "InvalidState"
    http_status = 409

    def __init__(self, entity: str, entity_id: Any, current: str, attempted: str):
        super().__init__(
            f"{entity} {entity_id} cannot go from {current} to {attempted}",
            details={"current": current, "attempted": attempted},
        )
        self.entity = entity
        self.entity_id = entity_id
        self.current = current
        self.attempted = attempted


class GatewayUnverified(FulfillmentError):
    """A payment event failed its authenticity check."""

    kind = "GatewayUnverified"
    http_status = 400


class PostPaymentCancellationAttempted(FulfillmentError):
    """A paid order can only be unwound through the refund flow."""

    kind = "PostPaymentCancellationAttempted"
    http_status = 409


class ConsistencyFault(FulfillmentError):
    """A commit or release failed after its preconditions were satisfied."""

    kind = "ConsistencyFault"
    http_status = 500


class PaymentGatewayError(FulfillmentError):
    kind = "PaymentGatewayError"
    http_status = 502
