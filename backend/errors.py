from typing import Dict, Optional


class StoreError(Exception):
    """Base class for failures that map onto an HTTP response."""

    kind = "internal"
    status_code = 500
    default_message = "Something went wrong while processing the request."

    def __init__(self, message: Optional[str] = None, **details):
        self.message = message or self.default_message
        self.details = details
        super().__init__(self.message)

    def to_payload(self) -> Dict[str, object]:
        payload: Dict[str, object] = {"msg": self.message, "error": self.kind}
        if self.details:
            payload["details"] = self.details
        return payload


class ValidationError(StoreError):
    kind = "validation_error"
    status_code = 400
    default_message = "The request payload is invalid."


class Forbidden(StoreError):
    kind = "forbidden"
    status_code = 403
    default_message = "You need additional permissions to perform this action."


class NotFound(StoreError):
    kind = "not_found"
    status_code = 404
    default_message = "Resource not found."


class InsufficientStock(StoreError):
    kind = "insufficient_stock"
    status_code = 403
    default_message = "Not enough quantity in stock"


class DependencyUnavailable(StoreError):
    kind = "dependency_unavailable"
    status_code = 500
    default_message = "An upstream service is unavailable."


class MailDeliveryError(DependencyUnavailable):
    default_message = "Failed to deliver email."


class PaymentProviderError(DependencyUnavailable):
    default_message = "Failed to create checkout session."


class InternalError(StoreError):
    pass
