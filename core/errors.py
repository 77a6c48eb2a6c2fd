"""
Error taxonomy for order and payment operations.

Every error carries an ``ErrorKind`` so the API layer can map it to a
response without inspecting concrete classes.
"""
import enum
import uuid
from typing import Any, Dict, Optional


class ErrorKind(str, enum.Enum):
    NOT_FOUND = "not_found"
    CONFLICT = "conflict"
    VALIDATION = "validation"
    PROVIDER = "provider"


class ServiceError(Exception):
    """Base exception for order/payment service errors."""

    kind: ErrorKind = ErrorKind.VALIDATION

    def __init__(self, message: str, **context: Any):
        super().__init__(message)
        self.message = message
        self.context = context

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dict for API responses."""
        return {"success": False, "error": self.kind.value, "message": self.message}


class NotFoundError(ServiceError):
    """Order, payment or product does not exist."""

    kind = ErrorKind.NOT_FOUND


class ConflictError(ServiceError):
    """The aggregate is not in a state that allows the operation."""

    kind = ErrorKind.CONFLICT


class ValidationError(ServiceError):
    """Request data, provider configuration or inbound payload is invalid."""

    kind = ErrorKind.VALIDATION


class ProviderError(ServiceError):
    """External payment provider failed (network, timeout, 5xx, decline)."""

    kind = ErrorKind.PROVIDER

    def __init__(self, message: str, transient: bool = False, **context: Any):
        super().__init__(message, **context)
        self.transient = transient


class StockInconsistencyError(ConflictError):
    """
    Raised when a product no longer has the stock a paid order needs.

    Settlement of the event is aborted and rolled back in full.
    """

    def __init__(
        self,
        product_id: uuid.UUID,
        available: Optional[int],
        required: int,
        transaction_id: str,
    ):
        super().__init__(
            f"Insufficient stock for product {product_id}. "
            f"Available: {available}, Required: {required}",
            product_id=str(product_id),
            available=available,
            required=required,
            transaction_id=transaction_id,
        )
        self.product_id = product_id
        self.available = available
        self.required = required
        self.transaction_id = transaction_id
