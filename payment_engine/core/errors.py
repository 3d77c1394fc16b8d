"""
Error taxonomy for the payment engine.

Every caller-facing error carries:
- Error code (for client handling)
- HTTP status (for the API boundary)
- Metadata (ids involved, for logs)

Only StorageUnavailable is retryable. Everything else is returned to the
caller as-is and never retried automatically.
"""

from typing import Any, Dict, Optional


class PaymentEngineError(Exception):
    """Base exception for all engine errors."""

    def __init__(
        self,
        message: str,
        error_code: str,
        http_status: int = 500,
        retryable: bool = False,
        **kwargs: Any,
    ):
        super().__init__(message)
        self.message = message
        self.error_code = error_code
        self.http_status = http_status
        self.retryable = retryable
        self.metadata = kwargs

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dict for API responses"""
        return {
            "error": {
                "code": self.error_code,
                "message": self.message,
                "type": self.__class__.__name__,
            }
        }


# ============================================================================
# REQUEST ERRORS
# ============================================================================


class InvalidInput(PaymentEngineError):
    """Malformed amount, currency or instrument shape."""

    def __init__(self, message: str, field: Optional[str] = None, **kwargs: Any):
        super().__init__(
            message=message,
            error_code="invalid_input",
            http_status=400,
            field=field,
            **kwargs,
        )
        self.field = field


class ValidationFailed(PaymentEngineError):
    """
    Instrument content failed validation (Luhn, expiry, CVV, VPA format).

    Distinct from InvalidInput: the request was well formed, the card or
    VPA itself is not acceptable.
    """

    def __init__(self, reason: str, **kwargs: Any):
        super().__init__(
            message=f"Instrument validation failed: {reason}",
            error_code="validation_failed",
            http_status=400,
            reason=reason,
            **kwargs,
        )
        self.reason = reason


class NotFound(PaymentEngineError):
    """Unknown (or foreign-merchant) order, payment or refund."""

    def __init__(self, entity: str, entity_id: str, **kwargs: Any):
        super().__init__(
            message=f"{entity.capitalize()} not found: {entity_id}",
            error_code=f"{entity}_not_found",
            http_status=404,
            entity_id=entity_id,
            **kwargs,
        )
        self.entity = entity
        self.entity_id = entity_id


class DuplicatePayment(PaymentEngineError):
    """A payment attempt is already in flight for this order."""

    def __init__(self, order_id: str, **kwargs: Any):
        super().__init__(
            message=f"Order {order_id} already has a payment in processing",
            error_code="duplicate_payment",
            http_status=409,
            order_id=order_id,
            **kwargs,
        )
        self.order_id = order_id


class InvalidTransition(PaymentEngineError):
    """Operation incompatible with the entity's current status."""

    def __init__(self, entity: str, current: str, target: str, **kwargs: Any):
        super().__init__(
            message=f"Cannot move {entity} from '{current}' to '{target}'",
            error_code="invalid_transition",
            http_status=409,
            current_status=current,
            target_status=target,
            **kwargs,
        )
        self.entity = entity
        self.current = current
        self.target = target


# ============================================================================
# OPERATIONAL ERRORS
# ============================================================================


class StorageUnavailable(PaymentEngineError):
    """Transient ledger store failure. Safe to retry."""

    def __init__(self, message: str = "Ledger store unavailable", **kwargs: Any):
        super().__init__(
            message=message,
            error_code="storage_unavailable",
            http_status=503,
            retryable=True,
            **kwargs,
        )


class SettlementExhausted(PaymentEngineError):
    """
    Settlement retry budget ran out.

    Surfaced to monitoring only; the payment stays in processing and shows
    up in the stuck-payment scan.
    """

    def __init__(self, payment_id: str, attempts: int, **kwargs: Any):
        super().__init__(
            message=f"Settlement of {payment_id} abandoned after {attempts} attempts",
            error_code="settlement_exhausted",
            http_status=500,
            payment_id=payment_id,
            attempts=attempts,
            **kwargs,
        )
        self.payment_id = payment_id
        self.attempts = attempts


# ============================================================================
# STORE-INTERNAL
# ============================================================================


class ConflictError(Exception):
    """
    Raised by a ledger store when a guarded write loses.

    Never leaves the engine: it is translated into DuplicatePayment,
    InvalidTransition or InvalidInput depending on the operation.
    """

    def __init__(self, entity_id: str, expected: Any = None, current: Any = None):
        self.entity_id = entity_id
        self.expected = expected
        self.current = current
        super().__init__(
            f"Conflict on {entity_id}: expected {expected}, current {current}"
        )
