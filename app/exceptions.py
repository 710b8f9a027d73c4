from typing import Any, Dict, List, Optional


class OrderError(Exception):
    """Base class for order/payment lifecycle errors surfaced to callers."""

    status_code = 400
    code = "order_error"

    def __init__(self, message: str, **extra: Any):
        super().__init__(message)
        self.message = message
        self.extra: Dict[str, Any] = extra


class ValidationError(OrderError):
    status_code = 400
    code = "validation_error"


class InsufficientStock(OrderError):
    status_code = 409
    code = "insufficient_stock"

    def __init__(self, shortfalls: List[dict], message: Optional[str] = None):
        names = ", ".join(s["name"] for s in shortfalls)
        super().__init__(
            message or f"Insufficient stock for: {names}",
            items=shortfalls,
        )
        self.shortfalls = shortfalls


class StockExhaustedAfterPayment(InsufficientStock):
    """Paid, but stock ran out before the order could be created. Needs a manual refund."""

    code = "stock_exhausted_after_payment"

    def __init__(self, reference: str, shortfalls: List[dict]):
        super().__init__(
            shortfalls,
            message=f"Payment {reference} received but items are no longer available; "
                    "a refund will be processed",
        )
        self.extra["reference"] = reference
        self.reference = reference


class PaymentGatewayUnavailable(OrderError):
    status_code = 503
    code = "payment_gateway_unavailable"


class IdentifierAllocationFailed(OrderError):
    """Random identifiers kept colliding. Nothing was written; the caller may retry."""

    status_code = 503
    code = "identifier_allocation_failed"


class PaymentNotConfirmed(OrderError):
    status_code = 409
    code = "payment_not_confirmed"


class PaymentFailed(OrderError):
    status_code = 402
    code = "payment_failed"


class PaymentAmountMismatch(OrderError):
    status_code = 409
    code = "payment_amount_mismatch"


class PendingOrderClosed(OrderError):
    status_code = 410
    code = "pending_order_closed"


class PendingOrderNotFound(OrderError):
    status_code = 404
    code = "pending_order_not_found"


class OrderNotFound(OrderError):
    status_code = 404
    code = "order_not_found"


class ReviewNotFound(OrderError):
    status_code = 404
    code = "review_not_found"


class InvalidStatusTransition(OrderError):
    status_code = 409
    code = "invalid_status_transition"

    def __init__(self, old_status: str, new_status: str):
        super().__init__(
            f"Invalid status change from {old_status} → {new_status}",
            old_status=old_status,
            new_status=new_status,
        )


class NotificationAuthenticationFailed(OrderError):
    """Logged only. The webhook endpoint still answers 200."""

    status_code = 200
    code = "notification_authentication_failed"


class InvoiceGenerationError(Exception):
    """Raised by the invoice pipeline; the caller degrades to 'invoice pending'."""


class PaymentGatewayError(Exception):
    """Transport or provider failure inside the gateway client."""
