from enum import Enum


class OrderStatus(str, Enum):
    pending = "pending"
    processing = "processing"
    shipped = "shipped"
    delivered = "delivered"
    cancelled = "cancelled"
    failed = "failed"


class PaymentStatus(str, Enum):
    pending = "pending"
    paid = "paid"
    failed = "failed"
    refunded = "refunded"
    cancelled = "cancelled"


class PendingOrderStatus(str, Enum):
    initialized = "initialized"   # row written, session not attached yet
    pending = "pending"           # customer sent to hosted checkout
    success = "success"
    failed = "failed"
    cancelled = "cancelled"
    abandoned = "abandoned"


ALLOWED_TRANSITIONS = {
    "pending": ["processing", "cancelled", "failed"],
    "processing": ["shipped", "cancelled", "failed"],
    "shipped": ["delivered", "failed"],
    "delivered": [],
    "failed": [],
    "cancelled": []
}

# customers (and operators) may only cancel before shipping
CANCELLABLE_STATUSES = ("pending", "processing")

# pending orders that finalize may still claim
OPEN_PENDING_STATUSES = ("initialized", "pending")

CLOSED_PENDING_STATUSES = ("cancelled", "abandoned")
