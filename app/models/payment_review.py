from sqlmodel import SQLModel, Field
from sqlalchemy import Column, JSON, UniqueConstraint
from datetime import datetime
from typing import Optional
from decimal import Decimal


class PaymentReview(SQLModel, table=True):
    """
    Manual review queue for money that moved without a deliverable order:
    stock ran out after payment, amount mismatch, payment after expiry,
    or a paid order that was cancelled. Operators refund or dismiss.
    """

    __tablename__ = "payment_review"
    __table_args__ = (
        UniqueConstraint("payment_reference", "reason", name="uq_payment_review_reference_reason"),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    payment_reference: str = Field(index=True)
    pending_order_id: Optional[str] = Field(default=None, foreign_key="pending_order.id")
    order_id: Optional[int] = Field(default=None, foreign_key="order.id")
    user_id: Optional[int] = Field(default=None, foreign_key="user.id")

    reason: str  # stock_exhausted | amount_mismatch | late_payment | order_cancelled
    amount: Optional[Decimal] = Field(default=None, max_digits=12, decimal_places=2)
    status: str = Field(default="open", index=True)  # open | refunded | dismissed
    details: Optional[dict] = Field(default=None, sa_column=Column(JSON))

    resolution_note: Optional[str] = None
    resolved_by: Optional[int] = Field(default=None, foreign_key="user.id")
    resolved_at: Optional[datetime] = None

    created_at: datetime = Field(default_factory=datetime.utcnow)


class ReviewReason:
    STOCK_EXHAUSTED = "stock_exhausted"
    AMOUNT_MISMATCH = "amount_mismatch"
    LATE_PAYMENT = "late_payment"
    ORDER_CANCELLED = "order_cancelled"


class ReviewStatus:
    OPEN = "open"
    REFUNDED = "refunded"
    DISMISSED = "dismissed"
