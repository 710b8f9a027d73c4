from datetime import datetime
from decimal import Decimal
from typing import List, Optional
from uuid import uuid4

from sqlmodel import SQLModel, Field
from sqlalchemy import Column, JSON


class PendingOrder(SQLModel, table=True):
    """
    A cart waiting for the gateway to confirm payment.

    Rows are never deleted; they only reach a terminal status
    (success / failed / cancelled / abandoned).
    """

    __tablename__ = "pending_order"

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    user_id: int = Field(foreign_key="user.id", index=True)

    # [{product_id, name, unit_price, quantity, line_total}] captured at creation
    line_items: List[dict] = Field(sa_column=Column(JSON, nullable=False))

    subtotal: Decimal = Field(max_digits=12, decimal_places=2)
    discount: Decimal = Field(default=Decimal("0.00"), max_digits=12, decimal_places=2)
    credits: Decimal = Field(default=Decimal("0.00"), max_digits=12, decimal_places=2)
    total: Decimal = Field(max_digits=12, decimal_places=2)
    currency: str = Field(default="INR")

    delivery_address: dict = Field(sa_column=Column(JSON, nullable=False))
    delivery_notes: Optional[str] = None

    payment_reference: str = Field(unique=True, index=True)
    payment_session_id: Optional[str] = None
    payment_session_url: Optional[str] = None

    status: str = Field(default="initialized", index=True)

    # customer snapshot for the invoice
    meta: Optional[dict] = Field(default=None, sa_column=Column(JSON))

    converted_order_id: Optional[int] = Field(default=None)
    converted_at: Optional[datetime] = None

    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)
    expires_at: datetime = Field(index=True)
