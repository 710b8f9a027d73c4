from sqlmodel import SQLModel, Field
from sqlalchemy import Column, JSON
from typing import Optional
from decimal import Decimal
from datetime import datetime


class PaymentTransaction(SQLModel, table=True):
    """Append-only log of every gateway interaction. Rows are never updated."""

    __tablename__ = "payment_transaction"

    id: Optional[int] = Field(default=None, primary_key=True)

    reference: str = Field(index=True)
    kind: str = Field(index=True)  # initialize | verify | notification
    status: str                    # succeeded | failed | pending | <event name>

    amount: Optional[Decimal] = Field(default=None, max_digits=12, decimal_places=2)
    provider: str = Field(default="razorpay")
    provider_event: Optional[str] = None
    provider_response: Optional[dict] = Field(default=None, sa_column=Column(JSON))

    pending_order_id: Optional[str] = Field(default=None, index=True)
    order_id: Optional[int] = Field(default=None, index=True)
    user_id: Optional[int] = Field(default=None, index=True)

    created_at: datetime = Field(default_factory=datetime.utcnow)
