from sqlmodel import SQLModel, Field, Relationship
from sqlalchemy import Column, JSON
from typing import List, Optional
from decimal import Decimal
from datetime import datetime

from app.models.order_item import OrderItem


class Order(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)

    order_code: str = Field(unique=True, index=True)       # ORD-AC23-233E
    invoice_number: str = Field(unique=True, index=True)   # 4787837473

    # one order per payment session, enforced by the database
    payment_reference: str = Field(unique=True, index=True)
    pending_order_id: str = Field(foreign_key="pending_order.id", unique=True)

    user_id: int = Field(foreign_key="user.id", index=True)

    status: str = Field(default="pending", index=True)
    payment_status: str = Field(default="pending", index=True)

    subtotal: Decimal = Field(max_digits=12, decimal_places=2)
    discount: Decimal = Field(default=Decimal("0.00"), max_digits=12, decimal_places=2)
    credits: Decimal = Field(default=Decimal("0.00"), max_digits=12, decimal_places=2)
    total: Decimal = Field(max_digits=12, decimal_places=2)
    currency: str = Field(default="INR")

    delivery_address: dict = Field(sa_column=Column(JSON, nullable=False))
    delivery_notes: Optional[str] = None

    invoice_pdf_url: Optional[str] = None
    invoice_image_url: Optional[str] = None
    invoice_qr_payload: Optional[str] = None

    paid_at: Optional[datetime] = None
    shipped_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None

    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    items: List["OrderItem"] = Relationship(back_populates="order")
