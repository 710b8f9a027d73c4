# app/schemas/checkout_schemas.py
from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel, Field


class CartLine(BaseModel):
    product_id: int
    quantity: int


class DeliveryInfo(BaseModel):
    full_name: Optional[str] = None
    street: str = Field(min_length=1)
    city: str = Field(min_length=1)
    state: Optional[str] = None
    postal_code: Optional[str] = None
    country: Optional[str] = None
    phone: str = Field(min_length=1)
    notes: Optional[str] = None


class CreateOrderRequest(BaseModel):
    # prices and totals sent by the client are ignored (extra fields dropped)
    items: List[CartLine]
    delivery: DeliveryInfo
    discount: Decimal = Decimal("0")
    credits: Decimal = Decimal("0")


class CreateOrderResponse(BaseModel):
    pending_order_id: str
    payment_reference: str
    checkout_url: str
    amount: float
    currency: str
    expires_at: str


class VerifyPaymentRequest(BaseModel):
    reference: str = Field(min_length=1)
