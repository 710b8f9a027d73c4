from sqlmodel import SQLModel, Field
from sqlalchemy import CheckConstraint
from typing import Optional
from decimal import Decimal
from datetime import datetime


class Product(SQLModel, table=True):
    # ledger column can never go negative, whatever the caller does
    __table_args__ = (
        CheckConstraint("stock >= 0", name="ck_product_stock_non_negative"),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    name: str
    description: Optional[str] = None
    category_name: Optional[str] = None
    image: Optional[str] = None

    price: Decimal = Field(max_digits=12, decimal_places=2)
    stock: int = Field(default=0)
    is_active: bool = Field(default=True)

    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)
