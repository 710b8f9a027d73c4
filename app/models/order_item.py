from sqlmodel import SQLModel, Field , Relationship
from typing import Optional , TYPE_CHECKING
from decimal import Decimal

if TYPE_CHECKING:
    from app.models.order import Order

class OrderItem(SQLModel, table=True):
    __tablename__ = "order_item"

    id: Optional[int] = Field(default=None, primary_key=True)
    order_id: int = Field(foreign_key="order.id", index=True)
    product_id: int = Field(foreign_key="product.id", index=True)

    # snapshot at order time, never joined back to the live catalog
    product_name: str
    unit_price: Decimal = Field(max_digits=12, decimal_places=2)
    quantity: int
    line_total: Decimal = Field(max_digits=12, decimal_places=2)

    order: Optional["Order"] = Relationship(back_populates="items")
