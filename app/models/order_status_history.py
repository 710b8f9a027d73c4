from datetime import datetime
from typing import Optional

from sqlmodel import SQLModel, Field


class OrderStatusHistory(SQLModel, table=True):
    __tablename__ = "order_status_history"

    id: Optional[int] = Field(default=None, primary_key=True)
    order_id: int = Field(foreign_key="order.id", index=True)

    old_status: Optional[str] = None
    new_status: str
    actor: str = Field(default="system")  # system | user:<id> | admin:<id>
    reason: Optional[str] = None

    created_at: datetime = Field(default_factory=datetime.utcnow)
