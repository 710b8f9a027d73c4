from typing import Optional

from pydantic import BaseModel


class OrderStatusUpdate(BaseModel):
    status: str
    reason: Optional[str] = None


class CancelOrderRequest(BaseModel):
    reason: Optional[str] = None


class ReviewResolveRequest(BaseModel):
    status: str  # refunded | dismissed
    note: Optional[str] = None
