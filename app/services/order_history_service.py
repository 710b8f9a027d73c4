from datetime import datetime
from typing import Optional

from sqlmodel import Session

from app.models.order_status_history import OrderStatusHistory


def record_status_change(
    session: Session,
    order_id: int,
    old_status: Optional[str],
    new_status: str,
    actor: str = "system",
    reason: Optional[str] = None,
) -> OrderStatusHistory:
    """
    Append-only status history. Caller commits together with the status change.
    """

    entry = OrderStatusHistory(
        order_id=order_id,
        old_status=old_status,
        new_status=new_status,
        actor=actor,
        reason=reason,
        created_at=datetime.utcnow(),
    )
    session.add(entry)
    return entry
