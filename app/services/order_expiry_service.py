import logging
from datetime import datetime
from typing import Optional

from sqlalchemy import update
from sqlmodel import Session

from app.models.pending_order import PendingOrder

logger = logging.getLogger(__name__)


def expire_pending_orders(session: Session, now: Optional[datetime] = None) -> int:
    """
    Mark every pending order past its expiry as abandoned.

    One conditional UPDATE, so a row finalize claims in the meantime
    (status already 'success') is left alone.
    """
    now = now or datetime.utcnow()

    result = session.execute(
        update(PendingOrder)
        .where(PendingOrder.status.in_(("initialized", "pending")))
        .where(PendingOrder.expires_at <= now)
        .values(status="abandoned", updated_at=now)
        .execution_options(synchronize_session=False)
    )
    session.commit()

    count = result.rowcount or 0
    if count:
        logger.info(f"Abandoned {count} expired pending orders")
    return count
