import logging
from datetime import datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy import func, update
from sqlmodel import Session, select

from app.constants.order_status import ALLOWED_TRANSITIONS, CANCELLABLE_STATUSES, OrderStatus, PaymentStatus
from app.exceptions import InvalidStatusTransition, OrderNotFound
from app.models.order import Order
from app.models.order_item import OrderItem
from app.models.payment_review import PaymentReview, ReviewReason, ReviewStatus
from app.services.inventory_service import InventoryLedger
from app.services.order_history_service import record_status_change
from app.services.payment_review_service import enqueue_review

logger = logging.getLogger(__name__)

# timestamp column stamped when an order enters the status
STATUS_TIMESTAMPS = {
    "shipped": "shipped_at",
    "delivered": "delivered_at",
    "cancelled": "cancelled_at",
}


class OrderStateMachine:
    def __init__(self, ledger: Optional[InventoryLedger] = None):
        self.ledger = ledger or InventoryLedger()

    def transition(
        self,
        session: Session,
        order: Order,
        new_status: str,
        actor: str = "system",
        reason: Optional[str] = None,
    ) -> Order:
        if new_status == OrderStatus.cancelled.value:
            return self.cancel(session, order, actor=actor, reason=reason)

        old_status = order.status
        if new_status not in ALLOWED_TRANSITIONS.get(old_status, []):
            raise InvalidStatusTransition(old_status, new_status)

        now = datetime.utcnow()
        values = {"status": new_status, "updated_at": now}
        if new_status in STATUS_TIMESTAMPS:
            values[STATUS_TIMESTAMPS[new_status]] = now

        # compare-and-set on the status we validated against
        result = session.execute(
            update(Order)
            .where(Order.id == order.id)
            .where(Order.status == old_status)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            session.rollback()
            session.refresh(order)
            raise InvalidStatusTransition(order.status, new_status)

        record_status_change(session, order.id, old_status, new_status, actor=actor, reason=reason)
        session.commit()
        session.refresh(order)

        logger.info(f"Order {order.order_code}: {old_status} → {new_status} by {actor}")
        return order

    def cancel(
        self,
        session: Session,
        order: Order,
        actor: str = "system",
        reason: Optional[str] = None,
    ) -> Order:
        """
        Cancel before shipping. Every OrderItem quantity goes back to stock;
        a paid order is queued for a manual refund.
        """
        old_status = order.status
        if old_status not in CANCELLABLE_STATUSES:
            raise InvalidStatusTransition(old_status, OrderStatus.cancelled.value)

        now = datetime.utcnow()
        result = session.execute(
            update(Order)
            .where(Order.id == order.id)
            .where(Order.status == old_status)
            .values(status=OrderStatus.cancelled.value, cancelled_at=now, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            session.rollback()
            session.refresh(order)
            raise InvalidStatusTransition(order.status, OrderStatus.cancelled.value)

        items = session.exec(select(OrderItem).where(OrderItem.order_id == order.id)).all()
        restocked = self.ledger.restock_all(session, [(i.product_id, i.quantity) for i in items])

        record_status_change(
            session, order.id, old_status, OrderStatus.cancelled.value, actor=actor, reason=reason
        )
        session.commit()
        session.refresh(order)

        logger.info(f"Order {order.order_code} cancelled by {actor}; {restocked} lines restocked")

        if order.payment_status == PaymentStatus.paid.value:
            enqueue_review(
                session, order.payment_reference, ReviewReason.ORDER_CANCELLED,
                amount=order.total,
                pending_order_id=order.pending_order_id,
                order_id=order.id,
                user_id=order.user_id,
                details={"cancelled_by": actor, "reason": reason},
            )
        return order


def get_order(session: Session, order_id: int) -> Order:
    order = session.get(Order, order_id)
    if not order:
        raise OrderNotFound("Order not found")
    return order


def get_order_stats(session: Session) -> dict:
    rows = session.exec(
        select(Order.status, func.count(Order.id), func.coalesce(func.sum(Order.total), 0))
        .group_by(Order.status)
    ).all()

    by_status = {status.value: 0 for status in OrderStatus}
    revenue = Decimal("0.00")
    for status, count, total in rows:
        by_status[status] = count
        if status != OrderStatus.cancelled.value:
            revenue += Decimal(str(total))

    open_reviews = session.exec(
        select(func.count(PaymentReview.id)).where(PaymentReview.status == ReviewStatus.OPEN)
    ).one()

    return {
        "total_orders": sum(by_status.values()),
        "by_status": by_status,
        "revenue": revenue.quantize(Decimal("0.01")),
        "open_payment_reviews": open_reviews,
    }
