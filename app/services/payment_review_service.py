import logging
from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from app.exceptions import ReviewNotFound, ValidationError
from app.models.order import Order
from app.models.payment_review import PaymentReview, ReviewReason, ReviewStatus

logger = logging.getLogger(__name__)

RESOLVED_STATUSES = (ReviewStatus.REFUNDED, ReviewStatus.DISMISSED)


def enqueue_review(
    session: Session,
    payment_reference: str,
    reason: str,
    *,
    amount: Optional[Decimal] = None,
    pending_order_id: Optional[str] = None,
    order_id: Optional[int] = None,
    user_id: Optional[int] = None,
    details: Optional[dict] = None,
) -> PaymentReview:
    """
    Put a payment in front of an operator. Idempotent on (reference, reason):
    repeated triggers return the review already queued.

    Commits its own transaction.
    """

    existing = _find(session, payment_reference, reason)
    if existing:
        return existing

    review = PaymentReview(
        payment_reference=payment_reference,
        reason=reason,
        amount=amount,
        pending_order_id=pending_order_id,
        order_id=order_id,
        user_id=user_id,
        details=details,
    )
    session.add(review)
    try:
        session.commit()
    except IntegrityError:
        session.rollback()
        existing = _find(session, payment_reference, reason)
        if existing is None:
            raise
        return existing

    session.refresh(review)
    logger.warning(f"Payment {payment_reference} queued for manual review ({reason})")
    return review


def _find(session: Session, payment_reference: str, reason: str) -> Optional[PaymentReview]:
    return session.exec(
        select(PaymentReview)
        .where(PaymentReview.payment_reference == payment_reference)
        .where(PaymentReview.reason == reason)
    ).first()


def list_reviews(session: Session, status: Optional[str] = None) -> List[PaymentReview]:
    query = select(PaymentReview)
    if status:
        query = query.where(PaymentReview.status == status)
    return session.exec(query.order_by(PaymentReview.created_at.desc())).all()


def resolve_review(
    session: Session,
    review_id: int,
    admin_id: int,
    status: str,
    note: Optional[str] = None,
) -> PaymentReview:
    if status not in RESOLVED_STATUSES:
        raise ValidationError(f"Review can only be resolved as {' or '.join(RESOLVED_STATUSES)}")

    review = session.get(PaymentReview, review_id)
    if not review:
        raise ReviewNotFound("Payment review not found")

    if review.status != ReviewStatus.OPEN:
        raise ValidationError(f"Review already {review.status}")

    review.status = status
    review.resolution_note = note
    review.resolved_by = admin_id
    review.resolved_at = datetime.utcnow()
    session.add(review)

    if status == ReviewStatus.REFUNDED and review.reason == ReviewReason.ORDER_CANCELLED and review.order_id:
        order = session.get(Order, review.order_id)
        if order:
            order.payment_status = "refunded"
            order.updated_at = datetime.utcnow()
            session.add(order)

    session.commit()
    session.refresh(review)
    logger.info(f"Payment review {review_id} marked {status} by admin {admin_id}")
    return review
