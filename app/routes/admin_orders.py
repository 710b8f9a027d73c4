from fastapi import APIRouter, Depends
from sqlmodel import Session

from app.database import get_session
from app.dependencies.services import get_reconciliation_engine
from app.models.user import User
from app.schemas.orders_schemas import ReviewResolveRequest
from app.services.order_state_machine import get_order_stats
from app.services.payment_review_service import list_reviews, resolve_review
from app.services.reconciliation_service import PaymentReconciliationEngine
from app.utils.token import get_current_admin

router = APIRouter()


def serialize_review(review) -> dict:
    return {
        "id": review.id,
        "payment_reference": review.payment_reference,
        "pending_order_id": review.pending_order_id,
        "order_id": review.order_id,
        "user_id": review.user_id,
        "reason": review.reason,
        "amount": review.amount,
        "status": review.status,
        "details": review.details,
        "resolution_note": review.resolution_note,
        "resolved_by": review.resolved_by,
        "resolved_at": review.resolved_at,
        "created_at": review.created_at,
    }


@router.get("/orders/stats")
def order_stats(
    session: Session = Depends(get_session),
    admin: User = Depends(get_current_admin),
):
    return get_order_stats(session)


@router.get("/payment-reviews")
def payment_reviews(
    status: str | None = "open",
    session: Session = Depends(get_session),
    admin: User = Depends(get_current_admin),
):
    return [serialize_review(r) for r in list_reviews(session, status)]


@router.post("/payment-reviews/{review_id}/resolve")
def resolve_payment_review(
    review_id: int,
    data: ReviewResolveRequest,
    session: Session = Depends(get_session),
    admin: User = Depends(get_current_admin),
):
    review = resolve_review(session, review_id, admin.id, data.status, data.note)
    return {"message": f"Review marked {review.status}", "review": serialize_review(review)}


@router.post("/orders/{order_id}/invoice")
def regenerate_invoice(
    order_id: int,
    session: Session = Depends(get_session),
    admin: User = Depends(get_current_admin),
    engine: PaymentReconciliationEngine = Depends(get_reconciliation_engine),
):
    result = engine.regenerate_invoice(session, order_id)
    return result.as_dict(engine.invoice_url)
