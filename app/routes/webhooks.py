import logging

from fastapi import APIRouter, Depends, Request
from fastapi.concurrency import run_in_threadpool
from sqlmodel import Session

from app.database import get_session
from app.dependencies.services import get_reconciliation_engine
from app.services.reconciliation_service import PaymentReconciliationEngine

logger = logging.getLogger(__name__)

router = APIRouter()

SIGNATURE_HEADER = "X-Razorpay-Signature"


@router.post("/payment-gateway")
async def payment_gateway_webhook(
    request: Request,
    session: Session = Depends(get_session),
    engine: PaymentReconciliationEngine = Depends(get_reconciliation_engine),
):
    # signature is computed over the exact bytes received
    body = await request.body()
    signature = request.headers.get(SIGNATURE_HEADER)

    outcome = await run_in_threadpool(engine.handle_notification, session, body, signature)
    logger.info(f"Payment webhook handled: {outcome}")

    # always 200 so the gateway does not retry
    return {"received": True, **outcome}
