import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Callable, Optional, Tuple

from sqlalchemy import or_, update
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from app.constants.order_status import (
    CLOSED_PENDING_STATUSES,
    OPEN_PENDING_STATUSES,
    OrderStatus,
    PaymentStatus,
    PendingOrderStatus,
)
from app.exceptions import (
    InsufficientStock,
    InvoiceGenerationError,
    NotificationAuthenticationFailed,
    OrderError,
    OrderNotFound,
    PaymentAmountMismatch,
    PaymentFailed,
    PaymentGatewayError,
    PaymentGatewayUnavailable,
    PaymentNotConfirmed,
    PendingOrderClosed,
    PendingOrderNotFound,
    StockExhaustedAfterPayment,
)
from app.models.order import Order
from app.models.order_item import OrderItem
from app.models.payment_review import ReviewReason
from app.models.payment_transaction import PaymentTransaction
from app.models.pending_order import PendingOrder
from app.models.user import User
from app.services.identifiers import IdentifierGenerator
from app.services.inventory_service import InventoryLedger
from app.services.invoice_service import InvoicePipeline
from app.services.order_history_service import record_status_change
from app.services.payment_review_service import enqueue_review
from app.services.payment_service import (
    FAILED,
    PENDING,
    GatewayVerification,
    PaymentGatewayClient,
    extract_reference,
    parse_notification,
    to_minor_units,
)

logger = logging.getLogger(__name__)

MAX_IDENTIFIER_ATTEMPTS = 5
MAX_CONVERSION_ATTEMPTS = 3

HANDLED_EVENTS = (
    "payment_link.paid",
    "payment_link.cancelled",
    "payment_link.expired",
    "payment.captured",
    "payment.failed",
)

INVOICE_READY = "ready"
INVOICE_PENDING = "pending"


@dataclass
class FinalizeResult:
    order: Order
    already_processed: bool
    invoice_status: str

    def as_dict(self, resolve_url: Optional[Callable[[Optional[str]], Optional[str]]] = None) -> dict:
        order = self.order
        resolve_url = resolve_url or (lambda location: location)
        return {
            "order_id": order.id,
            "order_code": order.order_code,
            "invoice_number": order.invoice_number,
            "payment_reference": order.payment_reference,
            "status": order.status,
            "payment_status": order.payment_status,
            "total": order.total,
            "currency": order.currency,
            "invoice_pdf_url": resolve_url(order.invoice_pdf_url),
            "invoice_image_url": resolve_url(order.invoice_image_url),
            "invoice_status": self.invoice_status,
            "already_processed": self.already_processed,
        }


def _invoice_status(order: Order) -> str:
    return INVOICE_READY if order.invoice_pdf_url else INVOICE_PENDING


class PaymentReconciliationEngine:
    """
    Turns a confirmed payment into exactly one Order, whichever path
    (customer verify or gateway notification) gets there first.

    The only authority on payment state is a fresh verify_transaction call;
    notification bodies are never trusted beyond the reference they carry.
    Exclusion comes from the database: the conditional claim on the pending
    row, conditional stock decrements and UNIQUE(order.payment_reference).
    """

    def __init__(
        self,
        gateway: PaymentGatewayClient,
        invoices: Optional[InvoicePipeline] = None,
        identifiers: Optional[IdentifierGenerator] = None,
        ledger: Optional[InventoryLedger] = None,
    ):
        self.gateway = gateway
        self.invoices = invoices
        self.identifiers = identifiers or IdentifierGenerator()
        self.ledger = ledger or InventoryLedger()

    # ------------------------------------------------------------------
    # entry points
    # ------------------------------------------------------------------

    def verify_payment(self, session: Session, reference: str, user: User) -> FinalizeResult:
        return self.finalize(session, reference, user=user)

    def handle_notification(self, session: Session, raw_body: bytes, signature: Optional[str]) -> dict:
        """
        Gateway push. Always acknowledged: the caller answers 200 whatever
        this returns, so the gateway stops redelivering.
        """
        try:
            self.authenticate(raw_body, signature)
        except NotificationAuthenticationFailed as e:
            logger.warning(f"Payment notification rejected: {e.message}")
            return {"status": "ignored", "reason": "invalid_signature"}

        try:
            event = parse_notification(raw_body)
        except ValueError:
            logger.warning("Payment notification rejected: body is not JSON")
            return {"status": "ignored", "reason": "invalid_body"}

        event_name = event.get("event")
        reference = extract_reference(event)
        if not reference:
            logger.info(f"Payment notification {event_name} carries no reference, ignoring")
            return {"status": "ignored", "reason": "no_reference"}

        pending = self._pending_by_reference(session, reference)
        session.add(PaymentTransaction(
            reference=reference,
            kind="notification",
            status=event_name or "unknown",
            provider=self.gateway.provider,
            provider_event=event_name,
            provider_response=event,
            pending_order_id=pending.id if pending else None,
            user_id=pending.user_id if pending else None,
        ))
        session.commit()

        if event_name not in HANDLED_EVENTS:
            logger.info(f"Payment notification {event_name} for {reference} recorded, no action")
            return {"status": "ignored", "reason": "unhandled_event"}

        try:
            result = self.finalize(session, reference)
        except OrderError as e:
            session.rollback()
            logger.warning(f"Notification {event_name} for {reference} not finalized: {e.code} {e.message}")
            return {"status": "not_finalized", "reason": e.code}

        logger.info(f"Notification {event_name} for {reference} finalized order {result.order.order_code}")
        return {"status": "processed", "order_code": result.order.order_code}

    def authenticate(self, raw_body: bytes, signature: Optional[str]) -> None:
        if not signature:
            raise NotificationAuthenticationFailed("missing signature header")
        if not self.gateway.authenticate_notification(raw_body, signature):
            raise NotificationAuthenticationFailed("signature does not match payload")

    def payment_status(self, session: Session, reference: str, user: User) -> dict:
        pending = self._owned_pending(session, reference, user)
        order = self._order_for(session, reference)

        verification = self._verify(session, pending)
        return {
            "reference": reference,
            "status": verification.status,
            "amount": verification.amount,
            "pending_status": pending.status,
            "order_code": order.order_code if order else None,
        }

    def invoice_url(self, location: Optional[str]) -> Optional[str]:
        """Stored invoice location to an openable URL (presigned for private buckets)."""
        if self.invoices is None:
            return location
        return self.invoices.storage.resolve_url(location)

    def regenerate_invoice(self, session: Session, order_id: int) -> FinalizeResult:
        order = session.get(Order, order_id)
        if not order:
            raise OrderNotFound("Order not found")
        status = self._issue_invoice(session, order, force=True)
        return FinalizeResult(order=order, already_processed=True, invoice_status=status)

    # ------------------------------------------------------------------
    # finalize
    # ------------------------------------------------------------------

    def finalize(self, session: Session, reference: str, user: Optional[User] = None) -> FinalizeResult:
        if user is not None:
            pending = self._owned_pending(session, reference, user)
        else:
            pending = self._pending_by_reference(session, reference)
            if not pending:
                raise PendingOrderNotFound(f"No pending order for reference {reference}")

        # terminal state already reached: answer from the database
        existing = self._order_for(session, reference)
        if existing:
            return FinalizeResult(existing, already_processed=True, invoice_status=_invoice_status(existing))

        if pending.status == PendingOrderStatus.failed.value:
            raise PaymentFailed("Payment failed for this order", reference=reference)

        self._abandon_if_expired(session, pending)

        verification = self._verify(session, pending)

        if pending.status in CLOSED_PENDING_STATUSES:
            self._close_out(session, pending, verification)

        if verification.status == FAILED:
            self._mark_failed(session, pending)
            raise PaymentFailed("Payment was not successful", reference=reference)

        if verification.status == PENDING:
            raise PaymentNotConfirmed("Payment not confirmed yet", reference=reference)

        if verification.amount_minor != to_minor_units(pending.total):
            self._mark_failed(session, pending)
            enqueue_review(
                session, reference, ReviewReason.AMOUNT_MISMATCH,
                amount=verification.amount,
                pending_order_id=pending.id,
                user_id=pending.user_id,
                details={"expected": str(pending.total), "paid": str(verification.amount)},
            )
            raise PaymentAmountMismatch(
                "Paid amount does not match the order total",
                reference=reference,
                expected=str(pending.total),
                paid=str(verification.amount),
            )

        order, already = self._convert(session, pending, verification)
        if already:
            return FinalizeResult(order, already_processed=True, invoice_status=_invoice_status(order))

        invoice_status = self._issue_invoice(session, order)
        return FinalizeResult(order, already_processed=False, invoice_status=invoice_status)

    def _convert(self, session: Session, pending: PendingOrder, verification: GatewayVerification) -> Tuple[Order, bool]:
        reference = pending.payment_reference
        pending_id = pending.id

        for attempt in range(1, MAX_CONVERSION_ATTEMPTS + 1):
            try:
                order = self._create_order(session, pending, verification)
            except InsufficientStock as e:
                session.rollback()
                self._mark_failed(session, pending)
                enqueue_review(
                    session, reference, ReviewReason.STOCK_EXHAUSTED,
                    amount=verification.amount,
                    pending_order_id=pending_id,
                    user_id=pending.user_id,
                    details={"items": e.shortfalls},
                )
                logger.error(f"Payment {reference} succeeded but stock ran out: {e.shortfalls}")
                raise StockExhaustedAfterPayment(reference, e.shortfalls) from e
            except PaymentNotConfirmed:
                # claim and decrements are undone; the pending row stays claimable
                session.rollback()
                raise
            except IntegrityError as e:
                session.rollback()
                winner = self._order_for(session, reference)
                if winner:
                    logger.info(f"Order for {reference} created concurrently, returning {winner.order_code}")
                    return winner, True
                logger.warning(f"Identifier collision creating order for {reference} (attempt {attempt}): {e}")
                continue

            if order is None:
                # lost the claim
                session.rollback()
                winner = self._order_for(session, reference)
                if winner:
                    return winner, True
                session.refresh(pending)
                if pending.status in CLOSED_PENDING_STATUSES:
                    self._close_out(session, pending, verification)
                raise PaymentNotConfirmed(
                    f"Pending order is {pending.status}; order not created",
                    reference=reference,
                )

            logger.info(f"Order {order.order_code} created from {reference}")
            return order, False

        raise PaymentNotConfirmed("Could not allocate order identifiers, please retry", reference=reference)

    def _create_order(self, session: Session, pending: PendingOrder, verification: GatewayVerification) -> Optional[Order]:
        """One transaction: claim, decrement, insert. Returns None if another caller holds the claim."""
        now = datetime.utcnow()

        claimed = session.execute(
            update(PendingOrder)
            .where(PendingOrder.id == pending.id)
            .where(PendingOrder.status.in_(OPEN_PENDING_STATUSES))
            .values(status=PendingOrderStatus.success.value, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        if claimed.rowcount != 1:
            return None

        lines = [(line["product_id"], int(line["quantity"])) for line in pending.line_items]
        self.ledger.decrement_all(session, lines)

        order_code, invoice_number = self._fresh_identifiers(session)
        order = Order(
            order_code=order_code,
            invoice_number=invoice_number,
            payment_reference=pending.payment_reference,
            pending_order_id=pending.id,
            user_id=pending.user_id,
            status=OrderStatus.pending.value,
            payment_status=PaymentStatus.paid.value,
            subtotal=pending.subtotal,
            discount=pending.discount,
            credits=pending.credits,
            total=pending.total,
            currency=pending.currency,
            delivery_address=pending.delivery_address,
            delivery_notes=pending.delivery_notes,
            paid_at=verification.paid_at or now,
            created_at=now,
            updated_at=now,
        )
        session.add(order)
        session.flush()

        for line in pending.line_items:
            session.add(OrderItem(
                order_id=order.id,
                product_id=line["product_id"],
                product_name=line["name"],
                unit_price=Decimal(line["unit_price"]),
                quantity=int(line["quantity"]),
                line_total=Decimal(line["line_total"]),
            ))

        pending.status = PendingOrderStatus.success.value
        pending.converted_order_id = order.id
        pending.converted_at = now
        pending.updated_at = now
        session.add(pending)

        record_status_change(session, order.id, None, order.status, reason="payment confirmed")

        session.commit()
        session.refresh(order)
        return order

    def _fresh_identifiers(self, session: Session) -> Tuple[str, str]:
        for _ in range(MAX_IDENTIFIER_ATTEMPTS):
            order_code = self.identifiers.order_code()
            invoice_number = self.identifiers.invoice_number()
            clash = session.exec(
                select(Order.id).where(
                    or_(Order.order_code == order_code, Order.invoice_number == invoice_number)
                )
            ).first()
            if not clash:
                return order_code, invoice_number
        raise PaymentNotConfirmed("Could not allocate order identifiers, please retry")

    # ------------------------------------------------------------------
    # helpers
    # ------------------------------------------------------------------

    def _verify(self, session: Session, pending: PendingOrder) -> GatewayVerification:
        try:
            verification = self.gateway.verify_transaction(pending.payment_reference)
        except PaymentGatewayError as e:
            raise PaymentGatewayUnavailable(
                "Payment provider is unavailable, please retry",
                reference=pending.payment_reference,
            ) from e

        session.add(PaymentTransaction(
            reference=pending.payment_reference,
            kind="verify",
            status=verification.status,
            amount=verification.amount,
            provider=self.gateway.provider,
            provider_response=verification.raw,
            pending_order_id=pending.id,
            user_id=pending.user_id,
        ))
        session.commit()
        session.refresh(pending)
        return verification

    def _close_out(self, session: Session, pending: PendingOrder, verification: GatewayVerification) -> None:
        """Cancelled / abandoned rows never become orders; money that moved anyway goes to review."""
        if verification.succeeded:
            enqueue_review(
                session, pending.payment_reference, ReviewReason.LATE_PAYMENT,
                amount=verification.amount,
                pending_order_id=pending.id,
                user_id=pending.user_id,
                details={"pending_status": pending.status},
            )
        raise PendingOrderClosed(
            f"Pending order is {pending.status}",
            reference=pending.payment_reference,
        )

    def _abandon_if_expired(self, session: Session, pending: PendingOrder) -> None:
        now = datetime.utcnow()
        if pending.status not in OPEN_PENDING_STATUSES or pending.expires_at > now:
            return

        session.execute(
            update(PendingOrder)
            .where(PendingOrder.id == pending.id)
            .where(PendingOrder.status.in_(OPEN_PENDING_STATUSES))
            .values(status=PendingOrderStatus.abandoned.value, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        session.commit()
        session.refresh(pending)
        logger.info(f"Pending order {pending.id} expired, marked {pending.status}")

    def _mark_failed(self, session: Session, pending: PendingOrder) -> None:
        session.execute(
            update(PendingOrder)
            .where(PendingOrder.id == pending.id)
            .where(PendingOrder.status.in_(OPEN_PENDING_STATUSES))
            .values(status=PendingOrderStatus.failed.value, updated_at=datetime.utcnow())
            .execution_options(synchronize_session=False)
        )
        session.commit()
        session.refresh(pending)

    def _issue_invoice(self, session: Session, order: Order, force: bool = False) -> str:
        if order.invoice_pdf_url and not force:
            return INVOICE_READY
        if self.invoices is None:
            return _invoice_status(order)

        items = session.exec(select(OrderItem).where(OrderItem.order_id == order.id)).all()
        customer = session.get(User, order.user_id)

        try:
            artifacts = self.invoices.generate_invoice(order, items, customer)
        except InvoiceGenerationError as e:
            logger.error(f"Invoice for order {order.order_code} left pending: {e}")
            return _invoice_status(order)

        order.invoice_pdf_url = artifacts.document_url
        order.invoice_image_url = artifacts.image_url
        order.invoice_qr_payload = artifacts.qr_payload
        order.updated_at = datetime.utcnow()
        session.add(order)
        session.commit()
        session.refresh(order)
        return INVOICE_READY

    def _pending_by_reference(self, session: Session, reference: str) -> Optional[PendingOrder]:
        return session.exec(
            select(PendingOrder).where(PendingOrder.payment_reference == reference)
        ).first()

    def _owned_pending(self, session: Session, reference: str, user: User) -> PendingOrder:
        pending = self._pending_by_reference(session, reference)
        if not pending or pending.user_id != user.id:
            raise PendingOrderNotFound("Payment reference not found")
        return pending

    def _order_for(self, session: Session, reference: str) -> Optional[Order]:
        return session.exec(select(Order).where(Order.payment_reference == reference)).first()
