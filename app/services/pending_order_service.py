import logging
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Dict, Iterable, List, Optional

from sqlalchemy import update
from sqlmodel import Session, select

from app.constants.order_status import OPEN_PENDING_STATUSES, PendingOrderStatus
from app.exceptions import (
    IdentifierAllocationFailed,
    InsufficientStock,
    PaymentGatewayError,
    PaymentGatewayUnavailable,
    PendingOrderClosed,
    PendingOrderNotFound,
    ValidationError,
)
from app.models.payment_transaction import PaymentTransaction
from app.models.pending_order import PendingOrder
from app.models.product import Product
from app.models.user import User
from app.services.identifiers import IdentifierGenerator
from app.services.inventory_service import InventoryLedger
from app.services.payment_service import PaymentGatewayClient, to_minor_units

logger = logging.getLogger(__name__)

TWO_PLACES = Decimal("0.01")
REQUIRED_DELIVERY_FIELDS = ("street", "city", "phone")
MAX_REFERENCE_ATTEMPTS = 5


def _merge_lines(line_items: Iterable) -> Dict[int, int]:
    merged: Dict[int, int] = {}
    for line in line_items:
        product_id = line["product_id"] if isinstance(line, dict) else line.product_id
        quantity = line["quantity"] if isinstance(line, dict) else line.quantity
        if quantity is None or int(quantity) < 1:
            raise ValidationError(f"Quantity for product {product_id} must be at least 1")
        merged[product_id] = merged.get(product_id, 0) + int(quantity)
    return merged


class PendingOrderManager:
    """Turns a cart into a PendingOrder with an open gateway payment session."""

    def __init__(
        self,
        gateway: PaymentGatewayClient,
        frontend_url: str,
        ttl_hours: int = 24,
        currency: str = "INR",
        identifiers: Optional[IdentifierGenerator] = None,
        ledger: Optional[InventoryLedger] = None,
    ):
        self.gateway = gateway
        self.frontend_url = frontend_url.rstrip("/")
        self.ttl_hours = ttl_hours
        self.currency = currency
        self.identifiers = identifiers or IdentifierGenerator()
        self.ledger = ledger or InventoryLedger()

    def callback_url(self, reference: str) -> str:
        return f"{self.frontend_url}/payment/callback?reference={reference}"

    def create_pending_order(
        self,
        session: Session,
        user: User,
        line_items: Iterable,
        delivery_info: dict,
        discount: Decimal = Decimal("0"),
        credits: Decimal = Decimal("0"),
    ) -> dict:
        wanted = _merge_lines(line_items)
        if not wanted:
            raise ValidationError("Cart is empty")

        missing = [f for f in REQUIRED_DELIVERY_FIELDS if not (delivery_info or {}).get(f)]
        if missing:
            raise ValidationError(f"Delivery information is missing: {', '.join(missing)}")

        discount = Decimal(discount or 0).quantize(TWO_PLACES)
        credits = Decimal(credits or 0).quantize(TWO_PLACES)
        if discount < 0 or credits < 0:
            raise ValidationError("Discount and credits cannot be negative")

        products = session.exec(select(Product).where(Product.id.in_(list(wanted)))).all()
        by_id = {p.id: p for p in products}
        unknown = [pid for pid in wanted if pid not in by_id or not by_id[pid].is_active]
        if unknown:
            raise ValidationError(f"Products not available for sale: {unknown}", product_ids=unknown)

        shortfalls = self.ledger.check_availability(session, wanted.items())
        if shortfalls:
            raise InsufficientStock(shortfalls)

        snapshot: List[dict] = []
        subtotal = Decimal("0.00")
        for product_id, quantity in wanted.items():
            product = by_id[product_id]
            unit_price = Decimal(product.price).quantize(TWO_PLACES)
            line_total = (unit_price * quantity).quantize(TWO_PLACES)
            subtotal += line_total
            snapshot.append({
                "product_id": product_id,
                "name": product.name,
                "unit_price": str(unit_price),
                "quantity": quantity,
                "line_total": str(line_total),
            })

        total = subtotal - discount - credits
        if total <= 0:
            raise ValidationError("Order total must be greater than zero")

        reference = self._unused_reference(session)
        now = datetime.utcnow()
        expires_at = now + timedelta(hours=self.ttl_hours)

        # gateway first: nothing is written if it is unreachable
        try:
            gateway_session = self.gateway.initialize_session(
                reference,
                to_minor_units(total),
                self.callback_url(reference),
                customer={
                    "name": user.full_name,
                    "email": user.email,
                    "contact": delivery_info.get("phone") or user.phone_number,
                },
                expire_by=expires_at,
            )
        except PaymentGatewayError as e:
            logger.error(f"Could not open payment session for user {user.id}: {e}")
            raise PaymentGatewayUnavailable("Payment provider is unavailable, please try again") from e

        address = {k: v for k, v in delivery_info.items() if k != "notes"}
        pending = PendingOrder(
            user_id=user.id,
            line_items=snapshot,
            subtotal=subtotal,
            discount=discount,
            credits=credits,
            total=total,
            currency=self.currency,
            delivery_address=address,
            delivery_notes=delivery_info.get("notes"),
            payment_reference=reference,
            status=PendingOrderStatus.initialized.value,
            meta={"customer": {"name": user.full_name, "email": user.email, "phone": user.phone_number}},
            created_at=now,
            updated_at=now,
            expires_at=expires_at,
        )
        session.add(pending)
        session.flush()

        pending.payment_session_id = gateway_session.session_id
        pending.payment_session_url = gateway_session.url
        pending.status = PendingOrderStatus.pending.value
        session.add(pending)

        session.add(PaymentTransaction(
            reference=reference,
            kind="initialize",
            status="pending",
            amount=total,
            provider=self.gateway.provider,
            provider_response=gateway_session.raw,
            pending_order_id=pending.id,
            user_id=user.id,
        ))
        session.commit()
        session.refresh(pending)

        logger.info(f"Pending order {pending.id} created for user {user.id} ({reference}, {total})")
        return {
            "pending_order_id": pending.id,
            "payment_reference": reference,
            "checkout_url": gateway_session.url,
            "amount": total,
            "currency": self.currency,
            "expires_at": expires_at.isoformat(),
        }

    def _unused_reference(self, session: Session) -> str:
        for _ in range(MAX_REFERENCE_ATTEMPTS):
            reference = self.identifiers.payment_reference()
            taken = session.exec(
                select(PendingOrder.id).where(PendingOrder.payment_reference == reference)
            ).first()
            if not taken:
                return reference
        raise IdentifierAllocationFailed("Could not allocate a payment reference, please retry")

    def get_pending_order(self, session: Session, pending_order_id: str, user: User) -> PendingOrder:
        pending = session.get(PendingOrder, pending_order_id)
        if not pending or pending.user_id != user.id:
            raise PendingOrderNotFound("Pending order not found")
        return pending

    def cancel_pending_order(self, session: Session, pending_order_id: str, user: User) -> PendingOrder:
        pending = self.get_pending_order(session, pending_order_id, user)

        result = session.execute(
            update(PendingOrder)
            .where(PendingOrder.id == pending.id)
            .where(PendingOrder.status.in_(OPEN_PENDING_STATUSES))
            .values(status=PendingOrderStatus.cancelled.value, updated_at=datetime.utcnow())
            .execution_options(synchronize_session=False)
        )
        session.commit()
        session.refresh(pending)

        if result.rowcount != 1:
            if pending.status == PendingOrderStatus.cancelled.value:
                return pending
            if pending.status == PendingOrderStatus.success.value:
                raise ValidationError("Payment already completed for this order", order_id=pending.converted_order_id)
            raise PendingOrderClosed(f"Pending order is already {pending.status}")

        logger.info(f"Pending order {pending.id} cancelled by user {user.id}")
        return pending
