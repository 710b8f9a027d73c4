from fastapi import APIRouter, Depends, HTTPException, Query
from sqlmodel import Session, select

from app.database import get_session
from app.dependencies.services import (
    get_pending_order_manager,
    get_reconciliation_engine,
    get_state_machine,
)
from app.exceptions import OrderNotFound
from app.models.order import Order
from app.models.order_item import OrderItem
from app.models.user import User
from app.schemas.checkout_schemas import CreateOrderRequest, CreateOrderResponse, VerifyPaymentRequest
from app.schemas.orders_schemas import CancelOrderRequest, OrderStatusUpdate
from app.services.order_state_machine import OrderStateMachine, get_order
from app.services.pending_order_service import PendingOrderManager
from app.services.reconciliation_service import PaymentReconciliationEngine
from app.utils.pagination import paginate
from app.utils.token import actor_for, get_current_admin, get_current_user

router = APIRouter()


def serialize_order(order: Order, items=None, resolve_url=None) -> dict:
    resolve_url = resolve_url or (lambda location: location)
    data = {
        "id": order.id,
        "order_code": order.order_code,
        "invoice_number": order.invoice_number,
        "payment_reference": order.payment_reference,
        "status": order.status,
        "payment_status": order.payment_status,
        "subtotal": order.subtotal,
        "discount": order.discount,
        "credits": order.credits,
        "total": order.total,
        "currency": order.currency,
        "delivery_address": order.delivery_address,
        "delivery_notes": order.delivery_notes,
        "invoice_pdf_url": resolve_url(order.invoice_pdf_url),
        "invoice_image_url": resolve_url(order.invoice_image_url),
        "paid_at": order.paid_at,
        "shipped_at": order.shipped_at,
        "delivered_at": order.delivered_at,
        "cancelled_at": order.cancelled_at,
        "created_at": order.created_at,
    }
    if items is not None:
        data["items"] = [
            {
                "product_id": i.product_id,
                "product_name": i.product_name,
                "unit_price": i.unit_price,
                "quantity": i.quantity,
                "line_total": i.line_total,
            }
            for i in items
        ]
    return data


def _owned_order(session: Session, order_id: int, user: User) -> Order:
    order = session.get(Order, order_id)
    if not order or order.user_id != user.id:
        raise OrderNotFound("Order not found")
    return order


def _items(session: Session, order_id: int):
    return session.exec(select(OrderItem).where(OrderItem.order_id == order_id)).all()


@router.post("", status_code=201, response_model=CreateOrderResponse)
def create_order(
    data: CreateOrderRequest,
    session: Session = Depends(get_session),
    current_user: User = Depends(get_current_user),
    manager: PendingOrderManager = Depends(get_pending_order_manager),
):
    return manager.create_pending_order(
        session,
        current_user,
        data.items,
        data.delivery.model_dump(),
        discount=data.discount,
        credits=data.credits,
    )


@router.post("/verify-payment")
def verify_payment(
    data: VerifyPaymentRequest,
    session: Session = Depends(get_session),
    current_user: User = Depends(get_current_user),
    engine: PaymentReconciliationEngine = Depends(get_reconciliation_engine),
):
    result = engine.verify_payment(session, data.reference, current_user)
    return result.as_dict(engine.invoice_url)


@router.get("/payment-status")
def payment_status(
    reference: str = Query(..., min_length=1),
    session: Session = Depends(get_session),
    current_user: User = Depends(get_current_user),
    engine: PaymentReconciliationEngine = Depends(get_reconciliation_engine),
):
    return engine.payment_status(session, reference, current_user)


@router.get("")
def list_my_orders(
    page: int = 1,
    limit: int = 10,
    status: str | None = None,
    session: Session = Depends(get_session),
    current_user: User = Depends(get_current_user),
    engine: PaymentReconciliationEngine = Depends(get_reconciliation_engine),
):
    query = select(Order).where(Order.user_id == current_user.id)
    if status:
        query = query.where(Order.status == status)
    query = query.order_by(Order.created_at.desc())

    return paginate(
        session=session, query=query, page=page, limit=limit,
        serializer=lambda o: serialize_order(o, resolve_url=engine.invoice_url),
    )


@router.get("/by-code/{order_code}")
def get_order_by_code(
    order_code: str,
    session: Session = Depends(get_session),
    current_user: User = Depends(get_current_user),
    engine: PaymentReconciliationEngine = Depends(get_reconciliation_engine),
):
    order = session.exec(select(Order).where(Order.order_code == order_code)).first()
    if not order or order.user_id != current_user.id:
        raise OrderNotFound("Order not found")
    return serialize_order(order, _items(session, order.id), engine.invoice_url)


@router.get("/pending/{pending_id}")
def get_pending_order(
    pending_id: str,
    session: Session = Depends(get_session),
    current_user: User = Depends(get_current_user),
    manager: PendingOrderManager = Depends(get_pending_order_manager),
):
    pending = manager.get_pending_order(session, pending_id, current_user)
    return {
        "pending_order_id": pending.id,
        "payment_reference": pending.payment_reference,
        "status": pending.status,
        "checkout_url": pending.payment_session_url,
        "line_items": pending.line_items,
        "subtotal": pending.subtotal,
        "discount": pending.discount,
        "credits": pending.credits,
        "total": pending.total,
        "currency": pending.currency,
        "expires_at": pending.expires_at,
        "order_id": pending.converted_order_id,
    }


@router.post("/pending/{pending_id}/cancel")
def cancel_pending_order(
    pending_id: str,
    session: Session = Depends(get_session),
    current_user: User = Depends(get_current_user),
    manager: PendingOrderManager = Depends(get_pending_order_manager),
):
    pending = manager.cancel_pending_order(session, pending_id, current_user)
    return {"message": "Pending order cancelled", "pending_order_id": pending.id, "status": pending.status}


@router.get("/{order_id}")
def get_my_order(
    order_id: int,
    session: Session = Depends(get_session),
    current_user: User = Depends(get_current_user),
    engine: PaymentReconciliationEngine = Depends(get_reconciliation_engine),
):
    order = _owned_order(session, order_id, current_user)
    return serialize_order(order, _items(session, order.id), engine.invoice_url)


@router.post("/{order_id}/cancel")
def cancel_order(
    order_id: int,
    data: CancelOrderRequest | None = None,
    session: Session = Depends(get_session),
    current_user: User = Depends(get_current_user),
    machine: OrderStateMachine = Depends(get_state_machine),
):
    order = _owned_order(session, order_id, current_user)
    order = machine.cancel(
        session, order,
        actor=actor_for(current_user),
        reason=data.reason if data else None,
    )
    return {
        "message": "Order cancelled",
        "order_id": order.id,
        "status": order.status,
        "payment_status": order.payment_status,
    }


@router.put("/{order_id}/status")
def update_order_status(
    order_id: int,
    data: OrderStatusUpdate,
    session: Session = Depends(get_session),
    admin: User = Depends(get_current_admin),
    machine: OrderStateMachine = Depends(get_state_machine),
):
    order = get_order(session, order_id)
    old_status = order.status

    if data.status == old_status:
        raise HTTPException(400, f"Order is already {old_status}")

    order = machine.transition(session, order, data.status, actor=actor_for(admin), reason=data.reason)
    return {
        "message": "Order status updated",
        "order_id": order.id,
        "old_status": old_status,
        "new_status": order.status,
    }
