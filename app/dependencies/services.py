from functools import lru_cache

from app.config import settings
from app.services.invoice_service import InvoicePipeline, InvoiceTemplate, load_invoice_template
from app.services.order_state_machine import OrderStateMachine
from app.services.payment_service import PaymentGatewayClient
from app.services.pending_order_service import PendingOrderManager
from app.services.r2_client import ObjectStorage
from app.services.reconciliation_service import PaymentReconciliationEngine


@lru_cache()
def get_gateway() -> PaymentGatewayClient:
    return PaymentGatewayClient.from_settings(settings)


@lru_cache()
def get_storage() -> ObjectStorage:
    return ObjectStorage.from_settings(settings)


@lru_cache()
def get_invoice_template() -> InvoiceTemplate:
    return load_invoice_template(settings.INVOICE_TEMPLATE_PATH)


@lru_cache()
def get_invoice_pipeline() -> InvoicePipeline:
    return InvoicePipeline(get_storage(), get_invoice_template(), settings.FRONTEND_URL)


@lru_cache()
def get_pending_order_manager() -> PendingOrderManager:
    return PendingOrderManager(
        get_gateway(),
        frontend_url=settings.FRONTEND_URL,
        ttl_hours=settings.PENDING_ORDER_TTL_HOURS,
        currency=settings.CURRENCY,
    )


@lru_cache()
def get_reconciliation_engine() -> PaymentReconciliationEngine:
    return PaymentReconciliationEngine(get_gateway(), invoices=get_invoice_pipeline())


@lru_cache()
def get_state_machine() -> OrderStateMachine:
    return OrderStateMachine()
