from datetime import datetime
from decimal import Decimal

from sqlalchemy.pool import StaticPool
from sqlmodel import Session, SQLModel, create_engine

import app.models  # noqa: F401
from app.exceptions import PaymentGatewayError
from app.models.product import Product
from app.models.user import User
from app.services.invoice_service import InvoiceTemplate
from app.services.r2_client import StorageError
from app.services.payment_service import (
    FAILED,
    PENDING,
    SUCCEEDED,
    GatewaySession,
    GatewayVerification,
)


def make_engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SQLModel.metadata.create_all(engine)
    return engine


def make_file_engine(path: str):
    """On-disk SQLite so separate threads get separate connections."""
    engine = create_engine(
        f"sqlite:///{path}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )
    SQLModel.metadata.create_all(engine)
    return engine


def make_user(session: Session, role: str = "user", email: str = "asha@example.com") -> User:
    user = User(first_name="Asha", last_name="Rao", email=email, phone_number="9876543210", role=role)
    session.add(user)
    session.commit()
    session.refresh(user)
    return user


def make_product(session: Session, name: str, price: str, stock: int, is_active: bool = True) -> Product:
    product = Product(name=name, price=Decimal(price), stock=stock, is_active=is_active)
    session.add(product)
    session.commit()
    session.refresh(product)
    return product


DELIVERY = {
    "full_name": "Asha Rao",
    "street": "12 MG Road",
    "city": "Bengaluru",
    "state": "KA",
    "postal_code": "560001",
    "country": "India",
    "phone": "9876543210",
}


class FakeGateway:
    """In-memory stand-in for PaymentGatewayClient."""

    provider = "razorpay"

    def __init__(self, signature: str = "good-signature"):
        self.signature = signature
        self.sessions = {}
        self.results = {}
        self.initialize_calls = 0
        self.verify_calls = 0
        self.fail_initialize = False
        self.fail_verify = False

    def initialize_session(self, reference, amount_minor, callback_url, *, customer=None, expire_by=None, notes=None):
        self.initialize_calls += 1
        if self.fail_initialize:
            raise PaymentGatewayError("connection refused")
        self.sessions[reference] = {"amount": amount_minor, "callback_url": callback_url, "customer": customer}
        return GatewaySession(
            reference=reference,
            session_id=f"plink_{self.initialize_calls}",
            url=f"https://rzp.test/{reference}",
            raw={"id": f"plink_{self.initialize_calls}", "amount": amount_minor},
        )

    def verify_transaction(self, reference):
        self.verify_calls += 1
        if self.fail_verify:
            raise PaymentGatewayError("timeout")
        return self.results.get(reference) or GatewayVerification(reference=reference, status=PENDING)

    def authenticate_notification(self, raw_payload, signature_header):
        return signature_header == self.signature

    # test helpers

    def pay(self, reference, amount_minor=None):
        if amount_minor is None:
            amount_minor = self.sessions[reference]["amount"]
        self.results[reference] = GatewayVerification(
            reference=reference,
            status=SUCCEEDED,
            amount_minor=amount_minor,
            paid_at=datetime(2026, 10, 19, 9, 30),
            raw={"status": "paid", "amount_paid": amount_minor},
        )

    def decline(self, reference):
        self.results[reference] = GatewayVerification(reference=reference, status=FAILED, raw={"status": "cancelled"})


class FakeStorage:
    def __init__(self, fail: bool = False, public_base: str = "https://cdn.test/"):
        self.objects = {}
        self.fail = fail
        self.public_base = public_base

    def put(self, key, data, content_type):
        if self.fail:
            raise StorageError("bucket unavailable")
        self.objects[key] = (data, content_type)
        return f"{self.public_base}{key}" if self.public_base else key

    def resolve_url(self, location):
        if not location or location.startswith("https://"):
            return location
        return f"https://signed.test/{location}?X-Amz-Expires=3600"


TEMPLATE = InvoiceTemplate(
    store_name="Bookstore",
    tagline="Books delivered to your door",
    currency_label="INR",
    footer_lines=["Thank you for shopping with us!"],
)
