import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict, Optional

import razorpay
import requests

from app.exceptions import PaymentGatewayError

logger = logging.getLogger(__name__)

SUCCEEDED = "succeeded"
FAILED = "failed"
PENDING = "pending"

# payment link status -> our vocabulary
LINK_STATUS_MAP = {
    "paid": SUCCEEDED,
    "cancelled": FAILED,
    "expired": FAILED,
    "created": PENDING,
    "partially_paid": PENDING,
}

MINOR_UNITS = Decimal(100)


def to_minor_units(amount: Decimal) -> int:
    """Major -> minor (rupees -> paise). Only used at the gateway boundary."""
    return int((Decimal(amount) * MINOR_UNITS).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def from_minor_units(amount_minor: int) -> Decimal:
    return (Decimal(amount_minor) / MINOR_UNITS).quantize(Decimal("0.01"))


@dataclass
class GatewaySession:
    reference: str
    session_id: str
    url: str
    raw: Dict[str, Any] = field(default_factory=dict)


@dataclass
class GatewayVerification:
    reference: str
    status: str  # succeeded | failed | pending
    amount_minor: int = 0
    paid_at: Optional[datetime] = None
    raw: Dict[str, Any] = field(default_factory=dict)

    @property
    def succeeded(self) -> bool:
        return self.status == SUCCEEDED

    @property
    def amount(self) -> Decimal:
        return from_minor_units(self.amount_minor)


class PaymentGatewayClient:
    """
    Thin wrapper around Razorpay payment links.

    Every provider/transport error becomes PaymentGatewayError so callers
    never have to know about razorpay exceptions.
    """

    provider = "razorpay"

    def __init__(
        self,
        key_id: str,
        key_secret: str,
        webhook_secret: str,
        currency: str = "INR",
        client: Optional[razorpay.Client] = None,
    ):
        if not key_secret:
            logger.warning("RAZORPAY_KEY_SECRET not set. Payment features will be disabled.")
        self.client = client or razorpay.Client(auth=(key_id, key_secret))
        self.webhook_secret = webhook_secret
        self.currency = currency

    @classmethod
    def from_settings(cls, settings) -> "PaymentGatewayClient":
        return cls(
            key_id=settings.RAZORPAY_KEY_ID,
            key_secret=settings.RAZORPAY_KEY_SECRET,
            webhook_secret=settings.RAZORPAY_WEBHOOK_SECRET,
            currency=settings.CURRENCY,
        )

    def initialize_session(
        self,
        reference: str,
        amount_minor: int,
        callback_url: str,
        *,
        customer: Optional[Dict[str, str]] = None,
        expire_by: Optional[datetime] = None,
        notes: Optional[Dict[str, Any]] = None,
    ) -> GatewaySession:
        payload = {
            "amount": amount_minor,
            "currency": self.currency,
            "reference_id": reference,
            "description": f"Order payment {reference}",
            "callback_url": callback_url,
            "callback_method": "get",
            "notify": {"sms": False, "email": False},
            "notes": {"reference": reference, **(notes or {})},
        }
        if customer:
            payload["customer"] = {k: v for k, v in customer.items() if v}
        if expire_by:
            payload["expire_by"] = int(expire_by.timestamp())

        try:
            link = self.client.payment_link.create(payload)
        except (razorpay.errors.BadRequestError,
                razorpay.errors.ServerError,
                razorpay.errors.GatewayError,
                requests.RequestException) as e:
            logger.error(f"Razorpay session initialization failed for {reference}: {e}")
            raise PaymentGatewayError(str(e)) from e

        if not link.get("short_url"):
            raise PaymentGatewayError(f"Razorpay returned no checkout URL for {reference}")

        logger.info(f"Payment session {link.get('id')} opened for {reference}")
        return GatewaySession(
            reference=reference,
            session_id=link.get("id"),
            url=link["short_url"],
            raw=link,
        )

    def verify_transaction(self, reference: str) -> GatewayVerification:
        try:
            response = self.client.payment_link.all({"reference_id": reference})
        except (razorpay.errors.BadRequestError,
                razorpay.errors.ServerError,
                razorpay.errors.GatewayError,
                requests.RequestException) as e:
            logger.error(f"Razorpay verification failed for {reference}: {e}")
            raise PaymentGatewayError(str(e)) from e

        links = response.get("payment_links") or []
        if not links:
            # link not visible yet; treat as not paid
            return GatewayVerification(reference=reference, status=PENDING, raw=response)

        link = links[0]
        status = LINK_STATUS_MAP.get(link.get("status"), PENDING)

        paid_at = None
        if status == SUCCEEDED:
            captured = [
                p for p in (link.get("payments") or [])
                if p.get("status") == "captured" and p.get("created_at")
            ]
            stamp = max((p["created_at"] for p in captured), default=link.get("updated_at"))
            if stamp:
                paid_at = datetime.utcfromtimestamp(stamp)

        return GatewayVerification(
            reference=reference,
            status=status,
            amount_minor=int(link.get("amount_paid") or 0),
            paid_at=paid_at,
            raw=link,
        )

    def authenticate_notification(self, raw_payload, signature_header: Optional[str]) -> bool:
        if not signature_header or not self.webhook_secret:
            return False

        body = raw_payload.decode("utf-8") if isinstance(raw_payload, bytes) else raw_payload
        try:
            self.client.utility.verify_webhook_signature(body, signature_header, self.webhook_secret)
        except razorpay.errors.SignatureVerificationError:
            return False
        return True


def parse_notification(raw_payload) -> Dict[str, Any]:
    body = raw_payload.decode("utf-8") if isinstance(raw_payload, bytes) else raw_payload
    return json.loads(body)


def extract_reference(event: Dict[str, Any]) -> Optional[str]:
    """Find our payment reference inside a Razorpay webhook payload."""
    payload = event.get("payload") or {}

    link = (payload.get("payment_link") or {}).get("entity") or {}
    if link.get("reference_id"):
        return link["reference_id"]

    payment = (payload.get("payment") or {}).get("entity") or {}
    notes = payment.get("notes") or {}
    if isinstance(notes, dict) and notes.get("reference"):
        return notes["reference"]

    return None
