import json
import unittest

from fastapi.testclient import TestClient
from sqlmodel import Session, select

from app.database import get_session
from app.dependencies.services import (
    get_pending_order_manager,
    get_reconciliation_engine,
    get_state_machine,
)
from app.main import app
from app.models.order import Order
from app.services.order_state_machine import OrderStateMachine
from app.services.pending_order_service import PendingOrderManager
from app.services.reconciliation_service import PaymentReconciliationEngine
from app.utils.token import create_access_token
from support import DELIVERY, FakeGateway, make_engine, make_product, make_user


class RouteTestCase(unittest.TestCase):
    def setUp(self):
        self.engine = make_engine()
        self.gateway = FakeGateway()

        def override_session():
            with Session(self.engine) as session:
                yield session

        manager = PendingOrderManager(self.gateway, frontend_url="https://shop.test")
        recon = PaymentReconciliationEngine(self.gateway)
        machine = OrderStateMachine()

        app.dependency_overrides[get_session] = override_session
        app.dependency_overrides[get_pending_order_manager] = lambda: manager
        app.dependency_overrides[get_reconciliation_engine] = lambda: recon
        app.dependency_overrides[get_state_machine] = lambda: machine
        self.client = TestClient(app)

        with Session(self.engine, expire_on_commit=False) as session:
            self.user = make_user(session)
            self.admin = make_user(session, role="admin", email="ops@example.com")
            self.book = make_product(session, "Bhagavad Gita", "100.00", 5)
            self.pen = make_product(session, "Ink Pen", "25.00", 10)

    def tearDown(self):
        app.dependency_overrides.clear()

    def auth(self, user):
        return {"Authorization": f"Bearer {create_access_token({'user_id': user.id})}"}

    def place_order(self, user=None):
        response = self.client.post("/orders", headers=self.auth(user or self.user), json={
            "items": [
                {"product_id": self.book.id, "quantity": 1, "price": 1},
                {"product_id": self.pen.id, "quantity": 2},
            ],
            "delivery": DELIVERY,
            "total": 1,
        })
        self.assertEqual(response.status_code, 201, response.text)
        return response.json()

    def paid_order(self):
        reference = self.place_order()["payment_reference"]
        self.gateway.pay(reference)
        response = self.client.post("/orders/verify-payment", headers=self.auth(self.user),
                                    json={"reference": reference})
        self.assertEqual(response.status_code, 200, response.text)
        return response.json()

    def order_count(self):
        with Session(self.engine) as session:
            return len(session.exec(select(Order)).all())


class CheckoutRouteTests(RouteTestCase):
    def test_requires_authentication(self):
        response = self.client.post("/orders", json={"items": [], "delivery": DELIVERY})
        self.assertEqual(response.status_code, 401)

    def test_non_numeric_subject_is_401(self):
        token = create_access_token({"sub": "asha@example.com"})
        response = self.client.get("/orders", headers={"Authorization": f"Bearer {token}"})
        self.assertEqual(response.status_code, 401)

    def test_create_ignores_client_prices(self):
        body = self.place_order()
        self.assertEqual(body["amount"], 150.0)
        self.assertEqual(body["currency"], "INR")
        self.assertTrue(body["checkout_url"].startswith("https://rzp.test/"))

    def test_insufficient_stock_is_409_with_details(self):
        response = self.client.post("/orders", headers=self.auth(self.user), json={
            "items": [{"product_id": self.book.id, "quantity": 9}],
            "delivery": DELIVERY,
        })
        self.assertEqual(response.status_code, 409)
        body = response.json()
        self.assertEqual(body["code"], "insufficient_stock")
        self.assertEqual(body["items"][0]["available"], 5)

    def test_missing_address_is_rejected(self):
        delivery = dict(DELIVERY)
        del delivery["street"]
        response = self.client.post("/orders", headers=self.auth(self.user), json={
            "items": [{"product_id": self.book.id, "quantity": 1}],
            "delivery": delivery,
        })
        self.assertEqual(response.status_code, 422)

    def test_gateway_outage_is_503(self):
        self.gateway.fail_initialize = True
        response = self.client.post("/orders", headers=self.auth(self.user), json={
            "items": [{"product_id": self.book.id, "quantity": 1}],
            "delivery": DELIVERY,
        })
        self.assertEqual(response.status_code, 503)
        self.assertEqual(response.json()["code"], "payment_gateway_unavailable")

    def test_verify_before_payment_asks_client_to_poll(self):
        reference = self.place_order()["payment_reference"]
        response = self.client.post("/orders/verify-payment", headers=self.auth(self.user),
                                    json={"reference": reference})
        self.assertEqual(response.status_code, 409)
        self.assertEqual(response.json()["code"], "payment_not_confirmed")

        status = self.client.get("/orders/payment-status", params={"reference": reference},
                                 headers=self.auth(self.user))
        self.assertEqual(status.json()["status"], "pending")

    def test_verify_creates_order_once(self):
        first = self.paid_order()
        self.assertEqual(first["status"], "pending")
        self.assertEqual(first["payment_status"], "paid")
        self.assertFalse(first["already_processed"])

        again = self.client.post("/orders/verify-payment", headers=self.auth(self.user),
                                 json={"reference": first["payment_reference"]}).json()
        self.assertTrue(again["already_processed"])
        self.assertEqual(again["order_code"], first["order_code"])
        self.assertEqual(self.order_count(), 1)

    def test_pending_order_lookup_and_cancel(self):
        created = self.place_order()
        pending_id = created["pending_order_id"]

        response = self.client.get(f"/orders/pending/{pending_id}", headers=self.auth(self.user))
        self.assertEqual(response.json()["status"], "pending")

        stranger = self.client.get(f"/orders/pending/{pending_id}", headers=self.auth(self.admin))
        self.assertEqual(stranger.status_code, 404)

        response = self.client.post(f"/orders/pending/{pending_id}/cancel", headers=self.auth(self.user))
        self.assertEqual(response.json()["status"], "cancelled")


class WebhookRouteTests(RouteTestCase):
    def post_event(self, reference, signature):
        body = json.dumps({
            "event": "payment_link.paid",
            "payload": {"payment_link": {"entity": {"reference_id": reference}}},
        })
        return self.client.post("/webhook/payment-gateway", content=body,
                                headers={"X-Razorpay-Signature": signature, "Content-Type": "application/json"})

    def test_forged_notification_still_gets_200(self):
        reference = self.place_order()["payment_reference"]
        self.gateway.pay(reference)

        response = self.post_event(reference, "forged")

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["status"], "ignored")
        self.assertEqual(self.order_count(), 0)

    def test_signed_notification_creates_order(self):
        reference = self.place_order()["payment_reference"]
        self.gateway.pay(reference)

        response = self.post_event(reference, "good-signature")

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["status"], "processed")
        self.assertEqual(self.order_count(), 1)

    def test_domain_errors_are_acknowledged(self):
        reference = self.place_order()["payment_reference"]
        response = self.post_event(reference, "good-signature")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["reason"], "payment_not_confirmed")


class OrderRouteTests(RouteTestCase):
    def test_list_and_fetch_own_orders(self):
        order = self.paid_order()

        listing = self.client.get("/orders", headers=self.auth(self.user)).json()
        self.assertEqual(listing["total_items"], 1)
        self.assertEqual(listing["results"][0]["order_code"], order["order_code"])

        detail = self.client.get(f"/orders/{order['order_id']}", headers=self.auth(self.user)).json()
        self.assertEqual(len(detail["items"]), 2)

        by_code = self.client.get(f"/orders/by-code/{order['order_code']}", headers=self.auth(self.user))
        self.assertEqual(by_code.json()["id"], order["order_id"])

        hidden = self.client.get(f"/orders/{order['order_id']}", headers=self.auth(self.admin))
        self.assertEqual(hidden.status_code, 404)

    def test_customer_cancel(self):
        order = self.paid_order()
        url = f"/orders/{order['order_id']}/cancel"

        response = self.client.post(url, headers=self.auth(self.user), json={"reason": "ordered twice"})
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["status"], "cancelled")

        again = self.client.post(url, headers=self.auth(self.user))
        self.assertEqual(again.status_code, 409)
        self.assertEqual(again.json()["code"], "invalid_status_transition")

    def test_status_update_is_operator_only(self):
        order = self.paid_order()
        url = f"/orders/{order['order_id']}/status"

        forbidden = self.client.put(url, headers=self.auth(self.user), json={"status": "processing"})
        self.assertEqual(forbidden.status_code, 403)

        ok = self.client.put(url, headers=self.auth(self.admin), json={"status": "processing"})
        self.assertEqual(ok.status_code, 200)
        self.assertEqual(ok.json()["new_status"], "processing")

        illegal = self.client.put(url, headers=self.auth(self.admin), json={"status": "delivered"})
        self.assertEqual(illegal.status_code, 409)

    def test_admin_endpoints(self):
        order = self.paid_order()
        self.client.post(f"/orders/{order['order_id']}/cancel", headers=self.auth(self.user))

        stats = self.client.get("/admin/orders/stats", headers=self.auth(self.admin)).json()
        self.assertEqual(stats["by_status"]["cancelled"], 1)

        reviews = self.client.get("/admin/payment-reviews", headers=self.auth(self.admin)).json()
        self.assertEqual([r["reason"] for r in reviews], ["order_cancelled"])

        resolved = self.client.post(
            f"/admin/payment-reviews/{reviews[0]['id']}/resolve",
            headers=self.auth(self.admin),
            json={"status": "refunded", "note": "refunded"},
        )
        self.assertEqual(resolved.json()["review"]["status"], "refunded")

        denied = self.client.get("/admin/orders/stats", headers=self.auth(self.user))
        self.assertEqual(denied.status_code, 403)

    def test_health(self):
        response = self.client.get("/health/check")
        self.assertEqual(response.json()["database"], "ok")
