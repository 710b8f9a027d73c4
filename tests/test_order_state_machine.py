import unittest
from decimal import Decimal

from sqlmodel import Session, select

from app.exceptions import InvalidStatusTransition
from app.models.order import Order
from app.models.order_status_history import OrderStatusHistory
from app.models.payment_review import PaymentReview
from app.models.product import Product
from app.services.order_state_machine import OrderStateMachine, get_order_stats
from app.services.payment_review_service import resolve_review
from app.services.pending_order_service import PendingOrderManager
from app.services.reconciliation_service import PaymentReconciliationEngine
from support import DELIVERY, FakeGateway, make_engine, make_product, make_user


class OrderStateMachineTests(unittest.TestCase):
    def setUp(self):
        self.engine = make_engine()
        self.session = Session(self.engine)
        self.gateway = FakeGateway()
        self.machine = OrderStateMachine()

        self.user = make_user(self.session)
        self.admin = make_user(self.session, role="admin", email="ops@example.com")
        self.book = make_product(self.session, "Bhagavad Gita", "100.00", 5)
        self.pen = make_product(self.session, "Ink Pen", "25.00", 10)
        self.order = self.paid_order()

    def tearDown(self):
        self.session.close()

    def paid_order(self) -> Order:
        manager = PendingOrderManager(self.gateway, frontend_url="https://shop.test")
        recon = PaymentReconciliationEngine(self.gateway)
        lines = [{"product_id": self.book.id, "quantity": 2}, {"product_id": self.pen.id, "quantity": 3}]
        reference = manager.create_pending_order(self.session, self.user, lines, dict(DELIVERY))["payment_reference"]
        self.gateway.pay(reference)
        return recon.finalize(self.session, reference).order

    def stock(self, product):
        with Session(self.engine) as s:
            return s.get(Product, product.id).stock

    def history(self):
        return self.session.exec(
            select(OrderStatusHistory)
            .where(OrderStatusHistory.order_id == self.order.id)
            .order_by(OrderStatusHistory.id)
        ).all()

    def test_happy_path_writes_one_history_row_per_step(self):
        for status in ("processing", "shipped", "delivered"):
            self.machine.transition(self.session, self.order, status, actor=f"admin:{self.admin.id}")

        self.assertEqual(self.order.status, "delivered")
        self.assertIsNotNone(self.order.shipped_at)
        self.assertIsNotNone(self.order.delivered_at)
        self.assertEqual(
            [(h.old_status, h.new_status) for h in self.history()],
            [(None, "pending"), ("pending", "processing"), ("processing", "shipped"), ("shipped", "delivered")],
        )

    def test_illegal_transition_has_no_side_effects(self):
        self.machine.transition(self.session, self.order, "processing")
        self.machine.transition(self.session, self.order, "shipped")
        self.machine.transition(self.session, self.order, "delivered")
        rows = len(self.history())

        with self.assertRaises(InvalidStatusTransition):
            self.machine.transition(self.session, self.order, "processing")

        self.session.refresh(self.order)
        self.assertEqual(self.order.status, "delivered")
        self.assertEqual(len(self.history()), rows)

    def test_skipping_a_step_is_rejected(self):
        with self.assertRaises(InvalidStatusTransition):
            self.machine.transition(self.session, self.order, "delivered")

    def test_cancel_processing_restores_exact_quantities(self):
        self.machine.transition(self.session, self.order, "processing")
        self.assertEqual(self.stock(self.book), 3)
        self.assertEqual(self.stock(self.pen), 7)
        rows = len(self.history())

        self.machine.cancel(self.session, self.order, actor=f"user:{self.user.id}", reason="changed my mind")

        self.assertEqual(self.order.status, "cancelled")
        self.assertIsNotNone(self.order.cancelled_at)
        self.assertEqual(self.stock(self.book), 5)
        self.assertEqual(self.stock(self.pen), 10)

        history = self.history()
        self.assertEqual(len(history), rows + 1)
        self.assertEqual((history[-1].old_status, history[-1].new_status), ("processing", "cancelled"))
        self.assertEqual(history[-1].reason, "changed my mind")

    def test_transition_to_cancelled_goes_through_cancel(self):
        self.machine.transition(self.session, self.order, "cancelled")
        self.assertEqual(self.stock(self.book), 5)

    def test_cannot_cancel_after_shipping(self):
        self.machine.transition(self.session, self.order, "processing")
        self.machine.transition(self.session, self.order, "shipped")

        with self.assertRaises(InvalidStatusTransition):
            self.machine.cancel(self.session, self.order)
        self.assertEqual(self.stock(self.book), 3)

    def test_double_cancel_restocks_once(self):
        self.machine.cancel(self.session, self.order)
        with self.assertRaises(InvalidStatusTransition):
            self.machine.cancel(self.session, self.order)
        self.assertEqual(self.stock(self.book), 5)

    def test_cancelled_paid_order_is_queued_for_refund(self):
        self.machine.cancel(self.session, self.order, actor="admin:1")

        review = self.session.exec(select(PaymentReview)).one()
        self.assertEqual(review.reason, "order_cancelled")
        self.assertEqual(review.order_id, self.order.id)
        self.assertEqual(review.amount, Decimal("275.00"))

        resolve_review(self.session, review.id, self.admin.id, "refunded", note="refunded via dashboard")
        self.session.refresh(self.order)
        self.assertEqual(self.order.payment_status, "refunded")

    def test_stats(self):
        second = self.paid_order()
        self.machine.cancel(self.session, second)

        stats = get_order_stats(self.session)

        self.assertEqual(stats["total_orders"], 2)
        self.assertEqual(stats["by_status"]["pending"], 1)
        self.assertEqual(stats["by_status"]["cancelled"], 1)
        self.assertEqual(stats["revenue"], Decimal("275.00"))
        self.assertEqual(stats["open_payment_reviews"], 1)
