import unittest
from decimal import Decimal

from sqlmodel import Session

from app.exceptions import ReviewNotFound, ValidationError
from app.services.payment_review_service import enqueue_review, list_reviews, resolve_review
from support import make_engine, make_user


class PaymentReviewQueueTests(unittest.TestCase):
    def setUp(self):
        self.engine = make_engine()
        self.session = Session(self.engine)
        self.admin = make_user(self.session, role="admin", email="ops@example.com")

    def tearDown(self):
        self.session.close()

    def test_enqueue_is_idempotent_per_reason(self):
        first = enqueue_review(self.session, "PAY-1-A", "stock_exhausted", amount=Decimal("150.00"))
        again = enqueue_review(self.session, "PAY-1-A", "stock_exhausted", amount=Decimal("150.00"))
        other = enqueue_review(self.session, "PAY-1-A", "late_payment")

        self.assertEqual(first.id, again.id)
        self.assertNotEqual(first.id, other.id)
        self.assertEqual(len(list_reviews(self.session)), 2)

    def test_resolve_open_review(self):
        review = enqueue_review(self.session, "PAY-1-A", "amount_mismatch")

        resolved = resolve_review(self.session, review.id, self.admin.id, "dismissed", note="customer retried")

        self.assertEqual(resolved.status, "dismissed")
        self.assertEqual(resolved.resolved_by, self.admin.id)
        self.assertIsNotNone(resolved.resolved_at)
        self.assertEqual(list_reviews(self.session, "open"), [])

    def test_resolve_rejects_bad_requests(self):
        review = enqueue_review(self.session, "PAY-1-A", "amount_mismatch")

        with self.assertRaises(ValidationError):
            resolve_review(self.session, review.id, self.admin.id, "open")
        with self.assertRaises(ReviewNotFound):
            resolve_review(self.session, 999, self.admin.id, "refunded")

        resolve_review(self.session, review.id, self.admin.id, "refunded")
        with self.assertRaises(ValidationError):
            resolve_review(self.session, review.id, self.admin.id, "dismissed")
