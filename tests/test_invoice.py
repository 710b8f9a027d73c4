import json
import tempfile
import unittest
from datetime import datetime
from decimal import Decimal
from pathlib import Path
from unittest import mock

from app.exceptions import InvoiceGenerationError
from app.models.order import Order
from app.models.order_item import OrderItem
from app.models.user import User
from app.services import invoice_service
from app.services.invoice_service import InvoicePipeline, load_invoice_template
from support import TEMPLATE, FakeStorage


def sample_order(**overrides):
    data = dict(
        id=1,
        order_code="ORD-AC23-233E",
        invoice_number="4787837473",
        payment_reference="PAY-1760869425000-ABCDEFGH",
        pending_order_id="p-1",
        user_id=1,
        status="pending",
        payment_status="paid",
        subtotal=Decimal("150.00"),
        discount=Decimal("0.00"),
        credits=Decimal("0.00"),
        total=Decimal("150.00"),
        delivery_address={"street": "12 MG Road", "city": "Bengaluru", "phone": "9876543210"},
        paid_at=datetime(2026, 10, 19, 9, 30),
        created_at=datetime(2026, 10, 19, 9, 30),
    )
    data.update(overrides)
    return Order(**data)


def sample_items(count=2):
    return [
        OrderItem(order_id=1, product_id=i, product_name=f"Book {i}",
                  unit_price=Decimal("50.00"), quantity=1, line_total=Decimal("50.00"))
        for i in range(1, count + 1)
    ]


CUSTOMER = User(id=1, first_name="Asha", last_name="Rao", email="asha@example.com")


class InvoicePipelineTests(unittest.TestCase):
    def setUp(self):
        self.storage = FakeStorage()
        self.pipeline = InvoicePipeline(self.storage, TEMPLATE, "https://shop.test/")

    def test_qr_payload_contains_both_identifiers(self):
        payload = self.pipeline.build_qr_payload("ORD-AC23-233E", "4787837473")
        self.assertEqual(payload, "https://shop.test/invoice/ORD-AC23-233E?inv=4787837473")

    def test_qr_code_drawn_on_invoice_encodes_verification_url(self):
        payload = self.pipeline.build_qr_payload("ORD-AC23-233E", "4787837473")
        draw = mock.patch.object(invoice_service.renderPDF, "draw", wraps=invoice_service.renderPDF.draw)
        with draw as rendered:
            self.pipeline.render_document(sample_order(), sample_items(), CUSTOMER, payload)

        drawing = rendered.call_args[0][0]
        codes = [s for s in drawing.contents if isinstance(s, invoice_service.QrCodeWidget)]
        self.assertEqual(len(codes), 1)
        self.assertEqual(codes[0].value, payload)
        # modules drawn on the page are the ones the payload alone produces
        self.assertEqual(
            len(codes[0].draw().contents),
            len(invoice_service.QrCodeWidget(payload).draw().contents),
        )

    def test_render_is_deterministic(self):
        payload = self.pipeline.build_qr_payload("ORD-AC23-233E", "4787837473")
        first = self.pipeline.render_document(sample_order(), sample_items(), CUSTOMER, payload)
        second = self.pipeline.render_document(sample_order(), sample_items(), CUSTOMER, payload)
        self.assertTrue(first.startswith(b"%PDF"))
        self.assertEqual(first, second)

    def test_long_orders_spill_onto_more_pages(self):
        payload = self.pipeline.build_qr_payload("ORD-AC23-233E", "4787837473")
        short = self.pipeline.render_document(sample_order(), sample_items(2), CUSTOMER, payload)
        long = self.pipeline.render_document(sample_order(), sample_items(120), CUSTOMER, payload)
        self.assertEqual(len(invoice_service.pdfium.PdfDocument(short)), 1)
        self.assertGreater(len(invoice_service.pdfium.PdfDocument(long)), 2)

    def test_generate_uploads_under_invoice_number(self):
        artifacts = self.pipeline.generate_invoice(sample_order(), sample_items(), CUSTOMER)

        self.assertEqual(artifacts.document_url, "https://cdn.test/invoices/4787837473/invoice.pdf")
        self.assertEqual(self.storage.objects["invoices/4787837473/invoice.pdf"][1], "application/pdf")
        self.assertEqual(artifacts.image_url, "https://cdn.test/invoices/4787837473/invoice.png")
        png, content_type = self.storage.objects["invoices/4787837473/invoice.png"]
        self.assertEqual(content_type, "image/png")
        self.assertTrue(png.startswith(b"\x89PNG"))

    def test_rasterization_failure_keeps_document(self):
        with mock.patch.object(invoice_service.pdfium, "PdfDocument", side_effect=RuntimeError("no pdfium")):
            artifacts = self.pipeline.generate_invoice(sample_order(), sample_items(), CUSTOMER)

        self.assertIsNone(artifacts.image_url)
        self.assertTrue(artifacts.document_url.endswith("invoice.pdf"))
        self.assertNotIn("invoices/4787837473/invoice.png", self.storage.objects)

    def test_upload_failure_raises_generation_error(self):
        pipeline = InvoicePipeline(FakeStorage(fail=True), TEMPLATE, "https://shop.test")
        with self.assertRaises(InvoiceGenerationError):
            pipeline.generate_invoice(sample_order(), sample_items(), CUSTOMER)


class InvoiceTemplateTests(unittest.TestCase):
    def test_bundled_template_loads(self):
        template = load_invoice_template()
        self.assertTrue(template.store_name)
        self.assertEqual(template.currency_label, "INR")

    def test_logo_path_is_resolved_next_to_template(self):
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / "layout.json"
            path.write_text(json.dumps({"store_name": "Shop", "logo_path": "logo.png", "unknown_key": 1}))
            template = load_invoice_template(str(path))

        self.assertEqual(template.logo_path, str(Path(tmp) / "logo.png"))
