import json
import logging
from dataclasses import dataclass, field
from decimal import Decimal
from io import BytesIO
from pathlib import Path
from typing import List, Optional, Sequence

import pypdfium2 as pdfium
from reportlab.graphics import renderPDF
from reportlab.graphics.barcode import code128
from reportlab.graphics.barcode.qr import QrCodeWidget
from reportlab.graphics.shapes import Drawing
from reportlab.lib.pagesizes import A4
from reportlab.lib.units import mm
from reportlab.lib.utils import ImageReader
from reportlab.pdfgen import canvas

from app.exceptions import InvoiceGenerationError
from app.models.order import Order
from app.models.order_item import OrderItem
from app.models.user import User
from app.services.r2_client import ObjectStorage, StorageError

logger = logging.getLogger(__name__)

DEFAULT_TEMPLATE_PATH = Path(__file__).resolve().parent.parent / "templates" / "invoice_template.json"

MAX_PREVIEW_WIDTH = 1240

PAGE_WIDTH, PAGE_HEIGHT = A4
MARGIN = 18 * mm
QR_SIZE = 34 * mm
ROW_HEIGHT = 16
DESCRIPTION_CHARS = 48


@dataclass
class InvoiceTemplate:
    store_name: str
    tagline: str = ""
    title: str = "Invoice"
    currency_label: str = "INR"
    support_email: Optional[str] = None
    footer_lines: List[str] = field(default_factory=list)
    logo_path: Optional[str] = None


@dataclass
class InvoiceArtifacts:
    # storage locations: public URL or object key
    document_url: str
    image_url: Optional[str]
    qr_payload: str


def load_invoice_template(path: Optional[str] = None) -> InvoiceTemplate:
    """Read the invoice layout asset. Called once at startup."""
    template_path = Path(path) if path else DEFAULT_TEMPLATE_PATH
    data = json.loads(template_path.read_text(encoding="utf-8"))

    logo = data.get("logo_path")
    if logo and not Path(logo).is_absolute():
        data["logo_path"] = str(template_path.parent / logo)

    known = InvoiceTemplate.__dataclass_fields__
    template = InvoiceTemplate(**{k: v for k, v in data.items() if k in known})
    logger.info(f"Loaded invoice template from {template_path}")
    return template


def invoice_keys(invoice_number: str):
    base = f"invoices/{invoice_number}"
    return f"{base}/invoice.pdf", f"{base}/invoice.png"


def _money(label: str, amount) -> str:
    return f"{label} {Decimal(amount):,.2f}"


def _address_lines(address: dict) -> List[str]:
    locality = " ".join(
        part for part in (address.get("city"), address.get("state"), address.get("postal_code")) if part
    )
    return [line for line in (address.get("street"), locality, address.get("country")) if line]


class InvoicePipeline:
    """
    Builds the customer invoice for a confirmed order:
    PDF (with QR verification code and Code128 barcode) plus a PNG preview,
    both uploaded to object storage.
    """

    def __init__(self, storage: ObjectStorage, template: InvoiceTemplate, verify_base_url: str):
        self.storage = storage
        self.template = template
        self.verify_base_url = verify_base_url.rstrip("/")

    def build_qr_payload(self, order_code: str, invoice_number: str) -> str:
        return f"{self.verify_base_url}/invoice/{order_code}?inv={invoice_number}"

    def generate_invoice(self, order: Order, items: Sequence[OrderItem], customer: Optional[User]) -> InvoiceArtifacts:
        qr_payload = self.build_qr_payload(order.order_code, order.invoice_number)

        try:
            pdf_bytes = self.render_document(order, items, customer, qr_payload)
        except Exception as e:
            logger.error(f"Invoice render failed for order {order.order_code}: {e}")
            raise InvoiceGenerationError(str(e)) from e

        pdf_key, png_key = invoice_keys(order.invoice_number)
        try:
            document_url = self.storage.put(pdf_key, pdf_bytes, "application/pdf")
        except StorageError as e:
            raise InvoiceGenerationError(f"Invoice upload failed: {e}") from e

        image_url = None
        png_bytes = self.rasterize(pdf_bytes)
        if png_bytes:
            try:
                image_url = self.storage.put(png_key, png_bytes, "image/png")
            except StorageError as e:
                logger.warning(f"Invoice preview upload failed for {order.order_code}: {e}")

        logger.info(f"Invoice {order.invoice_number} generated for order {order.order_code}")
        return InvoiceArtifacts(document_url=document_url, image_url=image_url, qr_payload=qr_payload)

    # ------------------------------------------------------------------
    # rendering
    # ------------------------------------------------------------------

    def render_document(self, order: Order, items: Sequence[OrderItem], customer: Optional[User], qr_payload: str) -> bytes:
        buffer = BytesIO()
        # invariant=1 keeps the output byte-identical for identical input
        c = canvas.Canvas(buffer, pagesize=A4, invariant=1)
        c.setTitle(f"Invoice {order.invoice_number}")
        c.setAuthor(self.template.store_name)

        label = self.template.currency_label
        page_no = 1
        y = self._draw_header(c, order, customer, qr_payload)
        y = self._draw_table_header(c, y)

        for index, item in enumerate(items, start=1):
            if y < MARGIN + 3 * ROW_HEIGHT:
                self._draw_page_number(c, page_no)
                c.showPage()
                page_no += 1
                y = self._draw_continuation_header(c, order)
                y = self._draw_table_header(c, y)

            description = item.product_name
            if len(description) > DESCRIPTION_CHARS:
                description = description[:DESCRIPTION_CHARS - 3] + "..."

            c.setFont("Helvetica", 9)
            c.drawString(MARGIN, y, str(index))
            c.drawString(MARGIN + 12 * mm, y, description)
            c.drawRightString(PAGE_WIDTH - MARGIN - 62 * mm, y, str(item.quantity))
            c.drawRightString(PAGE_WIDTH - MARGIN - 32 * mm, y, f"{Decimal(item.unit_price):,.2f}")
            c.drawRightString(PAGE_WIDTH - MARGIN, y, f"{Decimal(item.line_total):,.2f}")
            y -= ROW_HEIGHT

        # totals + footer need their own room
        if y < MARGIN + 10 * ROW_HEIGHT:
            self._draw_page_number(c, page_no)
            c.showPage()
            page_no += 1
            y = self._draw_continuation_header(c, order)

        y -= ROW_HEIGHT / 2
        c.line(PAGE_WIDTH - MARGIN - 80 * mm, y + ROW_HEIGHT / 2, PAGE_WIDTH - MARGIN, y + ROW_HEIGHT / 2)
        totals = [
            ("Subtotal", order.subtotal, "Helvetica-Bold"),
            ("Discounts", order.discount, "Helvetica"),
            ("Credits", order.credits, "Helvetica"),
            ("Total Amount", order.total, "Helvetica-Bold"),
        ]
        for caption, amount, font in totals:
            c.setFont(font, 10)
            c.drawString(PAGE_WIDTH - MARGIN - 80 * mm, y, caption)
            c.drawRightString(PAGE_WIDTH - MARGIN, y, _money(label, amount))
            y -= ROW_HEIGHT

        c.setFont("Helvetica", 9)
        y -= ROW_HEIGHT
        for line in self.template.footer_lines:
            c.drawCentredString(PAGE_WIDTH / 2, y, line)
            y -= 12
        if self.template.support_email:
            c.drawCentredString(PAGE_WIDTH / 2, y, self.template.support_email)

        self._draw_page_number(c, page_no)
        c.save()
        return buffer.getvalue()

    def _draw_header(self, c, order: Order, customer: Optional[User], qr_payload: str) -> float:
        top = PAGE_HEIGHT - MARGIN
        x = MARGIN

        if self.template.logo_path:
            try:
                c.drawImage(ImageReader(self.template.logo_path), x, top - 14 * mm,
                            width=30 * mm, height=14 * mm, preserveAspectRatio=True, mask="auto")
                x += 34 * mm
            except OSError as e:
                logger.warning(f"Invoice logo not drawn: {e}")

        c.setFont("Helvetica-Bold", 16)
        c.drawString(x, top - 6 * mm, self.template.store_name)
        if self.template.tagline:
            c.setFont("Helvetica", 9)
            c.drawString(x, top - 11 * mm, self.template.tagline)

        self._draw_qr(c, qr_payload, PAGE_WIDTH - MARGIN - QR_SIZE, top - QR_SIZE)

        y = top - 24 * mm
        c.setFont("Helvetica-Bold", 20)
        c.drawString(MARGIN, y, self.template.title)

        y -= 8 * mm
        c.setFont("Helvetica", 10)
        c.drawString(MARGIN, y, f"Invoice Number: {order.invoice_number}")
        y -= 5 * mm
        c.drawString(MARGIN, y, f"Order: {order.order_code}")
        y -= 5 * mm
        issued = order.paid_at or order.created_at
        c.drawString(MARGIN, y, f"Date: {issued.strftime('%d/%m/%Y')}")

        barcode = code128.Code128(order.invoice_number, barHeight=10 * mm, barWidth=0.9)
        barcode.drawOn(c, PAGE_WIDTH - MARGIN - QR_SIZE - 8 * mm, y - 2 * mm)

        y -= 10 * mm
        c.setFont("Helvetica-Bold", 11)
        c.drawString(MARGIN, y, "Billed To:")
        y -= 5 * mm

        address = order.delivery_address or {}
        name = address.get("full_name") or (customer.full_name if customer else "")
        c.setFont("Helvetica-Bold", 10)
        c.drawString(MARGIN, y, name)

        c.setFont("Helvetica", 9)
        lines = _address_lines(address)
        phone = address.get("phone") or (customer.phone_number if customer else None)
        if phone:
            lines.append(phone)
        if customer and customer.email:
            lines.append(customer.email)
        for line in lines:
            y -= 4.5 * mm
            c.drawString(MARGIN, y, line)

        return y - 10 * mm

    def _draw_continuation_header(self, c, order: Order) -> float:
        y = PAGE_HEIGHT - MARGIN - 6 * mm
        c.setFont("Helvetica-Bold", 11)
        c.drawString(MARGIN, y, f"{self.template.title} {order.invoice_number} (continued)")
        return y - 10 * mm

    def _draw_table_header(self, c, y: float) -> float:
        c.setFont("Helvetica-Bold", 9)
        c.drawString(MARGIN, y, "#")
        c.drawString(MARGIN + 12 * mm, y, "Description")
        c.drawRightString(PAGE_WIDTH - MARGIN - 62 * mm, y, "Qty")
        c.drawRightString(PAGE_WIDTH - MARGIN - 32 * mm, y, "Unit Price")
        c.drawRightString(PAGE_WIDTH - MARGIN, y, "Total")
        c.line(MARGIN, y - 4, PAGE_WIDTH - MARGIN, y - 4)
        return y - ROW_HEIGHT

    def _draw_qr(self, c, payload: str, x: float, y: float) -> None:
        widget = QrCodeWidget(payload)
        x1, y1, x2, y2 = widget.getBounds()
        width, height = x2 - x1, y2 - y1
        drawing = Drawing(QR_SIZE, QR_SIZE, transform=[QR_SIZE / width, 0, 0, QR_SIZE / height, 0, 0])
        drawing.add(widget)
        renderPDF.draw(drawing, c, x, y)

    def _draw_page_number(self, c, page_no: int) -> None:
        c.setFont("Helvetica", 8)
        c.drawRightString(PAGE_WIDTH - MARGIN, MARGIN / 2, f"Page {page_no}")

    # ------------------------------------------------------------------
    # preview
    # ------------------------------------------------------------------

    def rasterize(self, pdf_bytes: bytes) -> Optional[bytes]:
        """First page as PNG. Best effort: returns None on any failure."""
        try:
            pdf = pdfium.PdfDocument(pdf_bytes)
            try:
                image = pdf[0].render(scale=2).to_pil()
            finally:
                pdf.close()

            if image.width > MAX_PREVIEW_WIDTH:
                ratio = MAX_PREVIEW_WIDTH / image.width
                image = image.resize((MAX_PREVIEW_WIDTH, int(image.height * ratio)))

            out = BytesIO()
            image.save(out, format="PNG")
            return out.getvalue()
        except Exception as e:
            logger.warning(f"Invoice preview rasterization failed: {e}")
            return None
