"""
Receipts for settled transactions.

Receipts are regenerated on every request and never stored. Everything in a
receipt is derived from stored transaction fields, so the same completed
transaction always yields the same receipt id, text, checksum and PDF bytes.
"""
import hashlib
from dataclasses import dataclass
from datetime import datetime
from io import BytesIO
from typing import List, Optional, Tuple

from reportlab.lib import colors
from reportlab.lib.pagesizes import A4
from reportlab.lib.styles import ParagraphStyle, getSampleStyleSheet
from reportlab.lib.units import inch
from reportlab.platypus import Paragraph, SimpleDocTemplate, Spacer, Table, TableStyle

from property_payments.config import Settings, get_settings
from property_payments.core.enums import TransactionStatus
from property_payments.core.formatting import format_amount
from property_payments.core.state_machine import require_status
from property_payments.database.models import PaymentTransaction

styles = getSampleStyleSheet()
title_style = ParagraphStyle(
    "ReceiptTitle",
    parent=styles["Heading1"],
    fontSize=24,
    spaceAfter=24,
    textColor=colors.HexColor("#1a1a1a"),
    alignment=1,
)
subtitle_style = ParagraphStyle(
    "ReceiptSubtitle",
    parent=styles["Normal"],
    fontSize=12,
    textColor=colors.grey,
    alignment=1,
)


@dataclass(frozen=True)
class Receipt:
    receipt_id: str
    transaction_id: str
    reference: str
    content: str
    checksum: str
    download_url: str
    filename: str


def _label(value: str) -> str:
    return value.replace("_", " ").title()


def _timestamp(value: Optional[datetime]) -> str:
    # SQLite hands back naive datetimes; both backends store UTC
    if value is None:
        return "-"
    return value.strftime("%Y-%m-%d %H:%M:%S") + " UTC"


class ReceiptGenerator:
    """Builds receipt text and PDF for completed transactions."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()

    @staticmethod
    def receipt_id(transaction: PaymentTransaction) -> str:
        digest = hashlib.sha256(f"{transaction.id}:{transaction.reference}".encode()).hexdigest()
        return f"RCT-{digest[:12].upper()}"

    def _rows(self, transaction: PaymentTransaction) -> List[Tuple[str, str]]:
        rows = [
            ("Receipt No", self.receipt_id(transaction)),
            ("Reference", transaction.reference),
            ("Transaction ID", str(transaction.id)),
            ("Date Paid", _timestamp(transaction.completed_at)),
            ("Amount Paid", format_amount(transaction.amount, transaction.currency)),
            ("Processing Fee", format_amount(transaction.fees, transaction.currency)),
            ("Currency", transaction.currency),
            ("Payment Type", _label(transaction.type)),
            ("Payment Method", _label(transaction.method)),
            ("Gateway", _label(transaction.gateway)),
            ("Gateway Reference", transaction.gateway_reference or "-"),
            ("Payer", transaction.user_id),
            ("Property", transaction.property_id),
        ]
        if transaction.description:
            rows.append(("Description", transaction.description))
        return rows

    def render_text(self, transaction: PaymentTransaction) -> str:
        width = max(len(label) for label, _ in self._rows(transaction))
        lines = [self.settings.receipt_issuer, "PAYMENT RECEIPT", ""]
        lines.extend(f"{label.ljust(width)} : {value}" for label, value in self._rows(transaction))
        lines.extend(["", "Status: PAID"])
        return "\n".join(lines) + "\n"

    def generate(self, transaction: PaymentTransaction) -> Receipt:
        """
        Raises:
            InvalidState: If the transaction is not completed
        """
        require_status(transaction.status, TransactionStatus.COMPLETED, "generate a receipt for")
        content = self.render_text(transaction)
        base_url = self.settings.receipt_base_url.rstrip("/")
        return Receipt(
            receipt_id=self.receipt_id(transaction),
            transaction_id=str(transaction.id),
            reference=transaction.reference,
            content=content,
            checksum=hashlib.sha256(content.encode("utf-8")).hexdigest(),
            download_url=f"{base_url}/transactions/{transaction.id}/receipt.pdf",
            filename=f"receipt_{transaction.reference}.pdf",
        )

    def render_pdf(self, transaction: PaymentTransaction) -> bytes:
        """
        Render the receipt as PDF.

        invariant mode pins the creation date and document id so the bytes
        are reproducible.

        Raises:
            InvalidState: If the transaction is not completed
        """
        require_status(transaction.status, TransactionStatus.COMPLETED, "generate a receipt for")

        buffer = BytesIO()
        doc = SimpleDocTemplate(
            buffer,
            pagesize=A4,
            topMargin=1 * inch,
            bottomMargin=1 * inch,
            title=f"Receipt {transaction.reference}",
            author=self.settings.receipt_issuer,
            invariant=1,
        )
        story = [
            Paragraph(self.settings.receipt_issuer, title_style),
            Paragraph("Payment Receipt", subtitle_style),
            Spacer(1, 30),
        ]

        table = Table(
            [[label, value] for label, value in self._rows(transaction)],
            colWidths=[2.5 * inch, 4 * inch],
        )
        table.setStyle(
            TableStyle(
                [
                    ("ALIGN", (0, 0), (-1, -1), "LEFT"),
                    ("FONTNAME", (0, 0), (0, -1), "Helvetica-Bold"),
                    ("BACKGROUND", (0, 0), (0, -1), colors.HexColor("#f0f0f0")),
                    ("GRID", (0, 0), (-1, -1), 0.5, colors.grey),
                    ("BOX", (0, 0), (-1, -1), 1, colors.black),
                    ("BOTTOMPADDING", (0, 0), (-1, -1), 6),
                ]
            )
        )
        story.append(table)
        story.append(Spacer(1, 30))
        story.append(
            Paragraph(
                f"<b>Status: PAID</b><br/>This is an official receipt from "
                f"<b>{self.settings.receipt_issuer}</b>.",
                styles["Normal"],
            )
        )

        doc.build(story)
        return buffer.getvalue()
