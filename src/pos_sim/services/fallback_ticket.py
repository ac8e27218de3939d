"""
Paper receipt rendered when the sale falls back to printing.

Produces a narrow PDF shaped like an 80mm thermal ticket, so the demo can
show (or actually print) what the customer takes home instead of a QR code.
"""

import io
import logging

from reportlab.lib import colors
from reportlab.lib.pagesizes import letter
from reportlab.lib.styles import ParagraphStyle, getSampleStyleSheet
from reportlab.lib.units import mm
from reportlab.platypus import Paragraph, SimpleDocTemplate, Spacer, Table, TableStyle

from pos_sim.errors import IntentRejected
from pos_sim.snapshot import Snapshot

logger = logging.getLogger(__name__)

TICKET_WIDTH = 80 * mm

REASON_LABELS = {
    "NETWORK": "Network unavailable",
    "ISSUANCE_FAIL": "Digital receipt unavailable",
    "SCAN_FAIL": "QR scan failed",
    "CUSTOMER_REQUEST": "Requested by customer",
}

_AMOUNT_STYLE = [
    ("ALIGN", (1, 0), (1, -1), "RIGHT"),
    ("LEFTPADDING", (0, 0), (0, -1), 0),
    ("RIGHTPADDING", (1, 0), (1, -1), 0),
]


class FallbackTicketRenderer:
    """Renders the paper receipt of a sale whose fallback print happened."""

    def __init__(self, store_label: str | None = None):
        self.store_label = store_label
        self.styles = getSampleStyleSheet()
        self._setup_styles()

    def _setup_styles(self):
        self.styles.add(
            ParagraphStyle(
                name="TicketHeader",
                parent=self.styles["Heading1"],
                fontSize=14,
                alignment=1,
                spaceAfter=6,
            )
        )
        self.styles.add(
            ParagraphStyle(
                name="TicketSubheader",
                parent=self.styles["Normal"],
                fontSize=9,
                alignment=1,
                spaceAfter=3,
            )
        )
        self.styles.add(
            ParagraphStyle(
                name="TicketFooter",
                parent=self.styles["Normal"],
                fontSize=8,
                alignment=1,
                textColor=colors.gray,
            )
        )

    @staticmethod
    def _separator() -> Table:
        line = Table([[""]], colWidths=[68 * mm])
        line.setStyle(TableStyle([("LINEBELOW", (0, 0), (-1, -1), 0.5, colors.gray)]))
        return line

    def render(self, snapshot: Snapshot) -> bytes:
        """
        Build the ticket PDF.

        Raises:
            IntentRejected: no fallback print happened for the active sale
        """
        if not snapshot.fallback.printed:
            raise IntentRejected("No paper receipt was printed for this sale")

        cart = snapshot.cart
        currency = cart.currency
        terminal = snapshot.terminal
        buffer = io.BytesIO()
        doc = SimpleDocTemplate(
            buffer,
            pagesize=(TICKET_WIDTH, letter[1]),
            leftMargin=5 * mm,
            rightMargin=5 * mm,
            topMargin=10 * mm,
            bottomMargin=10 * mm,
        )

        elements = [
            Paragraph(self.store_label or terminal.store_id, self.styles["TicketHeader"]),
            Paragraph(
                f"{terminal.retailer_id} / {terminal.terminal_code}",
                self.styles["TicketSubheader"],
            ),
            Paragraph(f"Sale {snapshot.active_sale_id}", self.styles["TicketSubheader"]),
            Spacer(1, 3 * mm),
            self._separator(),
            Spacer(1, 2 * mm),
        ]

        rows = [
            [f"{item.qty}x {item.name}", f"{item.line_total:.2f}"] for item in cart.items
        ]
        if rows:
            items_table = Table(rows, colWidths=[50 * mm, 18 * mm])
            items_table.setStyle(
                TableStyle([("FONTSIZE", (0, 0), (-1, -1), 9), *_AMOUNT_STYLE])
            )
            elements.append(items_table)

        elements.extend([Spacer(1, 2 * mm), self._separator(), Spacer(1, 2 * mm)])

        totals = Table(
            [
                ["Subtotal:", f"{cart.subtotal:.2f}"],
                ["VAT:", f"{cart.vat_total:.2f}"],
                [f"TOTAL {currency}:", f"{cart.total:.2f}"],
            ],
            colWidths=[50 * mm, 18 * mm],
        )
        totals.setStyle(
            TableStyle(
                [
                    ("FONTSIZE", (0, 0), (-1, -1), 10),
                    ("FONTNAME", (0, 2), (-1, 2), "Helvetica-Bold"),
                    ("LINEABOVE", (0, 2), (-1, 2), 1, colors.black),
                    *_AMOUNT_STYLE,
                ]
            )
        )
        elements.append(totals)

        reason = snapshot.fallback.print_reason
        reason_label = REASON_LABELS.get(reason.value, reason.value) if reason else "-"
        elements.extend(
            [
                Spacer(1, 4 * mm),
                Paragraph(
                    f"Payment: {snapshot.flow.payment_state.value}",
                    self.styles["TicketFooter"],
                ),
                Paragraph(f"Paper receipt: {reason_label}", self.styles["TicketFooter"]),
            ]
        )

        doc.build(elements)
        pdf_bytes = buffer.getvalue()
        buffer.close()
        logger.info(
            "Fallback ticket rendered",
            extra={"session_id": snapshot.session_id, "sale_id": snapshot.active_sale_id},
        )
        return pdf_bytes
