# report_pdf.py
from io import BytesIO
import os

from reportlab.lib.pagesizes import A6
from reportlab.lib.units import mm
from reportlab.lib import colors
from reportlab.pdfgen import canvas
from reportlab.platypus import Table, TableStyle, Paragraph, Image
from reportlab.lib.styles import getSampleStyleSheet

from formatting import banjul_now, banjul_time, format_gmd, format_liters
from models import Transaction, VoucherMode


def _draw_paragraph(c, text, style, x, y, max_width):
    p = Paragraph(text, style)
    w, h = p.wrapOn(c, max_width, 1000)
    p.drawOn(c, x, y - h)
    return y - h


def receipt_rows(txn: Transaction):
    """Label/value pairs shown on the attendant receipt, in display order."""
    rows = [
        ["Transaction", txn.id],
        ["Date", banjul_time(txn.created_at)],
        ["Station", txn.station_name or txn.station_id or "—"],
        ["Type", "Subsidy" if txn.mode == VoucherMode.SUBSIDY else "Paid"],
        ["Fuel", txn.fuel_type.value.title()],
        ["Amount", format_gmd(txn.amount)],
        ["Liters", format_liters(txn.liters)],
        ["Status", txn.status.value],
    ]
    if txn.voucher_id:
        rows.insert(1, ["Voucher", txn.voucher_id])
    if txn.user_id:
        rows.insert(2, ["Beneficiary", txn.user_id])
    if txn.error_code:
        rows.append(["Reason", txn.error_code])
    return rows


def build_receipt_pdf(transaction: Transaction, logo_path=None) -> bytes:
    """
    Transaction receipt (A6 portrait) for the station attendant.

    Header "Fuel Gambia / Transaction Receipt", one two-column table of
    receipt_rows(), and a printed-at footer in Banjul time.
    """
    buf = BytesIO()
    c = canvas.Canvas(buf, pagesize=A6)
    page_w, page_h = A6

    x_margin = 8 * mm
    y_margin = 10 * mm
    y = page_h - y_margin
    max_width = page_w - 2 * x_margin

    styles = getSampleStyleSheet()
    title_style = styles["Heading2"]
    title_style.spaceAfter = 0
    subtitle_style = styles["Normal"]
    subtitle_style.leading = 12

    y = _draw_paragraph(c, "Fuel Gambia", title_style, x_margin, y, max_width)
    y = _draw_paragraph(c, "Transaction Receipt", subtitle_style, x_margin, y, max_width)
    y -= 4 * mm

    # Logo (top-right)
    if logo_path and os.path.isfile(logo_path):
        img = Image(logo_path)
        img._restrictSize(24 * mm, 12 * mm)
        img.drawOn(c, page_w - x_margin - img.drawWidth, page_h - y_margin - img.drawHeight)

    table = Table(receipt_rows(transaction), colWidths=[28 * mm, max_width - 28 * mm])
    table.setStyle(TableStyle([
        ("FONT", (0, 0), (0, -1), "Helvetica-Bold", 8),
        ("FONT", (1, 0), (1, -1), "Helvetica", 8),
        ("TEXTCOLOR", (0, 0), (0, -1), colors.HexColor("#233b64")),
        ("GRID", (0, 0), (-1, -1), 0.25, colors.HexColor("#d8e2f0")),
        ("ROWBACKGROUNDS", (0, 0), (-1, -1), [colors.whitesmoke, colors.HexColor("#f7f9fc")]),
        ("VALIGN", (0, 0), (-1, -1), "MIDDLE"),
        ("LEFTPADDING", (0, 0), (-1, -1), 4),
        ("RIGHTPADDING", (0, 0), (-1, -1), 4),
    ]))
    tw, th = table.wrapOn(c, max_width, y - y_margin)
    table.drawOn(c, x_margin, y - th)
    y = y - th - 6 * mm

    printed = banjul_now().strftime("%Y-%m-%d %H:%M")
    _draw_paragraph(c, f"Printed: {printed} (Banjul)", subtitle_style, x_margin, y, max_width)

    c.showPage()
    c.save()
    return buf.getvalue()
