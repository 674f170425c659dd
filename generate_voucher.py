import os
import io
import math
import random
import string
import logging
from datetime import datetime, timedelta, timezone
from typing import Mapping, Optional

import qrcode
from PIL import Image, ImageDraw, ImageFont

import config
import voucher_codec
from errors import IssueError, PaymentFailedError, RemoteError
from models import (
    FuelType, PaidVoucher, PaymentStatus, SubsidyVoucher, Voucher, VoucherMode,
    VoucherRecord, VoucherStatus, utc_now,
)

logger = logging.getLogger(__name__)

QR_OUTPUT_DIR = config.QR_OUTPUT_DIR


def new_coupon_id(now: Optional[datetime] = None) -> str:
    # COUPON-YYYYMMDD-XXXXXX (letters/digits)
    salt = ''.join(random.choices(string.ascii_uppercase + string.digits, k=6))
    return f"COUPON-{(now or utc_now()).strftime('%Y%m%d')}-{salt}"


def _check_amount(name: str, value, allow_zero: bool) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)) or not math.isfinite(value):
        raise IssueError(f"{name} must be a finite number")
    if value < 0 or (value == 0 and not allow_zero):
        raise IssueError(f"{name} must be {'>= 0' if allow_zero else '> 0'}")
    return float(value)


def _check_expiry(expiry: datetime, now: datetime) -> datetime:
    if expiry.tzinfo is None:
        expiry = expiry.replace(tzinfo=timezone.utc)
    expiry = expiry.astimezone(timezone.utc)
    if expiry <= now:
        raise IssueError("expiry must be in the future")
    return expiry


def _check_id(name: str, value) -> str:
    if not isinstance(value, str) or not value.strip():
        raise IssueError(f"{name} is required")
    return value.strip()


class VoucherIssuer:
    """
    Builds vouchers from an approved subsidy balance or a completed payment,
    encodes them, and records each one as PENDING in the voucher store.
    """

    def __init__(self, store, payments=None, validity: Optional[Mapping[str, timedelta]] = None,
                 clock=utc_now):
        self.store = store
        self.payments = payments
        self.validity = dict(validity or config.VOUCHER_VALIDITY)
        self.clock = clock

    def default_expiry(self, mode: VoucherMode, now: Optional[datetime] = None) -> datetime:
        return (now or self.clock()) + self.validity[VoucherMode(mode).value]

    def issue_subsidy_voucher(self, subject_id: str, coupon_id: Optional[str], fuel_type: FuelType,
                              remaining_amount: float, expiry: Optional[datetime] = None) -> SubsidyVoucher:
        """remaining_amount may be 0: the voucher is issuable, it just covers nothing."""
        now = self.clock()
        voucher = SubsidyVoucher(
            subject_id=_check_id("subject_id", subject_id),
            coupon_id=_check_id("coupon_id", coupon_id or new_coupon_id(now)),
            fuel_type=_fuel(fuel_type),
            remaining_amount=_check_amount("remaining_amount", remaining_amount, allow_zero=True),
            expiry=_check_expiry(expiry or self.default_expiry(VoucherMode.SUBSIDY, now), now),
        )
        self._record(voucher, now)
        return voucher

    def issue_paid_voucher(self, transaction_id: str, fuel_type: FuelType, paid_amount: float,
                           expiry: Optional[datetime] = None) -> PaidVoucher:
        """Call only after the payment collaborator reported SUCCESS for transaction_id."""
        now = self.clock()
        voucher = PaidVoucher(
            transaction_id=_check_id("transaction_id", transaction_id),
            fuel_type=_fuel(fuel_type),
            paid_amount=_check_amount("paid_amount", paid_amount, allow_zero=False),
            expiry=_check_expiry(expiry or self.default_expiry(VoucherMode.PAID, now), now),
        )
        self._record(voucher, now)
        return voucher

    def purchase_paid_voucher(self, amount: float, fuel_type: FuelType, payment_method: str) -> PaidVoucher:
        """
        Pay, then issue. Payment is synchronous: any failure raises
        PaymentFailedError right away and nothing is queued for retry.
        """
        if self.payments is None:
            raise PaymentFailedError("No payment service configured")
        amount = _check_amount("amount", amount, allow_zero=False)
        fuel = _fuel(fuel_type)
        try:
            intent = self.payments.create_payment_intent(amount, fuel)
            if intent is None:
                raise PaymentFailedError("Could not create payment intent")
            result = self.payments.process_payment(intent.id, payment_method)
        except RemoteError as e:
            raise PaymentFailedError(e.message)
        if result is None or result.status != PaymentStatus.SUCCESS or not result.transaction_id:
            logger.warning("Payment %s failed (%s)", intent.id,
                           result.status.value if result else "no response")
            raise PaymentFailedError()
        return self.issue_paid_voucher(result.transaction_id, fuel, amount)

    def _record(self, voucher: Voucher, now: datetime) -> VoucherRecord:
        record = VoucherRecord(
            id=voucher.voucher_id,
            encoded_payload=voucher_codec.encode(voucher),
            payload=voucher,
            status=VoucherStatus.PENDING,
            created_at=now,
        )
        self.store.save(record)
        logger.info("✅ Issued %s voucher %s (%s, %.2f GMD, expires %s)", voucher.mode.value,
                    voucher.voucher_id, voucher.fuel_type.value, voucher.amount, voucher.expiry.isoformat())
        return record


def _fuel(fuel_type) -> FuelType:
    try:
        return FuelType(fuel_type)
    except ValueError:
        raise IssueError(f"Unknown fuel type: {fuel_type!r}")


# ===== QR rendering =====

def render_qr_image(record: VoucherRecord) -> Image.Image:
    """QR of the encoded payload with a caption strip underneath."""
    voucher = record.payload
    qr = qrcode.make(record.encoded_payload)
    qr_img = qr.convert("RGB")

    final_img = Image.new("RGB", (qr_img.width, qr_img.height + 60), "white")
    final_img.paste(qr_img, (0, 0))

    draw = ImageDraw.Draw(final_img)
    try:
        font = ImageFont.truetype("arial.ttf", 18)
    except OSError:
        font = ImageFont.load_default()

    caption = f"{record.id} | {voucher.fuel_type.value} | {voucher.amount:,.2f} GMD"
    draw.text((10, qr_img.height + 10), caption, fill="black", font=font)
    return final_img


def qr_png_bytes(record: VoucherRecord) -> bytes:
    buf = io.BytesIO()
    render_qr_image(record).save(buf, format="PNG")
    return buf.getvalue()


def generate_qr_image(record: VoucherRecord, output_dir: str = None) -> str:
    """
    Idempotent: writes <output_dir>/<voucher_id>.png if missing and returns
    its path. Safe to call multiple times.
    """
    output_dir = output_dir or QR_OUTPUT_DIR
    os.makedirs(output_dir, exist_ok=True)
    filepath = os.path.join(output_dir, f"{record.id}.png")
    if not os.path.exists(filepath):
        render_qr_image(record).save(filepath)
        logger.info("✅ Saved QR voucher: %s", filepath)
    return filepath
