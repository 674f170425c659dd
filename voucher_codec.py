# voucher_codec.py
"""
QR transport encoding for vouchers.

The QR code carries a compact UTF-8 JSON object, self-contained so an
attendant device can interpret it without any lookup:

  SUBSIDY: {"userId", "couponId", "fuelType", "remainingAmount", "expiry", "mode"}
  PAID:    {"transactionId", "fuelType", "paidAmount", "expiry", "mode"}
"""
import json
import logging
import math
from typing import Any, Dict, NamedTuple, Optional

from errors import DecodeError, ErrorCode
from models import (
    FuelType, PaidVoucher, SubsidyVoucher, Voucher, VoucherMode,
    parse_iso, to_iso,
)

logger = logging.getLogger(__name__)


class DecodeResult(NamedTuple):
    voucher: Optional[Voucher]
    error: Optional[DecodeError]

    @property
    def ok(self) -> bool:
        return self.error is None


def encode(voucher: Voucher) -> str:
    if isinstance(voucher, SubsidyVoucher):
        obj = {
            "userId": voucher.subject_id,
            "couponId": voucher.coupon_id,
            "fuelType": voucher.fuel_type.value,
            "remainingAmount": voucher.remaining_amount,
            "expiry": to_iso(voucher.expiry),
            "mode": VoucherMode.SUBSIDY.value,
        }
    elif isinstance(voucher, PaidVoucher):
        obj = {
            "transactionId": voucher.transaction_id,
            "fuelType": voucher.fuel_type.value,
            "paidAmount": voucher.paid_amount,
            "expiry": to_iso(voucher.expiry),
            "mode": VoucherMode.PAID.value,
        }
    else:
        raise TypeError(f"Not a voucher: {type(voucher).__name__}")
    return json.dumps(obj, ensure_ascii=False, separators=(",", ":"), allow_nan=False)


def decode(raw: Any) -> DecodeResult:
    """Parse a scanned string. Never raises; failures come back in `error`."""
    try:
        return DecodeResult(_parse(raw), None)
    except DecodeError as e:
        logger.info("QR decode rejected (%s): %s", e.code.value, e.message)
        return DecodeResult(None, e)


# -------------------------
# Internal helpers
# -------------------------

def _parse(raw: Any) -> Voucher:
    if isinstance(raw, (bytes, bytearray)):
        try:
            raw = raw.decode("utf-8")
        except UnicodeDecodeError:
            raise DecodeError(ErrorCode.MALFORMED_PAYLOAD, "QR payload is not UTF-8 text")
    if not isinstance(raw, str):
        raise DecodeError(ErrorCode.MALFORMED_PAYLOAD, "QR payload must be text")
    try:
        obj = json.loads(raw)
    except (ValueError, RecursionError):
        raise DecodeError(ErrorCode.MALFORMED_PAYLOAD, "QR payload is not valid JSON")
    if not isinstance(obj, dict):
        raise DecodeError(ErrorCode.MALFORMED_PAYLOAD, "QR payload must be a JSON object")

    mode = obj.get("mode")
    if mode == VoucherMode.SUBSIDY.value:
        return SubsidyVoucher(
            subject_id=_text(obj, "userId"),
            coupon_id=_text(obj, "couponId"),
            fuel_type=_fuel(obj),
            remaining_amount=_number(obj, "remainingAmount", allow_zero=True),
            expiry=_expiry(obj),
        )
    if mode == VoucherMode.PAID.value:
        return PaidVoucher(
            transaction_id=_text(obj, "transactionId"),
            fuel_type=_fuel(obj),
            paid_amount=_number(obj, "paidAmount", allow_zero=False),
            expiry=_expiry(obj),
        )
    raise DecodeError(ErrorCode.UNKNOWN_MODE, f"Unknown voucher mode: {mode!r}")


def _missing(key: str, why: str = "is required") -> DecodeError:
    return DecodeError(ErrorCode.MISSING_FIELD, f"'{key}' {why}")


def _text(obj: Dict[str, Any], key: str) -> str:
    v = obj.get(key)
    if not isinstance(v, str) or not v.strip():
        raise _missing(key)
    return v


def _number(obj: Dict[str, Any], key: str, allow_zero: bool) -> float:
    if key not in obj:
        raise _missing(key)
    v = obj[key]
    # bool is an int subclass; "true" is not an amount
    if isinstance(v, bool) or not isinstance(v, (int, float)):
        raise _missing(key, "must be a number")
    try:
        f = float(v)
    except OverflowError:
        raise _missing(key, "must be a finite number")
    if not math.isfinite(f):
        raise _missing(key, "must be a finite number")
    if f < 0 or (f == 0 and not allow_zero):
        raise _missing(key, "must be >= 0" if allow_zero else "must be > 0")
    return f


def _fuel(obj: Dict[str, Any]) -> FuelType:
    v = _text(obj, "fuelType")
    try:
        return FuelType(v)
    except ValueError:
        raise _missing("fuelType", "must be PETROL or DIESEL")


def _expiry(obj: Dict[str, Any]):
    v = _text(obj, "expiry")
    try:
        return parse_iso(v)
    except ValueError:
        raise _missing("expiry", "must be an ISO-8601 timestamp")
