# models.py
import enum
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Union


class FuelType(str, enum.Enum):
    PETROL = "PETROL"
    DIESEL = "DIESEL"


class VoucherMode(str, enum.Enum):
    SUBSIDY = "SUBSIDY"
    PAID = "PAID"


class VoucherStatus(str, enum.Enum):
    PENDING = "PENDING"
    USED = "USED"
    COMPLETE = "COMPLETE"


# Forward-only ordering for VoucherStatus transitions
VOUCHER_STATUS_RANK = {
    VoucherStatus.PENDING: 0,
    VoucherStatus.USED: 1,
    VoucherStatus.COMPLETE: 2,
}


class TransactionStatus(str, enum.Enum):
    PENDING = "PENDING"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


# Payment intents share the transaction status vocabulary
PaymentStatus = TransactionStatus


class QueueItemType(str, enum.Enum):
    QR_SCAN = "QR_SCAN"
    INVENTORY_SYNC = "INVENTORY_SYNC"
    TRANSACTION = "TRANSACTION"


class QueueItemStatus(str, enum.Enum):
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    DEAD_LETTER = "DEAD_LETTER"


# =========================
# Time helpers
# =========================

def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(dt: datetime) -> str:
    """ISO-8601 in UTC with a trailing 'Z' (what JS Date#toISOString emits)."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def parse_iso(value: str) -> datetime:
    """
    Parse an ISO-8601 timestamp. Accepts a trailing 'Z'.
    Naive values are treated as UTC. Raises ValueError on anything else.
    """
    if not isinstance(value, str) or not value.strip():
        raise ValueError("timestamp must be a non-empty string")
    s = value.strip()
    if s.endswith("Z") or s.endswith("z"):
        s = s[:-1] + "+00:00"
    dt = datetime.fromisoformat(s)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def _opt_iso(dt: Optional[datetime]) -> Optional[str]:
    return to_iso(dt) if dt is not None else None


def _opt_parse(value: Optional[str]) -> Optional[datetime]:
    return parse_iso(value) if value else None


# =========================
# Vouchers
# =========================

@dataclass(frozen=True)
class SubsidyVoucher:
    subject_id: str
    coupon_id: str
    fuel_type: FuelType
    remaining_amount: float
    expiry: datetime
    mode: VoucherMode = field(default=VoucherMode.SUBSIDY, init=False)

    @property
    def voucher_id(self) -> str:
        return self.coupon_id

    @property
    def amount(self) -> float:
        return self.remaining_amount


@dataclass(frozen=True)
class PaidVoucher:
    transaction_id: str
    fuel_type: FuelType
    paid_amount: float
    expiry: datetime
    mode: VoucherMode = field(default=VoucherMode.PAID, init=False)

    @property
    def voucher_id(self) -> str:
        return self.transaction_id

    @property
    def amount(self) -> float:
        return self.paid_amount


Voucher = Union[SubsidyVoucher, PaidVoucher]


def is_expired(voucher: Voucher, now: Optional[datetime] = None) -> bool:
    return (now or utc_now()) > voucher.expiry


@dataclass
class VoucherRecord:
    id: str
    encoded_payload: str
    payload: Voucher
    status: VoucherStatus = VoucherStatus.PENDING
    created_at: datetime = field(default_factory=utc_now)
    used_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        # payload is rebuilt from encoded_payload on load
        return {
            "id": self.id,
            "qrData": self.encoded_payload,
            "status": self.status.value,
            "createdAt": to_iso(self.created_at),
            "usedAt": _opt_iso(self.used_at),
        }


# =========================
# Inventory / transactions
# =========================

@dataclass
class Inventory:
    station_id: str
    station_name: str
    petrol_stock: float
    diesel_stock: float
    last_updated: datetime = field(default_factory=utc_now)

    def stock_for(self, fuel_type: FuelType) -> float:
        return self.petrol_stock if FuelType(fuel_type) == FuelType.PETROL else self.diesel_stock

    def with_stock(self, fuel_type: FuelType, liters: float, when: Optional[datetime] = None) -> "Inventory":
        if FuelType(fuel_type) == FuelType.PETROL:
            return replace(self, petrol_stock=liters, last_updated=when or utc_now())
        return replace(self, diesel_stock=liters, last_updated=when or utc_now())

    def to_dict(self) -> Dict[str, Any]:
        return {
            "stationId": self.station_id,
            "stationName": self.station_name,
            "petrolStock": self.petrol_stock,
            "dieselStock": self.diesel_stock,
            "lastUpdated": to_iso(self.last_updated),
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "Inventory":
        return cls(
            station_id=str(d["stationId"]),
            station_name=str(d.get("stationName") or ""),
            petrol_stock=float(d.get("petrolStock") or 0),
            diesel_stock=float(d.get("dieselStock") or 0),
            last_updated=_opt_parse(d.get("lastUpdated")) or utc_now(),
        )


@dataclass(frozen=True)
class Transaction:
    id: str
    user_id: str
    fuel_type: FuelType
    amount: float
    liters: float
    mode: VoucherMode
    status: TransactionStatus
    created_at: datetime = field(default_factory=utc_now)
    station_id: Optional[str] = None
    station_name: Optional[str] = None
    voucher_id: Optional[str] = None
    error_code: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "userId": self.user_id,
            "stationId": self.station_id,
            "stationName": self.station_name,
            "fuelType": self.fuel_type.value,
            "amount": self.amount,
            "liters": self.liters,
            "mode": self.mode.value,
            "status": self.status.value,
            "qrCode": self.voucher_id,
            "errorCode": self.error_code,
            "createdAt": to_iso(self.created_at),
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "Transaction":
        return cls(
            id=str(d["id"]),
            user_id=str(d.get("userId") or ""),
            station_id=d.get("stationId"),
            station_name=d.get("stationName"),
            fuel_type=FuelType(d["fuelType"]),
            amount=float(d.get("amount") or 0),
            liters=float(d.get("liters") or 0),
            mode=VoucherMode(d["mode"]),
            status=TransactionStatus(d["status"]),
            voucher_id=d.get("qrCode"),
            error_code=d.get("errorCode"),
            created_at=_opt_parse(d.get("createdAt")) or utc_now(),
        )


@dataclass
class PaymentIntent:
    id: str
    amount: float
    fuel_type: FuelType
    status: PaymentStatus
    payment_method: Optional[str] = None
    transaction_id: Optional[str] = None

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "PaymentIntent":
        return cls(
            id=str(d["id"]),
            amount=float(d.get("amount") or 0),
            fuel_type=FuelType(d["fuelType"]),
            status=PaymentStatus(d["status"]),
            payment_method=d.get("paymentMethod"),
            transaction_id=d.get("transactionId"),
        )


@dataclass
class OfflineQueueItem:
    id: int
    type: QueueItemType
    payload: Any
    status: QueueItemStatus
    created_at: datetime
    retry_count: int = 0
    next_attempt_at: Optional[datetime] = None
    last_error: str = ""


SQLITE_FILENAME = "fuel_core.db"

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS offline_queue (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  type TEXT NOT NULL,
  data TEXT NOT NULL,
  status TEXT NOT NULL DEFAULT 'PENDING',
  created_at TEXT NOT NULL,
  retry_count INTEGER NOT NULL DEFAULT 0,
  next_attempt_at TEXT,
  last_error TEXT NOT NULL DEFAULT ''
);
CREATE INDEX IF NOT EXISTS ix_offline_queue_status_created
  ON offline_queue (status, created_at);

CREATE TABLE IF NOT EXISTS kv_store (
  key TEXT PRIMARY KEY,
  value TEXT NOT NULL
);
"""
