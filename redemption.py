# redemption.py
"""
Attendant-side redemption of a scanned voucher.

One attempt walks SCANNED -> VALIDATED -> STOCK_CHECKED -> DEBITED -> RECORDED,
or stops at REJECTED. Rejections before the debit leave inventory, balances
and voucher status untouched; they only add a FAILED row to the local
transaction log when the voucher could be read.

The device is offline-first: the local debit always applies, and any backend
call that can't complete (inventory sync, transaction submission, scan
event) goes to the offline queue instead of failing the redemption.
"""
import enum
import logging
import math
import random
import string
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

import config
import price_store
import voucher_codec
from errors import ErrorCode, FuelError, InsufficientStockError, RemoteError, USER_MESSAGES
from models import (
    FuelType, Inventory, QueueItemType, SubsidyVoucher, Transaction,
    TransactionStatus, Voucher, VoucherRecord, VoucherStatus, is_expired, to_iso, utc_now,
)

logger = logging.getLogger(__name__)


class RedemptionStage(str, enum.Enum):
    SCANNED = "SCANNED"
    VALIDATED = "VALIDATED"
    STOCK_CHECKED = "STOCK_CHECKED"
    DEBITED = "DEBITED"
    RECORDED = "RECORDED"
    REJECTED = "REJECTED"


@dataclass
class RedemptionResult:
    ok: bool
    stage: RedemptionStage
    voucher: Optional[Voucher] = None
    liters: Optional[float] = None
    transaction: Optional[Transaction] = None
    inventory: Optional[Inventory] = None
    remaining_balance: Optional[float] = None
    error_code: Optional[ErrorCode] = None
    message: str = ""
    failed_at: Optional[RedemptionStage] = None
    queued: List[int] = field(default_factory=list)
    low_stock: List[FuelType] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ok": self.ok,
            "stage": self.stage.value,
            "voucherId": self.voucher.voucher_id if self.voucher else None,
            "liters": self.liters,
            "transaction": self.transaction.to_dict() if self.transaction else None,
            "inventory": self.inventory.to_dict() if self.inventory else None,
            "remainingBalance": self.remaining_balance,
            "errorCode": self.error_code.value if self.error_code else None,
            "message": self.message,
            "queued": self.queued,
            "lowStock": [f.value for f in self.low_stock],
        }


def _new_redemption_id(now: datetime) -> str:
    salt = ''.join(random.choices(string.ascii_uppercase + string.digits, k=6))
    return f"RDM-{now.strftime('%Y%m%d%H%M%S')}-{salt}"


class RedemptionEngine:
    def __init__(self, store, inventory_ledger, balance_ledger, transaction_log, queue,
                 inventory_service=None, transaction_service=None,
                 prices: Optional[Mapping[str, float]] = None,
                 price_path: Optional[str] = None,
                 low_stock_threshold: Optional[float] = None,
                 is_online: Optional[Callable[[], bool]] = None,
                 clock=utc_now):
        self.store = store
        self.inventory = inventory_ledger
        self.balances = balance_ledger
        self.transactions = transaction_log
        self.queue = queue
        self.inventory_service = inventory_service
        self.transaction_service = transaction_service
        self.prices = prices
        self.price_path = price_path
        self.low_stock_threshold = (config.LOW_STOCK_THRESHOLD_LITERS
                                    if low_stock_threshold is None else low_stock_threshold)
        self.is_online = is_online or (lambda: True)
        self.clock = clock

    # -------------------------
    # Public API
    # -------------------------
    def price_table(self) -> Mapping[str, float]:
        return self.prices if self.prices is not None else price_store.get_prices(self.price_path)

    def estimate_liters(self, amount: float, fuel_type: FuelType) -> float:
        """Same formula the purchase screens use, so estimate == dispensed."""
        return price_store.liters_for_amount(amount, fuel_type, self.price_table())

    def validate(self, raw: str, now: Optional[datetime] = None) -> Tuple[Optional[Voucher], Optional[FuelError]]:
        """Decode + expiry check only; what the scanner shows before an amount is entered."""
        decoded = voucher_codec.decode(raw)
        if not decoded.ok:
            return None, decoded.error
        if is_expired(decoded.voucher, now or self.clock()):
            return decoded.voucher, FuelError(ErrorCode.EXPIRED, "Voucher expired")
        return decoded.voucher, None

    def redeem(self, raw: str, amount: float, station_id: str,
               now: Optional[datetime] = None) -> RedemptionResult:
        now = now or self.clock()

        # SCANNED -> VALIDATED
        decoded = voucher_codec.decode(raw)
        if not decoded.ok:
            return self._reject(RedemptionStage.SCANNED, decoded.error.code, decoded.error.message)
        voucher = decoded.voucher
        queued = self._report_scan(voucher, station_id, now)

        amount_ok = not isinstance(amount, bool) and isinstance(amount, (int, float)) \
            and math.isfinite(amount) and amount > 0
        if is_expired(voucher, now):
            return self._reject(RedemptionStage.SCANNED, ErrorCode.EXPIRED,
                                f"Voucher expired at {to_iso(voucher.expiry)}",
                                voucher, station_id, amount if amount_ok else 0.0, now, queued)
        if not amount_ok:
            return self._reject(RedemptionStage.SCANNED, ErrorCode.INVALID_AMOUNT,
                                "Amount must be greater than zero", voucher, station_id, 0.0, now, queued)
        record = self.store.get(voucher.voucher_id)
        if record is not None and record.status in (VoucherStatus.USED, VoucherStatus.COMPLETE):
            return self._reject(RedemptionStage.SCANNED, ErrorCode.ALREADY_REDEEMED,
                                f"Voucher {voucher.voucher_id} is already {record.status.value}",
                                voucher, station_id, amount, now, queued)

        # VALIDATED -> STOCK_CHECKED
        liters = self.estimate_liters(amount, voucher.fuel_type)
        inv = self._station_inventory(station_id)
        if inv is None:
            return self._reject(RedemptionStage.VALIDATED, ErrorCode.INVENTORY_UNAVAILABLE,
                                f"No inventory for station '{station_id}'",
                                voucher, station_id, amount, now, queued, liters=liters)
        available = inv.stock_for(voucher.fuel_type)
        if liters > available:
            return self._reject(RedemptionStage.VALIDATED, ErrorCode.INSUFFICIENT_STOCK,
                                f"Requested {liters:.2f} L but only {available:.2f} L in stock",
                                voucher, station_id, amount, now, queued, liters=liters, inventory=inv)

        # STOCK_CHECKED -> DEBITED
        try:
            inv = self.inventory.debit(station_id, voucher.fuel_type, liters,
                                       reason=f"redeem {voucher.voucher_id}", when=now)
        except InsufficientStockError as e:
            return self._reject(RedemptionStage.STOCK_CHECKED, ErrorCode.INSUFFICIENT_STOCK, e.message,
                                voucher, station_id, amount, now, queued, liters=liters)
        # stock is gone from here on; the voucher must not be redeemable again
        self._mark_used(voucher, now)
        queued += self._push_inventory(station_id, voucher.fuel_type, liters)

        # DEBITED -> RECORDED
        txn = Transaction(
            id=_new_redemption_id(now),
            user_id=voucher.subject_id if isinstance(voucher, SubsidyVoucher) else "",
            station_id=station_id,
            station_name=inv.station_name,
            fuel_type=voucher.fuel_type,
            amount=float(amount),
            liters=liters,
            mode=voucher.mode,
            status=TransactionStatus.SUCCESS,
            voucher_id=voucher.voucher_id,
            created_at=now,
        )
        self.transactions.append(txn)

        remaining = None
        if isinstance(voucher, SubsidyVoucher):
            remaining = self.balances.debit(voucher.subject_id, amount,
                                            opening_balance=voucher.remaining_amount,
                                            reason=f"redeem {voucher.voucher_id}")

        delivered, queue_id = self._call_remote(
            QueueItemType.TRANSACTION, txn.to_dict(),
            self.transaction_service.submit_transaction if self.transaction_service else None,
        )
        if delivered:
            self.store.update_status(voucher.voucher_id, VoucherStatus.COMPLETE)
        if queue_id is not None:
            queued.append(queue_id)

        low = self.inventory.low_stock(station_id, self.low_stock_threshold)
        if voucher.fuel_type in low:
            logger.warning("⚠️ Low %s stock at %s: %.2f L", voucher.fuel_type.value, station_id,
                           inv.stock_for(voucher.fuel_type))
        logger.info("Redeemed %s: %.2f GMD -> %.2f L %s at %s", voucher.voucher_id, amount, liters,
                    voucher.fuel_type.value, station_id)
        return RedemptionResult(
            ok=True,
            stage=RedemptionStage.RECORDED,
            voucher=voucher,
            liters=liters,
            transaction=txn,
            inventory=inv,
            remaining_balance=remaining,
            message="Fuel dispensed",
            queued=queued,
            low_stock=low,
        )

    def low_stock_alerts(self, station_id: str) -> List[FuelType]:
        return self.inventory.low_stock(station_id, self.low_stock_threshold)

    def refresh_inventory(self, station_id: str) -> Optional[Inventory]:
        """Pull the backend's stock levels into the local ledger."""
        if self.inventory_service is None or not self.is_online():
            return self.inventory.get(station_id)
        try:
            remote = self.inventory_service.get_inventory(station_id)
        except RemoteError as e:
            logger.warning("Inventory fetch for %s failed: %s", station_id, e.message)
            return self.inventory.get(station_id)
        if remote is None:
            return self.inventory.get(station_id)
        return self.inventory.put(Inventory.from_dict(remote.to_dict()), reason="sync")

    def queue_handlers(self) -> Dict[QueueItemType, Callable[[Any], bool]]:
        """Resolvers for OfflineQueue.drain(), one per queued item type."""
        return {
            QueueItemType.QR_SCAN: self._resolve_scan,
            QueueItemType.INVENTORY_SYNC: self._resolve_inventory_sync,
            QueueItemType.TRANSACTION: self._resolve_transaction,
        }

    def drain_queue(self, batch_size: int = None, now: Optional[datetime] = None):
        return self.queue.drain(self.queue_handlers(), batch_size, now=now)

    # -------------------------
    # Internal helpers
    # -------------------------
    def _reject(self, stage: RedemptionStage, code: ErrorCode, message: str,
                voucher: Optional[Voucher] = None, station_id: Optional[str] = None,
                amount: float = 0.0, now: Optional[datetime] = None,
                queued: Optional[List[int]] = None, liters: Optional[float] = None,
                inventory: Optional[Inventory] = None) -> RedemptionResult:
        txn = None
        if voucher is not None:
            now = now or self.clock()
            txn = Transaction(
                id=_new_redemption_id(now),
                user_id=voucher.subject_id if isinstance(voucher, SubsidyVoucher) else "",
                station_id=station_id,
                fuel_type=voucher.fuel_type,
                amount=float(amount),
                liters=liters or 0.0,
                mode=voucher.mode,
                status=TransactionStatus.FAILED,
                voucher_id=voucher.voucher_id,
                error_code=code.value,
                created_at=now,
            )
            self.transactions.append(txn)
        logger.info("Redemption rejected at %s: %s (%s)", stage.value, code.value, message)
        return RedemptionResult(
            ok=False,
            stage=RedemptionStage.REJECTED,
            failed_at=stage,
            voucher=voucher,
            liters=liters,
            transaction=txn,
            inventory=inventory,
            error_code=code,
            message=USER_MESSAGES.get(code, message),
            queued=list(queued or []),
        )

    def _station_inventory(self, station_id: str) -> Optional[Inventory]:
        inv = self.inventory.get(station_id)
        if inv is not None:
            return inv
        return self.refresh_inventory(station_id)

    def _mark_used(self, voucher: Voucher, now: datetime) -> None:
        if self.store.update_status(voucher.voucher_id, VoucherStatus.USED) is None \
                and self.store.get(voucher.voucher_id) is None:
            # scanned on a device that didn't issue it; track it so a re-scan is caught
            self.store.save(VoucherRecord(
                id=voucher.voucher_id,
                encoded_payload=voucher_codec.encode(voucher),
                payload=voucher,
                status=VoucherStatus.USED,
                created_at=now,
                used_at=now,
            ))

    def _call_remote(self, item_type: QueueItemType, payload: Dict[str, Any],
                     call: Optional[Callable[[Dict[str, Any]], bool]]) -> Tuple[bool, Optional[int]]:
        """
        Deliver now if we can; otherwise queue it.
        Returns (delivered, queue_item_id).
        """
        if call is None:
            # nothing could ever resolve it, so queueing would only dead-letter
            logger.debug("No collaborator for %s; not queued", item_type.value)
            return False, None
        if self.is_online():
            try:
                if call(payload):
                    return True, None
            except RemoteError as e:
                logger.warning("%s delivery failed: %s", item_type.value, e.message)
        return False, self.queue.enqueue(item_type, payload)

    def _push_inventory(self, station_id: str, fuel_type: FuelType, liters: float) -> List[int]:
        payload = {"stationId": station_id, "fuelType": FuelType(fuel_type).value, "liters": liters}
        delivered, queue_id = self._call_remote(
            QueueItemType.INVENTORY_SYNC, payload,
            self._resolve_inventory_sync if self.inventory_service else None,
        )
        return [] if queue_id is None else [queue_id]

    def _report_scan(self, voucher: Voucher, station_id: str, now: datetime) -> List[int]:
        payload = {
            "voucherId": voucher.voucher_id,
            "mode": voucher.mode.value,
            "fuelType": voucher.fuel_type.value,
            "stationId": station_id,
            "scannedAt": to_iso(now),
        }
        delivered, queue_id = self._call_remote(
            QueueItemType.QR_SCAN, payload,
            self.transaction_service.record_scan if self.transaction_service else None,
        )
        return [] if queue_id is None else [queue_id]

    def _resolve_scan(self, payload: Dict[str, Any]) -> bool:
        if self.transaction_service is None:
            return False
        return bool(self.transaction_service.record_scan(payload))

    def _resolve_inventory_sync(self, payload: Dict[str, Any]) -> bool:
        if self.inventory_service is None:
            return False
        return bool(self.inventory_service.update_inventory(
            payload["stationId"], FuelType(payload["fuelType"]), float(payload["liters"])))

    def _resolve_transaction(self, payload: Dict[str, Any]) -> bool:
        if self.transaction_service is None:
            return False
        if not self.transaction_service.submit_transaction(payload):
            return False
        if payload.get("qrCode"):
            self.store.update_status(payload["qrCode"], VoucherStatus.COMPLETE)
        return True
