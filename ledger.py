import copy
import json
import csv
import os
import logging
from datetime import datetime
from decimal import Decimal
from threading import Lock
from typing import Any, Dict, List, Optional

from errors import InsufficientStockError
from models import FuelType, Inventory, utc_now

logger = logging.getLogger(__name__)


def _sub2(a: float, b: float) -> float:
    """a - b on 2-decimal quantities without binary float drift."""
    return float(Decimal(str(a)) - Decimal(str(b)))


class _JsonLedger:
    """
    Current state in a JSON file, every mutation appended to a CSV audit log.

    HISTORY_FIELDS names the CSV columns; subclasses build the rows.

    If the JSON file can't be read or written, the ledger logs it and carries
    on from its last good state in memory; durability is lost for the session.
    """

    HISTORY_FIELDS: List[str] = []

    def __init__(self, json_path: str, history_csv_path: str):
        self.json_path = json_path
        self.history_csv_path = history_csv_path
        self._lock = Lock()
        self._last_good: Dict[str, Any] = {}
        self._fallback: Optional[Dict[str, Any]] = None
        try:
            self._ensure_files()
        except OSError as e:
            self._degrade(e)

    @property
    def durable(self) -> bool:
        return self._fallback is None

    # -------------------------
    # Internal helpers
    # -------------------------
    def _ensure_files(self) -> None:
        os.makedirs(os.path.dirname(self.json_path) or ".", exist_ok=True)
        if not os.path.exists(self.json_path):
            with open(self.json_path, "w", encoding="utf-8") as f:
                json.dump({}, f, indent=2)

        os.makedirs(os.path.dirname(self.history_csv_path) or ".", exist_ok=True)
        if not os.path.exists(self.history_csv_path):
            with open(self.history_csv_path, "w", newline="", encoding="utf-8") as f:
                csv.writer(f).writerow(self.HISTORY_FIELDS)

    def _load(self) -> Dict[str, Any]:
        if self._fallback is None:
            try:
                with open(self.json_path, "r", encoding="utf-8") as f:
                    data = json.load(f) or {}
                if not isinstance(data, dict):
                    raise ValueError("ledger file does not hold a JSON object")
                self._last_good = copy.deepcopy(data)
                return data
            except (OSError, ValueError) as e:
                self._degrade(e)
        return copy.deepcopy(self._fallback)

    def _save(self, data: Dict[str, Any]) -> None:
        if self._fallback is None:
            try:
                # Write atomically: write to tmp then move
                tmp_path = f"{self.json_path}.tmp"
                with open(tmp_path, "w", encoding="utf-8") as f:
                    json.dump(data, f, indent=2)
                os.replace(tmp_path, self.json_path)
                self._last_good = copy.deepcopy(data)
                return
            except OSError as e:
                self._degrade(e)
        self._fallback = copy.deepcopy(data)

    def _degrade(self, err: Exception) -> None:
        logger.error("⚠️ Ledger %s unavailable (%s); continuing in memory", self.json_path, err)
        self._fallback = copy.deepcopy(self._last_good)

    def _append_history(self, row: List[Any]) -> None:
        try:
            with open(self.history_csv_path, "a", newline="", encoding="utf-8") as f:
                csv.writer(f).writerow(["" if v is None else v for v in row])
        except OSError as e:
            logger.warning("⚠️ Ledger history write failed (%s): %s", self.history_csv_path, e)

    @staticmethod
    def _now_iso() -> str:
        return utc_now().isoformat(timespec="seconds")


class InventoryLedger(_JsonLedger):
    """
    Station fuel stock (liters), persisted to JSON with a CSV history.

    - Current state: data/inventory.json
      {"station1": {"stationId": ..., "petrolStock": 5000, ...}}
    - Audit log: data/inventory_history.csv
      timestamp_iso, station_id, fuel_type, old_stock, new_stock, delta, reason

    Only debit() and put() mutate stock; debit() never lets it go below zero.
    """

    DEFAULT_JSON_PATH = "data/inventory.json"
    DEFAULT_HISTORY_CSV_PATH = "data/inventory_history.csv"
    HISTORY_FIELDS = ["timestamp_iso", "station_id", "fuel_type", "old_stock", "new_stock", "delta", "reason"]

    def __init__(self, json_path: str = None, history_csv_path: str = None):
        super().__init__(json_path or self.DEFAULT_JSON_PATH,
                         history_csv_path or self.DEFAULT_HISTORY_CSV_PATH)

    # -------------------------
    # Public API
    # -------------------------
    def get(self, station_id: str) -> Optional[Inventory]:
        with self._lock:
            d = self._load().get(station_id)
        return Inventory.from_dict(d) if d else None

    def put(self, inventory: Inventory, reason: str = "sync") -> Inventory:
        """Replace a station's stock levels (e.g. after fetching from the backend)."""
        if inventory.petrol_stock < 0 or inventory.diesel_stock < 0:
            raise ValueError("Stock levels cannot be negative.")
        with self._lock:
            data = self._load()
            old = Inventory.from_dict(data[inventory.station_id]) if inventory.station_id in data else None
            data[inventory.station_id] = inventory.to_dict()
            self._save(data)
            for fuel in FuelType:
                old_v = old.stock_for(fuel) if old else None
                new_v = inventory.stock_for(fuel)
                if old_v != new_v:
                    delta = _sub2(new_v, old_v) if old_v is not None else new_v
                    self._append_history([self._now_iso(), inventory.station_id, fuel.value,
                                          old_v, new_v, delta, reason])
        return inventory

    def available(self, station_id: str, fuel_type: FuelType) -> float:
        inv = self.get(station_id)
        return inv.stock_for(fuel_type) if inv else 0.0

    def debit(self, station_id: str, fuel_type: FuelType, liters: float,
              reason: str = "redemption", when: Optional[datetime] = None) -> Inventory:
        """
        Subtract `liters` from the station's stock for `fuel_type` and stamp
        last_updated. Raises InsufficientStockError (no mutation) if the
        stock can't cover it, KeyError if the station is unknown.
        """
        if liters < 0:
            raise ValueError("Cannot debit a negative quantity.")
        with self._lock:
            data = self._load()
            if station_id not in data:
                raise KeyError(f"Station '{station_id}' not found")
            inv = Inventory.from_dict(data[station_id])
            current = inv.stock_for(fuel_type)
            if liters > current:
                raise InsufficientStockError(liters, current)
            updated = inv.with_stock(fuel_type, _sub2(current, liters), when or utc_now())
            data[station_id] = updated.to_dict()
            self._save(data)
            self._append_history([self._now_iso(), station_id, FuelType(fuel_type).value,
                                  current, updated.stock_for(fuel_type), -liters, reason])
        logger.info("Debited %.2f L %s at %s (%.2f L left)", liters, FuelType(fuel_type).value,
                    station_id, updated.stock_for(fuel_type))
        return updated

    def low_stock(self, station_id: str, threshold: float) -> List[FuelType]:
        inv = self.get(station_id)
        if not inv:
            return []
        return [f for f in FuelType if inv.stock_for(f) < threshold]


class BalanceLedger(_JsonLedger):
    """
    Beneficiary remaining subsidy balance (GMD).

    - Current state: data/balances.json   {"u1": 1000.0}
    - Audit log: data/balance_history.csv
    """

    DEFAULT_JSON_PATH = "data/balances.json"
    DEFAULT_HISTORY_CSV_PATH = "data/balance_history.csv"
    HISTORY_FIELDS = ["timestamp_iso", "subject_id", "old_balance", "new_balance", "reason"]

    def __init__(self, json_path: str = None, history_csv_path: str = None):
        super().__init__(json_path or self.DEFAULT_JSON_PATH,
                         history_csv_path or self.DEFAULT_HISTORY_CSV_PATH)

    def get(self, subject_id: str) -> Optional[float]:
        with self._lock:
            v = self._load().get(subject_id)
        return float(v) if v is not None else None

    def set(self, subject_id: str, balance: float, reason: str = "allocation") -> float:
        if balance < 0:
            raise ValueError("Balance cannot be negative.")
        with self._lock:
            data = self._load()
            old = data.get(subject_id)
            data[subject_id] = round(float(balance), 2)
            self._save(data)
            self._append_history([self._now_iso(), subject_id, old, data[subject_id], reason])
        return data[subject_id]

    def debit(self, subject_id: str, amount: float, opening_balance: Optional[float] = None,
              reason: str = "redemption") -> float:
        """
        Reduce the balance by `amount`, floored at 0. When no balance is on
        record yet, `opening_balance` is used as the starting point.
        """
        with self._lock:
            data = self._load()
            old = data.get(subject_id)
            start = float(old) if old is not None else float(opening_balance or 0)
            new = max(0.0, _sub2(start, amount))
            data[subject_id] = new
            self._save(data)
            self._append_history([self._now_iso(), subject_id, old, new, reason])
        return new
