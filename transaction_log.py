# transaction_log.py
import logging
from datetime import datetime, date, timezone
from typing import Any, Dict, Iterable, List, Optional

import pandas as pd

from models import Transaction, parse_iso

logger = logging.getLogger(__name__)

TRANSACTIONS_KEY = "transactions"

EXPORT_COLUMNS = [
    "Transaction ID", "Created At", "User", "Station", "Voucher",
    "Mode", "Fuel Type", "Amount (GMD)", "Liters", "Status", "Error",
]


class TransactionLog:
    """
    Append-only record of redemption attempts, newest last.
    A failed retry is a new record; existing entries are never rewritten.
    """

    def __init__(self, kv):
        self.kv = kv

    def append(self, txn: Transaction) -> Transaction:
        rows = self.kv.get(TRANSACTIONS_KEY) or []
        if any(r.get("id") == txn.id for r in rows):
            raise ValueError(f"Transaction '{txn.id}' already recorded")
        rows.append(txn.to_dict())
        self.kv.set(TRANSACTIONS_KEY, rows)
        return txn

    def get(self, transaction_id: str) -> Optional[Transaction]:
        for r in self.kv.get(TRANSACTIONS_KEY) or []:
            if r.get("id") == transaction_id:
                return Transaction.from_dict(r)
        return None

    def list(self, filters: Optional[Dict[str, Any]] = None) -> List[Transaction]:
        rows = [Transaction.from_dict(r) for r in self.kv.get(TRANSACTIONS_KEY) or []]
        return filter_transactions(rows, filters)

    def recent(self, limit: int = 10) -> List[Transaction]:
        rows = self.list()
        rows.sort(key=lambda t: t.created_at, reverse=True)
        return rows[:limit]

    def to_dataframe(self, filters: Optional[Dict[str, Any]] = None) -> pd.DataFrame:
        out_rows = []
        for t in self.list(filters):
            out_rows.append({
                "Transaction ID": t.id,
                "Created At": t.created_at.isoformat(timespec="seconds"),
                "User": t.user_id,
                "Station": t.station_name or t.station_id or "",
                "Voucher": t.voucher_id or "",
                "Mode": t.mode.value,
                "Fuel Type": t.fuel_type.value,
                "Amount (GMD)": f"{t.amount:.2f}",
                "Liters": f"{t.liters:.2f}",
                "Status": t.status.value,
                "Error": t.error_code or "",
            })
        return pd.DataFrame(out_rows, columns=EXPORT_COLUMNS)

    def export_csv(self, path: str, filters: Optional[Dict[str, Any]] = None) -> str:
        df = self.to_dataframe(filters)
        df.to_csv(path, index=False, encoding="utf-8-sig")
        logger.info("Exported %d transactions to %s", len(df), path)
        return path


def _as_datetime(value, end_of_day: bool = False) -> Optional[datetime]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, date):
        value = value.isoformat()
    s = str(value).strip()
    if len(s) == 10 and end_of_day:
        s += "T23:59:59.999999"
    return parse_iso(s)


def filter_transactions(rows: Iterable[Transaction],
                        filters: Optional[Dict[str, Any]] = None) -> List[Transaction]:
    """
    Filters (all optional, camelCase or snake_case keys):
      - start_date / startDate: inclusive lower bound (date or ISO timestamp)
      - end_date / endDate:     inclusive upper bound; a bare date means end of that day
      - fuel_type / fuelType:   PETROL | DIESEL
      - mode:                   SUBSIDY | PAID
      - status:                 SUCCESS | FAILED | ...
      - station_id / stationId
    """
    f = filters or {}

    def pick(*keys):
        for k in keys:
            if f.get(k) not in (None, ""):
                return f[k]
        return None

    start = _as_datetime(pick("start_date", "startDate"))
    end = _as_datetime(pick("end_date", "endDate"), end_of_day=True)
    fuel = pick("fuel_type", "fuelType")
    mode = pick("mode")
    status = pick("status")
    station = pick("station_id", "stationId")

    out = []
    for t in rows:
        if start and t.created_at < start:
            continue
        if end and t.created_at > end:
            continue
        if fuel and t.fuel_type.value != str(fuel).upper():
            continue
        if mode and t.mode.value != str(mode).upper():
            continue
        if status and t.status.value != str(status).upper():
            continue
        if station and t.station_id != station:
            continue
        out.append(t)
    return out
