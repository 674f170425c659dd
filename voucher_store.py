# voucher_store.py
import logging
from typing import Dict, List, Optional

import voucher_codec
from models import (
    VOUCHER_STATUS_RANK, VoucherRecord, VoucherStatus, parse_iso, utc_now,
)

logger = logging.getLogger(__name__)

RECORDS_KEY = "voucher_records"


class VoucherStore:
    """
    Issued vouchers and their redemption status, keyed by voucher id
    (couponId or transactionId).

    All records live under one key of the key-value store, so every mutation
    is a single atomic write. The store is a local cache: the backend is the
    authority on whether a voucher was consumed on another device.
    """

    def __init__(self, kv):
        self.kv = kv

    # -------------------------
    # Public API
    # -------------------------
    def save(self, record: VoucherRecord) -> VoucherRecord:
        """
        Upsert by id. Re-saving a still-valid voucher replaces it in place.
        A COMPLETE voucher keeps its status and used_at.
        """
        records = self._load()
        existing = records.get(record.id)
        if existing is not None and existing.status == VoucherStatus.COMPLETE:
            record.status = VoucherStatus.COMPLETE
            record.used_at = existing.used_at or record.used_at
        records[record.id] = record
        self._save(records)
        return record

    def get(self, voucher_id: str) -> Optional[VoucherRecord]:
        return self._load().get(voucher_id)

    def update_status(self, voucher_id: str, status: VoucherStatus) -> Optional[VoucherRecord]:
        """
        Forward-only PENDING -> USED -> COMPLETE.
        Returns the updated record, or None when the id is unknown or the
        transition would move backwards.
        """
        status = VoucherStatus(status)
        records = self._load()
        record = records.get(voucher_id)
        if record is None:
            logger.warning("Status update for unknown voucher %s", voucher_id)
            return None
        if VOUCHER_STATUS_RANK[status] < VOUCHER_STATUS_RANK[record.status]:
            logger.info("Ignoring backward status change %s -> %s for %s",
                        record.status.value, status.value, voucher_id)
            return None
        record.status = status
        if status in (VoucherStatus.USED, VoucherStatus.COMPLETE) and record.used_at is None:
            record.used_at = utc_now()
        self._save(records)
        return record

    def list_pending(self) -> List[VoucherRecord]:
        return [r for r in self._load().values() if r.status == VoucherStatus.PENDING]

    def list_all(self) -> List[VoucherRecord]:
        return list(self._load().values())

    # -------------------------
    # Internal helpers
    # -------------------------
    def _load(self) -> Dict[str, VoucherRecord]:
        raw = self.kv.get(RECORDS_KEY) or {}
        out: Dict[str, VoucherRecord] = {}
        for vid, d in raw.items():
            decoded = voucher_codec.decode(d.get("qrData"))
            if not decoded.ok:
                logger.error("Dropping unreadable stored voucher %s: %s", vid, decoded.error.message)
                continue
            out[vid] = VoucherRecord(
                id=vid,
                encoded_payload=d["qrData"],
                payload=decoded.voucher,
                status=VoucherStatus(d.get("status") or VoucherStatus.PENDING.value),
                created_at=parse_iso(d["createdAt"]) if d.get("createdAt") else utc_now(),
                used_at=parse_iso(d["usedAt"]) if d.get("usedAt") else None,
            )
        return out

    def _save(self, records: Dict[str, VoucherRecord]) -> None:
        self.kv.set(RECORDS_KEY, {vid: r.to_dict() for vid, r in records.items()})
