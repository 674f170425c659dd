# offline_queue.py
"""
Durable, retryable queue of remote-dependent work (scan events, inventory
syncs, finalized transactions) for when the backend can't be reached.

Items live in sqlite so they survive restarts. drain() hands each item to
the resolver registered for its type:

  - success  -> item removed
  - failure  -> retry_count + 1, status FAILED, next attempt after an
                exponential backoff; DEAD_LETTER once max_retries is reached

Nothing is dropped silently: dead-lettered items stay in the table until
requeue_dead_letters() or an operator removes them.
"""
import os
import json
import sqlite3
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from threading import Lock
from typing import Any, Callable, Dict, List, Mapping, Optional

import config
from models import (
    OfflineQueueItem, QueueItemStatus, QueueItemType, SCHEMA_SQL, SQLITE_FILENAME, utc_now,
)

logger = logging.getLogger(__name__)

Handler = Callable[[Any], bool]

_TS_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"


def _ts(dt: datetime) -> str:
    # fixed width so lexical order == chronological order
    return dt.astimezone(timezone.utc).strftime(_TS_FORMAT)


def _parse_ts(s: Optional[str]) -> Optional[datetime]:
    if not s:
        return None
    return datetime.strptime(s, _TS_FORMAT).replace(tzinfo=timezone.utc)


@dataclass
class DrainReport:
    attempted: List[int] = field(default_factory=list)
    succeeded: List[int] = field(default_factory=list)
    failed: List[int] = field(default_factory=list)
    dead_lettered: List[int] = field(default_factory=list)
    skipped: List[int] = field(default_factory=list)  # claimed by a concurrent drain

    def to_dict(self) -> Dict[str, List[int]]:
        return {
            "attempted": self.attempted,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "deadLettered": self.dead_lettered,
            "skipped": self.skipped,
        }


class OfflineQueue:
    def __init__(self, db_path: Optional[str] = None,
                 backoff_base: float = None, backoff_max: float = None,
                 max_retries: Optional[int] = None):
        self.db_path = db_path or os.path.join(config.DATA_DIR, SQLITE_FILENAME)
        self.backoff_base = config.QUEUE_BACKOFF_BASE_SECONDS if backoff_base is None else backoff_base
        self.backoff_max = config.QUEUE_BACKOFF_MAX_SECONDS if backoff_max is None else backoff_max
        self.max_retries = config.QUEUE_MAX_RETRIES if max_retries is None else max_retries
        self._lock = Lock()
        self.durable = True
        try:
            if self.db_path != ":memory:":
                os.makedirs(os.path.dirname(self.db_path) or ".", exist_ok=True)
            self.conn = sqlite3.connect(self.db_path, check_same_thread=False)
            with self.conn:
                self.conn.executescript(SCHEMA_SQL)
        except (OSError, sqlite3.Error) as e:
            logger.error("⚠️ Offline queue %s unavailable (%s); queue is memory-only this session",
                         self.db_path, e)
            self.durable = False
            self.conn = sqlite3.connect(":memory:", check_same_thread=False)
            with self.conn:
                self.conn.executescript(SCHEMA_SQL)
        self.conn.row_factory = sqlite3.Row

    # ===== API =====

    def enqueue(self, item_type: QueueItemType, payload: Any, now: Optional[datetime] = None) -> int:
        item_type = QueueItemType(item_type)
        with self._lock, self.conn:
            cur = self.conn.execute(
                "INSERT INTO offline_queue (type, data, status, created_at, retry_count) "
                "VALUES (?, ?, ?, ?, 0)",
                (item_type.value, json.dumps(payload, ensure_ascii=False),
                 QueueItemStatus.PENDING.value, _ts(now or utc_now())),
            )
        logger.info("Queued %s item #%s for later sync", item_type.value, cur.lastrowid)
        return cur.lastrowid

    def get(self, item_id: int) -> Optional[OfflineQueueItem]:
        with self._lock:
            row = self.conn.execute("SELECT * FROM offline_queue WHERE id = ?", (item_id,)).fetchone()
        return self._row_to_item(row) if row else None

    def pending_items(self, limit: int = None, now: Optional[datetime] = None) -> List[OfflineQueueItem]:
        """
        Up to `limit` PENDING/FAILED items whose backoff has elapsed,
        oldest first.
        """
        limit = config.QUEUE_BATCH_SIZE if limit is None else int(limit)
        with self._lock:
            rows = self.conn.execute(
                """
                SELECT * FROM offline_queue
                WHERE status IN (?, ?)
                  AND (next_attempt_at IS NULL OR next_attempt_at <= ?)
                ORDER BY created_at ASC, id ASC
                LIMIT ?
                """,
                (QueueItemStatus.PENDING.value, QueueItemStatus.FAILED.value,
                 _ts(now or utc_now()), limit),
            ).fetchall()
        return [self._row_to_item(r) for r in rows]

    def list_items(self, status: Optional[QueueItemStatus] = None) -> List[OfflineQueueItem]:
        sql = "SELECT * FROM offline_queue"
        params = ()
        if status is not None:
            sql += " WHERE status = ?"
            params = (QueueItemStatus(status).value,)
        with self._lock:
            rows = self.conn.execute(sql + " ORDER BY created_at ASC, id ASC", params).fetchall()
        return [self._row_to_item(r) for r in rows]

    def drain(self, handlers: Mapping[QueueItemType, Handler], batch_size: int = None,
              now: Optional[datetime] = None) -> DrainReport:
        """
        Attempt up to `batch_size` eligible items, oldest first.

        Each item is claimed (PENDING/FAILED -> PROCESSING) before its
        resolver runs, so two overlapping drains never resolve the same item.
        """
        now = now or utc_now()
        report = DrainReport()
        for item in self.pending_items(batch_size, now=now):
            if not self._claim(item.id):
                report.skipped.append(item.id)
                continue
            report.attempted.append(item.id)
            ok, error = self._resolve(handlers, item)
            if ok:
                self.remove(item.id)
                report.succeeded.append(item.id)
                continue
            status = self._record_failure(item, error, now)
            if status == QueueItemStatus.DEAD_LETTER:
                report.dead_lettered.append(item.id)
            else:
                report.failed.append(item.id)
        if report.attempted:
            logger.info("Queue drain: %d attempted, %d synced, %d failed, %d dead-lettered",
                        len(report.attempted), len(report.succeeded),
                        len(report.failed), len(report.dead_lettered))
        return report

    def update_status(self, item_id: int, status: QueueItemStatus) -> bool:
        with self._lock, self.conn:
            cur = self.conn.execute("UPDATE offline_queue SET status = ? WHERE id = ?",
                                    (QueueItemStatus(status).value, item_id))
        return cur.rowcount == 1

    def increment_retry_count(self, item_id: int) -> bool:
        with self._lock, self.conn:
            cur = self.conn.execute("UPDATE offline_queue SET retry_count = retry_count + 1 WHERE id = ?",
                                    (item_id,))
        return cur.rowcount == 1

    def remove(self, item_id: int) -> bool:
        with self._lock, self.conn:
            cur = self.conn.execute("DELETE FROM offline_queue WHERE id = ?", (item_id,))
        return cur.rowcount == 1

    def clear_completed(self) -> int:
        with self._lock, self.conn:
            cur = self.conn.execute("DELETE FROM offline_queue WHERE status = ?",
                                    (QueueItemStatus.COMPLETED.value,))
        return cur.rowcount

    def recover_stale(self) -> int:
        """Return PROCESSING items orphaned by a crashed drain to PENDING."""
        with self._lock, self.conn:
            cur = self.conn.execute("UPDATE offline_queue SET status = ? WHERE status = ?",
                                    (QueueItemStatus.PENDING.value, QueueItemStatus.PROCESSING.value))
        if cur.rowcount:
            logger.warning("Recovered %d in-flight queue items from a previous run", cur.rowcount)
        return cur.rowcount

    def requeue_dead_letters(self) -> int:
        with self._lock, self.conn:
            cur = self.conn.execute(
                "UPDATE offline_queue SET status = ?, retry_count = 0, next_attempt_at = NULL "
                "WHERE status = ?",
                (QueueItemStatus.PENDING.value, QueueItemStatus.DEAD_LETTER.value),
            )
        return cur.rowcount

    def backlog(self) -> Dict[str, int]:
        """Item counts per status, for a retry/backlog indicator."""
        counts = {s.value: 0 for s in QueueItemStatus}
        with self._lock:
            for row in self.conn.execute("SELECT status, COUNT(*) AS n FROM offline_queue GROUP BY status"):
                counts[row["status"]] = row["n"]
        counts["total"] = sum(counts[s.value] for s in QueueItemStatus)
        return counts

    def backoff_delay(self, retry_count: int) -> timedelta:
        if retry_count <= 0 or self.backoff_base <= 0:
            return timedelta(0)
        return timedelta(seconds=min(self.backoff_max, self.backoff_base * (2 ** (retry_count - 1))))

    # -------------------------
    # Internal helpers
    # -------------------------
    def _claim(self, item_id: int) -> bool:
        with self._lock, self.conn:
            cur = self.conn.execute(
                "UPDATE offline_queue SET status = ? WHERE id = ? AND status IN (?, ?)",
                (QueueItemStatus.PROCESSING.value, item_id,
                 QueueItemStatus.PENDING.value, QueueItemStatus.FAILED.value),
            )
        return cur.rowcount == 1

    def _resolve(self, handlers: Mapping[QueueItemType, Handler], item: OfflineQueueItem):
        handler = handlers.get(item.type)
        if handler is None:
            return False, f"no resolver for {item.type.value}"
        try:
            return bool(handler(item.payload)), ""
        except Exception as e:
            logger.warning("Queue item #%s (%s) failed: %s", item.id, item.type.value, e)
            return False, str(e) or type(e).__name__

    def _record_failure(self, item: OfflineQueueItem, error: str, now: datetime) -> QueueItemStatus:
        retries = item.retry_count + 1
        status = QueueItemStatus.FAILED
        if self.max_retries and retries >= self.max_retries:
            status = QueueItemStatus.DEAD_LETTER
            logger.error("Queue item #%s (%s) dead-lettered after %d attempts: %s",
                         item.id, item.type.value, retries, error)
        next_at = _ts(now + self.backoff_delay(retries))
        with self._lock, self.conn:
            self.conn.execute(
                "UPDATE offline_queue SET retry_count = ?, status = ?, next_attempt_at = ?, last_error = ? "
                "WHERE id = ?",
                (retries, status.value, next_at, error or "resolver returned false", item.id),
            )
        return status

    def _row_to_item(self, row: sqlite3.Row) -> OfflineQueueItem:
        return OfflineQueueItem(
            id=row["id"],
            type=QueueItemType(row["type"]),
            payload=json.loads(row["data"]),
            status=QueueItemStatus(row["status"]),
            created_at=_parse_ts(row["created_at"]),
            retry_count=row["retry_count"],
            next_attempt_at=_parse_ts(row["next_attempt_at"]),
            last_error=row["last_error"] or "",
        )
