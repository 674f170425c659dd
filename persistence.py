# persistence.py
"""
Key-value persistence used by the voucher store and transaction log.

Three backends behind one small API (set/get/delete):
  - "json":   one JSON document on disk, written atomically
  - "db":     sqlite table kv_store
  - "memory": process-local dict (tests, or the degraded mode below)

If durable storage can't be opened or written, the store logs the failure and
keeps working from memory for the rest of the session; durability is lost
but nothing crashes.
"""
import os, json, sqlite3, logging
from threading import Lock
from typing import Any, Dict, Optional

import config
from models import SCHEMA_SQL, SQLITE_FILENAME

logger = logging.getLogger(__name__)

KV_JSON_FILENAME = "fuel_store.json"

def _ensure_dirs(data_dir: str):
    os.makedirs(data_dir, exist_ok=True)

def get_kv(backend: Optional[str] = None, data_dir: Optional[str] = None):
    backend = (backend or config.PERSISTENCE_BACKEND or "json").lower()
    data_dir = data_dir or config.DATA_DIR
    if backend == "memory":
        return MemoryKV()
    if backend == "db":
        return SQLiteKV(os.path.join(data_dir, SQLITE_FILENAME))
    return JSONFileKV(os.path.join(data_dir, KV_JSON_FILENAME))


class MemoryKV:
    durable = False

    def __init__(self):
        self._data: Dict[str, str] = {}
        self._lock = Lock()

    def set(self, key: str, value: Any) -> None:
        with self._lock:
            self._data[key] = json.dumps(value)

    def get(self, key: str) -> Any:
        with self._lock:
            raw = self._data.get(key)
        return json.loads(raw) if raw is not None else None

    def delete(self, key: str) -> None:
        with self._lock:
            self._data.pop(key, None)


class JSONFileKV:
    def __init__(self, path: str):
        self.path = path
        self._lock = Lock()
        self._fallback: Optional[MemoryKV] = None
        try:
            _ensure_dirs(os.path.dirname(path) or ".")
            if not os.path.exists(path):
                self._write({})
        except OSError as e:
            self._degrade(e)

    @property
    def durable(self) -> bool:
        return self._fallback is None

    # ===== API =====

    def set(self, key: str, value: Any) -> None:
        if self._fallback:
            return self._fallback.set(key, value)
        with self._lock:
            try:
                data = self._read()
                data[key] = value
                self._write(data)
                return
            except (OSError, ValueError) as e:
                snapshot = self._safe_snapshot()
                self._degrade(e, snapshot)
        self._fallback.set(key, value)

    def get(self, key: str) -> Any:
        if self._fallback:
            return self._fallback.get(key)
        with self._lock:
            try:
                return self._read().get(key)
            except (OSError, ValueError) as e:
                self._degrade(e)
        return self._fallback.get(key)

    def delete(self, key: str) -> None:
        if self._fallback:
            return self._fallback.delete(key)
        with self._lock:
            try:
                data = self._read()
                if key in data:
                    del data[key]
                    self._write(data)
                return
            except (OSError, ValueError) as e:
                self._degrade(e)
        self._fallback.delete(key)

    # -------------------------
    # Internal helpers
    # -------------------------
    def _read(self) -> Dict[str, Any]:
        with open(self.path, "r", encoding="utf-8") as f:
            return json.load(f) or {}

    def _write(self, data: Dict[str, Any]) -> None:
        # Write atomically: write to tmp then move
        tmp_path = f"{self.path}.tmp"
        with open(tmp_path, "w", encoding="utf-8") as f:
            json.dump(data, f, ensure_ascii=False, indent=2)
        os.replace(tmp_path, self.path)

    def _safe_snapshot(self) -> Dict[str, Any]:
        try:
            return self._read()
        except (OSError, ValueError):
            return {}

    def _degrade(self, err: Exception, snapshot: Optional[Dict[str, Any]] = None) -> None:
        logger.error("⚠️ Persistent store %s unavailable (%s); continuing in memory", self.path, err)
        self._fallback = MemoryKV()
        for k, v in (snapshot or {}).items():
            self._fallback.set(k, v)


class SQLiteKV:
    def __init__(self, path: str):
        self.path = path
        self._lock = Lock()
        self._fallback: Optional[MemoryKV] = None
        try:
            _ensure_dirs(os.path.dirname(path) or ".")
            self.conn = sqlite3.connect(path, check_same_thread=False)
            with self.conn:
                self.conn.executescript(SCHEMA_SQL)
        except (OSError, sqlite3.Error) as e:
            self._degrade(e)

    @property
    def durable(self) -> bool:
        return self._fallback is None

    def set(self, key: str, value: Any) -> None:
        if not self._fallback:
            try:
                with self._lock, self.conn:
                    self.conn.execute(
                        "INSERT OR REPLACE INTO kv_store (key, value) VALUES (?, ?)",
                        (key, json.dumps(value, ensure_ascii=False)),
                    )
                return
            except sqlite3.Error as e:
                self._degrade(e)
        self._fallback.set(key, value)

    def get(self, key: str) -> Any:
        if not self._fallback:
            try:
                with self._lock:
                    row = self.conn.execute("SELECT value FROM kv_store WHERE key = ?", (key,)).fetchone()
                return json.loads(row[0]) if row else None
            except sqlite3.Error as e:
                self._degrade(e)
        return self._fallback.get(key)

    def delete(self, key: str) -> None:
        if not self._fallback:
            try:
                with self._lock, self.conn:
                    self.conn.execute("DELETE FROM kv_store WHERE key = ?", (key,))
                return
            except sqlite3.Error as e:
                self._degrade(e)
        self._fallback.delete(key)

    def _degrade(self, err: Exception) -> None:
        logger.error("⚠️ sqlite store %s failed (%s); continuing in memory", self.path, err)
        self._fallback = MemoryKV()
