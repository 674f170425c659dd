# config.py
import os
from datetime import timedelta


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name, "").strip()
    if not raw:
        return float(default)
    try:
        return float(raw)
    except ValueError:
        return float(default)


def _env_int(name: str, default: int) -> int:
    return int(_env_float(name, default))


# Storage
DATA_DIR = os.environ.get("FUEL_DATA_DIR", "data")
PERSISTENCE_BACKEND = os.environ.get("PERSISTENCE_BACKEND", "json").lower()  # json | db | memory
QR_OUTPUT_DIR = os.environ.get("QR_OUTPUT_DIR", "static/qr_codes/")

# Backend API
API_BASE_URL = os.environ.get("API_BASE_URL", "http://localhost:3000/api")
API_TIMEOUT_SECONDS = _env_float("API_TIMEOUT_SECONDS", 30)
API_TOKEN = os.environ.get("API_TOKEN", "").strip()
USE_MOCK_SERVICES = os.environ.get("USE_MOCK_SERVICES", "1").strip() == "1"

ADMIN_KEY = os.environ.get("ADMIN_KEY", "fuel-admin")

# Voucher validity windows, keyed by mode
VOUCHER_VALIDITY = {
    "SUBSIDY": timedelta(hours=_env_float("SUBSIDY_VALIDITY_HOURS", 24 * 30)),  # one allocation cycle
    "PAID": timedelta(hours=_env_float("PAID_VALIDITY_HOURS", 24)),
}

# Seed values for data/fuel_prices.json (GMD per liter)
DEFAULT_FUEL_PRICES = {
    "PETROL": 65.0,
    "DIESEL": 68.0,
}

LOW_STOCK_THRESHOLD_LITERS = _env_float("LOW_STOCK_THRESHOLD_LITERS", 1000)

# Offline queue
QUEUE_BATCH_SIZE = _env_int("QUEUE_BATCH_SIZE", 10)
QUEUE_BACKOFF_BASE_SECONDS = _env_float("QUEUE_BACKOFF_BASE_SECONDS", 2)
QUEUE_BACKOFF_MAX_SECONDS = _env_float("QUEUE_BACKOFF_MAX_SECONDS", 300)
QUEUE_MAX_RETRIES = _env_int("QUEUE_MAX_RETRIES", 8)
