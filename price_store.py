# price_store.py
import os, json, math, time, tempfile, shutil
from decimal import Decimal, ROUND_HALF_UP
from typing import Dict, Any, Mapping, Optional

import config
from models import FuelType

PRICE_FILENAME = "fuel_prices.json"
PRICE_PATH = os.path.join(config.DATA_DIR, PRICE_FILENAME)

MAX_PRICE_PER_LITER = 500.0

def price_path_for(data_dir: str) -> str:
    return os.path.join(data_dir, PRICE_FILENAME)

def _path(path: Optional[str]) -> str:
    return path or PRICE_PATH

def _atomic_write(path: str, data: str) -> None:
    """Write a file atomically to avoid corruption."""
    os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
    fd, tmp = tempfile.mkstemp(prefix=".prices.", dir=os.path.dirname(path) or ".")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(data)
        shutil.move(tmp, path)
    finally:
        if os.path.exists(tmp):
            os.remove(tmp)

def _now_ts() -> int:
    return int(time.time())

def init_if_missing(path: Optional[str] = None) -> None:
    """Create the price table with the configured defaults if it doesn't exist."""
    if not os.path.exists(_path(path)):
        save_all({"prices": dict(config.DEFAULT_FUEL_PRICES), "updated_at": 0}, path)

def load_all(path: Optional[str] = None) -> Dict[str, Any]:
    """Load the whole JSON structure."""
    init_if_missing(path)
    with open(_path(path), "r", encoding="utf-8") as f:
        return json.load(f)

def save_all(obj: Dict[str, Any], path: Optional[str] = None) -> None:
    """Save the whole JSON structure atomically."""
    _atomic_write(_path(path), json.dumps(obj, ensure_ascii=False, indent=2))

def get_prices(path: Optional[str] = None) -> Dict[str, float]:
    """Return {"PETROL": price, "DIESEL": price}; missing fuels fall back to defaults."""
    prices = dict(config.DEFAULT_FUEL_PRICES)
    for k, v in (load_all(path).get("prices") or {}).items():
        try:
            prices[FuelType(k).value] = float(v)
        except (TypeError, ValueError):
            continue
    return prices

def get_price(fuel_type: FuelType, prices: Optional[Mapping[str, float]] = None,
              path: Optional[str] = None) -> float:
    table = prices if prices is not None else get_prices(path)
    return float(table[FuelType(fuel_type).value])

def set_price(fuel_type: FuelType, new_price: float, path: Optional[str] = None) -> Dict[str, Any]:
    """
    Update a fuel's price per liter; sets updated_at = current epoch seconds.
    Returns {"fuel_type", "price_per_liter", "updated_at"}.
    """
    fuel = FuelType(fuel_type).value
    if not math.isfinite(new_price) or new_price <= 0 or new_price > MAX_PRICE_PER_LITER:
        raise ValueError(f"Unreasonable price. Must be 0 < price ≤ {MAX_PRICE_PER_LITER:g}.")
    data = load_all(path)
    data.setdefault("prices", {})[fuel] = round(float(new_price), 2)
    data["updated_at"] = _now_ts()
    save_all(data, path)
    return {
        "fuel_type": fuel,
        "price_per_liter": data["prices"][fuel],
        "updated_at": data["updated_at"],
    }

# ===== Amount <-> liters =====

def round2(value) -> float:
    """Round half-up to 2 decimal places."""
    return float(Decimal(str(value)).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP))

def liters_for_amount(amount: float, fuel_type: FuelType,
                      prices: Optional[Mapping[str, float]] = None) -> float:
    """
    liters = round2(amount / price[fuel_type]).

    Shared by purchase estimation and redemption so both always agree.
    """
    if not math.isfinite(amount):
        raise ValueError("Amount must be a finite number.")
    price = get_price(fuel_type, prices)
    if price <= 0:
        raise ValueError(f"No usable price for {FuelType(fuel_type).value}")
    ratio = Decimal(str(amount)) / Decimal(str(price))
    return float(ratio.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP))
