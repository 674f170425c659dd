import random
from datetime import datetime, timedelta, timezone

import pytest

import price_store
from generate_voucher import VoucherIssuer
from ledger import BalanceLedger, InventoryLedger
from models import Inventory
from offline_queue import OfflineQueue
from persistence import MemoryKV
from redemption import RedemptionEngine
from services import MockInventoryService, MockPaymentService, MockTransactionService
from transaction_log import TransactionLog
from voucher_store import VoucherStore

NOW = datetime(2026, 1, 15, 12, 0, 0, tzinfo=timezone.utc)
STATION_ID = "station1"


@pytest.fixture(autouse=True)
def price_file(tmp_path, monkeypatch):
    """Every test gets its own fuel price table (PETROL 65, DIESEL 68)."""
    path = tmp_path / "fuel_prices.json"
    monkeypatch.setattr(price_store, "PRICE_PATH", str(path))
    price_store.init_if_missing()
    return path


@pytest.fixture
def kv():
    return MemoryKV()


@pytest.fixture
def store(kv):
    return VoucherStore(kv)


@pytest.fixture
def transaction_log(kv):
    return TransactionLog(kv)


@pytest.fixture
def inventory_ledger(tmp_path):
    ledger = InventoryLedger(str(tmp_path / "inventory.json"), str(tmp_path / "inventory_history.csv"))
    ledger.put(Inventory(STATION_ID, "Shell Station", 5000.0, 4500.0, NOW))
    return ledger


@pytest.fixture
def balance_ledger(tmp_path):
    return BalanceLedger(str(tmp_path / "balances.json"), str(tmp_path / "balance_history.csv"))


@pytest.fixture
def queue(tmp_path):
    q = OfflineQueue(str(tmp_path / "queue.db"))
    yield q
    q.conn.close()


@pytest.fixture
def inventory_service():
    return MockInventoryService()


@pytest.fixture
def transaction_service():
    return MockTransactionService()


@pytest.fixture
def payment_service():
    return MockPaymentService(success_rate=1.0, rng=random.Random(7))


@pytest.fixture
def issuer(store, payment_service):
    return VoucherIssuer(store, payments=payment_service, clock=lambda: NOW)


@pytest.fixture
def engine(store, inventory_ledger, balance_ledger, transaction_log, queue,
           inventory_service, transaction_service):
    return RedemptionEngine(
        store, inventory_ledger, balance_ledger, transaction_log, queue,
        inventory_service=inventory_service,
        transaction_service=transaction_service,
        clock=lambda: NOW,
    )


@pytest.fixture
def subsidy_voucher(issuer):
    """Scenario voucher: 1500 GMD of petrol, valid for 30 days."""
    return issuer.issue_subsidy_voucher("u1", "COUPON-1", "PETROL", 1500, NOW + timedelta(days=30))
