"""Price table, key-value persistence and the transaction log."""
import json
from datetime import timedelta

import pandas as pd
import pytest

import price_store
from models import FuelType, Transaction, TransactionStatus, VoucherMode
from persistence import JSONFileKV, MemoryKV, SQLiteKV, get_kv
from transaction_log import TransactionLog, filter_transactions

from conftest import NOW


class TestPriceStore:
    def test_seeded_defaults(self, price_file):
        assert price_store.get_prices() == {"PETROL": 65.0, "DIESEL": 68.0}
        assert json.loads(price_file.read_text())["updated_at"] == 0

    def test_set_price(self):
        updated = price_store.set_price(FuelType.DIESEL, 70.456)
        assert updated["fuel_type"] == "DIESEL"
        assert updated["price_per_liter"] == 70.46
        assert updated["updated_at"] > 0
        assert price_store.get_price("DIESEL") == 70.46

    @pytest.mark.parametrize("price", [0, -1, 500.01])
    def test_unreasonable_price(self, price):
        with pytest.raises(ValueError):
            price_store.set_price("PETROL", price)

    def test_liters_rounding(self):
        assert price_store.liters_for_amount(500, FuelType.PETROL) == 7.69
        assert price_store.liters_for_amount(400000, FuelType.PETROL) == 6153.85
        assert price_store.liters_for_amount(0.325, "PETROL", {"PETROL": 1.0}) == 0.33

    def test_round2_half_up(self):
        assert price_store.round2(2.675) == 2.68
        assert price_store.round2(1.005) == 1.01

    def test_zero_price_rejected(self):
        with pytest.raises(ValueError):
            price_store.liters_for_amount(10, "PETROL", {"PETROL": 0.0, "DIESEL": 68.0})

    @pytest.mark.parametrize("amount", [float("inf"), float("nan")])
    def test_non_finite_amount_rejected(self, amount):
        with pytest.raises(ValueError):
            price_store.liters_for_amount(amount, FuelType.PETROL)

    def test_nan_price_rejected(self):
        with pytest.raises(ValueError):
            price_store.set_price("PETROL", float("nan"))

    def test_explicit_path(self, tmp_path, price_file):
        other = str(tmp_path / "elsewhere" / "fuel_prices.json")
        price_store.set_price("PETROL", 70, other)
        assert price_store.get_price("PETROL", path=other) == 70.0
        assert price_store.get_price("PETROL") == 65.0
        assert price_store.price_path_for(str(tmp_path)) == str(price_file)


class TestPersistence:
    @pytest.mark.parametrize("backend", ["json", "db", "memory"])
    def test_set_get_delete(self, tmp_path, backend):
        kv = get_kv(backend, str(tmp_path))
        kv.set("k", {"a": [1, 2], "name": "Fatou"})
        assert kv.get("k") == {"a": [1, 2], "name": "Fatou"}
        kv.delete("k")
        assert kv.get("k") is None
        kv.delete("k")

    def test_json_survives_reopen(self, tmp_path):
        JSONFileKV(str(tmp_path / "s.json")).set("k", 1)
        assert JSONFileKV(str(tmp_path / "s.json")).get("k") == 1

    def test_sqlite_survives_reopen(self, tmp_path):
        first = SQLiteKV(str(tmp_path / "s.db"))
        first.set("k", [1])
        first.conn.close()
        assert SQLiteKV(str(tmp_path / "s.db")).get("k") == [1]

    def test_json_degrades_to_memory(self, tmp_path):
        blocker = tmp_path / "blocker"
        blocker.write_text("x")
        kv = JSONFileKV(str(blocker / "store.json"))
        assert not kv.durable
        kv.set("k", "v")
        assert kv.get("k") == "v"

    def test_corrupt_json_degrades(self, tmp_path):
        path = tmp_path / "store.json"
        path.write_text("{not json")
        kv = JSONFileKV(str(path))
        assert kv.get("k") is None
        assert not kv.durable
        kv.set("k", 2)
        assert kv.get("k") == 2

    def test_memory_is_not_durable(self):
        assert MemoryKV.durable is False


def txn(i, **overrides):
    fields = dict(
        id=f"RDM-{i}", user_id="u1", fuel_type=FuelType.PETROL, amount=100.0, liters=1.54,
        mode=VoucherMode.SUBSIDY, status=TransactionStatus.SUCCESS,
        created_at=NOW + timedelta(days=i), station_id="station1", station_name="Shell Station",
        voucher_id="COUPON-1",
    )
    fields.update(overrides)
    return Transaction(**fields)


class TestTransactionLog:
    @pytest.fixture
    def log(self, transaction_log):
        transaction_log.append(txn(0))
        transaction_log.append(txn(1, fuel_type=FuelType.DIESEL, mode=VoucherMode.PAID, user_id=""))
        transaction_log.append(txn(2, status=TransactionStatus.FAILED, error_code="EXPIRED"))
        return transaction_log

    def test_append_only(self, log):
        with pytest.raises(ValueError):
            log.append(txn(0))
        assert log.get("RDM-0") == txn(0)

    def test_recent(self, log):
        assert [t.id for t in log.recent(2)] == ["RDM-2", "RDM-1"]

    @pytest.mark.parametrize("filters,expected", [
        ({}, ["RDM-0", "RDM-1", "RDM-2"]),
        ({"fuelType": "diesel"}, ["RDM-1"]),
        ({"mode": "SUBSIDY"}, ["RDM-0", "RDM-2"]),
        ({"status": "FAILED"}, ["RDM-2"]),
        ({"start_date": "2026-01-16"}, ["RDM-1", "RDM-2"]),
        ({"endDate": "2026-01-16"}, ["RDM-0", "RDM-1"]),
        ({"stationId": "elsewhere"}, []),
    ])
    def test_filters(self, log, filters, expected):
        assert [t.id for t in log.list(filters)] == expected

    def test_filter_accepts_datetimes(self):
        rows = [txn(0), txn(1)]
        assert [t.id for t in filter_transactions(rows, {"start_date": NOW + timedelta(hours=1)})] == ["RDM-1"]

    def test_export_csv(self, log, tmp_path):
        path = log.export_csv(str(tmp_path / "out.csv"), {"status": "SUCCESS"})
        df = pd.read_csv(path, encoding="utf-8-sig", dtype=str, keep_default_na=False)
        assert list(df["Transaction ID"]) == ["RDM-0", "RDM-1"]
        assert list(df["Fuel Type"]) == ["PETROL", "DIESEL"]
        assert df.loc[0, "Amount (GMD)"] == "100.00"

    def test_empty_export_has_headers(self, transaction_log):
        df = transaction_log.to_dataframe()
        assert df.empty
        assert "Liters" in df.columns

    def test_shared_kv_with_voucher_store(self, kv, store, subsidy_voucher):
        TransactionLog(kv).append(txn(5))
        assert store.get("COUPON-1") is not None
        assert TransactionLog(kv).get("RDM-5") is not None
