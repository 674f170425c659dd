import json
from datetime import datetime, timezone

import pytest

import voucher_codec
from errors import ErrorCode
from models import FuelType, PaidVoucher, SubsidyVoucher, VoucherMode

EXPIRY = datetime(2026, 2, 14, 12, 0, 0, tzinfo=timezone.utc)


def subsidy(**overrides):
    fields = dict(subject_id="u1", coupon_id="COUPON-1", fuel_type=FuelType.PETROL,
                  remaining_amount=1500.0, expiry=EXPIRY)
    fields.update(overrides)
    return SubsidyVoucher(**fields)


def paid(**overrides):
    fields = dict(transaction_id="TXN-1", fuel_type=FuelType.DIESEL, paid_amount=250.5, expiry=EXPIRY)
    fields.update(overrides)
    return PaidVoucher(**fields)


class TestEncode:
    def test_subsidy_wire_format(self):
        raw = voucher_codec.encode(subsidy())
        assert raw == ('{"userId":"u1","couponId":"COUPON-1","fuelType":"PETROL",'
                       '"remainingAmount":1500.0,"expiry":"2026-02-14T12:00:00Z","mode":"SUBSIDY"}')

    def test_paid_wire_format(self):
        obj = json.loads(voucher_codec.encode(paid()))
        assert list(obj) == ["transactionId", "fuelType", "paidAmount", "expiry", "mode"]
        assert obj["mode"] == "PAID"
        assert obj["paidAmount"] == 250.5

    def test_deterministic(self):
        assert voucher_codec.encode(subsidy()) == voucher_codec.encode(subsidy())

    def test_non_ascii_kept(self):
        raw = voucher_codec.encode(subsidy(subject_id="Fatou Njié"))
        assert "Fatou Njié" in raw

    def test_rejects_non_voucher(self):
        with pytest.raises(TypeError):
            voucher_codec.encode({"mode": "SUBSIDY"})


class TestDecode:
    @pytest.mark.parametrize("voucher", [subsidy(), paid(), subsidy(remaining_amount=0.0)])
    def test_round_trip(self, voucher):
        result = voucher_codec.decode(voucher_codec.encode(voucher))
        assert result.ok
        assert result.voucher == voucher

    def test_accepts_bytes(self):
        result = voucher_codec.decode(voucher_codec.encode(paid()).encode("utf-8"))
        assert result.voucher == paid()

    def test_missing_fields(self):
        result = voucher_codec.decode('{"mode":"SUBSIDY","userId":"u1"}')
        assert not result.ok
        assert result.voucher is None
        assert result.error.code == ErrorCode.MISSING_FIELD

    @pytest.mark.parametrize("raw", ["not json", "[1, 2]", "42", "", None, b"\xff\xfe",
                                     pytest.param("[" * 100000 + "]" * 100000, id="deeply-nested")])
    def test_malformed(self, raw):
        result = voucher_codec.decode(raw)
        assert result.error.code == ErrorCode.MALFORMED_PAYLOAD

    @pytest.mark.parametrize("raw", ['{"mode":"GIFT","userId":"u1"}', '{"userId":"u1"}'])
    def test_unknown_mode(self, raw):
        assert voucher_codec.decode(raw).error.code == ErrorCode.UNKNOWN_MODE

    @pytest.mark.parametrize("field,value", [
        ("remainingAmount", True),
        ("remainingAmount", "1500"),
        ("fuelType", "KEROSENE"),
        ("expiry", "next tuesday"),
        ("couponId", ""),
    ])
    def test_semantically_wrong_field(self, field, value):
        obj = json.loads(voucher_codec.encode(subsidy()))
        obj[field] = value
        assert voucher_codec.decode(json.dumps(obj)).error.code == ErrorCode.MISSING_FIELD

    @pytest.mark.parametrize("literal", ["NaN", "Infinity", "1e400", pytest.param("1" + "0" * 400, id="huge-int")])
    def test_non_finite_amount(self, literal):
        raw = voucher_codec.encode(paid()).replace("250.5", literal)
        result = voucher_codec.decode(raw)
        assert result.voucher is None
        assert result.error.code == ErrorCode.MISSING_FIELD

    @pytest.mark.parametrize("voucher,field,value", [
        (paid(), "paidAmount", 0),
        (paid(), "paidAmount", -250.5),
        (subsidy(), "remainingAmount", -1),
    ])
    def test_out_of_range_amount(self, voucher, field, value):
        obj = json.loads(voucher_codec.encode(voucher))
        obj[field] = value
        assert voucher_codec.decode(json.dumps(obj)).error.code == ErrorCode.MISSING_FIELD

    def test_user_message_hides_detail(self):
        result = voucher_codec.decode("garbage")
        assert result.error.user_message == "Invalid QR code"

    def test_offset_expiry_normalised_to_utc(self):
        obj = json.loads(voucher_codec.encode(paid()))
        obj["expiry"] = "2026-02-14T13:00:00+01:00"
        assert voucher_codec.decode(json.dumps(obj)).voucher.expiry == EXPIRY

    def test_mode_property(self):
        assert voucher_codec.decode(voucher_codec.encode(paid())).voucher.mode == VoucherMode.PAID
