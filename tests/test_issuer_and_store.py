"""
Voucher issuance and the local voucher store.

- Issuance preconditions (amounts, expiry, ids)
- Paid purchase flow through the payment collaborator
- Store upsert / forward-only status
- QR image rendering
"""
import random
from datetime import timedelta

import pytest
from PIL import Image

import generate_voucher
import voucher_codec
from errors import ErrorCode, IssueError, PaymentFailedError
from generate_voucher import VoucherIssuer, generate_qr_image, new_coupon_id, qr_png_bytes
from models import FuelType, VoucherMode, VoucherStatus
from services import MockPaymentService

from conftest import NOW


class TestIssueSubsidy:
    def test_records_pending(self, issuer, store, subsidy_voucher):
        record = store.get("COUPON-1")
        assert record.status == VoucherStatus.PENDING
        assert record.payload == subsidy_voucher
        assert voucher_codec.decode(record.encoded_payload).voucher == subsidy_voucher

    def test_default_expiry_is_thirty_days(self, issuer):
        v = issuer.issue_subsidy_voucher("u2", "C-2", FuelType.DIESEL, 100)
        assert v.expiry == NOW + timedelta(days=30)

    def test_zero_balance_allowed(self, issuer):
        v = issuer.issue_subsidy_voucher("u2", "C-3", "PETROL", 0)
        assert v.remaining_amount == 0.0

    def test_generates_coupon_id(self, issuer):
        v = issuer.issue_subsidy_voucher("u2", None, "PETROL", 10)
        assert v.coupon_id.startswith("COUPON-20260115-")

    @pytest.mark.parametrize("kwargs", [
        dict(remaining_amount=-1),
        dict(remaining_amount=float("nan")),
        dict(remaining_amount=True),
        dict(subject_id=""),
        dict(fuel_type="KEROSENE"),
        dict(expiry=NOW - timedelta(seconds=1)),
        dict(expiry=NOW),
    ])
    def test_rejects_bad_input(self, issuer, store, kwargs):
        args = dict(subject_id="u1", coupon_id="C-9", fuel_type="PETROL", remaining_amount=10,
                    expiry=NOW + timedelta(days=1))
        args.update(kwargs)
        with pytest.raises(IssueError) as exc:
            issuer.issue_subsidy_voucher(**args)
        assert exc.value.code == ErrorCode.INVALID_VOUCHER
        assert store.get("C-9") is None


class TestIssuePaid:
    def test_default_expiry_is_one_day(self, issuer):
        v = issuer.issue_paid_voucher("TXN-1", "DIESEL", 300)
        assert v.expiry == NOW + timedelta(hours=24)
        assert v.mode == VoucherMode.PAID

    def test_zero_amount_rejected(self, issuer):
        with pytest.raises(IssueError):
            issuer.issue_paid_voucher("TXN-1", "DIESEL", 0)

    def test_purchase_issues_after_successful_payment(self, issuer, store, payment_service):
        v = issuer.purchase_paid_voucher(500, "PETROL", "wave")
        assert v.transaction_id.startswith("TXN-")
        assert v.paid_amount == 500.0
        assert store.get(v.transaction_id).status == VoucherStatus.PENDING
        intent = payment_service.verify_payment(v.transaction_id)
        assert intent.payment_method == "wave"

    def test_failed_payment_raises_and_issues_nothing(self, store):
        issuer = VoucherIssuer(store, payments=MockPaymentService(success_rate=0.0, rng=random.Random(1)),
                               clock=lambda: NOW)
        with pytest.raises(PaymentFailedError) as exc:
            issuer.purchase_paid_voucher(500, "PETROL", "wave")
        assert exc.value.code == ErrorCode.PAYMENT_FAILED
        assert store.list_all() == []

    def test_offline_payment_is_not_deferred(self, store):
        payments = MockPaymentService(success_rate=1.0, online=False)
        issuer = VoucherIssuer(store, payments=payments, clock=lambda: NOW)
        with pytest.raises(PaymentFailedError):
            issuer.purchase_paid_voucher(500, "PETROL", "wave")

    def test_no_payment_service(self, store):
        with pytest.raises(PaymentFailedError):
            VoucherIssuer(store, clock=lambda: NOW).purchase_paid_voucher(500, "PETROL", "wave")


class TestVoucherStore:
    def test_save_is_idempotent(self, issuer, store):
        issuer.issue_paid_voucher("TXN-1", "DIESEL", 300)
        issuer.issue_paid_voucher("TXN-1", "DIESEL", 300)
        assert [r.id for r in store.list_all()] == ["TXN-1"]

    def test_forward_only(self, store, subsidy_voucher):
        assert store.update_status("COUPON-1", VoucherStatus.USED).status == VoucherStatus.USED
        assert store.get("COUPON-1").used_at is not None
        assert store.update_status("COUPON-1", VoucherStatus.COMPLETE).status == VoucherStatus.COMPLETE
        assert store.update_status("COUPON-1", VoucherStatus.PENDING) is None
        assert store.get("COUPON-1").status == VoucherStatus.COMPLETE

    def test_unknown_id(self, store):
        assert store.update_status("nope", VoucherStatus.USED) is None

    def test_complete_not_revived_by_reissue(self, issuer, store, subsidy_voucher):
        store.update_status("COUPON-1", VoucherStatus.COMPLETE)
        used_at = store.get("COUPON-1").used_at
        issuer.issue_subsidy_voucher("u1", "COUPON-1", "PETROL", 1500, NOW + timedelta(days=30))
        record = store.get("COUPON-1")
        assert record.status == VoucherStatus.COMPLETE
        assert record.used_at == used_at

    def test_list_pending(self, issuer, store, subsidy_voucher):
        issuer.issue_paid_voucher("TXN-1", "DIESEL", 300)
        store.update_status("TXN-1", VoucherStatus.USED)
        assert [r.id for r in store.list_pending()] == ["COUPON-1"]


class TestQrImage:
    def test_png_bytes(self, store, subsidy_voucher):
        data = qr_png_bytes(store.get("COUPON-1"))
        assert data.startswith(b"\x89PNG")

    def test_generate_is_idempotent(self, tmp_path, store, subsidy_voucher):
        record = store.get("COUPON-1")
        path = generate_qr_image(record, str(tmp_path / "qr"))
        mtime = (tmp_path / "qr" / "COUPON-1.png").stat().st_mtime_ns
        assert generate_qr_image(record, str(tmp_path / "qr")) == path
        assert (tmp_path / "qr" / "COUPON-1.png").stat().st_mtime_ns == mtime
        with Image.open(path) as img:
            assert img.height > img.width  # caption strip below the code

    def test_coupon_id_format(self):
        cid = new_coupon_id(NOW)
        assert cid.startswith("COUPON-20260115-")
        assert len(cid) == len("COUPON-20260115-") + 6

    def test_output_dir_default(self, monkeypatch, tmp_path, store, subsidy_voucher):
        monkeypatch.setattr(generate_voucher, "QR_OUTPUT_DIR", str(tmp_path / "default"))
        assert generate_qr_image(store.get("COUPON-1")).startswith(str(tmp_path / "default"))
