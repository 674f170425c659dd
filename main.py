from flask import Flask, request, send_file, jsonify
import os
import io
import csv
import math
import logging
from datetime import datetime
from dataclasses import dataclass
from typing import Any, Dict, Optional

import config
import price_store
from errors import ErrorCode, FuelError
from formatting import BANJUL
from generate_voucher import VoucherIssuer, qr_png_bytes
from ledger import BalanceLedger, InventoryLedger
from models import FuelType, QueueItemStatus, parse_iso, to_iso, utc_now
from offline_queue import OfflineQueue
from persistence import get_kv
from redemption import RedemptionEngine
from report_pdf import build_receipt_pdf
from services import build_services
from transaction_log import TransactionLog
from voucher_store import VoucherStore

logger = logging.getLogger(__name__)

PRICE_STALE_AFTER_SECONDS = 7 * 24 * 60 * 60

# HTTP status per rejection code; anything unlisted is a 400
REJECTION_STATUS = {
    ErrorCode.EXPIRED: 409,
    ErrorCode.ALREADY_REDEEMED: 409,
    ErrorCode.INSUFFICIENT_STOCK: 409,
    ErrorCode.INVENTORY_UNAVAILABLE: 404,
    ErrorCode.PAYMENT_FAILED: 402,
    ErrorCode.REMOTE_ERROR: 502,
}


@dataclass
class AppContext:
    data_dir: str
    price_path: str
    store: VoucherStore
    issuer: VoucherIssuer
    engine: RedemptionEngine
    inventory: InventoryLedger
    balances: BalanceLedger
    transactions: TransactionLog
    queue: OfflineQueue
    services: Dict[str, Any]


def build_context(data_dir: str = None, backend: str = None, use_mocks: Optional[bool] = None) -> AppContext:
    """Wire every component against one data directory."""
    data_dir = data_dir or config.DATA_DIR
    os.makedirs(data_dir, exist_ok=True)

    kv = get_kv(backend, data_dir)
    store = VoucherStore(kv)
    transactions = TransactionLog(kv)
    inventory = InventoryLedger(os.path.join(data_dir, "inventory.json"),
                                os.path.join(data_dir, "inventory_history.csv"))
    balances = BalanceLedger(os.path.join(data_dir, "balances.json"),
                             os.path.join(data_dir, "balance_history.csv"))
    queue = OfflineQueue(os.path.join(data_dir, "offline_queue.db"))
    queue.recover_stale()
    price_path = price_store.price_path_for(data_dir)
    services = build_services(use_mocks)

    issuer = VoucherIssuer(store, payments=services["payments"])
    engine = RedemptionEngine(
        store, inventory, balances, transactions, queue,
        inventory_service=services["inventory"],
        transaction_service=services["transactions"],
        price_path=price_path,
    )
    return AppContext(data_dir, price_path, store, issuer, engine, inventory, balances, transactions, queue, services)


def create_app(context: Optional[AppContext] = None) -> Flask:
    app = Flask(__name__)
    ctx = context or build_context()
    app.config["FUEL_CONTEXT"] = ctx

    # Initialize price store JSON on startup (creates <data_dir>/fuel_prices.json if missing)
    price_store.init_if_missing(ctx.price_path)

    price_history_path = os.path.join(ctx.data_dir, "price_history.csv")

    def append_price_history(fuel_type, old_price, new_price, updated_unix):
        """Append a price change row; timestamp_iso is logged in Africa/Banjul local time."""
        is_new = not os.path.isfile(price_history_path)
        try:
            with open(price_history_path, "a", newline="", encoding="utf-8-sig") as f:
                writer = csv.DictWriter(f, fieldnames=PRICE_HISTORY_FIELDS)
                if is_new:
                    writer.writeheader()
                writer.writerow({
                    "timestamp_iso": datetime.fromtimestamp(int(updated_unix), tz=BANJUL).isoformat(timespec="seconds"),
                    "timestamp_unix": int(updated_unix),
                    "fuel_type": fuel_type,
                    "old_price": old_price if old_price is not None else "",
                    "new_price": new_price,
                    "actor_ip": request.headers.get("X-Forwarded-For", request.remote_addr),
                    "user_agent": request.headers.get("User-Agent", ""),
                })
        except OSError as e:
            logger.warning("⚠️ Price history write failed: %s", e)

    # =========================
    # Health
    # =========================
    @app.route("/healthz", methods=["GET", "HEAD"])
    def healthz():
        if request.method == "HEAD":
            return ("", 200, {"Content-Type": "text/plain; charset=utf-8", "Cache-Control": "no-store"})
        return ("ok", 200, {"Content-Type": "text/plain; charset=utf-8", "Cache-Control": "no-store"})

    # =========================
    # Prices
    # =========================
    @app.route("/api/v1/prices", methods=["GET"])
    def api_prices_list():
        data = price_store.load_all(ctx.price_path)
        return jsonify({"ok": True, "prices": price_store.get_prices(ctx.price_path), "updated_at": data.get("updated_at", 0)})

    @app.route("/admin/prices/update", methods=["POST"])
    def admin_prices_update():
        if not _check_admin_key(request):
            return jsonify({"ok": False, "error": "forbidden"}), 403
        try:
            payload = request.get_json(force=True, silent=True) or {}
            fuel_type = FuelType(str(payload.get("fuel_type", "")).strip().upper())
            new_price = float(payload.get("price", 0))

            old_price = price_store.get_prices(ctx.price_path).get(fuel_type.value)
            updated = price_store.set_price(fuel_type, new_price, ctx.price_path)
            append_price_history(
                fuel_type=fuel_type.value,
                old_price=old_price,
                new_price=updated["price_per_liter"],
                updated_unix=updated["updated_at"],
            )
            return jsonify({"ok": True, **updated})
        except (TypeError, ValueError) as e:
            return jsonify({"ok": False, "error": str(e)}), 400

    @app.route("/api/v1/price_preview", methods=["GET"])
    def api_price_preview():
        """
        Query params:
          - fuel_type: PETROL | DIESEL
          - amount: GMD amount (float)
        """
        try:
            fuel_type = FuelType((request.args.get("fuel_type") or "").strip().upper())
        except ValueError:
            return jsonify({"ok": False, "error": "unknown fuel type"}), 400
        try:
            amount = float(request.args.get("amount", "0"))
        except ValueError:
            return jsonify({"ok": False, "error": "invalid amount"}), 400
        if not math.isfinite(amount) or amount <= 0:
            return jsonify({"ok": False, "error": "invalid amount"}), 400

        ts = int(price_store.load_all(ctx.price_path).get("updated_at", 0) or 0)
        is_stale = ts <= 0 or (int(utc_now().timestamp()) - ts) >= PRICE_STALE_AFTER_SECONDS
        return jsonify({
            "ok": True,
            "fuel_type": fuel_type.value,
            "price_per_liter": price_store.get_price(fuel_type, path=ctx.price_path),
            "price_updated_at": ts,
            "price_is_stale": is_stale,
            "amount": amount,
            "liters": ctx.engine.estimate_liters(amount, fuel_type),
        })

    # =========================
    # Vouchers
    # =========================
    @app.route("/api/v1/vouchers/subsidy", methods=["POST"])
    def api_issue_subsidy():
        p = request.get_json(force=True, silent=True) or {}
        try:
            voucher = ctx.issuer.issue_subsidy_voucher(
                subject_id=p.get("userId"),
                coupon_id=p.get("couponId"),
                fuel_type=str(p.get("fuelType", "")).upper(),
                remaining_amount=p.get("remainingAmount"),
                expiry=_optional_expiry(p),
            )
        except FuelError as e:
            return _error(e)
        return jsonify({"ok": True, "voucher": _record_json(ctx.store.get(voucher.voucher_id))}), 201

    @app.route("/api/v1/vouchers/paid", methods=["POST"])
    def api_issue_paid():
        """
        Either {"transactionId", "fuelType", "paidAmount"} for an already
        settled payment, or {"amount", "fuelType", "paymentMethod"} to pay first.
        """
        p = request.get_json(force=True, silent=True) or {}
        fuel_type = str(p.get("fuelType", "")).upper()
        try:
            if p.get("transactionId"):
                voucher = ctx.issuer.issue_paid_voucher(
                    p["transactionId"], fuel_type, p.get("paidAmount"), expiry=_optional_expiry(p))
            else:
                voucher = ctx.issuer.purchase_paid_voucher(
                    p.get("amount"), fuel_type, p.get("paymentMethod") or "mobile_money")
        except FuelError as e:
            return _error(e)
        return jsonify({"ok": True, "voucher": _record_json(ctx.store.get(voucher.voucher_id))}), 201

    @app.route("/api/v1/vouchers/pending", methods=["GET"])
    def api_vouchers_pending():
        records = sorted(ctx.store.list_pending(), key=lambda r: r.created_at, reverse=True)
        return jsonify({"ok": True, "vouchers": [_record_json(r) for r in records]})

    @app.route("/api/v1/vouchers/<voucher_id>/qr.png", methods=["GET"])
    def api_voucher_qr(voucher_id):
        record = ctx.store.get(voucher_id)
        if record is None:
            return jsonify({"ok": False, "error": "voucher not found"}), 404
        return send_file(io.BytesIO(qr_png_bytes(record)), mimetype="image/png",
                         download_name=f"{voucher_id}.png")

    # =========================
    # Redemption
    # =========================
    @app.route("/api/v1/redeem", methods=["POST"])
    def api_redeem():
        p = request.get_json(force=True, silent=True) or {}
        station_id = str(p.get("stationId") or "").strip()
        if not station_id:
            return jsonify({"ok": False, "error": "stationId is required"}), 400
        amount = p.get("amount")
        if isinstance(amount, str):
            try:
                amount = float(amount)
            except ValueError:
                pass
        result = ctx.engine.redeem(p.get("qrData") or "", amount, station_id)
        status = 200 if result.ok else REJECTION_STATUS.get(result.error_code, 400)
        return jsonify(result.to_dict()), status

    @app.route("/api/v1/inventory/<station_id>", methods=["GET"])
    def api_inventory(station_id):
        inv = ctx.inventory.get(station_id) or ctx.engine.refresh_inventory(station_id)
        if inv is None:
            return jsonify({"ok": False, "error": "station not found"}), 404
        return jsonify({
            "ok": True,
            "inventory": inv.to_dict(),
            "lowStock": [f.value for f in ctx.engine.low_stock_alerts(station_id)],
        })

    # =========================
    # Transactions
    # =========================
    @app.route("/api/v1/transactions", methods=["GET"])
    def api_transactions():
        rows = ctx.transactions.list(dict(request.args))
        rows.sort(key=lambda t: t.created_at, reverse=True)
        return jsonify({"ok": True, "transactions": [t.to_dict() for t in rows]})

    @app.route("/api/v1/transactions/<transaction_id>/receipt.pdf", methods=["GET"])
    def api_transaction_receipt(transaction_id):
        txn = ctx.transactions.get(transaction_id)
        if txn is None:
            return jsonify({"ok": False, "error": "transaction not found"}), 404
        return send_file(
            io.BytesIO(build_receipt_pdf(txn)),
            mimetype="application/pdf",
            as_attachment=True,
            download_name=f"receipt_{transaction_id}.pdf",
        )

    @app.route("/export_transactions_csv")
    def export_transactions_csv():
        dated = utc_now().astimezone(BANJUL).strftime("%b-%d-%Y")
        export_path = os.path.join(ctx.data_dir, f"transactions_{dated}.csv")
        ctx.transactions.export_csv(export_path, dict(request.args))
        return send_file(os.path.abspath(export_path), as_attachment=True, mimetype="text/csv")

    # =========================
    # Offline queue
    # =========================
    @app.route("/api/v1/queue", methods=["GET"])
    def api_queue():
        status = request.args.get("status")
        try:
            items = ctx.queue.list_items(QueueItemStatus(status.upper()) if status else None)
        except ValueError:
            return jsonify({"ok": False, "error": "unknown status"}), 400
        return jsonify({
            "ok": True,
            "backlog": ctx.queue.backlog(),
            "durable": ctx.queue.durable,
            "items": [_queue_item_json(i) for i in items],
        })

    @app.route("/api/v1/queue/drain", methods=["POST"])
    def api_queue_drain():
        p = request.get_json(force=True, silent=True) or {}
        try:
            batch_size = int(p.get("batchSize") or config.QUEUE_BATCH_SIZE)
        except (TypeError, ValueError):
            return jsonify({"ok": False, "error": "invalid batchSize"}), 400
        report = ctx.engine.drain_queue(batch_size)
        return jsonify({"ok": True, "report": report.to_dict(), "backlog": ctx.queue.backlog()})

    return app


PRICE_HISTORY_FIELDS = [
    "timestamp_iso", "timestamp_unix", "fuel_type",
    "old_price", "new_price", "actor_ip", "user_agent",
]


def _check_admin_key(req):
    key = req.args.get("key") or req.headers.get("X-Admin-Key")
    return key == config.ADMIN_KEY


def _error(e: FuelError):
    return jsonify({"ok": False, "errorCode": e.code.value, "error": e.message}), \
        REJECTION_STATUS.get(e.code, 400)


def _optional_expiry(p):
    if not p.get("expiry"):
        return None
    try:
        return parse_iso(p["expiry"])
    except ValueError:
        raise FuelError(ErrorCode.INVALID_VOUCHER, "expiry must be an ISO-8601 timestamp")


def _record_json(record) -> Dict[str, Any]:
    d = record.to_dict()
    d["mode"] = record.payload.mode.value
    d["fuelType"] = record.payload.fuel_type.value
    d["amount"] = record.payload.amount
    d["expiry"] = to_iso(record.payload.expiry)
    d["qrUrl"] = f"/api/v1/vouchers/{record.id}/qr.png"
    return d


def _queue_item_json(item) -> Dict[str, Any]:
    return {
        "id": item.id,
        "type": item.type.value,
        "data": item.payload,
        "status": item.status.value,
        "createdAt": to_iso(item.created_at),
        "retryCount": item.retry_count,
        "nextAttemptAt": to_iso(item.next_attempt_at) if item.next_attempt_at else None,
        "lastError": item.last_error,
    }


# =========================
# Entrypoint
# =========================
if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    create_app().run(host="0.0.0.0", port=5000, debug=True)
