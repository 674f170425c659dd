# services.py
"""
Remote collaborators: inventory, payments, transactions.

Each has an HTTP implementation on top of ApiClient and an in-memory Mock*
twin with the same methods. The mocks stand in for the backend in dev and
tests; set USE_MOCK_SERVICES=0 to talk to API_BASE_URL instead.
"""
import logging
import random
import string
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import requests

import config
from errors import RemoteError
from models import (
    FuelType, Inventory, PaymentIntent, PaymentStatus, Transaction, utc_now,
)
from transaction_log import filter_transactions

logger = logging.getLogger(__name__)


@dataclass
class ApiResponse:
    success: bool
    data: Any = None
    error: Optional[str] = None


class ApiClient:
    """
    Thin JSON client. Every call is bounded by `timeout` seconds and
    returns an ApiResponse envelope instead of raising.
    """

    def __init__(self, base_url: str = None, timeout: float = None, token: str = None,
                 session: Optional[requests.Session] = None):
        self.base_url = (base_url or config.API_BASE_URL).rstrip("/")
        self.timeout = config.API_TIMEOUT_SECONDS if timeout is None else timeout
        self.session = session or requests.Session()
        self.session.headers.update({"Content-Type": "application/json"})
        token = config.API_TOKEN if token is None else token
        if token:
            self.session.headers["Authorization"] = f"Bearer {token}"

    def get(self, path: str, params: Optional[Dict[str, Any]] = None) -> ApiResponse:
        return self._request("GET", path, params=params)

    def post(self, path: str, data: Any = None) -> ApiResponse:
        return self._request("POST", path, json=data)

    def put(self, path: str, data: Any = None) -> ApiResponse:
        return self._request("PUT", path, json=data)

    def delete(self, path: str) -> ApiResponse:
        return self._request("DELETE", path)

    def _request(self, method: str, path: str, **kwargs) -> ApiResponse:
        url = f"{self.base_url}/{path.lstrip('/')}"
        try:
            resp = self.session.request(method, url, timeout=self.timeout, **kwargs)
        except requests.Timeout:
            logger.warning("%s %s timed out after %ss", method, url, self.timeout)
            return ApiResponse(False, error="Request timed out.")
        except requests.RequestException as e:
            logger.warning("%s %s failed: %s", method, url, e)
            return ApiResponse(False, error="Network error. Please check your connection.")

        try:
            body = resp.json() if resp.content else {}
        except ValueError:
            body = {}
        if not resp.ok:
            if resp.status_code == 401:
                self.session.headers.pop("Authorization", None)
            err = body.get("error") or body.get("message") or f"HTTP {resp.status_code}"
            return ApiResponse(False, error=err)
        if isinstance(body, dict) and "success" in body:
            return ApiResponse(bool(body["success"]), body.get("data"), body.get("error") or body.get("message"))
        return ApiResponse(True, body)


# =========================
# HTTP implementations
# =========================

class InventoryService:
    def __init__(self, client: ApiClient):
        self.client = client

    def get_inventory(self, station_id: str) -> Optional[Inventory]:
        r = self.client.get(f"/inventory/{station_id}")
        return Inventory.from_dict(r.data) if r.success and r.data else None

    def update_inventory(self, station_id: str, fuel_type: FuelType, liters: float) -> bool:
        r = self.client.put(f"/inventory/{station_id}", {"fuelType": FuelType(fuel_type).value, "liters": liters})
        return r.success


class PaymentService:
    def __init__(self, client: ApiClient):
        self.client = client

    def create_payment_intent(self, amount: float, fuel_type: FuelType) -> Optional[PaymentIntent]:
        r = self.client.post("/payments/create", {"amount": amount, "fuelType": FuelType(fuel_type).value})
        return PaymentIntent.from_dict(r.data) if r.success and r.data else None

    def process_payment(self, intent_id: str, payment_method: str) -> Optional[PaymentIntent]:
        r = self.client.post("/payments/process", {"paymentIntentId": intent_id, "paymentMethod": payment_method})
        return PaymentIntent.from_dict(r.data) if r.success and r.data else None

    def verify_payment(self, transaction_id: str) -> Optional[PaymentIntent]:
        r = self.client.get(f"/payments/verify/{transaction_id}")
        return PaymentIntent.from_dict(r.data) if r.success and r.data else None


class TransactionService:
    def __init__(self, client: ApiClient):
        self.client = client

    def get_transactions(self, filters: Optional[Dict[str, Any]] = None) -> List[Transaction]:
        r = self.client.get("/transactions", params=filters or None)
        if not r.success or not r.data:
            return []
        return [Transaction.from_dict(d) for d in r.data]

    def get_transaction(self, transaction_id: str) -> Optional[Transaction]:
        r = self.client.get(f"/transactions/{transaction_id}")
        return Transaction.from_dict(r.data) if r.success and r.data else None

    def submit_transaction(self, txn: Dict[str, Any]) -> bool:
        return self.client.post("/transactions", txn).success

    def record_scan(self, scan: Dict[str, Any]) -> bool:
        return self.client.post("/scans", scan).success


# =========================
# In-memory mocks
# =========================

class _Connectivity:
    """Shared on/off switch so tests can simulate going offline."""

    def __init__(self, online: bool = True):
        self.online = online

    def _check(self, what: str) -> None:
        if not self.online:
            raise RemoteError(f"{what}: network unavailable")


class MockInventoryService(_Connectivity):
    DEFAULT_STATION = ("Shell Station", 5000.0, 4500.0)

    def __init__(self, stations: Optional[Dict[str, Inventory]] = None, online: bool = True):
        super().__init__(online)
        self.stations: Dict[str, Inventory] = dict(stations or {})
        self.updates: List[Dict[str, Any]] = []

    def get_inventory(self, station_id: str) -> Optional[Inventory]:
        self._check("get_inventory")
        if station_id not in self.stations:
            name, petrol, diesel = self.DEFAULT_STATION
            self.stations[station_id] = Inventory(station_id, name, petrol, diesel)
        return self.stations[station_id]

    def update_inventory(self, station_id: str, fuel_type: FuelType, liters: float) -> bool:
        self._check("update_inventory")
        self.updates.append({"stationId": station_id, "fuelType": FuelType(fuel_type).value, "liters": liters})
        return True


class MockPaymentService(_Connectivity):
    def __init__(self, success_rate: float = 0.9, rng: Optional[random.Random] = None, online: bool = True):
        super().__init__(online)
        self.success_rate = success_rate
        self.rng = rng or random.Random()
        self.intents: Dict[str, PaymentIntent] = {}

    def create_payment_intent(self, amount: float, fuel_type: FuelType) -> Optional[PaymentIntent]:
        self._check("create_payment_intent")
        intent = PaymentIntent(
            id=f"payment-{_stamp()}",
            amount=float(amount),
            fuel_type=FuelType(fuel_type),
            status=PaymentStatus.PENDING,
        )
        self.intents[intent.id] = intent
        return intent

    def process_payment(self, intent_id: str, payment_method: str) -> Optional[PaymentIntent]:
        self._check("process_payment")
        intent = self.intents.get(intent_id)
        if intent is None:
            return None
        if self.rng.random() < self.success_rate:
            intent.status = PaymentStatus.SUCCESS
            intent.transaction_id = f"TXN-{_stamp()}"
        else:
            intent.status = PaymentStatus.FAILED
        intent.payment_method = payment_method
        return intent

    def verify_payment(self, transaction_id: str) -> Optional[PaymentIntent]:
        self._check("verify_payment")
        for intent in self.intents.values():
            if intent.transaction_id == transaction_id:
                return intent
        return None


class MockTransactionService(_Connectivity):
    def __init__(self, online: bool = True):
        super().__init__(online)
        self.submitted: List[Dict[str, Any]] = []
        self.scans: List[Dict[str, Any]] = []

    def get_transactions(self, filters: Optional[Dict[str, Any]] = None) -> List[Transaction]:
        self._check("get_transactions")
        return filter_transactions([Transaction.from_dict(d) for d in self.submitted], filters)

    def get_transaction(self, transaction_id: str) -> Optional[Transaction]:
        self._check("get_transaction")
        for d in self.submitted:
            if d["id"] == transaction_id:
                return Transaction.from_dict(d)
        return None

    def submit_transaction(self, txn: Dict[str, Any]) -> bool:
        self._check("submit_transaction")
        # idempotent by id: a replayed queue item must not double-post
        if not any(d["id"] == txn["id"] for d in self.submitted):
            self.submitted.append(dict(txn))
        return True

    def record_scan(self, scan: Dict[str, Any]) -> bool:
        self._check("record_scan")
        self.scans.append(dict(scan))
        return True


def _stamp() -> str:
    salt = ''.join(random.choices(string.ascii_uppercase + string.digits, k=5))
    return f"{utc_now().strftime('%Y%m%d%H%M%S')}-{salt}"


def build_services(use_mocks: Optional[bool] = None) -> Dict[str, Any]:
    """Return {"inventory", "payments", "transactions"} collaborators."""
    use_mocks = config.USE_MOCK_SERVICES if use_mocks is None else use_mocks
    if use_mocks:
        return {
            "inventory": MockInventoryService(),
            "payments": MockPaymentService(),
            "transactions": MockTransactionService(),
        }
    client = ApiClient()
    return {
        "inventory": InventoryService(client),
        "payments": PaymentService(client),
        "transactions": TransactionService(client),
    }
