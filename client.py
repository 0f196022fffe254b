"""
Client-side helpers: a cart persisted to a local JSON file, a thin API
client, and the payment status poller used after initiating an STK push.
"""

import json
import logging
import os
import time
from typing import Callable, Dict, List, Optional

import requests

logger = logging.getLogger(__name__)

TERMINAL_STATUSES = ("completed", "failed")
POLL_ATTEMPTS = 30
POLL_INTERVAL = 10


def cart_key(product_id: str, kind: str, index: int) -> str:
    if kind not in ("variation", "packet"):
        raise ValueError(f"unknown cart option kind: {kind}")
    return f"{product_id}:{kind}:{index}"


class Cart:
    """Cart lines keyed by product and variation/packet index."""

    def __init__(self, path: str):
        self.path = path
        self.lines: Dict[str, int] = {}
        if os.path.exists(path):
            with open(path) as fh:
                self.lines = {k: int(v) for k, v in json.load(fh).items()}

    def save(self) -> None:
        with open(self.path, "w") as fh:
            json.dump(self.lines, fh)

    def add(self, product_id: str, kind: str, index: int, quantity: int = 1) -> None:
        key = cart_key(product_id, kind, index)
        self.lines[key] = self.lines.get(key, 0) + quantity
        self.save()

    def update(self, product_id: str, kind: str, index: int, quantity: int) -> None:
        key = cart_key(product_id, kind, index)
        if quantity <= 0:
            self.lines.pop(key, None)
        else:
            self.lines[key] = quantity
        self.save()

    def remove(self, product_id: str, kind: str, index: int) -> None:
        self.update(product_id, kind, index, 0)

    def clear(self) -> None:
        self.lines = {}
        self.save()

    def count(self) -> int:
        return sum(self.lines.values())

    def to_order_items(self) -> List[dict]:
        items = []
        for key, quantity in self.lines.items():
            product_id, kind, index = key.split(":")
            item = {"product_id": product_id, "quantity": quantity}
            item[f"{kind}_index"] = int(index)
            items.append(item)
        return items


def poll_payment(
    check: Callable[[], str],
    attempts: int = POLL_ATTEMPTS,
    interval: float = POLL_INTERVAL,
    sleep: Callable[[float], None] = time.sleep,
) -> str:
    """Call `check` until it reports a terminal status.

    Returns "completed", "failed", or "timeout" once the attempt budget is
    spent. A timeout is local only: the server keeps the payment pending
    and a late callback can still settle it.
    """
    for attempt in range(1, attempts + 1):
        try:
            status = check()
        except requests.RequestException as exc:
            logger.warning("Payment status check %d failed: %s", attempt, exc)
            status = "pending"
        if status in TERMINAL_STATUSES:
            return status
        if attempt < attempts:
            sleep(interval)
    return "timeout"


class ApiError(Exception):
    def __init__(self, status_code: int, message: str):
        super().__init__(message)
        self.status_code = status_code


class ShopClient:
    def __init__(self, base_url: str, session: Optional[requests.Session] = None, timeout: float = 30):
        self.base_url = base_url.rstrip("/")
        self.session = session or requests.Session()
        self.timeout = timeout
        self.token: Optional[str] = None

    def _request(self, method: str, path: str, **kwargs) -> dict:
        headers = kwargs.pop("headers", {})
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        resp = self.session.request(
            method, f"{self.base_url}{path}", headers=headers, timeout=self.timeout, **kwargs
        )
        try:
            body = resp.json()
        except ValueError:
            body = {}
        if not resp.ok:
            raise ApiError(resp.status_code, body.get("message") or resp.reason)
        return body

    def login(self, email: str, password: str) -> dict:
        body = self._request("POST", "/api/auth/login", json={"email": email, "password": password})
        self.token = body["token"]
        return body["user"]

    def register(self, name: str, email: str, phone: str, password: str) -> dict:
        body = self._request(
            "POST",
            "/api/auth/register",
            json={"name": name, "email": email, "phone": phone, "password": password},
        )
        self.token = body["token"]
        return body["user"]

    def products(self, category: Optional[str] = None, search: Optional[str] = None, page: int = 1) -> dict:
        params = {"page": page}
        if category:
            params["category"] = category
        if search:
            params["search"] = search
        return self._request("GET", "/api/products", params=params)

    def place_order(self, cart: Cart, delivery_address: dict, payment_method: str, mpesa_number: str = None) -> dict:
        if not self.token:
            raise ApiError(401, "Login required to check out")
        payload = {
            "items": cart.to_order_items(),
            "delivery_address": delivery_address,
            "payment_method": payment_method,
        }
        if mpesa_number:
            payload["mpesa_number"] = mpesa_number
        return self._request("POST", "/api/orders", json=payload)

    def pay_order(self, order_id: str, phone_number: str) -> dict:
        return self._request(
            "POST", "/api/checkout/mpesa-payment", json={"order_id": order_id, "phone_number": phone_number}
        )

    def order_payment_status(self, order_id: str) -> str:
        return self._request("GET", f"/api/checkout/order-payment-status/{order_id}")["payment_status"]

    def top_up(self, amount: float, phone_number: str) -> dict:
        return self._request("POST", "/api/wallet/topup", json={"amount": amount, "phone_number": phone_number})

    def topup_status(self, checkout_request_id: str) -> str:
        return self._request("GET", f"/api/wallet/payment-status/{checkout_request_id}")["status"]

    def wallet(self) -> dict:
        return self._request("GET", "/api/wallet")

    def wait_for_order_payment(self, order_id: str, **kwargs) -> str:
        return poll_payment(lambda: self.order_payment_status(order_id), **kwargs)

    def wait_for_topup(self, checkout_request_id: str, **kwargs) -> str:
        return poll_payment(lambda: self.topup_status(checkout_request_id), **kwargs)
