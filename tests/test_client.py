import pytest
import requests

from client import ApiError, Cart, ShopClient, cart_key, poll_payment
from tests.conftest import FakeResponse


def test_cart_persists_lines(tmp_path):
    path = str(tmp_path / "cart.json")
    cart = Cart(path)
    cart.add("p1", "variation", 0)
    cart.add("p1", "variation", 0, quantity=2)
    cart.add("p2", "packet", 1)

    reloaded = Cart(path)
    assert reloaded.count() == 4
    assert sorted(reloaded.to_order_items(), key=lambda i: i["product_id"]) == [
        {"product_id": "p1", "quantity": 3, "variation_index": 0},
        {"product_id": "p2", "quantity": 1, "packet_index": 1},
    ]


def test_cart_update_remove_clear(tmp_path):
    cart = Cart(str(tmp_path / "cart.json"))
    cart.add("p1", "variation", 0)
    cart.add("p1", "variation", 1)
    cart.update("p1", "variation", 0, 5)
    cart.remove("p1", "variation", 1)
    assert cart.lines == {"p1:variation:0": 5}

    cart.update("p1", "variation", 0, 0)
    assert cart.count() == 0
    cart.add("p3", "packet", 0)
    cart.clear()
    assert Cart(cart.path).count() == 0


def test_cart_key_rejects_unknown_kind():
    with pytest.raises(ValueError):
        cart_key("p1", "crate", 0)


def test_poll_times_out_after_budget():
    naps = []
    checks = []

    def check():
        checks.append(1)
        return "pending"

    assert poll_payment(check, sleep=naps.append) == "timeout"
    assert len(checks) == 30
    assert naps == [10] * 29


def test_poll_stops_at_terminal_status():
    answers = iter(["pending", "pending", "completed"])
    naps = []
    assert poll_payment(lambda: next(answers), sleep=naps.append) == "completed"
    assert len(naps) == 2


def test_poll_treats_network_errors_as_pending():
    calls = []

    def check():
        calls.append(1)
        if len(calls) < 3:
            raise requests.ConnectionError("offline")
        return "failed"

    assert poll_payment(check, attempts=5, interval=1, sleep=lambda _: None) == "failed"
    assert len(calls) == 3


class RecordingSession:
    def __init__(self, responses):
        self.responses = list(responses)
        self.requests = []

    def request(self, method, url, headers=None, timeout=None, **kwargs):
        self.requests.append((method, url, dict(headers or {}), kwargs))
        return self.responses.pop(0)


def test_client_sends_token_after_login():
    session = RecordingSession(
        [
            FakeResponse(200, {"success": True, "token": "tok", "user": {"id": "u1"}}),
            FakeResponse(200, {"success": True, "payment_status": "pending"}),
        ]
    )
    api = ShopClient("http://shop.local/", session=session)
    assert api.login("jane@example.com", "Secret123") == {"id": "u1"}
    assert api.order_payment_status("o1") == "pending"

    method, url, headers, _ = session.requests[1]
    assert (method, url) == ("GET", "http://shop.local/api/checkout/order-payment-status/o1")
    assert headers["Authorization"] == "Bearer tok"


def test_client_raises_api_error():
    session = RecordingSession([FakeResponse(400, {"success": False, "message": "Invalid credentials"})])
    api = ShopClient("http://shop.local", session=session)
    with pytest.raises(ApiError) as exc:
        api.login("jane@example.com", "nope")
    assert exc.value.status_code == 400
    assert str(exc.value) == "Invalid credentials"


def test_checkout_requires_login(tmp_path):
    api = ShopClient("http://shop.local", session=RecordingSession([]))
    with pytest.raises(ApiError) as exc:
        api.place_order(Cart(str(tmp_path / "cart.json")), {}, "wallet")
    assert exc.value.status_code == 401
