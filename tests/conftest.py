import mongomock
import pytest
import requests
from fastapi.testclient import TestClient

from config import Settings
from main import create_app
from mpesa import MpesaClient
from seed import seed_products


class FakeResponse:
    def __init__(self, status_code=200, body=None):
        self.status_code = status_code
        self._body = body
        self.reason = "OK" if status_code < 400 else "Error"

    @property
    def ok(self):
        return self.status_code < 400

    def json(self):
        if self._body is None:
            raise ValueError("No JSON object could be decoded")
        return self._body

    def raise_for_status(self):
        if not self.ok:
            raise requests.HTTPError(f"{self.status_code} {self.reason}")


class FakeSession:
    """Stands in for requests.Session in front of the Daraja sandbox."""

    def __init__(self):
        self.calls = []
        self.token_response = FakeResponse(200, {"access_token": "test-token", "expires_in": "3599"})
        self.stk_responses = []
        self.query_response = FakeResponse(200, {"ResultCode": "1037", "ResultDesc": "Still waiting"})
        self.counter = 0

    def get(self, url, **kwargs):
        self.calls.append(("GET", url, kwargs))
        return self.token_response

    def post(self, url, json=None, **kwargs):
        self.calls.append(("POST", url, json))
        if url.endswith("/mpesa/stkpush/v1/processrequest"):
            if self.stk_responses:
                return self.stk_responses.pop(0)
            self.counter += 1
            return FakeResponse(
                200,
                {
                    "MerchantRequestID": f"29115-{self.counter}",
                    "CheckoutRequestID": f"ws_CO_{self.counter:04d}",
                    "ResponseCode": "0",
                    "ResponseDescription": "Success. Request accepted for processing",
                    "CustomerMessage": "Success. Request accepted for processing",
                },
            )
        if url.endswith("/mpesa/stkpushquery/v1/query"):
            return self.query_response
        raise AssertionError(f"unexpected POST {url}")

    def posts(self):
        return [c for c in self.calls if c[0] == "POST"]


def callback_payload(checkout_request_id, result_code=0, amount=500, receipt="ABC123"):
    callback = {
        "MerchantRequestID": "29115-1",
        "CheckoutRequestID": checkout_request_id,
        "ResultCode": result_code,
        "ResultDesc": "The service request is processed successfully."
        if result_code == 0
        else "Request cancelled by user",
    }
    if result_code == 0:
        callback["CallbackMetadata"] = {
            "Item": [
                {"Name": "Amount", "Value": amount},
                {"Name": "MpesaReceiptNumber", "Value": receipt},
                {"Name": "TransactionDate", "Value": 20240101120000},
                {"Name": "PhoneNumber", "Value": 254712345678},
            ]
        }
    return {"Body": {"stkCallback": callback}}


@pytest.fixture
def settings():
    return Settings(
        environment="test",
        jwt_secret="a-test-secret-that-is-long-enough-0123",
        mpesa_consumer_key="key",
        mpesa_consumer_secret="secret",
        mpesa_shortcode="174379",
        mpesa_passkey="passkey",
        mpesa_callback_url="https://shop.example.com/api",
    )


@pytest.fixture
def db():
    return mongomock.MongoClient()["beverage_test"]


@pytest.fixture
def session():
    return FakeSession()


@pytest.fixture
def mpesa(settings, session):
    return MpesaClient(settings, session=session)


@pytest.fixture
def app(settings, db, mpesa):
    return create_app(settings, db=db, mpesa=mpesa)


@pytest.fixture
def client(app):
    return TestClient(app)


@pytest.fixture
def catalog(db):
    seed_products(db)
    return {p["name"]: str(p["_id"]) for p in db["products"].find()}


def register(client, email="jane@example.com", phone="254712345678", password="Secret123", name="Jane Doe"):
    resp = client.post(
        "/api/auth/register",
        json={"name": name, "email": email, "phone": phone, "password": password},
    )
    assert resp.status_code == 201, resp.text
    body = resp.json()
    return {"Authorization": f"Bearer {body['token']}"}, body["user"]


@pytest.fixture
def auth(client):
    return register(client)


@pytest.fixture
def headers(auth):
    return auth[0]
