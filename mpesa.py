"""
M-Pesa (Safaricom Daraja) STK Push adapter.

The client is built from `Settings` at startup and handed to route handlers
through a dependency; it keeps no state between calls apart from its
configuration and HTTP session.
"""

import base64
import logging
import re
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import requests
from pydantic import BaseModel

from config import Settings
from schemas import MAX_AMOUNT, MIN_AMOUNT

logger = logging.getLogger(__name__)

PHONE_RE = re.compile(r"^254[0-9]{9}$")
STILL_PROCESSING_CODE = "500.001.1001"
CALLBACK_ERROR = "CALLBACK_ERROR"


class MpesaError(Exception):
    """Base error for gateway interaction."""


class AuthenticationError(MpesaError):
    pass


class InvalidPaymentRequest(MpesaError):
    pass


class GatewayError(MpesaError):
    def __init__(self, message: str, response: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.response = response


class CallbackResult(BaseModel):
    success: bool
    checkout_request_id: Optional[str] = None
    amount: Optional[float] = None
    mpesa_receipt_number: Optional[str] = None
    transaction_date: Optional[str] = None
    phone_number: Optional[str] = None
    error_code: Optional[str] = None
    error_message: Optional[str] = None


def normalize_phone(value) -> str:
    """Turn 07XXXXXXXX, +2547XXXXXXXX or 2547XXXXXXXX into 2547XXXXXXXX."""
    phone = re.sub(r"\D", "", str(value or ""))
    if phone.startswith("0"):
        phone = "254" + phone[1:]
    elif not phone.startswith("254"):
        phone = "254" + phone
    if not PHONE_RE.match(phone):
        raise InvalidPaymentRequest("Invalid phone number format. Use 07XXXXXXXX or 254XXXXXXXXX")
    return phone


def _timestamp() -> str:
    return datetime.now(timezone.utc).strftime("%Y%m%d%H%M%S")


def _error_message(resp: requests.Response) -> Optional[Dict[str, Any]]:
    try:
        body = resp.json()
    except ValueError:
        return None
    return body if isinstance(body, dict) else None


class MpesaClient:
    def __init__(self, settings: Settings, session: Optional[requests.Session] = None):
        self.consumer_key = settings.mpesa_consumer_key
        self.consumer_secret = settings.mpesa_consumer_secret
        self.shortcode = settings.mpesa_shortcode
        self.passkey = settings.mpesa_passkey
        self.callback_url = settings.mpesa_callback_url
        self.environment = settings.mpesa_environment
        self.base_url = (
            "https://api.safaricom.co.ke"
            if self.environment == "production"
            else "https://sandbox.safaricom.co.ke"
        )
        self.session = session or requests.Session()

        missing = [name for name, value in self._required().items() if not value]
        if missing:
            logger.warning("Missing M-Pesa configuration: %s; payments will not work", ", ".join(missing))

    def _required(self) -> Dict[str, Optional[str]]:
        return {
            "consumer_key": self.consumer_key,
            "consumer_secret": self.consumer_secret,
            "shortcode": self.shortcode,
            "passkey": self.passkey,
            "callback_url": self.callback_url,
        }

    def is_configured(self) -> bool:
        return bool(self.consumer_key and self.consumer_secret and self.shortcode and self.passkey)

    def config_status(self) -> Dict[str, Any]:
        return {
            "environment": self.environment,
            "base_url": self.base_url,
            "configured": self.is_configured(),
            "has_consumer_key": bool(self.consumer_key),
            "has_consumer_secret": bool(self.consumer_secret),
            "has_shortcode": bool(self.shortcode),
            "has_passkey": bool(self.passkey),
            "has_callback_url": bool(self.callback_url),
        }

    def _password(self, timestamp: str) -> str:
        raw = f"{self.shortcode}{self.passkey}{timestamp}".encode()
        return base64.b64encode(raw).decode()

    def get_access_token(self) -> str:
        if not self.consumer_key or not self.consumer_secret:
            raise AuthenticationError("M-Pesa consumer key and secret are required")
        try:
            resp = self.session.get(
                f"{self.base_url}/oauth/v1/generate",
                params={"grant_type": "client_credentials"},
                auth=(self.consumer_key, self.consumer_secret),
                timeout=30,
            )
            resp.raise_for_status()
            token = resp.json().get("access_token")
        except (requests.RequestException, ValueError) as exc:
            logger.error("Error getting M-Pesa access token: %s", exc)
            raise AuthenticationError("Failed to authenticate with M-Pesa. Please check your credentials.")
        if not token:
            raise AuthenticationError("No access token received from M-Pesa")
        return token

    def initiate_stk_push(self, phone_number: str, amount, order_ref) -> Dict[str, Any]:
        if not phone_number or not amount or not order_ref:
            raise InvalidPaymentRequest("Phone number, amount, and order ID are required")
        if not PHONE_RE.match(str(phone_number)):
            raise InvalidPaymentRequest("Invalid phone number format. Use 254XXXXXXXXX")
        if amount < MIN_AMOUNT or amount > MAX_AMOUNT:
            raise InvalidPaymentRequest("Amount must be between KSh 1 and KSh 70,000")

        token = self.get_access_token()
        timestamp = _timestamp()
        payload = {
            "BusinessShortCode": self.shortcode,
            "Password": self._password(timestamp),
            "Timestamp": timestamp,
            "TransactionType": "CustomerPayBillOnline",
            "Amount": int(round(amount)),
            "PartyA": phone_number,
            "PartyB": self.shortcode,
            "PhoneNumber": phone_number,
            "CallBackURL": f"{self.callback_url}/mpesa/callback",
            "AccountReference": f"ORDER_{order_ref}"[:12],
            "TransactionDesc": "BeverageHub Order Payment"[:13],
        }
        try:
            resp = self.session.post(
                f"{self.base_url}/mpesa/stkpush/v1/processrequest",
                json=payload,
                headers={"Authorization": f"Bearer {token}"},
                timeout=60,
            )
        except requests.RequestException as exc:
            logger.error("Error initiating M-Pesa STK Push: %s", exc)
            raise GatewayError("M-Pesa payment initiation failed")
        body = _error_message(resp)
        if not resp.ok:
            logger.error("M-Pesa STK Push rejected (%s): %s", resp.status_code, body)
            message = (body or {}).get("errorMessage") or "M-Pesa payment initiation failed"
            raise GatewayError(message, body)
        logger.info("M-Pesa STK Push response: %s", body)
        return body or {}

    def query_stk_push_status(self, checkout_request_id: str) -> Dict[str, Any]:
        if not checkout_request_id:
            raise InvalidPaymentRequest("Checkout request ID is required")
        token = self.get_access_token()
        timestamp = _timestamp()
        payload = {
            "BusinessShortCode": self.shortcode,
            "Password": self._password(timestamp),
            "Timestamp": timestamp,
            "CheckoutRequestID": checkout_request_id,
        }
        try:
            resp = self.session.post(
                f"{self.base_url}/mpesa/stkpushquery/v1/query",
                json=payload,
                headers={"Authorization": f"Bearer {token}"},
                timeout=30,
            )
        except requests.RequestException as exc:
            logger.error("Error querying M-Pesa STK Push status: %s", exc)
            raise GatewayError("M-Pesa status query failed")
        body = _error_message(resp)
        if not resp.ok:
            # the gateway answers an in-flight payment with an error body
            if body and body.get("errorCode") == STILL_PROCESSING_CODE:
                return body
            message = (body or {}).get("errorMessage") or "M-Pesa status query failed"
            raise GatewayError(message, body)
        logger.info("M-Pesa query response: %s", body)
        return body or {}

    def handle_callback(self, payload: Any) -> CallbackResult:
        checkout_request_id = None
        try:
            if not isinstance(payload, dict) or not isinstance(payload.get("Body"), dict):
                raise ValueError("Invalid callback data structure")
            callback = payload["Body"].get("stkCallback")
            if not isinstance(callback, dict):
                raise ValueError("Missing STK callback data")
            checkout_request_id = callback.get("CheckoutRequestID")

            result_code = callback.get("ResultCode")
            if str(result_code) == "0":
                items = (callback.get("CallbackMetadata") or {}).get("Item") or []
                metadata = {item.get("Name"): item.get("Value") for item in items if isinstance(item, dict)}
                amount = metadata.get("Amount")
                receipt = metadata.get("MpesaReceiptNumber")
                if not amount or not receipt:
                    raise ValueError("Missing required payment metadata")
                return CallbackResult(
                    success=True,
                    checkout_request_id=checkout_request_id,
                    amount=float(amount),
                    mpesa_receipt_number=str(receipt),
                    transaction_date=_as_str(metadata.get("TransactionDate")),
                    phone_number=_as_str(metadata.get("PhoneNumber")),
                )
            return CallbackResult(
                success=False,
                checkout_request_id=checkout_request_id,
                error_code=_as_str(result_code),
                error_message=callback.get("ResultDesc") or "Payment failed",
            )
        except (ValueError, TypeError, AttributeError) as exc:
            logger.error("Error processing M-Pesa callback: %s", exc)
            return CallbackResult(
                success=False,
                checkout_request_id=checkout_request_id,
                error_code=CALLBACK_ERROR,
                error_message=str(exc),
            )


def _as_str(value) -> Optional[str]:
    return None if value is None else str(value)
