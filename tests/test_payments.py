import pytest
from bson import ObjectId

from payments import (
    PaymentOutcome,
    apply_callback,
    map_status_result,
    outcome_from_query,
    settle_order,
    settle_wallet_topup,
)
from schemas import MpesaDetails, Transaction
from tests.conftest import callback_payload


@pytest.mark.parametrize(
    "raw, expected",
    [
        ({"ResultCode": "0"}, "completed"),
        ({"ResultCode": 0}, "completed"),
        ({"ResultCode": "1037"}, "pending"),
        ({}, "pending"),
        ({"errorCode": "500.001.1001"}, "pending"),
        ({"ResultCode": "1032"}, "failed"),
        ({"ResultCode": "2001"}, "failed"),
    ],
)
def test_map_status_result(raw, expected):
    assert map_status_result(raw) == expected


def test_outcome_from_query_reads_receipt():
    outcome = outcome_from_query(
        {
            "ResultCode": "0",
            "CallbackMetadata": {"Item": [{"Name": "MpesaReceiptNumber", "Value": "QWE123"}]},
        }
    )
    assert outcome.status == "completed"
    assert outcome.mpesa_receipt_number == "QWE123"
    assert outcome_from_query({"ResultCode": "1037"}) is None


def _user_with_pending_topup(db, checkout_request_id="ws_CO_1", amount=500):
    tx = Transaction(
        type="credit",
        amount=amount,
        description="Wallet Top-up via M-Pesa",
        mpesa_details=MpesaDetails(checkout_request_id=checkout_request_id, phone_number="254712345678"),
    )
    user_id = db["users"].insert_one(
        {"name": "Jane", "email": "jane@example.com", "wallet": {"balance": 100, "transactions": [tx.model_dump()]}}
    ).inserted_id
    return user_id


def test_duplicate_callback_credits_wallet_once(db, mpesa):
    user_id = _user_with_pending_topup(db)
    result = mpesa.handle_callback(callback_payload("ws_CO_1", amount=500, receipt="ABC123"))

    assert apply_callback(db, result) == "wallet"
    assert apply_callback(db, result) == "duplicate"

    user = db["users"].find_one({"_id": user_id})
    assert user["wallet"]["balance"] == 600
    tx = user["wallet"]["transactions"][0]
    assert tx["status"] == "completed"
    assert tx["mpesa_details"]["mpesa_receipt_number"] == "ABC123"


def test_failed_after_completed_is_ignored(db):
    user_id = _user_with_pending_topup(db)
    assert settle_wallet_topup(db, "ws_CO_1", PaymentOutcome(status="completed", mpesa_receipt_number="R1"))
    assert settle_wallet_topup(db, "ws_CO_1", PaymentOutcome(status="failed", error_message="late")) is None

    user = db["users"].find_one({"_id": user_id})
    assert user["wallet"]["transactions"][0]["status"] == "completed"
    assert user["wallet"]["balance"] == 600


def test_failed_topup_leaves_balance(db):
    user_id = _user_with_pending_topup(db)
    settle_wallet_topup(db, "ws_CO_1", PaymentOutcome(status="failed", error_code="1032", error_message="Cancelled"))

    user = db["users"].find_one({"_id": user_id})
    tx = user["wallet"]["transactions"][0]
    assert user["wallet"]["balance"] == 100
    assert tx["status"] == "failed"
    assert tx["mpesa_details"]["error_code"] == "1032"


def test_only_matching_transaction_is_settled(db):
    user_id = _user_with_pending_topup(db)
    other = Transaction(type="credit", amount=50, mpesa_details=MpesaDetails(checkout_request_id="ws_CO_2"))
    db["users"].update_one({"_id": user_id}, {"$push": {"wallet.transactions": other.model_dump()}})

    settle_wallet_topup(db, "ws_CO_2", PaymentOutcome(status="completed"))

    txs = db["users"].find_one({"_id": user_id})["wallet"]["transactions"]
    assert [t["status"] for t in txs] == ["pending", "completed"]


def _pending_order(db, checkout_request_id="ws_CO_5"):
    return db["orders"].insert_one(
        {
            "_id": ObjectId(),
            "user": "u1",
            "final_amount": 560,
            "payment_method": "mpesa",
            "payment_status": "pending",
            "status": "pending",
            "mpesa_details": {"checkout_request_id": checkout_request_id},
        }
    ).inserted_id


def test_settle_order_once(db):
    order_id = _pending_order(db)
    first = settle_order(db, "ws_CO_5", PaymentOutcome(status="completed", mpesa_receipt_number="R9"))
    second = settle_order(db, "ws_CO_5", PaymentOutcome(status="failed"))

    assert first["payment_status"] == "completed"
    assert second is None
    order = db["orders"].find_one({"_id": order_id})
    assert order["status"] == "confirmed"
    assert order["mpesa_details"]["mpesa_receipt_number"] == "R9"
    assert order["paid_at"] is not None


def test_callback_failure_marks_order_failed(db, mpesa):
    order_id = _pending_order(db)
    result = mpesa.handle_callback(callback_payload("ws_CO_5", result_code=1032))
    assert apply_callback(db, result) == "order"

    order = db["orders"].find_one({"_id": order_id})
    assert order["payment_status"] == "failed"
    assert order["status"] == "pending"
    assert order["mpesa_details"]["failure_reason"] == "Request cancelled by user"


def test_unknown_checkout_request(db, mpesa):
    result = mpesa.handle_callback(callback_payload("ws_CO_404"))
    assert apply_callback(db, result) == "unmatched"
