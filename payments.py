"""
Payment-state reconciliation.

A payment attempt (order checkout or wallet top-up) moves from `pending` to
`completed` or `failed` exactly once. Both the gateway callback and the
client's status poll funnel through `settle_order` / `settle_wallet_topup`,
which only write while the stored status is still `pending`; whichever
arrives second matches nothing and leaves the record alone.
"""

import logging
from typing import Any, Dict, Optional

from fastapi import HTTPException, Request
from pydantic import BaseModel
from pymongo import ReturnDocument
from pymongo.database import Database

from mpesa import STILL_PROCESSING_CODE, CallbackResult, MpesaClient, MpesaError
from schemas import utcnow

logger = logging.getLogger(__name__)

PENDING_RESULT_CODES = {"1037"}


def get_mpesa(request: Request) -> MpesaClient:
    return request.app.state.mpesa


def require_configured(mpesa: MpesaClient) -> None:
    if not mpesa.is_configured():
        raise HTTPException(
            status_code=503,
            detail="M-Pesa service is not properly configured. Please contact support.",
        )


class PaymentOutcome(BaseModel):
    status: str
    mpesa_receipt_number: Optional[str] = None
    transaction_date: Optional[str] = None
    error_code: Optional[str] = None
    error_message: Optional[str] = None

    @classmethod
    def from_callback(cls, result: CallbackResult) -> "PaymentOutcome":
        if result.success:
            return cls(
                status="completed",
                mpesa_receipt_number=result.mpesa_receipt_number,
                transaction_date=result.transaction_date,
            )
        return cls(status="failed", error_code=result.error_code, error_message=result.error_message)


def map_status_result(raw: Dict[str, Any]) -> str:
    """Map a status-query response to completed, pending or failed."""
    if raw.get("errorCode") == STILL_PROCESSING_CODE:
        return "pending"
    code = raw.get("ResultCode")
    if code is None or code == "":
        return "pending"
    code = str(code)
    if code == "0":
        return "completed"
    if code in PENDING_RESULT_CODES:
        return "pending"
    return "failed"


def outcome_from_query(raw: Dict[str, Any]) -> Optional[PaymentOutcome]:
    """Terminal outcome of a status query, or None while still pending."""
    status = map_status_result(raw)
    if status == "pending":
        return None
    if status == "failed":
        return PaymentOutcome(
            status="failed", error_code=str(raw.get("ResultCode")), error_message=raw.get("ResultDesc")
        )
    items = (raw.get("CallbackMetadata") or {}).get("Item") or []
    metadata = {item.get("Name"): item.get("Value") for item in items if isinstance(item, dict)}
    receipt = metadata.get("MpesaReceiptNumber")
    date = metadata.get("TransactionDate")
    return PaymentOutcome(
        status="completed",
        mpesa_receipt_number=None if receipt is None else str(receipt),
        transaction_date=None if date is None else str(date),
    )


def order_filter(checkout_request_id: str) -> dict:
    """Match an order by its current or a superseded checkout request id."""
    return {
        "$or": [
            {"mpesa_details.checkout_request_id": checkout_request_id},
            {"mpesa_details.previous_checkout_request_ids": checkout_request_id},
        ]
    }


def settle_order(db: Database, checkout_request_id: str, outcome: PaymentOutcome) -> Optional[dict]:
    """Apply a terminal outcome to the pending order; None when nothing was pending."""
    now = utcnow()
    # a superseded prompt may still complete the order but never fail it
    if outcome.status == "completed":
        match = order_filter(checkout_request_id)
        update = {
            "payment_status": "completed",
            "status": "confirmed",
            "paid_at": now,
            "mpesa_details.mpesa_receipt_number": outcome.mpesa_receipt_number,
            "mpesa_details.transaction_date": outcome.transaction_date,
            "mpesa_details.completed_at": now,
        }
    else:
        match = {"mpesa_details.checkout_request_id": checkout_request_id}
        update = {
            "payment_status": "failed",
            "mpesa_details.failure_reason": outcome.error_message or "Payment failed",
        }
    update["updated_at"] = now
    order = db["orders"].find_one_and_update(
        dict(match, payment_status="pending"),
        {"$set": update},
        return_document=ReturnDocument.AFTER,
    )
    if order is not None:
        logger.info("Order %s payment %s via M-Pesa", order["_id"], outcome.status)
    return order


def find_wallet_transaction(db: Database, checkout_request_id: str):
    """Return (user, transaction) holding the checkout request, or (None, None)."""
    user = db["users"].find_one({"wallet.transactions.mpesa_details.checkout_request_id": checkout_request_id})
    if user is None:
        return None, None
    for tx in user.get("wallet", {}).get("transactions", []):
        if (tx.get("mpesa_details") or {}).get("checkout_request_id") == checkout_request_id:
            return user, tx
    return user, None


def settle_wallet_topup(db: Database, checkout_request_id: str, outcome: PaymentOutcome) -> Optional[dict]:
    """Apply a terminal outcome to a pending wallet transaction.

    Completing a credit increments the balance in the same single-document
    update, so a duplicated callback or a poll racing the callback can
    never credit twice. Returns the updated transaction, or None when no
    pending transaction matched.
    """
    user, tx = find_wallet_transaction(db, checkout_request_id)
    if tx is None or tx.get("status") != "pending":
        return None

    details = dict(tx.get("mpesa_details") or {})
    updated = dict(tx, status=outcome.status)
    if outcome.status == "completed":
        details["mpesa_receipt_number"] = outcome.mpesa_receipt_number
        details["transaction_date"] = outcome.transaction_date
    else:
        details["error_code"] = outcome.error_code
        details["error_message"] = outcome.error_message
    updated["mpesa_details"] = details

    update = {"$set": {"wallet.transactions.$": updated}}
    if outcome.status == "completed" and tx.get("type") == "credit":
        update["$inc"] = {"wallet.balance": tx["amount"]}

    result = db["users"].update_one(
        {
            "_id": user["_id"],
            "wallet.transactions": {
                "$elemMatch": {"mpesa_details.checkout_request_id": checkout_request_id, "status": "pending"}
            },
        },
        update,
    )
    if result.matched_count == 0:
        return None
    if outcome.status == "completed":
        logger.info("Wallet topped up for user %s: KSh %s", user["_id"], tx["amount"])
    else:
        logger.info("Wallet top-up failed for user %s: %s", user["_id"], outcome.error_message)
    return updated


def apply_callback(db: Database, result: CallbackResult) -> str:
    """Route a parsed callback to the order or wallet transaction it belongs to."""
    if not result.checkout_request_id:
        logger.error("No checkout request ID in callback")
        return "unmatched"
    outcome = PaymentOutcome.from_callback(result)
    if db["orders"].find_one(order_filter(result.checkout_request_id)):
        settled = settle_order(db, result.checkout_request_id, outcome)
        return "order" if settled is not None else "duplicate"
    user, tx = find_wallet_transaction(db, result.checkout_request_id)
    if tx is not None:
        settled = settle_wallet_topup(db, result.checkout_request_id, outcome)
        return "wallet" if settled is not None else "duplicate"
    logger.error("No order or wallet transaction for checkout request %s", result.checkout_request_id)
    return "unmatched"


def refresh_order_status(db: Database, mpesa: MpesaClient, order: dict) -> dict:
    """Poll the gateway for a pending order and persist any terminal result."""
    checkout_request_id = (order.get("mpesa_details") or {}).get("checkout_request_id")
    if order.get("payment_status") != "pending" or not checkout_request_id:
        return order
    try:
        raw = mpesa.query_stk_push_status(checkout_request_id)
    except MpesaError as exc:
        logger.error("Error querying M-Pesa status for order %s: %s", order["_id"], exc)
        return order
    outcome = outcome_from_query(raw)
    if outcome is None:
        return order
    settle_order(db, checkout_request_id, outcome)
    return db["orders"].find_one({"_id": order["_id"]}) or order


def refresh_wallet_status(db: Database, mpesa: MpesaClient, checkout_request_id: str, tx: dict) -> dict:
    """Poll the gateway for a pending wallet transaction and persist any terminal result."""
    if tx.get("status") != "pending":
        return tx
    try:
        raw = mpesa.query_stk_push_status(checkout_request_id)
    except MpesaError as exc:
        logger.error("Error checking M-Pesa status for %s: %s", checkout_request_id, exc)
        return tx
    outcome = outcome_from_query(raw)
    if outcome is None:
        return tx
    settle_wallet_topup(db, checkout_request_id, outcome)
    _, current = find_wallet_transaction(db, checkout_request_id)
    return current or tx
