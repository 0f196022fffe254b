import logging
import time

from fastapi import APIRouter, Depends, HTTPException, Query
from pymongo.database import Database

from auth import get_current_user
from database import get_db, serialize_doc
from mpesa import MpesaClient, MpesaError, normalize_phone
from payments import find_wallet_transaction, get_mpesa, refresh_wallet_status, require_configured
from schemas import MpesaDetails, TopUpRequest, Transaction

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/wallet", tags=["wallet"])

CURRENCY = "KES"


@router.get("")
def get_wallet(user: dict = Depends(get_current_user)):
    wallet = user.get("wallet", {"balance": 0, "transactions": []})
    return {
        "success": True,
        "wallet": serialize_doc(wallet),
        "balance": wallet.get("balance", 0),
        "currency": CURRENCY,
    }


@router.post("/topup")
def top_up(
    payload: TopUpRequest,
    user: dict = Depends(get_current_user),
    db: Database = Depends(get_db),
    mpesa: MpesaClient = Depends(get_mpesa),
):
    try:
        phone = normalize_phone(payload.phone_number)
    except MpesaError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    require_configured(mpesa)

    reference = f"WALLET_{user['_id']}_{int(time.time() * 1000)}"
    try:
        ack = mpesa.initiate_stk_push(phone, payload.amount, reference)
    except MpesaError as exc:
        logger.error("M-Pesa top-up initiation failed for user %s: %s", user["_id"], exc)
        raise HTTPException(status_code=400, detail=str(exc) or "Payment processing failed")

    if str(ack.get("ResponseCode")) != "0":
        raise HTTPException(
            status_code=400, detail=ack.get("ResponseDescription") or "M-Pesa payment initiation failed"
        )

    tx = Transaction(
        type="credit",
        amount=payload.amount,
        description="Wallet Top-up via M-Pesa",
        status="pending",
        mpesa_details=MpesaDetails(
            checkout_request_id=ack.get("CheckoutRequestID"),
            merchant_request_id=ack.get("MerchantRequestID"),
            phone_number=phone,
        ),
    )
    db["users"].update_one({"_id": user["_id"]}, {"$push": {"wallet.transactions": tx.model_dump()}})
    return {
        "success": True,
        "message": "Wallet top-up initiated. Check your phone for M-Pesa prompt.",
        "checkout_request_id": ack.get("CheckoutRequestID"),
        "merchant_request_id": ack.get("MerchantRequestID"),
    }


@router.get("/payment-status/{checkout_request_id}")
def payment_status(
    checkout_request_id: str,
    user: dict = Depends(get_current_user),
    db: Database = Depends(get_db),
    mpesa: MpesaClient = Depends(get_mpesa),
):
    owner, tx = find_wallet_transaction(db, checkout_request_id)
    if tx is None or owner["_id"] != user["_id"]:
        raise HTTPException(status_code=404, detail="Transaction not found")

    tx = refresh_wallet_status(db, mpesa, checkout_request_id, tx)
    return {
        "success": True,
        "status": tx["status"],
        "amount": tx["amount"],
        "timestamp": serialize_doc(tx.get("timestamp")),
    }


@router.get("/transactions")
def list_transactions(
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    user: dict = Depends(get_current_user),
):
    wallet = user.get("wallet", {})
    ordered = sorted(wallet.get("transactions", []), key=lambda tx: tx["timestamp"], reverse=True)
    start = (page - 1) * limit
    end = start + limit
    # receipts and phone numbers stay server side
    transactions = [
        {
            "id": tx.get("id"),
            "type": tx["type"],
            "amount": tx["amount"],
            "description": tx.get("description", ""),
            "status": tx["status"],
            "timestamp": serialize_doc(tx["timestamp"]),
        }
        for tx in ordered[start:end]
    ]
    total = len(ordered)
    return {
        "success": True,
        "transactions": transactions,
        "current_balance": wallet.get("balance", 0),
        "pagination": {
            "current_page": page,
            "total_pages": -(-total // limit),
            "total_transactions": total,
            "has_more": end < total,
        },
    }


@router.get("/mpesa/config")
def mpesa_config(user: dict = Depends(get_current_user), mpesa: MpesaClient = Depends(get_mpesa)):
    status = mpesa.config_status()
    return {
        "success": True,
        "configured": status["configured"],
        "environment": status["environment"],
        "missing_config": {
            "consumer_key": not status["has_consumer_key"],
            "consumer_secret": not status["has_consumer_secret"],
            "shortcode": not status["has_shortcode"],
            "passkey": not status["has_passkey"],
            "callback_url": not status["has_callback_url"],
        },
    }
