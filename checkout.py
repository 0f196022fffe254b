import logging

from fastapi import APIRouter, Depends, HTTPException
from pymongo.database import Database

from auth import get_current_user
from database import get_db, parse_object_id, serialize_doc
from mpesa import MpesaClient, MpesaError, normalize_phone
from payments import get_mpesa, refresh_order_status, require_configured
from schemas import CheckoutPaymentRequest, OrderMpesaDetails, utcnow

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/checkout", tags=["checkout"])


def _owned_order(db: Database, order_id: str, user: dict) -> dict:
    order = db["orders"].find_one({"_id": parse_object_id(order_id, "Order")})
    if not order:
        raise HTTPException(status_code=404, detail="Order not found")
    if order["user"] != str(user["_id"]):
        raise HTTPException(status_code=403, detail="Unauthorized access to order")
    return order


@router.post("/mpesa-payment")
def mpesa_payment(
    payload: CheckoutPaymentRequest,
    user: dict = Depends(get_current_user),
    db: Database = Depends(get_db),
    mpesa: MpesaClient = Depends(get_mpesa),
):
    try:
        phone = normalize_phone(payload.phone_number)
    except MpesaError as exc:
        raise HTTPException(status_code=400, detail=str(exc))

    order = _owned_order(db, payload.order_id, user)
    if order.get("payment_status") == "completed":
        raise HTTPException(status_code=400, detail="Order is already paid")
    require_configured(mpesa)

    try:
        ack = mpesa.initiate_stk_push(phone, order["final_amount"], str(order["_id"]))
    except MpesaError as exc:
        logger.error("M-Pesa error for order %s: %s", order["_id"], exc)
        raise HTTPException(status_code=400, detail=str(exc) or "Payment processing failed")

    if str(ack.get("ResponseCode")) != "0":
        raise HTTPException(
            status_code=400, detail=ack.get("ResponseDescription") or "M-Pesa payment initiation failed"
        )

    previous = order.get("mpesa_details") or {}
    superseded = list(previous.get("previous_checkout_request_ids") or [])
    if previous.get("checkout_request_id"):
        superseded.append(previous["checkout_request_id"])
    details = OrderMpesaDetails(
        checkout_request_id=ack.get("CheckoutRequestID"),
        previous_checkout_request_ids=superseded,
        merchant_request_id=ack.get("MerchantRequestID"),
        phone_number=phone,
        amount=order["final_amount"],
        initiated_at=utcnow(),
    )
    db["orders"].update_one(
        {"_id": order["_id"]},
        {
            "$set": {
                "payment_method": "mpesa",
                "payment_status": "pending",
                "mpesa_details": details.model_dump(),
                "updated_at": utcnow(),
            }
        },
    )
    return {
        "success": True,
        "message": "Payment initiated. Check your phone for M-Pesa prompt.",
        "checkout_request_id": details.checkout_request_id,
        "merchant_request_id": details.merchant_request_id,
        "order_id": str(order["_id"]),
    }


@router.get("/order-payment-status/{order_id}")
def order_payment_status(
    order_id: str,
    user: dict = Depends(get_current_user),
    db: Database = Depends(get_db),
    mpesa: MpesaClient = Depends(get_mpesa),
):
    order = _owned_order(db, order_id, user)
    order = refresh_order_status(db, mpesa, order)
    details = order.get("mpesa_details") or {}
    return {
        "success": True,
        "order_id": str(order["_id"]),
        "payment_status": order["payment_status"],
        "total_amount": order["final_amount"],
        "paid_at": serialize_doc(order.get("paid_at")),
        "mpesa_receipt_number": details.get("mpesa_receipt_number"),
    }
