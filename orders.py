import logging
from typing import List

from bson import ObjectId
from fastapi import APIRouter, Depends, HTTPException, Query
from pymongo.database import Database
from pymongo.errors import PyMongoError

from auth import get_current_user
from database import create_document, get_db, get_documents, parse_object_id, serialize_doc
from mpesa import MpesaClient, MpesaError, normalize_phone
from payments import get_mpesa, require_configured
from schemas import (
    DELIVERY_FEE,
    CreateOrderRequest,
    Order,
    OrderItem,
    OrderItemRequest,
    OrderMpesaDetails,
    OrderVariation,
    Transaction,
    utcnow,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/orders", tags=["orders"])


def resolve_items(db: Database, requested: List[OrderItemRequest]) -> List[OrderItem]:
    """Price each line from the catalog using the chosen variation or packet."""
    items = []
    for req in requested:
        product = db["products"].find_one({"_id": parse_object_id(req.product_id, "Product"), "is_active": True})
        if not product:
            raise HTTPException(status_code=404, detail=f"Product {req.product_id} not found")
        if req.variation_index is not None:
            options = product.get("variations", [])
            index = req.variation_index
        else:
            options = product.get("packets", [])
            index = req.packet_index
        if index >= len(options):
            raise HTTPException(status_code=400, detail=f"Invalid option for {product['name']}")
        option = options[index]
        if req.variation_index is not None:
            variation = OrderVariation(size=option["size"], price=option["price"])
        else:
            variation = OrderVariation(
                size=option["size"],
                price=option["price_per_packet"],
                packet_type=option["packet_type"],
                units_per_packet=option["units_per_packet"],
            )
        items.append(
            OrderItem(
                product=req.product_id,
                name=product["name"],
                variation=variation,
                quantity=req.quantity,
                price=variation.price,
            )
        )
    return items


def pay_with_wallet(db: Database, user: dict, order: Order, order_id: ObjectId) -> str:
    """Debit the wallet and store the order already confirmed.

    The balance check and the debit are one conditional update, so the
    balance can never go negative. If the order insert then fails the
    debit is reversed.
    """
    debit = Transaction(
        type="debit",
        amount=order.final_amount,
        description=f"Payment for order {order_id}",
        status="completed",
    )
    result = db["users"].update_one(
        {"_id": user["_id"], "wallet.balance": {"$gte": order.final_amount}},
        {"$inc": {"wallet.balance": -order.final_amount}, "$push": {"wallet.transactions": debit.model_dump()}},
    )
    if result.matched_count == 0:
        raise HTTPException(status_code=400, detail="Insufficient wallet balance")

    order.payment_status = "completed"
    order.status = "confirmed"
    order.paid_at = utcnow()
    try:
        return create_document(db, "orders", order, _id=order_id)
    except PyMongoError:
        logger.exception("Order insert failed after wallet debit; refunding user %s", user["_id"])
        db["users"].update_one(
            {"_id": user["_id"], "wallet.transactions.id": debit.id},
            {"$inc": {"wallet.balance": order.final_amount}, "$set": {"wallet.transactions.$.status": "failed"}},
        )
        raise


@router.post("")
def create_order(
    payload: CreateOrderRequest,
    user: dict = Depends(get_current_user),
    db: Database = Depends(get_db),
    mpesa: MpesaClient = Depends(get_mpesa),
):
    items = resolve_items(db, payload.items)
    total_amount = sum(item.price * item.quantity for item in items)
    order = Order(
        user=str(user["_id"]),
        items=items,
        total_amount=total_amount,
        delivery_fee=DELIVERY_FEE,
        final_amount=total_amount + DELIVERY_FEE,
        delivery_address=payload.delivery_address,
        payment_method=payload.payment_method,
        notes=payload.notes,
    )

    if payload.payment_method == "wallet":
        order_id = pay_with_wallet(db, user, order, ObjectId())
        return {"success": True, "message": "Order placed successfully using wallet", "order": order_id}

    if payload.payment_method == "card":
        # no card processor; card orders are accepted as paid
        order.payment_status = "completed"
        order.status = "confirmed"
        order.paid_at = utcnow()
        order_id = create_document(db, "orders", order)
        return {"success": True, "message": "Order placed successfully", "order": order_id}

    require_configured(mpesa)
    try:
        phone = normalize_phone(payload.mpesa_number)
    except MpesaError as exc:
        raise HTTPException(status_code=400, detail=str(exc))

    order_id = create_document(db, "orders", order)
    try:
        ack = mpesa.initiate_stk_push(phone, order.final_amount, order_id)
    except MpesaError as exc:
        db["orders"].delete_one({"_id": ObjectId(order_id)})
        logger.error("M-Pesa initiation failed for order %s: %s", order_id, exc)
        raise HTTPException(status_code=400, detail=str(exc) or "Payment processing failed")

    if str(ack.get("ResponseCode")) != "0":
        db["orders"].delete_one({"_id": ObjectId(order_id)})
        raise HTTPException(
            status_code=400, detail=ack.get("ResponseDescription") or "M-Pesa payment initiation failed"
        )

    details = OrderMpesaDetails(
        checkout_request_id=ack.get("CheckoutRequestID"),
        merchant_request_id=ack.get("MerchantRequestID"),
        phone_number=phone,
        amount=order.final_amount,
        initiated_at=utcnow(),
    )
    db["orders"].update_one(
        {"_id": ObjectId(order_id)},
        {"$set": {"mpesa_details": details.model_dump(), "updated_at": utcnow()}},
    )
    return {
        "success": True,
        "message": "Order created successfully. Check your phone for M-Pesa prompt.",
        "order": order_id,
        "checkout_request_id": details.checkout_request_id,
    }


@router.get("")
def list_orders(
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    user: dict = Depends(get_current_user),
    db: Database = Depends(get_db),
):
    filt = {"user": str(user["_id"])}
    orders = get_documents(db, "orders", filt, sort=[("created_at", -1)], skip=(page - 1) * limit, limit=limit)
    total = db["orders"].count_documents(filt)
    return {
        "success": True,
        "orders": serialize_doc(orders),
        "pagination": {
            "current_page": page,
            "total_pages": -(-total // limit),
            "total_orders": total,
        },
    }


@router.get("/{order_id}")
def get_order(order_id: str, user: dict = Depends(get_current_user), db: Database = Depends(get_db)):
    order = db["orders"].find_one({"_id": parse_object_id(order_id, "Order"), "user": str(user["_id"])})
    if not order:
        raise HTTPException(status_code=404, detail="Order not found")
    return {"success": True, "order": serialize_doc(order)}
