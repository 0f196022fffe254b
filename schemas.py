"""
Database Schemas for the Beverage Shop

Each stored Pydantic model maps to a MongoDB collection:
- User -> "users" (wallet and transactions embedded)
- Product -> "products" (variations, packets and reviews embedded)
- Order -> "orders" (line items and M-Pesa details embedded)

Request bodies for the API endpoints live at the bottom of the module.
"""

import re
import uuid
from datetime import datetime, timezone
from typing import Any, List, Literal, Optional

from pydantic import BaseModel, EmailStr, Field, field_validator, model_validator

CATEGORIES = ("water", "soda", "juice", "energy", "tea", "coffee")
Category = Literal["water", "soda", "juice", "energy", "tea", "coffee"]
PaymentMethod = Literal["mpesa", "card", "wallet"]
PaymentStatus = Literal["pending", "completed", "failed"]
OrderStatus = Literal["pending", "confirmed", "preparing", "out_for_delivery", "delivered", "cancelled"]

DELIVERY_FEE = 60
MIN_AMOUNT = 1
MAX_AMOUNT = 70000
PHONE_PATTERN = r"^254[0-9]{9}$"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# Users and wallet

class MpesaDetails(BaseModel):
    checkout_request_id: Optional[str] = None
    merchant_request_id: Optional[str] = None
    phone_number: Optional[str] = None
    mpesa_receipt_number: Optional[str] = None
    transaction_date: Optional[str] = None
    error_code: Optional[str] = None
    error_message: Optional[str] = None


class Transaction(BaseModel):
    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    type: Literal["credit", "debit"]
    amount: float = Field(..., gt=0)
    description: str = ""
    status: PaymentStatus = "pending"
    mpesa_details: Optional[MpesaDetails] = None
    timestamp: datetime = Field(default_factory=utcnow)


class Wallet(BaseModel):
    balance: float = Field(0, ge=0)
    transactions: List[Transaction] = Field(default_factory=list)


class User(BaseModel):
    name: str = Field(..., description="Full name")
    email: EmailStr = Field(..., description="Email address, stored lowercased")
    phone: str = Field(..., pattern=PHONE_PATTERN, description="Kenyan phone number 254XXXXXXXXX")
    password_hash: str = Field(..., description="BCrypt password hash")
    role: Literal["customer", "admin"] = "customer"
    is_active: bool = True
    favorites: List[str] = Field(default_factory=list)
    wallet: Wallet = Field(default_factory=Wallet)


# Products

class ProductVariation(BaseModel):
    size: str
    price: float = Field(..., ge=0)
    stock: int = Field(0, ge=0)


class PacketVariation(BaseModel):
    packet_type: str = Field(..., description="e.g. 6-pack, 12-pack")
    units_per_packet: int = Field(..., ge=2)
    size: str = Field(..., description="Size of each unit in the packet")
    price_per_packet: float = Field(..., ge=0)
    savings: float = Field(0, ge=0)
    stock: int = Field(0, ge=0)


class Review(BaseModel):
    user: str
    rating: int = Field(..., ge=1, le=5)
    comment: Optional[str] = Field(None, max_length=500)
    created_at: datetime = Field(default_factory=utcnow)


class Product(BaseModel):
    name: str = Field(..., max_length=200)
    description: str = Field("", max_length=1000)
    category: Category
    brand: str = Field(..., max_length=100)
    base_price: float = Field(..., ge=0)
    variations: List[ProductVariation] = Field(default_factory=list)
    packets: List[PacketVariation] = Field(default_factory=list)
    image: str = ""
    rating: float = Field(0, ge=0, le=5)
    review_count: int = Field(0, ge=0)
    reviews: List[Review] = Field(default_factory=list)
    is_active: bool = True
    total_stock: int = Field(0, ge=0)


def compute_total_stock(variations: List[Any], packets: List[Any]) -> int:
    """Single units on hand: variation stock plus packet stock times units per packet."""
    total = sum(_get(v, "stock", 0) for v in variations or [])
    total += sum(_get(p, "stock", 0) * _get(p, "units_per_packet", 0) for p in packets or [])
    return total


def compute_rating(reviews: List[Any]) -> tuple:
    """Return (rating rounded to one decimal, review count)."""
    if not reviews:
        return 0, 0
    ratings = [_get(r, "rating", 0) for r in reviews]
    return round(sum(ratings) / len(ratings), 1), len(ratings)


def build_product_document(product: Product) -> dict:
    doc = product.model_dump()
    doc["total_stock"] = compute_total_stock(product.variations, product.packets)
    return doc


def _get(obj, key, default=None):
    if isinstance(obj, dict):
        return obj.get(key, default)
    return getattr(obj, key, default)


# Orders

class OrderVariation(BaseModel):
    size: str
    price: float
    packet_type: Optional[str] = None
    units_per_packet: Optional[int] = None


class OrderItem(BaseModel):
    product: str
    name: str
    variation: OrderVariation
    quantity: int = Field(..., ge=1)
    price: float = Field(..., ge=0, description="Unit price at time of purchase")


class DeliveryAddress(BaseModel):
    street: str = Field(..., min_length=1)
    city: str = Field(..., min_length=1)
    county: str = Field(..., min_length=1)
    postal_code: Optional[str] = None
    phone_number: str = Field(..., min_length=1)


class OrderMpesaDetails(BaseModel):
    checkout_request_id: Optional[str] = None
    previous_checkout_request_ids: List[str] = Field(default_factory=list, description="Superseded STK pushes for the same order")
    merchant_request_id: Optional[str] = None
    mpesa_receipt_number: Optional[str] = None
    transaction_date: Optional[str] = None
    phone_number: Optional[str] = None
    amount: Optional[float] = None
    initiated_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    failure_reason: Optional[str] = None


class Order(BaseModel):
    user: str
    items: List[OrderItem]
    total_amount: float = Field(..., ge=0)
    delivery_fee: float = DELIVERY_FEE
    final_amount: float = Field(..., ge=0)
    delivery_address: DeliveryAddress
    payment_method: PaymentMethod
    payment_status: PaymentStatus = "pending"
    paid_at: Optional[datetime] = None
    mpesa_details: Optional[OrderMpesaDetails] = None
    status: OrderStatus = "pending"
    notes: Optional[str] = None


# Lightweight request models

class RegisterRequest(BaseModel):
    name: str = Field(..., min_length=2)
    email: EmailStr
    phone: str = Field(..., pattern=PHONE_PATTERN)
    password: str = Field(..., min_length=6, max_length=72)

    @field_validator("name")
    @classmethod
    def strip_name(cls, v: str) -> str:
        v = v.strip()
        if len(v) < 2:
            raise ValueError("Name must be at least 2 characters")
        return v

    @field_validator("email")
    @classmethod
    def lower_email(cls, v: str) -> str:
        return v.lower()

    @field_validator("password")
    @classmethod
    def password_strength(cls, v: str) -> str:
        if not re.search(r"[A-Z0-9]", v):
            raise ValueError("Password must contain at least one uppercase letter or one number")
        return v


class LoginRequest(BaseModel):
    email: EmailStr
    password: str = Field(..., min_length=1)

    @field_validator("email")
    @classmethod
    def lower_email(cls, v: str) -> str:
        return v.lower()


class OrderItemRequest(BaseModel):
    product_id: str
    quantity: int = Field(1, ge=1)
    variation_index: Optional[int] = Field(None, ge=0)
    packet_index: Optional[int] = Field(None, ge=0)

    @model_validator(mode="after")
    def one_selection(self):
        if (self.variation_index is None) == (self.packet_index is None):
            raise ValueError("Choose exactly one of variation_index or packet_index")
        return self


class CreateOrderRequest(BaseModel):
    items: List[OrderItemRequest] = Field(..., min_length=1)
    delivery_address: DeliveryAddress
    payment_method: PaymentMethod
    mpesa_number: Optional[str] = None
    notes: Optional[str] = None

    @model_validator(mode="after")
    def mpesa_needs_number(self):
        if self.payment_method == "mpesa" and not self.mpesa_number:
            raise ValueError("mpesa_number is required for M-Pesa payments")
        return self


class TopUpRequest(BaseModel):
    amount: int = Field(..., ge=MIN_AMOUNT, le=MAX_AMOUNT, description="Whole shillings")
    phone_number: str = Field(..., min_length=1)


class CheckoutPaymentRequest(BaseModel):
    order_id: str = Field(..., min_length=1)
    phone_number: str = Field(..., min_length=1)


class ReviewRequest(BaseModel):
    rating: int = Field(..., ge=1, le=5)
    comment: Optional[str] = Field(None, max_length=500)
