"""
MongoDB access helpers.

The connection is opened once at startup and stored on the application
state; route handlers receive the `Database` through the `get_db`
dependency. Collections: "users", "products", "orders".
"""

import logging
import threading
import time
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from bson import ObjectId
from bson.errors import InvalidId
from fastapi import HTTPException, Request
from pymongo import ASCENDING, DESCENDING, TEXT, MongoClient
from pymongo.database import Database
from pymongo.errors import PyMongoError

from config import Settings

logger = logging.getLogger(__name__)


def connect_with_retry(
    settings: Settings,
    sleep: Callable[[float], None] = time.sleep,
    client_factory: Callable[..., MongoClient] = MongoClient,
) -> Database:
    """Connect with linear backoff, giving up after `mongo_connect_max_attempts`."""
    attempts = 0
    while True:
        try:
            client = client_factory(
                settings.mongo_uri,
                maxPoolSize=10,
                serverSelectionTimeoutMS=5000,
                socketTimeoutMS=45000,
            )
            client.admin.command("ping")
            db = client[settings.database_name]
            logger.info("Connected to MongoDB database %s", db.name)
            return db
        except PyMongoError as exc:
            attempts += 1
            logger.warning("MongoDB connect attempt %d failed: %s", attempts, exc)
            if attempts >= settings.mongo_connect_max_attempts:
                raise
            sleep(2 * attempts)


def reconnect_forever(app_state, settings: Settings, on_connect: Optional[Callable[[Database], None]] = None):
    """Keep retrying in a daemon thread until a connection is stored on `app_state.db`."""

    def run():
        while getattr(app_state, "db", None) is None:
            time.sleep(settings.mongo_retry_interval)
            try:
                db = connect_with_retry(settings, sleep=lambda _: None)
            except PyMongoError:
                continue
            if on_connect is not None:
                on_connect(db)
            app_state.db = db

    thread = threading.Thread(target=run, name="mongo-reconnect", daemon=True)
    thread.start()
    return thread


def ensure_indexes(db: Database) -> None:
    products = db["products"]
    products.create_index(
        [("name", TEXT), ("brand", TEXT), ("description", TEXT)], name="product_text_search"
    )
    products.create_index([("category", ASCENDING), ("is_active", ASCENDING)], name="category_active")
    products.create_index([("is_active", ASCENDING), ("rating", DESCENDING)], name="active_rating")
    products.create_index([("is_active", ASCENDING), ("created_at", DESCENDING)], name="active_created")
    products.create_index("name", name="product_name")

    users = db["users"]
    users.create_index("email", unique=True, name="user_email")
    users.create_index("phone", unique=True, name="user_phone")
    users.create_index(
        "wallet.transactions.mpesa_details.checkout_request_id", name="wallet_checkout_request"
    )

    orders = db["orders"]
    orders.create_index([("user", ASCENDING), ("created_at", DESCENDING)], name="user_created")
    orders.create_index([("status", ASCENDING), ("created_at", DESCENDING)], name="status_created")
    orders.create_index("mpesa_details.checkout_request_id", name="order_checkout_request")
    orders.create_index(
        "mpesa_details.previous_checkout_request_ids", name="order_previous_checkout_requests"
    )


def get_db(request: Request) -> Database:
    db = getattr(request.app.state, "db", None)
    if db is None:
        raise HTTPException(status_code=503, detail="Database not available")
    return db


def create_document(db: Database, collection_name: str, data: Any, _id: Optional[ObjectId] = None) -> str:
    if hasattr(data, "model_dump"):
        data_dict = data.model_dump()
    else:
        data_dict = dict(data)
    now = datetime.now(timezone.utc)
    data_dict.setdefault("created_at", now)
    data_dict["updated_at"] = now
    if _id is not None:
        data_dict["_id"] = _id
    result = db[collection_name].insert_one(data_dict)
    return str(result.inserted_id)


def get_documents(
    db: Database,
    collection_name: str,
    filter_dict: Optional[Dict[str, Any]] = None,
    sort: Optional[List] = None,
    skip: int = 0,
    limit: Optional[int] = None,
) -> List[Dict[str, Any]]:
    cursor = db[collection_name].find(filter_dict or {})
    if sort:
        cursor = cursor.sort(sort)
    if skip:
        cursor = cursor.skip(skip)
    if limit:
        cursor = cursor.limit(limit)
    return list(cursor)


def parse_object_id(value: str, what: str = "Resource") -> ObjectId:
    try:
        return ObjectId(value)
    except (InvalidId, TypeError):
        raise HTTPException(status_code=404, detail=f"{what} not found")


def serialize_doc(doc):
    """Make a Mongo document JSON friendly: `_id` -> `id`, ObjectId -> str, datetime -> ISO."""
    if isinstance(doc, list):
        return [serialize_doc(d) for d in doc]
    if isinstance(doc, ObjectId):
        return str(doc)
    if isinstance(doc, datetime):
        if doc.tzinfo is None:
            doc = doc.replace(tzinfo=timezone.utc)
        return doc.isoformat()
    if not isinstance(doc, dict):
        return doc
    out = {}
    for k, v in doc.items():
        if k == "_id":
            out["id"] = serialize_doc(v)
        else:
            out[k] = serialize_doc(v)
    return out
