"""
Idempotent seeders for the catalog and the demo account.

Run before starting the server:  python seed.py [--force-reset]
"""

import argparse
import logging
import sys
from typing import List, Optional

from bson import ObjectId
from pydantic import ValidationError
from pymongo.database import Database
from pymongo.errors import PyMongoError

from auth import hash_password
from config import Settings
from database import connect_with_retry, create_document
from schemas import Product, User, build_product_document, compute_total_stock, utcnow

logger = logging.getLogger(__name__)

SAMPLE_PRODUCTS = [
    {
        "name": "Coca-Cola",
        "description": "Classic refreshing cola drink",
        "category": "soda",
        "brand": "Coca-Cola",
        "base_price": 50,
        "variations": [
            {"size": "330ml", "price": 50, "stock": 100},
            {"size": "500ml", "price": 70, "stock": 150},
            {"size": "1L", "price": 120, "stock": 80},
        ],
        "packets": [
            {"packet_type": "6-pack", "units_per_packet": 6, "size": "330ml", "price_per_packet": 280, "savings": 20, "stock": 50},
            {"packet_type": "12-pack", "units_per_packet": 12, "size": "330ml", "price_per_packet": 540, "savings": 60, "stock": 30},
            {"packet_type": "6-pack", "units_per_packet": 6, "size": "500ml", "price_per_packet": 390, "savings": 30, "stock": 40},
        ],
        "rating": 4.5,
    },
    {
        "name": "Dasani Water",
        "description": "Pure drinking water",
        "category": "water",
        "brand": "Coca-Cola",
        "base_price": 30,
        "variations": [
            {"size": "500ml", "price": 30, "stock": 200},
            {"size": "1L", "price": 50, "stock": 150},
            {"size": "1.5L", "price": 70, "stock": 100},
        ],
        "packets": [
            {"packet_type": "6-pack", "units_per_packet": 6, "size": "500ml", "price_per_packet": 160, "savings": 20, "stock": 60},
            {"packet_type": "12-pack", "units_per_packet": 12, "size": "500ml", "price_per_packet": 300, "savings": 60, "stock": 40},
            {"packet_type": "24-pack", "units_per_packet": 24, "size": "500ml", "price_per_packet": 576, "savings": 144, "stock": 20},
        ],
        "rating": 4.2,
    },
    {
        "name": "Minute Maid Orange",
        "description": "Fresh orange juice drink",
        "category": "juice",
        "brand": "Minute Maid",
        "base_price": 80,
        "variations": [
            {"size": "300ml", "price": 80, "stock": 120},
            {"size": "500ml", "price": 120, "stock": 90},
        ],
        "packets": [
            {"packet_type": "4-pack", "units_per_packet": 4, "size": "300ml", "price_per_packet": 300, "savings": 20, "stock": 30},
            {"packet_type": "6-pack", "units_per_packet": 6, "size": "300ml", "price_per_packet": 450, "savings": 30, "stock": 25},
        ],
        "rating": 4.7,
    },
    {
        "name": "Red Bull Energy",
        "description": "Energy drink that gives you wings",
        "category": "energy",
        "brand": "Red Bull",
        "base_price": 150,
        "variations": [
            {"size": "250ml", "price": 150, "stock": 80},
            {"size": "355ml", "price": 200, "stock": 60},
        ],
        "packets": [
            {"packet_type": "4-pack", "units_per_packet": 4, "size": "250ml", "price_per_packet": 570, "savings": 30, "stock": 25},
            {"packet_type": "8-pack", "units_per_packet": 8, "size": "250ml", "price_per_packet": 1080, "savings": 120, "stock": 15},
        ],
        "rating": 4.3,
    },
    {
        "name": "Lipton Ice Tea",
        "description": "Refreshing iced tea",
        "category": "tea",
        "brand": "Lipton",
        "base_price": 60,
        "variations": [{"size": "500ml", "price": 60, "stock": 100}],
        "rating": 4.1,
    },
    {
        "name": "Sprite",
        "description": "Lemon-lime flavored soda",
        "category": "soda",
        "brand": "Coca-Cola",
        "base_price": 50,
        "variations": [
            {"size": "330ml", "price": 50, "stock": 120},
            {"size": "500ml", "price": 70, "stock": 100},
            {"size": "1L", "price": 120, "stock": 60},
        ],
        "rating": 4.4,
    },
    {
        "name": "Keringet Water",
        "description": "Natural mineral water from Kenya",
        "category": "water",
        "brand": "Keringet",
        "base_price": 40,
        "variations": [
            {"size": "500ml", "price": 40, "stock": 150},
            {"size": "1L", "price": 70, "stock": 100},
        ],
        "rating": 4.6,
    },
    {
        "name": "Del Monte Pineapple",
        "description": "Sweet pineapple juice",
        "category": "juice",
        "brand": "Del Monte",
        "base_price": 90,
        "variations": [
            {"size": "250ml", "price": 90, "stock": 80},
            {"size": "500ml", "price": 150, "stock": 60},
        ],
        "rating": 4.5,
    },
]


def seed_products(db: Database, samples: Optional[List[dict]] = None) -> List[str]:
    """Upsert the sample catalog by product name; returns the product ids."""
    ids = []
    for raw in samples if samples is not None else SAMPLE_PRODUCTS:
        product = Product(**raw)
        existing = db["products"].find_one({"name": product.name})
        if existing:
            packets = product.model_dump()["packets"] if "packets" in raw else existing.get("packets", [])
            variations = product.model_dump()["variations"]
            db["products"].update_one(
                {"_id": existing["_id"]},
                {
                    "$set": {
                        "description": product.description,
                        "category": product.category,
                        "brand": product.brand,
                        "base_price": product.base_price,
                        "variations": variations,
                        "packets": packets,
                        "rating": product.rating,
                        "is_active": raw.get("is_active", existing.get("is_active", True)),
                        "total_stock": compute_total_stock(variations, packets),
                        "updated_at": utcnow(),
                    }
                },
            )
            ids.append(str(existing["_id"]))
        else:
            ids.append(create_document(db, "products", build_product_document(product)))
    logger.info("Seeded/updated %d products", len(ids))
    return ids


def seed_demo_user(db: Database, settings: Settings, force_reset: bool = False) -> dict:
    """Ensure the demo account exists; only `force_reset` touches its password."""
    users = db["users"]
    existing = users.find_one({"email": settings.demo_email})
    if not existing and settings.prev_demo_email:
        existing = users.find_one({"email": settings.prev_demo_email})

    if existing:
        changes = {}
        if existing.get("email") != settings.demo_email:
            changes["email"] = settings.demo_email
        if existing.get("phone") != settings.demo_phone:
            changes["phone"] = settings.demo_phone
        if not existing.get("is_active", True):
            changes["is_active"] = True
        if force_reset:
            changes["password_hash"] = hash_password(settings.demo_password)
        if changes:
            changes["updated_at"] = utcnow()
            users.update_one({"_id": existing["_id"]}, {"$set": changes})
        return users.find_one({"_id": existing["_id"]})

    user = User(
        name=settings.demo_name,
        email=settings.demo_email,
        phone=settings.demo_phone,
        password_hash=hash_password(settings.demo_password),
    )
    user_id = create_document(db, "users", user)
    logger.info("Created demo user %s", settings.demo_email)
    return users.find_one({"_id": ObjectId(user_id)})


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Seed products and the demo user")
    parser.add_argument("--force-reset", action="store_true", help="reset the demo user's password")
    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    settings = Settings.from_env()
    try:
        db = connect_with_retry(settings)
    except PyMongoError:
        logger.exception("Seeder could not connect to MongoDB")
        return 1

    try:
        seed_products(db)
    except PyMongoError:
        logger.exception("Product seeder failed")
    force_reset = args.force_reset or settings.force_seed
    logger.info("Ensuring demo user (force_reset=%s)", force_reset)
    try:
        seed_demo_user(db, settings, force_reset=force_reset)
    except (PyMongoError, ValidationError):
        logger.exception("User seeder failed")
    db.client.close()
    logger.info("Seeding completed")
    return 0


if __name__ == "__main__":
    sys.exit(main())
