import logging
import re
from typing import Literal, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pymongo import ASCENDING, DESCENDING, ReturnDocument
from pymongo.database import Database

from auth import get_current_user
from database import get_db, get_documents, parse_object_id, serialize_doc
from schemas import Review, ReviewRequest, compute_rating, utcnow

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/products", tags=["products"])

SORT_FIELDS = {"created_at", "name", "base_price", "rating", "total_stock"}


@router.get("")
def list_products(
    category: Optional[str] = None,
    search: Optional[str] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(12, ge=1, le=100),
    sort_by: str = "created_at",
    sort_order: Literal["asc", "desc"] = "desc",
    db: Database = Depends(get_db),
):
    filt = {"is_active": True}
    if category and category != "all":
        filt["category"] = category
    if search:
        pattern = re.escape(search)
        filt["$or"] = [
            {"name": {"$regex": pattern, "$options": "i"}},
            {"brand": {"$regex": pattern, "$options": "i"}},
            {"description": {"$regex": pattern, "$options": "i"}},
        ]
    if sort_by not in SORT_FIELDS:
        raise HTTPException(status_code=400, detail=f"Cannot sort by {sort_by}")

    direction = DESCENDING if sort_order == "desc" else ASCENDING
    products = get_documents(db, "products", filt, sort=[(sort_by, direction)], skip=(page - 1) * limit, limit=limit)
    total = db["products"].count_documents(filt)
    return {
        "success": True,
        "products": serialize_doc(products),
        "pagination": {
            "current_page": page,
            "total_pages": -(-total // limit),
            "total_products": total,
            "has_next": page * limit < total,
            "has_prev": page > 1,
        },
    }


@router.get("/meta/categories")
def list_categories(db: Database = Depends(get_db)):
    groups = db["products"].aggregate(
        [
            {"$match": {"is_active": True}},
            {"$group": {"_id": "$category", "count": {"$sum": 1}}},
            {"$sort": {"_id": 1}},
        ]
    )
    total = db["products"].count_documents({"is_active": True})
    categories = [{"id": "all", "name": "All", "count": total}]
    categories += [{"id": g["_id"], "name": g["_id"].capitalize(), "count": g["count"]} for g in groups]
    return {"success": True, "categories": categories}


@router.get("/favorites/mine")
def my_favorites(user: dict = Depends(get_current_user), db: Database = Depends(get_db)):
    ids = [parse_object_id(pid, "Product") for pid in user.get("favorites", [])]
    products = list(db["products"].find({"_id": {"$in": ids}})) if ids else []
    return {"success": True, "products": serialize_doc(products)}


@router.get("/{product_id}")
def get_product(product_id: str, db: Database = Depends(get_db)):
    doc = db["products"].find_one({"_id": parse_object_id(product_id, "Product")})
    if not doc:
        raise HTTPException(status_code=404, detail="Product not found")
    return {"success": True, "product": serialize_doc(doc)}


def _require_product(db: Database, product_id: str) -> dict:
    doc = db["products"].find_one({"_id": parse_object_id(product_id, "Product")}, {"_id": 1})
    if not doc:
        raise HTTPException(status_code=404, detail="Product not found")
    return doc


@router.post("/{product_id}/favorite")
def add_favorite(product_id: str, user: dict = Depends(get_current_user), db: Database = Depends(get_db)):
    _require_product(db, product_id)
    db["users"].update_one({"_id": user["_id"]}, {"$addToSet": {"favorites": product_id}})
    return {"success": True, "message": "Added to favorites"}


@router.delete("/{product_id}/favorite")
def remove_favorite(product_id: str, user: dict = Depends(get_current_user), db: Database = Depends(get_db)):
    db["users"].update_one({"_id": user["_id"]}, {"$pull": {"favorites": product_id}})
    return {"success": True, "message": "Removed from favorites"}


@router.post("/{product_id}/reviews", status_code=201)
def add_review(
    product_id: str,
    payload: ReviewRequest,
    user: dict = Depends(get_current_user),
    db: Database = Depends(get_db),
):
    oid = parse_object_id(product_id, "Product")
    review = Review(user=str(user["_id"]), rating=payload.rating, comment=payload.comment)
    doc = db["products"].find_one_and_update(
        {"_id": oid},
        {"$push": {"reviews": review.model_dump()}},
        return_document=ReturnDocument.AFTER,
    )
    if not doc:
        raise HTTPException(status_code=404, detail="Product not found")
    rating, count = compute_rating(doc.get("reviews", []))
    db["products"].update_one(
        {"_id": oid}, {"$set": {"rating": rating, "review_count": count, "updated_at": utcnow()}}
    )
    logger.info("Review added to product %s by user %s", product_id, user["_id"])
    return {"success": True, "message": "Review added", "rating": rating, "review_count": count}
