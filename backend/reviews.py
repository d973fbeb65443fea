"""
Product reviews. One review per customer per product; every change recomputes
the product's `ratings` summary.
"""

from __future__ import annotations
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Iterable, Optional
from datetime import datetime
from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ReturnDocument
import structlog

from database import create_document, find_products, get_documents, serialize, to_object_id
from errors import NotFound, StoreError
from events import ADMIN, ALL, Publisher, safe_publish
from schemas import RatingSummary, ReviewIn, ReviewUpdateIn

logger = structlog.get_logger(__name__)


def rating_summary(ratings: Iterable[int]) -> RatingSummary:
    """Average to one decimal place (half-up) and count."""
    ratings = list(ratings)
    if not ratings:
        return RatingSummary()
    average = (Decimal(sum(ratings)) / len(ratings)).quantize(Decimal("0.1"), rounding=ROUND_HALF_UP)
    return RatingSummary(average=float(average), count=len(ratings))


async def refresh_rating(db: AsyncIOMotorDatabase, publisher: Publisher, product_id: str) -> Optional[dict[str, Any]]:
    reviews = await get_documents(db, "review", {"product_id": product_id}, limit=10000)
    summary = rating_summary(r["rating"] for r in reviews)
    product = await db["product"].find_one_and_update(
        {"_id": to_object_id(product_id)},
        {"$set": {"ratings": summary.model_dump(), "updated_at": datetime.utcnow()}},
        return_document=ReturnDocument.AFTER,
    )
    if product is not None:
        payload = {"action": "updated", "product": serialize(product)}
        await safe_publish(publisher, ADMIN, "product-changed", payload)
        await safe_publish(publisher, ALL, "product-changed", payload)
    return product


async def _get_review(db: AsyncIOMotorDatabase, review_id: str) -> dict[str, Any]:
    oid = to_object_id(review_id)
    review = await db["review"].find_one({"_id": oid}) if oid else None
    if review is None:
        raise NotFound("Review not found")
    return review


async def list_reviews(db: AsyncIOMotorDatabase, product_id: Optional[str] = None) -> list[dict[str, Any]]:
    query = {"product_id": product_id} if product_id else {}
    reviews = await get_documents(db, "review", query, limit=500, sort=[("created_at", -1)])
    return [serialize(r) for r in reviews]


async def create_review(db: AsyncIOMotorDatabase, publisher: Publisher, review: ReviewIn) -> dict[str, Any]:
    if review.product_id not in await find_products(db, [review.product_id]):
        raise NotFound("Product not found", review.product_id)
    email = review.email.lower()
    if await db["review"].find_one({"product_id": review.product_id, "email": email}):
        raise StoreError("You have already reviewed this product", review.product_id)

    doc = await create_document(db, "review", {
        "product_id": review.product_id,
        "email": email,
        "rating": review.rating,
        "comment": review.comment.strip(),
        "verified": True,
        "admin_response": "",
    })
    logger.info("review_created", product_id=review.product_id, rating=review.rating)
    await refresh_rating(db, publisher, review.product_id)
    return doc


async def update_review(db: AsyncIOMotorDatabase, publisher: Publisher, review_id: str,
                        update: ReviewUpdateIn) -> dict[str, Any]:
    review = await _get_review(db, review_id)
    updated = await db["review"].find_one_and_update(
        {"_id": review["_id"]},
        {"$set": {"rating": update.rating, "comment": update.comment.strip(), "updated_at": datetime.utcnow()}},
        return_document=ReturnDocument.AFTER,
    )
    await refresh_rating(db, publisher, review["product_id"])
    return updated


async def delete_review(db: AsyncIOMotorDatabase, publisher: Publisher, review_id: str) -> None:
    review = await _get_review(db, review_id)
    await db["review"].delete_one({"_id": review["_id"]})
    logger.info("review_deleted", review_id=review_id, product_id=review["product_id"])
    await refresh_rating(db, publisher, review["product_id"])


async def respond(db: AsyncIOMotorDatabase, review_id: str, admin_response: str) -> dict[str, Any]:
    review = await _get_review(db, review_id)
    return await db["review"].find_one_and_update(
        {"_id": review["_id"]},
        {"$set": {"admin_response": admin_response.strip(), "updated_at": datetime.utcnow()}},
        return_document=ReturnDocument.AFTER,
    )
