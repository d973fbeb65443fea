from __future__ import annotations
import os
from typing import Any, Optional
from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase
from pydantic_settings import BaseSettings
from pymongo import ReturnDocument
from bson import ObjectId
from bson.errors import InvalidId
from datetime import datetime, timedelta
import structlog

from errors import InsufficientStock

logger = structlog.get_logger(__name__)

class Settings(BaseSettings):
    DATABASE_URL: str = os.getenv("DATABASE_URL", "mongodb://localhost:27017")
    DATABASE_NAME: str = os.getenv("DATABASE_NAME", "nirvaanaa")
    RAZORPAY_KEY_ID: Optional[str] = None
    RAZORPAY_KEY_SECRET: Optional[str] = None
    RAZORPAY_BASE_URL: str = "https://api.razorpay.com/v1"
    PAYMENT_TIMEOUT: float = 10.0
    CURRENCY: str = "INR"
    # minor units per pricing unit (paise per rupee)
    CURRENCY_SUBUNITS: int = 100
    DEFAULT_SHIPPING_METHOD: str = "Standard Shipping"
    DEFAULT_SHIPPING_COST: int = 100
    DEFAULT_GST_PERCENT: float = 18
    DEFAULT_ESTIMATED_DAYS: int = 5
    RETURN_WINDOW_DAYS: int = 30
    LOG_LEVEL: str = "INFO"
    LOG_JSON: bool = False

settings = Settings()

_client: Optional[AsyncIOMotorClient] = None
_db: Optional[AsyncIOMotorDatabase] = None

async def get_db() -> AsyncIOMotorDatabase:
    global _client, _db
    if _db is None:
        _client = AsyncIOMotorClient(settings.DATABASE_URL)
        _db = _client[settings.DATABASE_NAME]
    return _db

def to_object_id(value: Any) -> Optional[ObjectId]:
    if isinstance(value, ObjectId):
        return value
    try:
        return ObjectId(str(value))
    except (InvalidId, TypeError):
        return None

def serialize(doc: Optional[dict[str, Any]]) -> Optional[dict[str, Any]]:
    """Copy a document for the client: `_id` becomes `id`, nested ids become strings."""
    if doc is None:
        return None
    out: dict[str, Any] = {}
    for k, v in doc.items():
        if k == "_id":
            out["id"] = str(v)
        elif isinstance(v, ObjectId):
            out[k] = str(v)
        elif isinstance(v, dict):
            out[k] = serialize(v)
        elif isinstance(v, list):
            out[k] = [serialize(i) if isinstance(i, dict) else (str(i) if isinstance(i, ObjectId) else i) for i in v]
        else:
            out[k] = v
    return out

async def create_document(db: AsyncIOMotorDatabase, collection_name: str, data: dict[str, Any]) -> dict[str, Any]:
    now = datetime.utcnow()
    data_with_meta = {**data, "created_at": now, "updated_at": now}
    result = await db[collection_name].insert_one(data_with_meta)
    inserted = await db[collection_name].find_one({"_id": result.inserted_id})
    return inserted or {}

async def get_documents(
    db: AsyncIOMotorDatabase,
    collection_name: str,
    filter_dict: dict[str, Any] | None = None,
    limit: int = 100,
    skip: int = 0,
    sort: Optional[list[tuple[str, int]]] = None,
) -> list[dict[str, Any]]:
    cursor = db[collection_name].find(filter_dict or {})
    if sort:
        cursor = cursor.sort(sort)
    cursor = cursor.skip(skip).limit(limit)
    docs = []
    async for d in cursor:
        docs.append(d)
    return docs

async def update_document(db: AsyncIOMotorDatabase, collection_name: str, doc_id: Any, changes: dict[str, Any]) -> Optional[dict[str, Any]]:
    return await db[collection_name].find_one_and_update(
        {"_id": doc_id},
        {"$set": {**changes, "updated_at": datetime.utcnow()}},
        return_document=ReturnDocument.AFTER,
    )

# Catalog

async def find_products(db: AsyncIOMotorDatabase, product_ids: list[Any]) -> dict[str, dict[str, Any]]:
    """Fetch products by id; invalid or unknown ids are simply absent from the result."""
    oids = [oid for oid in (to_object_id(p) for p in product_ids) if oid is not None]
    if not oids:
        return {}
    found = {}
    async for doc in db["product"].find({"_id": {"$in": oids}}):
        found[str(doc["_id"])] = doc
    return found

async def active_tag_discounts(db: AsyncIOMotorDatabase) -> list[dict[str, Any]]:
    return await get_documents(db, "tagdiscount", {"active": True}, limit=1000)

async def find_shipping_method(db: AsyncIOMotorDatabase, name: str) -> Optional[dict[str, Any]]:
    return await db["shipping"].find_one({"name": name, "is_active": True})

# Stock

async def _increment(db: AsyncIOMotorDatabase, directive) -> Optional[dict[str, Any]]:
    oid = to_object_id(directive.product_id)
    filt: dict[str, Any] = {"_id": oid}
    if directive.stock_delta < 0:
        # increment-if-sufficient: the filter guards the stock floor
        filt["stock"] = {"$gte": -directive.stock_delta}
    return await db["product"].find_one_and_update(
        filt,
        {"$inc": {"stock": directive.stock_delta, "sales_count": directive.sales_count_delta}},
        return_document=ReturnDocument.AFTER,
    )

async def apply_stock_directives(db: AsyncIOMotorDatabase, directives: list) -> list[dict[str, Any]]:
    """Apply stock directives one atomic `$inc` at a time.

    A directive that would take stock below zero matches no document. When that
    happens every directive already applied in the batch is reversed and
    InsufficientStock is raised, so the batch lands completely or not at all.

    Takes run before releases. Only a take can fail, so a rollback only ever
    returns units and never pushes stock below zero.
    """
    applied = []
    updated_products = []
    for directive in sorted(directives, key=lambda d: d.stock_delta >= 0):
        updated = await _increment(db, directive)
        if updated is None and directive.stock_delta >= 0:
            # returning units to a product that no longer exists
            logger.warning("stock_release_for_missing_product", product_id=directive.product_id)
            continue
        if updated is None:
            for done in reversed(applied):
                await db["product"].update_one(
                    {"_id": to_object_id(done.product_id)},
                    {"$inc": {"stock": -done.stock_delta, "sales_count": -done.sales_count_delta}},
                )
            current = await db["product"].find_one({"_id": to_object_id(directive.product_id)}) or {}
            available = int(current.get("stock", 0))
            logger.warning(
                "stock_directive_rejected",
                product_id=directive.product_id,
                stock_delta=directive.stock_delta,
                available=available,
                rolled_back=len(applied),
            )
            raise InsufficientStock(
                product_id=directive.product_id,
                product_name=current.get("title"),
                available=available,
                max_quantity=available,
            )
        applied.append(directive)
        updated_products.append(updated)
    if applied:
        logger.info("stock_directives_applied", count=len(applied))
    return updated_products

# Orders

async def generate_order_number(db: AsyncIOMotorDatabase, now: Optional[datetime] = None) -> str:
    """NV + yymmdd + three digit sequence of the day's orders."""
    now = now or datetime.utcnow()
    day_start = datetime(now.year, now.month, now.day)
    day_end = day_start + timedelta(days=1)
    count = await db["order"].count_documents({"created_at": {"$gte": day_start, "$lt": day_end}})
    return f"NV{now:%y%m%d}{count + 1:03d}"
