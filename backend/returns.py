"""
Return requests against paid orders.

A customer asks to send back some units of an order; an admin moves the
request through its statuses. Completing a return puts the units back into
stock exactly once.
"""

from __future__ import annotations
from typing import Any, Optional
from datetime import datetime, timedelta
from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ReturnDocument
import structlog

from checkout import get_order
from database import apply_stock_directives, create_document, get_documents, serialize, settings, to_object_id
from errors import Forbidden, InvalidTransition, NotFound, StoreError
from events import ADMIN, Publisher, safe_publish, user_room
from inventory import LineChange, merge_directives, reconcile_batch
from schemas import ReturnRequestIn, ReturnUpdateIn

logger = structlog.get_logger(__name__)

RETURN_TRANSITIONS: dict[str, set[str]] = {
    "pending": {"approved", "rejected"},
    "approved": {"processing", "completed", "rejected"},
    "processing": {"completed"},
    "rejected": set(),
    "completed": set(),
}

RETURN_INSTRUCTIONS = (
    "Please package the items securely and send them to our return address. "
    "Include the return slip with your package."
)


async def get_return(db: AsyncIOMotorDatabase, return_id: str) -> dict[str, Any]:
    oid = to_object_id(return_id)
    doc = await db["return"].find_one({"_id": oid}) if oid else None
    if doc is None:
        raise NotFound("Return request not found")
    return doc


async def list_returns(db: AsyncIOMotorDatabase, email: Optional[str] = None,
                       status: Optional[str] = None) -> list[dict[str, Any]]:
    query: dict[str, Any] = {}
    if email:
        query["user_email"] = email.lower()
    if status:
        query["status"] = status
    docs = await get_documents(db, "return", query, limit=200, sort=[("created_at", -1)])
    return [serialize(d) for d in docs]


async def create_return(db: AsyncIOMotorDatabase, publisher: Publisher, request: ReturnRequestIn,
                        now: Optional[datetime] = None) -> dict[str, Any]:
    order = await get_order(db, request.order_id)
    email = request.email.lower()
    if order.get("user_email") != email:
        raise Forbidden("Order belongs to another customer")
    if order.get("payment_status") != "paid" or order.get("status") in ("cancelled", "refunded"):
        raise StoreError("Only paid orders can be returned")
    now = now or datetime.utcnow()
    if order["created_at"] < now - timedelta(days=settings.RETURN_WINDOW_DAYS):
        raise StoreError(f"Order is not eligible for return (more than {settings.RETURN_WINDOW_DAYS} days old)")
    if await db["return"].find_one({"order_id": request.order_id}):
        raise StoreError("Return request already exists for this order")

    ordered: dict[str, int] = {}
    lines: dict[str, dict[str, Any]] = {}
    for line in order["items"]:
        ordered[line["product_id"]] = ordered.get(line["product_id"], 0) + int(line["quantity"])
        lines.setdefault(line["product_id"], line)
    requested: dict[str, int] = {}
    for item in request.items:
        if item.product_id not in ordered:
            raise StoreError("Invalid item for return", item.product_id)
        requested[item.product_id] = requested.get(item.product_id, 0) + item.quantity
        if requested[item.product_id] > ordered[item.product_id]:
            raise StoreError("Return quantity cannot exceed ordered quantity", item.product_id)

    items = [
        {
            "product_id": item.product_id,
            "name": lines[item.product_id]["name"],
            "price": lines[item.product_id]["price"],
            "quantity": item.quantity,
            "reason": item.reason,
            "description": item.description,
        }
        for item in request.items
    ]
    doc = await create_document(db, "return", {
        "order_id": request.order_id,
        "order_number": order.get("order_number"),
        "user_email": email,
        "items": items,
        "status": "pending",
        "return_reason": request.return_reason,
        "refund_amount": sum(i["price"] * i["quantity"] for i in items),
        "refund_method": request.refund_method,
        "admin_notes": "",
        "tracking_number": None,
        "return_instructions": RETURN_INSTRUCTIONS,
        "restocked": False,
    })
    logger.info("return_requested", return_id=str(doc["_id"]), order_id=request.order_id, lines=len(items))
    await safe_publish(publisher, ADMIN, "return-changed", {"action": "created", "return": serialize(doc)})
    return doc


async def _restock(db: AsyncIOMotorDatabase, return_id: Any) -> bool:
    claimed = await db["return"].find_one_and_update(
        {"_id": return_id, "restocked": {"$ne": True}},
        {"$set": {"restocked": True}},
    )
    if claimed is None:
        return False
    changes = [LineChange(i["product_id"], None, int(i["quantity"]), 0, i.get("name")) for i in claimed["items"]]
    try:
        await apply_stock_directives(db, merge_directives(reconcile_batch(changes, {})))
    except Exception:
        await db["return"].update_one({"_id": return_id}, {"$set": {"restocked": False}})
        raise
    return True


async def update_return(db: AsyncIOMotorDatabase, publisher: Publisher, return_id: str,
                        update: ReturnUpdateIn) -> dict[str, Any]:
    doc = await get_return(db, return_id)
    current = doc["status"]
    changes: dict[str, Any] = {}
    if update.status and update.status != current:
        if update.status not in RETURN_TRANSITIONS.get(current, set()):
            raise InvalidTransition(f"Cannot move return from {current} to {update.status}")
        changes["status"] = update.status
    if update.admin_notes is not None:
        changes["admin_notes"] = update.admin_notes
    if update.tracking_number is not None:
        changes["tracking_number"] = update.tracking_number

    updated = await db["return"].find_one_and_update(
        {"_id": doc["_id"], "status": current},
        {"$set": {**changes, "updated_at": datetime.utcnow()}},
        return_document=ReturnDocument.AFTER,
    )
    if updated is None:
        raise InvalidTransition("Return changed while updating, retry")
    if changes.get("status") == "completed" and await _restock(db, doc["_id"]):
        updated["restocked"] = True
        logger.info("return_restocked", return_id=return_id)

    logger.info("return_updated", return_id=return_id, old=current, new=updated["status"])
    payload = {"action": "updated", "return": serialize(updated)}
    await safe_publish(publisher, ADMIN, "return-changed", payload)
    await safe_publish(publisher, user_room(updated["user_email"]), "return-changed", payload)
    return updated
