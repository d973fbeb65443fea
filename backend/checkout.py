"""
Checkout and order lifecycle.

An order takes its stock when it is placed. Units the customer already held
in the cart move over to the order, so only the difference touches the
product. A failed payment or a cancellation gives the units back; an order's
line snapshots are never recomputed after creation.
"""

from __future__ import annotations
from typing import Any, NamedTuple, Optional
from datetime import datetime
from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ReturnDocument
import structlog

from cart import get_cart, line_key, reservations, save_cart
from database import (
    active_tag_discounts,
    apply_stock_directives,
    create_document,
    find_products,
    find_shipping_method,
    generate_order_number,
    get_documents,
    serialize,
    settings,
    to_object_id,
    update_document,
)
from errors import InvalidTransition, NotFound, PaymentGatewayError, StoreError
from events import ADMIN, Publisher, safe_publish, user_room
from inventory import LineChange, merge_directives, reconcile_batch, variant_key
from payments import PaymentGateway
from pricing import Totals, active_tag_map, aggregate, order_totals, to_minor_units
from schemas import CheckoutRequest, Order, OrderLine, ShippingChoice, StatusUpdateIn, StockDirective

logger = structlog.get_logger(__name__)

ORDER_TRANSITIONS: dict[str, set[str]] = {
    "pending": {"processing", "cancelled"},
    "processing": {"shipped", "cancelled"},
    "shipped": {"delivered"},
    "delivered": set(),
    "cancelled": set(),
    "refunded": set(),
}


class Quote(NamedTuple):
    lines: list[OrderLine]
    totals: Totals
    shipping: ShippingChoice
    products: dict[str, dict[str, Any]]


async def shipping_terms(db: AsyncIOMotorDatabase, name: Optional[str]) -> tuple[str, int, float, int]:
    """(name, cost, gst percent, estimated days) for an active shipping method, else the defaults."""
    name = name or settings.DEFAULT_SHIPPING_METHOD
    cost = settings.DEFAULT_SHIPPING_COST
    gst = settings.DEFAULT_GST_PERCENT
    days = settings.DEFAULT_ESTIMATED_DAYS
    doc = await find_shipping_method(db, name)
    if doc:
        if doc.get("cost") is not None:
            cost = int(doc["cost"])
        if doc.get("gst_percent") is not None:
            gst = doc["gst_percent"]
        estimated = doc.get("estimated_days")
        if isinstance(estimated, dict) and estimated.get("max"):
            days = int(estimated["max"])
        elif isinstance(estimated, int):
            days = estimated
    return name, cost, gst, days


async def quote(db: AsyncIOMotorDatabase, request: CheckoutRequest,
                reserved: Optional[dict[tuple[str, Optional[str]], int]] = None) -> Quote:
    ids = [item.product_id for item in request.items]
    products = await find_products(db, ids)
    tags = active_tag_map(await active_tag_discounts(db))
    if reserved is None:
        reserved = reservations(await get_cart(db, request.email))
    agg = aggregate(
        [(products.get(item.product_id), item.quantity, item.color_variant) for item in request.items],
        tags,
        reserved=reserved,
        requested_ids=ids,
    )
    name, cost, gst, days = await shipping_terms(db, request.shipping_method)
    totals = order_totals(agg.subtotal, agg.total_discount, cost, gst)
    return Quote(agg.order_lines, totals, ShippingChoice(name=name, estimated_days=days), products)


def _timeline(status: str, message: str) -> dict[str, Any]:
    return {"status": status, "message": message, "timestamp": datetime.utcnow()}


def _reverse(directives: list[StockDirective]) -> list[StockDirective]:
    return [
        StockDirective(product_id=d.product_id, stock_delta=-d.stock_delta, sales_count_delta=-d.sales_count_delta)
        for d in directives
    ]


async def place_order(db: AsyncIOMotorDatabase, gateway: PaymentGateway, publisher: Publisher,
                      request: CheckoutRequest) -> dict[str, Any]:
    if request.shipping_address is None:
        raise StoreError("Shipping address is required")

    cart_items = await get_cart(db, request.email)
    held = reservations(cart_items)
    q = await quote(db, request, reserved=held)

    # each cart reservation is used by one order line at most
    available_held = dict(held)
    changes = []
    for line in q.lines:
        key = (line.product_id, variant_key(line.color_variant))
        previous = available_held.pop(key, 0)
        changes.append(LineChange(line.product_id, key[1], previous, line.quantity, line.name))
    stock = {pid: int(doc.get("stock", 0)) for pid, doc in q.products.items()}
    directives = merge_directives(reconcile_batch(changes, stock))
    await apply_stock_directives(db, directives)

    try:
        order_number = await generate_order_number(db)
        order = Order(
            order_number=order_number,
            user_email=request.email.lower(),
            items=q.lines,
            subtotal=q.totals.subtotal,
            tax=q.totals.tax,
            shipping=q.totals.shipping,
            discount=q.totals.discount,
            total=q.totals.total,
            currency=settings.CURRENCY,
            shipping_address=request.shipping_address,
            billing_address=request.billing_address or request.shipping_address,
            shipping_method=q.shipping,
        )
        doc = await create_document(db, "order", {
            **order.model_dump(),
            "timeline": [_timeline("pending", "Order placed, awaiting payment")],
            "stock_committed": True,
        })
    except Exception:
        await apply_stock_directives(db, _reverse(directives))
        raise

    amount = to_minor_units(q.totals.total, settings.CURRENCY_SUBUNITS)
    try:
        gateway_order = await gateway.create_order(amount, settings.CURRENCY, str(doc["_id"]), {
            "orderId": str(doc["_id"]),
            "email": request.email.lower(),
            "paymentMethod": request.payment_method,
        })
    except PaymentGatewayError:
        await apply_stock_directives(db, _reverse(directives))
        await db["order"].update_one({"_id": doc["_id"]}, {
            "$set": {"status": "cancelled", "payment_status": "failed", "stock_committed": False,
                     "cancelled_at": datetime.utcnow()},
            "$push": {"timeline": _timeline("cancelled", "Payment gateway unavailable")},
        })
        raise

    doc = await update_document(db, "order", doc["_id"], {"gateway_order_id": gateway_order["id"]})

    ordered = {(line.product_id, variant_key(line.color_variant)) for line in q.lines}
    remaining = [i for i in cart_items if line_key(i) not in ordered]
    await save_cart(db, request.email, remaining)

    logger.info("order_placed", order_id=str(doc["_id"]), order_number=order_number, total=q.totals.total,
                lines=len(q.lines), from_cart=sum(1 for c in changes if c.previous_quantity))
    await safe_publish(publisher, ADMIN, "order-changed", {"action": "created", "order": serialize(doc)})
    await safe_publish(publisher, user_room(request.email), "cart-changed", {"items": remaining})
    return {
        "order_id": str(doc["_id"]),
        "order_number": order_number,
        "gateway_order_id": gateway_order["id"],
        "amount": amount,
        "currency": settings.CURRENCY,
        "key": gateway.key_id,
        "totals": q.totals._asdict(),
    }


async def _claim_stock_flag(db: AsyncIOMotorDatabase, order_id: Any, held: bool) -> Optional[dict[str, Any]]:
    """Flip `stock_committed` to `not held` if it is currently `held`.

    Exactly one caller wins the flip; the loser gets None and must not touch stock.
    """
    current = True if held else {"$ne": True}
    return await db["order"].find_one_and_update(
        {"_id": order_id, "stock_committed": current},
        {"$set": {"stock_committed": not held}},
    )


async def _release_stock(db: AsyncIOMotorDatabase, order: dict[str, Any]) -> bool:
    """Give an order's units back. Returns False when they were already given back."""
    claimed = await _claim_stock_flag(db, order["_id"], held=True)
    if claimed is None:
        return False
    changes = [LineChange(i["product_id"], variant_key(i.get("color_variant")), int(i["quantity"]), 0)
               for i in claimed["items"]]
    try:
        await apply_stock_directives(db, merge_directives(reconcile_batch(changes, {})))
    except Exception:
        await db["order"].update_one({"_id": order["_id"]}, {"$set": {"stock_committed": True}})
        raise
    return True


async def _commit_stock(db: AsyncIOMotorDatabase, order: dict[str, Any]) -> bool:
    """Take stock for an order that holds none: a fresh decrement per line."""
    claimed = await _claim_stock_flag(db, order["_id"], held=False)
    if claimed is None:
        return False
    try:
        products = await find_products(db, [i["product_id"] for i in claimed["items"]])
        stock = {pid: int(doc.get("stock", 0)) for pid, doc in products.items()}
        changes = [LineChange(i["product_id"], variant_key(i.get("color_variant")), 0, int(i["quantity"]), i.get("name"))
                   for i in claimed["items"]]
        await apply_stock_directives(db, merge_directives(reconcile_batch(changes, stock)))
    except Exception:
        await db["order"].update_one({"_id": order["_id"]}, {"$set": {"stock_committed": False}})
        raise
    return True


async def _on_payment_captured(db: AsyncIOMotorDatabase, publisher: Publisher, payment: dict[str, Any]) -> str:
    order_id = (payment.get("notes") or {}).get("orderId")
    order = await db["order"].find_one({"_id": to_object_id(order_id)}) if order_id else None
    if order is None:
        logger.error("payment_for_unknown_order", order_id=order_id, payment_id=payment.get("id"))
        return "ignored"
    if order.get("payment_status") == "paid":
        return "duplicate"

    message = "Payment received and order is being processed"
    try:
        await _commit_stock(db, order)
    except StoreError as e:
        logger.error("captured_payment_without_stock", order_id=order_id, error=e.message)
        message = f"Payment received but stock could not be reserved: {e.message}"

    updated = await db["order"].find_one_and_update(
        {"_id": order["_id"]},
        {
            "$set": {
                "payment_status": "paid",
                "status": "processing",
                "gateway_payment_id": payment.get("id"),
                "gateway_order_id": payment.get("order_id") or order.get("gateway_order_id"),
                "updated_at": datetime.utcnow(),
            },
            "$push": {"timeline": _timeline("processing", message)},
        },
        return_document=ReturnDocument.AFTER,
    )
    logger.info("payment_captured", order_id=order_id, payment_id=payment.get("id"))
    await safe_publish(publisher, ADMIN, "order-changed", {"action": "updated", "order": serialize(updated)})
    await safe_publish(publisher, user_room(order["user_email"]), "order-confirmed", {"order": serialize(updated)})
    return "processed"


async def _on_payment_failed(db: AsyncIOMotorDatabase, publisher: Publisher, payment: dict[str, Any]) -> str:
    order_id = (payment.get("notes") or {}).get("orderId")
    order = await db["order"].find_one({"_id": to_object_id(order_id)}) if order_id else None
    if order is None:
        logger.error("payment_for_unknown_order", order_id=order_id, payment_id=payment.get("id"))
        return "ignored"
    if order.get("payment_status") == "paid":
        logger.warning("payment_failed_after_capture", order_id=order_id)
        return "ignored"

    await _release_stock(db, order)
    reason = payment.get("error_description") or "Unknown error"
    updated = await db["order"].find_one_and_update(
        {"_id": order["_id"]},
        {
            "$set": {
                "payment_status": "failed",
                "status": "cancelled",
                "gateway_payment_id": payment.get("id"),
                "cancelled_at": datetime.utcnow(),
                "updated_at": datetime.utcnow(),
            },
            "$push": {"timeline": _timeline("cancelled", f"Payment failed: {reason}")},
        },
        return_document=ReturnDocument.AFTER,
    )
    logger.info("payment_failed", order_id=order_id, reason=reason)
    await safe_publish(publisher, ADMIN, "order-changed", {"action": "updated", "order": serialize(updated)})
    return "processed"


async def _on_refund_created(db: AsyncIOMotorDatabase, publisher: Publisher, refund: dict[str, Any]) -> str:
    order = await db["order"].find_one({"gateway_payment_id": refund.get("payment_id")})
    if order is None:
        logger.warning("refund_for_unknown_payment", payment_id=refund.get("payment_id"))
        return "ignored"
    amount = (refund.get("amount") or 0) / settings.CURRENCY_SUBUNITS
    updated = await db["order"].find_one_and_update(
        {"_id": order["_id"]},
        {
            "$set": {
                "payment_status": "refunded",
                "status": "refunded",
                "refund_amount": amount,
                "refund_reason": (refund.get("notes") or {}).get("reason") or "Customer request",
                "updated_at": datetime.utcnow(),
            },
            "$push": {"timeline": _timeline("refunded", f"Refund processed for {amount:g} {order.get('currency', settings.CURRENCY)}")},
        },
        return_document=ReturnDocument.AFTER,
    )
    logger.info("refund_recorded", order_id=str(order["_id"]), amount=amount)
    await safe_publish(publisher, ADMIN, "order-changed", {"action": "updated", "order": serialize(updated)})
    return "processed"


async def handle_payment_event(db: AsyncIOMotorDatabase, publisher: Publisher, event: dict[str, Any]) -> str:
    """Dispatch a gateway webhook event. Returns processed / duplicate / ignored."""
    name = event.get("event")
    payload = event.get("payload") or {}

    def entity(kind: str) -> dict[str, Any]:
        return (payload.get(kind) or {}).get("entity") or {}

    match name:
        case "payment.captured":
            return await _on_payment_captured(db, publisher, entity("payment"))
        case "payment.failed":
            return await _on_payment_failed(db, publisher, entity("payment"))
        case "order.paid":
            logger.info("gateway_order_paid", order_id=(entity("order").get("notes") or {}).get("orderId"))
            return "ignored"
        case "refund.created":
            return await _on_refund_created(db, publisher, entity("refund"))
        case _:
            logger.info("unhandled_payment_event", event=name)
            return "ignored"


async def get_order(db: AsyncIOMotorDatabase, order_id: str) -> dict[str, Any]:
    oid = to_object_id(order_id)
    order = await db["order"].find_one({"_id": oid}) if oid else None
    if order is None:
        raise NotFound("Order not found")
    return order


async def update_status(db: AsyncIOMotorDatabase, publisher: Publisher, order_id: str,
                        update: StatusUpdateIn) -> dict[str, Any]:
    order = await get_order(db, order_id)
    current = order.get("status", "pending")
    if update.status not in ORDER_TRANSITIONS.get(current, set()):
        raise InvalidTransition(f"Cannot move order from {current} to {update.status}")

    changes: dict[str, Any] = {"status": update.status}
    if update.status == "shipped":
        changes["shipping_method.tracking_number"] = update.tracking_number
        changes["shipping_method.tracking_url"] = update.tracking_url
    elif update.status == "delivered":
        changes["delivered_at"] = datetime.utcnow()
    elif update.status == "cancelled":
        changes["cancelled_at"] = datetime.utcnow()

    message = update.message or f"Order {update.status}"
    updated = await db["order"].find_one_and_update(
        {"_id": order["_id"], "status": current},
        {"$set": {**changes, "updated_at": datetime.utcnow()}, "$push": {"timeline": _timeline(update.status, message)}},
        return_document=ReturnDocument.AFTER,
    )
    if updated is None:
        raise InvalidTransition("Order changed while updating, retry")
    if update.status == "cancelled" and await _release_stock(db, updated):
        updated["stock_committed"] = False
    logger.info("order_status_updated", order_id=order_id, old=current, new=update.status)
    await safe_publish(publisher, ADMIN, "order-changed", {"action": "updated", "order": serialize(updated)})
    await safe_publish(publisher, user_room(updated["user_email"]), "order-changed", {"order": serialize(updated)})
    return updated


async def list_orders(db: AsyncIOMotorDatabase, status: Optional[str] = None, payment_status: Optional[str] = None,
                      page: int = 1, limit: int = 20) -> dict[str, Any]:
    query: dict[str, Any] = {}
    if status:
        query["status"] = status
    if payment_status:
        query["payment_status"] = payment_status
    total = await db["order"].count_documents(query)
    orders = await get_documents(db, "order", query, limit=limit, skip=(page - 1) * limit, sort=[("created_at", -1)])
    total_pages = (total + limit - 1) // limit
    return {
        "orders": [serialize(o) for o in orders],
        "pagination": {
            "page": page,
            "limit": limit,
            "total": total,
            "total_pages": total_pages,
            "has_next_page": page < total_pages,
            "has_prev_page": page > 1,
        },
    }


async def orders_for_user(db: AsyncIOMotorDatabase, email: str) -> list[dict[str, Any]]:
    orders = await get_documents(db, "order", {"user_email": email.lower()}, limit=200, sort=[("created_at", -1)])
    return [serialize(o) for o in orders]
