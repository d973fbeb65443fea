"""
Cart mutations.

Every mutation follows the same order: read the cart and the products,
reconcile stock for the changed lines, apply the resulting directives, then
store the cart. Units in a cart are held against product stock, so adding
to the cart takes stock and removing gives it back.
"""

from __future__ import annotations
from typing import Any, Optional
from datetime import datetime
from motor.motor_asyncio import AsyncIOMotorDatabase
import structlog

from database import active_tag_discounts, apply_stock_directives, find_products, serialize
from errors import InsufficientStock, NotFound, ProductUnavailable
from events import ADMIN, Publisher, safe_publish, user_room
from inventory import LineChange, merge_directives, reconcile, reconcile_batch, variant_key
from pricing import active_tag_map, check_quantity, first_image, resolve_price
from schemas import CartItemIn, CartLine, ColorVariant, LineRequest, StockDirective

logger = structlog.get_logger(__name__)

LineKey = tuple[str, Optional[str]]


def line_key(line: dict[str, Any]) -> LineKey:
    return (str(line["product_id"]), variant_key(line.get("color_variant")))


def reservations(items: list[dict[str, Any]]) -> dict[LineKey, int]:
    """Units held by each cart line, keyed by (product_id, variant_key)."""
    return {line_key(i): int(i["quantity"]) for i in items}


def find_line(items: list[dict[str, Any]], product_id: str, variant: Optional[str]) -> Optional[dict[str, Any]]:
    """The cart line for a product and a variant given by hex code or by name."""
    key = (product_id, variant_key(variant))
    line = next((i for i in items if line_key(i) == key), None)
    if line is None and variant:
        name = str(variant).strip().lower()
        line = next((
            i for i in items
            if str(i["product_id"]) == product_id
            and str((i.get("color_variant") or {}).get("name", "")).lower() == name
        ), None)
    return line


async def get_cart(db: AsyncIOMotorDatabase, email: str) -> list[dict[str, Any]]:
    doc = await db["cart"].find_one({"email": email.lower()})
    return list(doc.get("items", [])) if doc else []


async def save_cart(db: AsyncIOMotorDatabase, email: str, items: list[dict[str, Any]]) -> None:
    now = datetime.utcnow()
    await db["cart"].update_one(
        {"email": email.lower()},
        {"$set": {"items": items, "updated_at": now}, "$setOnInsert": {"created_at": now}},
        upsert=True,
    )


async def _commit(
    db: AsyncIOMotorDatabase,
    publisher: Publisher,
    email: str,
    items: list[dict[str, Any]],
    directives: list[StockDirective],
) -> list[dict[str, Any]]:
    updated = await apply_stock_directives(db, directives)
    try:
        await save_cart(db, email, items)
    except Exception:
        await apply_stock_directives(db, [
            StockDirective(product_id=d.product_id, stock_delta=-d.stock_delta, sales_count_delta=-d.sales_count_delta)
            for d in directives
        ])
        raise
    await safe_publish(publisher, user_room(email), "cart-changed", {"items": items})
    for product in updated:
        await safe_publish(publisher, ADMIN, "product-changed", {"action": "updated", "product": serialize(product)})
    return items


def _snapshot(product: dict[str, Any], tags: dict[str, float], quantity: int,
              variant: Optional[ColorVariant]) -> dict[str, Any]:
    resolved = resolve_price(product, tags)
    return CartLine(
        product_id=str(product["_id"]),
        name=product.get("title") or product.get("name") or "Product",
        price=product["price"],
        discount=resolved.applied_discount_percent,
        image=first_image(product) or None,
        quantity=quantity,
        color_variant=variant,
    ).model_dump()


async def add_item(db: AsyncIOMotorDatabase, publisher: Publisher, email: str, item: CartItemIn) -> list[dict[str, Any]]:
    """Add units of a product; an existing line for the same variant grows instead."""
    check_quantity(item.quantity, item.product_id)
    products = await find_products(db, [item.product_id])
    product = products.get(item.product_id)
    if product is None or not product.get("published", True):
        raise ProductUnavailable(item.product_id, product.get("title") if product else None)

    items = await get_cart(db, email)
    key = (item.product_id, variant_key(item.color_variant))
    existing = next((i for i in items if line_key(i) == key), None)
    previous = int(existing["quantity"]) if existing else 0
    stock = int(product.get("stock", 0))

    result = reconcile(item.product_id, key[1], previous, previous + item.quantity, stock)
    if not result.accepted:
        raise InsufficientStock(item.product_id, available=stock, max_quantity=previous + stock,
                                product_name=product.get("title"))

    if existing:
        existing["quantity"] = previous + item.quantity
    else:
        tags = active_tag_map(await active_tag_discounts(db))
        items.append(_snapshot(product, tags, item.quantity, item.color_variant))
    logger.info("cart_item_added", email=email, product_id=item.product_id, variant=key[1], delta=result.delta)
    return await _commit(db, publisher, email, items, [result.directive])


async def update_item(db: AsyncIOMotorDatabase, publisher: Publisher, email: str, product_id: str,
                      variant: Optional[str], quantity: int) -> list[dict[str, Any]]:
    """Set a line's quantity. Zero removes the line."""
    check_quantity(quantity, product_id, minimum=0)
    if quantity == 0:
        return await remove_item(db, publisher, email, product_id, variant)

    items = await get_cart(db, email)
    line = find_line(items, product_id, variant)
    if line is None:
        raise NotFound("item not in cart", product_id)
    key = line_key(line)
    products = await find_products(db, [product_id])
    product = products.get(product_id)
    previous = int(line["quantity"])
    if product is None or (quantity > previous and not product.get("published", True)):
        raise ProductUnavailable(product_id, product.get("title") if product else line.get("name"))

    stock = int(product.get("stock", 0))
    result = reconcile(product_id, key[1], previous, quantity, stock)
    if not result.accepted:
        raise InsufficientStock(product_id, available=stock, max_quantity=previous + stock,
                                product_name=product.get("title"))
    line["quantity"] = quantity
    directives = [result.directive] if result.directive else []
    logger.info("cart_item_updated", email=email, product_id=product_id, variant=key[1], delta=result.delta)
    return await _commit(db, publisher, email, items, directives)


async def remove_item(db: AsyncIOMotorDatabase, publisher: Publisher, email: str, product_id: str,
                      variant: Optional[str]) -> list[dict[str, Any]]:
    items = await get_cart(db, email)
    line = find_line(items, product_id, variant)
    if line is None:
        return items
    key = line_key(line)
    kept = [i for i in items if line_key(i) != key]

    directives = []
    products = await find_products(db, [product_id])
    if product_id in products:
        result = reconcile(product_id, key[1], int(line["quantity"]), 0, int(products[product_id].get("stock", 0)))
        directives = [result.directive] if result.directive else []
    logger.info("cart_item_removed", email=email, product_id=product_id, variant=key[1])
    return await _commit(db, publisher, email, kept, directives)


def _merge_requests(requests: list[LineRequest]) -> dict[LineKey, tuple[int, Optional[ColorVariant]]]:
    merged: dict[LineKey, tuple[int, Optional[ColorVariant]]] = {}
    for r in requests:
        check_quantity(r.quantity, r.product_id)
        key = (r.product_id, variant_key(r.color_variant))
        held = merged.get(key, (0, r.color_variant))[0]
        merged[key] = (held + r.quantity, r.color_variant)
    return merged


async def replace_cart(db: AsyncIOMotorDatabase, publisher: Publisher, email: str,
                       requests: list[LineRequest]) -> list[dict[str, Any]]:
    """Replace the whole cart. Either every line's stock change lands or none does.

    Lines present before and absent from `requests` are removed and their units
    released. Duplicate keys in `requests` are merged by adding quantities.
    """
    wanted = _merge_requests(requests)
    current = {line_key(i): i for i in await get_cart(db, email)}
    products = await find_products(db, list({pid for pid, _ in [*wanted, *current]}))

    changes: list[LineChange] = []
    for (pid, vkey), (quantity, _) in wanted.items():
        product = products.get(pid)
        previous = int(current[(pid, vkey)]["quantity"]) if (pid, vkey) in current else 0
        if product is None or (quantity > previous and not product.get("published", True)):
            raise ProductUnavailable(pid, product.get("title") if product else None)
        changes.append(LineChange(pid, vkey, previous, quantity, product.get("title")))
    for (pid, vkey), line in current.items():
        if (pid, vkey) not in wanted and pid in products:
            changes.append(LineChange(pid, vkey, int(line["quantity"]), 0, products[pid].get("title")))

    stock = {pid: int(doc.get("stock", 0)) for pid, doc in products.items()}
    directives = merge_directives(reconcile_batch(changes, stock))

    tags: Optional[dict[str, float]] = None
    items = []
    for (pid, vkey), (quantity, variant) in wanted.items():
        if (pid, vkey) in current:
            items.append({**current[(pid, vkey)], "quantity": quantity})
            continue
        if tags is None:
            tags = active_tag_map(await active_tag_discounts(db))
        items.append(_snapshot(products[pid], tags, quantity, variant))

    logger.info("cart_replaced", email=email, lines=len(items), directives=len(directives))
    return await _commit(db, publisher, email, items, directives)
