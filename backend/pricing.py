"""
Price resolution, line aggregation and order totals.

Everything here is pure: product documents and tag discounts go in, integer
amounts and frozen line snapshots come out. A base price may carry a
fraction; effective prices and totals are rounded half-up to whole pricing
units (rupees for INR). `to_minor_units` converts a total for the gateway.
"""

from __future__ import annotations
from decimal import Decimal, ROUND_HALF_UP
from numbers import Real
from typing import Any, Iterable, Mapping, NamedTuple, Optional

from errors import InsufficientStock, InvalidProductState, InvalidQuantity, ProductUnavailable
from inventory import variant_key
from schemas import ColorVariant, OrderLine


class ResolvedPrice(NamedTuple):
    effective_price: int
    applied_discount_percent: float


class Aggregate(NamedTuple):
    order_lines: list[OrderLine]
    subtotal: int
    total_discount: int


class Totals(NamedTuple):
    subtotal: int
    shipping: int
    tax: int
    discount: int
    total: int


def round_half_up(value: Decimal) -> int:
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def _decimal(value: Any) -> Decimal:
    # str() keeps 0.1 as 0.1 instead of its binary expansion
    return Decimal(str(value))


def _is_number(value: Any) -> bool:
    return isinstance(value, Real) and not isinstance(value, bool)


def active_tag_map(tag_discounts: Iterable[Mapping[str, Any]]) -> dict[str, float]:
    """Build `{tag: percent}` from TagDiscount documents, skipping inactive ones."""
    out: dict[str, float] = {}
    for d in tag_discounts:
        if not d.get("active", True):
            continue
        tag = str(d.get("tag", "")).strip().lower()
        percent = d.get("percent")
        if tag and _is_number(percent):
            out[tag] = max(out.get(tag, 0), percent)
    return out


def resolve_price(product: Mapping[str, Any], active_tag_discounts: Mapping[str, float]) -> ResolvedPrice:
    """Effective unit price after the larger of the product and tag discounts.

    Discounts never stack: `max(product discount, best matching tag discount)`.
    """
    price = product.get("price")
    if not _is_number(price) or price < 0:
        raise InvalidProductState(f"Product {product.get('_id')} has invalid price {price!r}", _pid(product))

    own = product.get("discount")
    if own is None:
        own = 0
    if not _is_number(own) or not 0 <= own <= 100:
        raise InvalidProductState(f"Product {product.get('_id')} has invalid discount {own!r}", _pid(product))

    tag_discount = 0
    for tag in product.get("tags") or []:
        pct = active_tag_discounts.get(str(tag).lower())
        if pct is not None:
            tag_discount = max(tag_discount, pct)

    applied = max(own, tag_discount)
    effective = round_half_up(_decimal(price) * (100 - _decimal(applied)) / 100)
    return ResolvedPrice(effective, applied)


def _pid(product: Mapping[str, Any]) -> Optional[str]:
    pid = product.get("_id")
    return str(pid) if pid is not None else None


def first_image(product: Mapping[str, Any]) -> str:
    images = product.get("images") or []
    if not images:
        return ""
    first = images[0]
    if isinstance(first, str):
        return first
    return first.get("url", "") if isinstance(first, Mapping) else ""


def check_quantity(quantity: Any, product_id: Optional[str] = None, minimum: int = 1) -> int:
    if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity < minimum:
        raise InvalidQuantity(quantity, product_id)
    return quantity


def aggregate(
    lines: Iterable[tuple[Optional[Mapping[str, Any]], Any, Optional[ColorVariant]]],
    active_tag_discounts: Mapping[str, float],
    reserved: Optional[Mapping[tuple[str, Optional[str]], int]] = None,
    requested_ids: Optional[list[str]] = None,
) -> Aggregate:
    """Validate (product, quantity, variant) lines and total them up.

    `reserved` maps `(product_id, variant_key)` to units this user already holds
    in their cart; those count as available for the same line. A missing
    product document is reported through `requested_ids` (same order as lines).
    """
    reserved = reserved or {}
    subtotal = 0
    total_discount = 0
    order_lines: list[OrderLine] = []

    for i, (product, quantity, variant) in enumerate(lines):
        if product is None:
            missing = requested_ids[i] if requested_ids else "unknown"
            raise ProductUnavailable(missing)
        pid = _pid(product)
        name = product.get("title") or product.get("name")
        check_quantity(quantity, pid)
        if not product.get("published", True):
            raise ProductUnavailable(pid, name)

        held = reserved.get((pid, variant_key(variant)), 0)
        stock = product.get("stock", 0)
        if _is_number(stock) and quantity > stock + held:
            raise InsufficientStock(pid, available=int(stock), max_quantity=int(stock) + held, product_name=name)

        resolved = resolve_price(product, active_tag_discounts)
        line_total = resolved.effective_price * quantity
        original_line_total = round_half_up(_decimal(product["price"]) * quantity)
        subtotal += line_total
        total_discount += max(0, original_line_total - line_total)

        order_lines.append(OrderLine(
            product_id=pid,
            name=name or "Product",
            image=first_image(product),
            price=resolved.effective_price,
            original_price=product["price"],
            discount=resolved.applied_discount_percent,
            quantity=quantity,
            sku=product.get("sku"),
            color_variant=variant,
        ))

    return Aggregate(order_lines, subtotal, int(total_discount))


def order_totals(subtotal: int, total_discount: int, shipping_cost: int, gst_percent: float) -> Totals:
    tax = round_half_up((_decimal(subtotal) + _decimal(shipping_cost)) * _decimal(gst_percent) / 100)
    total = subtotal + shipping_cost + tax - total_discount
    return Totals(subtotal, shipping_cost, tax, total_discount, total)


def to_minor_units(amount: int, subunits: int = 100) -> int:
    """Gateway representation of an amount: an integer count of minor units."""
    return round_half_up(_decimal(amount) * subunits)
