"""
Stock reconciliation.

The reconciler never touches the database. It turns "this line used to hold N
units and should now hold M" into a StockDirective; database.apply_stock_directives
applies directives with an atomic conditional increment.
"""

from __future__ import annotations
from typing import Any, Iterable, Mapping, NamedTuple, Optional

from errors import InsufficientStock, InvalidQuantity
from schemas import ColorVariant, StockDirective

INSUFFICIENT_STOCK = "InsufficientStock"


class Reconciliation(NamedTuple):
    delta: int
    accepted: bool
    reason: Optional[str] = None
    directive: Optional[StockDirective] = None


class LineChange(NamedTuple):
    product_id: str
    variant_key: Optional[str]
    previous_quantity: int
    new_quantity: int
    product_name: Optional[str] = None


def variant_key(variant: Any) -> Optional[str]:
    """Identity of a colour variant: its hex code, else its name."""
    if variant is None:
        return None
    if isinstance(variant, ColorVariant):
        return variant.key
    if isinstance(variant, Mapping):
        hex_code = variant.get("hex")
        if hex_code:
            return str(hex_code).lower()
        name = variant.get("name")
        return str(name) if name else None
    return str(variant).lower() if str(variant).startswith("#") else str(variant)


def _quantity(value: Any, product_id: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        raise InvalidQuantity(value, product_id)
    return value


def reconcile(
    product_id: str,
    variant_key: Optional[str],
    previous_quantity: int,
    new_quantity: int,
    current_stock: int,
) -> Reconciliation:
    previous_quantity = _quantity(previous_quantity, product_id)
    new_quantity = _quantity(new_quantity, product_id)
    delta = new_quantity - previous_quantity
    if delta > 0 and current_stock < delta:
        return Reconciliation(delta, False, INSUFFICIENT_STOCK)
    if delta == 0:
        return Reconciliation(0, True)
    return Reconciliation(delta, True, None, StockDirective(
        product_id=product_id,
        stock_delta=-delta,
        sales_count_delta=delta,
    ))


def reconcile_batch(changes: Iterable[LineChange], stock_by_product: Mapping[str, int]) -> list[StockDirective]:
    """Reconcile every line of a bulk update before anything is applied.

    Lines for the same product (different variants) share that product's
    stock, so each accepted line lowers what the next one can take. The first
    line that cannot be satisfied raises InsufficientStock and no directive is
    returned for any line.
    """
    changes = list(changes)
    for change in changes:
        _quantity(change.previous_quantity, change.product_id)
        _quantity(change.new_quantity, change.product_id)
    remaining = dict(stock_by_product)
    directives: list[StockDirective] = []
    # releases first so a variant swap within one product is not refused
    ordered = sorted(changes, key=lambda c: c.new_quantity - c.previous_quantity)
    for change in ordered:
        stock = remaining.get(change.product_id, 0)
        result = reconcile(
            change.product_id,
            change.variant_key,
            change.previous_quantity,
            change.new_quantity,
            stock,
        )
        if not result.accepted:
            raise InsufficientStock(
                change.product_id,
                available=stock,
                max_quantity=change.previous_quantity + stock,
                product_name=change.product_name,
            )
        if result.directive is not None:
            remaining[change.product_id] = stock + result.directive.stock_delta
            directives.append(result.directive)
    return directives


def merge_directives(directives: Iterable[StockDirective]) -> list[StockDirective]:
    """Collapse directives per product, dropping those that net to zero."""
    totals: dict[str, list[int]] = {}
    for d in directives:
        acc = totals.setdefault(d.product_id, [0, 0])
        acc[0] += d.stock_delta
        acc[1] += d.sales_count_delta
    return [
        StockDirective(product_id=pid, stock_delta=s, sales_count_delta=c)
        for pid, (s, c) in totals.items()
        if s or c
    ]
