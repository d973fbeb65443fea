"""Stock reconciliation: single lines and bulk updates."""
import pytest

from errors import InsufficientStock, InvalidQuantity
from inventory import LineChange, merge_directives, reconcile, reconcile_batch, variant_key
from schemas import ColorVariant, StockDirective


def test_growth_beyond_stock_is_rejected():
    result = reconcile("p1", None, previous_quantity=2, new_quantity=5, current_stock=2)
    assert result.accepted is False
    assert result.reason == "InsufficientStock"
    assert result.delta == 3
    assert result.directive is None


def test_growth_within_stock():
    result = reconcile("p1", None, 2, 5, 3)
    assert result.accepted
    assert result.directive == StockDirective(product_id="p1", stock_delta=-3, sales_count_delta=3)


def test_removing_a_line_restores_stock():
    result = reconcile("p1", "#3f51b5", previous_quantity=3, new_quantity=0, current_stock=0)
    assert result.delta == -3
    assert result.accepted
    assert result.directive.stock_delta == 3
    assert result.directive.sales_count_delta == -3


def test_no_change_needs_no_directive():
    result = reconcile("p1", None, 4, 4, 0)
    assert result.accepted
    assert result.directive is None


@pytest.mark.parametrize("previous,new", [(-1, 2), (1, -2), (1, 2.5), ("1", 2)])
def test_invalid_quantities(previous, new):
    with pytest.raises(InvalidQuantity):
        reconcile("p1", None, previous, new, 10)


def test_stock_never_goes_negative():
    stock = 5
    held = 0
    for wanted in [3, 6, 1, 5, 9, 0, 4]:
        result = reconcile("p1", None, held, wanted, stock)
        if result.accepted:
            if result.directive:
                stock += result.directive.stock_delta
            held = wanted
        assert stock >= 0
    assert stock + held == 5


def test_variants_share_product_stock():
    changes = [
        LineChange("p1", "#000000", 0, 2),
        LineChange("p1", "#ffffff", 0, 2),
    ]
    with pytest.raises(InsufficientStock) as exc:
        reconcile_batch(changes, {"p1": 3})
    assert exc.value.product_id == "p1"
    assert exc.value.max_quantity == 1


def test_releases_apply_before_growth():
    # swapping two units from one colour to another with no spare stock
    changes = [
        LineChange("p1", "#ffffff", 0, 2),
        LineChange("p1", "#000000", 2, 0),
    ]
    directives = reconcile_batch(changes, {"p1": 0})
    assert merge_directives(directives) == []


def test_batch_is_all_or_nothing():
    changes = [
        LineChange("p1", None, 0, 1),
        LineChange("p2", None, 0, 5, "Clutch"),
    ]
    with pytest.raises(InsufficientStock, match="Clutch"):
        reconcile_batch(changes, {"p1": 10, "p2": 4})


def test_batch_validates_every_line_first():
    changes = [LineChange("p1", None, 0, 1), LineChange("p2", None, 0, -1)]
    with pytest.raises(InvalidQuantity):
        reconcile_batch(changes, {"p1": 10, "p2": 10})


def test_merge_directives_nets_per_product():
    merged = merge_directives([
        StockDirective(product_id="p1", stock_delta=-2, sales_count_delta=2),
        StockDirective(product_id="p2", stock_delta=1, sales_count_delta=-1),
        StockDirective(product_id="p1", stock_delta=-1, sales_count_delta=1),
    ])
    assert merged == [
        StockDirective(product_id="p1", stock_delta=-3, sales_count_delta=3),
        StockDirective(product_id="p2", stock_delta=1, sales_count_delta=-1),
    ]


def test_variant_key_forms():
    assert variant_key(None) is None
    assert variant_key(ColorVariant(name="Rust", hex="#B7410E")) == "#b7410e"
    assert variant_key({"name": "Rust", "hex": "#B7410E"}) == "#b7410e"
    assert variant_key({"name": "Rust"}) == "Rust"
    assert variant_key("#B7410E") == "#b7410e"
