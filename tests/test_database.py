"""Atomic stock updates and order numbering against a mock MongoDB."""
from datetime import datetime

import pytest
from bson import ObjectId

import database
from database import apply_stock_directives, generate_order_number, serialize
from errors import InsufficientStock
from schemas import StockDirective


async def insert_product(db, stock, sales_count=0):
    result = await db["product"].insert_one({"title": "Pouch", "price": 449, "stock": stock,
                                             "sales_count": sales_count})
    return str(result.inserted_id)


async def stock_of(db, product_id):
    doc = await db["product"].find_one({"_id": ObjectId(product_id)})
    return doc["stock"], doc["sales_count"]


async def test_apply_directives(db):
    p1 = await insert_product(db, 5)
    p2 = await insert_product(db, 1)
    updated = await apply_stock_directives(db, [
        StockDirective(product_id=p1, stock_delta=-2, sales_count_delta=2),
        StockDirective(product_id=p2, stock_delta=3, sales_count_delta=-3),
    ])
    assert [d["stock"] for d in updated] == [3, 4]
    assert await stock_of(db, p1) == (3, 2)


async def test_failed_directive_rolls_back_the_batch(db):
    p1 = await insert_product(db, 5)
    p2 = await insert_product(db, 1)
    with pytest.raises(InsufficientStock) as exc:
        await apply_stock_directives(db, [
            StockDirective(product_id=p1, stock_delta=-2, sales_count_delta=2),
            StockDirective(product_id=p2, stock_delta=-2, sales_count_delta=2),
        ])
    assert exc.value.product_id == p2
    assert exc.value.available == 1
    assert await stock_of(db, p1) == (5, 0)
    assert await stock_of(db, p2) == (1, 0)


@pytest.fixture
def increments(monkeypatch):
    calls = []
    original = database._increment

    async def recording(db, directive):
        calls.append((directive.product_id, directive.stock_delta))
        return await original(db, directive)

    monkeypatch.setattr(database, "_increment", recording)
    return calls


async def test_takes_run_before_releases(db, increments):
    p1 = await insert_product(db, 0, sales_count=2)
    p2 = await insert_product(db, 5)
    await apply_stock_directives(db, [
        StockDirective(product_id=p1, stock_delta=2, sales_count_delta=-2),
        StockDirective(product_id=p2, stock_delta=-3, sales_count_delta=3),
    ])
    assert increments == [(p2, -3), (p1, 2)]
    assert await stock_of(db, p1) == (2, 0)
    assert await stock_of(db, p2) == (2, 3)


async def test_failed_take_never_applies_pending_release(db, increments):
    p1 = await insert_product(db, 0, sales_count=2)
    p2 = await insert_product(db, 1)
    with pytest.raises(InsufficientStock):
        await apply_stock_directives(db, [
            StockDirective(product_id=p1, stock_delta=2, sales_count_delta=-2),
            StockDirective(product_id=p2, stock_delta=-5, sales_count_delta=5),
        ])
    assert increments == [(p2, -5)]
    assert await stock_of(db, p1) == (0, 2)
    assert await stock_of(db, p2) == (1, 0)


async def test_release_for_deleted_product_is_skipped(db):
    p1 = await insert_product(db, 0, sales_count=2)
    updated = await apply_stock_directives(db, [
        StockDirective(product_id=str(ObjectId()), stock_delta=2, sales_count_delta=-2),
        StockDirective(product_id=p1, stock_delta=2, sales_count_delta=-2),
    ])
    assert len(updated) == 1
    assert await stock_of(db, p1) == (2, 0)


async def test_order_numbers_follow_daily_sequence(db):
    now = datetime(2024, 3, 9, 15, 30)
    assert await generate_order_number(db, now) == "NV240309001"
    await db["order"].insert_one({"created_at": datetime(2024, 3, 9, 1, 0)})
    await db["order"].insert_one({"created_at": datetime(2024, 3, 8, 23, 59)})
    assert await generate_order_number(db, now) == "NV240309002"


def test_serialize_stringifies_ids():
    oid = ObjectId()
    out = serialize({"_id": oid, "items": [{"product_id": oid}], "ref": oid})
    assert out == {"id": str(oid), "items": [{"product_id": str(oid)}], "ref": str(oid)}
