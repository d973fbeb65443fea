"""An order gives its stock back, or takes it again, at most once."""
import pytest
from bson import ObjectId

from checkout import _commit_stock, _release_stock
from errors import InsufficientStock


async def insert_order(db, product_id, quantity, committed):
    result = await db["order"].insert_one({
        "user_email": "ravi@example.com",
        "items": [{"product_id": product_id, "name": "Pouch", "price": 449, "quantity": quantity}],
        "stock_committed": committed,
    })
    return await db["order"].find_one({"_id": result.inserted_id})


async def insert_product(db, stock, sales_count=0):
    result = await db["product"].insert_one({"title": "Pouch", "price": 449, "stock": stock,
                                             "sales_count": sales_count})
    return str(result.inserted_id)


async def stock_of(db, product_id):
    return (await db["product"].find_one({"_id": ObjectId(product_id)}))["stock"]


async def test_release_with_stale_order_happens_once(db):
    product_id = await insert_product(db, 8, sales_count=2)
    order = await insert_order(db, product_id, 2, committed=True)

    assert await _release_stock(db, order) is True
    assert await _release_stock(db, order) is False
    assert await stock_of(db, product_id) == 10
    assert (await db["order"].find_one({"_id": order["_id"]}))["stock_committed"] is False


async def test_commit_with_stale_order_happens_once(db):
    product_id = await insert_product(db, 10)
    order = await insert_order(db, product_id, 2, committed=False)

    assert await _commit_stock(db, order) is True
    assert await _commit_stock(db, order) is False
    assert await stock_of(db, product_id) == 8


async def test_failed_commit_leaves_order_without_stock(db):
    product_id = await insert_product(db, 1)
    order = await insert_order(db, product_id, 2, committed=False)

    with pytest.raises(InsufficientStock):
        await _commit_stock(db, order)
    assert await stock_of(db, product_id) == 1
    assert (await db["order"].find_one({"_id": order["_id"]}))["stock_committed"] is False
