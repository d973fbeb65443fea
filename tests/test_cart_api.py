"""Cart routes: every mutation moves product stock by the reconciled delta."""
import pytest

EMAIL = "asha@example.com"
INDIGO = {"name": "Indigo", "hex": "#3F51B5"}
RUST = {"name": "Rust", "hex": "#B7410E"}


def stock(client, product_id):
    return client.get(f"/products/{product_id}").json()["stock"]


@pytest.fixture
def tote(make_product):
    return make_product(title="Madhubani Tote", price=1499, discount=10, stock=5, color_variants=[INDIGO, RUST])


@pytest.fixture
def pouch(make_product):
    return make_product(title="Block Print Pouch", price=449, stock=4)


def test_add_takes_stock_and_merges_lines(client, tote, publisher):
    resp = client.post(f"/cart/{EMAIL}/items", json={"product_id": tote["id"], "quantity": 2})
    assert resp.status_code == 200
    assert stock(client, tote["id"]) == 3

    resp = client.post(f"/cart/{EMAIL}/items", json={"product_id": tote["id"]})
    items = resp.json()["items"]
    assert len(items) == 1
    assert items[0]["quantity"] == 3
    assert items[0]["price"] == 1499
    assert items[0]["discount"] == 10
    assert stock(client, tote["id"]) == 2
    assert len(publisher.named("cart-changed", room=f"user-{EMAIL}")) == 2
    assert publisher.named("product-changed", room="admin")[-1]["product"]["stock"] == 2


def test_variants_are_separate_lines(client, tote):
    client.post(f"/cart/{EMAIL}/items", json={"product_id": tote["id"], "quantity": 1, "color_variant": INDIGO})
    resp = client.post(f"/cart/{EMAIL}/items", json={"product_id": tote["id"], "quantity": 2, "color_variant": RUST})
    items = resp.json()["items"]
    assert [(i["color_variant"]["name"], i["quantity"]) for i in items] == [("Indigo", 1), ("Rust", 2)]
    assert stock(client, tote["id"]) == 2


def test_add_beyond_stock_is_rejected(client, tote):
    client.post(f"/cart/{EMAIL}/items", json={"product_id": tote["id"], "quantity": 2})
    resp = client.post(f"/cart/{EMAIL}/items", json={"product_id": tote["id"], "quantity": 4})
    assert resp.status_code == 400
    body = resp.json()
    assert body["failingProductId"] == tote["id"]
    assert body["maxQuantity"] == 5
    assert stock(client, tote["id"]) == 3


def test_add_unknown_product(client):
    resp = client.post(f"/cart/{EMAIL}/items", json={"product_id": "64b000000000000000000000", "quantity": 1})
    assert resp.status_code == 400
    assert resp.json()["failingProductId"] == "64b000000000000000000000"


def test_add_rejects_zero_quantity(client, tote):
    resp = client.post(f"/cart/{EMAIL}/items", json={"product_id": tote["id"], "quantity": 0})
    assert resp.status_code == 400
    assert stock(client, tote["id"]) == 5


def test_update_moves_stock_by_delta(client, tote):
    client.post(f"/cart/{EMAIL}/items", json={"product_id": tote["id"], "quantity": 1, "color_variant": INDIGO})
    resp = client.put(f"/cart/{EMAIL}/items", json={"product_id": tote["id"], "quantity": 4, "variant": "#3f51b5"})
    assert resp.json()["items"][0]["quantity"] == 4
    assert stock(client, tote["id"]) == 1

    client.put(f"/cart/{EMAIL}/items", json={"product_id": tote["id"], "quantity": 2, "variant": "#3f51b5"})
    assert stock(client, tote["id"]) == 3


def test_variant_can_be_named(client, tote):
    client.post(f"/cart/{EMAIL}/items", json={"product_id": tote["id"], "quantity": 1, "color_variant": INDIGO})
    client.post(f"/cart/{EMAIL}/items", json={"product_id": tote["id"], "quantity": 1, "color_variant": RUST})
    resp = client.put(f"/cart/{EMAIL}/items", json={"product_id": tote["id"], "quantity": 3, "variant": "Indigo"})
    assert resp.status_code == 200
    assert [(i["color_variant"]["name"], i["quantity"]) for i in resp.json()["items"]] == [("Indigo", 3), ("Rust", 1)]
    assert stock(client, tote["id"]) == 1

    resp = client.delete(f"/cart/{EMAIL}/items", params={"product_id": tote["id"], "variant": "indigo"})
    assert [i["color_variant"]["name"] for i in resp.json()["items"]] == ["Rust"]
    assert stock(client, tote["id"]) == 4


def test_update_to_zero_removes_line(client, tote):
    client.post(f"/cart/{EMAIL}/items", json={"product_id": tote["id"], "quantity": 3})
    resp = client.put(f"/cart/{EMAIL}/items", json={"product_id": tote["id"], "quantity": 0})
    assert resp.json()["items"] == []
    assert stock(client, tote["id"]) == 5


def test_update_missing_line(client, tote):
    resp = client.put(f"/cart/{EMAIL}/items", json={"product_id": tote["id"], "quantity": 2})
    assert resp.status_code == 404


def test_remove_restores_stock(client, tote, pouch):
    client.post(f"/cart/{EMAIL}/items", json={"product_id": tote["id"], "quantity": 3})
    client.post(f"/cart/{EMAIL}/items", json={"product_id": pouch["id"], "quantity": 1})
    resp = client.delete(f"/cart/{EMAIL}/items", params={"product_id": tote["id"]})
    assert [i["product_id"] for i in resp.json()["items"]] == [pouch["id"]]
    assert stock(client, tote["id"]) == 5
    assert stock(client, pouch["id"]) == 3


def test_remove_absent_line_is_a_no_op(client, tote):
    resp = client.delete(f"/cart/{EMAIL}/items", params={"product_id": tote["id"]})
    assert resp.status_code == 200
    assert resp.json()["items"] == []


def test_replace_cart(client, tote, pouch):
    client.post(f"/cart/{EMAIL}/items", json={"product_id": tote["id"], "quantity": 2})
    resp = client.put(f"/cart/{EMAIL}", json={"items": [
        {"product_id": tote["id"], "quantity": 1},
        {"product_id": pouch["id"], "quantity": 1},
        {"product_id": pouch["id"], "quantity": 2},
    ]})
    assert resp.status_code == 200
    assert {i["product_id"]: i["quantity"] for i in resp.json()["items"]} == {tote["id"]: 1, pouch["id"]: 3}
    assert stock(client, tote["id"]) == 4
    assert stock(client, pouch["id"]) == 1


def test_replace_with_same_contents_changes_nothing(client, tote, pouch, publisher):
    client.post(f"/cart/{EMAIL}/items", json={"product_id": tote["id"], "quantity": 2, "color_variant": RUST})
    client.post(f"/cart/{EMAIL}/items", json={"product_id": pouch["id"], "quantity": 1})
    before = client.get(f"/cart/{EMAIL}").json()["items"]
    changed = len(publisher.named("product-changed"))

    resp = client.put(f"/cart/{EMAIL}", json={"items": [
        {"product_id": i["product_id"], "quantity": i["quantity"], "color_variant": i["color_variant"]}
        for i in before
    ]})
    assert resp.json()["items"] == before
    assert len(publisher.named("product-changed")) == changed
    assert stock(client, tote["id"]) == 3
    assert stock(client, pouch["id"]) == 3


def test_replace_is_all_or_nothing(client, tote, pouch):
    client.post(f"/cart/{EMAIL}/items", json={"product_id": tote["id"], "quantity": 2})
    resp = client.put(f"/cart/{EMAIL}", json={"items": [
        {"product_id": tote["id"], "quantity": 1},
        {"product_id": pouch["id"], "quantity": 9},
    ]})
    assert resp.status_code == 400
    assert resp.json()["failingProductId"] == pouch["id"]
    assert client.get(f"/cart/{EMAIL}").json()["items"][0]["quantity"] == 2
    assert stock(client, tote["id"]) == 3
    assert stock(client, pouch["id"]) == 4


def test_replace_variants_share_stock(client, tote):
    resp = client.put(f"/cart/{EMAIL}", json={"items": [
        {"product_id": tote["id"], "quantity": 3, "color_variant": INDIGO},
        {"product_id": tote["id"], "quantity": 3, "color_variant": RUST},
    ]})
    assert resp.status_code == 400
    assert stock(client, tote["id"]) == 5


def test_wishlist_has_no_stock_effect(client, tote):
    resp = client.post(f"/wishlist/{EMAIL}", json={"product_id": tote["id"]})
    client.post(f"/wishlist/{EMAIL}", json={"product_id": tote["id"]})
    assert len(resp.json()["items"]) == 1
    entry = client.get(f"/wishlist/{EMAIL}").json()["items"][0]
    assert (entry["product_id"], entry["name"], entry["price"], entry["discount"]) == (
        tote["id"], "Madhubani Tote", 1499, 10)
    assert stock(client, tote["id"]) == 5

    resp = client.delete(f"/wishlist/{EMAIL}/{tote['id']}")
    assert resp.json()["items"] == []
