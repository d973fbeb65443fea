from __future__ import annotations
import os
from contextlib import asynccontextmanager
from datetime import datetime
from fastapi import Body, Depends, FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from motor.motor_asyncio import AsyncIOMotorDatabase
from pydantic import BaseModel
from typing import Any, Optional
import structlog

import cart
import checkout
import returns
import reviews
from database import (
    active_tag_discounts,
    create_document,
    find_products,
    get_db,
    get_documents,
    serialize,
    settings,
    to_object_id,
)
from errors import InvalidProductState, NotFound, StoreError
from events import LogPublisher, Publisher
from logging_setup import configure_logging
from payments import PaymentGateway, get_gateway
from pricing import active_tag_map, first_image, resolve_price
from schemas import (
    CartItemIn,
    CartQuantityIn,
    CartReplaceIn,
    CheckoutRequest,
    ColorVariant,
    Product,
    QuoteOut,
    RatingSummary,
    ReturnRequestIn,
    ReturnUpdateIn,
    ReviewIn,
    ReviewResponseIn,
    ReviewUpdateIn,
    Shipping,
    StatusUpdateIn,
    TagDiscount,
    WishlistItem,
)

logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging(settings.LOG_LEVEL, settings.LOG_JSON)
    logger.info("startup", database=settings.DATABASE_NAME, payments=bool(settings.RAZORPAY_KEY_ID))
    yield


app = FastAPI(title="Nirvaanaa Storefront API", lifespan=lifespan)

# Allow all origins for dev preview
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

_publisher = LogPublisher()


def get_publisher() -> Publisher:
    return _publisher


@app.exception_handler(StoreError)
async def store_error_handler(request: Request, exc: StoreError):
    if isinstance(exc, InvalidProductState):
        logger.error("invalid_product_state", path=request.url.path, error=exc.message, product_id=exc.product_id)
    else:
        logger.info("request_rejected", path=request.url.path, error=exc.message, status=exc.status_code)
    return JSONResponse(status_code=exc.status_code, content=exc.to_payload())


# Seed data: handcrafted bags and accessories

SEED_PRODUCTS: list[dict] = [
    {"title": "Madhubani Tote Bag", "slug": "madhubani-tote-bag", "price": 1499, "discount": 10, "stock": 25,
     "category": "bags", "tags": ["handpainted", "festive"], "sku": "NV-TOTE-01",
     "images": ["https://images.unsplash.com/photo-1590874103328-eac38a683ce7?q=80&w=1600&auto=format&fit=crop"],
     "color_variants": [{"name": "Indigo", "hex": "#3F51B5"}, {"name": "Rust", "hex": "#B7410E"}]},
    {"title": "Kalamkari Sling Bag", "slug": "kalamkari-sling-bag", "price": 999, "stock": 30,
     "category": "bags", "tags": ["handpainted"], "sku": "NV-SLING-01",
     "images": ["https://images.unsplash.com/photo-1548036328-c9fa89d128fa?q=80&w=1600&auto=format&fit=crop"]},
    {"title": "Block Print Pouch", "slug": "block-print-pouch", "price": 449, "discount": 5, "stock": 60,
     "category": "pouches", "tags": ["block-print", "gift"], "sku": "NV-POUCH-01",
     "images": ["https://images.unsplash.com/photo-1566150905458-1bf1fc113f0d?q=80&w=1600&auto=format&fit=crop"]},
    {"title": "Warli Laptop Sleeve", "slug": "warli-laptop-sleeve", "price": 1299, "stock": 15,
     "category": "sleeves", "tags": ["handpainted", "work"], "sku": "NV-SLEEVE-01",
     "images": ["https://images.unsplash.com/photo-1525547719571-a2d4ac8945e2?q=80&w=1600&auto=format&fit=crop"],
     "color_variants": [{"name": "Charcoal", "hex": "#36454F"}]},
    {"title": "Gond Art Clutch", "slug": "gond-art-clutch", "price": 1899, "discount": 15, "stock": 12,
     "category": "clutches", "tags": ["festive", "gift"], "sku": "NV-CLUTCH-01",
     "images": ["https://images.unsplash.com/photo-1566150905458-1bf1fc113f0d?q=80&w=1600&auto=format&fit=crop"]},
]

SEED_TAG_DISCOUNTS: list[dict] = [
    {"tag": "festive", "percent": 20, "active": True},
    {"tag": "gift", "percent": 5, "active": False},
]

SEED_SHIPPING: list[dict] = [
    {"name": "Standard Shipping", "description": "Delivered in 5-7 days", "cost": 100, "gst_percent": 18,
     "estimated_days": {"min": 5, "max": 7}, "is_default": True},
    {"name": "Express Shipping", "description": "Delivered in 2-3 days", "cost": 250, "gst_percent": 18,
     "estimated_days": {"min": 2, "max": 3}},
]


class SeedResponse(BaseModel):
    inserted: int


@app.post("/seed", response_model=SeedResponse)
async def seed(db: AsyncIOMotorDatabase = Depends(get_db)):
    # Insert only if products collection is empty
    count = await db["product"].count_documents({})
    if count:
        return SeedResponse(inserted=0)
    for p in SEED_PRODUCTS:
        await create_document(db, "product", Product(**p).model_dump())
    for t in SEED_TAG_DISCOUNTS:
        await create_document(db, "tagdiscount", TagDiscount(**t).model_dump())
    if not await db["shipping"].count_documents({}):
        for s in SEED_SHIPPING:
            await create_document(db, "shipping", Shipping(**s).model_dump())
    logger.info("catalog_seeded", products=len(SEED_PRODUCTS))
    return SeedResponse(inserted=len(SEED_PRODUCTS))


@app.get("/")
async def root():
    return {"message": "Nirvaanaa storefront API"}


@app.get("/test")
async def test(db: AsyncIOMotorDatabase = Depends(get_db)):
    try:
        collections = await db.list_collection_names()
    except Exception as e:
        logger.warning("database_check_failed", error=str(e)[:200])
        return {"ok": True, "database": "unavailable"}
    return {"ok": True, "database": "connected", "collections": sorted(collections)[:10]}


# Catalog

class ProductOut(BaseModel):
    id: str
    title: str
    slug: str
    description: str = ""
    price: float
    discount: float
    effective_price: int
    stock: int
    sales_count: int = 0
    sku: Optional[str] = None
    category: str = "general"
    tags: list[str] = []
    images: list[str] = []
    color_variants: list[ColorVariant] = []
    ratings: RatingSummary = RatingSummary()
    published: bool = True
    featured: bool = False


def _product_out(doc: dict[str, Any], tags: dict[str, float]) -> ProductOut:
    resolved = resolve_price(doc, tags)
    return ProductOut(**{
        **serialize(doc),
        "discount": resolved.applied_discount_percent,
        "effective_price": resolved.effective_price,
    })


@app.get("/products", response_model=list[ProductOut])
async def list_products(
    q: Optional[str] = Query(None),
    category: Optional[str] = Query(None),
    tag: Optional[str] = Query(None),
    db: AsyncIOMotorDatabase = Depends(get_db),
):
    filter_dict: dict[str, Any] = {"published": True}
    if q:
        filter_dict["title"] = {"$regex": q, "$options": "i"}
    if category:
        filter_dict["category"] = category
    if tag:
        filter_dict["tags"] = tag.strip().lower()

    docs = await get_documents(db, "product", filter_dict, limit=200)
    tags = active_tag_map(await active_tag_discounts(db))
    return [_product_out(d, tags) for d in docs]


@app.post("/products", response_model=ProductOut, status_code=201)
async def create_product(product: Product, db: AsyncIOMotorDatabase = Depends(get_db)):
    if await db["product"].find_one({"slug": product.slug}):
        raise HTTPException(status_code=409, detail="Slug already exists")
    doc = await create_document(db, "product", product.model_dump())
    logger.info("product_created", product_id=str(doc["_id"]), slug=product.slug)
    return _product_out(doc, active_tag_map(await active_tag_discounts(db)))


@app.get("/products/{product_id}", response_model=ProductOut)
async def get_product(product_id: str, db: AsyncIOMotorDatabase = Depends(get_db)):
    doc = (await find_products(db, [product_id])).get(product_id)
    if doc is None:
        raise NotFound("Product not found", product_id)
    return _product_out(doc, active_tag_map(await active_tag_discounts(db)))


@app.get("/tag-discounts")
async def list_tag_discounts(db: AsyncIOMotorDatabase = Depends(get_db)):
    return [serialize(d) for d in await get_documents(db, "tagdiscount", {}, limit=1000, sort=[("tag", 1)])]


@app.post("/tag-discounts")
async def upsert_tag_discount(payload: TagDiscount, db: AsyncIOMotorDatabase = Depends(get_db)):
    now = datetime.utcnow()
    await db["tagdiscount"].update_one(
        {"tag": payload.tag},
        {"$set": {**payload.model_dump(), "updated_at": now}, "$setOnInsert": {"created_at": now}},
        upsert=True,
    )
    logger.info("tag_discount_saved", tag=payload.tag, percent=payload.percent, active=payload.active)
    return serialize(await db["tagdiscount"].find_one({"tag": payload.tag}))


@app.delete("/tag-discounts/{tag}")
async def delete_tag_discount(tag: str, db: AsyncIOMotorDatabase = Depends(get_db)):
    result = await db["tagdiscount"].delete_one({"tag": tag.strip().lower()})
    if not result.deleted_count:
        raise NotFound("Tag discount not found")
    return {"deleted": True}


@app.get("/shipping")
async def list_shipping(db: AsyncIOMotorDatabase = Depends(get_db)):
    docs = await get_documents(db, "shipping", {"is_active": True}, sort=[("cost", 1)])
    return [serialize(d) for d in docs]


@app.post("/shipping", status_code=201)
async def create_shipping(payload: Shipping, db: AsyncIOMotorDatabase = Depends(get_db)):
    if await db["shipping"].find_one({"name": payload.name}):
        raise HTTPException(status_code=409, detail="Shipping method already exists")
    return serialize(await create_document(db, "shipping", payload.model_dump()))


# Cart

class CartOut(BaseModel):
    email: str
    items: list[dict[str, Any]]


@app.get("/cart/{email}", response_model=CartOut)
async def get_cart(email: str, db: AsyncIOMotorDatabase = Depends(get_db)):
    return CartOut(email=email.lower(), items=await cart.get_cart(db, email))


@app.post("/cart/{email}/items", response_model=CartOut)
async def add_cart_item(
    email: str,
    item: CartItemIn,
    db: AsyncIOMotorDatabase = Depends(get_db),
    publisher: Publisher = Depends(get_publisher),
):
    return CartOut(email=email.lower(), items=await cart.add_item(db, publisher, email, item))


@app.put("/cart/{email}/items", response_model=CartOut)
async def update_cart_item(
    email: str,
    payload: CartQuantityIn,
    db: AsyncIOMotorDatabase = Depends(get_db),
    publisher: Publisher = Depends(get_publisher),
):
    items = await cart.update_item(db, publisher, email, payload.product_id, payload.variant, payload.quantity)
    return CartOut(email=email.lower(), items=items)


@app.delete("/cart/{email}/items", response_model=CartOut)
async def remove_cart_item(
    email: str,
    product_id: str = Query(...),
    variant: Optional[str] = Query(None),
    db: AsyncIOMotorDatabase = Depends(get_db),
    publisher: Publisher = Depends(get_publisher),
):
    return CartOut(email=email.lower(), items=await cart.remove_item(db, publisher, email, product_id, variant))


@app.put("/cart/{email}", response_model=CartOut)
async def replace_cart(
    email: str,
    payload: CartReplaceIn,
    db: AsyncIOMotorDatabase = Depends(get_db),
    publisher: Publisher = Depends(get_publisher),
):
    return CartOut(email=email.lower(), items=await cart.replace_cart(db, publisher, email, payload.items))


# Wishlist (no stock effect)

class WishlistAdd(BaseModel):
    product_id: str


@app.get("/wishlist/{email}")
async def get_wishlist(email: str, db: AsyncIOMotorDatabase = Depends(get_db)):
    doc = await db["wishlist"].find_one({"email": email.lower()})
    return {"email": email.lower(), "items": doc.get("items", []) if doc else []}


@app.post("/wishlist/{email}")
async def add_to_wishlist(email: str, payload: WishlistAdd, db: AsyncIOMotorDatabase = Depends(get_db)):
    product = (await find_products(db, [payload.product_id])).get(payload.product_id)
    if product is None:
        raise NotFound("Product not found", payload.product_id)
    doc = await db["wishlist"].find_one({"email": email.lower()})
    items = doc.get("items", []) if doc else []
    if not any(i["product_id"] == payload.product_id for i in items):
        resolved = resolve_price(product, active_tag_map(await active_tag_discounts(db)))
        items.append(WishlistItem(
            product_id=payload.product_id,
            name=product.get("title"),
            price=product["price"],
            discount=resolved.applied_discount_percent,
            image=first_image(product) or None,
        ).model_dump())
        await db["wishlist"].update_one(
            {"email": email.lower()},
            {"$set": {"items": items, "updated_at": datetime.utcnow()}},
            upsert=True,
        )
    return {"email": email.lower(), "items": items}


@app.delete("/wishlist/{email}/{product_id}")
async def remove_from_wishlist(email: str, product_id: str, db: AsyncIOMotorDatabase = Depends(get_db)):
    doc = await db["wishlist"].find_one({"email": email.lower()})
    items = [i for i in (doc.get("items", []) if doc else []) if i["product_id"] != product_id]
    if doc:
        await db["wishlist"].update_one({"_id": doc["_id"]}, {"$set": {"items": items, "updated_at": datetime.utcnow()}})
    return {"email": email.lower(), "items": items}


# Checkout & orders

@app.post("/checkout/quote", response_model=QuoteOut)
async def checkout_quote(request: CheckoutRequest, db: AsyncIOMotorDatabase = Depends(get_db)):
    q = await checkout.quote(db, request)
    return QuoteOut(
        items=q.lines,
        **q.totals._asdict(),
        currency=settings.CURRENCY,
        estimated_days=q.shipping.estimated_days,
    )


@app.post("/checkout", status_code=201)
async def place_order(
    request: CheckoutRequest,
    db: AsyncIOMotorDatabase = Depends(get_db),
    gateway: PaymentGateway = Depends(get_gateway),
    publisher: Publisher = Depends(get_publisher),
):
    return await checkout.place_order(db, gateway, publisher, request)


@app.get("/orders")
async def list_orders(
    status: Optional[str] = Query(None),
    payment_status: Optional[str] = Query(None),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    db: AsyncIOMotorDatabase = Depends(get_db),
):
    return await checkout.list_orders(db, status, payment_status, page, limit)


@app.get("/orders/user/{email}")
async def user_orders(email: str, db: AsyncIOMotorDatabase = Depends(get_db)):
    return await checkout.orders_for_user(db, email)


@app.get("/orders/{order_id}")
async def get_order(order_id: str, db: AsyncIOMotorDatabase = Depends(get_db)):
    return serialize(await checkout.get_order(db, order_id))


@app.patch("/orders/{order_id}/status")
async def update_order_status(
    order_id: str,
    payload: StatusUpdateIn,
    db: AsyncIOMotorDatabase = Depends(get_db),
    publisher: Publisher = Depends(get_publisher),
):
    if to_object_id(order_id) is None:
        raise NotFound("Order not found")
    return serialize(await checkout.update_status(db, publisher, order_id, payload))


# Reviews

@app.get("/reviews")
async def list_reviews(product_id: Optional[str] = Query(None), db: AsyncIOMotorDatabase = Depends(get_db)):
    return await reviews.list_reviews(db, product_id)


@app.post("/reviews", status_code=201)
async def create_review(
    payload: ReviewIn,
    db: AsyncIOMotorDatabase = Depends(get_db),
    publisher: Publisher = Depends(get_publisher),
):
    return serialize(await reviews.create_review(db, publisher, payload))


@app.put("/reviews/{review_id}")
async def update_review(
    review_id: str,
    payload: ReviewUpdateIn,
    db: AsyncIOMotorDatabase = Depends(get_db),
    publisher: Publisher = Depends(get_publisher),
):
    return serialize(await reviews.update_review(db, publisher, review_id, payload))


@app.delete("/reviews/{review_id}")
async def delete_review(
    review_id: str,
    db: AsyncIOMotorDatabase = Depends(get_db),
    publisher: Publisher = Depends(get_publisher),
):
    await reviews.delete_review(db, publisher, review_id)
    return {"deleted": True}


@app.patch("/reviews/{review_id}/response")
async def respond_to_review(review_id: str, payload: ReviewResponseIn, db: AsyncIOMotorDatabase = Depends(get_db)):
    return serialize(await reviews.respond(db, review_id, payload.admin_response))


# Returns

@app.get("/returns")
async def list_returns(
    email: Optional[str] = Query(None),
    status: Optional[str] = Query(None),
    db: AsyncIOMotorDatabase = Depends(get_db),
):
    return await returns.list_returns(db, email, status)


@app.post("/returns", status_code=201)
async def create_return(
    payload: ReturnRequestIn,
    db: AsyncIOMotorDatabase = Depends(get_db),
    publisher: Publisher = Depends(get_publisher),
):
    return serialize(await returns.create_return(db, publisher, payload))


@app.get("/returns/{return_id}")
async def get_return(return_id: str, db: AsyncIOMotorDatabase = Depends(get_db)):
    return serialize(await returns.get_return(db, return_id))


@app.patch("/returns/{return_id}")
async def update_return(
    return_id: str,
    payload: ReturnUpdateIn,
    db: AsyncIOMotorDatabase = Depends(get_db),
    publisher: Publisher = Depends(get_publisher),
):
    return serialize(await returns.update_return(db, publisher, return_id, payload))


@app.post("/webhooks/payments")
async def payment_webhook(
    event: dict[str, Any] = Body(...),
    db: AsyncIOMotorDatabase = Depends(get_db),
    publisher: Publisher = Depends(get_publisher),
):
    return {"status": await checkout.handle_payment_event(db, publisher, event)}


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=int(os.getenv("PORT", 8000)))
