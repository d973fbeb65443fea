from __future__ import annotations
from pydantic import BaseModel, ConfigDict, Field, field_validator
from typing import Literal, Optional

# Each collection class => one collection, lowercased name

class ColorVariant(BaseModel):
    name: str
    hex: str = Field(pattern=r"^#[0-9A-Fa-f]{6}$")
    images: list[str] = Field(default_factory=list)

    @property
    def key(self) -> str:
        return self.hex.lower()

class RatingSummary(BaseModel):
    average: float = 0
    count: int = 0

class Product(BaseModel):
    title: str = Field(max_length=100)
    slug: str
    description: str = ""
    price: float = Field(ge=0)
    discount: float = Field(0, ge=0, le=100)
    stock: int = Field(10, ge=0)
    sales_count: int = 0
    sku: Optional[str] = None
    category: str = "general"
    tags: list[str] = Field(default_factory=list)
    images: list[str] = Field(default_factory=list)
    color_variants: list[ColorVariant] = Field(default_factory=list)
    published: bool = True
    featured: bool = False
    ratings: RatingSummary = Field(default_factory=RatingSummary)

    @field_validator("tags")
    @classmethod
    def lower_tags(cls, v: list[str]) -> list[str]:
        return [t.strip().lower() for t in v if t.strip()]

class TagDiscount(BaseModel):
    tag: str
    percent: float = Field(ge=0, le=100)
    active: bool = True

    @field_validator("tag")
    @classmethod
    def normalize_tag(cls, v: str) -> str:
        v = v.strip().lower()
        if not v:
            raise ValueError("tag required")
        return v

class EstimatedDays(BaseModel):
    min: int = Field(ge=1)
    max: int = Field(ge=1)

class Shipping(BaseModel):
    name: str
    description: Optional[str] = None
    cost: int = Field(ge=0)
    gst_percent: float = Field(18, ge=0, le=100)
    estimated_days: EstimatedDays
    is_active: bool = True
    is_default: bool = False

class CartLine(BaseModel):
    product_id: str
    name: str
    price: float
    discount: float = 0
    image: Optional[str] = None
    quantity: int = Field(ge=1)
    color_variant: Optional[ColorVariant] = None

class WishlistItem(BaseModel):
    product_id: str
    name: Optional[str] = None
    price: Optional[float] = None
    discount: float = 0
    image: Optional[str] = None

# Order snapshots are frozen: once written they are never recomputed from the catalog

class OrderLine(BaseModel):
    model_config = ConfigDict(frozen=True)

    product_id: str
    name: str
    image: str = ""
    price: int
    original_price: float
    discount: float
    quantity: int
    sku: Optional[str] = None
    color_variant: Optional[ColorVariant] = None

class Address(BaseModel):
    name: str
    phone: str
    street: str
    city: str
    state: str
    zip_code: str
    country: str = "India"

class ShippingChoice(BaseModel):
    name: str
    estimated_days: int
    tracking_number: Optional[str] = None
    tracking_url: Optional[str] = None

class TimelineEntry(BaseModel):
    status: str
    message: str

class Order(BaseModel):
    order_number: str
    user_email: str
    items: list[OrderLine]
    subtotal: int = Field(ge=0)
    tax: int = Field(ge=0)
    shipping: int = Field(ge=0)
    discount: int = Field(ge=0)
    total: int
    currency: str = "INR"
    status: str = "pending"
    payment_status: str = "pending"
    payment_method: str = "razorpay"
    gateway_order_id: Optional[str] = None
    gateway_payment_id: Optional[str] = None
    shipping_address: Address
    billing_address: Address
    shipping_method: ShippingChoice
    timeline: list[TimelineEntry] = Field(default_factory=list)

class StockDirective(BaseModel):
    model_config = ConfigDict(frozen=True)

    product_id: str
    stock_delta: int
    sales_count_delta: int

# Request payloads

class LineRequest(BaseModel):
    product_id: str
    quantity: int
    color_variant: Optional[ColorVariant] = None

class CartItemIn(LineRequest):
    quantity: int = 1

class CartQuantityIn(BaseModel):
    product_id: str
    quantity: int
    variant: Optional[str] = None

class CartReplaceIn(BaseModel):
    items: list[LineRequest]

class CheckoutRequest(BaseModel):
    email: str
    items: list[LineRequest] = Field(min_length=1)
    shipping_method: Optional[str] = None
    shipping_address: Optional[Address] = None
    billing_address: Optional[Address] = None
    payment_method: str = "card"

class QuoteOut(BaseModel):
    items: list[OrderLine]
    subtotal: int
    shipping: int
    tax: int
    discount: int
    total: int
    currency: str
    estimated_days: int

class StatusUpdateIn(BaseModel):
    status: str
    message: Optional[str] = None
    tracking_number: Optional[str] = None
    tracking_url: Optional[str] = None

# Reviews: one per customer per product

class ReviewIn(BaseModel):
    product_id: str
    email: str
    rating: int = Field(ge=1, le=5)
    comment: str = Field("", max_length=1000)

class ReviewUpdateIn(BaseModel):
    rating: int = Field(ge=1, le=5)
    comment: str = Field("", max_length=1000)

class ReviewResponseIn(BaseModel):
    admin_response: str = Field("", max_length=2000)

# Returns

ReturnReason = Literal["defective", "wrong-item", "not-as-described", "changed-mind", "other"]

class ReturnItemIn(BaseModel):
    product_id: str
    quantity: int = Field(ge=1)
    reason: ReturnReason
    description: str = Field("", max_length=500)

class ReturnRequestIn(BaseModel):
    order_id: str
    email: str
    items: list[ReturnItemIn] = Field(min_length=1)
    return_reason: str = Field(min_length=1, max_length=500)
    refund_method: Literal["original-payment", "store-credit", "bank-transfer"] = "original-payment"

class ReturnUpdateIn(BaseModel):
    status: Optional[str] = None
    admin_notes: Optional[str] = Field(None, max_length=1000)
    tracking_number: Optional[str] = None
