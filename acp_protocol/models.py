"""
ACP Pydantic Models — Agentic Checkout, Delegate Payment and Payment Intent APIs.

These models are the wire contract shared by the merchant service, the PSP
service and the orchestrating client. All monetary amounts are in the
smallest currency unit (e.g. cents for USD); timestamps are RFC 3339 strings.
"""

from __future__ import annotations

from enum import Enum
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, Field


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class CheckoutStatus(str, Enum):
    NOT_READY_FOR_PAYMENT = "not_ready_for_payment"
    READY_FOR_PAYMENT = "ready_for_payment"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELED = "canceled"


class FulfillmentType(str, Enum):
    SHIPPING = "shipping"
    DIGITAL = "digital"


class TotalType(str, Enum):
    ITEMS_BASE_AMOUNT = "items_base_amount"
    ITEMS_DISCOUNT = "items_discount"
    SUBTOTAL = "subtotal"
    DISCOUNT = "discount"
    FULFILLMENT = "fulfillment"
    TAX = "tax"
    FEE = "fee"
    TOTAL = "total"


class LinkType(str, Enum):
    TERMS_OF_USE = "terms_of_use"
    PRIVACY_POLICY = "privacy_policy"


class MessageLevel(str, Enum):
    INFO = "info"
    ERROR = "error"


class VaultTokenStatus(str, Enum):
    ACTIVE = "active"
    CONSUMED = "consumed"
    EXPIRED = "expired"


class PaymentIntentStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


# ---------------------------------------------------------------------------
# Shared / Common
# ---------------------------------------------------------------------------

class Address(BaseModel):
    name: str = Field(max_length=256)
    line_one: str = Field(max_length=60)
    line_two: Optional[str] = Field(default=None, max_length=60)
    city: str = Field(max_length=60)
    state: str
    country: str
    postal_code: str = Field(max_length=20)


class Buyer(BaseModel):
    first_name: str = Field(max_length=256)
    last_name: str = Field(max_length=256)
    email: str = Field(max_length=256)
    phone_number: Optional[str] = None


class Item(BaseModel):
    id: str
    quantity: int = Field(ge=1)


# ---------------------------------------------------------------------------
# Checkout — Line Items & Totals
# ---------------------------------------------------------------------------

class LineItem(BaseModel):
    id: str
    item: Item
    base_amount: int
    discount: int = 0
    subtotal: int
    tax: int = 0
    total: int


class Total(BaseModel):
    type: TotalType
    display_text: str
    amount: int


# ---------------------------------------------------------------------------
# Fulfillment Options (tagged union on `type`)
# ---------------------------------------------------------------------------

class FulfillmentOptionShipping(BaseModel):
    type: Literal["shipping"] = "shipping"
    id: str
    title: str
    subtitle: Optional[str] = None
    carrier: str
    earliest_delivery_time: str
    latest_delivery_time: str
    subtotal: int
    tax: int
    total: int


class FulfillmentOptionDigital(BaseModel):
    type: Literal["digital"] = "digital"
    id: str
    title: str
    subtitle: Optional[str] = None
    subtotal: int = 0
    tax: int = 0
    total: int = 0


FulfillmentOption = Annotated[
    Union[FulfillmentOptionShipping, FulfillmentOptionDigital],
    Field(discriminator="type"),
]


# ---------------------------------------------------------------------------
# Messages & Links
# ---------------------------------------------------------------------------

class Message(BaseModel):
    type: MessageLevel = MessageLevel.INFO
    code: Optional[str] = None
    param: Optional[str] = None
    content_type: Literal["plain", "markdown"] = "plain"
    content: str


class PaymentProvider(BaseModel):
    provider: str = "stripe"
    supported_payment_methods: list[str] = ["card"]


class Link(BaseModel):
    type: LinkType
    url: str


# ---------------------------------------------------------------------------
# Payment Data (for checkout completion)
# ---------------------------------------------------------------------------

class PaymentData(BaseModel):
    token: str
    provider: Literal["stripe"] = "stripe"
    billing_address: Optional[Address] = None


# ---------------------------------------------------------------------------
# Order (returned after successful checkout completion)
# ---------------------------------------------------------------------------

class Order(BaseModel):
    id: str
    checkout_session_id: str
    permalink_url: str


# ---------------------------------------------------------------------------
# Checkout Session (the core response object)
# ---------------------------------------------------------------------------

class CheckoutSession(BaseModel):
    id: str
    buyer: Optional[Buyer] = None
    payment_provider: Optional[PaymentProvider] = None
    status: CheckoutStatus = CheckoutStatus.NOT_READY_FOR_PAYMENT
    currency: str = "usd"
    line_items: list[LineItem] = []
    fulfillment_address: Optional[Address] = None
    fulfillment_options: list[FulfillmentOption] = []
    fulfillment_option_id: Optional[str] = None
    totals: list[Total] = []
    messages: list[Message] = []
    links: list[Link] = []
    order: Optional[Order] = None


class CheckoutSessionWithOrder(CheckoutSession):
    """Completed checkout session with order details."""
    order: Order


# ---------------------------------------------------------------------------
# Request Models
# ---------------------------------------------------------------------------

class CheckoutSessionCreateRequest(BaseModel):
    buyer: Optional[Buyer] = None
    items: list[Item] = Field(min_length=1)
    fulfillment_address: Optional[Address] = None


class CheckoutSessionUpdateRequest(BaseModel):
    buyer: Optional[Buyer] = None
    items: Optional[list[Item]] = None
    fulfillment_address: Optional[Address] = None
    fulfillment_option_id: Optional[str] = None


class CheckoutSessionCompleteRequest(BaseModel):
    buyer: Optional[Buyer] = None
    payment_data: PaymentData


# ---------------------------------------------------------------------------
# Error
# ---------------------------------------------------------------------------

class ACPError(BaseModel):
    type: str
    code: str
    message: str
    param: Optional[str] = None


class ACPErrorResponse(BaseModel):
    error: ACPError


# ---------------------------------------------------------------------------
# Delegate Payment API Models
# ---------------------------------------------------------------------------

class PaymentMethodCard(BaseModel):
    type: Literal["card"] = "card"
    card_number_type: Literal["fpan", "network_token"]
    number: str
    exp_month: Optional[str] = None
    exp_year: Optional[str] = None
    name: Optional[str] = None
    cvc: Optional[str] = None
    cryptogram: Optional[str] = None
    eci_value: Optional[str] = None
    checks_performed: Optional[list[str]] = None
    iin: Optional[str] = None
    display_card_funding_type: Literal["credit", "debit", "prepaid"]
    display_wallet_type: Optional[str] = None
    display_brand: Optional[str] = None
    display_last4: Optional[str] = None
    metadata: dict[str, Any]


class Allowance(BaseModel):
    reason: Literal["one_time"] = "one_time"
    max_amount: int
    currency: str
    checkout_session_id: str
    merchant_id: str
    expires_at: str


class RiskSignal(BaseModel):
    type: str
    score: int
    action: Literal["blocked", "manual_review", "authorized"]


class DelegatePaymentRequest(BaseModel):
    payment_method: PaymentMethodCard
    allowance: Allowance
    billing_address: Optional[Address] = None
    risk_signals: list[RiskSignal] = Field(min_length=1)
    metadata: dict[str, Any]


class DelegatePaymentResponse(BaseModel):
    id: str
    created: str
    metadata: dict[str, Any]


# ---------------------------------------------------------------------------
# Payment Intent API Models
# ---------------------------------------------------------------------------

class CreatePaymentIntentRequest(BaseModel):
    shared_payment_token: str
    amount: int
    currency: str
    merchant_id: Optional[str] = None
    metadata: Optional[dict[str, Any]] = None


class PaymentIntent(BaseModel):
    id: str
    status: PaymentIntentStatus
    amount: int
    currency: str
    vault_token_id: str
    created: str
    completed_at: Optional[str] = None
    metadata: Optional[dict[str, Any]] = None


# ---------------------------------------------------------------------------
# Product Catalog Models (not part of ACP, needed by agents and feeds)
# ---------------------------------------------------------------------------

class Product(BaseModel):
    """Catalog product as exposed by the merchant's product endpoints."""
    id: str
    name: str
    description: str = ""
    base_price: int  # in cents
    available_quantity: int = 0
    requires_shipping: bool = True
    category: str = ""
    brand: Optional[str] = None
    weight: Optional[str] = None
    image_url: Optional[str] = None
    additional_images: Optional[list[str]] = None
    condition: str = "new"
    material: Optional[str] = None
    gtin: Optional[str] = None
    mpn: Optional[str] = None
    review_count: Optional[int] = None
    review_rating: Optional[float] = None
    shipping_info: Optional[str] = None


class ProductList(BaseModel):
    products: list[Product]
    total: int


class ProductFeedItem(BaseModel):
    """One entry of the OpenAI product feed."""
    enable_search: bool = True
    enable_checkout: bool
    id: str
    title: str
    description: str
    link: str
    condition: str = "new"
    product_category: str
    brand: Optional[str] = None
    weight: Optional[str] = None
    image_link: str = ""
    additional_image_link: Optional[list[str]] = None
    price: str
    availability: Literal["in_stock", "out_of_stock"]
    inventory_quantity: int
    seller_name: str
    seller_url: str
    seller_privacy_policy: str
    seller_tos: str
    return_policy: str
    return_window: int = 30
    shipping: Optional[str] = None
    review_count: Optional[int] = None
    review_rating: Optional[float] = None
    gtin: Optional[str] = None
    mpn: Optional[str] = None
    material: Optional[str] = None


class ProductFeedValidationReport(BaseModel):
    valid: bool
    total_products: int
    searchable: int
    purchasable: int
    in_stock: int
    out_of_stock: int
    sample_product: Optional[ProductFeedItem] = None
    issues: list[str] = []
