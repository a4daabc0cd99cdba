"""
ACP Protocol — Agentic Commerce Protocol building blocks.

Shared by the merchant and PSP services and by agents that buy from them.

Example usage for merchants:
    from acp_protocol import ACPSellerAdapter, acp_headers, create_seller_router

    class MyShopAdapter(ACPSellerAdapter):
        async def on_create_session(self, request):
            # Your checkout logic
            ...

    app.include_router(create_seller_router(MyShopAdapter(), headers=acp_headers({"key"})))

Example usage for agents:
    from acp_protocol import ACPCheckoutClient, create_commerce_tools

    tools = create_commerce_tools(ACPCheckoutClient(merchant_url="https://merchant.com"))
    agent = Agent(tools=tools, ...)
"""

__version__ = "0.1.0"

# Export main models
from acp_protocol.models import (
    ACPError,
    ACPErrorResponse,
    Address,
    Buyer,
    CheckoutSession,
    CheckoutSessionCompleteRequest,
    CheckoutSessionCreateRequest,
    CheckoutSessionUpdateRequest,
    CheckoutSessionWithOrder,
    CheckoutStatus,
    DelegatePaymentRequest,
    DelegatePaymentResponse,
    FulfillmentOption,
    FulfillmentOptionDigital,
    FulfillmentOptionShipping,
    Item,
    LineItem,
    Order,
    PaymentData,
    PaymentIntent,
    PaymentMethodCard,
    Product,
    Total,
    TotalType,
)

# Export protocol plumbing
from acp_protocol.errors import ACPServiceError, register_error_handlers
from acp_protocol.headers import ACPRequestContext, acp_headers
from acp_protocol.idempotency import IdempotencyStore

# Export seller components
from acp_protocol.seller import ACPSellerAdapter, create_seller_router

# Export client and agent tools
from acp_protocol.client import ACPCheckoutClient, ACPClientError
from acp_protocol.agent import create_commerce_tools

__all__ = [
    "__version__",
    # Core Models
    "ACPError",
    "ACPErrorResponse",
    "Address",
    "Buyer",
    "CheckoutSession",
    "CheckoutSessionCompleteRequest",
    "CheckoutSessionCreateRequest",
    "CheckoutSessionUpdateRequest",
    "CheckoutSessionWithOrder",
    "CheckoutStatus",
    "DelegatePaymentRequest",
    "DelegatePaymentResponse",
    "FulfillmentOption",
    "FulfillmentOptionDigital",
    "FulfillmentOptionShipping",
    "Item",
    "LineItem",
    "Order",
    "PaymentData",
    "PaymentIntent",
    "PaymentMethodCard",
    "Product",
    "Total",
    "TotalType",
    # Protocol plumbing
    "ACPServiceError",
    "register_error_handlers",
    "ACPRequestContext",
    "acp_headers",
    "IdempotencyStore",
    # Seller Components
    "ACPSellerAdapter",
    "create_seller_router",
    # Client & Agent Components
    "ACPCheckoutClient",
    "ACPClientError",
    "create_commerce_tools",
]
