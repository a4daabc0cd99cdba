"""
Merchant Service — FastAPI app implementing ACP Checkout endpoints.

Owns the checkout session state machine, pricing and fulfillment, and
order creation. Payment is delegated to the PSP through vault tokens.
"""

from __future__ import annotations

import logging
import os
from contextlib import asynccontextmanager
from typing import Optional

import uvicorn
from fastapi import Depends, FastAPI, Query, Response
from sqlalchemy.ext.asyncio import AsyncSession

from acp_protocol.errors import ACPServiceError, register_error_handlers
from acp_protocol.headers import ACPRequestContext, acp_headers
from acp_protocol.idempotency import IdempotencyStore
from acp_protocol.models import Product, ProductFeedValidationReport, ProductList
from acp_protocol.seller import create_seller_router
from services.merchant import catalog
from services.merchant.database import (
    IdempotencyRecordRow,
    async_session,
    engine,
    get_session,
    init_db,
)
from services.merchant.feed import ProductFeedGenerator
from services.merchant.sessions import MERCHANT_BASE_URL, SessionManager


MERCHANT_API_KEY = os.getenv("MERCHANT_API_KEY", "test_api_key_123")
SEED_CATALOG_ON_STARTUP = os.getenv("SEED_CATALOG_ON_STARTUP", "true").lower() == "true"
FEED_CACHE_CONTROL = "public, max-age=900"

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    await init_db()
    if SEED_CATALOG_ON_STARTUP:
        await catalog.seed_products()
    yield
    await engine.dispose()


app = FastAPI(
    title="ACP Merchant Service",
    description="ACP-compliant merchant: checkout sessions, catalog and product feed",
    version="0.1.0",
    lifespan=lifespan,
)
register_error_handlers(app)

session_manager = SessionManager()
checkout_headers = acp_headers({MERCHANT_API_KEY})
catalog_headers = acp_headers({MERCHANT_API_KEY}, require_signature=False)
feed_generator = ProductFeedGenerator(MERCHANT_BASE_URL)

# Mount the ACP checkout router
checkout_router = create_seller_router(
    session_manager,
    headers=checkout_headers,
    idempotency=IdempotencyStore(async_session, IdempotencyRecordRow),
)
app.include_router(checkout_router)


# ── Product catalog endpoints ────────────────────────────────────────────

@app.get("/products", response_model=ProductList)
async def list_products_endpoint(
    q: Optional[str] = Query(None, description="Search query"),
    limit: Optional[int] = Query(None, ge=1, le=100),
    db: AsyncSession = Depends(get_session),
    context: ACPRequestContext = Depends(catalog_headers),
):
    return await catalog.search_products(db, q, limit)


@app.get("/products/categories")
async def categories_endpoint(
    db: AsyncSession = Depends(get_session),
    context: ACPRequestContext = Depends(catalog_headers),
):
    return {"categories": await catalog.category_counts(db)}


@app.get("/products/{product_id}", response_model=Product)
async def product_details_endpoint(
    product_id: str,
    db: AsyncSession = Depends(get_session),
    context: ACPRequestContext = Depends(catalog_headers),
):
    product = await catalog.get_product(db, product_id)
    if product is None:
        raise ACPServiceError(404, "invalid_request", "product_not_found", "Product not found")
    return product


# ── Product feed (public) ────────────────────────────────────────────────

@app.get("/product-feed.json")
async def product_feed_json(db: AsyncSession = Depends(get_session)):
    products = await catalog.list_products(db)
    return Response(
        content=feed_generator.to_json(products),
        media_type="application/json",
        headers={"Cache-Control": FEED_CACHE_CONTROL},
    )


@app.get("/product-feed.xml")
async def product_feed_xml(db: AsyncSession = Depends(get_session)):
    products = await catalog.list_products(db)
    return Response(
        content=feed_generator.to_xml(products),
        media_type="application/xml",
        headers={"Cache-Control": FEED_CACHE_CONTROL},
    )


@app.get("/product-feed.csv")
async def product_feed_csv(db: AsyncSession = Depends(get_session)):
    products = await catalog.list_products(db)
    return Response(
        content=feed_generator.to_csv(products),
        media_type="text/csv",
        headers={
            "Cache-Control": FEED_CACHE_CONTROL,
            "Content-Disposition": 'attachment; filename="product-feed.csv"',
        },
    )


@app.get("/product-feed/validate", response_model=ProductFeedValidationReport)
async def product_feed_validate(db: AsyncSession = Depends(get_session)):
    products = await catalog.list_products(db)
    return feed_generator.validate(products)


@app.get("/health")
async def health():
    return {"status": "ok", "service": "merchant"}


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    uvicorn.run(app, host="0.0.0.0", port=int(os.getenv("MERCHANT_PORT", "3000")))
