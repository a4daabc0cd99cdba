"""
Product catalog for the Merchant Service.

Read-only lookups used by checkout (`get_products`, `check_availability`)
and the product endpoints (`search_products`, `list_products`), plus the
demo catalog seed.
"""

from __future__ import annotations

import logging
from typing import Optional

from sqlalchemy import case, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from acp_protocol.models import Product, ProductList
from services.merchant.database import ProductRow, async_session

logger = logging.getLogger(__name__)


DEMO_PRODUCTS: list[dict] = [
    {
        "id": "item_123",
        "name": "Simple wooden chair",
        "description": "A birch wood chair for all your needs. Perfect for everyday use and built to last.",
        "base_price": 2999,
        "available_quantity": 100,
        "requires_shipping": True,
        "category": "Furniture > Chairs",
        "brand": "Ikea",
        "weight": "1.2 lb",
        "image_url": "https://www.ikea.com/us/en/images/products/pinntorp-chair-light-brown-stained__1296225_pe935730_s5.jpg",
        "condition": "new",
        "material": "Birch wood",
        "review_count": 42,
        "review_rating": 4.5,
        "shipping_info": "US::Standard:5.00 USD",
    },
    {
        "id": "item_456",
        "name": "Funky looking chair",
        "description": "The most advanced chair on the market. Premium quality construction with cutting-edge features.",
        "base_price": 4999,
        "available_quantity": 50,
        "requires_shipping": True,
        "category": "Furniture > Chairs",
        "brand": "West Coast Modern",
        "weight": "1.5 lb",
        "image_url": "https://westcoastmodernla.com/cdn/shop/products/IMG_7948-rotated_f21f9e48-79e2-44ac-a071-635aecc7f872.jpg",
        "condition": "new",
        "material": "Mink Fur",
        "review_count": 3342,
        "review_rating": 3.4,
        "shipping_info": "US::Standard:5.00 USD",
    },
    {
        "id": "item_789",
        "name": "Awesome minimalist chair",
        "description": "Your children will love you.",
        "base_price": 9900,
        "available_quantity": 999999,
        "requires_shipping": False,
        "category": "Furniture > Chairs",
        "brand": "KidsLoveIt",
        "weight": "0.8 lb",
        "image_url": "https://media.printables.com/media/prints/167236/images/1555596_5f9b20f1-726a-4c1a-ac19-90d3ce6534c9/thumbs/inside/1280x960/png/chair-for-boy.webp",
        "condition": "new",
        "review_count": 856,
        "review_rating": 4.9,
    },
    {
        "id": "item_101",
        "name": "Classic folding chair",
        "description": "A classic folding chair for all your needs. It will squeak, but it's a classic.",
        "base_price": 19999,
        "available_quantity": 25,
        "requires_shipping": True,
        "category": "Furniture > Chairs",
        "brand": "HomeGoods",
        "weight": "0.8 lb",
        "image_url": "https://www.stagedrop.com/resize/images/nps/NPS-974.jpg",
        "condition": "new",
        "material": "Leather and Metal and Dreams",
        "review_count": 312,
        "review_rating": 4.7,
        "shipping_info": "US::Standard:5.00 USD",
    },
]


def product_from_row(row: ProductRow) -> Product:
    return Product(
        id=row.id,
        name=row.name,
        description=row.description or "",
        base_price=row.base_price,
        available_quantity=row.available_quantity or 0,
        requires_shipping=bool(row.requires_shipping),
        category=row.category or "",
        brand=row.brand,
        weight=row.weight,
        image_url=row.image_url,
        additional_images=row.additional_images,
        condition=row.condition or "new",
        material=row.material,
        gtin=row.gtin,
        mpn=row.mpn,
        review_count=row.review_count,
        review_rating=row.review_rating,
        shipping_info=row.shipping_info,
    )


async def get_product(db: AsyncSession, product_id: str) -> Optional[Product]:
    row = await db.get(ProductRow, product_id)
    return product_from_row(row) if row else None


async def get_products(db: AsyncSession, product_ids: list[str]) -> dict[str, Product]:
    """Load several products in one query so a checkout sees a single snapshot."""
    if not product_ids:
        return {}
    result = await db.execute(select(ProductRow).where(ProductRow.id.in_(set(product_ids))))
    return {row.id: product_from_row(row) for row in result.scalars()}


def check_availability(product: Optional[Product], quantity: int) -> bool:
    return product is not None and product.available_quantity >= quantity


async def list_products(db: AsyncSession) -> list[Product]:
    result = await db.execute(select(ProductRow).order_by(ProductRow.id))
    return [product_from_row(row) for row in result.scalars()]


async def search_products(
    db: AsyncSession,
    query: Optional[str] = None,
    limit: Optional[int] = None,
) -> ProductList:
    """
    Case-insensitive search over name and description.
    Name matches rank ahead of description-only matches.
    """
    stmt = select(ProductRow)
    if query and query.strip():
        pattern = f"%{query.strip().lower()}%"
        name_match = func.lower(ProductRow.name).like(pattern)
        stmt = stmt.where(
            or_(name_match, func.lower(ProductRow.description).like(pattern))
        ).order_by(case((name_match, 0), else_=1), ProductRow.name)
    else:
        stmt = stmt.order_by(ProductRow.id)

    result = await db.execute(stmt)
    products = [product_from_row(row) for row in result.scalars()]
    total = len(products)
    if limit is not None:
        products = products[:limit]
    return ProductList(products=products, total=total)


async def category_counts(db: AsyncSession) -> list[dict]:
    products = await list_products(db)
    physical = sum(1 for p in products if p.requires_shipping)
    return [
        {"id": "physical", "name": "Physical Products", "count": physical},
        {"id": "digital", "name": "Digital Products", "count": len(products) - physical},
    ]


async def seed_products(products: Optional[list[dict]] = None) -> int:
    """Upsert the demo catalog; returns the number of products written."""
    products = products if products is not None else DEMO_PRODUCTS
    async with async_session() as db:
        for data in products:
            await db.merge(ProductRow(**data))
        await db.commit()
    logger.info("Seeded %d catalog products", len(products))
    return len(products)
