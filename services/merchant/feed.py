"""
Product feed generation in the OpenAI product feed format (JSON, XML, CSV).
"""

from __future__ import annotations

import csv
import io
import json
import xml.etree.ElementTree as ET

from acp_protocol.models import Product, ProductFeedItem, ProductFeedValidationReport


SELLER_NAME = "Example Store"
DEFAULT_SHIPPING = "US::Standard:5.00 USD"

XML_FIELDS = [
    "id", "title", "description", "link", "image_link", "price", "availability",
    "brand", "product_category", "enable_search", "enable_checkout", "seller_name",
    "seller_url", "inventory_quantity", "condition", "weight", "shipping",
]


def format_price(cents: int) -> str:
    return f"{cents / 100:.2f} USD"


class ProductFeedGenerator:
    def __init__(self, base_url: str):
        self.base_url = base_url.rstrip("/")

    def feed_item(self, product: Product) -> ProductFeedItem:
        in_stock = product.available_quantity > 0
        return ProductFeedItem(
            enable_search=True,
            enable_checkout=in_stock,
            id=product.id,
            title=product.name,
            description=product.description,
            link=f"{self.base_url}/products/{product.id}",
            condition=product.condition or "new",
            product_category=product.category,
            brand=product.brand,
            weight=product.weight,
            image_link=product.image_url or "",
            additional_image_link=product.additional_images,
            price=format_price(product.base_price),
            availability="in_stock" if in_stock else "out_of_stock",
            inventory_quantity=product.available_quantity,
            seller_name=SELLER_NAME,
            seller_url=self.base_url,
            seller_privacy_policy=f"{self.base_url}/privacy",
            seller_tos=f"{self.base_url}/terms",
            return_policy=f"{self.base_url}/returns",
            return_window=30,
            shipping=(product.shipping_info or DEFAULT_SHIPPING) if product.requires_shipping else None,
            review_count=product.review_count,
            review_rating=product.review_rating,
            gtin=product.gtin,
            mpn=product.mpn,
            material=product.material,
        )

    def generate(self, products: list[Product]) -> list[ProductFeedItem]:
        return [self.feed_item(p) for p in products]

    def to_json(self, products: list[Product]) -> str:
        return json.dumps(
            [item.model_dump(mode="json", exclude_none=True) for item in self.generate(products)],
            indent=2,
        )

    def to_csv(self, products: list[Product]) -> str:
        items = self.generate(products)
        if not items:
            return ""
        headers = list(ProductFeedItem.model_fields)
        buffer = io.StringIO()
        writer = csv.writer(buffer, quoting=csv.QUOTE_ALL, lineterminator="\n")
        writer.writerow(headers)
        for item in items:
            row = []
            for key in headers:
                value = getattr(item, key)
                if value is None:
                    row.append("")
                elif isinstance(value, list):
                    row.append("|".join(value))
                elif isinstance(value, bool):
                    row.append("true" if value else "false")
                else:
                    row.append(str(value))
            writer.writerow(row)
        return buffer.getvalue()

    def to_xml(self, products: list[Product]) -> str:
        root = ET.Element("products")
        for item in self.generate(products):
            node = ET.SubElement(root, "item")
            for key in XML_FIELDS:
                value = getattr(item, key)
                if value is None or value == "":
                    if key in ("condition", "weight", "shipping"):
                        continue
                    value = ""
                if isinstance(value, bool):
                    value = "true" if value else "false"
                ET.SubElement(node, key).text = str(value)
        ET.indent(root)
        body = ET.tostring(root, encoding="unicode")
        return f'<?xml version="1.0" encoding="UTF-8"?>\n{body}\n'

    def validate(self, products: list[Product]) -> ProductFeedValidationReport:
        items = self.generate(products)
        issues: list[str] = []
        for item in items:
            if len(item.title) > 150:
                issues.append(f"Product {item.id}: title exceeds 150 characters")
            if len(item.description) > 5000:
                issues.append(f"Product {item.id}: description exceeds 5000 characters")
            if "USD" not in item.price:
                issues.append(f"Product {item.id}: price missing currency code")
            if not item.image_link.startswith(("http://", "https://")):
                issues.append(f"Product {item.id}: invalid image URL")
            if item.inventory_quantity == 0 and item.enable_checkout:
                issues.append(
                    f"Product {item.id}: enable_checkout should be false when inventory is 0"
                )
            if item.inventory_quantity == 0 and item.availability != "out_of_stock":
                issues.append(
                    f"Product {item.id}: availability should be out_of_stock when inventory is 0"
                )

        return ProductFeedValidationReport(
            valid=not issues,
            total_products=len(items),
            searchable=sum(1 for i in items if i.enable_search),
            purchasable=sum(1 for i in items if i.enable_checkout),
            in_stock=sum(1 for i in items if i.availability == "in_stock"),
            out_of_stock=sum(1 for i in items if i.availability == "out_of_stock"),
            sample_product=items[0] if items else None,
            issues=issues,
        )
