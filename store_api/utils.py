# store_api/utils.py

import random
import re
import string
import time

from store_api.models import Order, OrderRead, Product, ProductRead
from store_api.stock import StockLine

BASE36 = string.digits + string.ascii_lowercase


def generate_order_number() -> str:
    """ORD-<epoch millis>-<5 random base36 chars>, upper-cased."""
    suffix = "".join(random.choices(BASE36, k=5))
    return f"ORD-{int(time.time() * 1000)}-{suffix}".upper()


def slugify(name: str) -> str:
    slug = re.sub(r"[^a-z0-9]+", "-", name.lower())
    return slug.strip("-")


def stock_lines_for(order: Order) -> list[StockLine]:
    return [
        StockLine(product_id=item.product_id, size=item.size, quantity=item.quantity)
        for item in order.items
    ]


def format_order(order: Order) -> OrderRead:
    return OrderRead.model_validate(order, from_attributes=True)

def format_product(product: Product) -> ProductRead:
    return ProductRead.model_validate(product, from_attributes=True)
