# store_api/models.py

import uuid
from datetime import datetime, timezone
from enum import Enum

from pydantic import EmailStr, field_validator
from sqlalchemy import CheckConstraint, UniqueConstraint
from sqlmodel import SQLModel, Field, Relationship


def new_id() -> str:
    return uuid.uuid4().hex

def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class OrderStatus(str, Enum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    CANCELLED = "CANCELLED"
    # Display-only states, never requested through a status change
    CONFIRMED = "CONFIRMED"
    PROCESSING = "PROCESSING"
    SHIPPED = "SHIPPED"
    DELIVERED = "DELIVERED"

# Targets an admin may request through PATCH /admin/orders/{id}
REQUESTABLE_STATUSES = (OrderStatus.PENDING, OrderStatus.APPROVED, OrderStatus.CANCELLED)


class CollectionType(str, Enum):
    CURRENT = "CURRENT"
    DISCONTINUED = "DISCONTINUED"


# ------------------------------ Catalog ------------------------------

class Category(SQLModel, table=True):
    id: str = Field(default_factory=new_id, primary_key=True)
    name: str = Field(index=True, unique=True)
    image_url: str | None = None
    created_at: datetime = Field(default_factory=utcnow, nullable=False)
    updated_at: datetime = Field(default_factory=utcnow, nullable=False)

    products: list["Product"] = Relationship(back_populates="category")


class Collection(SQLModel, table=True):
    id: str = Field(default_factory=new_id, primary_key=True)
    name: str = Field(index=True)
    description: str
    available: bool = Field(default=True)
    collection_type: CollectionType = Field(default=CollectionType.CURRENT)
    discontinued_date: datetime | None = None
    created_at: datetime = Field(default_factory=utcnow, nullable=False)
    updated_at: datetime = Field(default_factory=utcnow, nullable=False)

    products: list["Product"] = Relationship(back_populates="collection")


class CategoryCreate(SQLModel):
    name: str = Field(min_length=1)
    image_url: str | None = None

class CategoryUpdate(SQLModel):
    name: str | None = Field(default=None, min_length=1)
    image_url: str | None = None

class CategoryRead(SQLModel):
    id: str
    name: str
    image_url: str | None
    product_count: int
    created_at: datetime
    updated_at: datetime

class CollectionCreate(SQLModel):
    name: str = Field(min_length=1)
    description: str = Field(min_length=1)
    available: bool = True
    collection_type: CollectionType = CollectionType.CURRENT
    discontinued_date: datetime | None = None

class CollectionUpdate(SQLModel):
    name: str | None = Field(default=None, min_length=1)
    description: str | None = None
    available: bool | None = None
    collection_type: CollectionType | None = None
    discontinued_date: datetime | None = None

class CollectionRead(SQLModel):
    id: str
    name: str
    description: str
    available: bool
    collection_type: CollectionType
    discontinued_date: datetime | None
    product_count: int
    created_at: datetime
    updated_at: datetime


class Product(SQLModel, table=True):
    id: str = Field(default_factory=new_id, primary_key=True)
    name: str = Field(index=True)
    slug: str = Field(index=True, unique=True)
    description: str | None = None
    price: float = Field(index=True)
    in_stock: bool = Field(default=True)
    is_archived: bool = Field(default=False)
    category_id: str | None = Field(default=None, foreign_key="category.id", index=True)
    collection_id: str | None = Field(default=None, foreign_key="collection.id", index=True)
    created_at: datetime = Field(default_factory=utcnow, nullable=False)
    updated_at: datetime = Field(default_factory=utcnow, nullable=False)

    category: Category | None = Relationship(back_populates="products")
    collection: Collection | None = Relationship(back_populates="products")
    sizes: list["ProductSize"] = Relationship(
        back_populates="product",
        sa_relationship_kwargs={"cascade": "all, delete-orphan", "order_by": "ProductSize.id"},
    )

    def update_stock_status(self):
        self.in_stock = any(size.stock > 0 for size in self.sizes)


class ProductSize(SQLModel, table=True):
    """One stock ledger entry, keyed by (product_id, size)."""

    __tablename__ = "product_size"
    __table_args__ = (
        UniqueConstraint("product_id", "size", name="uq_product_size"),
        CheckConstraint("stock >= 0", name="ck_product_size_stock"),
        CheckConstraint("reserved_stock >= 0", name="ck_product_size_reserved"),
    )

    id: int | None = Field(default=None, primary_key=True)
    product_id: str = Field(foreign_key="product.id", index=True)
    size: str
    price: float
    stock: int = Field(default=0)
    reserved_stock: int = Field(default=0)

    product: Product | None = Relationship(back_populates="sizes")


class ProductSizeInput(SQLModel):
    size: str = Field(min_length=1)
    price: float = Field(gt=0)
    stock: int = Field(default=0, ge=0)

class ProductSizeRead(SQLModel):
    id: int
    size: str
    price: float
    stock: int

class ProductCreate(SQLModel):
    name: str = Field(min_length=1)
    slug: str | None = None
    description: str | None = None
    price: float = Field(gt=0)
    is_archived: bool = False
    category_id: str | None = None
    collection_id: str | None = None
    sizes: list[ProductSizeInput] = []

class ProductUpdate(SQLModel):
    name: str | None = None
    slug: str | None = None
    description: str | None = None
    price: float | None = Field(default=None, gt=0)
    is_archived: bool | None = None
    category_id: str | None = None
    collection_id: str | None = None
    sizes: list[ProductSizeInput] | None = None

class CatalogRef(SQLModel):
    id: str
    name: str

class ProductRead(SQLModel):
    id: str
    name: str
    slug: str
    description: str | None
    price: float
    in_stock: bool
    is_archived: bool
    category_id: str | None = None
    collection_id: str | None = None
    category: CatalogRef | None = None
    collection: CatalogRef | None = None
    created_at: datetime
    updated_at: datetime
    sizes: list[ProductSizeRead]


# ------------------------------ Orders ------------------------------

class Order(SQLModel, table=True):
    __tablename__ = "orders"

    id: str = Field(default_factory=new_id, primary_key=True)
    order_number: str = Field(index=True, unique=True)
    total: float
    status: OrderStatus = Field(default=OrderStatus.PENDING, index=True)
    customer_name: str = Field(index=True)
    customer_email: str | None = None
    customer_phone: str
    shipping_address: str
    payment_proof_url: str | None = None
    created_at: datetime = Field(default_factory=utcnow, nullable=False)
    updated_at: datetime = Field(default_factory=utcnow, nullable=False)

    items: list["OrderItem"] = Relationship(
        back_populates="order",
        sa_relationship_kwargs={"cascade": "all, delete-orphan", "order_by": "OrderItem.id"},
    )


class OrderItem(SQLModel, table=True):
    __tablename__ = "order_item"

    id: int | None = Field(default=None, primary_key=True)
    order_id: str = Field(foreign_key="orders.id", index=True)
    # Resolved against product_size by (product_id, size) at transition time
    product_id: str = Field(index=True)
    name: str
    price: float
    size: str
    quantity: int

    order: Order | None = Relationship(back_populates="items")


class OrderItemRead(SQLModel):
    id: int
    product_id: str
    name: str
    price: float
    size: str
    quantity: int

class OrderRead(SQLModel):
    id: str
    order_number: str
    total: float
    status: OrderStatus
    customer_name: str
    customer_email: str | None
    customer_phone: str
    shipping_address: str
    payment_proof_url: str | None
    created_at: datetime
    updated_at: datetime
    items: list[OrderItemRead]


class CartItem(SQLModel):
    id: str = Field(min_length=1)
    name: str = Field(min_length=1)
    price: float = Field(gt=0)
    quantity: int = Field(gt=0)
    size: str = "One Size"

class OrderCreate(SQLModel):
    full_name: str = Field(min_length=2)
    phone: str = Field(min_length=7)
    email: EmailStr | None = None
    instagram: str | None = None
    province: str = Field(min_length=1)
    address: str = Field(min_length=5)
    payment_proof_url: str
    items: list[CartItem] = Field(min_length=1)
    total: float = Field(gt=0)

    @field_validator("payment_proof_url")
    @classmethod
    def payment_proof_must_be_uploaded(cls, value: str) -> str:
        if not (value.startswith("http") or value.startswith("/uploads/")):
            raise ValueError("Please upload a valid payment proof")
        return value

class OrderStatusUpdate(SQLModel):
    status: OrderStatus

    @field_validator("status")
    @classmethod
    def status_must_be_requestable(cls, value: OrderStatus) -> OrderStatus:
        if value not in REQUESTABLE_STATUSES:
            raise ValueError(f"Status must be one of: {', '.join(s.value for s in REQUESTABLE_STATUSES)}")
        return value


# ------------------------------ Misc ------------------------------

class CacheInvalidateRequest(SQLModel):
    key: str | None = None

class PurchaseLimitRead(SQLModel):
    allowed: bool
    current_purchases: int
    limit: int
    timeout_remaining: int | None = None
    timeout_formatted: str | None = None

class NewArrivalRead(SQLModel):
    id: str
    name: str
    slug: str
    price: float
    in_stock: bool
    min_price: float
    max_price: float

class AdminStats(SQLModel):
    total_products: int = 0
    total_orders: int = 0
    total_customers: int = 0
    total_revenue: int = 0
    categories: int = 0
    collections: int = 0
    low_stock_products: int = 0
