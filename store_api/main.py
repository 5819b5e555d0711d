# store_api/main.py

from fastapi import FastAPI, Depends, HTTPException, Request
from fastapi.responses import JSONResponse, StreamingResponse
from sqlalchemy import func
from sqlmodel import Session, select, or_, col
from typing import Annotated
from contextlib import asynccontextmanager
import asyncio
import logging
import math
import redis

from store_api import settings
from store_api.broadcast import broadcaster
from store_api.cache import (
    get_redis, get_cached_data, cache_data, invalidate_cache, invalidate_all_cache,
    PRODUCTS_KEY, product_detail_key, product_list_key
)
from store_api.db import create_db_and_tables, get_session
from store_api.dispatch import SideEffectDispatcher, get_dispatcher, dispatcher
from store_api.messaging import ensure_order_events_topic, start_producer
from store_api.models import (
    Order, OrderItem, OrderCreate, OrderRead, OrderStatus, OrderStatusUpdate,
    Product, ProductSize, ProductCreate, ProductUpdate, ProductRead, NewArrivalRead,
    Category, CategoryCreate, CategoryUpdate, CategoryRead,
    Collection, CollectionCreate, CollectionUpdate, CollectionRead,
    AdminStats, CacheInvalidateRequest, PurchaseLimitRead, utcnow
)
from store_api.orders import change_order_status, OrderNotFound, InsufficientStockForApproval
from store_api.purchase_limit import (
    check_purchase_limit, record_purchase, get_client_ip, format_time_remaining
)
from store_api.rate_limit import RateLimitExceeded, enforce_rate_limit, rate_limit_headers
from store_api.stock import StockLine, check_stock_availability
from store_api.utils import (
    generate_order_number, slugify, stock_lines_for, format_order, format_product
)


# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Lifespan event to manage application startup and shutdown.
    """
    # Initialize the database and create tables
    create_db_and_tables()
    logger.info("Database created and tables ensured.")

    if settings.KAFKA_ENABLED:
        await ensure_order_events_topic()
        dispatcher.producer = await start_producer()

    # Start the side-effect worker as a background task
    worker_task = asyncio.create_task(dispatcher.run())
    logger.info("Side-effect worker task started.")

    try:
        yield
    finally:
        # Cancel the worker task on shutdown
        worker_task.cancel()
        try:
            await worker_task
        except asyncio.CancelledError:
            logger.info("Side-effect worker task has been cancelled.")

        if dispatcher.producer is not None:
            # Wait for all pending messages to be delivered or expire.
            await dispatcher.producer.stop()
            dispatcher.producer = None
            logger.info("Kafka producer stopped.")


app = FastAPI(lifespan=lifespan, title="Storefront API", version="1.0.0")


def error_response(status_code: int, error: str, **extra) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": error, **extra})


@app.exception_handler(RateLimitExceeded)
async def rate_limit_exceeded_handler(request: Request, exc: RateLimitExceeded):
    logger.warning(f"Rate limit exceeded for {get_client_ip(request)} on {request.url.path}")
    return JSONResponse(
        status_code=429,
        content={"error": "Too many requests"},
        headers=rate_limit_headers(exc.result),
    )


# -------------------------- Catalog --------------------------

PRODUCT_SORTS = {
    "newest": col(Product.created_at).desc(),
    "price-asc": col(Product.price).asc(),
    "price-desc": col(Product.price).desc(),
    "name-asc": col(Product.name).asc(),
    "name-desc": col(Product.name).desc(),
}

NEW_ARRIVALS_LIMIT = 8


@app.get("/products", dependencies=[Depends(enforce_rate_limit)])
def get_products(
    session: Annotated[Session, Depends(get_session)],
    cache: Annotated[redis.Redis, Depends(get_redis)],
    category: str | None = None,
    collection: str | None = None,
    search: str | None = None,
    min_price: float | None = None,
    max_price: float | None = None,
    sort: str = "newest",
    page: int = 1,
    limit: int = 12,
):
    page = max(page, 1)
    limit = min(max(limit, 1), 100)
    cache_key = product_list_key(category, collection, search, sort, page, limit, min_price, max_price)

    cached_products = get_cached_data(cache, cache_key)
    if cached_products:
        return cached_products

    statement = select(Product).where(Product.is_archived == False)
    if category:
        statement = statement.where(Product.category_id == category)
    if collection:
        statement = statement.where(Product.collection_id == collection)
    if search:
        pattern = f"%{search.lower()}%"
        statement = statement.where(or_(
            func.lower(Product.name).like(pattern),
            func.lower(func.coalesce(Product.description, "")).like(pattern),
        ))
    if min_price is not None:
        statement = statement.where(Product.price >= min_price)
    if max_price is not None:
        statement = statement.where(Product.price <= max_price)

    total = session.exec(select(func.count()).select_from(statement.subquery())).one()
    products = session.exec(
        statement.order_by(PRODUCT_SORTS.get(sort, PRODUCT_SORTS["newest"]))
        .offset((page - 1) * limit)
        .limit(limit)
    ).all()

    response = {
        "products": [format_product(product).model_dump(mode="json") for product in products],
        "pagination": {
            "total": total,
            "page": page,
            "limit": limit,
            "total_pages": math.ceil(total / limit),
        },
    }
    cache_data(cache, cache_key, response)
    return response


@app.get("/products/new-arrivals", response_model=list[NewArrivalRead], dependencies=[Depends(enforce_rate_limit)])
def get_new_arrivals(
    session: Annotated[Session, Depends(get_session)],
    cache: Annotated[redis.Redis, Depends(get_redis)],
):
    # lives under products:* so product writes drop it with the list pages
    cache_key = product_list_key("new-arrivals")
    cached_arrivals = get_cached_data(cache, cache_key)
    if cached_arrivals is not None:
        return cached_arrivals

    products = session.exec(
        select(Product)
        .where(Product.is_archived == False)
        .order_by(col(Product.created_at).desc())
        .limit(NEW_ARRIVALS_LIMIT)
    ).all()

    arrivals = []
    for product in products:
        prices = [size.price for size in product.sizes] or [product.price]
        arrivals.append(NewArrivalRead(
            id=product.id,
            name=product.name,
            slug=product.slug,
            price=product.price,
            in_stock=product.in_stock,
            min_price=min(prices),
            max_price=max(prices),
        ))

    cache_data(cache, cache_key, [arrival.model_dump(mode="json") for arrival in arrivals])
    return arrivals


@app.get("/products/{slug}", response_model=ProductRead, dependencies=[Depends(enforce_rate_limit)])
def get_product(
    slug: str,
    session: Annotated[Session, Depends(get_session)],
    cache: Annotated[redis.Redis, Depends(get_redis)],
):
    cached_product = get_cached_data(cache, product_detail_key(slug))
    if cached_product:
        return cached_product

    product = session.exec(
        select(Product).where(Product.slug == slug, Product.is_archived == False)
    ).first()
    if not product:
        raise HTTPException(status_code=404, detail="Product not found")

    product_read = format_product(product)
    cache_data(cache, product_detail_key(slug), product_read.model_dump(mode="json"))
    return product_read


def check_catalog_refs(session: Session, category_id: str | None, collection_id: str | None) -> None:
    if category_id and not session.get(Category, category_id):
        raise HTTPException(status_code=400, detail="Category not found")
    if collection_id and not session.get(Collection, collection_id):
        raise HTTPException(status_code=400, detail="Collection not found")


@app.get("/admin/products", response_model=list[ProductRead])
def get_admin_products(
    session: Annotated[Session, Depends(get_session)],
    category_id: str | None = None,
):
    statement = select(Product)
    if category_id:
        statement = statement.where(Product.category_id == category_id)
    products = session.exec(statement.order_by(col(Product.updated_at).desc())).all()
    return [format_product(product) for product in products]


@app.post("/admin/products", response_model=ProductRead, status_code=201)
async def create_product(
    product: ProductCreate,
    session: Annotated[Session, Depends(get_session)],
    side_effects: Annotated[SideEffectDispatcher, Depends(get_dispatcher)],
):
    slug = product.slug or slugify(product.name)
    if session.exec(select(Product).where(Product.slug == slug)).first():
        raise HTTPException(status_code=400, detail="Product with this slug already exists")
    check_catalog_refs(session, product.category_id, product.collection_id)

    product_db = Product(
        name=product.name,
        slug=slug,
        description=product.description,
        price=product.price,
        is_archived=product.is_archived,
        category_id=product.category_id,
        collection_id=product.collection_id,
        sizes=[ProductSize(**size.model_dump()) for size in product.sizes],
    )
    product_db.update_stock_status()

    session.add(product_db)
    session.commit()
    session.refresh(product_db)
    logger.info(f"Product {product_db.slug} created with {len(product_db.sizes)} sizes.")

    side_effects.invalidate([PRODUCTS_KEY])
    side_effects.notify("product_created", product_db.slug, name=product_db.name)
    return format_product(product_db)


@app.put("/admin/products/{product_id}", response_model=ProductRead)
async def update_product(
    product_id: str,
    updated_product: ProductUpdate,
    session: Annotated[Session, Depends(get_session)],
    side_effects: Annotated[SideEffectDispatcher, Depends(get_dispatcher)],
):
    product_db = session.get(Product, product_id)
    if not product_db:
        raise HTTPException(status_code=404, detail="Product not found")

    previous_slug = product_db.slug
    product_data = updated_product.model_dump(exclude_unset=True)

    new_slug = product_data.get("slug")
    if new_slug and new_slug != previous_slug:
        clash = session.exec(select(Product).where(Product.slug == new_slug)).first()
        if clash and clash.id != product_id:
            raise HTTPException(status_code=400, detail="Product with this slug already exists")
    check_catalog_refs(session, product_data.get("category_id"), product_data.get("collection_id"))

    sizes = product_data.pop("sizes", None)
    for key, value in product_data.items():
        setattr(product_db, key, value)

    if sizes is not None:
        # full replacement of the size list
        product_db.sizes.clear()
        session.flush()
        product_db.sizes.extend(ProductSize(**size) for size in sizes)

    product_db.update_stock_status()
    product_db.updated_at = utcnow()
    session.add(product_db)
    session.commit()
    session.refresh(product_db)

    side_effects.invalidate(sorted({PRODUCTS_KEY, product_detail_key(previous_slug), product_detail_key(product_db.slug)}))
    side_effects.notify("product_updated", product_db.slug, name=product_db.name)
    return format_product(product_db)


# -------------------------- Categories & collections --------------------------

def count_rows(session: Session, model, *criteria) -> int:
    return session.exec(select(func.count()).select_from(model).where(*criteria)).one()

def category_read(session: Session, category: Category) -> CategoryRead:
    product_count = count_rows(session, Product, Product.category_id == category.id)
    return CategoryRead(**category.model_dump(), product_count=product_count)

def collection_read(session: Session, collection: Collection) -> CollectionRead:
    product_count = count_rows(session, Product, Product.collection_id == collection.id)
    return CollectionRead(**collection.model_dump(), product_count=product_count)

def product_cache_keys(products: list[Product]) -> list[str]:
    """Cache keys holding any of products; they embed category and collection names."""
    return [PRODUCTS_KEY, *sorted(product_detail_key(product.slug) for product in products)]


@app.get("/admin/categories", response_model=list[CategoryRead])
def get_categories(session: Annotated[Session, Depends(get_session)]):
    categories = session.exec(select(Category).order_by(col(Category.name).asc())).all()
    return [category_read(session, category) for category in categories]


@app.post("/admin/categories", response_model=CategoryRead, status_code=201)
def create_category(category: CategoryCreate, session: Annotated[Session, Depends(get_session)]):
    if session.exec(select(Category).where(Category.name == category.name)).first():
        raise HTTPException(status_code=400, detail="Category with this name already exists")

    category_db = Category(name=category.name, image_url=category.image_url or None)
    session.add(category_db)
    session.commit()
    session.refresh(category_db)
    logger.info(f"Category {category_db.name} created.")
    return category_read(session, category_db)


@app.get("/admin/categories/{category_id}", response_model=CategoryRead)
def get_category(category_id: str, session: Annotated[Session, Depends(get_session)]):
    category_db = session.get(Category, category_id)
    if not category_db:
        raise HTTPException(status_code=404, detail="Category not found")
    return category_read(session, category_db)


@app.put("/admin/categories/{category_id}", response_model=CategoryRead)
async def update_category(
    category_id: str,
    updated_category: CategoryUpdate,
    session: Annotated[Session, Depends(get_session)],
    side_effects: Annotated[SideEffectDispatcher, Depends(get_dispatcher)],
):
    category_db = session.get(Category, category_id)
    if not category_db:
        raise HTTPException(status_code=404, detail="Category not found")

    category_data = updated_category.model_dump(exclude_unset=True)
    new_name = category_data.get("name")
    if new_name and new_name != category_db.name:
        clash = session.exec(select(Category).where(Category.name == new_name)).first()
        if clash and clash.id != category_id:
            raise HTTPException(status_code=400, detail="Category with this name already exists")
    if "image_url" in category_data:
        category_data["image_url"] = category_data["image_url"] or None

    for key, value in category_data.items():
        setattr(category_db, key, value)
    category_db.updated_at = utcnow()
    session.add(category_db)
    session.commit()
    session.refresh(category_db)

    side_effects.invalidate(product_cache_keys(category_db.products))
    return category_read(session, category_db)


@app.delete("/admin/categories/{category_id}")
def delete_category(category_id: str, session: Annotated[Session, Depends(get_session)]):
    category_db = session.get(Category, category_id)
    if not category_db:
        raise HTTPException(status_code=404, detail="Category not found")
    if count_rows(session, Product, Product.category_id == category_id):
        raise HTTPException(status_code=400, detail="Cannot delete category with associated products")

    session.delete(category_db)
    session.commit()
    logger.info(f"Category {category_id} deleted.")
    return {"success": True}


@app.get("/admin/collections", response_model=list[CollectionRead])
def get_collections(session: Annotated[Session, Depends(get_session)]):
    collections = session.exec(select(Collection).order_by(col(Collection.name).asc())).all()
    return [collection_read(session, collection) for collection in collections]


@app.post("/admin/collections", response_model=CollectionRead, status_code=201)
def create_collection(collection: CollectionCreate, session: Annotated[Session, Depends(get_session)]):
    collection_db = Collection.model_validate(collection)
    session.add(collection_db)
    session.commit()
    session.refresh(collection_db)
    logger.info(f"Collection {collection_db.name} created.")
    return collection_read(session, collection_db)


@app.get("/admin/collections/{collection_id}", response_model=CollectionRead)
def get_collection(collection_id: str, session: Annotated[Session, Depends(get_session)]):
    collection_db = session.get(Collection, collection_id)
    if not collection_db:
        raise HTTPException(status_code=404, detail="Collection not found")
    return collection_read(session, collection_db)


@app.put("/admin/collections/{collection_id}", response_model=CollectionRead)
async def update_collection(
    collection_id: str,
    updated_collection: CollectionUpdate,
    session: Annotated[Session, Depends(get_session)],
    side_effects: Annotated[SideEffectDispatcher, Depends(get_dispatcher)],
):
    collection_db = session.get(Collection, collection_id)
    if not collection_db:
        raise HTTPException(status_code=404, detail="Collection not found")

    for key, value in updated_collection.model_dump(exclude_unset=True).items():
        setattr(collection_db, key, value)
    collection_db.updated_at = utcnow()
    session.add(collection_db)
    session.commit()
    session.refresh(collection_db)

    side_effects.invalidate(product_cache_keys(collection_db.products))
    return collection_read(session, collection_db)


@app.delete("/admin/collections/{collection_id}")
def delete_collection(collection_id: str, session: Annotated[Session, Depends(get_session)]):
    collection_db = session.get(Collection, collection_id)
    if not collection_db:
        raise HTTPException(status_code=404, detail="Collection not found")
    if count_rows(session, Product, Product.collection_id == collection_id):
        raise HTTPException(status_code=400, detail="Cannot delete collection with associated products")

    session.delete(collection_db)
    session.commit()
    logger.info(f"Collection {collection_id} deleted.")
    return {"message": "Collection deleted successfully"}


# -------------------------- Dashboard --------------------------

LOW_STOCK_THRESHOLD = 5

@app.get("/admin/stats", response_model=AdminStats)
def get_admin_stats(session: Annotated[Session, Depends(get_session)]):
    """
    Dashboard counters. Revenue counts APPROVED orders only; a size is low on
    stock below LOW_STOCK_THRESHOLD units. Returns zeros if the database fails.
    """
    try:
        revenue = session.exec(
            select(func.coalesce(func.sum(Order.total), 0)).where(Order.status == OrderStatus.APPROVED)
        ).one()
        customers = session.exec(
            select(func.count(func.distinct(Order.customer_email)))
            .where(col(Order.customer_email).is_not(None))
        ).one()
        return AdminStats(
            total_products=count_rows(session, Product, Product.is_archived == False),
            total_orders=count_rows(session, Order),
            total_customers=customers,
            total_revenue=round(revenue),
            categories=count_rows(session, Category),
            collections=count_rows(session, Collection),
            low_stock_products=count_rows(session, ProductSize, ProductSize.stock < LOW_STOCK_THRESHOLD),
        )
    except Exception as e:
        session.rollback()
        logger.error(f"Error fetching admin stats: {e}")
        return AdminStats()


# -------------------------- Checkout --------------------------

@app.get("/purchase-limit/check", response_model=PurchaseLimitRead, dependencies=[Depends(enforce_rate_limit)])
def get_purchase_limit(
    request: Request,
    cache: Annotated[redis.Redis, Depends(get_redis)],
):
    limit_info = check_purchase_limit(cache, request)
    return PurchaseLimitRead(
        allowed=limit_info.allowed,
        current_purchases=limit_info.current_purchases,
        limit=limit_info.limit,
        timeout_remaining=limit_info.timeout_remaining,
        timeout_formatted=format_time_remaining(limit_info.timeout_remaining)
        if limit_info.timeout_remaining else None,
    )


@app.post("/orders", response_model=OrderRead, status_code=201, dependencies=[Depends(enforce_rate_limit)])
async def create_order(
    request: Request,
    order: OrderCreate,
    session: Annotated[Session, Depends(get_session)],
    cache: Annotated[redis.Redis, Depends(get_redis)],
    side_effects: Annotated[SideEffectDispatcher, Depends(get_dispatcher)],
):
    # Check purchase limits first
    limit_info = check_purchase_limit(cache, request)
    if not limit_info.allowed:
        minutes = math.ceil(limit_info.timeout_remaining / 60) if limit_info.timeout_remaining else settings.PURCHASE_TIMEOUT_MINUTES
        return error_response(
            429,
            "Purchase limit exceeded",
            message=f"You have reached the maximum of {limit_info.limit} purchases. "
                    f"Please wait {minutes} minutes before placing another order.",
            timeout_remaining=limit_info.timeout_remaining,
        )

    lines = [StockLine(product_id=item.id, size=item.size, quantity=item.quantity) for item in order.items]
    availability = check_stock_availability(session, lines)
    if not availability.available:
        return error_response(400, "Insufficient stock", details=availability.errors)

    order_db = Order(
        order_number=generate_order_number(),
        total=order.total,
        customer_name=order.full_name,
        customer_email=order.email,
        customer_phone=order.phone,
        shipping_address=f"{order.address}, {order.province}",
        payment_proof_url=order.payment_proof_url,
        items=[
            OrderItem(product_id=item.id, name=item.name, price=item.price, size=item.size, quantity=item.quantity)
            for item in order.items
        ],
    )

    try:
        session.add(order_db)
        session.commit()
        session.refresh(order_db)
    except Exception as e:
        session.rollback()
        logger.error(f"Error creating order: {e}")
        return error_response(500, "Failed to create order")

    # Record the purchase for IP limiting
    record_purchase(cache, get_client_ip(request))
    logger.info(f"Order {order_db.order_number} created with {len(order_db.items)} items.")

    side_effects.notify(
        "order_created",
        order_db.order_number,
        order_id=order_db.id,
        customer_name=order_db.customer_name,
        total=order_db.total,
    )
    return format_order(order_db)


# -------------------------- Admin orders --------------------------

@app.get("/admin/orders", response_model=list[OrderRead])
def get_orders(
    session: Annotated[Session, Depends(get_session)],
    status: str | None = None,
    search: str | None = None,
):
    statement = select(Order)
    if status and status != "all":
        try:
            statement = statement.where(Order.status == OrderStatus(status))
        except ValueError:
            raise HTTPException(status_code=422, detail=f"Unknown order status: {status}")
    if search:
        pattern = f"%{search.lower()}%"
        statement = statement.where(or_(
            func.lower(Order.order_number).like(pattern),
            func.lower(Order.customer_name).like(pattern),
            func.lower(func.coalesce(Order.customer_email, "")).like(pattern),
            func.lower(Order.customer_phone).like(pattern),
        ))

    orders = session.exec(statement.order_by(col(Order.created_at).desc())).all()
    return [format_order(order) for order in orders]


@app.get("/admin/orders/{order_id}", response_model=OrderRead)
def get_order(order_id: str, session: Annotated[Session, Depends(get_session)]):
    order_db = session.get(Order, order_id)
    if not order_db:
        return error_response(404, "Order not found")
    return format_order(order_db)


@app.get("/admin/orders/{order_id}/stock-check")
def get_order_stock_check(order_id: str, session: Annotated[Session, Depends(get_session)]):
    order_db = session.get(Order, order_id)
    if not order_db:
        return error_response(404, "Order not found")

    availability = check_stock_availability(session, stock_lines_for(order_db))
    return {"available": availability.available, "errors": availability.errors}


@app.patch("/admin/orders/{order_id}", response_model=OrderRead)
async def update_order_status(
    order_id: str,
    updated_order_status: OrderStatusUpdate,
    session: Annotated[Session, Depends(get_session)],
    side_effects: Annotated[SideEffectDispatcher, Depends(get_dispatcher)],
):
    try:
        order_db = change_order_status(session, order_id, updated_order_status.status, side_effects)
    except OrderNotFound:
        return error_response(404, "Order not found")
    except InsufficientStockForApproval as e:
        return error_response(400, "Cannot approve order: Insufficient stock", details=e.errors)
    except Exception as e:
        session.rollback()
        logger.error(f"Error updating order {order_id}: {e}")
        return error_response(500, "Failed to update order")

    return format_order(order_db)


# -------------------------- Cache & updates --------------------------

@app.post("/admin/cache/invalidate")
def post_cache_invalidate(
    body: CacheInvalidateRequest,
    cache: Annotated[redis.Redis, Depends(get_redis)],
):
    if not body.key:
        return error_response(400, "No cache key specified")

    if body.key == "all":
        invalidate_all_cache(cache)
        return {"success": True, "message": "All cache invalidated successfully"}

    invalidate_cache(cache, body.key)
    return {"success": True, "message": f'Cache for key "{body.key}" invalidated successfully'}


@app.get("/sse/product-updates")
async def product_updates(
    request: Request,
    cache: Annotated[redis.Redis, Depends(get_redis)],
):
    return StreamingResponse(
        broadcaster.stream(request, cache),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache, no-transform", "Connection": "keep-alive"},
    )
