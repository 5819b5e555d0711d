# tests/conftest.py

import os

# Set the TESTING environment variable to use the test database
os.environ["TESTING"] = "1"

import fakeredis
import pytest
from unittest.mock import Mock
from sqlmodel import SQLModel, Session, select
from store_api.cache import get_redis
from store_api.db import engine, get_session
from store_api.dispatch import SideEffectDispatcher, get_dispatcher
from store_api.main import app
from store_api.models import Order, OrderItem, OrderStatus, Product, ProductSize


# ------------------------------ Fixtures ------------------------------

@pytest.fixture(name="create_test_database")
def create_test_database_fixture():
    """
    Overrides the get_session dependency to use the test database session.
    Creates all tables before tests and drops them after tests.
    """
    def override_get_session():
        with Session(engine) as session:
            yield session

    app.dependency_overrides[get_session] = override_get_session

    # Setup: create tables in the test DB
    SQLModel.metadata.create_all(engine)
    yield
    # Teardown: drop tables after tests
    SQLModel.metadata.drop_all(engine)

    # Remove only the specific dependency override
    app.dependency_overrides.pop(get_session, None)


@pytest.fixture(name="fake_redis")
def fake_redis_fixture():
    """
    Replaces the Redis client with an in-memory fake for cache and purchase limit calls.
    """
    client = fakeredis.FakeRedis(decode_responses=True)
    app.dependency_overrides[get_redis] = lambda: client
    yield client
    client.flushall()
    app.dependency_overrides.pop(get_redis, None)


@pytest.fixture(name="mock_dispatcher")
def mock_dispatcher_fixture():
    """
    Mocks the side-effect dispatcher so tests can assert which
    invalidations and notifications a request queued.
    """
    mock = Mock(spec=SideEffectDispatcher)
    app.dependency_overrides[get_dispatcher] = lambda: mock
    yield mock
    app.dependency_overrides.pop(get_dispatcher, None)


# -------------------------- Helper Fixtures --------------------------

@pytest.fixture(name="seed_product")
def seed_product_fixture(create_test_database):
    """
    Returns a function that stores a product with the given {size: stock} ledger.
    """
    def seed(product_id: str, name: str, sizes: dict[str, int], reserved: dict[str, int] | None = None,
             slug: str | None = None, price: float = 25.0):
        reserved = reserved or {}
        with Session(engine) as session:
            product = Product(
                id=product_id,
                name=name,
                slug=slug or product_id.lower(),
                price=price,
                sizes=[
                    ProductSize(size=size, price=price, stock=stock, reserved_stock=reserved.get(size, 0))
                    for size, stock in sizes.items()
                ],
            )
            product.update_stock_status()
            session.add(product)
            session.commit()
        return product_id
    return seed


@pytest.fixture(name="seed_order")
def seed_order_fixture(create_test_database):
    """
    Returns a function that stores an order made of (product_id, name, size, quantity) lines.
    """
    def seed(lines: list[tuple[str, str, str, int]], status: OrderStatus = OrderStatus.PENDING,
             order_number: str = "ORD-TEST-0001", customer_name: str = "Test Customer"):
        with Session(engine) as session:
            order = Order(
                order_number=order_number,
                total=sum(25.0 * quantity for _, _, _, quantity in lines),
                status=status,
                customer_name=customer_name,
                customer_email="customer@example.com",
                customer_phone="0123456789",
                shipping_address="12 Market Street, Phnom Penh",
                items=[
                    OrderItem(product_id=product_id, name=name, price=25.0, size=size, quantity=quantity)
                    for product_id, name, size, quantity in lines
                ],
            )
            session.add(order)
            session.commit()
            return order.id
    return seed


@pytest.fixture(name="get_stock")
def get_stock_fixture(create_test_database):
    """
    Returns a function that reads the current stock of one ledger entry.
    """
    def read(product_id: str, size: str) -> int:
        with Session(engine) as session:
            entry = session.exec(
                select(ProductSize).where(ProductSize.product_id == product_id, ProductSize.size == size)
            ).one()
            return entry.stock
    return read
