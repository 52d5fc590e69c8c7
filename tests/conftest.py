"""
Test Suite Configuration
"""
from decimal import Decimal
from typing import AsyncGenerator

import pytest

from fulfillment.config.settings import FulfillmentSettings
from fulfillment.database import Customer, Database, Product, Staff, Variant
from fulfillment.database.models import Currency
from fulfillment.services.currency import RateTable


@pytest.fixture
def fulfillment_settings() -> FulfillmentSettings:
    """Default fulfillment policy"""
    return FulfillmentSettings()


@pytest.fixture
def rates() -> RateTable:
    """1 USD = 1538.46... NGN, so 1000 NGN = 0.65 USD"""
    return RateTable({
        Currency.USD: Decimal("0.00065"),
        Currency.EUR: Decimal("0.0006"),
        Currency.GBP: Decimal("0.0005"),
    })


@pytest.fixture
async def database(tmp_path) -> AsyncGenerator[Database, None]:
    """File-backed SQLite database so separate sessions contend like real connections"""
    db = Database(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}")
    await db.connect()
    await db.create_all()

    yield db

    await db.dispose()


@pytest.fixture
async def customer(database: Database) -> Customer:
    async with database.transaction() as session:
        record = Customer(first_name="Ada", last_name="Obi", email="ada@example.com")
        session.add(record)
    return record


@pytest.fixture
async def other_customer(database: Database) -> Customer:
    async with database.transaction() as session:
        record = Customer(first_name="Tunde", last_name="Bello", email="tunde@example.com")
        session.add(record)
    return record


@pytest.fixture
async def staff(database: Database) -> Staff:
    async with database.transaction() as session:
        record = Staff(
            first_name="Kemi",
            last_name="Ade",
            email="kemi@example.com",
            job_roles=["SalesRep"],
        )
        session.add(record)
    return record


@pytest.fixture
async def product(database: Database) -> Product:
    """NGN-only priced product"""
    async with database.transaction() as session:
        record = Product(
            name="Ankara Shirt",
            category="Shirts",
            images=["https://cdn.example.com/ankara.jpg"],
            price_ngn=Decimal("1000"),
            size_mods=True,
        )
        session.add(record)
    return record


@pytest.fixture
async def priced_product(database: Database) -> Product:
    """Product with a stored USD list price"""
    async with database.transaction() as session:
        record = Product(
            name="Linen Trousers",
            category="Trousers",
            images=[],
            price_ngn=Decimal("20000"),
            price_usd=Decimal("14.99"),
        )
        session.add(record)
    return record


@pytest.fixture
async def variant(database: Database, product: Product) -> Variant:
    """Five units in stock"""
    async with database.transaction() as session:
        record = Variant(product_id=product.id, color="Blue", size="M", stock=5, weight=0.4)
        session.add(record)
    return record


@pytest.fixture
async def second_variant(database: Database, product: Product) -> Variant:
    async with database.transaction() as session:
        record = Variant(product_id=product.id, color="Red", size="L", stock=1, weight=0.5)
        session.add(record)
    return record


@pytest.fixture
async def priced_variant(database: Database, priced_product: Product) -> Variant:
    async with database.transaction() as session:
        record = Variant(product_id=priced_product.id, stock=10)
        session.add(record)
    return record
