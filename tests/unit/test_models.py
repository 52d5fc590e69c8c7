"""
Unit Tests - Database Models
"""
from decimal import Decimal

import pytest
from sqlalchemy import update
from sqlalchemy.exc import IntegrityError

from fulfillment.database.models import (
    Currency,
    JobRole,
    Product,
    Staff,
    Variant,
    WishlistItem,
)


class TestProduct:
    """Tests for price lookups"""

    def test_prices_mapping(self):
        product = Product(name="Cap", category="Hats", price_ngn=Decimal("5000"), price_usd=Decimal("3.50"))

        assert product.prices == {
            Currency.NGN: Decimal("5000"),
            Currency.USD: Decimal("3.50"),
            Currency.EUR: None,
            Currency.GBP: None,
        }
        assert product.price_in("USD") == Decimal("3.50")
        assert product.price_in(Currency.GBP) is None

    def test_primary_image(self):
        assert Product(images=["a.jpg", "b.jpg"]).primary_image == "a.jpg"
        assert Product(images=[]).primary_image is None

    async def test_version_starts_at_one(self, database, product):
        assert product.version == 1


class TestStaff:
    def test_roles(self):
        staff = Staff(job_roles=["SalesRep", "Dispatcher"])
        assert staff.roles == [JobRole.SALES_REP, JobRole.DISPATCHER]


class TestConstraints:
    """Tests for database-level invariants"""

    async def test_stock_cannot_go_negative(self, database, variant):
        with pytest.raises(IntegrityError):
            async with database.transaction() as session:
                await session.execute(
                    update(Variant).where(Variant.id == variant.id).values(stock=-1)
                )

    async def test_variant_color_size_unique(self, database, product, variant):
        with pytest.raises(IntegrityError):
            async with database.transaction() as session:
                session.add(Variant(product_id=product.id, color="Blue", size="M", stock=1))

    async def test_wishlist_unique_per_customer(self, database, customer, product):
        async with database.transaction() as session:
            session.add(WishlistItem(customer_id=customer.id, product_id=product.id))

        with pytest.raises(IntegrityError):
            async with database.transaction() as session:
                session.add(WishlistItem(customer_id=customer.id, product_id=product.id))
