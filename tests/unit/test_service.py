"""
Unit Tests - Fulfillment Service
"""
import asyncio
from datetime import datetime
from decimal import Decimal

import pytest
from sqlalchemy import func, select

from fulfillment.config.settings import FulfillmentSettings
from fulfillment.database import Customer, Product, Variant
from fulfillment.database.models import OfflineSale, Order, OrderChannel, OrderStatus
from fulfillment.errors import (
    ConcurrentModificationError,
    DuplicateSettlementError,
    InsufficientStockError,
    MissingRateError,
    UnknownOrderError,
)
from fulfillment.service import FulfillmentService
from fulfillment.services.currency import RateTable


class StaticRateSource:
    def __init__(self, table: RateTable):
        self.table = table
        self.calls = 0

    async def get_rate_table(self) -> RateTable:
        self.calls += 1
        return self.table


@pytest.fixture
def service(database, rates, fulfillment_settings) -> FulfillmentService:
    return FulfillmentService(database, rates, fulfillment_settings)


class TestOrders:
    """Tests for order operations through the service"""

    async def test_place_order_commits(self, service, customer, variant):
        order = await service.place_order(customer.id, "USD", [(variant.id, 2)], "card")

        loaded = await service.get_order(order.id)
        assert loaded.total_amount == Decimal("1.30")
        assert loaded.total_ngn == 2000
        assert [item.quantity for item in loaded.items] == [2]
        assert loaded.offline_sale is None
        assert await service.stock_of(variant.id) == 3

    async def test_rate_source_consulted_for_foreign_currency(self, database, rates, customer, variant):
        source = StaticRateSource(rates)
        service = FulfillmentService(database, source, FulfillmentSettings())

        await service.place_order(customer.id, "NGN", [(variant.id, 1)], "cash")
        assert source.calls == 0

        await service.place_order(customer.id, "EUR", [(variant.id, 1)], "card")
        assert source.calls == 1

    async def test_no_rate_source(self, database, customer, variant):
        service = FulfillmentService(database, settings=FulfillmentSettings())

        with pytest.raises(MissingRateError):
            await service.place_order(customer.id, "USD", [(variant.id, 1)], "card")

    async def test_concurrent_orders_never_oversell(self, service, customer, other_customer, variant):
        """Two orders of 3 against stock 5: exactly one wins"""
        results = await asyncio.gather(
            service.place_order(customer.id, "NGN", [(variant.id, 3)], "card"),
            service.place_order(other_customer.id, "NGN", [(variant.id, 3)], "card"),
            return_exceptions=True,
        )

        placed = [r for r in results if isinstance(r, Order)]
        failed = [r for r in results if isinstance(r, Exception)]
        assert len(placed) == 1
        assert len(failed) == 1
        assert isinstance(failed[0], InsufficientStockError)
        assert (failed[0].variant_id, failed[0].requested, failed[0].available) == (variant.id, 3, 2)
        assert await service.stock_of(variant.id) == 2

    async def test_get_unknown_order(self, service):
        with pytest.raises(UnknownOrderError):
            await service.get_order("M-ORDNOPE000")

    async def test_items_keep_catalog_snapshot(self, service, database, customer, product, variant):
        """Renaming or repricing the catalog leaves placed orders untouched"""
        order = await service.place_order(customer.id, "NGN", [(variant.id, 2)], "card")

        async with database.transaction() as session:
            record = await session.get(Product, product.id)
            record.name = "Ankara Shirt (Reissue)"
            record.category = "Archive"
            record.price_ngn = Decimal("2500")
            record.images = ["https://cdn.example.com/reissue.jpg"]
            stocked = await session.get(Variant, variant.id)
            stocked.color = "Navy"
            stocked.size = "XL"

        [item] = (await service.get_order(order.id)).items
        assert (item.name, item.category, item.color, item.size) == ("Ankara Shirt", "Shirts", "Blue", "M")
        assert item.image == "https://cdn.example.com/ankara.jpg"
        assert (item.unit_price, item.line_total) == (Decimal("1000"), Decimal("2000"))
        assert (await service.get_order(order.id)).total_ngn == 2000

    async def test_cancelled_placement_leaves_no_trace(self, service, customer, variant, second_variant):
        """A task cancelled after reserving stock rolls the whole order back"""
        reserved = asyncio.Event()
        reserve_many = service.ledger.reserve_many

        async def reserve_then_stall(session, lines):
            taken = await reserve_many(session, lines)
            reserved.set()
            await asyncio.sleep(3600)
            return taken

        service.ledger.reserve_many = reserve_then_stall
        task = asyncio.create_task(
            service.place_order(customer.id, "NGN", [(variant.id, 2), (second_variant.id, 1)], "card")
        )
        await asyncio.wait_for(reserved.wait(), timeout=10)
        task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task

        async with service.database.session() as session:
            assert await session.scalar(select(func.count(Order.id))) == 0
        assert await service.stock_of(variant.id) == 5
        assert await service.stock_of(second_variant.id) == 1

        service.ledger.reserve_many = reserve_many
        order = await service.place_order(customer.id, "NGN", [(second_variant.id, 1)], "card")
        assert order.total_ngn == 1000


class TestOfflineSales:
    """Tests for in-person sales"""

    async def test_place_offline_order(self, service, customer, staff, variant):
        when = datetime(2024, 6, 1, 15, 0)

        order, sale = await service.place_offline_order(
            customer.id, staff.id, "NGN", [(variant.id, 1)], "pos", timestamp=when
        )

        assert order.channel == OrderChannel.OFFLINE
        assert order.created_at == when
        assert order.offline_sale is sale
        assert (sale.order_id, sale.staff_id, sale.timestamp) == (order.id, staff.id, when)

    async def test_offline_order_rolls_back_as_a_unit(self, service, customer, staff, variant):
        with pytest.raises(InsufficientStockError):
            await service.place_offline_order(customer.id, staff.id, "NGN", [(variant.id, 9)], "pos")

        async with service.database.session() as session:
            assert await session.scalar(select(func.count(Order.id))) == 0

    async def test_settle_then_duplicate(self, service, customer, staff, variant):
        order = await service.place_order(customer.id, "NGN", [(variant.id, 1)], "card")
        first = await service.record_offline_sale(order.id, staff.id)

        with pytest.raises(DuplicateSettlementError):
            await service.record_offline_sale(order.id, staff.id)

        loaded = await service.get_order(order.id)
        assert loaded.offline_sale.id == first.id

    async def test_concurrent_settlements_record_once(self, service, customer, staff, variant):
        """Four recorders race for one order: one sale, three refusals"""
        order = await service.place_order(customer.id, "NGN", [(variant.id, 1)], "card")

        results = await asyncio.gather(
            *(service.record_offline_sale(order.id, staff.id) for _ in range(4)),
            return_exceptions=True,
        )

        recorded = [r for r in results if isinstance(r, OfflineSale)]
        refused = [r for r in results if isinstance(r, Exception)]
        assert len(recorded) == 1
        assert len(refused) == 3
        assert all(isinstance(e, DuplicateSettlementError) for e in refused)

        async with service.database.session() as session:
            assert await session.scalar(select(func.count(OfflineSale.id))) == 1
        assert (await service.get_order(order.id)).offline_sale.id == recorded[0].id


class TestStatusAndInventory:
    """Tests for status and stock operations through the service"""

    async def test_advance_status(self, service, customer, variant):
        order = await service.place_order(customer.id, "NGN", [(variant.id, 1)], "card")

        await service.advance_status(order.id, "Shipped")
        updated = await service.advance_status(order.id, "Delivered")

        assert updated.status == OrderStatus.DELIVERED
        assert (await service.get_order(order.id)).status == OrderStatus.DELIVERED

    async def test_direct_fulfillment_policy(self, database, rates, customer, staff, variant):
        service = FulfillmentService(database, rates, FulfillmentSettings(allow_direct_fulfillment=True))
        order, _ = await service.place_offline_order(customer.id, staff.id, "NGN", [(variant.id, 1)], "pos")

        updated = await service.advance_status(order.id, "Delivered")

        assert updated.status == OrderStatus.DELIVERED

    async def test_restock(self, service, variant):
        assert await service.restock(variant.id, 4) == 9
        assert await service.stock_of(variant.id) == 9


class TestReviews:
    """Tests for review operations through the service"""

    async def test_review_lifecycle(self, service, product, customer, other_customer):
        first = await service.create_review(product.id, customer.id, 4, "Great fit")
        await service.create_review(product.id, other_customer.id, 2, "Runs small")

        updated = await service.delete_review(first.id)

        assert (updated.average_rating, updated.rating_count) == (2.0, 1)
        assert [review.rating for review in await service.list_reviews(product.id)] == [2]

    async def test_update_and_reconcile(self, service, product, customer):
        review = await service.create_review(product.id, customer.id, 1, "Not for me")
        await service.update_review(review.id, rating=3)

        reconciled = await service.reconcile_ratings(product.id)

        assert (reconciled.average_rating, reconciled.rating_count) == (3.0, 1)

    async def test_concurrent_reviews_all_counted(self, database, rates, product):
        """Simultaneous reviewers of one product serialize on the product row"""
        service = FulfillmentService(database, rates, FulfillmentSettings(max_retries=10))
        async with database.transaction() as session:
            reviewers = [
                Customer(first_name=f"Reviewer{n}", last_name="Test", email=f"reviewer{n}@example.com")
                for n in range(5)
            ]
            session.add_all(reviewers)

        await asyncio.gather(*(
            service.create_review(product.id, reviewer.id, rating, "Solid stitching")
            for rating, reviewer in enumerate(reviewers, start=1)
        ))

        async with database.session() as session:
            aggregated = await session.get(Product, product.id)
        assert (aggregated.average_rating, aggregated.rating_count) == (3.0, 5)

        reconciled = await service.reconcile_ratings(product.id)
        assert (reconciled.average_rating, reconciled.rating_count) == (3.0, 5)


class TestRetries:
    """Tests for the concurrent-modification retry loop"""

    async def test_retries_then_succeeds(self, service):
        attempts = []

        async def flaky(session):
            attempts.append(session)
            if len(attempts) < 3:
                raise ConcurrentModificationError()
            return "done"

        assert await service._run("flaky", flaky) == "done"
        assert len(attempts) == 3

    async def test_gives_up_after_max_retries(self, database, rates):
        service = FulfillmentService(database, rates, FulfillmentSettings(max_retries=1))
        attempts = []

        async def always_conflicts(session):
            attempts.append(session)
            raise ConcurrentModificationError()

        with pytest.raises(ConcurrentModificationError):
            await service._run("always_conflicts", always_conflicts)

        assert len(attempts) == 2
