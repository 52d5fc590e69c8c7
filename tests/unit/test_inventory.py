"""
Unit Tests - Inventory Ledger
"""
import pytest

from fulfillment.errors import InsufficientStockError, InvalidQuantityError, UnknownVariantError
from fulfillment.services.inventory import InventoryLedger


@pytest.fixture
def ledger() -> InventoryLedger:
    return InventoryLedger()


class TestReserve:
    """Tests for single-variant reservation"""

    async def test_reserve_decrements_stock(self, database, ledger, variant):
        async with database.transaction() as session:
            remaining = await ledger.reserve(session, variant.id, 3)

        assert remaining == 2
        async with database.session() as session:
            assert await ledger.stock_of(session, variant.id) == 2

    async def test_reserve_entire_stock(self, database, ledger, variant):
        async with database.transaction() as session:
            assert await ledger.reserve(session, variant.id, 5) == 0

    async def test_insufficient_stock_leaves_stock_unchanged(self, database, ledger, variant):
        with pytest.raises(InsufficientStockError) as exc_info:
            async with database.transaction() as session:
                await ledger.reserve(session, variant.id, 6)

        error = exc_info.value
        assert (error.variant_id, error.requested, error.available) == (variant.id, 6, 5)
        async with database.session() as session:
            assert await ledger.stock_of(session, variant.id) == 5

    async def test_unknown_variant(self, database, ledger):
        with pytest.raises(UnknownVariantError) as exc_info:
            async with database.transaction() as session:
                await ledger.reserve(session, "missing", 1)

        assert exc_info.value.variant_id == "missing"

    @pytest.mark.parametrize("quantity", [0, -1, 1.5, True])
    async def test_invalid_quantity(self, database, ledger, variant, quantity):
        with pytest.raises(InvalidQuantityError):
            async with database.transaction() as session:
                await ledger.reserve(session, variant.id, quantity)


class TestRelease:
    """Tests for stock release"""

    async def test_release_restores_stock(self, database, ledger, variant):
        async with database.transaction() as session:
            await ledger.reserve(session, variant.id, 4)
            stock = await ledger.release(session, variant.id, 4)

        assert stock == 5

    async def test_release_unknown_variant(self, database, ledger):
        with pytest.raises(UnknownVariantError):
            async with database.transaction() as session:
                await ledger.release(session, "missing", 1)

    async def test_release_rejects_non_positive(self, database, ledger, variant):
        with pytest.raises(InvalidQuantityError):
            async with database.transaction() as session:
                await ledger.release(session, variant.id, 0)


class TestReserveMany:
    """Tests for all-or-nothing multi-line reservation"""

    async def test_all_lines_reserved(self, database, ledger, variant, second_variant):
        async with database.transaction() as session:
            remaining = await ledger.reserve_many(session, [(variant.id, 2), (second_variant.id, 1)])

        assert remaining == {variant.id: 3, second_variant.id: 0}

    async def test_failure_releases_taken_lines(self, database, ledger, variant, second_variant):
        """No partial reservation survives, even within the open transaction"""
        async with database.transaction() as session:
            with pytest.raises(InsufficientStockError):
                await ledger.reserve_many(session, [(variant.id, 2), (second_variant.id, 2)])

            assert await ledger.stock_of(session, variant.id) == 5
            assert await ledger.stock_of(session, second_variant.id) == 1

    async def test_unknown_variant_releases_taken_lines(self, database, ledger, variant):
        async with database.transaction() as session:
            with pytest.raises(UnknownVariantError):
                await ledger.reserve_many(session, [(variant.id, 1), ("zzz-missing", 1)])

            assert await ledger.stock_of(session, variant.id) == 5

    async def test_validates_before_touching_stock(self, database, ledger, variant):
        async with database.transaction() as session:
            with pytest.raises(InvalidQuantityError):
                await ledger.reserve_many(session, [(variant.id, 1), ("other", 0)])

            assert await ledger.stock_of(session, variant.id) == 5
