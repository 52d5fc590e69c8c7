"""
Unit Tests - Settlement Recorder
"""
from datetime import datetime

import pytest
from sqlalchemy import func, select

from fulfillment.database.models import OfflineSale
from fulfillment.errors import DuplicateSettlementError, UnknownOrderError, UnknownStaffError
from fulfillment.services.inventory import InventoryLedger
from fulfillment.services.orders import OrderAssembler
from fulfillment.services.settlement import SettlementRecorder


@pytest.fixture
def recorder() -> SettlementRecorder:
    return SettlementRecorder()


@pytest.fixture
async def online_order(database, customer, variant, fulfillment_settings):
    assembler = OrderAssembler(InventoryLedger(), fulfillment_settings)
    async with database.transaction() as session:
        return await assembler.place_order(session, customer.id, "NGN", [(variant.id, 1)], "card")


class TestRecordOfflineSale:
    """Tests for attaching in-person settlements"""

    async def test_settle_online_order_in_store(self, database, recorder, online_order, staff):
        when = datetime(2024, 5, 4, 9, 0)

        async with database.transaction() as session:
            sale = await recorder.record_offline_sale(session, online_order.id, staff.id, when)

        assert sale.order_id == online_order.id
        assert sale.staff_id == staff.id
        assert sale.timestamp == when

    async def test_default_timestamp(self, database, recorder, online_order, staff):
        async with database.transaction() as session:
            sale = await recorder.record_offline_sale(session, online_order.id, staff.id)

        assert isinstance(sale.timestamp, datetime)

    async def test_duplicate_refused_and_first_kept(self, database, recorder, online_order, staff):
        async with database.transaction() as session:
            first = await recorder.record_offline_sale(session, online_order.id, staff.id)

        with pytest.raises(DuplicateSettlementError) as exc_info:
            async with database.transaction() as session:
                await recorder.record_offline_sale(session, online_order.id, staff.id)

        assert exc_info.value.order_id == online_order.id
        async with database.session() as session:
            assert await session.scalar(select(func.count(OfflineSale.id))) == 1
            kept = await recorder.settlement_for(session, online_order.id)
            assert kept.id == first.id

    async def test_unknown_order(self, database, recorder, staff):
        with pytest.raises(UnknownOrderError):
            async with database.transaction() as session:
                await recorder.record_offline_sale(session, "M-ORDNOPE000", staff.id)

    async def test_unknown_staff(self, database, recorder, online_order):
        with pytest.raises(UnknownStaffError):
            async with database.transaction() as session:
                await recorder.record_offline_sale(session, online_order.id, "nobody")
