"""
Settlement Recorder

Attaches the in-person sale record (OfflineSale) to an order. An order has
at most one; the unique constraint on offline_sales.order_id is the final
arbiter when two recorders race.
"""

from datetime import datetime
from typing import Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from fulfillment.config.logging import get_logger
from fulfillment.database.models import OfflineSale, Order, Staff
from fulfillment.errors import (
    DuplicateSettlementError,
    UnknownOrderError,
    UnknownStaffError,
)

logger = get_logger(__name__)


class SettlementRecorder:
    """Records staff-attributed settlements for orders"""

    async def settlement_for(self, session: AsyncSession, order_id: str) -> Optional[OfflineSale]:
        return await session.scalar(select(OfflineSale).where(OfflineSale.order_id == order_id))

    async def record_offline_sale(
        self,
        session: AsyncSession,
        order_id: str,
        staff_id: str,
        timestamp: Optional[datetime] = None,
    ) -> OfflineSale:
        """
        Attach an OfflineSale to an existing order.

        Works whether the order was placed online and picked up in store,
        or rung up by staff directly.

        Raises:
            UnknownOrderError / UnknownStaffError
            DuplicateSettlementError: The order already has a settlement;
                the existing record is left untouched
        """
        if await session.get(Order, order_id) is None:
            raise UnknownOrderError(order_id)
        if await session.get(Staff, staff_id) is None:
            raise UnknownStaffError(staff_id)

        existing = await self.settlement_for(session, order_id)
        if existing is not None:
            logger.warning(
                "Duplicate settlement refused",
                order_id=order_id,
                staff_id=staff_id,
                existing_staff_id=existing.staff_id,
            )
            raise DuplicateSettlementError(order_id)

        sale = OfflineSale(
            order_id=order_id,
            staff_id=staff_id,
            timestamp=timestamp or datetime.utcnow(),
        )
        session.add(sale)
        try:
            await session.flush()
        except IntegrityError as e:
            # Lost the race to a concurrent recorder
            raise DuplicateSettlementError(order_id) from e

        logger.info("Offline sale recorded", order_id=order_id, staff_id=staff_id, offline_sale_id=sale.id)
        return sale
