"""
Order Status State Machine

Processing -> Shipped -> Delivered, forward only. Delivered is terminal.

Processing -> Delivered (direct fulfillment) exists only as an explicit
policy: it requires `allow_direct_fulfillment` and an OfflineSale on the
order, for goods handed over at the counter.
"""

from typing import Dict, FrozenSet, Union

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from fulfillment.config.logging import get_logger
from fulfillment.database.models import OfflineSale, Order, OrderStatus
from fulfillment.errors import InvalidTransitionError, UnknownOrderError

logger = get_logger(__name__)

TRANSITIONS: Dict[OrderStatus, FrozenSet[OrderStatus]] = {
    OrderStatus.PROCESSING: frozenset({OrderStatus.SHIPPED}),
    OrderStatus.SHIPPED: frozenset({OrderStatus.DELIVERED}),
    OrderStatus.DELIVERED: frozenset(),
}

DIRECT_FULFILLMENT = (OrderStatus.PROCESSING, OrderStatus.DELIVERED)


class OrderStatusMachine:
    """Validates and applies order status transitions"""

    def __init__(self, allow_direct_fulfillment: bool = False):
        self.allow_direct_fulfillment = allow_direct_fulfillment

    def can_transition(
        self,
        current: OrderStatus,
        requested: OrderStatus,
        settled_offline: bool = False,
    ) -> bool:
        if requested in TRANSITIONS[current]:
            return True
        return (
            (current, requested) == DIRECT_FULFILLMENT
            and self.allow_direct_fulfillment
            and settled_offline
        )

    async def advance(
        self,
        session: AsyncSession,
        order_id: str,
        requested: Union[OrderStatus, str],
    ) -> Order:
        """
        Move an order to `requested`.

        The order row is locked for the rest of the transaction so two
        concurrent updates cannot both pass validation.

        Raises:
            UnknownOrderError: No such order
            InvalidTransitionError: Transition not in the allowed table
        """
        try:
            requested = OrderStatus(requested)
        except ValueError as e:
            raise InvalidTransitionError(order_id, None, requested) from e

        order = await session.scalar(
            select(Order).where(Order.id == order_id).with_for_update()
        )
        if order is None:
            raise UnknownOrderError(order_id)

        current = order.status
        settled_offline = False
        if (current, requested) == DIRECT_FULFILLMENT:
            settled_offline = (
                await session.scalar(select(OfflineSale.id).where(OfflineSale.order_id == order_id))
            ) is not None

        if not self.can_transition(current, requested, settled_offline):
            logger.warning(
                "Status transition refused",
                order_id=order_id,
                current=current.value,
                requested=requested.value,
            )
            raise InvalidTransitionError(order_id, current, requested)

        order.status = requested
        await session.flush()

        logger.info("Order status advanced", order_id=order_id, previous=current.value, status=requested.value)
        return order
