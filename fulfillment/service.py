"""
Fulfillment Service

Library boundary consumed by the application layer. Each public call runs
in its own database transaction: it either commits fully or leaves no
trace. Calls that lose an optimistic-lock race are retried a bounded
number of times before ConcurrentModificationError reaches the caller.
"""

import asyncio
from datetime import datetime
from decimal import Decimal
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Protocol, Tuple, TypeVar, Union

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload
from sqlalchemy.orm.attributes import set_committed_value

from fulfillment.config import get_settings
from fulfillment.config.logging import get_logger, operation_context
from fulfillment.config.settings import FulfillmentSettings
from fulfillment.database.connection import Database
from fulfillment.database.models import Currency, OfflineSale, Order, OrderStatus, Product, Review
from fulfillment.errors import (
    ConcurrentModificationError,
    FulfillmentError,
    MissingRateError,
    UnknownOrderError,
)
from fulfillment.services.currency import RateTable
from fulfillment.services.inventory import InventoryLedger
from fulfillment.services.orders import LineInput, OrderAssembler
from fulfillment.services.ratings import ReviewService
from fulfillment.services.settlement import SettlementRecorder
from fulfillment.services.status import OrderStatusMachine

logger = get_logger(__name__)

T = TypeVar("T")

RETRY_BACKOFF_SECONDS = 0.05


class RateSource(Protocol):
    async def get_rate_table(self) -> RateTable: ...


class FulfillmentService:
    """
    Order fulfillment, inventory, settlement and rating operations.

    Example:
        async with Database.from_settings(settings.database) as database:
            service = FulfillmentService(database, ExchangeRateProvider(settings.currency))
            order = await service.place_order(customer_id, "USD", [(variant_id, 2)], "card")
    """

    def __init__(
        self,
        database: Database,
        rate_source: Union[RateTable, RateSource, None] = None,
        settings: Optional[FulfillmentSettings] = None,
    ):
        self.database = database
        self.rate_source = rate_source
        self.settings = settings or get_settings().fulfillment

        self.ledger = InventoryLedger()
        self.assembler = OrderAssembler(self.ledger, self.settings)
        self.settlements = SettlementRecorder()
        self.status_machine = OrderStatusMachine(self.settings.allow_direct_fulfillment)
        self.reviews = ReviewService()

    # -------------------------------------------------------------------------
    # Plumbing
    # -------------------------------------------------------------------------

    async def _rates_for(self, currency: Union[Currency, str]) -> Optional[RateTable]:
        try:
            if Currency(currency) is Currency.NGN:
                return None
        except ValueError:
            # Unsupported codes are rejected by the assembler
            return None
        if self.rate_source is None:
            raise MissingRateError(Currency.NGN.value, str(currency))
        if isinstance(self.rate_source, RateTable):
            return self.rate_source
        return await self.rate_source.get_rate_table()

    async def _run(self, operation: str, work: Callable[[AsyncSession], Awaitable[T]]) -> T:
        attempt = 0
        while True:
            attempt += 1
            with operation_context(operation, attempt=attempt):
                try:
                    async with self.database.transaction() as session:
                        return await work(session)
                except ConcurrentModificationError as e:
                    if attempt > self.settings.max_retries:
                        logger.error("Giving up after concurrent modifications", error=str(e))
                        raise
                    logger.warning("Retrying after concurrent modification", error=str(e))
                except FulfillmentError as e:
                    logger.warning("Operation failed", **e.to_dict())
                    raise
            await asyncio.sleep(RETRY_BACKOFF_SECONDS * attempt)

    # -------------------------------------------------------------------------
    # Orders
    # -------------------------------------------------------------------------

    async def place_order(
        self,
        customer_id: str,
        currency: Union[Currency, str],
        lines: Iterable[LineInput],
        payment_method: str,
        staff_id: Optional[str] = None,
        delivery_fee: Union[Decimal, int, str] = 0,
        delivery_details: Optional[Dict[str, Any]] = None,
        created_at: Optional[datetime] = None,
    ) -> Order:
        """Assemble an order and reserve its stock in one transaction."""
        lines = list(lines)
        rates = await self._rates_for(currency)

        async def work(session: AsyncSession) -> Order:
            return await self.assembler.place_order(
                session,
                customer_id,
                currency,
                lines,
                payment_method,
                rates=rates,
                staff_id=staff_id,
                delivery_fee=delivery_fee,
                delivery_details=delivery_details,
                created_at=created_at,
            )

        return await self._run("place_order", work)

    async def place_offline_order(
        self,
        customer_id: str,
        staff_id: str,
        currency: Union[Currency, str],
        lines: Iterable[LineInput],
        payment_method: str,
        timestamp: Optional[datetime] = None,
        delivery_fee: Union[Decimal, int, str] = 0,
        delivery_details: Optional[Dict[str, Any]] = None,
    ) -> Tuple[Order, OfflineSale]:
        """Walk-in sale: place the order and record its settlement together."""
        lines = list(lines)
        rates = await self._rates_for(currency)

        async def work(session: AsyncSession) -> Tuple[Order, OfflineSale]:
            order = await self.assembler.place_order(
                session,
                customer_id,
                currency,
                lines,
                payment_method,
                rates=rates,
                staff_id=staff_id,
                delivery_fee=delivery_fee,
                delivery_details=delivery_details,
                created_at=timestamp,
            )
            sale = await self.settlements.record_offline_sale(session, order.id, staff_id, timestamp)
            set_committed_value(order, "offline_sale", sale)
            return order, sale

        return await self._run("place_offline_order", work)

    async def record_offline_sale(
        self,
        order_id: str,
        staff_id: str,
        timestamp: Optional[datetime] = None,
    ) -> OfflineSale:
        return await self._run(
            "record_offline_sale",
            lambda session: self.settlements.record_offline_sale(session, order_id, staff_id, timestamp),
        )

    async def advance_status(self, order_id: str, status: Union[OrderStatus, str]) -> Order:
        return await self._run(
            "advance_status",
            lambda session: self.status_machine.advance(session, order_id, status),
        )

    async def get_order(self, order_id: str) -> Order:
        """Order with items and settlement loaded"""
        async with self.database.session() as session:
            order = await session.scalar(
                select(Order)
                .where(Order.id == order_id)
                .options(selectinload(Order.items), selectinload(Order.offline_sale))
            )
        if order is None:
            raise UnknownOrderError(order_id)
        return order

    # -------------------------------------------------------------------------
    # Inventory
    # -------------------------------------------------------------------------

    async def stock_of(self, variant_id: str) -> int:
        async with self.database.session() as session:
            return await self.ledger.stock_of(session, variant_id)

    async def restock(self, variant_id: str, quantity: int) -> int:
        return await self._run(
            "restock",
            lambda session: self.ledger.release(session, variant_id, quantity, reason="restock"),
        )

    # -------------------------------------------------------------------------
    # Reviews
    # -------------------------------------------------------------------------

    async def create_review(self, product_id: str, customer_id: str, rating: int, body: str) -> Review:
        return await self._run(
            "create_review",
            lambda session: self.reviews.create_review(session, product_id, customer_id, rating, body),
        )

    async def update_review(
        self,
        review_id: str,
        rating: Optional[int] = None,
        body: Optional[str] = None,
    ) -> Review:
        return await self._run(
            "update_review",
            lambda session: self.reviews.update_review(session, review_id, rating, body),
        )

    async def delete_review(self, review_id: str) -> Product:
        return await self._run(
            "delete_review",
            lambda session: self.reviews.delete_review(session, review_id),
        )

    async def list_reviews(self, product_id: str) -> List[Review]:
        async with self.database.session() as session:
            return await self.reviews.list_reviews(session, product_id)

    async def reconcile_ratings(self, product_id: str) -> Product:
        return await self._run(
            "reconcile_ratings",
            lambda session: self.reviews.aggregator.reconcile(session, product_id),
        )
