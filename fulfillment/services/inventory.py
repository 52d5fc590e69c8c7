"""
Inventory Ledger

Owns per-variant stock counts. Reservation is a single conditional
decrement executed by the database:

    UPDATE variants SET stock = stock - :qty
    WHERE id = :id AND stock >= :qty

The row lock taken by that statement serializes concurrent reservations
on the same variant across processes, and the WHERE clause guarantees stock
never goes negative. There is no separate commit step; a reservation is
permanent once the enclosing transaction commits.
"""

from typing import Dict, Iterable, List, Tuple

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from fulfillment.config.logging import get_logger
from fulfillment.database.models import Variant
from fulfillment.errors import (
    InsufficientStockError,
    InvalidQuantityError,
    UnknownVariantError,
)

logger = get_logger(__name__)


def _check_quantity(quantity: int) -> None:
    if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity <= 0:
        raise InvalidQuantityError(quantity, f"Quantity must be a positive integer, got {quantity!r}")


class InventoryLedger:
    """
    Stock reservations scoped to the caller's transaction.

    All methods take the session of the enclosing transaction; nothing is
    committed here.

    Example:
        async with database.transaction() as session:
            remaining = await ledger.reserve(session, variant_id, 2)
    """

    async def stock_of(self, session: AsyncSession, variant_id: str) -> int:
        """Current stock straight from the database, bypassing the identity map"""
        stock = await session.scalar(select(Variant.stock).where(Variant.id == variant_id))
        if stock is None:
            raise UnknownVariantError(variant_id)
        return stock

    async def reserve(self, session: AsyncSession, variant_id: str, quantity: int) -> int:
        """
        Atomically take `quantity` units from a variant.

        Returns:
            Remaining stock

        Raises:
            InvalidQuantityError: If quantity is not a positive integer
            UnknownVariantError: If the variant does not exist
            InsufficientStockError: If stock < quantity; stock is unchanged
        """
        _check_quantity(quantity)

        result = await session.execute(
            update(Variant)
            .where(Variant.id == variant_id, Variant.stock >= quantity)
            .values(stock=Variant.stock - quantity)
            .execution_options(synchronize_session=False)
        )

        if result.rowcount == 0:
            available = await self.stock_of(session, variant_id)
            logger.warning(
                "Stock reservation refused",
                variant_id=variant_id,
                requested=quantity,
                available=available,
            )
            raise InsufficientStockError(variant_id, quantity, available)

        remaining = await self.stock_of(session, variant_id)
        logger.debug("Stock reserved", variant_id=variant_id, quantity=quantity, remaining=remaining)
        return remaining

    async def release(
        self,
        session: AsyncSession,
        variant_id: str,
        quantity: int,
        reason: str = "release",
    ) -> int:
        """
        Atomically return `quantity` units to a variant.

        Returns:
            Stock after the release

        Raises:
            InvalidQuantityError: If quantity is not a positive integer
            UnknownVariantError: If the variant does not exist
        """
        _check_quantity(quantity)

        result = await session.execute(
            update(Variant)
            .where(Variant.id == variant_id)
            .values(stock=Variant.stock + quantity)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            raise UnknownVariantError(variant_id)

        stock = await self.stock_of(session, variant_id)
        logger.info("Stock released", variant_id=variant_id, quantity=quantity, stock=stock, reason=reason)
        return stock

    async def reserve_many(
        self,
        session: AsyncSession,
        lines: Iterable[Tuple[str, int]],
    ) -> Dict[str, int]:
        """
        Reserve several variants, all or nothing.

        Lines are reserved in variant id order so concurrent multi-line
        orders acquire row locks in the same sequence. If any line fails,
        the lines already taken are released before the error propagates.

        Returns:
            Remaining stock per variant id

        Raises:
            InsufficientStockError / UnknownVariantError: For the failing line
        """
        ordered = sorted(lines, key=lambda line: line[0])
        for _, quantity in ordered:
            _check_quantity(quantity)

        taken: List[Tuple[str, int]] = []
        remaining: Dict[str, int] = {}
        try:
            for variant_id, quantity in ordered:
                remaining[variant_id] = await self.reserve(session, variant_id, quantity)
                taken.append((variant_id, quantity))
        except (InsufficientStockError, UnknownVariantError):
            for variant_id, quantity in reversed(taken):
                await self.release(session, variant_id, quantity, reason="rollback")
            raise

        return remaining
