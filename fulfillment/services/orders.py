"""
Order Assembler

Builds an Order and its OrderItem snapshots from a cart:

1. Normalize lines (duplicate variant policy, quantity validation)
2. Resolve variants and their products
3. Price every line in the display currency (stored list price, or NGN
   price converted through the rate table)
4. Reserve stock for all lines, all or nothing
5. Sum line totals into `total_amount` and convert that sum to `total_ngn`
6. Persist Order + items in the caller's transaction

Settlement of staff orders is a separate call (see settlement.py).
"""

import secrets
import string
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Iterable, List, Optional, Sequence, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload
from sqlalchemy.orm.attributes import set_committed_value

from fulfillment.config.logging import get_logger
from fulfillment.config.settings import DuplicateLinePolicy, FulfillmentSettings
from fulfillment.database.models import (
    Currency,
    Customer,
    Order,
    OrderChannel,
    OrderItem,
    OrderStatus,
    Product,
    Staff,
    Variant,
)
from fulfillment.errors import (
    ConcurrentModificationError,
    InvalidOrderError,
    MissingRateError,
    UnknownCustomerError,
    UnknownStaffError,
    UnknownVariantError,
)
from fulfillment.services.currency import RateTable, convert, quantize, to_decimal
from fulfillment.services.inventory import InventoryLedger

logger = get_logger(__name__)

_ORDER_ID_ALPHABET = string.ascii_uppercase + string.digits
ORDER_ID_ATTEMPTS = 5


# =============================================================================
# REQUEST MODELS
# =============================================================================

class OrderLine(BaseModel):
    """One requested cart line"""

    model_config = ConfigDict(frozen=True)

    variant_id: str = Field(min_length=1)
    quantity: int = Field(ge=1)
    size_mod: bool = False
    custom_size: Optional[Dict[str, str]] = None


LineInput = Union[OrderLine, Dict[str, Any], Sequence[Any]]


@dataclass
class PricedLine:
    """A line resolved against the catalog and priced"""
    line: OrderLine
    variant: Variant
    product: Product
    unit_price: Decimal
    base_total: Decimal
    size_mod_fee: Decimal
    line_total: Decimal
    has_size_mod: bool


def generate_order_id(prefix: str = "M-ORD", length: int = 7) -> str:
    """Branded order id like M-ORD4K7Q2ZP"""
    return prefix + "".join(secrets.choice(_ORDER_ID_ALPHABET) for _ in range(length))


def coerce_line(line: LineInput) -> OrderLine:
    """Accept an OrderLine, a mapping, or a (variant_id, quantity) pair"""
    try:
        if isinstance(line, OrderLine):
            return line
        if isinstance(line, dict):
            return OrderLine(**line)
        variant_id, quantity = line
        return OrderLine(variant_id=variant_id, quantity=quantity)
    except (ValidationError, TypeError, ValueError) as e:
        raise InvalidOrderError(f"Invalid order line {line!r}: {e}") from e


# =============================================================================
# ASSEMBLER
# =============================================================================

class OrderAssembler:
    """
    Creates orders atomically with their stock reservations.

    Example:
        assembler = OrderAssembler(InventoryLedger(), settings.fulfillment)
        async with database.transaction() as session:
            order = await assembler.place_order(
                session, customer_id, Currency.USD, lines, "card", rates=rates
            )
    """

    def __init__(self, ledger: InventoryLedger, settings: FulfillmentSettings):
        self.ledger = ledger
        self.settings = settings

    def normalize_lines(self, lines: Iterable[LineInput]) -> List[OrderLine]:
        """
        Validate lines and apply the duplicate-variant policy.

        Under MERGE, repeated variants are combined into the first line
        when their customisation matches. Under REJECT any repeat fails.
        """
        merged: Dict[str, OrderLine] = {}
        for raw in lines:
            line = coerce_line(raw)
            existing = merged.get(line.variant_id)
            if existing is None:
                merged[line.variant_id] = line
                continue

            if self.settings.duplicate_line_policy is DuplicateLinePolicy.REJECT:
                raise InvalidOrderError(
                    f"Variant {line.variant_id} appears more than once", variant_id=line.variant_id
                )
            if (existing.size_mod, existing.custom_size) != (line.size_mod, line.custom_size):
                raise InvalidOrderError(
                    f"Variant {line.variant_id} repeated with different customisation",
                    variant_id=line.variant_id,
                )
            merged[line.variant_id] = existing.model_copy(
                update={"quantity": existing.quantity + line.quantity}
            )

        if not merged:
            raise InvalidOrderError("Order has no lines")
        return list(merged.values())

    def price_line(
        self,
        line: OrderLine,
        variant: Variant,
        currency: Currency,
        rates: RateTable,
    ) -> PricedLine:
        """Price one line in the display currency"""
        product = variant.product
        listed = product.price_in(currency)

        if listed is not None:
            unit_price = quantize(listed, currency)
            base_total = quantize(unit_price * line.quantity, currency)
        else:
            # Convert the whole line so rounding happens once
            unit_price = convert(product.price_ngn, Currency.NGN, currency, rates)
            base_total = convert(
                to_decimal(product.price_ngn) * line.quantity, Currency.NGN, currency, rates
            )

        has_size_mod = bool(line.size_mod and product.size_mods)
        size_mod_fee = (
            quantize(base_total * self.settings.size_mod_rate, currency)
            if has_size_mod
            else quantize(0, currency)
        )

        return PricedLine(
            line=line,
            variant=variant,
            product=product,
            unit_price=unit_price,
            base_total=base_total,
            size_mod_fee=size_mod_fee,
            line_total=base_total + size_mod_fee,
            has_size_mod=has_size_mod,
        )

    async def _load_variants(self, session: AsyncSession, lines: List[OrderLine]) -> Dict[str, Variant]:
        ids = [line.variant_id for line in lines]
        result = await session.execute(
            select(Variant).options(selectinload(Variant.product)).where(Variant.id.in_(ids))
        )
        variants = {variant.id: variant for variant in result.scalars()}
        for variant_id in ids:
            if variant_id not in variants:
                raise UnknownVariantError(variant_id)
        return variants

    async def place_order(
        self,
        session: AsyncSession,
        customer_id: str,
        currency: Union[Currency, str],
        lines: Iterable[LineInput],
        payment_method: str,
        rates: Optional[RateTable] = None,
        staff_id: Optional[str] = None,
        delivery_fee: Union[Decimal, int, str] = 0,
        delivery_details: Optional[Dict[str, Any]] = None,
        created_at: Optional[datetime] = None,
    ) -> Order:
        """
        Assemble and persist an order in the caller's transaction.

        Returns:
            The new Order with items loaded, status Processing

        Raises:
            InvalidOrderError: Empty or malformed request
            UnknownCustomerError / UnknownStaffError / UnknownVariantError
            MissingRateError: Non-NGN order without usable rates
            InsufficientStockError: Some line cannot be reserved
            ConcurrentModificationError: The insert lost a race; retry the call
        """
        try:
            currency = Currency(currency)
        except ValueError as e:
            raise InvalidOrderError(f"Unsupported currency: {currency}") from e
        if not payment_method or not payment_method.strip():
            raise InvalidOrderError("payment_method is required")

        normalized = self.normalize_lines(lines)

        try:
            fee = to_decimal(delivery_fee)
        except (InvalidOperation, TypeError, ValueError) as e:
            raise InvalidOrderError(f"delivery_fee must be a number, got {delivery_fee!r}") from e
        if not fee.is_finite() or fee < 0:
            raise InvalidOrderError(f"delivery_fee must be non-negative, got {delivery_fee}")

        if currency is not Currency.NGN and (rates is None or not rates.supports(currency)):
            raise MissingRateError(currency.value, Currency.NGN.value)
        rates = rates or RateTable()

        if await session.get(Customer, customer_id) is None:
            raise UnknownCustomerError(customer_id)
        if staff_id is not None and await session.get(Staff, staff_id) is None:
            raise UnknownStaffError(staff_id)

        variants = await self._load_variants(session, normalized)
        priced = [
            self.price_line(line, variants[line.variant_id], currency, rates)
            for line in normalized
        ]

        await self.ledger.reserve_many(
            session, [(line.variant_id, line.quantity) for line in normalized]
        )

        total_amount = sum((p.line_total for p in priced), quantize(0, currency))
        total_ngn = int(quantize(convert(total_amount, currency, Currency.NGN, rates), Currency.NGN))

        weight = sum((p.variant.weight or 0) * p.line.quantity for p in priced)
        details = dict(delivery_details or {})
        details["aggregated_weight"] = round(weight, 3)

        order = Order(
            id=await self._allocate_order_id(session),
            customer_id=customer_id,
            staff_id=staff_id,
            status=OrderStatus.PROCESSING,
            channel=OrderChannel.OFFLINE if staff_id else OrderChannel.ONLINE,
            currency=currency,
            total_amount=total_amount,
            total_ngn=total_ngn,
            payment_method=payment_method.strip(),
            delivery_fee=quantize(fee, currency),
            delivery_details=details,
            created_at=created_at or datetime.utcnow(),
            items=[self._snapshot(position, p, currency) for position, p in enumerate(priced)],
        )
        session.add(order)
        try:
            await session.flush()
        except IntegrityError as e:
            # Another writer took the id (or a referenced row) after our checks
            logger.warning("Order insert conflicted", order_id=order.id, error=str(e.orig))
            raise ConcurrentModificationError(
                f"Order {order.id} conflicted with a concurrent write", entity_id=order.id
            ) from e
        set_committed_value(order, "offline_sale", None)

        logger.info(
            "Order placed",
            order_id=order.id,
            customer_id=customer_id,
            staff_id=staff_id,
            channel=order.channel.value,
            currency=currency.value,
            total_amount=str(total_amount),
            total_ngn=total_ngn,
            lines=len(priced),
        )
        return order

    async def _allocate_order_id(self, session: AsyncSession) -> str:
        """Generate an order id not already in use"""
        for _ in range(ORDER_ID_ATTEMPTS):
            order_id = generate_order_id(self.settings.order_id_prefix)
            if await session.get(Order, order_id) is None:
                return order_id
            logger.warning("Order id collision, regenerating", order_id=order_id)
        raise ConcurrentModificationError("Could not allocate a unique order id")

    @staticmethod
    def _snapshot(position: int, priced: PricedLine, currency: Currency) -> OrderItem:
        product = priced.product
        variant = priced.variant
        return OrderItem(
            variant_id=variant.id,
            position=position,
            name=product.name,
            image=product.primary_image,
            category=product.category,
            color=variant.color or "N/A",
            size=variant.size or "N/A",
            quantity=priced.line.quantity,
            currency=currency,
            unit_price=priced.unit_price,
            line_total=priced.line_total,
            has_size_mod=priced.has_size_mod,
            size_mod_fee=priced.size_mod_fee,
            custom_size=dict(priced.line.custom_size) if priced.has_size_mod and priced.line.custom_size else None,
        )
